"""Delayed "working…" notices for slow tools.

When the model starts a step that uses a watched tool (web search, tracker
search) a status message is scheduled after ``delay_sec``.  If the step ends
first the timer is cancelled, so fast calls never produce a notice.  Each
notice is sent at most once per turn; ``clear_all`` must be called when the
turn finishes to release pending timers.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, Mapping, Optional, Set, Union

logger = logging.getLogger(__name__)

DEFAULT_STATUS_DELAY_SEC = 1.5
DEFAULT_STATUS_MESSAGES: Dict[str, str] = {
    "web_search": "Searching the web…",
    "tracker_search": "Checking the tracker…",
}

StatusSender = Callable[[str], Union[Awaitable[None], None]]


class ToolStatusNotifier:
    def __init__(
        self,
        send: StatusSender,
        delay_sec: float = DEFAULT_STATUS_DELAY_SEC,
        messages: Optional[Mapping[str, str]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._send = send
        self._delay_sec = max(0.0, float(delay_sec))
        self._messages = dict(messages if messages is not None else DEFAULT_STATUS_MESSAGES)
        self._loop = loop
        self._sent: Set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def pending(self) -> Set[str]:
        return set(self._timers)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self._sent.add(key)
        try:
            result = self._send(self._messages[key])
        except Exception as exc:
            logger.warning("Tool status send failed: %s", exc)
            return
        if asyncio.iscoroutine(result):
            task = self._get_loop().create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def schedule(self, key: str) -> None:
        if key not in self._messages or key in self._sent or key in self._timers:
            return
        self._timers[key] = self._get_loop().call_later(self._delay_sec, self._fire, key)

    def cancel(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def on_tool_step(self, tool_names: Iterable[str]) -> None:
        names = set(tool_names)
        for key in self._messages:
            if key in names:
                self.schedule(key)
            else:
                self.cancel(key)

    def clear_all(self) -> None:
        for key in list(self._timers):
            self.cancel(key)
