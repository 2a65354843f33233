"""Time-boxed per-chat tool approvals.

An approval for ``(chat_id, tool)`` is valid until its expiry (epoch ms).
Expired entries are purged lazily on read.  When a ``KeyValueStore`` is
provided the whole snapshot ``{chat_id: {tool: expiry_ms}}`` is loaded once at
construction and rewritten after every mutation.  Writes run on a background
thread so callers (including the event loop) never wait on the store;
failures are logged and ignored so the in-memory map stays authoritative.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from toolgate.persistence.kv_store import KeyValueStore
from toolgate.tools.registry import normalize_tool_name

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_TTL_MS = 10 * 60 * 1000
DEFAULT_APPROVAL_KEY = "approvals.json"

ApprovalSnapshot = Dict[str, Dict[str, int]]


@dataclass(frozen=True)
class ApprovalEntry:
    tool: str
    expires_at: int


def parse_approval_list(raw: str) -> List[str]:
    return [normalize_tool_name(part) for part in (raw or "").split(",") if part.strip()]


def _decode_snapshot(raw: Optional[bytes]) -> Dict[str, Dict[str, int]]:
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return {}
    if not isinstance(parsed, dict):
        return {}
    store: Dict[str, Dict[str, int]] = {}
    for chat_id, tools in parsed.items():
        if not isinstance(tools, dict):
            continue
        by_tool = {
            str(tool): int(expires)
            for tool, expires in tools.items()
            if isinstance(expires, (int, float)) and not isinstance(expires, bool)
        }
        if by_tool:
            store[str(chat_id)] = by_tool
    return store


class _SnapshotWriter:
    """Writes the newest snapshot on a daemon thread; submitters never wait.

    Only the latest pending payload is kept, so a slow store coalesces bursts
    of mutations into one write.
    """

    def __init__(self, storage: KeyValueStore, key: str) -> None:
        self._storage = storage
        self._key = key
        self._cond = threading.Condition()
        self._pending: Optional[bytes] = None
        self._busy = False
        self._thread: Optional[threading.Thread] = None

    def submit(self, payload: bytes) -> None:
        with self._cond:
            self._pending = payload
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, daemon=True, name="approval-writer")
                self._thread.start()
            self._cond.notify_all()

    def flush(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._pending is None and not self._busy, timeout)

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._pending is None:
                    self._cond.wait()
                payload, self._pending = self._pending, None
                self._busy = True
            try:
                self._storage.write(self._key, payload)
            except Exception as exc:
                logger.debug("Approval snapshot write failed: %s", exc)
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()


class ApprovalStore:
    def __init__(
        self,
        ttl_ms: int = DEFAULT_APPROVAL_TTL_MS,
        storage: Optional[KeyValueStore] = None,
        key: str = DEFAULT_APPROVAL_KEY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_ms = int(ttl_ms) if ttl_ms and ttl_ms > 0 else DEFAULT_APPROVAL_TTL_MS
        self._storage = storage
        self._key = key
        self._writer = _SnapshotWriter(storage, key) if storage is not None else None
        self._clock = clock
        self._lock = threading.Lock()
        self._store: Dict[str, Dict[str, int]] = self._load()

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> Dict[str, Dict[str, int]]:
        if self._storage is None:
            return {}
        try:
            return _decode_snapshot(self._storage.read(self._key))
        except Exception as exc:
            logger.debug("Approval snapshot load failed: %s", exc)
            return {}

    def _persist_locked(self) -> None:
        if self._writer is None:
            return
        self._writer.submit(json.dumps(self._copy_locked(), indent=2, sort_keys=True).encode("utf-8"))

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until queued snapshot writes reach the store."""
        if self._writer is None:
            return True
        return self._writer.flush(timeout)

    def _copy_locked(self) -> ApprovalSnapshot:
        return {chat: dict(tools) for chat, tools in self._store.items()}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_approved(self, chat_id: str, tool_name: str) -> bool:
        if not chat_id:
            return False
        chat_id = str(chat_id)
        tool = normalize_tool_name(tool_name)
        with self._lock:
            by_tool = self._store.get(chat_id)
            if not by_tool:
                return False
            expires_at = by_tool.get(tool)
            if expires_at is None:
                return False
            if self._now_ms() > expires_at:
                self._drop_locked(chat_id, tool)
                self._persist_locked()
                return False
            return True

    def approve(self, chat_id: str, tool_name: str) -> Optional[int]:
        if not chat_id:
            return None
        tool = normalize_tool_name(tool_name)
        if not tool:
            return None
        with self._lock:
            expires_at = self._now_ms() + self._ttl_ms
            self._store.setdefault(str(chat_id), {})[tool] = expires_at
            self._persist_locked()
        return expires_at

    def clear(self, chat_id: str, tool_name: Optional[str] = None) -> None:
        if not chat_id:
            return
        chat_id = str(chat_id)
        with self._lock:
            if tool_name is None:
                if self._store.pop(chat_id, None) is None:
                    return
            else:
                if not self._drop_locked(chat_id, normalize_tool_name(tool_name)):
                    return
            self._persist_locked()

    def _drop_locked(self, chat_id: str, tool: str) -> bool:
        by_tool = self._store.get(chat_id)
        if not by_tool or tool not in by_tool:
            return False
        del by_tool[tool]
        if not by_tool:
            del self._store[chat_id]
        return True

    def snapshot(self) -> ApprovalSnapshot:
        """Live approvals only; expired entries are purged as a side effect."""
        with self._lock:
            now = self._now_ms()
            expired = [
                (chat, tool)
                for chat, tools in self._store.items()
                for tool, expires_at in tools.items()
                if now > expires_at
            ]
            for chat, tool in expired:
                self._drop_locked(chat, tool)
            if expired:
                self._persist_locked()
            return self._copy_locked()

    def list_approvals(self, chat_id: str) -> List[ApprovalEntry]:
        if not chat_id:
            return []
        by_tool = self.snapshot().get(str(chat_id), {})
        entries = [ApprovalEntry(tool=tool, expires_at=exp) for tool, exp in by_tool.items()]
        return sorted(entries, key=lambda e: e.expires_at)

    def schedule_expiry(
        self,
        chat_id: str,
        tool_name: str,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Optional[asyncio.TimerHandle]:
        """Purge the approval when it expires; cancel the handle to stop it."""
        if not chat_id:
            return None
        tool = normalize_tool_name(tool_name)
        with self._lock:
            expires_at = self._store.get(str(chat_id), {}).get(tool)
        if expires_at is None:
            return None
        loop = loop or asyncio.get_running_loop()
        delay = max(0.0, (expires_at - self._now_ms()) / 1000.0) + 0.001
        return loop.call_later(delay, self.is_approved, chat_id, tool)
