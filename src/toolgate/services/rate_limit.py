"""Sliding-window per-tool rate limits.

Rules are configured as ``tool:max/windowSeconds`` entries separated by
commas, e.g. ``web_search:5/60,*:30/60``.  ``*`` applies to every tool that
has no exact rule.  Buckets are keyed by ``(tool, chat, user)`` where a missing
chat or user counts as ``global``.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from toolgate.tools.registry import normalize_tool_name

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class ToolRateLimitRule:
    tool: str
    max: int
    window_seconds: int

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: float
    reset_ms: int


def parse_tool_rate_limits(raw: str) -> List[ToolRateLimitRule]:
    rules: List[ToolRateLimitRule] = []
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry or ":" not in entry:
            continue
        tool_part, limit_part = (p.strip() for p in entry.split(":", 1))
        if not tool_part or "/" not in limit_part:
            continue
        max_raw, window_raw = (p.strip() for p in limit_part.split("/", 1))
        try:
            max_calls = int(max_raw)
            window_seconds = int(window_raw)
        except ValueError:
            logger.debug("Skipping malformed rate limit rule: %s", entry)
            continue
        if max_calls <= 0 or window_seconds <= 0:
            continue
        rules.append(
            ToolRateLimitRule(
                tool=normalize_tool_name(tool_part),
                max=max_calls,
                window_seconds=window_seconds,
            )
        )
    return rules


BucketKey = Tuple[str, str, str]


class ToolRateLimiter:
    """Thread-safe sliding-window limiter.

    ``clock`` returns seconds since the epoch; tests inject a fake one.
    """

    def __init__(self, rules: List[ToolRateLimitRule], clock: Callable[[], float] = time.time) -> None:
        self._rules = [
            ToolRateLimitRule(tool=normalize_tool_name(r.tool), max=r.max, window_seconds=r.window_seconds)
            for r in rules
        ]
        self._clock = clock
        self._buckets: Dict[BucketKey, List[int]] = {}
        self._lock = threading.Lock()

    def rules(self) -> List[ToolRateLimitRule]:
        return list(self._rules)

    def find_rule(self, tool: str) -> Optional[ToolRateLimitRule]:
        normalized = normalize_tool_name(tool)
        exact = next((r for r in self._rules if r.tool == normalized), None)
        if exact is not None:
            return exact
        return next((r for r in self._rules if r.tool == WILDCARD), None)

    def check(self, tool: str, chat_id: Optional[str] = None, user_id: Optional[str] = None) -> RateLimitResult:
        rule = self.find_rule(tool)
        if rule is None:
            return RateLimitResult(allowed=True, remaining=math.inf, reset_ms=0)
        key = (rule.tool, str(chat_id) if chat_id else "global", str(user_id) if user_id else "global")
        window_ms = rule.window_ms
        with self._lock:
            now = int(self._clock() * 1000)
            stamps = self._buckets.setdefault(key, [])
            cut = 0
            while cut < len(stamps) and now - stamps[cut] >= window_ms:
                cut += 1
            if cut:
                del stamps[:cut]
            if len(stamps) >= rule.max:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_ms=max(0, stamps[0] + window_ms - now),
                )
            stamps.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=max(0, rule.max - len(stamps)),
                reset_ms=max(0, stamps[0] + window_ms - now),
            )

    def reset(self, chat_id: Optional[str] = None) -> None:
        """Drop buckets for one chat, or every bucket when ``chat_id`` is None."""
        with self._lock:
            if chat_id is None:
                self._buckets.clear()
                return
            for key in [k for k in self._buckets if k[1] == str(chat_id)]:
                del self._buckets[key]
