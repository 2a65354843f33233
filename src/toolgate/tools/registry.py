"""Canonical tool name space with duplicate-name conflict detection.

Every tool offered to the model is registered once under its normalized name.
Re-registering the identical meta is a no-op; registering a different meta
under a taken name is rejected and recorded in an append-only conflict log.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from toolgate.observability.structured_log import log_json
from toolgate.tools.base import ToolMeta

logger = logging.getLogger(__name__)

TOOL_NAME_ALIASES: Dict[str, str] = {
    "bash": "exec",
    "apply-patch": "apply_patch",
}


def normalize_tool_name(name: Any) -> str:
    if not isinstance(name, str):
        return ""
    normalized = name.strip().lower()
    return TOOL_NAME_ALIASES.get(normalized, normalized)


@dataclass(frozen=True)
class RegisterResult:
    ok: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ToolConflict:
    tool: ToolMeta
    existing: ToolMeta
    normalized_name: str
    reason: str = "duplicate-name"


ConflictCallback = Callable[[Dict[str, Any]], None]


class ToolRegistry:
    def __init__(self, on_conflict: Optional[ConflictCallback] = None) -> None:
        self._by_name: Dict[str, ToolMeta] = {}
        self._conflicts: List[ToolConflict] = []
        self._conflict_keys: Set[Tuple[str, str, str]] = set()
        self._on_conflict = on_conflict
        self._lock = threading.Lock()

    def register(self, tool: ToolMeta) -> RegisterResult:
        normalized = normalize_tool_name(tool.name)
        if not normalized:
            return RegisterResult(ok=False, reason="empty-name")
        with self._lock:
            existing = self._by_name.get(normalized)
            if existing is None:
                self._by_name[normalized] = tool
                return RegisterResult(ok=True)
            if existing.same_identity(tool):
                return RegisterResult(ok=True)
            key = (normalized, existing.source, tool.source)
            if key in self._conflict_keys:
                return RegisterResult(ok=False, reason="duplicate-name")
            self._conflict_keys.add(key)
            self._conflicts.append(
                ToolConflict(tool=tool, existing=existing, normalized_name=normalized)
            )
        event = {
            "name": tool.name,
            "normalized_name": normalized,
            "source": tool.source,
            "origin": tool.origin,
            "existing_source": existing.source,
            "existing_origin": existing.origin,
            "reason": "duplicate-name",
        }
        log_json(logger, "tool_conflict", level=logging.WARNING, **event)
        if self._on_conflict is not None:
            self._on_conflict({"event": "tool_conflict", **event})
        return RegisterResult(ok=False, reason="duplicate-name")

    def get(self, name: str) -> Optional[ToolMeta]:
        with self._lock:
            return self._by_name.get(normalize_tool_name(name))

    def list(self) -> List[ToolMeta]:
        with self._lock:
            return list(self._by_name.values())

    def names(self) -> List[str]:
        with self._lock:
            return list(self._by_name.keys())

    def conflicts(self) -> List[ToolConflict]:
        with self._lock:
            return list(self._conflicts)
