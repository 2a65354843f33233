"""Deterministic, collision-free rewrite of tool call ids.

Some providers reject ids containing characters outside ``[A-Za-z0-9_-]`` or
longer than a fixed cap.  ``ToolCallIdRewriter`` maps every original id to a
safe one, memoized per transcript, and never maps two originals to the same
target.
"""
from __future__ import annotations

import hashlib
import re
import time
from typing import Any, Dict, List, Mapping, Sequence, Set

from toolgate.domain.transcript import (
    AssistantMessage,
    ToolResultMessage,
    TranscriptMessage,
    TOOL_CALL_BLOCK_TYPES,
    extract_tool_calls,
    extract_tool_result_id,
)

MAX_TOOL_CALL_ID_LENGTH = 40

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_tool_call_id(tool_call_id: Any) -> str:
    if not tool_call_id or not isinstance(tool_call_id, str):
        return "default_tool_id"
    return _UNSAFE_CHARS.sub("_", tool_call_id)


def _short_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:8]


class ToolCallIdRewriter:
    def __init__(self, max_length: int = MAX_TOOL_CALL_ID_LENGTH) -> None:
        self._max_length = max_length
        self._mapping: Dict[str, str] = {}
        self._used: Set[str] = set()

    def resolve(self, original: str) -> str:
        existing = self._mapping.get(original)
        if existing is not None:
            return existing
        target = self._make_unique(original)
        self._mapping[original] = target
        self._used.add(target)
        return target

    def mapping(self) -> Dict[str, str]:
        return dict(self._mapping)

    def _make_unique(self, original: str) -> str:
        cap = self._max_length
        base = sanitize_tool_call_id(original)[:cap]
        if base not in self._used:
            return base

        digest = _short_hash(original)
        clipped = base[: cap - 1 - len(digest)]
        candidate = f"{clipped}_{digest}"
        if candidate not in self._used:
            return candidate

        for n in range(2, 1000):
            suffix = f"_{n}"
            nxt = f"{candidate[: cap - len(suffix)]}{suffix}"
            if nxt not in self._used:
                return nxt

        stamp = f"_{int(time.time() * 1000)}"
        return f"{candidate[: cap - len(stamp)]}{stamp}"


def _rewrite_assistant(msg: AssistantMessage, rewriter: ToolCallIdRewriter) -> AssistantMessage:
    content = msg.raw.get("content")
    if not isinstance(content, list):
        return msg
    changed = False
    blocks: List[Any] = []
    for block in content:
        block_id = block.get("id") if isinstance(block, Mapping) else None
        if (
            not isinstance(block, Mapping)
            or block.get("type") not in TOOL_CALL_BLOCK_TYPES
            or not isinstance(block_id, str)
            or not block_id
        ):
            blocks.append(block)
            continue
        new_id = rewriter.resolve(block_id)
        if new_id == block_id:
            blocks.append(block)
            continue
        changed = True
        blocks.append({**block, "id": new_id})
    if not changed:
        return msg
    raw = {**msg.raw, "content": blocks}
    return AssistantMessage(raw=raw, tool_calls=extract_tool_calls(raw))


def _rewrite_result(msg: ToolResultMessage, rewriter: ToolCallIdRewriter) -> ToolResultMessage:
    updates: Dict[str, str] = {}
    for key in ("toolCallId", "toolUseId"):
        value = msg.raw.get(key)
        if isinstance(value, str) and value:
            new_value = rewriter.resolve(value)
            if new_value != value:
                updates[key] = new_value
    if not updates:
        return msg
    raw = {**msg.raw, **updates}
    return ToolResultMessage(raw=raw, tool_call_id=extract_tool_result_id(raw), is_error=msg.is_error)


def sanitize_tool_call_ids_for_transcript(messages: Sequence[TranscriptMessage]) -> Sequence[TranscriptMessage]:
    """Rewrite call and result ids; returns ``messages`` itself when unchanged."""
    rewriter = ToolCallIdRewriter()
    changed = False
    out: List[TranscriptMessage] = []
    for msg in messages:
        if isinstance(msg, AssistantMessage):
            nxt: TranscriptMessage = _rewrite_assistant(msg, rewriter)
        elif isinstance(msg, ToolResultMessage):
            nxt = _rewrite_result(msg, rewriter)
        else:
            nxt = msg
        if nxt is not msg:
            changed = True
        out.append(nxt)
    return out if changed else messages
