"""Transcript messages as a tagged union, validated once at the boundary.

Raw messages are mappings with a ``role`` discriminator.  ``parse_message``
turns each into one of four frozen dataclasses that keep the original mapping
in ``raw`` so fields this package does not model survive untouched.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL_RESULT = "toolResult"

TOOL_CALL_BLOCK_TYPES = frozenset({"toolCall", "toolUse", "functionCall"})


@dataclass(frozen=True)
class ToolCallRef:
    id: str
    name: Optional[str] = None


@dataclass(frozen=True)
class UserMessage:
    raw: Mapping[str, Any]


@dataclass(frozen=True)
class AssistantMessage:
    raw: Mapping[str, Any]
    tool_calls: Tuple[ToolCallRef, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ToolResultMessage:
    raw: Mapping[str, Any]
    tool_call_id: Optional[str] = None
    is_error: bool = False

    @property
    def content(self) -> Any:
        return self.raw.get("content")


@dataclass(frozen=True)
class OtherMessage:
    raw: Any


TranscriptMessage = Union[UserMessage, AssistantMessage, ToolResultMessage, OtherMessage]


def extract_tool_calls(raw: Mapping[str, Any]) -> Tuple[ToolCallRef, ...]:
    content = raw.get("content")
    if not isinstance(content, list):
        return ()
    calls: List[ToolCallRef] = []
    for block in content:
        if not isinstance(block, Mapping):
            continue
        block_id = block.get("id")
        if block.get("type") not in TOOL_CALL_BLOCK_TYPES or not isinstance(block_id, str) or not block_id:
            continue
        name = block.get("name")
        calls.append(ToolCallRef(id=block_id, name=name if isinstance(name, str) else None))
    return tuple(calls)


def extract_tool_result_id(raw: Mapping[str, Any]) -> Optional[str]:
    for key in ("toolCallId", "toolUseId"):
        value = raw.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def parse_message(raw: Any) -> TranscriptMessage:
    if isinstance(raw, (UserMessage, AssistantMessage, ToolResultMessage, OtherMessage)):
        return raw
    if not isinstance(raw, Mapping):
        return OtherMessage(raw=raw)
    role = raw.get("role")
    if role == ROLE_ASSISTANT:
        return AssistantMessage(raw=raw, tool_calls=extract_tool_calls(raw))
    if role == ROLE_TOOL_RESULT:
        return ToolResultMessage(
            raw=raw,
            tool_call_id=extract_tool_result_id(raw),
            is_error=bool(raw.get("isError", False)),
        )
    if role == ROLE_USER:
        return UserMessage(raw=raw)
    return OtherMessage(raw=raw)


def parse_transcript(raws: Iterable[Any]) -> List[TranscriptMessage]:
    return [parse_message(raw) for raw in raws]


def to_raw(message: TranscriptMessage) -> Any:
    return message.raw


def to_raw_transcript(messages: Iterable[TranscriptMessage]) -> List[Any]:
    return [to_raw(m) for m in messages]
