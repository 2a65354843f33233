from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

TOOL_SOURCES = (
    "core",
    "web",
    "memory",
    "tracker",
    "analytics",
    "runtime-skill",
    "command",
    "plugin",
    "other",
)


@dataclass(frozen=True)
class ToolMeta:
    name: str
    source: str = "core"
    description: Optional[str] = None
    origin: Optional[str] = None

    def __post_init__(self) -> None:
        if self.source not in TOOL_SOURCES:
            raise ValueError(f"Unknown tool source: {self.source!r}")

    def same_identity(self, other: "ToolMeta") -> bool:
        return (
            self.source == other.source
            and self.name == other.name
            and (self.origin or "") == (other.origin or "")
        )


@dataclass(frozen=True)
class ToolHookContext:
    tool_name: str
    tool_call_id: Optional[str] = None
    input: Any = None
    chat_id: Optional[str] = None
    user_id: Optional[str] = None


# A tool callable takes the model-provided input and returns a value, an
# awaitable, or an async iterable of chunks for streamed results.
ToolCallable = Callable[..., Union[Any, Awaitable[Any]]]
ToolMap = Dict[str, ToolCallable]
