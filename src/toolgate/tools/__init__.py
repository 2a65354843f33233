from toolgate.tools.base import TOOL_SOURCES, ToolHookContext, ToolMeta
from toolgate.tools.registry import (
    RegisterResult,
    ToolConflict,
    ToolRegistry,
    normalize_tool_name,
)

__all__ = [
    "TOOL_SOURCES",
    "RegisterResult",
    "ToolConflict",
    "ToolHookContext",
    "ToolMeta",
    "ToolRegistry",
    "normalize_tool_name",
]
