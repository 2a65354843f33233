"""Per-sender and per-chat tool access (allow/deny by user id, user, chat).

Provides:
- ``SenderToolAccess``: parsed id lists and per-user / per-chat tool maps.
- ``parse_sender_tool_access``: builds it from the raw config strings.
- ``is_tool_allowed_for_sender``: strict-precedence evaluation, returning a
  ``SenderDecision`` whose ``reason`` names the first decisive rule.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional

from toolgate.services.tool_policy import ToolGroups, expand_tool_groups
from toolgate.tools.registry import normalize_tool_name

# ---------------------------------------------------------------------------
# Decision reasons
# ---------------------------------------------------------------------------

REASON_USER_DENIED = "user_denied"
REASON_USER_NOT_ALLOWED = "user_not_allowed"
REASON_USER_TOOL_DENIED = "user_tool_denied"
REASON_USER_TOOL_NOT_ALLOWED = "user_tool_not_allowed"
REASON_CHAT_TOOL_DENIED = "chat_tool_denied"
REASON_CHAT_TOOL_NOT_ALLOWED = "chat_tool_not_allowed"

ToolMap = Dict[str, FrozenSet[str]]


@dataclass(frozen=True)
class SenderToolAccess:
    allow_user_ids: FrozenSet[str] = frozenset()
    deny_user_ids: FrozenSet[str] = frozenset()
    allow_user_tools: ToolMap = field(default_factory=dict)
    deny_user_tools: ToolMap = field(default_factory=dict)
    allow_chat_tools: ToolMap = field(default_factory=dict)
    deny_chat_tools: ToolMap = field(default_factory=dict)


@dataclass(frozen=True)
class SenderDecision:
    allowed: bool
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_id_list(raw: str) -> FrozenSet[str]:
    return frozenset(part.strip() for part in (raw or "").split(",") if part.strip())


def _parse_tool_map(raw: str, groups: Optional[ToolGroups] = None) -> ToolMap:
    """Parse ``id:tool1|tool2|group:name;id2:tool3``."""
    result: ToolMap = {}
    for entry in (raw or "").split(";"):
        entry = entry.strip()
        colon = entry.find(":")
        if colon <= 0:
            continue
        id_part = entry[:colon].strip()
        tools_part = entry[colon + 1 :].strip()
        if not id_part or not tools_part:
            continue
        expanded = expand_tool_groups([t.strip() for t in tools_part.split("|")], groups)
        result[id_part] = frozenset(expanded)
    return result


def parse_sender_tool_access(
    allow_user_ids: str = "",
    deny_user_ids: str = "",
    allow_user_tools: str = "",
    deny_user_tools: str = "",
    allow_chat_tools: str = "",
    deny_chat_tools: str = "",
    groups: Optional[ToolGroups] = None,
) -> SenderToolAccess:
    return SenderToolAccess(
        allow_user_ids=_parse_id_list(allow_user_ids),
        deny_user_ids=_parse_id_list(deny_user_ids),
        allow_user_tools=_parse_tool_map(allow_user_tools, groups),
        deny_user_tools=_parse_tool_map(deny_user_tools, groups),
        allow_chat_tools=_parse_tool_map(allow_chat_tools, groups),
        deny_chat_tools=_parse_tool_map(deny_chat_tools, groups),
    )


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _lookup(key: Optional[str], tool: str, table: ToolMap) -> Optional[bool]:
    """None when there is no entry for ``key``; else membership of ``tool``."""
    if not key:
        return None
    tools = table.get(key)
    if tools is None:
        return None
    return tool in tools


def is_tool_allowed_for_sender(
    tool_name: str,
    access: SenderToolAccess,
    user_id: Optional[str] = None,
    chat_id: Optional[str] = None,
) -> SenderDecision:
    tool = normalize_tool_name(tool_name)
    user_id = str(user_id) if user_id not in (None, "") else None
    chat_id = str(chat_id) if chat_id not in (None, "") else None

    if user_id and user_id in access.deny_user_ids:
        return SenderDecision(allowed=False, reason=REASON_USER_DENIED)
    if user_id and access.allow_user_ids and user_id not in access.allow_user_ids:
        return SenderDecision(allowed=False, reason=REASON_USER_NOT_ALLOWED)
    if _lookup(user_id, tool, access.deny_user_tools) is True:
        return SenderDecision(allowed=False, reason=REASON_USER_TOOL_DENIED)
    if _lookup(user_id, tool, access.allow_user_tools) is False:
        return SenderDecision(allowed=False, reason=REASON_USER_TOOL_NOT_ALLOWED)
    if _lookup(chat_id, tool, access.deny_chat_tools) is True:
        return SenderDecision(allowed=False, reason=REASON_CHAT_TOOL_DENIED)
    if _lookup(chat_id, tool, access.allow_chat_tools) is False:
        return SenderDecision(allowed=False, reason=REASON_CHAT_TOOL_NOT_ALLOWED)
    return SenderDecision(allowed=True)
