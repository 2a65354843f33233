"""Tool policy groups and global allow/deny evaluation.

Group tokens (``group:<name>``) expand to a fixed list of literal tool names.
The defaults below can be extended or overridden through configuration::

  group:web            — web_search
  group:tracker        — tracker_search, issues_find, issue_get, ...
  group:jira           — jira_search, jira_issues_find, ...
  group:analytics      — insight-query, query-run, dashboards-get-all, ...
  group:memory         — searchmemories, addmemory
  group:runtime-skills — (empty; populated at start-up)

Deny always wins over allow.  An empty allow list means "allow everything not
denied".
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from toolgate.tools.base import ToolMeta
from toolgate.tools.registry import normalize_tool_name

# ---------------------------------------------------------------------------
# Group definitions
# ---------------------------------------------------------------------------

ToolGroups = Mapping[str, Sequence[str]]

DEFAULT_TOOL_GROUPS: Dict[str, List[str]] = {
    "group:web": ["web_search"],
    "group:tracker": [
        "tracker_search",
        "issues_find",
        "issue_get",
        "issue_get_comments",
        "issue_get_url",
    ],
    "group:jira": [
        "jira_search",
        "jira_issues_find",
        "jira_issue_get",
        "jira_issue_get_comments",
        "jira_sprint_issues",
    ],
    "group:analytics": [
        "dashboards-get-all",
        "dashboard-get",
        "insight-get",
        "insight-query",
        "insights-get-all",
        "query-run",
        "list-errors",
        "error-details",
        "logs-query",
    ],
    "group:memory": ["searchmemories", "addmemory"],
    "group:runtime-skills": [],
}


def load_tool_groups(raw: str = "", base: Optional[ToolGroups] = None) -> Dict[str, List[str]]:
    """Merge ``group:name=a|b;group:other=c`` definitions over ``base``.

    Group names are normalized and gain the ``group:`` prefix when missing.
    Entries without a name are skipped; an entry with an empty member list
    defines an empty group.
    """
    groups: Dict[str, List[str]] = {
        key: list(members) for key, members in (base if base is not None else DEFAULT_TOOL_GROUPS).items()
    }
    for entry in (raw or "").split(";"):
        entry = entry.strip()
        if "=" not in entry:
            continue
        name_part, members_part = entry.split("=", 1)
        name = normalize_tool_name(name_part)
        if not name:
            continue
        if not name.startswith("group:"):
            name = f"group:{name}"
        members = [normalize_tool_name(m) for m in members_part.split("|")]
        groups[name] = [m for m in members if m]
    return groups


def expand_tool_groups(entries: Optional[Iterable[str]], groups: Optional[ToolGroups] = None) -> List[str]:
    """Expand group tokens, normalize literals, dedupe in discovery order."""
    if not entries:
        return []
    table = groups if groups is not None else DEFAULT_TOOL_GROUPS
    expanded: List[str] = []
    seen = set()
    for entry in entries:
        normalized = normalize_tool_name(entry)
        members = table.get(normalized)
        names = [normalize_tool_name(m) for m in members] if members is not None else [normalized]
        for name in names:
            if name and name not in seen:
                seen.add(name)
                expanded.append(name)
    return expanded


# ---------------------------------------------------------------------------
# Policy evaluation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolPolicy:
    allow: Optional[Tuple[str, ...]] = None
    deny: Optional[Tuple[str, ...]] = None

    @classmethod
    def of(cls, allow: Optional[Iterable[str]] = None, deny: Optional[Iterable[str]] = None) -> "ToolPolicy":
        return cls(
            allow=tuple(allow) if allow is not None else None,
            deny=tuple(deny) if deny is not None else None,
        )


def is_tool_allowed(name: str, policy: Optional[ToolPolicy], groups: Optional[ToolGroups] = None) -> bool:
    if policy is None:
        return True
    normalized = normalize_tool_name(name)
    if normalized in set(expand_tool_groups(policy.deny, groups)):
        return False
    allow = expand_tool_groups(policy.allow, groups)
    if allow:
        return normalized in set(allow)
    return True


def merge_tool_policies(base: Optional[ToolPolicy], override: Optional[ToolPolicy]) -> Optional[ToolPolicy]:
    if base is None and override is None:
        return None
    return ToolPolicy(
        allow=tuple((base.allow if base else None) or ()) + tuple((override.allow if override else None) or ()),
        deny=tuple((base.deny if base else None) or ()) + tuple((override.deny if override else None) or ()),
    )


def filter_tool_metas_by_policy(
    tools: Sequence[ToolMeta],
    policy: Optional[ToolPolicy],
    groups: Optional[ToolGroups] = None,
) -> List[ToolMeta]:
    if policy is None:
        return list(tools)
    return [tool for tool in tools if is_tool_allowed(tool.name, policy, groups)]


T = TypeVar("T")


def filter_tool_map_by_policy(
    tools: Mapping[str, T],
    policy: Optional[ToolPolicy],
    groups: Optional[ToolGroups] = None,
) -> Tuple[Dict[str, T], List[str]]:
    """Return ``(kept, suppressed_names)`` preserving the mapping order."""
    if policy is None:
        return dict(tools), []
    kept: Dict[str, T] = {}
    suppressed: List[str] = []
    for name, tool in tools.items():
        if is_tool_allowed(name, policy, groups):
            kept[name] = tool
        else:
            suppressed.append(name)
    return kept, suppressed


# ---------------------------------------------------------------------------
# Config parsing
# ---------------------------------------------------------------------------


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def parse_tool_policy(allow_raw: str = "", deny_raw: str = "") -> Optional[ToolPolicy]:
    allow = _split_csv(allow_raw)
    deny = _split_csv(deny_raw)
    if not allow and not deny:
        return None
    return ToolPolicy(
        allow=tuple(allow) if allow else None,
        deny=tuple(deny) if deny else None,
    )


def parse_tool_policy_from_env(env: Mapping[str, str]) -> Optional[ToolPolicy]:
    return parse_tool_policy(env.get("TOOL_ALLOWLIST", ""), env.get("TOOL_DENYLIST", ""))


@dataclass(frozen=True)
class PolicyVariants:
    base: Optional[ToolPolicy] = None
    dm: Optional[ToolPolicy] = None
    group: Optional[ToolPolicy] = None

    def for_chat(self, is_group: bool) -> Optional[ToolPolicy]:
        return merge_tool_policies(self.base, self.group if is_group else self.dm)


def parse_tool_policy_variants(env: Mapping[str, str]) -> PolicyVariants:
    return PolicyVariants(
        base=parse_tool_policy(env.get("TOOL_ALLOWLIST", ""), env.get("TOOL_DENYLIST", "")),
        dm=parse_tool_policy(env.get("TOOL_ALLOWLIST_DM", ""), env.get("TOOL_DENYLIST_DM", "")),
        group=parse_tool_policy(env.get("TOOL_ALLOWLIST_GROUP", ""), env.get("TOOL_DENYLIST_GROUP", "")),
    )
