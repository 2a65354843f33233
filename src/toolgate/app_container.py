"""Owns the per-process instances and composes them for each agent run."""
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from toolgate.agent.hooks import (
    HookPipeline,
    ToolCallBudget,
    ToolHooks,
    build_guard_pipeline,
    wrap_tools_with_budget,
    wrap_tools_with_hooks,
)
from toolgate.agent.tool_call_id import sanitize_tool_call_ids_for_transcript
from toolgate.agent.transcript_repair import ToolUseRepairReport, repair_tool_use_result_pairing
from toolgate.config import GateConfig
from toolgate.domain.transcript import parse_transcript, to_raw_transcript
from toolgate.persistence.kv_store import (
    FileKeyValueStore,
    HttpKeyValueStore,
    KeyValueStore,
    SqliteKeyValueStore,
)
from toolgate.services.approvals import ApprovalStore
from toolgate.services.rate_limit import ToolRateLimiter
from toolgate.services.tool_policy import filter_tool_map_by_policy
from toolgate.services.tool_status import StatusSender, ToolStatusNotifier
from toolgate.tools.base import ToolCallable, ToolMap, ToolMeta
from toolgate.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

SQLITE_SUFFIXES = (".db", ".sqlite", ".sqlite3")


@dataclass
class PreparedTranscript:
    messages: Sequence[Any]
    repair: ToolUseRepairReport
    ids_rewritten: bool


class ToolGate:
    def __init__(
        self,
        config: GateConfig,
        registry: Optional[ToolRegistry] = None,
        approval_store: Optional[ApprovalStore] = None,
        rate_limiter: Optional[ToolRateLimiter] = None,
    ) -> None:
        self.config = config
        self.registry = registry or ToolRegistry()
        self.approval_store = approval_store or ApprovalStore(ttl_ms=config.approval_ttl_ms)
        self.rate_limiter = rate_limiter or ToolRateLimiter(config.rate_limits)

    def guard_pipeline(self, is_group: bool = False, extra_stages: Sequence[ToolHooks] = ()) -> HookPipeline:
        return build_guard_pipeline(
            policy=self.config.policies.for_chat(is_group),
            groups=self.config.tool_groups,
            access=self.config.sender_access,
            approval_required=self.config.approval_required,
            approval_store=self.approval_store,
            rate_limiter=self.rate_limiter,
            extra_stages=extra_stages,
        )

    def wrap_tools(
        self,
        tools: Mapping[str, ToolCallable],
        chat_id: Optional[str] = None,
        user_id: Optional[str] = None,
        is_group: bool = False,
        extra_stages: Sequence[ToolHooks] = (),
    ) -> Tuple[ToolMap, List[str]]:
        """Filter by chat policy, then wrap; returns ``(wrapped, suppressed)``."""
        kept, suppressed = filter_tool_map_by_policy(
            tools, self.config.policies.for_chat(is_group), self.config.tool_groups
        )
        pipeline = self.guard_pipeline(is_group=is_group, extra_stages=extra_stages)
        return wrap_tools_with_hooks(kept, pipeline, chat_id=chat_id, user_id=user_id), suppressed

    def wrap_agent_tools(
        self,
        agent_id: str,
        tools: Mapping[str, ToolCallable],
        chat_id: Optional[str] = None,
        user_id: Optional[str] = None,
        is_group: bool = False,
        max_tool_calls: Optional[int] = None,
    ) -> Tuple[ToolMap, ToolCallBudget]:
        budget = ToolCallBudget(max_tool_calls or self.config.max_tool_calls_per_run)
        wrapped = wrap_tools_with_budget(
            tools,
            hooks=self.guard_pipeline(is_group=is_group),
            agent_id=agent_id,
            chat_id=chat_id,
            user_id=user_id,
            budget=budget,
        )
        return wrapped, budget

    def status_notifier(self, send: StatusSender) -> ToolStatusNotifier:
        return ToolStatusNotifier(send, delay_sec=self.config.status_delay_sec)

    def prepare_transcript(self, raws: Sequence[Any]) -> PreparedTranscript:
        """Repair pairing, then sanitize ids, before replaying to the model."""
        parsed = parse_transcript(raws)
        repair = repair_tool_use_result_pairing(parsed)
        sanitized = sanitize_tool_call_ids_for_transcript(repair.messages)
        ids_rewritten = sanitized is not repair.messages
        if not repair.changed and not ids_rewritten:
            return PreparedTranscript(messages=raws, repair=repair, ids_rewritten=False)
        return PreparedTranscript(
            messages=to_raw_transcript(sanitized),
            repair=repair,
            ids_rewritten=ids_rewritten,
        )


def build_approval_storage(config: GateConfig) -> Optional[KeyValueStore]:
    if config.approval_store_url:
        return HttpKeyValueStore(config.approval_store_url)
    path = config.approval_store_path
    if path is not None and path.suffix in SQLITE_SUFFIXES:
        return SqliteKeyValueStore(path)
    if path is not None:
        return FileKeyValueStore(path.parent)
    return None


def build_tool_gate(
    config: GateConfig,
    registry: Optional[ToolRegistry] = None,
    storage: Optional[KeyValueStore] = None,
    clock: Optional[Callable[[], float]] = None,
) -> ToolGate:
    storage = storage if storage is not None else build_approval_storage(config)
    key = config.approval_store_path.name if config.approval_store_path is not None else "approvals.json"
    extra = {"clock": clock} if clock is not None else {}
    approval_store = ApprovalStore(ttl_ms=config.approval_ttl_ms, storage=storage, key=key, **extra)
    rate_limiter = ToolRateLimiter(config.rate_limits, **extra)
    logger.info(
        "Tool gate ready: %d rate rules, %d approval-required tools",
        len(config.rate_limits),
        len(config.approval_required),
    )
    return ToolGate(config, registry=registry, approval_store=approval_store, rate_limiter=rate_limiter)


def register_tool_manifest(registry: ToolRegistry, path: Path) -> int:
    """Register tool metadata from a JSON list; returns how many were accepted."""
    entries = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(entries, list):
        raise ValueError(f"Tool manifest must be a JSON list: {path}")
    accepted = 0
    for entry in entries:
        if isinstance(entry, str):
            entry = {"name": entry}
        if not isinstance(entry, dict) or not entry.get("name"):
            logger.warning("Skipping malformed tool manifest entry: %r", entry)
            continue
        try:
            meta = ToolMeta(
                name=str(entry["name"]),
                source=str(entry.get("source") or "core"),
                description=entry.get("description"),
                origin=entry.get("origin"),
            )
        except ValueError as exc:
            logger.warning("Skipping tool manifest entry %r: %s", entry["name"], exc)
            continue
        if registry.register(meta).ok:
            accepted += 1
    return accepted
