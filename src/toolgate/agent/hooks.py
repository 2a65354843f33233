"""Before/after lifecycle around tool execution.

A tool map (name -> callable) is wrapped so that every call:

1. optionally checks a per-run call budget (``wrap_tools_with_budget``),
2. asks the guard (``ToolHooks.before_tool_call``) whether it may run,
3. executes the tool, timing it,
4. reports the outcome through ``ToolHooks.after_tool_call`` exactly once.

Streamed results (async iterables) are proxied chunk by chunk; the after hook
fires when the stream is drained, raises, is closed or is dropped unread.

Guards are composed with ``HookPipeline``; ``build_guard_pipeline`` assembles
the standard order policy -> sender -> approval -> rate limit -> logging, so a
call rejected by an earlier stage never consumes a rate-limit slot.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

from toolgate.observability.structured_log import log_json
from toolgate.services.access_control import SenderToolAccess, is_tool_allowed_for_sender
from toolgate.services.approvals import ApprovalStore
from toolgate.services.rate_limit import ToolRateLimiter
from toolgate.services.tool_policy import ToolGroups, ToolPolicy, is_tool_allowed
from toolgate.tools.base import ToolCallable, ToolHookContext, ToolMap
from toolgate.tools.registry import normalize_tool_name

logger = logging.getLogger(__name__)

REASON_POLICY = "policy"
REASON_APPROVAL_REQUIRED = "approval_required"
REASON_RATE_LIMITED = "rate_limited"

# ---------------------------------------------------------------------------
# Classified errors
# ---------------------------------------------------------------------------


class ToolCallError(Exception):
    """Base class for calls rejected before the tool ran."""

    code = "TOOL_CALL_ERROR"


class ToolCallBlocked(ToolCallError):
    code = "TOOL_CALL_BLOCKED"

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(f"{self.code}: {reason}" if reason else self.code)
        self.reason = reason


class ToolApprovalRequired(ToolCallBlocked):
    def __init__(self, tool_name: str) -> None:
        super().__init__(REASON_APPROVAL_REQUIRED)
        self.tool_name = tool_name


class ToolRateLimited(ToolCallBlocked):
    def __init__(self, reset_ms: int) -> None:
        super().__init__(REASON_RATE_LIMITED)
        self.reset_ms = reset_ms


class ToolCallBudgetExceeded(ToolCallError):
    code = "TOOL_CALL_BUDGET_EXCEEDED"

    def __init__(self, max_tool_calls: int) -> None:
        super().__init__(self.code)
        self.max_tool_calls = max_tool_calls


# ---------------------------------------------------------------------------
# Hook interface and pipeline
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GuardDecision:
    allow: Optional[bool] = None
    reason: Optional[str] = None
    reset_ms: Optional[int] = None

    @classmethod
    def deny(cls, reason: str, reset_ms: Optional[int] = None) -> "GuardDecision":
        return cls(allow=False, reason=reason, reset_ms=reset_ms)


class ToolHooks(Protocol):
    def before_tool_call(self, ctx: ToolHookContext) -> Optional[GuardDecision]:
        ...

    def after_tool_call(self, ctx: ToolHookContext, duration_ms: int, error: Optional[str]) -> None:
        ...


class HookStage:
    """No-op stage; subclasses override one or both methods."""

    def before_tool_call(self, ctx: ToolHookContext) -> Optional[GuardDecision]:
        return None

    def after_tool_call(self, ctx: ToolHookContext, duration_ms: int, error: Optional[str]) -> None:
        return None


def _log_event(event: str, ctx: ToolHookContext, **fields: Any) -> None:
    log_json(
        logger,
        event,
        tool=ctx.tool_name,
        tool_call_id=ctx.tool_call_id,
        chat_id=ctx.chat_id,
        user_id=ctx.user_id,
        **fields,
    )


class PolicyStage(HookStage):
    def __init__(self, policy: Optional[ToolPolicy], groups: Optional[ToolGroups] = None) -> None:
        self._policy = policy
        self._groups = groups

    def before_tool_call(self, ctx: ToolHookContext) -> Optional[GuardDecision]:
        if self._policy is None or is_tool_allowed(ctx.tool_name, self._policy, self._groups):
            return None
        _log_event("tool_blocked", ctx, reason=REASON_POLICY)
        return GuardDecision.deny(REASON_POLICY)


class SenderAccessStage(HookStage):
    def __init__(self, access: SenderToolAccess) -> None:
        self._access = access

    def before_tool_call(self, ctx: ToolHookContext) -> Optional[GuardDecision]:
        decision = is_tool_allowed_for_sender(
            ctx.tool_name, self._access, user_id=ctx.user_id, chat_id=ctx.chat_id
        )
        if decision.allowed:
            return None
        _log_event("tool_blocked", ctx, reason=decision.reason)
        return GuardDecision.deny(decision.reason or "sender_policy")


class ApprovalStage(HookStage):
    def __init__(self, required: Iterable[str], store: ApprovalStore) -> None:
        self._required = frozenset(normalize_tool_name(t) for t in required)
        self._store = store

    def before_tool_call(self, ctx: ToolHookContext) -> Optional[GuardDecision]:
        tool = normalize_tool_name(ctx.tool_name)
        if tool not in self._required:
            return None
        if self._store.is_approved(ctx.chat_id or "", tool):
            return None
        _log_event("tool_approval_required", ctx)
        return GuardDecision.deny(REASON_APPROVAL_REQUIRED)


class RateLimitStage(HookStage):
    def __init__(self, limiter: ToolRateLimiter) -> None:
        self._limiter = limiter

    def before_tool_call(self, ctx: ToolHookContext) -> Optional[GuardDecision]:
        result = self._limiter.check(ctx.tool_name, ctx.chat_id, ctx.user_id)
        if result.allowed:
            return None
        _log_event("tool_rate_limited", ctx, reset_ms=result.reset_ms)
        return GuardDecision.deny(REASON_RATE_LIMITED, reset_ms=result.reset_ms)


class LoggingStage(HookStage):
    def before_tool_call(self, ctx: ToolHookContext) -> Optional[GuardDecision]:
        _log_event("tool_call", ctx)
        return None

    def after_tool_call(self, ctx: ToolHookContext, duration_ms: int, error: Optional[str]) -> None:
        _log_event("tool_result", ctx, duration_ms=duration_ms, error=error)


class HookPipeline:
    """Ordered stages; the first ``allow=False`` decision short-circuits."""

    def __init__(self, stages: Sequence[ToolHooks] = ()) -> None:
        self._stages: List[ToolHooks] = list(stages)

    @property
    def stages(self) -> List[ToolHooks]:
        return list(self._stages)

    def before_tool_call(self, ctx: ToolHookContext) -> Optional[GuardDecision]:
        for stage in self._stages:
            decision = stage.before_tool_call(ctx)
            if decision is not None and decision.allow is False:
                return decision
        return None

    def after_tool_call(self, ctx: ToolHookContext, duration_ms: int, error: Optional[str]) -> None:
        for stage in self._stages:
            stage.after_tool_call(ctx, duration_ms, error)


def build_guard_pipeline(
    policy: Optional[ToolPolicy] = None,
    groups: Optional[ToolGroups] = None,
    access: Optional[SenderToolAccess] = None,
    approval_required: Iterable[str] = (),
    approval_store: Optional[ApprovalStore] = None,
    rate_limiter: Optional[ToolRateLimiter] = None,
    extra_stages: Sequence[ToolHooks] = (),
    log_calls: bool = True,
) -> HookPipeline:
    stages: List[ToolHooks] = list(extra_stages)
    if policy is not None:
        stages.append(PolicyStage(policy, groups))
    if access is not None:
        stages.append(SenderAccessStage(access))
    required = list(approval_required)
    if required and approval_store is not None:
        stages.append(ApprovalStage(required, approval_store))
    if rate_limiter is not None:
        stages.append(RateLimitStage(rate_limiter))
    if log_calls:
        stages.append(LoggingStage())
    return HookPipeline(stages)


# ---------------------------------------------------------------------------
# Call budget
# ---------------------------------------------------------------------------


class ToolCallBudget:
    """Per-run counter of dispatched calls shared by all wrapped tools."""

    def __init__(self, max_tool_calls: Optional[int] = None) -> None:
        self.max_tool_calls = max_tool_calls if max_tool_calls and max_tool_calls > 0 else None
        self._used = 0
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        return self._used

    @property
    def remaining(self) -> Optional[int]:
        if self.max_tool_calls is None:
            return None
        return max(0, self.max_tool_calls - self._used)

    def reserve(self) -> None:
        """Take a slot or raise; check and increment happen under one lock."""
        with self._lock:
            if self.max_tool_calls is not None and self._used >= self.max_tool_calls:
                raise ToolCallBudgetExceeded(self.max_tool_calls)
            self._used += 1

    def release(self) -> None:
        with self._lock:
            if self._used > 0:
                self._used -= 1


# ---------------------------------------------------------------------------
# Wrapping
# ---------------------------------------------------------------------------


def _describe_error(exc: BaseException) -> str:
    if isinstance(exc, (asyncio.CancelledError, GeneratorExit)):
        return "cancelled"
    return str(exc) or exc.__class__.__name__


def _raise_for_decision(decision: GuardDecision, ctx: ToolHookContext) -> None:
    if decision.reason == REASON_RATE_LIMITED:
        raise ToolRateLimited(int(decision.reset_ms or 0))
    if decision.reason == REASON_APPROVAL_REQUIRED:
        raise ToolApprovalRequired(ctx.tool_name)
    raise ToolCallBlocked(decision.reason)


class _CallOutcome:
    """Fires the after hook at most once."""

    def __init__(self, hooks: Optional[ToolHooks], ctx: ToolHookContext) -> None:
        self._hooks = hooks
        self._ctx = ctx
        self._started = time.monotonic()
        self._done = False

    def finish(self, error: Optional[str] = None) -> None:
        if self._done:
            return
        self._done = True
        if self._hooks is not None:
            duration_ms = int((time.monotonic() - self._started) * 1000)
            self._hooks.after_tool_call(self._ctx, duration_ms, error)


def _is_async_iterable(value: Any) -> bool:
    return hasattr(value, "__aiter__") and not isinstance(value, (str, bytes))


class _HookedStream:
    """Proxies a streamed result and reports its outcome exactly once.

    Closing the proxy (or dropping it) before the stream was drained reports
    ``"cancelled"``, also when no chunk was ever pulled.
    """

    def __init__(self, source: Any, outcome: _CallOutcome) -> None:
        self._source = source
        self._iter: Optional[AsyncIterator[Any]] = None
        self._outcome = outcome
        self._closed = False

    def __aiter__(self) -> "_HookedStream":
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        if self._iter is None:
            self._iter = self._source.__aiter__()
        try:
            return await self._iter.__anext__()
        except StopAsyncIteration:
            self._closed = True
            self._outcome.finish()
            raise
        except BaseException as exc:
            self._closed = True
            self._outcome.finish(_describe_error(exc))
            await self._close_source()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._close_source()
        finally:
            self._outcome.finish("cancelled")

    async def _close_source(self) -> None:
        target = self._iter if self._iter is not None else self._source
        aclose = getattr(target, "aclose", None)
        if aclose is not None:
            await aclose()

    def __del__(self) -> None:
        if not self._closed:
            self._closed = True
            self._outcome.finish("cancelled")


def _wrap_tool(
    name: str,
    tool: ToolCallable,
    hooks: Optional[ToolHooks],
    chat_id: Optional[str],
    user_id: Optional[str],
    budget: Optional[ToolCallBudget] = None,
    default_call_id: Optional[str] = None,
) -> Callable[..., Any]:
    async def execute(input: Any = None, tool_call_id: Optional[str] = None) -> Any:
        if budget is not None:
            budget.reserve()
        ctx = ToolHookContext(
            tool_name=name,
            tool_call_id=tool_call_id or default_call_id,
            input=input,
            chat_id=chat_id,
            user_id=user_id,
        )
        try:
            decision = hooks.before_tool_call(ctx) if hooks is not None else None
            if decision is not None and decision.allow is False:
                _raise_for_decision(decision, ctx)
        except BaseException:
            if budget is not None:
                budget.release()
            raise
        outcome = _CallOutcome(hooks, ctx)
        try:
            result = tool(input)
            if inspect.isawaitable(result):
                result = await result
        except BaseException as exc:
            outcome.finish(_describe_error(exc))
            raise
        if _is_async_iterable(result):
            return _HookedStream(result, outcome)
        outcome.finish()
        return result

    execute.__name__ = f"wrapped_{name}"
    return execute


def wrap_tools_with_hooks(
    tools: Mapping[str, Optional[ToolCallable]],
    hooks: Optional[ToolHooks],
    chat_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> ToolMap:
    """Wrap every callable; entries without a callable pass through unchanged."""
    wrapped: ToolMap = {}
    for name, tool in tools.items():
        if tool is None or not callable(tool):
            wrapped[name] = tool  # type: ignore[assignment]
            continue
        wrapped[name] = _wrap_tool(name, tool, hooks, chat_id, user_id)
    return wrapped


def wrap_tools_with_budget(
    tools: Mapping[str, Optional[ToolCallable]],
    hooks: Optional[ToolHooks] = None,
    max_tool_calls: Optional[int] = None,
    agent_id: str = "agent",
    chat_id: Optional[str] = None,
    user_id: Optional[str] = None,
    budget: Optional[ToolCallBudget] = None,
) -> ToolMap:
    """Like ``wrap_tools_with_hooks`` plus a shared per-run call budget.

    A slot is reserved before the guard runs and given back when the guard
    rejects the call.
    """
    budget = budget or ToolCallBudget(max_tool_calls)
    wrapped: ToolMap = {}
    for name, tool in tools.items():
        if tool is None or not callable(tool):
            wrapped[name] = tool  # type: ignore[assignment]
            continue
        wrapped[name] = _wrap_tool(
            name,
            tool,
            hooks,
            chat_id,
            user_id,
            budget=budget,
            default_call_id=f"orch:{agent_id}:{name}",
        )
    return wrapped
