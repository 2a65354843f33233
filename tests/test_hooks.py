import asyncio
import gc
import threading
import unittest
from typing import List, Optional

from toolgate.agent.hooks import (
    GuardDecision,
    HookPipeline,
    HookStage,
    ToolApprovalRequired,
    ToolCallBlocked,
    ToolCallBudget,
    ToolCallBudgetExceeded,
    ToolRateLimited,
    build_guard_pipeline,
    wrap_tools_with_budget,
    wrap_tools_with_hooks,
)
from toolgate.services.access_control import parse_sender_tool_access
from toolgate.services.approvals import ApprovalStore
from toolgate.services.rate_limit import ToolRateLimiter, ToolRateLimitRule
from toolgate.services.tool_policy import ToolPolicy


class _RecordingHooks:
    def __init__(self, decision: Optional[GuardDecision] = None):
        self.decision = decision
        self.before: List[str] = []
        self.after: List[tuple] = []

    def before_tool_call(self, ctx):
        self.before.append(ctx.tool_name)
        return self.decision

    def after_tool_call(self, ctx, duration_ms, error):
        self.after.append((ctx.tool_name, ctx.tool_call_id, error))


class _DenyStage(HookStage):
    def __init__(self, reason: str):
        self.reason = reason

    def before_tool_call(self, ctx):
        return GuardDecision.deny(self.reason)


async def _chunks(items, fail_at: Optional[int] = None):
    for i, item in enumerate(items):
        if fail_at is not None and i == fail_at:
            raise RuntimeError("stream broke")
        yield item


class _ClosableSource:
    def __init__(self):
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


class TestWrapToolsWithHooks(unittest.IsolatedAsyncioTestCase):
    async def test_sync_and_async_tools_report_once(self):
        hooks = _RecordingHooks()

        async def read(input):
            return f"read:{input['path']}"

        wrapped = wrap_tools_with_hooks({"read": read, "echo": lambda x: x}, hooks, chat_id="c", user_id="u")
        self.assertEqual(await wrapped["read"]({"path": "a"}, tool_call_id="call_1"), "read:a")
        self.assertEqual(await wrapped["echo"]("hi"), "hi")
        self.assertEqual(hooks.before, ["read", "echo"])
        self.assertEqual(hooks.after, [("read", "call_1", None), ("echo", None, None)])

    async def test_blocked_call_never_runs(self):
        ran = []
        hooks = _RecordingHooks(GuardDecision.deny("policy"))
        wrapped = wrap_tools_with_hooks({"exec": lambda x: ran.append(x)}, hooks)
        with self.assertRaises(ToolCallBlocked) as caught:
            await wrapped["exec"]({"cmd": "ls"})
        self.assertEqual(str(caught.exception), "TOOL_CALL_BLOCKED: policy")
        self.assertEqual(ran, [])
        self.assertEqual(hooks.after, [])

    async def test_blocked_without_reason(self):
        hooks = _RecordingHooks(GuardDecision(allow=False))
        wrapped = wrap_tools_with_hooks({"exec": lambda x: x}, hooks)
        with self.assertRaises(ToolCallBlocked) as caught:
            await wrapped["exec"](None)
        self.assertEqual(str(caught.exception), "TOOL_CALL_BLOCKED")

    async def test_tool_error_reported_and_reraised(self):
        hooks = _RecordingHooks()

        def broken(input):
            raise ValueError("bad input")

        wrapped = wrap_tools_with_hooks({"broken": broken}, hooks)
        with self.assertRaises(ValueError):
            await wrapped["broken"]({})
        self.assertEqual(hooks.after, [("broken", None, "bad input")])

    async def test_non_callable_entries_pass_through(self):
        wrapped = wrap_tools_with_hooks({"missing": None}, _RecordingHooks())
        self.assertIsNone(wrapped["missing"])

    async def test_stream_drained(self):
        hooks = _RecordingHooks()
        wrapped = wrap_tools_with_hooks({"search": lambda x: _chunks(["a", "b"])}, hooks)
        stream = await wrapped["search"]("q")
        self.assertEqual(hooks.after, [])
        self.assertEqual([chunk async for chunk in stream], ["a", "b"])
        self.assertEqual(hooks.after, [("search", None, None)])

    async def test_stream_error(self):
        hooks = _RecordingHooks()
        wrapped = wrap_tools_with_hooks({"search": lambda x: _chunks(["a", "b"], fail_at=1)}, hooks)
        stream = await wrapped["search"]("q")
        seen = []
        with self.assertRaises(RuntimeError):
            async for chunk in stream:
                seen.append(chunk)
        self.assertEqual(seen, ["a"])
        self.assertEqual(hooks.after, [("search", None, "stream broke")])

    async def test_stream_closed_early(self):
        hooks = _RecordingHooks()
        closed = []

        async def source():
            try:
                for item in ("a", "b", "c"):
                    yield item
            finally:
                closed.append(True)

        wrapped = wrap_tools_with_hooks({"search": lambda x: source()}, hooks)
        stream = await wrapped["search"]("q")
        self.assertEqual(await stream.__anext__(), "a")
        await stream.aclose()
        self.assertEqual(closed, [True])
        self.assertEqual(hooks.after, [("search", None, "cancelled")])

    async def test_stream_closed_before_first_chunk(self):
        hooks = _RecordingHooks()
        source = _ClosableSource()
        wrapped = wrap_tools_with_hooks({"search": lambda x: source}, hooks)
        stream = await wrapped["search"]("q")
        await stream.aclose()
        await stream.aclose()
        self.assertTrue(source.closed)
        self.assertEqual(hooks.after, [("search", None, "cancelled")])

    async def test_stream_dropped_unread_reports_cancelled(self):
        hooks = _RecordingHooks()
        wrapped = wrap_tools_with_hooks({"search": lambda x: _chunks(["a"])}, hooks)
        stream = await wrapped["search"]("q")
        del stream
        gc.collect()
        self.assertEqual(hooks.after, [("search", None, "cancelled")])

    async def test_cancelled_call_reports_once(self):
        hooks = _RecordingHooks()
        started = asyncio.Event()

        async def slow(input):
            started.set()
            await asyncio.sleep(10)

        wrapped = wrap_tools_with_hooks({"slow": slow}, hooks)
        task = asyncio.ensure_future(wrapped["slow"](None))
        await started.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(hooks.after, [("slow", None, "cancelled")])


class TestGuardPipeline(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.now = 1000.0
        self.approvals = ApprovalStore(clock=lambda: self.now)
        self.limiter = ToolRateLimiter([ToolRateLimitRule("web_search", 1, 60)], clock=lambda: self.now)

    def _pipeline(self, **kwargs):
        defaults = dict(
            policy=ToolPolicy.of(deny=["exec"]),
            access=parse_sender_tool_access(deny_user_ids="bad"),
            approval_required=["write"],
            approval_store=self.approvals,
            rate_limiter=self.limiter,
        )
        defaults.update(kwargs)
        return build_guard_pipeline(**defaults)

    async def test_policy_block(self):
        wrapped = wrap_tools_with_hooks({"exec": lambda x: x}, self._pipeline(), chat_id="c", user_id="u")
        with self.assertRaises(ToolCallBlocked) as caught:
            await wrapped["exec"](None)
        self.assertEqual(caught.exception.reason, "policy")

    async def test_sender_block_uses_decision_reason(self):
        wrapped = wrap_tools_with_hooks({"read": lambda x: x}, self._pipeline(), chat_id="c", user_id="bad")
        with self.assertRaises(ToolCallBlocked) as caught:
            await wrapped["read"](None)
        self.assertEqual(str(caught.exception), "TOOL_CALL_BLOCKED: user_denied")

    async def test_approval_required_until_approved(self):
        wrapped = wrap_tools_with_hooks({"write": lambda x: "ok"}, self._pipeline(), chat_id="c", user_id="u")
        with self.assertRaises(ToolApprovalRequired) as caught:
            await wrapped["write"](None)
        self.assertEqual(str(caught.exception), "TOOL_CALL_BLOCKED: approval_required")
        self.approvals.approve("c", "write")
        self.assertEqual(await wrapped["write"](None), "ok")

    async def test_rate_limited_carries_reset(self):
        wrapped = wrap_tools_with_hooks({"web_search": lambda x: "r"}, self._pipeline(), chat_id="c", user_id="u")
        self.assertEqual(await wrapped["web_search"](None), "r")
        self.now += 15
        with self.assertRaises(ToolRateLimited) as caught:
            await wrapped["web_search"](None)
        self.assertEqual(caught.exception.reset_ms, 45000)
        self.assertEqual(str(caught.exception), "TOOL_CALL_BLOCKED: rate_limited")

    async def test_policy_block_does_not_consume_rate_slot(self):
        pipeline = self._pipeline(policy=ToolPolicy.of(deny=["web_search"]))
        blocked = wrap_tools_with_hooks({"web_search": lambda x: "r"}, pipeline, chat_id="c")
        with self.assertRaises(ToolCallBlocked):
            await blocked["web_search"](None)
        self.assertTrue(self.limiter.check("web_search", "c").allowed)

    async def test_extra_stage_runs_first(self):
        pipeline = self._pipeline(extra_stages=[_DenyStage("plugin_veto")])
        wrapped = wrap_tools_with_hooks({"read": lambda x: x}, pipeline)
        with self.assertRaises(ToolCallBlocked) as caught:
            await wrapped["read"](None)
        self.assertEqual(caught.exception.reason, "plugin_veto")

    async def test_pipeline_after_reaches_every_stage(self):
        first, second = _RecordingHooks(), _RecordingHooks()
        wrapped = wrap_tools_with_hooks({"read": lambda x: x}, HookPipeline([first, second]))
        await wrapped["read"](1)
        self.assertEqual(len(first.after), 1)
        self.assertEqual(len(second.after), 1)


class TestToolCallBudget(unittest.IsolatedAsyncioTestCase):
    async def test_budget_shared_across_tools(self):
        hooks = _RecordingHooks()
        wrapped = wrap_tools_with_budget(
            {"a": lambda x: "a", "b": lambda x: "b"}, hooks, max_tool_calls=2, agent_id="planner"
        )
        await wrapped["a"](None)
        await wrapped["b"](None)
        with self.assertRaises(ToolCallBudgetExceeded) as caught:
            await wrapped["a"](None)
        self.assertEqual(str(caught.exception), "TOOL_CALL_BUDGET_EXCEEDED")
        self.assertEqual(hooks.before, ["a", "b"])
        self.assertEqual(hooks.after[0][1], "orch:planner:a")

    async def test_guard_denial_does_not_consume(self):
        budget = ToolCallBudget(1)
        hooks = _RecordingHooks(GuardDecision.deny("policy"))
        wrapped = wrap_tools_with_budget({"a": lambda x: x}, hooks, budget=budget)
        with self.assertRaises(ToolCallBlocked):
            await wrapped["a"](None)
        self.assertEqual(budget.used, 0)
        self.assertEqual(budget.remaining, 1)

    async def test_unlimited_budget(self):
        budget = ToolCallBudget(0)
        wrapped = wrap_tools_with_budget({"a": lambda x: x}, None, budget=budget)
        for _ in range(5):
            await wrapped["a"](None)
        self.assertEqual(budget.used, 5)
        self.assertIsNone(budget.remaining)

    def test_reserve_is_atomic_across_threads(self):
        budget = ToolCallBudget(50)
        granted = []

        def worker():
            for _ in range(20):
                try:
                    budget.reserve()
                except ToolCallBudgetExceeded:
                    continue
                granted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(granted), 50)
        self.assertEqual(budget.used, 50)
        self.assertEqual(budget.remaining, 0)

    def test_release_returns_slot(self):
        budget = ToolCallBudget(1)
        budget.reserve()
        with self.assertRaises(ToolCallBudgetExceeded):
            budget.reserve()
        budget.release()
        budget.reserve()
        self.assertEqual(budget.used, 1)

    async def test_explicit_call_id_wins(self):
        hooks = _RecordingHooks()
        wrapped = wrap_tools_with_budget({"a": lambda x: x}, hooks)
        await wrapped["a"](None, tool_call_id="call_9")
        self.assertEqual(hooks.after[0][1], "call_9")


if __name__ == "__main__":
    unittest.main()
