import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from toolgate.agent.hooks import ToolApprovalRequired, ToolCallBudgetExceeded
from toolgate.app_container import build_approval_storage, build_tool_gate, register_tool_manifest
from toolgate.config import load_gate_config
from toolgate.persistence.kv_store import (
    FileKeyValueStore,
    HttpKeyValueStore,
    MemoryKeyValueStore,
    SqliteKeyValueStore,
)
from toolgate.tools.registry import ToolRegistry


class TestBuildToolGate(unittest.IsolatedAsyncioTestCase):
    def _gate(self, env, **kwargs):
        kwargs.setdefault("storage", MemoryKeyValueStore())
        return build_tool_gate(load_gate_config(env), clock=lambda: 1000.0, **kwargs)

    async def test_wrap_tools_filters_and_guards(self):
        gate = self._gate(
            {
                "TOOL_DENYLIST_GROUP": "exec",
                "TOOL_APPROVAL_REQUIRED": "write",
            }
        )
        tools = {"exec": lambda x: "ran", "write": lambda x: "written", "read": lambda x: "read"}
        wrapped, suppressed = gate.wrap_tools(tools, chat_id="c", user_id="u", is_group=True)
        self.assertEqual(suppressed, ["exec"])
        self.assertEqual(sorted(wrapped), ["read", "write"])
        self.assertEqual(await wrapped["read"](None), "read")
        with self.assertRaises(ToolApprovalRequired):
            await wrapped["write"](None)
        gate.approval_store.approve("c", "write")
        self.assertEqual(await wrapped["write"](None), "written")

        dm_wrapped, dm_suppressed = gate.wrap_tools(tools, chat_id="d", is_group=False)
        self.assertEqual(dm_suppressed, [])
        self.assertEqual(await dm_wrapped["exec"](None), "ran")

    async def test_wrap_agent_tools_uses_config_budget(self):
        gate = self._gate({"TOOL_MAX_CALLS_PER_RUN": "1"})
        wrapped, budget = gate.wrap_agent_tools("planner", {"read": lambda x: x})
        await wrapped["read"](1)
        with self.assertRaises(ToolCallBudgetExceeded):
            await wrapped["read"](2)
        self.assertEqual(budget.used, 1)

    def test_prepare_transcript_repairs_then_sanitizes(self):
        gate = self._gate({})
        raws = [
            {"role": "assistant", "content": [{"type": "toolCall", "id": "call|1", "name": "read"}]},
            {"role": "user", "content": "next"},
        ]
        prepared = gate.prepare_transcript(raws)
        self.assertEqual(len(prepared.repair.added), 1)
        self.assertTrue(prepared.ids_rewritten)
        self.assertEqual(prepared.messages[0]["content"][0]["id"], "call_1")
        self.assertEqual(prepared.messages[1]["toolCallId"], "call_1")
        self.assertEqual(prepared.messages[2], {"role": "user", "content": "next"})

    def test_prepare_transcript_noop(self):
        gate = self._gate({})
        raws = [{"role": "user", "content": "hi"}]
        prepared = gate.prepare_transcript(raws)
        self.assertIs(prepared.messages, raws)
        self.assertFalse(prepared.repair.changed)
        self.assertFalse(prepared.ids_rewritten)

    async def test_status_notifier_uses_config_delay(self):
        sent = []
        notifier = self._gate({"TOOL_STATUS_DELAY_MS": "10"}).status_notifier(sent.append)
        notifier.on_tool_step(["web_search"])
        await asyncio.sleep(0.05)
        self.assertEqual(sent, ["Searching the web…"])

    def test_approvals_persist_under_store_file_name(self):
        storage = MemoryKeyValueStore()
        gate = self._gate({"TOOL_APPROVAL_STORE_PATH": "state/my-approvals.json"}, storage=storage)
        gate.approval_store.approve("c", "exec")
        self.assertTrue(gate.approval_store.flush(timeout=5))
        self.assertIn("c", json.loads(storage.read("my-approvals.json")))


class TestApprovalStorageSelection(unittest.TestCase):
    def test_url_wins(self):
        storage = build_approval_storage(load_gate_config({"TOOL_APPROVAL_STORE_URL": "http://kv.local"}))
        self.assertIsInstance(storage, HttpKeyValueStore)
        storage.close()

    def test_file_path(self):
        storage = build_approval_storage(load_gate_config({}))
        self.assertIsInstance(storage, FileKeyValueStore)

    def test_sqlite_suffix(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "approvals.db"
            storage = build_approval_storage(load_gate_config({"TOOL_APPROVAL_STORE_PATH": str(path)}))
            self.assertIsInstance(storage, SqliteKeyValueStore)
            self.assertTrue(path.exists())

    def test_memory_only(self):
        self.assertIsNone(build_approval_storage(load_gate_config({"TOOL_APPROVAL_STORE_PATH": ""})))


class TestToolManifest(unittest.TestCase):
    def test_register_manifest(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "tools.json"
            path.write_text(
                json.dumps(
                    [
                        "read",
                        {"name": "web_search", "source": "web"},
                        {"name": "Read", "source": "plugin", "origin": "acme"},
                        {"name": "x", "source": "bogus"},
                        {"description": "no name"},
                    ]
                ),
                encoding="utf-8",
            )
            registry = ToolRegistry()
            self.assertEqual(register_tool_manifest(registry, path), 2)
            self.assertEqual(registry.names(), ["read", "web_search"])
            self.assertEqual(len(registry.conflicts()), 1)

    def test_manifest_must_be_list(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "tools.json"
            path.write_text("{}", encoding="utf-8")
            with self.assertRaises(ValueError):
                register_tool_manifest(ToolRegistry(), path)


if __name__ == "__main__":
    unittest.main()
