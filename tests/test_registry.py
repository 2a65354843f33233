import unittest

from toolgate.tools import ToolMeta, ToolRegistry, normalize_tool_name


class TestNormalizeToolName(unittest.TestCase):
    def test_lowercases_and_trims(self):
        self.assertEqual(normalize_tool_name("  Web_Search "), "web_search")

    def test_aliases(self):
        self.assertEqual(normalize_tool_name("Bash"), "exec")
        self.assertEqual(normalize_tool_name("apply-patch"), "apply_patch")

    def test_non_string_is_empty(self):
        self.assertEqual(normalize_tool_name(None), "")
        self.assertEqual(normalize_tool_name(42), "")


class TestToolRegistry(unittest.TestCase):
    def test_first_registration_wins(self):
        registry = ToolRegistry()
        self.assertTrue(registry.register(ToolMeta("web_search", source="core")).ok)
        result = registry.register(ToolMeta("Web_Search", source="plugin", origin="acme"))
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "duplicate-name")
        self.assertEqual(registry.get("WEB_SEARCH").source, "core")
        self.assertEqual(registry.names(), ["web_search"])

    def test_same_identity_is_idempotent(self):
        registry = ToolRegistry()
        registry.register(ToolMeta("memory", source="memory"))
        self.assertTrue(registry.register(ToolMeta("memory", source="memory")).ok)
        self.assertEqual(registry.conflicts(), [])

    def test_conflicts_deduplicated_per_source_pair(self):
        seen = []
        registry = ToolRegistry(on_conflict=seen.append)
        registry.register(ToolMeta("exec", source="core"))
        registry.register(ToolMeta("bash", source="plugin", origin="a"))
        registry.register(ToolMeta("Bash", source="plugin", origin="b"))
        registry.register(ToolMeta("exec", source="command"))
        conflicts = registry.conflicts()
        self.assertEqual(len(conflicts), 2)
        self.assertEqual(conflicts[0].normalized_name, "exec")
        self.assertEqual(conflicts[0].existing.source, "core")
        self.assertEqual([c.tool.source for c in conflicts], ["plugin", "command"])
        self.assertEqual(len(seen), 2)
        self.assertEqual(seen[0]["event"], "tool_conflict")
        self.assertEqual(seen[0]["existing_source"], "core")

    def test_empty_name_rejected(self):
        registry = ToolRegistry()
        result = registry.register(ToolMeta("   "))
        self.assertFalse(result.ok)
        self.assertEqual(registry.list(), [])

    def test_unknown_source_rejected(self):
        with self.assertRaises(ValueError):
            ToolMeta("x", source="nope")


if __name__ == "__main__":
    unittest.main()
