import unittest

from toolgate.services.access_control import (
    REASON_CHAT_TOOL_DENIED,
    REASON_CHAT_TOOL_NOT_ALLOWED,
    REASON_USER_DENIED,
    REASON_USER_NOT_ALLOWED,
    REASON_USER_TOOL_DENIED,
    REASON_USER_TOOL_NOT_ALLOWED,
    SenderToolAccess,
    is_tool_allowed_for_sender,
    parse_sender_tool_access,
)


class TestSenderAccessParsing(unittest.TestCase):
    def test_tool_maps_expand_groups(self):
        access = parse_sender_tool_access(
            allow_user_ids="1, 2,",
            allow_user_tools="1:group:web|Bash;bad;:x;3:",
        )
        self.assertEqual(access.allow_user_ids, frozenset({"1", "2"}))
        self.assertEqual(access.allow_user_tools, {"1": frozenset({"web_search", "exec"})})


class TestSenderPrecedence(unittest.TestCase):
    def test_unconfigured_allows(self):
        decision = is_tool_allowed_for_sender("exec", SenderToolAccess(), user_id="1", chat_id="c")
        self.assertTrue(decision.allowed)
        self.assertIsNone(decision.reason)

    def test_user_deny_beats_everything(self):
        access = parse_sender_tool_access(
            allow_user_ids="1", deny_user_ids="1", allow_user_tools="1:exec"
        )
        decision = is_tool_allowed_for_sender("exec", access, user_id="1")
        self.assertEqual(decision.reason, REASON_USER_DENIED)

    def test_user_not_in_allowlist(self):
        access = parse_sender_tool_access(allow_user_ids="1")
        self.assertEqual(is_tool_allowed_for_sender("exec", access, user_id="2").reason, REASON_USER_NOT_ALLOWED)
        self.assertTrue(is_tool_allowed_for_sender("exec", access, user_id="1").allowed)

    def test_missing_user_skips_user_rules(self):
        access = parse_sender_tool_access(allow_user_ids="1", deny_user_tools="1:exec")
        self.assertTrue(is_tool_allowed_for_sender("exec", access).allowed)

    def test_user_tool_rules(self):
        access = parse_sender_tool_access(deny_user_tools="1:exec", allow_user_tools="2:read")
        self.assertEqual(is_tool_allowed_for_sender("bash", access, user_id="1").reason, REASON_USER_TOOL_DENIED)
        self.assertEqual(is_tool_allowed_for_sender("exec", access, user_id="2").reason, REASON_USER_TOOL_NOT_ALLOWED)
        self.assertTrue(is_tool_allowed_for_sender("read", access, user_id="2").allowed)

    def test_user_rules_checked_before_chat_rules(self):
        access = parse_sender_tool_access(allow_user_tools="1:read", deny_chat_tools="c:exec")
        decision = is_tool_allowed_for_sender("exec", access, user_id="1", chat_id="c")
        self.assertEqual(decision.reason, REASON_USER_TOOL_NOT_ALLOWED)

    def test_chat_tool_rules(self):
        access = parse_sender_tool_access(deny_chat_tools="c1:exec", allow_chat_tools="c2:read")
        self.assertEqual(is_tool_allowed_for_sender("exec", access, chat_id="c1").reason, REASON_CHAT_TOOL_DENIED)
        self.assertEqual(is_tool_allowed_for_sender("exec", access, chat_id="c2").reason, REASON_CHAT_TOOL_NOT_ALLOWED)
        self.assertTrue(is_tool_allowed_for_sender("exec", access, chat_id="c3").allowed)


if __name__ == "__main__":
    unittest.main()
