from dataclasses import dataclass
from typing import List

from toolgate.agent.hooks import (
    ToolApprovalRequired,
    ToolCallBlocked,
    ToolCallBudgetExceeded,
    ToolRateLimited,
)


@dataclass(frozen=True)
class RecoveryAction:
    action_id: str
    label: str
    description: str


@dataclass(frozen=True)
class ErrorCatalogEntry:
    code: str
    title: str
    user_message: str
    triggers: List[str]
    actions: List[RecoveryAction]


ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        code="ERR_TOOL_APPROVAL_REQUIRED",
        title="Tool requires approval",
        user_message="This tool needs to be approved for the chat before it can run.",
        triggers=["TOOL_CALL_BLOCKED: approval_required"],
        actions=[
            RecoveryAction("approve_tool", "Approve tool", "Run /approve <tool> and retry the request."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_TOOL_RATE_LIMITED",
        title="Tool rate limit reached",
        user_message="This tool was used too often. Try again after the limit window resets.",
        triggers=["TOOL_CALL_BLOCKED: rate_limited"],
        actions=[
            RecoveryAction("retry_later", "Retry later", "Wait for the window to reset and retry."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_TOOL_BLOCKED",
        title="Tool blocked by policy",
        user_message="The tool is not available to you in this chat.",
        triggers=["TOOL_CALL_BLOCKED"],
        actions=[
            RecoveryAction("list_tools", "List tools", "Run /tools to see what is available."),
            RecoveryAction("ask_admin", "Ask an admin", "Request access to the tool."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_TOOL_BUDGET_EXCEEDED",
        title="Tool call budget exhausted",
        user_message="The agent reached its tool call limit for this run.",
        triggers=["TOOL_CALL_BUDGET_EXCEEDED"],
        actions=[
            RecoveryAction("answer_now", "Answer with what we have", "Ask the model to answer without more tools."),
            RecoveryAction("retry_same_agent", "Retry", "Start a new run with a fresh budget."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_UNKNOWN",
        title="Unknown tool error",
        user_message="An unknown error occurred.",
        triggers=[],
        actions=[
            RecoveryAction("retry_same_agent", "Retry", "Retry once to confirm reproducibility."),
        ],
    ),
]

_EXCEPTION_CODES: List[tuple] = [
    (ToolApprovalRequired, "ERR_TOOL_APPROVAL_REQUIRED"),
    (ToolRateLimited, "ERR_TOOL_RATE_LIMITED"),
    (ToolCallBlocked, "ERR_TOOL_BLOCKED"),
    (ToolCallBudgetExceeded, "ERR_TOOL_BUDGET_EXCEEDED"),
]


def detect_error_code(text: str) -> str:
    value = text or ""
    for entry in ERROR_CATALOG:
        if any(trigger in value for trigger in entry.triggers):
            return entry.code
    return "ERR_UNKNOWN"


def error_code_for_exception(exc: BaseException) -> str:
    for exc_type, code in _EXCEPTION_CODES:
        if isinstance(exc, exc_type):
            return code
    return detect_error_code(str(exc))


def get_catalog_entry(code: str) -> ErrorCatalogEntry:
    for entry in ERROR_CATALOG:
        if entry.code == code:
            return entry
    return next(entry for entry in ERROR_CATALOG if entry.code == "ERR_UNKNOWN")
