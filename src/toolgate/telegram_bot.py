import asyncio
import logging
import time
from typing import Dict, List, Optional

from telegram import Update
from telegram.ext import ApplicationBuilder, CommandHandler, ContextTypes

from toolgate.app_container import ToolGate
from toolgate.services.access_control import is_tool_allowed_for_sender
from toolgate.services.tool_policy import filter_tool_metas_by_policy
from toolgate.tools.registry import normalize_tool_name

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 3800


def _ids(update: Update):
    chat_id = str(update.effective_chat.id)
    user_id = str(update.message.from_user.id) if update.message.from_user else ""
    is_group = getattr(update.effective_chat, "type", "private") != "private"
    return chat_id, user_id, is_group


def _format_remaining(expires_at: int, now_ms: int) -> str:
    minutes = max(0, (expires_at - now_ms) // 60000)
    seconds = max(0, (expires_at - now_ms) // 1000) % 60
    return f"{minutes}m{seconds:02d}s"


def _expiry_handles(context: ContextTypes.DEFAULT_TYPE) -> Dict[str, asyncio.TimerHandle]:
    return context.application.bot_data.setdefault("approval_expiry_handles", {})


async def handle_tools(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        if not update.message or not update.effective_chat:
            return
        gate: ToolGate = context.bot_data.get("gate")
        chat_id, user_id, is_group = _ids(update)
        config = gate.config
        registered = gate.registry.list()
        visible = filter_tool_metas_by_policy(registered, config.policies.for_chat(is_group), config.tool_groups)
        visible_names = {normalize_tool_name(meta.name) for meta in visible}
        suppressed = [meta.name for meta in registered if normalize_tool_name(meta.name) not in visible_names]
        required = set(config.approval_required)
        lines: List[str] = []
        for meta in visible:
            decision = is_tool_allowed_for_sender(meta.name, config.sender_access, user_id=user_id, chat_id=chat_id)
            if not decision.allowed:
                suppressed.append(meta.name)
                continue
            name = normalize_tool_name(meta.name)
            marker = ""
            if name in required:
                marker = " (approved)" if gate.approval_store.is_approved(chat_id, name) else " (needs /approve)"
            rule = gate.rate_limiter.find_rule(name)
            if rule is not None:
                marker += f" {rule.max}/{rule.window_seconds}s"
            lines.append(f"- {meta.name} [{meta.source}]{marker}")
        if not lines and not suppressed:
            await update.message.reply_text("No tools available in this chat.")
            return
        text = "Tools:\n" + ("\n".join(lines) if lines else "(none)")
        if suppressed:
            text += "\nHidden: " + ", ".join(sorted(suppressed))
        conflicts = gate.registry.conflicts()
        if conflicts:
            text += "\nConflicts: " + ", ".join(
                f"{c.tool.name} ({c.tool.source} vs {c.existing.source})" for c in conflicts
            )
        await update.message.reply_text(text[:MAX_OUTPUT_CHARS])
    except Exception as exc:
        logger.exception("Tools handler error: %s", exc)


async def handle_approve(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        if not update.message or not update.effective_chat:
            return
        if not context.args:
            await update.message.reply_text("Usage: /approve <tool>")
            return
        gate: ToolGate = context.bot_data.get("gate")
        chat_id, user_id, _ = _ids(update)
        tool = normalize_tool_name(context.args[0])
        if tool not in gate.config.approval_required:
            await update.message.reply_text(f"{tool} does not require approval.")
            return
        decision = is_tool_allowed_for_sender(tool, gate.config.sender_access, user_id=user_id, chat_id=chat_id)
        if not decision.allowed:
            await update.message.reply_text(f"You cannot approve {tool} ({decision.reason}).")
            return
        expires_at = gate.approval_store.approve(chat_id, tool)
        if expires_at is None:
            await update.message.reply_text("Approval failed.")
            return
        handles = _expiry_handles(context)
        previous = handles.pop(f"{chat_id}:{tool}", None)
        if previous is not None:
            previous.cancel()
        handle = gate.approval_store.schedule_expiry(chat_id, tool)
        if handle is not None:
            handles[f"{chat_id}:{tool}"] = handle
        remaining = _format_remaining(expires_at, int(time.time() * 1000))
        await update.message.reply_text(f"Approved {tool} for this chat ({remaining}).")
    except Exception as exc:
        logger.exception("Approve handler error: %s", exc)


async def handle_approvals(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        if not update.message or not update.effective_chat:
            return
        gate: ToolGate = context.bot_data.get("gate")
        chat_id, _, _ = _ids(update)
        entries = gate.approval_store.list_approvals(chat_id)
        if not entries:
            await update.message.reply_text("No active approvals.")
            return
        now_ms = int(time.time() * 1000)
        lines = [f"- {entry.tool}: {_format_remaining(entry.expires_at, now_ms)} left" for entry in entries]
        await update.message.reply_text("Active approvals:\n" + "\n".join(lines))
    except Exception as exc:
        logger.exception("Approvals handler error: %s", exc)


async def handle_revoke(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        if not update.message or not update.effective_chat:
            return
        gate: ToolGate = context.bot_data.get("gate")
        chat_id, _, _ = _ids(update)
        target = (context.args[0] if context.args else "all").strip().lower()
        handles = _expiry_handles(context)
        if target == "all":
            gate.approval_store.clear(chat_id)
            for key in [k for k in handles if k.startswith(f"{chat_id}:")]:
                handles.pop(key).cancel()
            await update.message.reply_text("All approvals revoked.")
            return
        tool = normalize_tool_name(target)
        gate.approval_store.clear(chat_id, tool)
        handle = handles.pop(f"{chat_id}:{tool}", None)
        if handle is not None:
            handle.cancel()
        await update.message.reply_text(f"Revoked {tool}.")
    except Exception as exc:
        logger.exception("Revoke handler error: %s", exc)


async def handle_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Telegram error: %s", context.error)


def build_application(token: str, gate: ToolGate, callbacks: Optional[dict] = None):
    app = ApplicationBuilder().token(token).build()
    app.bot_data["gate"] = gate
    app.bot_data.update(callbacks or {})

    app.add_handler(CommandHandler("tools", handle_tools))
    app.add_handler(CommandHandler("approve", handle_approve))
    app.add_handler(CommandHandler("approvals", handle_approvals))
    app.add_handler(CommandHandler("revoke", handle_revoke))
    app.add_error_handler(handle_error)
    return app
