"""Telegram admin bot — deny-list management, status and the log chat.

Commands:
/help, /status, /deny_nation, /allow_nation, /deny_identity,
/allow_identity, /denylist

Uses python-telegram-bot v21+ async. All commands are restricted to admins
listed in ADMIN_TELEGRAM_IDS. Also receives the transcript of every ended
session and posts it to LOG_CHAT_ID (or to the admins when unset).
"""

from __future__ import annotations

import html
import io
import logging
import uuid
from collections.abc import Callable, Coroutine
from functools import wraps
from typing import TYPE_CHECKING, Any

from telegram import InputFile, Update
from telegram.constants import ParseMode
from telegram.ext import Application, CommandHandler, ContextTypes

from src.admin.events import emit, subscribe, unsubscribe
from src.config import settings
from src.denylist.store import DenyChange, DenyListStore, deny_list
from src.models.enums import DenyCategory, SessionOutcome, SessionState
from src.schemas.events import EventType, SystemEvent

if TYPE_CHECKING:
    from src.conversation.engine import SessionWorkflow

logger = logging.getLogger(__name__)

# Telegram rejects messages longer than 4096 characters
_MAX_MESSAGE_LENGTH = 4000


# ── Authorization ────────────────────────────────────────────────────


def admin_only(
    func_: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator — rejects non-admin users with a denial message.

    Works on both standalone functions (update, context) and
    bound methods (self, update, context).
    """

    @wraps(func_)
    async def wrapper(*args: Any, **kwargs: Any) -> None:
        # update is always second-to-last arg: (update, context) or (self, update, context)
        update: Update = args[-2]
        if update.effective_user is None:
            return
        authorized = update.effective_user.id in settings.telegram.admin_ids
        command = getattr(func_, "__name__", "unknown").removeprefix("_cmd_")
        await _emit_access(str(update.effective_user.id), command, authorized)
        if not authorized:
            if update.message:
                await update.message.reply_text("⛔ Not authorized.")
            return
        await func_(*args, **kwargs)

    return wrapper


async def _emit_access(actor_id: str, command: str, authorized: bool) -> None:
    """Emit ADMIN_ACCESS audit event for each admin command, refused ones included."""
    await emit(SystemEvent(
        event_type=EventType.ADMIN_ACCESS,
        actor_id=actor_id,
        actor_role="admin" if authorized else "unknown",
        data={"command": command, "authorized": authorized, "interface": "telegram"},
        source_module="admin.bot",
    ))


# ── Event formatting ─────────────────────────────────────────────────

_EVENT_FORMATS: dict[EventType, str] = {
    EventType.INSPECTION_TIMEOUT: "⏱ Inspection timed out after {timeout_seconds}s",
    EventType.LLM_ERROR: "\U0001f916 LLM error: {error}",
    EventType.SYSTEM_ERROR: "\U0001f6a8 System error: {error}",
    EventType.DENYLIST_UPDATED: "\U0001f4dd Deny-list {change}: {category} <code>{value}</code>",
}

_CHANGE_REPLIES: dict[DenyChange, str] = {
    DenyChange.ADDED: "✅ Added {category} <code>{value}</code> to the deny-list.",
    DenyChange.DUPLICATE: "ℹ️ {category} <code>{value}</code> is already on the deny-list.",
    DenyChange.REACTIVATED: "✅ Re-activated {category} <code>{value}</code>.",
    DenyChange.INVALIDATED: "✅ Removed {category} <code>{value}</code> from the deny-list.",
    DenyChange.NOT_FOUND: "ℹ️ {category} <code>{value}</code> is not on the deny-list.",
}

_OUTCOME_ICONS: dict[SessionOutcome, str] = {
    SessionOutcome.APPROVED: "✅",
    SessionOutcome.REJECTED: "❌",
    SessionOutcome.TIMEOUT: "⏱",
    SessionOutcome.CANCELLED: "\U0001f6ab",
}


def format_event(event: SystemEvent) -> str:
    """Format a notable SystemEvent for the admins."""
    template = _EVENT_FORMATS.get(event.event_type)
    if template is None:
        return f"\U0001f514 {event.event_type.value}"

    ctx: dict[str, Any] = {k: html.escape(str(v)) for k, v in event.data.items()}
    ctx.setdefault("timeout_seconds", "?")
    ctx.setdefault("error", "unknown")
    ctx.setdefault("change", "?")
    ctx.setdefault("category", "?")
    ctx.setdefault("value", "?")

    text = template.format(**ctx)
    if event.session_id is not None:
        text = f"<b>[{str(event.session_id)[:8]}]</b> {text}"
    return text


# ── AdminBot ─────────────────────────────────────────────────────────


class AdminBot:
    """Telegram admin bot for deny-list management and system visibility."""

    def __init__(self, store: DenyListStore | None = None) -> None:
        self._app: Application | None = None
        self._deny_list = store or deny_list
        self._workflow: SessionWorkflow | None = None

    def bind_workflow(self, workflow: SessionWorkflow) -> None:
        self._workflow = workflow

    async def start(self) -> None:
        """Build Application, register handlers, start polling, subscribe to events."""
        token = settings.telegram.telegram_admin_bot_token
        if not token:
            logger.warning("TELEGRAM_ADMIN_BOT_TOKEN not set — admin bot disabled")
            return

        self._app = Application.builder().token(token).build()

        self._app.add_handler(CommandHandler("help", self._cmd_help))
        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("deny_nation", self._cmd_deny_nation))
        self._app.add_handler(CommandHandler("allow_nation", self._cmd_allow_nation))
        self._app.add_handler(CommandHandler("deny_identity", self._cmd_deny_identity))
        self._app.add_handler(CommandHandler("allow_identity", self._cmd_allow_identity))
        self._app.add_handler(CommandHandler("denylist", self._cmd_denylist))

        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling(drop_pending_updates=True)  # type: ignore[union-attr]

        subscribe(self.on_event, _EVENT_FORMATS.keys())

        logger.info("Admin bot started")

    async def stop(self) -> None:
        """Stop polling, unsubscribe, shutdown."""
        unsubscribe(self.on_event)

        if self._app is not None:
            if self._app.updater:
                await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            self._app = None

        logger.info("Admin bot stopped")

    async def on_event(self, event: SystemEvent) -> None:
        """Forward notable events to the log chat."""
        if event.event_type not in _EVENT_FORMATS:
            return
        await self.send_to_log(format_event(event))

    # ── Outbound ─────────────────────────────────────────────────────

    async def send_to_log(self, text: str) -> None:
        """Send to the log chat, or to every admin when no log chat is configured."""
        log_chat_id = settings.telegram.log_chat_id
        if log_chat_id is not None:
            await self.send_to_admin(log_chat_id, text)
        else:
            await self.send_to_admins(text)

    async def send_to_admins(self, text: str) -> None:
        """Send a message to all admin IDs."""
        for admin_id in settings.telegram.admin_ids:
            await self.send_to_admin(admin_id, text)

    async def send_to_admin(self, admin_id: int, text: str) -> None:
        """Send a message to a specific admin (or chat)."""
        if self._app is None:
            return
        try:
            await self._app.bot.send_message(
                chat_id=admin_id,
                text=text,
                parse_mode=ParseMode.HTML,
            )
        except Exception:
            logger.exception("Failed to send message to chat %d", admin_id)

    async def send_transcript(self, session_id: uuid.UUID, outcome: SessionOutcome, transcript: str) -> None:
        """Transcript sink: post the audit log of an ended session."""
        if self._app is None:
            return

        header = f"{_OUTCOME_ICONS.get(outcome, '')} <b>Session {str(session_id)[:8]}</b> ended: {outcome.value}"
        body = f"{header}\n<pre>{html.escape(transcript)}</pre>"
        if len(body) <= _MAX_MESSAGE_LENGTH:
            await self.send_to_log(body)
            return

        # Too long for one message: attach it as a text file
        chat_ids = (
            [settings.telegram.log_chat_id]
            if settings.telegram.log_chat_id is not None
            else settings.telegram.admin_ids
        )
        for chat_id in chat_ids:
            try:
                await self._app.bot.send_document(
                    chat_id=chat_id,
                    document=InputFile(io.BytesIO(transcript.encode("utf-8")), filename=f"session-{session_id}.txt"),
                    caption=header,
                    parse_mode=ParseMode.HTML,
                )
            except Exception:
                logger.exception("Failed to send transcript of %s to chat %d", session_id, chat_id)

    # ── Command handlers ─────────────────────────────────────────────

    @admin_only
    async def _cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """/help — list all commands."""
        text = (
            "\U0001f6c2 <b>Entry Bot Admin</b>\n\n"
            "<b>Commands:</b>\n"
            "/help — Show this message\n"
            "/status — Sessions, sponsor rounds, last self-check\n"
            "/deny_nation &lt;name&gt; [reason] — Refuse a nationality\n"
            "/allow_nation &lt;name&gt; — Lift a nationality ban\n"
            "/deny_identity &lt;handle&gt; [reason] — Refuse an identity\n"
            "/allow_identity &lt;handle&gt; — Lift an identity ban\n"
            "/denylist [nationality|identity] — Show active entries"
        )
        await update.message.reply_text(text, parse_mode=ParseMode.HTML)  # type: ignore[union-attr]

    @admin_only
    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """/status — live counters from the workflow."""
        if self._workflow is None:
            await update.message.reply_text("⚠️ Workflow not running.")  # type: ignore[union-attr]
            return

        workflow = self._workflow
        last_tick = workflow.last_tick_at.strftime("%Y-%m-%d %H:%M:%S UTC") if workflow.last_tick_at else "never"
        lines = [
            "\U0001f4ca <b>Status</b>\n",
            f"<b>Active sessions:</b> {workflow.store.count()}",
            f"<b>Waiting on sponsors:</b> {workflow.store.count(SessionState.SPONSOR_WAIT)}",
            f"<b>Open sponsor rounds:</b> {len(workflow.sponsors)}",
            f"<b>Last self-check:</b> {last_tick}",
            f"<b>Environment:</b> {settings.environment}",
        ]
        await update.message.reply_text("\n".join(lines), parse_mode=ParseMode.HTML)  # type: ignore[union-attr]

    @admin_only
    async def _cmd_deny_nation(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """/deny_nation <name> [reason]"""
        await self._change(update, context, DenyCategory.NATIONALITY, add=True)

    @admin_only
    async def _cmd_allow_nation(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """/allow_nation <name>"""
        await self._change(update, context, DenyCategory.NATIONALITY, add=False)

    @admin_only
    async def _cmd_deny_identity(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """/deny_identity <handle> [reason]"""
        await self._change(update, context, DenyCategory.IDENTITY, add=True)

    @admin_only
    async def _cmd_allow_identity(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """/allow_identity <handle>"""
        await self._change(update, context, DenyCategory.IDENTITY, add=False)

    @admin_only
    async def _cmd_denylist(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """/denylist [category] — active entries, optionally for one category."""
        category: DenyCategory | None = None
        if context.args:
            try:
                category = DenyCategory(context.args[0].lower())
            except ValueError:
                await update.message.reply_text(  # type: ignore[union-attr]
                    "Usage: /denylist [nationality|identity]"
                )
                return

        try:
            entries = await self._deny_list.list_active(category)
        except Exception:
            logger.exception("Failed to query the deny-list")
            await update.message.reply_text("❌ Could not read the deny-list.")  # type: ignore[union-attr]
            return

        if not entries:
            await update.message.reply_text("\U0001f4ed The deny-list is empty.")  # type: ignore[union-attr]
            return

        lines: list[str] = [f"\U0001f6ab <b>Deny-list ({len(entries)})</b>\n"]
        for entry in entries:
            reason = f" — {html.escape(entry.reason)}" if entry.reason else ""
            lines.append(f"{entry.category}: <code>{html.escape(entry.value)}</code>{reason}")

        await update.message.reply_text(  # type: ignore[union-attr]
            "\n".join(lines)[:_MAX_MESSAGE_LENGTH], parse_mode=ParseMode.HTML
        )

    async def _change(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
        category: DenyCategory,
        add: bool,
    ) -> None:
        command = f"/{'deny' if add else 'allow'}_{'nation' if category == DenyCategory.NATIONALITY else 'identity'}"
        if not context.args:
            await update.message.reply_text(  # type: ignore[union-attr]
                f"Usage: {command} &lt;value&gt;{' [reason]' if add else ''}",
                parse_mode=ParseMode.HTML,
            )
            return

        value = context.args[0]
        actor = str(update.effective_user.id)  # type: ignore[union-attr]
        try:
            if add:
                reason = " ".join(context.args[1:]) or None
                change = await self._deny_list.add(category, value, reason=reason, added_by=actor)
            else:
                change = await self._deny_list.remove(category, value, removed_by=actor)
        except Exception:
            logger.exception("Deny-list %s failed for %s=%s", command, category.value, value)
            await update.message.reply_text("❌ Deny-list update failed.")  # type: ignore[union-attr]
            return

        await update.message.reply_text(  # type: ignore[union-attr]
            _CHANGE_REPLIES[change].format(category=category.value, value=html.escape(value.strip().casefold())),
            parse_mode=ParseMode.HTML,
        )


# Module-level singleton
admin_bot = AdminBot()
