"""Telegram user bot adapter — handles incoming messages via long-polling or webhook.

Uses python-telegram-bot v21+ async. Routes text, /apply and inline-button
callbacks to the session workflow, and implements the outbound side
(applicant replies, sponsor DMs, public announcements) as TelegramGateway.

A thread id is "<chat_id>" or "<chat_id>/<topic_id>" for forum topics.
Callback data is "<kind>:<id hex>:<payload>".
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Request, Response
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ChatAction
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from src.config import settings
from src.schemas.messages import OutgoingMessage, parse_callback_data

if TYPE_CHECKING:
    from src.conversation.engine import SessionWorkflow

logger = logging.getLogger(__name__)

_SPONSOR_KIND = "sponsor"

# ── Webhook router ───────────────────────────────────────────────────

telegram_router = APIRouter(prefix="/webhook", tags=["telegram"])


@telegram_router.post("/telegram")
async def telegram_webhook(request: Request) -> Response:
    """Receive Telegram updates via webhook (production mode)."""
    # Verify secret header if configured
    secret = settings.telegram.telegram_webhook_secret
    if secret:
        header_secret = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
        if header_secret != secret:
            return Response(status_code=403)

    telegram_app: Application = request.app.state.telegram_app
    data = await request.json()
    update = Update.de_json(data, telegram_app.bot)

    # Fire-and-forget — return 200 immediately so Telegram doesn't retry
    asyncio.create_task(telegram_app.process_update(update))

    return Response(status_code=200)


# ── Outbound: Notifier + Publisher ───────────────────────────────────


def thread_id_for(chat_id: int, topic_id: int | None = None) -> str:
    return f"{chat_id}/{topic_id}" if topic_id else str(chat_id)


def split_thread_id(thread_id: str) -> tuple[int, int | None]:
    chat, _, topic = thread_id.partition("/")
    return int(chat), int(topic) if topic else None


def to_keyboard(message: OutgoingMessage) -> InlineKeyboardMarkup | None:
    """One button per row, in the order the workflow listed them."""
    if not message.buttons:
        return None
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(b.label, callback_data=b.callback_data)] for b in message.buttons
    ])


class TelegramGateway:
    """Sends workflow messages through the user bot.

    Notifier:  send_to_applicant(thread_id, message), send_direct(user_id, message)
    Publisher: announce(message)
    """

    def __init__(self, bot: Bot | None = None) -> None:
        self._bot = bot

    def bind(self, bot: Bot) -> None:
        self._bot = bot

    @property
    def bot(self) -> Bot:
        if self._bot is None:
            msg = "Telegram gateway used before the bot was bound"
            raise RuntimeError(msg)
        return self._bot

    async def send_to_applicant(self, thread_id: str, message: OutgoingMessage) -> None:
        chat_id, topic_id = split_thread_id(thread_id)
        await self.bot.send_message(
            chat_id=chat_id,
            message_thread_id=topic_id,
            text=message.text,
            reply_markup=to_keyboard(message),
        )

    async def send_direct(self, user_id: str, message: OutgoingMessage) -> None:
        await self.bot.send_message(
            chat_id=int(user_id),
            text=message.text,
            reply_markup=to_keyboard(message),
        )

    async def announce(self, message: OutgoingMessage) -> None:
        chat_id = settings.telegram.publish_chat_id
        if chat_id is None:
            logger.warning("PUBLISH_CHAT_ID not set, announcement skipped")
            return
        await self.bot.send_message(chat_id=chat_id, text=message.text)


# Module-level singleton; bound to the bot in create_telegram_app()
telegram_gateway = TelegramGateway()


# ── Inbound handlers ─────────────────────────────────────────────────

# Interval between "typing..." indicator refreshes (Telegram typing expires after ~5s)
_TYPING_INTERVAL = 4.0


async def _send_typing_until_done(
    chat_id: int,
    topic_id: int | None,
    bot: Bot,
    done_event: asyncio.Event,
) -> None:
    """Send typing action every few seconds until the done event is set."""
    while not done_event.is_set():
        try:
            await bot.send_chat_action(chat_id=chat_id, message_thread_id=topic_id, action=ChatAction.TYPING)
        except TelegramError:
            break
        try:
            await asyncio.wait_for(done_event.wait(), timeout=_TYPING_INTERVAL)
        except TimeoutError:
            continue


def _workflow(context: ContextTypes.DEFAULT_TYPE) -> SessionWorkflow:
    return context.application.bot_data["workflow"]


def _thread_of(update: Update) -> str | None:
    message = update.effective_message
    if message is None:
        return None
    topic_id = message.message_thread_id if message.is_topic_message else None
    return thread_id_for(message.chat_id, topic_id)


async def apply_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/apply (and /start) — open a new application in this chat."""
    thread_id = _thread_of(update)
    if update.effective_user is None or thread_id is None:
        return
    await _workflow(context).start_application(thread_id, str(update.effective_user.id))


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle incoming text messages — route to the session workflow."""
    thread_id = _thread_of(update)
    if update.effective_user is None or update.message is None or update.message.text is None or thread_id is None:
        return
    try:
        await _workflow(context).on_applicant_message(thread_id, str(update.effective_user.id), update.message.text)
    except Exception:
        logger.exception("Error processing message from user %s", update.effective_user.id)


async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Inline button clicks. Every callback query is answered exactly once."""
    query = update.callback_query
    if query is None or query.data is None:
        return

    parsed = parse_callback_data(query.data)
    if parsed is None:
        await query.answer()
        return
    kind, target, payload = parsed
    user_id = str(query.from_user.id)
    workflow = _workflow(context)

    if kind == _SPONSOR_KIND:
        notice = await workflow.on_sponsor_reply(target, user_id, payload)
        await query.answer(notice)
        await _drop_keyboard(query)
        return

    notice = workflow.check_ui_action(target, user_id)
    if notice is not None:
        await query.answer(notice, show_alert=True)
        return

    await query.answer()
    await _drop_keyboard(query)

    chat_id, topic_id = (query.message.chat.id, query.message.message_thread_id) if query.message else (None, None)
    done = asyncio.Event()
    typing_task = (
        asyncio.create_task(_send_typing_until_done(chat_id, topic_id, context.bot, done))
        if chat_id is not None
        else None
    )
    try:
        await workflow.on_ui_action(target, kind, payload, actor_id=user_id)
    except Exception:
        logger.exception("Error processing %s for session %s", kind, target)
    finally:
        done.set()
        if typing_task is not None:
            await typing_task


async def _drop_keyboard(query: object) -> None:
    """Remove the buttons from the clicked message so it cannot be clicked twice."""
    try:
        await query.edit_message_reply_markup(reply_markup=None)  # type: ignore[attr-defined]
    except TelegramError:
        logger.debug("Could not remove inline keyboard")


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/help command — show help."""
    if update.message is None:
        return
    await update.message.reply_text(
        "Temporary entry inspection bot.\n\n"
        f"Send {settings.telegram.start_keyword} or /apply to start an application, "
        "then answer the questions and confirm.\n"
        "/help — Show this message"
    )


def create_telegram_app(workflow: SessionWorkflow) -> Application:
    """Build and configure the Telegram bot application.

    Returns the Application instance (not yet started).
    """
    token = settings.telegram.telegram_user_bot_token
    if not token:
        msg = "TELEGRAM_USER_BOT_TOKEN not set in environment"
        raise ValueError(msg)

    # Inspections can take a minute; other chats must not wait behind them
    app = Application.builder().token(token).concurrent_updates(True).build()
    app.bot_data["workflow"] = workflow
    telegram_gateway.bind(app.bot)

    # Register handlers
    app.add_handler(CommandHandler(["apply", "start"], apply_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CallbackQueryHandler(handle_callback))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))

    logger.info("Telegram bot application created")
    return app
