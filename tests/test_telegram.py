"""Tests for the Telegram channel adapter.

Covers:
- Thread ids and callback data
- Outbound gateway (applicant replies, sponsor DMs, announcements)
- Inbound routing: text, /apply, button clicks, sponsor replies
- Webhook secret check
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.channels.telegram import (
    TelegramGateway,
    apply_command,
    handle_callback,
    handle_message,
    split_thread_id,
    telegram_router,
    thread_id_for,
    to_keyboard,
)
from src.conversation import messages
from src.schemas.messages import Button, OutgoingMessage, parse_callback_data

# ── Helpers ──────────────────────────────────────────────────────────


def _make_context(workflow) -> MagicMock:
    context = MagicMock()
    context.application.bot_data = {"workflow": workflow}
    context.bot = AsyncMock()
    return context


def _make_workflow() -> MagicMock:
    workflow = MagicMock()
    workflow.on_applicant_message = AsyncMock()
    workflow.start_application = AsyncMock()
    workflow.on_ui_action = AsyncMock(return_value=None)
    workflow.on_sponsor_reply = AsyncMock(return_value="Thank you, your answer was recorded.")
    workflow.check_ui_action = MagicMock(return_value=None)
    return workflow


def _make_callback_update(data: str, user_id: int = 7) -> MagicMock:
    update = MagicMock()
    query = update.callback_query
    query.data = data
    query.from_user.id = user_id
    query.answer = AsyncMock()
    query.edit_message_reply_markup = AsyncMock()
    query.message.chat.id = -100
    query.message.message_thread_id = None
    return update


def _make_text_update(text: str, chat_id: int = -100, user_id: int = 7, topic_id: int | None = None) -> MagicMock:
    update = MagicMock()
    update.effective_user.id = user_id
    update.message.text = text
    message = update.effective_message
    message.chat_id = chat_id
    message.is_topic_message = topic_id is not None
    message.message_thread_id = topic_id
    return update


# ── Ids and keyboards ────────────────────────────────────────────────


class TestThreadIds:

    def test_plain_chat(self):
        assert thread_id_for(-100) == "-100"
        assert split_thread_id("-100") == (-100, None)

    def test_forum_topic(self):
        assert thread_id_for(-100, 55) == "-100/55"
        assert split_thread_id("-100/55") == (-100, 55)


class TestCallbackData:

    def test_round_trip(self):
        button = Button(label="Java", kind="edition", target="abc", payload="java")
        assert parse_callback_data(button.callback_data) == ("edition", "abc", "java")

    def test_empty_payload(self):
        assert parse_callback_data("confirm:abc:") == ("confirm", "abc", "")

    @pytest.mark.parametrize("data", ["garbage", "kind:", ":abc:x"])
    def test_foreign_data(self, data):
        assert parse_callback_data(data) is None


class TestKeyboard:

    def test_one_button_per_row(self):
        message = OutgoingMessage(text="?", buttons=[
            Button(label="Confirm", kind="confirm", target="abc"),
            Button(label="Edit", kind="edit", target="abc"),
        ])
        keyboard = to_keyboard(message)
        rows = keyboard.inline_keyboard
        assert len(rows) == 2
        assert rows[0][0].text == "Confirm"
        assert rows[0][0].callback_data == "confirm:abc:"

    def test_no_buttons(self):
        assert to_keyboard(OutgoingMessage(text="hi")) is None


# ── Outbound ─────────────────────────────────────────────────────────


class TestGateway:

    @pytest.mark.asyncio()
    async def test_send_to_applicant_in_topic(self):
        bot = AsyncMock()
        gateway = TelegramGateway(bot)
        await gateway.send_to_applicant("-100/55", OutgoingMessage(text="hello"))

        kwargs = bot.send_message.call_args.kwargs
        assert kwargs["chat_id"] == -100
        assert kwargs["message_thread_id"] == 55
        assert kwargs["text"] == "hello"
        assert kwargs["reply_markup"] is None

    @pytest.mark.asyncio()
    async def test_send_direct(self):
        bot = AsyncMock()
        gateway = TelegramGateway(bot)
        message = OutgoingMessage(text="Confirm?", buttons=[Button(label="Yes", kind="sponsor", target="r", payload="yes")])
        await gateway.send_direct("123", message)

        kwargs = bot.send_message.call_args.kwargs
        assert kwargs["chat_id"] == 123
        assert kwargs["reply_markup"].inline_keyboard[0][0].callback_data == "sponsor:r:yes"

    @pytest.mark.asyncio()
    async def test_announce(self):
        bot = AsyncMock()
        gateway = TelegramGateway(bot)
        with patch("src.channels.telegram.settings") as mock_settings:
            mock_settings.telegram.publish_chat_id = -200
            await gateway.announce(OutgoingMessage(text="Notice"))
        bot.send_message.assert_awaited_once_with(chat_id=-200, text="Notice")

    @pytest.mark.asyncio()
    async def test_announce_without_chat_is_skipped(self):
        bot = AsyncMock()
        gateway = TelegramGateway(bot)
        with patch("src.channels.telegram.settings") as mock_settings:
            mock_settings.telegram.publish_chat_id = None
            await gateway.announce(OutgoingMessage(text="Notice"))
        bot.send_message.assert_not_awaited()

    def test_unbound_gateway(self):
        with pytest.raises(RuntimeError):
            _ = TelegramGateway().bot


# ── Inbound ──────────────────────────────────────────────────────────


class TestInbound:

    @pytest.mark.asyncio()
    async def test_text_routed_with_thread(self):
        workflow = _make_workflow()
        await handle_message(_make_text_update("steve", topic_id=55), _make_context(workflow))
        workflow.on_applicant_message.assert_awaited_once_with("-100/55", "7", "steve")

    @pytest.mark.asyncio()
    async def test_workflow_error_swallowed(self):
        workflow = _make_workflow()
        workflow.on_applicant_message.side_effect = RuntimeError("boom")
        await handle_message(_make_text_update("steve"), _make_context(workflow))

    @pytest.mark.asyncio()
    async def test_apply_command(self):
        workflow = _make_workflow()
        await apply_command(_make_text_update("/apply"), _make_context(workflow))
        workflow.start_application.assert_awaited_once_with("-100", "7")


class TestCallbacks:

    @pytest.mark.asyncio()
    async def test_ui_action(self):
        workflow = _make_workflow()
        update = _make_callback_update("confirm:abc:")
        await handle_callback(update, _make_context(workflow))

        update.callback_query.answer.assert_awaited_once_with()
        update.callback_query.edit_message_reply_markup.assert_awaited_once_with(reply_markup=None)
        workflow.on_ui_action.assert_awaited_once_with("abc", "confirm", "", actor_id="7")

    @pytest.mark.asyncio()
    async def test_refused_click_shows_alert(self):
        workflow = _make_workflow()
        workflow.check_ui_action.return_value = messages.NOT_YOUR_SESSION
        update = _make_callback_update("cancel:abc:")
        await handle_callback(update, _make_context(workflow))

        update.callback_query.answer.assert_awaited_once_with(messages.NOT_YOUR_SESSION, show_alert=True)
        update.callback_query.edit_message_reply_markup.assert_not_awaited()
        workflow.on_ui_action.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_sponsor_reply(self):
        workflow = _make_workflow()
        update = _make_callback_update("sponsor:r1:no", user_id=9)
        await handle_callback(update, _make_context(workflow))

        workflow.on_sponsor_reply.assert_awaited_once_with("r1", "9", "no")
        update.callback_query.answer.assert_awaited_once_with("Thank you, your answer was recorded.")
        workflow.on_ui_action.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_foreign_callback_answered(self):
        workflow = _make_workflow()
        update = _make_callback_update("garbage")
        await handle_callback(update, _make_context(workflow))

        update.callback_query.answer.assert_awaited_once_with()
        workflow.on_ui_action.assert_not_awaited()
        workflow.on_sponsor_reply.assert_not_awaited()


# ── Webhook ──────────────────────────────────────────────────────────


class TestWebhook:

    def _client(self) -> tuple[TestClient, MagicMock]:
        app = FastAPI()
        app.include_router(telegram_router)
        telegram_app = MagicMock()
        telegram_app.process_update = AsyncMock()
        app.state.telegram_app = telegram_app
        return TestClient(app), telegram_app

    def test_wrong_secret_rejected(self):
        client, telegram_app = self._client()
        with patch("src.channels.telegram.settings") as mock_settings:
            mock_settings.telegram.telegram_webhook_secret = "s3cret"
            response = client.post(
                "/webhook/telegram",
                json={"update_id": 1},
                headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"},
            )
        assert response.status_code == 403
        telegram_app.process_update.assert_not_called()

    def test_valid_update_accepted(self):
        client, _ = self._client()
        with (
            patch("src.channels.telegram.settings") as mock_settings,
            patch("src.channels.telegram.Update.de_json", return_value=MagicMock()),
        ):
            mock_settings.telegram.telegram_webhook_secret = "s3cret"
            response = client.post(
                "/webhook/telegram",
                json={"update_id": 1},
                headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
            )
        assert response.status_code == 200
