"""
Tests for Notification Delivery

Test coverage for:
- HttpNotifier payloads and status handling (httpx.MockTransport)
- BotNotifier error mapping
- Inline keyboard construction
- Message templates
"""

import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from telegram.error import BadRequest, Forbidden, NetworkError

from taskflow.models import DueReminder, Priority, ReminderType, Task, TaskStatus
from taskflow.notifications import BotNotifier, HttpNotifier, MessageTemplates, build_keyboard


BUTTONS = [[("✅ Approve", "tca:7"), ("❌ Reject", "tcr:7")]]


def create_http_notifier(handler) -> HttpNotifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpNotifier("123:abc", client=client)


def create_test_task(**overrides) -> Task:
    values = dict(
        id=7,
        description="Fix login bug",
        employee_id=3,
        assigned_by=2,
        due_date=datetime(2025, 6, 15, 15, 0),
        status=TaskStatus.PENDING,
    )
    values.update(overrides)
    return Task(**values)


# -----------------------------------------------------------------------------
# HTTP delivery
# -----------------------------------------------------------------------------
class TestHttpNotifier:
    """Bot API delivery over httpx."""

    @pytest.mark.asyncio
    async def test_sends_markdown_with_keyboard(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        delivered = await create_http_notifier(handler).send(1003, "*hello*", BUTTONS)

        assert delivered is True
        assert requests[0].url.path == "/bot123:abc/sendMessage"
        payload = json.loads(requests[0].content)
        assert payload["chat_id"] == 1003
        assert payload["parse_mode"] == "Markdown"
        assert payload["reply_markup"]["inline_keyboard"][0][1] == {"text": "❌ Reject", "callback_data": "tcr:7"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 403, 500])
    async def test_rejected_delivery(self, status_code):
        notifier = create_http_notifier(lambda request: httpx.Response(status_code, text="nope"))
        assert await notifier.send(1003, "hello") is False

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        assert await create_http_notifier(handler).send(1003, "hello") is False

    @pytest.mark.asyncio
    async def test_missing_token(self):
        assert await HttpNotifier("").send(1003, "hello") is False


# -----------------------------------------------------------------------------
# In-bot delivery
# -----------------------------------------------------------------------------
class TestBotNotifier:
    """Delivery through a python-telegram-bot Bot."""

    @pytest.mark.asyncio
    async def test_success(self):
        bot = MagicMock()
        bot.send_message = AsyncMock()

        assert await BotNotifier(bot).send(1003, "hello", BUTTONS) is True
        kwargs = bot.send_message.await_args.kwargs
        assert kwargs["chat_id"] == 1003
        assert kwargs["reply_markup"].inline_keyboard[0][0].callback_data == "tca:7"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        Forbidden("bot was blocked by the user"),
        BadRequest("Chat not found"),
        NetworkError("timed out"),
    ])
    async def test_failures_report_false(self, error):
        bot = MagicMock()
        bot.send_message = AsyncMock(side_effect=error)

        assert await BotNotifier(bot).send(1003, "hello") is False


class TestKeyboard:
    def test_no_buttons(self):
        assert build_keyboard(None) is None
        assert build_keyboard([]) is None

    def test_rows_are_kept(self):
        keyboard = build_keyboard(BUTTONS + [[("Skip", "skip")]])
        assert len(keyboard.inline_keyboard) == 2
        assert keyboard.inline_keyboard[1][0].text == "Skip"


# -----------------------------------------------------------------------------
# Templates
# -----------------------------------------------------------------------------
class TestMessageTemplates:
    """Notification texts."""

    def test_new_task_assigned(self):
        task = create_test_task(priority=Priority.HIGH, project_name="Website")
        text = MessageTemplates.new_task_assigned(task, "Mia")

        assert "Fix login bug" in text
        assert "June 15, 2025 at 3:00 PM" in text
        assert "High" in text
        assert "Website" in text
        assert "Mia" in text

    def test_completion_request_includes_reply(self):
        task = create_test_task(completion_reply="Deployed to production")
        assert "Deployed to production" in MessageTemplates.completion_approval_request(task, "Sam")

    def test_creation_request_sent_auto_approved(self):
        text = MessageTemplates.creation_request_sent(create_test_task(), None)
        assert "approved automatically" in text

    @pytest.mark.parametrize("reminder_type, phrase", [
        (ReminderType.TOMORROW, "due tomorrow"),
        (ReminderType.TODAY_1H, "within the hour"),
        (ReminderType.TODAY_4H, "due TODAY"),
        (ReminderType.OVERDUE_1, "OVERDUE"),
        (ReminderType.OVERDUE_2, "OVERDUE"),
    ])
    def test_reminders(self, reminder_type, phrase):
        reminder = DueReminder(
            reminder_id=1,
            reminder_type=reminder_type,
            task_id=7,
            description="Fix login bug",
            due_date=datetime(2025, 6, 15, 15, 0),
            telegram_id=1003,
            employee_name="Sam",
        )
        text = MessageTemplates.reminder(reminder)
        assert phrase in text
        assert "Hi Sam" in text
