"""
Notification Dispatcher

Best-effort delivery of Markdown messages (optionally with inline buttons)
to a user's Telegram chat.

send() never raises for delivery failure: a blocked bot (403), an unknown
chat (400) or a transport error is logged and reported as False, so the
approval chain can move on to the next candidate.

Message texts live in MessageTemplates.
"""

import logging
from typing import Optional, List, Tuple

import httpx
from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest, Forbidden, TelegramError

from .date_parser import format_due
from .models import Task, DueReminder, ReminderType

logger = logging.getLogger("notifications")

TELEGRAM_API_BASE = "https://api.telegram.org"
HTTP_TIMEOUT = 10.0

# One row of (label, callback_data) pairs
ButtonRow = List[Tuple[str, str]]


class NotificationDispatcher:
    """Interface: deliver a message to one chat and report success."""

    async def send(self, chat_id: int, message: str, buttons: Optional[List[ButtonRow]] = None) -> bool:
        raise NotImplementedError


def build_keyboard(buttons: Optional[List[ButtonRow]]) -> Optional[InlineKeyboardMarkup]:
    if not buttons:
        return None
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(label, callback_data=data) for label, data in row]
        for row in buttons
    ])


class BotNotifier(NotificationDispatcher):
    """Delivery through a python-telegram-bot Bot (used inside the running bot)."""

    def __init__(self, bot):
        self.bot = bot

    async def send(self, chat_id: int, message: str, buttons: Optional[List[ButtonRow]] = None) -> bool:
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=message,
                parse_mode="Markdown",
                reply_markup=build_keyboard(buttons),
            )
            return True
        except Forbidden:
            logger.warning(f"User {chat_id} has blocked the bot")
        except BadRequest as e:
            logger.warning(f"Cannot deliver to chat {chat_id}: {e}")
        except TelegramError as e:
            logger.error(f"Telegram send error for chat {chat_id}: {e}")
        return False


class HttpNotifier(NotificationDispatcher):
    """Delivery through the Bot API over httpx (used by the standalone reminder run)."""

    def __init__(self, bot_token: str, base_url: str = TELEGRAM_API_BASE, client: Optional[httpx.AsyncClient] = None):
        self.bot_token = bot_token
        self.base_url = base_url
        self._client = client

    async def _post(self, payload: dict) -> httpx.Response:
        url = f"{self.base_url}/bot{self.bot_token}/sendMessage"
        if self._client is not None:
            return await self._client.post(url, json=payload)
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
            return await client.post(url, json=payload)

    async def send(self, chat_id: int, message: str, buttons: Optional[List[ButtonRow]] = None) -> bool:
        if not self.bot_token:
            logger.warning("Telegram not configured")
            return False

        payload = {
            "chat_id": chat_id,
            "text": message,
            "parse_mode": "Markdown",
            "disable_web_page_preview": True,
        }
        if buttons:
            payload["reply_markup"] = {
                "inline_keyboard": [
                    [{"text": label, "callback_data": data} for label, data in row]
                    for row in buttons
                ]
            }

        try:
            response = await self._post(payload)
        except httpx.HTTPError as e:
            logger.error(f"Telegram send error for chat {chat_id}: {e}")
            return False

        if response.status_code == 200:
            return True
        if response.status_code == 403:
            logger.warning(f"User {chat_id} has blocked the bot")
        elif response.status_code == 400:
            logger.warning(f"Chat {chat_id} not found or message rejected: {response.text[:200]}")
        else:
            logger.error(f"Telegram send failed for chat {chat_id}: HTTP {response.status_code}")
        return False


# -----------------------------------------------------------------------------
# Message Templates
# -----------------------------------------------------------------------------
def _task_lines(task: Task) -> str:
    lines = [
        f"📝 *Task:* {task.description}",
        f"📅 *Due:* {format_due(task.due_date, task.has_time_component)}",
    ]
    if task.priority:
        lines.append(f"🔥 *Priority:* {task.priority.value}")
    if task.project_name:
        lines.append(f"📁 *Project:* {task.project_name}")
    return "\n".join(lines)


class MessageTemplates:
    """Pre-defined notification texts."""

    @staticmethod
    def new_task_assigned(task: Task, assigner_name: str) -> str:
        return (
            f"📋 *New Task Assigned*\n\n"
            f"{_task_lines(task)}\n"
            f"👤 *Assigned by:* {assigner_name}"
        )

    @staticmethod
    def self_assigned(task: Task) -> str:
        return f"✅ *Task Created*\n\nYou assigned yourself a task:\n\n{_task_lines(task)}"

    @staticmethod
    def creation_approval_request(task: Task, requester_name: str) -> str:
        return (
            f"🔔 *Task Approval Required*\n\n"
            f"{requester_name} has requested a new task:\n\n"
            f"{_task_lines(task)}\n\n"
            f"Please approve or reject this request."
        )

    @staticmethod
    def creation_request_sent(task: Task, approver_name: Optional[str]) -> str:
        if approver_name:
            return (
                f"📨 *Task Request Sent*\n\n{_task_lines(task)}\n\n"
                f"Your request was sent to {approver_name} for approval."
            )
        return (
            f"✅ *Task Created*\n\n{_task_lines(task)}\n\n"
            f"No manager could be reached, so the task was approved automatically."
        )

    @staticmethod
    def creation_decided(task: Task, approved: bool, manager_name: str) -> str:
        if approved:
            return (
                f"✅ *Task Approved*\n\n"
                f"Your task request has been approved by {manager_name}:\n\n{_task_lines(task)}\n\n"
                f"The task has been added to your pending tasks list."
            )
        return (
            f"❌ *Task Rejected*\n\n"
            f"Your task request has been rejected by {manager_name}:\n\n{_task_lines(task)}\n\n"
            f"Please discuss with your manager or create a new task request."
        )

    @staticmethod
    def cc_added(task: Task, assignee_name: str) -> str:
        return f"👀 *You were CC'd on a task*\n\n{_task_lines(task)}\n👤 *Assignee:* {assignee_name}"

    @staticmethod
    def completion_approval_request(task: Task, requester_name: str) -> str:
        reply = f"\n💬 *Reply:* {task.completion_reply}" if task.completion_reply else ""
        return (
            f"🔔 *Task Completion Approval*\n\n"
            f"{requester_name} has marked a task as completed:\n\n"
            f"{_task_lines(task)}{reply}\n\n"
            f"Please approve or reject the completion."
        )

    @staticmethod
    def self_completed(task: Task) -> str:
        return f"✅ *Task Completed*\n\nYou completed your own task:\n\n{_task_lines(task)}"

    @staticmethod
    def completion_auto_approved(task: Task) -> str:
        return (
            f"✅ *Task Completed*\n\n{_task_lines(task)}\n\n"
            f"No manager could be reached, so the completion was approved automatically."
        )

    @staticmethod
    def completion_decided(task: Task, approved: bool, manager_name: str) -> str:
        if approved:
            return (
                f"✅ *Task Completion Approved*\n\n"
                f"{manager_name} approved the completion of:\n\n{_task_lines(task)}"
            )
        return (
            f"❌ *Task Completion Rejected*\n\n"
            f"{manager_name} rejected the completion of:\n\n{_task_lines(task)}\n\n"
            f"The task is back in your pending tasks list."
        )

    @staticmethod
    def cc_status_changed(task: Task, status_label: str) -> str:
        return f"ℹ️ *Task Update*\n\n{_task_lines(task)}\n\n*Status:* {status_label}"

    @staticmethod
    def reminder(reminder: DueReminder) -> str:
        due = format_due(reminder.due_date)
        if reminder.reminder_type == ReminderType.TOMORROW:
            return (
                f"⏰ *TASK REMINDER*\n\nHi {reminder.employee_name}! You have a task due tomorrow:\n\n"
                f"*{reminder.description}*\n\nDue: {due}"
            )
        if reminder.reminder_type == ReminderType.TODAY_1H:
            return (
                f"⏰ *URGENT TASK REMINDER*\n\nHi {reminder.employee_name}! You have a task due within the hour:\n\n"
                f"*{reminder.description}*\n\nDue: {due}"
            )
        if reminder.reminder_type == ReminderType.TODAY_4H:
            return (
                f"⏰ *TASK REMINDER*\n\nHi {reminder.employee_name}! You have a task due TODAY:\n\n"
                f"*{reminder.description}*\n\nDue: {due}"
            )
        return (
            f"⚠️ *OVERDUE TASK ALERT*\n\nHi {reminder.employee_name}! You have an OVERDUE task that needs "
            f"immediate attention:\n\n*{reminder.description}*\n\nWas due: {due}\n\n"
            f"Please complete this task as soon as possible."
        )
