"""
Telegram Bot - Task Lifecycle

Features:
- /newtask: conversational task creation (assignee, details, priority,
  project, CC, confirmation)
- /complete: conversational task completion with optional reply
- Approve/reject buttons for creation requests and completions
- /approvals: pending requests with approve/reject buttons (managers, admins)
- /backlog: unassigned tasks a manager can take over
- /mytasks, /whoami, /cancel
- Periodic overdue sweep and reminders while the bot runs

Every inline button carries "<tag>[:<arg>]" callback data. The callback
query id (or "m<message id>" for typed input) is the interaction id used to
drop redelivered updates.
"""

import asyncio
import logging
import sys
from typing import Optional

from telegram import Update
from telegram.error import BadRequest, TelegramError
from telegram.ext import (
    Application,
    CommandHandler,
    MessageHandler,
    CallbackQueryHandler,
    ContextTypes,
    filters,
)

from taskflow import __version__
from taskflow.approval_flow import parse_approval_callback
from taskflow.config import configure_logging, get_settings
from taskflow.database import TaskflowError
from taskflow.engine import TaskLifecycleEngine, build_engine, parse_backlog_callback
from taskflow.models import Role
from taskflow.notifications import BotNotifier, build_keyboard
from taskflow.reminders import ReminderService
from taskflow.wizard import Action, StepResult, parse_callback

logger = logging.getLogger("telegram_bot")

GENERIC_ERROR = "⚠️ Something went wrong. Please try again."

ROLE_CAPABILITIES = {
    Role.ADMIN: [
        "✅ Admin access",
        "  • Assign tasks to anyone",
        "  • Approve task requests and completions",
        "  • Review /approvals and take tasks from the /backlog",
    ],
    Role.MANAGER: [
        "✅ Manager access",
        "  • Assign tasks to your team and the backlog",
        "  • Approve task requests and completions",
        "  • Review /approvals and take tasks from the /backlog",
    ],
    Role.EMPLOYEE: [
        "👤 Employee access",
        "  • Request tasks for yourself (needs approval)",
        "  • Complete your tasks",
    ],
}

HELP_TEXT = """
*Task Bot - Help*

*Tasks:*
/newtask - Create a task
/complete - Complete one of your tasks
/mytasks - List your open tasks
/cancel - Cancel what you are doing

*Managers:*
/approvals - Requests waiting for your decision
/backlog - Unassigned tasks you can take over

*Identity:*
/whoami - Check your user ID and role

*Due date formats:*
`20 dec 5:30pm`, `dec 20 5:30pm`, `20 12 5:30pm`, `5:30pm`, `15 3pm`, `5`
"""


def get_engine(context: ContextTypes.DEFAULT_TYPE) -> TaskLifecycleEngine:
    return context.application.bot_data["engine"]


def message_interaction_id(update: Update) -> Optional[str]:
    message = update.effective_message
    return f"m{message.message_id}" if message else None


# -----------------------------------------------------------------------------
# Rendering
# -----------------------------------------------------------------------------
async def reply(update: Update, text: str, buttons=None) -> None:
    """Reply with Markdown, falling back to plain text when user input breaks the markup."""
    markup = build_keyboard(buttons)
    try:
        await update.effective_message.reply_text(text, parse_mode="Markdown", reply_markup=markup)
    except BadRequest as e:
        logger.warning(f"Markdown rejected, sending plain text: {e}")
        await update.effective_message.reply_text(text, reply_markup=markup)


async def edit(update: Update, text: str, buttons=None) -> None:
    """Replace the message the pressed button belongs to."""
    query = update.callback_query
    markup = build_keyboard(buttons)
    try:
        await query.edit_message_text(text, parse_mode="Markdown", reply_markup=markup)
    except BadRequest as e:
        if "not modified" in str(e).lower():
            return
        logger.warning(f"Markdown rejected, editing as plain text: {e}")
        await query.edit_message_text(text, reply_markup=markup)


async def render(update: Update, result: StepResult) -> None:
    if result.duplicate or not result.text:
        return
    if update.callback_query is not None:
        await edit(update, result.text, result.buttons)
    else:
        await reply(update, result.text, result.buttons)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------
async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start."""
    user = update.effective_user
    actor = await get_engine(context).resolve_actor(user.id)
    logger.info(f"User {user.id} ({user.username}) started bot, registered: {actor is not None}")

    if actor is None:
        await reply(
            update,
            f"👋 Welcome!\n\nYou are not registered yet. Send your ID `{user.id}` "
            f"to an administrator to get an invitation.",
        )
        return

    await reply(
        update,
        f"👋 Welcome, {actor.user.display_name}!\n\n"
        f"*Your Role:* {actor.role.name.title()}\n\n"
        f"/newtask - Create a task\n"
        f"/complete - Complete a task\n"
        f"/mytasks - Your open tasks\n"
        f"/help - Show detailed help",
    )


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help."""
    await reply(update, HELP_TEXT)


async def whoami_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /whoami - show identity and role."""
    user = update.effective_user
    actor = await get_engine(context).resolve_actor(user.id)

    lines = [
        "*Your Identity*",
        "",
        f"*Telegram ID:* `{user.id}`",
        f"*Name:* {user.full_name or 'Not set'}",
    ]
    if actor is None:
        lines.append("*Role:* not registered")
    else:
        lines.append(f"*Role:* {actor.role.name.title()}")
        lines.append("")
        lines.extend(ROLE_CAPABILITIES[actor.role])
    await reply(update, "\n".join(lines))


async def newtask_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /newtask - open the creation wizard."""
    try:
        result = await get_engine(context).start_creation(
            update.effective_chat.id, update.effective_user.id, message_interaction_id(update)
        )
    except TaskflowError as e:
        logger.error(f"Error in newtask_command: {e}")
        await reply(update, GENERIC_ERROR)
        return
    await render(update, result)


async def complete_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /complete - open the completion wizard."""
    try:
        result = await get_engine(context).start_completion(
            update.effective_chat.id, update.effective_user.id, message_interaction_id(update)
        )
    except TaskflowError as e:
        logger.error(f"Error in complete_command: {e}")
        await reply(update, GENERIC_ERROR)
        return
    await render(update, result)


async def mytasks_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /mytasks."""
    try:
        _, text = await get_engine(context).my_tasks(update.effective_user.id)
    except TaskflowError as e:
        logger.error(f"Error in mytasks_command: {e}")
        text = GENERIC_ERROR
    await reply(update, text)


async def approvals_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /approvals - list requests awaiting a decision."""
    try:
        result = await get_engine(context).approval_queue(update.effective_user.id)
    except TaskflowError as e:
        logger.error(f"Error in approvals_command: {e}")
        await reply(update, GENERIC_ERROR)
        return
    await render(update, result)


async def backlog_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /backlog - list unassigned tasks."""
    try:
        result = await get_engine(context).backlog(update.effective_user.id)
    except TaskflowError as e:
        logger.error(f"Error in backlog_command: {e}")
        await reply(update, GENERIC_ERROR)
        return
    await render(update, result)


async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cancel."""
    result = get_engine(context).cancel(update.effective_chat.id)
    await reply(update, result.text)


# -----------------------------------------------------------------------------
# Interactions
# -----------------------------------------------------------------------------
async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Typed text goes to the active wizard step."""
    message = update.effective_message
    if message is None or not message.text:
        return
    try:
        result = await get_engine(context).handle(
            update.effective_chat.id,
            update.effective_user.id,
            Action.text(message.text, message_interaction_id(update)),
        )
    except TaskflowError as e:
        logger.error(f"Error in handle_message: {e}")
        await reply(update, GENERIC_ERROR)
        return
    await render(update, result)


async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle inline button callbacks."""
    query = update.callback_query
    await query.answer()

    engine = get_engine(context)
    chat_id = update.effective_chat.id
    user_id = update.effective_user.id

    try:
        approval = parse_approval_callback(query.data)
        if approval is not None:
            stage, approved, task_id = approval
            _, message = await engine.decide_approval(chat_id, user_id, stage, approved, task_id, query.id)
            if message:
                await edit(update, message)
            return

        backlog_task_id = parse_backlog_callback(query.data)
        if backlog_task_id is not None:
            _, message = await engine.take_backlog_task(chat_id, user_id, backlog_task_id, query.id)
            if message:
                await edit(update, message)
            return

        action = parse_callback(query.data, query.id)
        if action is None:
            logger.warning(f"Unknown callback data from user {user_id}: {query.data}")
            await edit(update, "Unknown action.")
            return

        result = await engine.handle(chat_id, user_id, action)
    except TaskflowError as e:
        logger.error(f"Error in handle_callback: {e}")
        await edit(update, GENERIC_ERROR)
        return
    await render(update, result)


# -----------------------------------------------------------------------------
# Error Handler
# -----------------------------------------------------------------------------
async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Log unexpected errors and tell the user to try again."""
    logger.error(f"Update {update} caused error {context.error}", exc_info=context.error)

    if not isinstance(update, Update):
        return
    try:
        if update.callback_query:
            await update.callback_query.answer(GENERIC_ERROR[:60])
        elif update.effective_message:
            await update.effective_message.reply_text(GENERIC_ERROR)
    except TelegramError as e:
        logger.error(f"Failed to send error response: {e}")


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------
async def post_init(application: Application) -> None:
    """Prepare storage, then start the reminder loop once the bot is running."""
    engine: TaskLifecycleEngine = application.bot_data["engine"]
    await engine.initialize()
    settings = get_settings()
    service = ReminderService(
        store=engine.store,
        notifier=engine.notifier,
        clock=engine.clock,
        interval=settings.reminder_interval_seconds,
        registry=engine.registry,
    )
    application.bot_data["reminders"] = service
    application.bot_data["reminder_task"] = asyncio.create_task(service.run_forever())


async def post_shutdown(application: Application) -> None:
    service: Optional[ReminderService] = application.bot_data.get("reminders")
    task: Optional[asyncio.Task] = application.bot_data.get("reminder_task")
    if service:
        service.stop()
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    engine: Optional[TaskLifecycleEngine] = application.bot_data.get("engine")
    if engine:
        await engine.store.db.dispose()


def build_application(settings) -> Application:
    application = (
        Application.builder()
        .token(settings.telegram_bot_token)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    application.bot_data["engine"] = build_engine(settings, BotNotifier(application.bot))

    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("whoami", whoami_command))
    application.add_handler(CommandHandler("newtask", newtask_command))
    application.add_handler(CommandHandler("complete", complete_command))
    application.add_handler(CommandHandler("mytasks", mytasks_command))
    application.add_handler(CommandHandler("approvals", approvals_command))
    application.add_handler(CommandHandler("backlog", backlog_command))
    application.add_handler(CommandHandler("cancel", cancel_command))

    # Callback query handler for inline buttons
    application.add_handler(CallbackQueryHandler(handle_callback))

    # Typed input for the active wizard step
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))

    application.add_error_handler(error_handler)
    return application


# -----------------------------------------------------------------------------
# Main Entry Point
# -----------------------------------------------------------------------------
def main():
    """Start the bot."""
    settings = get_settings()
    configure_logging(settings)

    if not settings.telegram_bot_token:
        logger.error("TELEGRAM_BOT_TOKEN environment variable not set!")
        sys.exit(1)

    logger.info("Starting Telegram bot...")
    logger.info(f"Version: {__version__}, timezone: {settings.timezone}")
    logger.debug(f"Settings: {settings.to_dict()}")

    application = build_application(settings)

    logger.info("Bot started. Polling for updates...")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
