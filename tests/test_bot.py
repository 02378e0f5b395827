"""
Unit Tests for the Telegram Adapter

Test coverage for:
- Command handlers rendering wizard steps
- Typed input and button presses routed to the engine
- Approval controls, the approvals queue and redelivered updates
- Backlog listing and pick-up
- Markdown fallback and error handling
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram import InlineKeyboardMarkup, Update
from telegram.error import BadRequest

from taskflow.engine import MANAGERS_ONLY
from taskflow.models import ApprovalStage, TaskStatus
from taskflow.wizard import StepResult
from telegram_bot.bot import (
    GENERIC_ERROR,
    approvals_command,
    backlog_command,
    cancel_command,
    error_handler,
    handle_callback,
    handle_message,
    mytasks_command,
    newtask_command,
    render,
    whoami_command,
)

from .conftest import MIA_TELEGRAM_ID, SAM_TELEGRAM_ID


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def create_test_update(user_id: int = SAM_TELEGRAM_ID, text: str = None, data: str = None,
                       message_id: int = 10, query_id: str = "cbq-1"):
    """Mock Update for a typed message (text) or a button press (data)."""
    update = MagicMock(spec=Update)
    update.effective_chat.id = user_id
    update.effective_user.id = user_id
    update.effective_user.username = "tester"
    update.effective_user.full_name = "Test User"
    update.effective_message.message_id = message_id
    update.effective_message.text = text
    update.effective_message.reply_text = AsyncMock()

    if data is None:
        update.callback_query = None
    else:
        update.callback_query.data = data
        update.callback_query.id = query_id
        update.callback_query.answer = AsyncMock()
        update.callback_query.edit_message_text = AsyncMock()
    return update


def create_test_context(engine):
    context = MagicMock()
    context.application.bot_data = {"engine": engine}
    return context


def replied_text(update) -> str:
    return update.effective_message.reply_text.await_args.args[0]


def edited_text(update) -> str:
    return update.callback_query.edit_message_text.await_args.args[0]


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------
class TestCommands:
    """Command handlers."""

    @pytest.mark.asyncio
    async def test_newtask_shows_first_step(self, engine):
        update = create_test_update()

        await newtask_command(update, create_test_context(engine))

        update.effective_message.reply_text.assert_awaited_once()
        kwargs = update.effective_message.reply_text.await_args.kwargs
        assert kwargs["parse_mode"] == "Markdown"
        assert isinstance(kwargs["reply_markup"], InlineKeyboardMarkup)
        assert "due date" in replied_text(update)

    @pytest.mark.asyncio
    async def test_newtask_for_unregistered_user(self, engine):
        update = create_test_update(user_id=4242)

        await newtask_command(update, create_test_context(engine))

        assert "not registered" in replied_text(update)

    @pytest.mark.asyncio
    async def test_mytasks(self, engine, users, create_test_task):
        await create_test_task(users["sam"], users["mia"], description="Update the docs")
        update = create_test_update()

        await mytasks_command(update, create_test_context(engine))

        assert "Update the docs" in replied_text(update)

    @pytest.mark.asyncio
    async def test_cancel_without_flow(self, engine):
        update = create_test_update()

        await cancel_command(update, create_test_context(engine))

        assert replied_text(update) == "Nothing to cancel."

    @pytest.mark.asyncio
    async def test_whoami_unregistered(self, engine):
        update = create_test_update(user_id=4242)

        await whoami_command(update, create_test_context(engine))

        text = replied_text(update)
        assert "`4242`" in text
        assert "not registered" in text

    @pytest.mark.asyncio
    async def test_whoami_manager(self, engine, users):
        update = create_test_update(user_id=MIA_TELEGRAM_ID)

        await whoami_command(update, create_test_context(engine))

        assert "Manager access" in replied_text(update)

    @pytest.mark.asyncio
    async def test_approvals_lists_pending_requests_with_buttons(self, engine, users, create_test_task):
        await create_test_task(
            users["sam"], users["sam"], description="Order new laptops",
            status=TaskStatus.PENDING_APPROVAL, approval_stage=ApprovalStage.CREATION,
        )
        update = create_test_update(user_id=MIA_TELEGRAM_ID)

        await approvals_command(update, create_test_context(engine))

        assert "Order new laptops" in replied_text(update)
        markup = update.effective_message.reply_text.await_args.kwargs["reply_markup"]
        assert isinstance(markup, InlineKeyboardMarkup)

    @pytest.mark.asyncio
    async def test_approvals_refused_for_employees(self, engine, users):
        update = create_test_update()

        await approvals_command(update, create_test_context(engine))

        assert replied_text(update) == MANAGERS_ONLY

    @pytest.mark.asyncio
    async def test_backlog_lists_unassigned_tasks(self, engine, directory, users, create_test_task):
        backlog = await directory.ensure_no_person()
        await create_test_task(backlog, users["mia"], description="Renew the domain")
        update = create_test_update(user_id=MIA_TELEGRAM_ID)

        await backlog_command(update, create_test_context(engine))

        assert "Renew the domain" in replied_text(update)


# -----------------------------------------------------------------------------
# Interactions
# -----------------------------------------------------------------------------
class TestInteractions:
    """Typed input and button presses."""

    @pytest.mark.asyncio
    async def test_typed_details_advance_the_wizard(self, engine):
        context = create_test_context(engine)
        await newtask_command(create_test_update(message_id=1), context)
        update = create_test_update(text="Fix login bug\n15 3pm", message_id=2)

        await handle_message(update, context)

        assert "priority" in replied_text(update)

    @pytest.mark.asyncio
    async def test_redelivered_message_is_ignored(self, engine):
        context = create_test_context(engine)
        await newtask_command(create_test_update(message_id=1), context)
        first = create_test_update(text="Fix login bug\n15 3pm", message_id=2)
        again = create_test_update(text="Fix login bug\n15 3pm", message_id=2)

        await handle_message(first, context)
        await handle_message(again, context)

        again.effective_message.reply_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_button_press_edits_the_message(self, engine):
        context = create_test_context(engine)
        await newtask_command(create_test_update(message_id=1), context)
        await handle_message(create_test_update(text="Fix login bug\n15 3pm", message_id=2), context)
        update = create_test_update(data="sel:High", query_id="cbq-5")

        await handle_callback(update, context)

        update.callback_query.answer.assert_awaited_once()
        assert "project" in edited_text(update)

    @pytest.mark.asyncio
    async def test_unknown_callback(self, engine):
        update = create_test_update(data="bogus:1")

        await handle_callback(update, create_test_context(engine))

        assert edited_text(update) == "Unknown action."

    @pytest.mark.asyncio
    async def test_approval_press(self, engine, store, users, create_test_task):
        task_id = await create_test_task(
            users["sam"], users["sam"],
            status=TaskStatus.PENDING_APPROVAL, approval_stage=ApprovalStage.CREATION,
        )
        update = create_test_update(user_id=MIA_TELEGRAM_ID, data=f"tca:{task_id}")

        await handle_callback(update, create_test_context(engine))

        assert "approved" in edited_text(update)
        assert (await store.get_task_by_id(task_id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_redelivered_approval_press_is_silent(self, engine, users, create_test_task):
        task_id = await create_test_task(
            users["sam"], users["sam"],
            status=TaskStatus.PENDING_APPROVAL, approval_stage=ApprovalStage.CREATION,
        )
        context = create_test_context(engine)
        await handle_callback(create_test_update(user_id=MIA_TELEGRAM_ID, data=f"tca:{task_id}"), context)
        again = create_test_update(user_id=MIA_TELEGRAM_ID, data=f"tca:{task_id}")

        await handle_callback(again, context)

        again.callback_query.answer.assert_awaited_once()
        again.callback_query.edit_message_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_take_press_moves_backlog_task(self, engine, store, directory, users, create_test_task):
        backlog = await directory.ensure_no_person()
        task_id = await create_test_task(backlog, users["ada"], description="Renew the domain")
        update = create_test_update(user_id=MIA_TELEGRAM_ID, data=f"take:{task_id}")

        await handle_callback(update, create_test_context(engine))

        assert "is now yours" in edited_text(update)
        assert (await store.get_task_by_id(task_id)).employee_id == users["mia"].id


# -----------------------------------------------------------------------------
# Rendering and errors
# -----------------------------------------------------------------------------
class TestRendering:
    """Markdown fallback and skipped results."""

    @pytest.mark.asyncio
    async def test_duplicate_result_renders_nothing(self):
        update = create_test_update()

        await render(update, StepResult.ignored())

        update.effective_message.reply_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_markdown_fallback(self):
        update = create_test_update()
        update.effective_message.reply_text.side_effect = [BadRequest("Can't parse entities"), None]

        await render(update, StepResult(text="Fix *login_bug"))

        assert update.effective_message.reply_text.await_count == 2
        assert "parse_mode" not in update.effective_message.reply_text.await_args.kwargs

    @pytest.mark.asyncio
    async def test_not_modified_is_ignored(self):
        update = create_test_update(data="ok")
        update.callback_query.edit_message_text.side_effect = BadRequest("Message is not modified")

        await render(update, StepResult(text="Same text"))

        update.callback_query.edit_message_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_error_handler_replies(self):
        update = create_test_update()
        context = MagicMock()
        context.error = RuntimeError("boom")

        await error_handler(update, context)

        update.effective_message.reply_text.assert_awaited_once_with(GENERIC_ERROR)

    @pytest.mark.asyncio
    async def test_error_handler_without_update(self):
        context = MagicMock()
        context.error = RuntimeError("boom")

        await error_handler(None, context)
