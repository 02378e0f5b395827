"""
Unit Tests for the Task Store

Test coverage for:
- Task creation, details and CC lists
- Compare-and-transition status updates
- completed_at bookkeeping
- Overdue sweep idempotence
- Reminder windows and sent flags
- Async driver selection
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from taskflow.database import Database, StoreUnavailableError, async_url
from taskflow.models import ApprovalStage, NewTask, ReminderType, TaskStatus
from taskflow.task_store import VALID_TRANSITIONS, TaskStore, can_transition

from .conftest import REFERENCE_NOW


# -----------------------------------------------------------------------------
# Transition rules
# -----------------------------------------------------------------------------
class TestTransitionRules:
    """The status transition table."""

    def test_terminal_states(self):
        assert VALID_TRANSITIONS[TaskStatus.COMPLETED] == []
        assert VALID_TRANSITIONS[TaskStatus.REJECTED] == []

    def test_sweep_edge_exists_only_from_pending(self):
        assert can_transition(TaskStatus.PENDING, TaskStatus.OVERDUE)[0] is True
        assert can_transition(TaskStatus.OVERDUE, TaskStatus.PENDING)[0] is False

    def test_invalid_transition_message(self):
        allowed, message = can_transition(TaskStatus.COMPLETED, TaskStatus.PENDING)
        assert allowed is False
        assert "Invalid transition" in message


# -----------------------------------------------------------------------------
# Creation & reads
# -----------------------------------------------------------------------------
class TestCreateAndRead:
    """Tasks, reminders and CC lists are persisted."""

    @pytest.mark.asyncio
    async def test_create_task_round_trip(self, store, users, clock):
        task_id = await store.create_task(NewTask(
            description="Fix login bug",
            employee_id=users["sam"].id,
            assigned_by=users["sam"].id,
            due_date=datetime(2025, 6, 15, 15, 0),
            status=TaskStatus.PENDING_APPROVAL,
            approval_stage=ApprovalStage.CREATION,
        ))

        task = await store.get_task_by_id(task_id)
        assert task.description == "Fix login bug"
        assert task.status == TaskStatus.PENDING_APPROVAL
        assert task.approval_stage == ApprovalStage.CREATION
        assert task.created_at == clock.now
        assert task.completed_at is None
        assert task.is_self_assigned

    @pytest.mark.asyncio
    async def test_missing_task(self, store):
        assert await store.get_task_by_id(999) is None
        assert await store.get_task_details(999) is None

    @pytest.mark.asyncio
    async def test_details_include_names(self, store, users, directory, create_test_task):
        project = await directory.add_project("Website")
        task_id = await store.create_task(NewTask(
            description="Landing page copy",
            employee_id=users["sam"].id,
            assigned_by=users["mia"].id,
            due_date=REFERENCE_NOW + timedelta(days=1),
            status=TaskStatus.PENDING,
            project_id=project.id,
        ))

        task = await store.get_task_details(task_id)

        assert task.employee_name == "Sam"
        assert task.assigner_name == "Mia"
        assert task.project_name == "Website"

    @pytest.mark.asyncio
    async def test_tasks_by_employee_filters_and_orders(self, store, users, create_test_task):
        sam, mia = users["sam"], users["mia"]
        later = await create_test_task(sam, mia, due_date=REFERENCE_NOW + timedelta(days=5))
        sooner = await create_test_task(sam, mia, due_date=REFERENCE_NOW + timedelta(days=1))
        await create_test_task(sam, mia, status=TaskStatus.COMPLETED)

        active = await store.get_tasks_by_employee(sam.id, [TaskStatus.PENDING, TaskStatus.OVERDUE])

        assert [t.id for t in active] == [sooner, later]
        assert len(await store.get_tasks_by_employee(sam.id)) == 3

    @pytest.mark.asyncio
    async def test_tasks_by_status(self, store, users, create_test_task):
        await create_test_task(users["sam"], users["mia"])
        await create_test_task(users["sam"], users["sam"], status=TaskStatus.PENDING_APPROVAL,
                               approval_stage=ApprovalStage.CREATION)

        assert len(await store.get_tasks_by_status(TaskStatus.PENDING_APPROVAL)) == 1

    @pytest.mark.asyncio
    async def test_create_reminders_once_per_type(self, store, users, create_test_task):
        task_id = await create_test_task(users["sam"], users["mia"])
        await store.create_reminders(task_id)
        await store.create_reminders(task_id)

        due = await store.get_due_reminders(ReminderType.TOMORROW, REFERENCE_NOW + timedelta(days=1))
        assert len(due) == 1

    @pytest.mark.asyncio
    async def test_cc_users_ignore_duplicates(self, store, users, create_test_task):
        task_id = await create_test_task(users["sam"], users["mia"])

        assert await store.add_cc_users(task_id, [users["ada"].id, users["max"].id, users["ada"].id]) == 2
        assert await store.add_cc_users(task_id, [users["ada"].id]) == 0
        cc_ids = [u.id for u in await store.get_cc_users(task_id)]
        assert cc_ids == sorted([users["ada"].id, users["max"].id])


# -----------------------------------------------------------------------------
# Reassignment
# -----------------------------------------------------------------------------
class TestUpdateTaskEmployee:
    """Moving a task to another user, optionally only from an expected one."""

    @pytest.mark.asyncio
    async def test_unconditional(self, store, users, directory, create_test_task):
        backlog = await directory.ensure_no_person()
        task_id = await create_test_task(backlog, users["mia"])

        assert await store.update_task_employee(task_id, users["sam"].id) is True
        assert (await store.get_task_by_id(task_id)).employee_id == users["sam"].id

    @pytest.mark.asyncio
    async def test_expected_employee_guards_the_move(self, store, users, directory, create_test_task):
        backlog = await directory.ensure_no_person()
        task_id = await create_test_task(backlog, users["ada"])

        first = await store.update_task_employee(task_id, users["mia"].id, expected_employee_id=backlog.id)
        second = await store.update_task_employee(task_id, users["max"].id, expected_employee_id=backlog.id)

        assert (first, second) == (True, False)
        assert (await store.get_task_by_id(task_id)).employee_id == users["mia"].id

    @pytest.mark.asyncio
    async def test_unknown_task(self, store, users):
        assert await store.update_task_employee(12345, users["sam"].id) is False


# -----------------------------------------------------------------------------
# Compare-and-transition
# -----------------------------------------------------------------------------
class TestUpdateTaskStatus:
    """Guarded status changes."""

    @pytest.mark.asyncio
    async def test_completed_sets_completed_at(self, store, users, create_test_task, clock):
        task_id = await create_test_task(users["mia"], users["mia"])

        assert await store.update_task_status(task_id, TaskStatus.COMPLETED, approved_by=users["mia"].id)

        task = await store.get_task_by_id(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at == clock.now
        assert task.approved_by == users["mia"].id

    @pytest.mark.asyncio
    async def test_reverting_completion_request_keeps_completed_at_empty(self, store, users, create_test_task):
        task_id = await create_test_task(users["sam"], users["mia"], status=TaskStatus.PENDING_APPROVAL,
                                         approval_stage=ApprovalStage.COMPLETION)

        assert await store.update_task_status(
            task_id, TaskStatus.PENDING, expected_status=TaskStatus.PENDING_APPROVAL
        )

        task = await store.get_task_by_id(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.completed_at is None
        assert task.approval_stage is None

    @pytest.mark.asyncio
    async def test_stale_expected_status_changes_nothing(self, store, users, create_test_task):
        task_id = await create_test_task(users["sam"], users["mia"])

        changed = await store.update_task_status(
            task_id, TaskStatus.COMPLETED, expected_status=TaskStatus.PENDING_APPROVAL
        )

        assert changed is False
        assert (await store.get_task_by_id(task_id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_decision_loses(self, store, users, create_test_task):
        task_id = await create_test_task(users["sam"], users["sam"], status=TaskStatus.PENDING_APPROVAL,
                                         approval_stage=ApprovalStage.CREATION)

        first = await store.update_task_status(task_id, TaskStatus.PENDING,
                                               expected_status=TaskStatus.PENDING_APPROVAL,
                                               expected_stage=ApprovalStage.CREATION)
        second = await store.update_task_status(task_id, TaskStatus.REJECTED,
                                                expected_status=TaskStatus.PENDING_APPROVAL,
                                                expected_stage=ApprovalStage.CREATION)

        assert (first, second) == (True, False)
        assert (await store.get_task_by_id(task_id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_stage_mismatch_changes_nothing(self, store, users, create_test_task):
        task_id = await create_test_task(users["sam"], users["sam"], status=TaskStatus.PENDING_APPROVAL,
                                         approval_stage=ApprovalStage.CREATION)

        changed = await store.update_task_status(
            task_id, TaskStatus.COMPLETED,
            expected_status=TaskStatus.PENDING_APPROVAL,
            expected_stage=ApprovalStage.COMPLETION,
        )

        assert changed is False

    @pytest.mark.asyncio
    async def test_edge_not_in_table(self, store, users, create_test_task):
        task_id = await create_test_task(users["sam"], users["mia"], status=TaskStatus.COMPLETED)
        assert await store.update_task_status(task_id, TaskStatus.PENDING) is False

    @pytest.mark.asyncio
    async def test_unknown_task(self, store):
        assert await store.update_task_status(12345, TaskStatus.COMPLETED) is False

    @pytest.mark.asyncio
    async def test_unsupported_field_raises(self, store, users, create_test_task):
        task_id = await create_test_task(users["sam"], users["mia"])
        with pytest.raises(ValueError):
            await store.update_task_status(task_id, TaskStatus.COMPLETED, description="changed")


# -----------------------------------------------------------------------------
# Overdue sweep
# -----------------------------------------------------------------------------
class TestSweepOverdue:
    """pending -> overdue for tasks past due."""

    @pytest.mark.asyncio
    async def test_marks_only_pending_past_due(self, store, users, create_test_task):
        sam, mia = users["sam"], users["mia"]
        past = await create_test_task(sam, mia, due_date=REFERENCE_NOW - timedelta(hours=1))
        future = await create_test_task(sam, mia, due_date=REFERENCE_NOW + timedelta(hours=1))
        awaiting = await create_test_task(sam, sam, due_date=REFERENCE_NOW - timedelta(hours=1),
                                          status=TaskStatus.PENDING_APPROVAL,
                                          approval_stage=ApprovalStage.CREATION)

        assert await store.sweep_overdue(REFERENCE_NOW) == 1

        assert (await store.get_task_by_id(past)).status == TaskStatus.OVERDUE
        assert (await store.get_task_by_id(future)).status == TaskStatus.PENDING
        assert (await store.get_task_by_id(awaiting)).status == TaskStatus.PENDING_APPROVAL

    @pytest.mark.asyncio
    async def test_idempotent(self, store, users, create_test_task):
        task_id = await create_test_task(users["sam"], users["mia"], due_date=REFERENCE_NOW - timedelta(days=1))

        await store.sweep_overdue(REFERENCE_NOW)
        first = await store.get_task_by_id(task_id)
        assert await store.sweep_overdue(REFERENCE_NOW) == 0
        second = await store.get_task_by_id(task_id)

        assert first.status == second.status == TaskStatus.OVERDUE


# -----------------------------------------------------------------------------
# Reminders
# -----------------------------------------------------------------------------
class TestReminders:
    """Reminder windows relative to now."""

    async def _due_ids(self, store, reminder_type):
        return [r.task_id for r in await store.get_due_reminders(reminder_type, REFERENCE_NOW)]

    @pytest.mark.asyncio
    async def test_tomorrow_window(self, store, users, create_test_task):
        tomorrow = await create_test_task(users["sam"], users["mia"], due_date=datetime(2025, 6, 11, 10, 0),
                                          with_reminders=True)
        await create_test_task(users["sam"], users["mia"], due_date=datetime(2025, 6, 12, 10, 0),
                               with_reminders=True)

        assert await self._due_ids(store, ReminderType.TOMORROW) == [tomorrow]

    @pytest.mark.asyncio
    async def test_today_windows(self, store, users, create_test_task):
        in_half_hour = await create_test_task(users["sam"], users["mia"], due_date=datetime(2025, 6, 10, 9, 30),
                                              with_reminders=True)
        in_three_hours = await create_test_task(users["sam"], users["mia"], due_date=datetime(2025, 6, 10, 12, 0),
                                                with_reminders=True)

        assert await self._due_ids(store, ReminderType.TODAY_1H) == [in_half_hour]
        assert await self._due_ids(store, ReminderType.TODAY_4H) == [in_half_hour, in_three_hours]

    @pytest.mark.asyncio
    async def test_overdue_windows(self, store, users, create_test_task):
        hour_late = await create_test_task(users["sam"], users["mia"], due_date=datetime(2025, 6, 10, 8, 0),
                                           with_reminders=True)
        days_late = await create_test_task(users["sam"], users["mia"], due_date=datetime(2025, 6, 8, 8, 0),
                                           status=TaskStatus.OVERDUE, with_reminders=True)

        assert await self._due_ids(store, ReminderType.OVERDUE_1) == [days_late, hour_late]
        assert await self._due_ids(store, ReminderType.OVERDUE_2) == [days_late]

    @pytest.mark.asyncio
    async def test_completed_tasks_are_not_reminded(self, store, users, create_test_task):
        await create_test_task(users["sam"], users["mia"], due_date=datetime(2025, 6, 10, 8, 0),
                               status=TaskStatus.COMPLETED, with_reminders=True)

        assert await self._due_ids(store, ReminderType.OVERDUE_1) == []

    @pytest.mark.asyncio
    async def test_mark_sent(self, store, users, create_test_task):
        await create_test_task(users["sam"], users["mia"], due_date=datetime(2025, 6, 10, 8, 0),
                               with_reminders=True)
        reminder = (await store.get_due_reminders(ReminderType.OVERDUE_1, REFERENCE_NOW))[0]
        assert reminder.telegram_id == users["sam"].telegram_id

        await store.mark_reminder_sent(reminder.reminder_id)

        assert await store.get_due_reminders(ReminderType.OVERDUE_1, REFERENCE_NOW) == []


# -----------------------------------------------------------------------------
# Engine & store failures
# -----------------------------------------------------------------------------
class TestAsyncDriver:
    """SQLite URLs are served by aiosqlite."""

    @pytest.mark.parametrize("url, expected", [
        ("sqlite:///taskflow.db", "sqlite+aiosqlite:///taskflow.db"),
        ("sqlite://", "sqlite+aiosqlite://"),
        ("sqlite+aiosqlite:///already.db", "sqlite+aiosqlite:///already.db"),
        ("postgresql+asyncpg://db/tasks", "postgresql+asyncpg://db/tasks"),
    ])
    def test_async_url(self, url, expected):
        assert async_url(url) == expected

    @pytest.mark.asyncio
    async def test_store_calls_are_coroutines(self, store):
        call = store.get_tasks_by_status(TaskStatus.PENDING)
        assert asyncio.iscoroutine(call)
        assert await call == []


class TestStoreFailures:
    """SQLAlchemy errors surface as StoreUnavailableError."""

    @pytest.mark.asyncio
    async def test_missing_schema(self, clock):
        db = Database("sqlite://")
        store = TaskStore(db, clock=clock)
        with pytest.raises(StoreUnavailableError):
            await store.get_tasks_by_status(TaskStatus.PENDING)
        await db.dispose()
