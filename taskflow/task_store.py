"""
Task Store

Persistence for tasks, reminders and CC lists.

Status changes go through update_task_status(), a compare-and-transition
primitive: a single UPDATE guarded by the expected pre-state, checked
against VALID_TRANSITIONS. Two concurrent approvals of the same task can
therefore never both succeed.

completed_at is set iff status is completed.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Tuple, Callable, Iterable, Any

from sqlalchemy import select, update
from sqlalchemy.orm import aliased

from .database import Database, TaskRow, ReminderRow, TaskCcRow, UserRow, ProjectRow
from .models import (
    ApprovalStage,
    DueReminder,
    NewTask,
    Priority,
    ReminderType,
    Task,
    TaskStatus,
    User,
    Role,
)

logger = logging.getLogger("task_store")

# -----------------------------------------------------------------------------
# Status Transition Rules
# -----------------------------------------------------------------------------
VALID_TRANSITIONS: Dict[TaskStatus, List[TaskStatus]] = {
    TaskStatus.PENDING_APPROVAL: [
        TaskStatus.PENDING,     # creation approved, or completion rejected
        TaskStatus.REJECTED,    # creation rejected
        TaskStatus.COMPLETED,   # completion approved or auto-approved
    ],
    TaskStatus.PENDING: [
        TaskStatus.PENDING_APPROVAL,  # completion requested
        TaskStatus.COMPLETED,         # self-approved completion
        TaskStatus.OVERDUE,           # sweep
    ],
    TaskStatus.OVERDUE: [
        TaskStatus.PENDING_APPROVAL,
        TaskStatus.COMPLETED,
    ],
    TaskStatus.COMPLETED: [],  # Terminal
    TaskStatus.REJECTED: [],   # Terminal
}

# Fields that may accompany a status change
TRANSITION_FIELDS = frozenset([
    "approved_by",
    "auto_approved",
    "approval_stage",
    "completion_reply",
])


def can_transition(current: TaskStatus, target: TaskStatus) -> Tuple[bool, str]:
    """Check if a status transition is valid."""
    valid_targets = VALID_TRANSITIONS.get(current, [])
    if target in valid_targets:
        return True, f"Transition {current.value} -> {target.value} allowed"
    return False, f"Invalid transition: {current.value} -> {target.value}. Valid targets: {[t.value for t in valid_targets]}"


def _to_task(row: TaskRow) -> Task:
    return Task(
        id=row.id,
        description=row.description,
        employee_id=row.employee_id,
        assigned_by=row.assigned_by,
        due_date=row.due_date,
        status=TaskStatus(row.status),
        has_time_component=row.has_time_component,
        priority=Priority(row.priority) if row.priority else None,
        project_id=row.project_id,
        approved_by=row.approved_by,
        auto_approved=row.auto_approved,
        approval_stage=ApprovalStage(row.approval_stage) if row.approval_stage else None,
        completed_at=row.completed_at,
        completion_reply=row.completion_reply,
        created_at=row.created_at,
    )


class TaskStore:
    """
    Task persistence over a Database.

    Every public method is a standalone awaitable operation in its own
    session; no transaction spans two calls.
    """

    def __init__(self, db: Database, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or datetime.now

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_task(self, new_task: NewTask) -> int:
        """Insert a task and return its id."""
        async with self.db.session() as session:
            row = TaskRow(
                description=new_task.description,
                employee_id=new_task.employee_id,
                assigned_by=new_task.assigned_by,
                due_date=new_task.due_date,
                has_time_component=new_task.has_time_component,
                status=new_task.status.value,
                priority=new_task.priority.value if new_task.priority else None,
                project_id=new_task.project_id,
                approved_by=new_task.approved_by,
                auto_approved=new_task.auto_approved,
                approval_stage=new_task.approval_stage.value if new_task.approval_stage else None,
                completed_at=None,
                completion_reply=None,
                created_at=self.clock(),
            )
            session.add(row)
            await session.flush()
            task_id = row.id

        logger.info(
            f"Task {task_id} created: status={new_task.status.value} "
            f"employee={new_task.employee_id} assigned_by={new_task.assigned_by}"
        )
        return task_id

    async def create_reminders(self, task_id: int) -> None:
        """Create one unsent reminder row per reminder type."""
        async with self.db.session() as session:
            existing = set((await session.scalars(
                select(ReminderRow.reminder_type).where(ReminderRow.task_id == task_id)
            )).all())
            for reminder_type in ReminderType:
                if int(reminder_type) not in existing:
                    session.add(ReminderRow(task_id=task_id, reminder_type=int(reminder_type)))

    async def add_cc_users(self, task_id: int, user_ids: Iterable[int]) -> int:
        """Associate CC users with a task, ignoring duplicates. Returns rows added."""
        added = 0
        async with self.db.session() as session:
            existing = set((await session.scalars(
                select(TaskCcRow.user_id).where(TaskCcRow.task_id == task_id)
            )).all())
            for user_id in user_ids:
                if user_id in existing:
                    continue
                session.add(TaskCcRow(task_id=task_id, user_id=user_id))
                existing.add(user_id)
                added += 1
        if added:
            logger.info(f"Task {task_id}: {added} CC user(s) added")
        return added

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_task_by_id(self, task_id: int) -> Optional[Task]:
        async with self.db.session() as session:
            row = await session.get(TaskRow, task_id)
            return _to_task(row) if row else None

    async def get_task_details(self, task_id: int) -> Optional[Task]:
        """Task with assignee, assigner and project names filled in."""
        employee = aliased(UserRow)
        assigner = aliased(UserRow)
        stmt = (
            select(TaskRow, employee, assigner, ProjectRow)
            .join(employee, TaskRow.employee_id == employee.id, isouter=True)
            .join(assigner, TaskRow.assigned_by == assigner.id, isouter=True)
            .join(ProjectRow, TaskRow.project_id == ProjectRow.id, isouter=True)
            .where(TaskRow.id == task_id)
        )
        async with self.db.session() as session:
            result = (await session.execute(stmt)).first()
            if result is None:
                return None
            row, employee_row, assigner_row, project_row = result
            task = _to_task(row)
            task.employee_name = employee_row.first_name if employee_row else None
            task.assigner_name = assigner_row.first_name if assigner_row else None
            task.project_name = project_row.name if project_row else None
            return task

    async def get_tasks_by_employee(
        self,
        employee_id: int,
        statuses: Optional[Iterable[TaskStatus]] = None,
    ) -> List[Task]:
        """Tasks owned by one employee, earliest due first."""
        stmt = select(TaskRow).where(TaskRow.employee_id == employee_id)
        if statuses is not None:
            stmt = stmt.where(TaskRow.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(TaskRow.due_date, TaskRow.id)
        async with self.db.session() as session:
            return [_to_task(r) for r in (await session.scalars(stmt)).all()]

    async def get_tasks_by_status(self, status: TaskStatus) -> List[Task]:
        stmt = select(TaskRow).where(TaskRow.status == status.value).order_by(TaskRow.due_date, TaskRow.id)
        async with self.db.session() as session:
            return [_to_task(r) for r in (await session.scalars(stmt)).all()]

    async def get_cc_users(self, task_id: int) -> List[User]:
        stmt = (
            select(UserRow)
            .join(TaskCcRow, TaskCcRow.user_id == UserRow.id)
            .where(TaskCcRow.task_id == task_id)
            .order_by(UserRow.id)
        )
        async with self.db.session() as session:
            return [
                User(
                    id=r.id,
                    telegram_id=r.telegram_id,
                    username=r.username,
                    first_name=r.first_name,
                    last_name=r.last_name,
                    role=Role(r.role),
                    manager_id=r.manager_id,
                )
                for r in (await session.scalars(stmt)).all()
            ]

    # -------------------------------------------------------------------------
    # Status transitions
    # -------------------------------------------------------------------------

    async def update_task_status(
        self,
        task_id: int,
        status: TaskStatus,
        expected_status: Optional[TaskStatus] = None,
        expected_stage: Optional[ApprovalStage] = None,
        actor: str = "system",
        **fields: Any,
    ) -> bool:
        """
        Move a task to status if it is still in expected_status.

        Without expected_status the current stored status is used as the
        pre-state. Returns False when the task does not exist, the edge is
        not allowed, or another writer moved the task first.
        """
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported fields for status update: {sorted(unknown)}")

        if expected_status is None:
            current = await self.get_task_by_id(task_id)
            if current is None:
                return False
            expected_status = current.status

        allowed, message = can_transition(expected_status, status)
        if not allowed:
            logger.warning(f"Task {task_id}: {message}")
            return False

        values: Dict[str, Any] = {"status": status.value}
        values["completed_at"] = self.clock() if status == TaskStatus.COMPLETED else None
        if status != TaskStatus.PENDING_APPROVAL:
            values["approval_stage"] = None
        for key, value in fields.items():
            values[key] = value.value if isinstance(value, ApprovalStage) else value

        stmt = (
            update(TaskRow)
            .where(TaskRow.id == task_id, TaskRow.status == expected_status.value)
            .values(**values)
        )
        if expected_stage is not None:
            stmt = stmt.where(TaskRow.approval_stage == expected_stage.value)

        async with self.db.session() as session:
            changed = (await session.execute(stmt)).rowcount

        if changed:
            logger.info(f"Task {task_id}: {expected_status.value} -> {status.value} by {actor}")
        else:
            logger.info(f"Task {task_id}: {expected_status.value} -> {status.value} skipped, task already moved")
        return bool(changed)

    async def update_task_employee(
        self,
        task_id: int,
        employee_id: int,
        expected_employee_id: Optional[int] = None,
    ) -> bool:
        """
        Reassign a task. With expected_employee_id the change only happens
        while the task still belongs to that user.
        """
        stmt = update(TaskRow).where(TaskRow.id == task_id)
        if expected_employee_id is not None:
            stmt = stmt.where(TaskRow.employee_id == expected_employee_id)
        async with self.db.session() as session:
            changed = (await session.execute(stmt.values(employee_id=employee_id))).rowcount
        if changed:
            logger.info(f"Task {task_id} reassigned to user {employee_id}")
        return bool(changed)

    async def sweep_overdue(self, now: Optional[datetime] = None) -> int:
        """Mark pending tasks past their due date as overdue. Returns rows changed."""
        now = now or self.clock()
        async with self.db.session() as session:
            changed = (await session.execute(
                update(TaskRow)
                .where(TaskRow.status == TaskStatus.PENDING.value, TaskRow.due_date < now)
                .values(status=TaskStatus.OVERDUE.value)
            )).rowcount
        if changed:
            logger.info(f"Overdue sweep: {changed} task(s) marked overdue")
        return changed

    # -------------------------------------------------------------------------
    # Reminders
    # -------------------------------------------------------------------------

    def _reminder_window(self, reminder_type: ReminderType, now: datetime) -> Tuple[List[str], Optional[datetime], datetime]:
        """(statuses, due_from, due_until) for a reminder type."""
        pending = [TaskStatus.PENDING.value]
        overdue = [TaskStatus.PENDING.value, TaskStatus.OVERDUE.value]

        if reminder_type == ReminderType.TOMORROW:
            start = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
            return pending, start, start + timedelta(days=1)
        if reminder_type == ReminderType.TODAY_4H:
            end_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
            return pending, now, min(now + timedelta(hours=4), end_of_day)
        if reminder_type == ReminderType.TODAY_1H:
            end_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
            return pending, now, min(now + timedelta(hours=1), end_of_day)
        if reminder_type == ReminderType.OVERDUE_1:
            return overdue, None, now
        if reminder_type == ReminderType.OVERDUE_2:
            return overdue, None, now - timedelta(days=1)
        raise ValueError(f"Unknown reminder type: {reminder_type}")

    async def get_due_reminders(self, reminder_type: ReminderType, now: Optional[datetime] = None) -> List[DueReminder]:
        """Unsent reminders of one type whose task falls in that type's window."""
        now = now or self.clock()
        statuses, due_from, due_until = self._reminder_window(reminder_type, now)

        stmt = (
            select(ReminderRow, TaskRow, UserRow)
            .join(TaskRow, ReminderRow.task_id == TaskRow.id)
            .join(UserRow, TaskRow.employee_id == UserRow.id)
            .where(
                ReminderRow.reminder_type == int(reminder_type),
                ReminderRow.is_sent.is_(False),
                TaskRow.status.in_(statuses),
                TaskRow.due_date < due_until,
            )
            .order_by(TaskRow.due_date, TaskRow.id)
        )
        if due_from is not None:
            stmt = stmt.where(TaskRow.due_date >= due_from)

        async with self.db.session() as session:
            return [
                DueReminder(
                    reminder_id=reminder.id,
                    reminder_type=reminder_type,
                    task_id=task.id,
                    description=task.description,
                    due_date=task.due_date,
                    telegram_id=user.telegram_id,
                    employee_name=user.first_name,
                )
                for reminder, task, user in (await session.execute(stmt)).all()
            ]

    async def mark_reminder_sent(self, reminder_id: int) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(ReminderRow)
                .where(ReminderRow.id == reminder_id)
                .values(is_sent=True, sent_at=self.clock())
            )
