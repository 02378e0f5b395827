"""
Task Lifecycle Engine

The single entry point the transport adapter talks to:

- start_creation / start_completion open a wizard for a conversation
- handle() feeds one user interaction into the conversation's active wizard
- decide_approval() applies an approver's button press
- approval_queue() lists every request still waiting for a decision
- backlog() and take_backlog_task() hand out unassigned tasks
- cancel() and my_tasks() for the plain commands

Every interaction passes the per-conversation duplicate guard first, then
resolves the acting user's role exactly once and hands the ActorContext
down to the flow. An interaction that fails on the store is forgotten by
the guard so the user can retry it.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Callable, Dict, List, Tuple

from .approval_flow import ApprovalDecisions, approval_buttons
from .completion_flow import CompletionFlow
from .config import Settings
from .creation_flow import CreationFlow
from .database import Database, TaskflowError
from .date_parser import DateTimeParser, format_due
from .directory import ActorContext, UserDirectory
from .models import ACTIVE_STATUSES, NO_PERSON_ID, ApprovalStage, TaskStatus, Task
from .notifications import ButtonRow, NotificationDispatcher
from .task_store import TaskStore
from .wizard import Action, ActionTag, BaseFlow, FlowKind, StepResult, WizardRegistry

logger = logging.getLogger("engine")

NOT_REGISTERED = "🚫 You are not registered. Please ask an administrator for an invitation link."
NO_ACTIVE_FLOW = "There is nothing in progress. Use /newtask to create a task or /complete to finish one."
MANAGERS_ONLY = "🚫 Sorry, only managers and administrators can use this."
ALREADY_TAKEN = "ℹ️ This task is no longer in the backlog."

STATUS_LABELS: Dict[TaskStatus, str] = {
    TaskStatus.PENDING: "⏳ Pending",
    TaskStatus.OVERDUE: "⚠️ Overdue",
    TaskStatus.PENDING_APPROVAL: "🕐 Awaiting approval",
}

STAGE_LABELS: Dict[ApprovalStage, str] = {
    ApprovalStage.CREATION: "🆕 New task",
    ApprovalStage.COMPLETION: "✅ Completion",
}

BACKLOG_CALLBACK = "take"


def backlog_button(task_id: int) -> Tuple[str, str]:
    return f"🙋 Take #{task_id}", f"{BACKLOG_CALLBACK}:{task_id}"


def parse_backlog_callback(data: str) -> Optional[int]:
    """Task id from a "take:12" payload, None for anything else."""
    prefix, _, task_id = (data or "").partition(":")
    if prefix != BACKLOG_CALLBACK or not task_id.isdigit():
        return None
    return int(task_id)


class TaskLifecycleEngine:
    """Creation and completion wizards plus approval decisions over one store."""

    def __init__(
        self,
        store: TaskStore,
        directory: UserDirectory,
        notifier: NotificationDispatcher,
        parser: Optional[DateTimeParser] = None,
        clock: Optional[Callable[[], datetime]] = None,
        idle_timeout: timedelta = timedelta(minutes=30),
        processed_limit: int = 50,
    ):
        self.store = store
        self.directory = directory
        self.notifier = notifier
        self.clock = clock or datetime.now
        self.registry = WizardRegistry(idle_timeout=idle_timeout, processed_limit=processed_limit)
        self.creation = CreationFlow(
            self.registry, self.clock, store, directory, notifier, parser or DateTimeParser()
        )
        self.completion = CompletionFlow(self.registry, self.clock, store, directory, notifier)
        self.approvals = ApprovalDecisions(store, directory, notifier)
        self.flows: Dict[FlowKind, BaseFlow] = {
            FlowKind.CREATION: self.creation,
            FlowKind.COMPLETION: self.completion,
        }

    async def initialize(self) -> None:
        """Create the schema and the backlog user."""
        await self.store.db.create_all()
        await self.directory.ensure_no_person()
        logger.info("Engine storage initialized")

    def _is_duplicate(self, conversation_id: int, interaction_id: Optional[str]) -> bool:
        if self.registry.seen_before(conversation_id, interaction_id, self.clock()):
            logger.info(f"Conversation {conversation_id}: duplicate interaction {interaction_id} ignored")
            return True
        return False

    def _forget(self, conversation_id: int, interaction_id: Optional[str], error: Exception) -> None:
        logger.warning(f"Conversation {conversation_id}: interaction {interaction_id} failed, retry allowed: {error}")
        self.registry.forget(conversation_id, interaction_id)

    # -------------------------------------------------------------------------
    # Wizards
    # -------------------------------------------------------------------------

    async def start_creation(
        self, conversation_id: int, telegram_id: int, interaction_id: Optional[str] = None
    ) -> StepResult:
        if self._is_duplicate(conversation_id, interaction_id):
            return StepResult.ignored()
        try:
            actor = await self.directory.resolve_actor(telegram_id)
            if actor is None:
                return StepResult.done(NOT_REGISTERED)
            return await self.creation.start(conversation_id, actor)
        except TaskflowError as e:
            self._forget(conversation_id, interaction_id, e)
            raise

    async def start_completion(
        self, conversation_id: int, telegram_id: int, interaction_id: Optional[str] = None
    ) -> StepResult:
        if self._is_duplicate(conversation_id, interaction_id):
            return StepResult.ignored()
        try:
            actor = await self.directory.resolve_actor(telegram_id)
            if actor is None:
                return StepResult.done(NOT_REGISTERED)
            return await self.completion.start(conversation_id, actor)
        except TaskflowError as e:
            self._forget(conversation_id, interaction_id, e)
            raise

    async def handle(self, conversation_id: int, telegram_id: int, action: Action) -> StepResult:
        """Feed one interaction to the conversation's active wizard."""
        if self._is_duplicate(conversation_id, action.interaction_id):
            return StepResult.ignored()

        now = self.clock()
        state = self.registry.get(conversation_id, now)
        if state is None:
            if action.tag == ActionTag.CANCEL:
                return StepResult.done("Nothing to cancel.")
            return StepResult.done(NO_ACTIVE_FLOW)

        try:
            actor = await self.directory.resolve_actor(telegram_id)
            if actor is None:
                self.registry.discard(conversation_id)
                return StepResult.done(NOT_REGISTERED)
            if state.telegram_id != telegram_id:
                return StepResult.done("This wizard was started by someone else.")

            self.registry.touch(state, now)
            return await self.flows[state.kind].dispatch(state, action, actor)
        except TaskflowError as e:
            self._forget(conversation_id, action.interaction_id, e)
            raise

    def cancel(self, conversation_id: int) -> StepResult:
        state = self.registry.get(conversation_id, self.clock())
        if state is None:
            return StepResult.done("Nothing to cancel.")
        return self.flows[state.kind].cancel(state)

    def has_active_flow(self, conversation_id: int) -> bool:
        return self.registry.get(conversation_id, self.clock()) is not None

    def evict_idle(self) -> int:
        return self.registry.evict_idle(self.clock())

    # -------------------------------------------------------------------------
    # Approvals
    # -------------------------------------------------------------------------

    async def decide_approval(
        self,
        conversation_id: int,
        telegram_id: int,
        stage: ApprovalStage,
        approve: bool,
        task_id: int,
        interaction_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Apply an approve/reject button press.

        A redelivered press returns (False, "") so the transport can stay silent.
        """
        if self._is_duplicate(conversation_id, interaction_id):
            return False, ""
        try:
            actor = await self.directory.resolve_actor(telegram_id)
            if actor is None:
                return False, NOT_REGISTERED
            return await self.approvals.decide(actor, stage, approve, task_id)
        except TaskflowError as e:
            self._forget(conversation_id, interaction_id, e)
            raise

    async def approval_queue(self, telegram_id: int) -> StepResult:
        """
        Every request awaiting a decision, each with its own approve/reject
        controls. The caller's own completion requests are left out since
        they cannot decide them.
        """
        actor = await self.directory.resolve_actor(telegram_id)
        if actor is None:
            return StepResult.done(NOT_REGISTERED)
        if not actor.can_approve:
            return StepResult.done(MANAGERS_ONLY)

        tasks: List[Task] = []
        for pending in await self.store.get_tasks_by_status(TaskStatus.PENDING_APPROVAL):
            if pending.approval_stage == ApprovalStage.COMPLETION and pending.employee_id == actor.user.id:
                continue
            task = await self.store.get_task_details(pending.id)
            if task is not None:
                tasks.append(task)

        if not tasks:
            return StepResult.done("🎉 No requests are waiting for approval.")

        lines = ["📋 *Requests awaiting approval*", ""]
        buttons: List[ButtonRow] = []
        for number, task in enumerate(tasks, start=1):
            lines.append(f"*{number}.* {STAGE_LABELS[task.approval_stage]}: {task.description}")
            lines.append(f"    👤 {task.employee_name or 'Unknown'}  📅 {format_due(task.due_date, task.has_time_component)}")
            if task.completion_reply:
                lines.append(f"    💬 {task.completion_reply}")
            buttons.extend(approval_buttons(task.approval_stage, task.id, number=number))
        return StepResult(text="\n".join(lines), buttons=buttons, finished=True)

    # -------------------------------------------------------------------------
    # Backlog
    # -------------------------------------------------------------------------

    async def backlog(self, telegram_id: int) -> StepResult:
        """Open tasks assigned to No Person, each with a button to take it over."""
        actor = await self.directory.resolve_actor(telegram_id)
        if actor is None:
            return StepResult.done(NOT_REGISTERED)
        if not actor.can_assign_others:
            return StepResult.done(MANAGERS_ONLY)

        tasks = await self.store.get_tasks_by_employee(NO_PERSON_ID, ACTIVE_STATUSES)
        if not tasks:
            return StepResult.done("📭 The backlog is empty.")

        lines = ["📥 *Unassigned backlog*", ""]
        for task in tasks:
            lines.append(f"{STATUS_LABELS[task.status]} #{task.id} {task.description}")
            lines.append(f"    📅 {format_due(task.due_date, task.has_time_component)}")
        buttons = [[backlog_button(task.id)] for task in tasks]
        return StepResult(text="\n".join(lines), buttons=buttons, finished=True)

    async def take_backlog_task(
        self,
        conversation_id: int,
        telegram_id: int,
        task_id: int,
        interaction_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """Move a backlog task to the caller. Only succeeds while it is still unassigned."""
        if self._is_duplicate(conversation_id, interaction_id):
            return False, ""
        try:
            actor = await self.directory.resolve_actor(telegram_id)
            if actor is None:
                return False, NOT_REGISTERED
            if not actor.can_assign_others:
                return False, MANAGERS_ONLY

            task = await self.store.get_task_by_id(task_id)
            if task is None or task.employee_id != NO_PERSON_ID or task.status not in ACTIVE_STATUSES:
                return False, ALREADY_TAKEN

            changed = await self.store.update_task_employee(
                task_id, actor.user.id, expected_employee_id=NO_PERSON_ID
            )
            if not changed:
                return False, ALREADY_TAKEN
            return True, f"✅ Task #{task_id} is now yours.\n\n📝 {task.description}"
        except TaskflowError as e:
            self._forget(conversation_id, interaction_id, e)
            raise

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def resolve_actor(self, telegram_id: int) -> Optional[ActorContext]:
        return await self.directory.resolve_actor(telegram_id)

    async def my_tasks(self, telegram_id: int) -> Tuple[bool, str]:
        """Open tasks of the calling user, formatted for chat."""
        actor = await self.directory.resolve_actor(telegram_id)
        if actor is None:
            return False, NOT_REGISTERED

        tasks: List[Task] = await self.store.get_tasks_by_employee(actor.user.id, list(STATUS_LABELS))
        if not tasks:
            return True, "🎉 You have no open tasks."

        lines = ["📋 *Your open tasks*", ""]
        for task in tasks:
            lines.append(f"{STATUS_LABELS[task.status]} #{task.id} {task.description}")
            lines.append(f"    📅 {format_due(task.due_date, task.has_time_component)}")
        return True, "\n".join(lines)


def build_engine(settings: Settings, notifier: NotificationDispatcher) -> TaskLifecycleEngine:
    """Wire the engine against the configured database. Call initialize() before use."""
    db = Database(settings.database_url)
    engine = TaskLifecycleEngine(
        store=TaskStore(db, clock=settings.now),
        directory=UserDirectory(db),
        notifier=notifier,
        parser=DateTimeParser(settings.tz),
        clock=settings.now,
        idle_timeout=timedelta(minutes=settings.wizard_idle_timeout_minutes),
        processed_limit=settings.processed_interactions_limit,
    )
    logger.info(f"Engine ready, timezone {settings.timezone}")
    return engine
