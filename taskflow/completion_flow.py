"""
Task Completion Wizard

SelectTask -> OfferReply -> [CaptureReply] -> Confirm -> resolve

The task list holds the actor's own pending and overdue tasks; an empty list
ends the flow immediately. Resolving either completes the task directly (an
admin/manager finishing a task they gave themselves) or moves it to
pending_approval and walks the approver chain. When nobody can be reached
the completion is auto-approved.
"""

import logging
from enum import Enum
from typing import Optional

from .approval_flow import approval_buttons
from .approval_router import decide_completion_bypass, resolve_approval_chain
from .database import TaskflowError
from .date_parser import format_due
from .directory import ActorContext, UserDirectory
from .models import (
    ACTIVE_STATUSES,
    MAX_REPLY_LENGTH,
    MIN_REPLY_LENGTH,
    ApprovalStage,
    Task,
    TaskStatus,
    User,
)
from .notifications import MessageTemplates, NotificationDispatcher
from .task_store import TaskStore
from .wizard import (
    NAV_ROW,
    Action,
    ActionTag,
    BaseFlow,
    FlowKind,
    StepResult,
    WizardState,
    callback_data,
    step_name,
    with_notice,
)

logger = logging.getLogger("completion_flow")

NO_PENDING_TASKS = "You have no pending tasks to complete."


class CompletionStep(str, Enum):
    SELECT_TASK = "select_task"
    OFFER_REPLY = "offer_reply"
    CAPTURE_REPLY = "capture_reply"
    CONFIRM = "confirm"


def validate_reply(text: str) -> Optional[str]:
    """Error message for an out-of-bounds completion note, None if valid."""
    length = len(text.strip())
    if length < MIN_REPLY_LENGTH:
        return f"⚠️ The reply must be at least {MIN_REPLY_LENGTH} characters."
    if length > MAX_REPLY_LENGTH:
        return f"⚠️ The reply must be at most {MAX_REPLY_LENGTH} characters (yours has {length})."
    return None


class CompletionFlow(BaseFlow):
    """Conversational task completion."""

    kind = FlowKind.COMPLETION
    first_step = CompletionStep.SELECT_TASK

    TRANSITIONS = {
        CompletionStep.SELECT_TASK: {ActionTag.SELECT: "on_task"},
        CompletionStep.OFFER_REPLY: {
            ActionTag.SELECT: "on_offer_choice",
            ActionTag.SKIP: "on_skip_reply",
            ActionTag.TEXT: "on_reply_text",
        },
        CompletionStep.CAPTURE_REPLY: {ActionTag.TEXT: "on_reply_text"},
        CompletionStep.CONFIRM: {ActionTag.CONFIRM: "on_resolve", ActionTag.EDIT: "on_edit_reply"},
    }

    def __init__(
        self,
        registry,
        clock,
        store: TaskStore,
        directory: UserDirectory,
        notifier: NotificationDispatcher,
    ):
        super().__init__(registry, clock)
        self.store = store
        self.directory = directory
        self.notifier = notifier

    async def start(self, conversation_id: int, actor: ActorContext) -> StepResult:
        tasks = await self.store.get_tasks_by_employee(actor.user.id, ACTIVE_STATUSES)
        if not tasks:
            self.registry.discard(conversation_id)
            return StepResult.done(NO_PENDING_TASKS)

        state = self.registry.start(
            conversation_id, actor.user.telegram_id, self.kind, CompletionStep.SELECT_TASK, self.clock()
        )
        logger.info(f"Conversation {conversation_id}: completion flow started by user {actor.user.id}")
        return await self.render(state, actor)

    async def _own_active_task(self, task_id: int, actor: ActorContext) -> Optional[Task]:
        task = await self.store.get_task_details(task_id)
        if task is None or task.employee_id != actor.user.id or task.status not in ACTIVE_STATUSES:
            return None
        return task

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def on_task(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        try:
            task = await self._own_active_task(int(action.value), actor)
        except (TypeError, ValueError):
            task = None
        if task is None:
            return await self.render(state, actor, notice="⚠️ That task is not available anymore.")
        state.data["task_id"] = task.id
        state.data["reply"] = None
        state.advance(CompletionStep.OFFER_REPLY)
        return await self.render(state, actor)

    async def on_offer_choice(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        if action.value != "reply":
            return await self.render(state, actor, notice="Please use the options below.")
        state.advance(CompletionStep.CAPTURE_REPLY)
        return await self.render(state, actor)

    async def on_skip_reply(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        state.data["reply"] = None
        state.advance(CompletionStep.CONFIRM)
        return await self.render(state, actor)

    async def on_reply_text(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        text = (action.value or "").strip()
        error = validate_reply(text)
        if error:
            if state.step == CompletionStep.OFFER_REPLY:
                state.advance(CompletionStep.CAPTURE_REPLY)
            return await self.render(state, actor, notice=error)

        state.data["reply"] = text
        if state.data.get("editing"):
            while state.step != CompletionStep.CONFIRM and state.go_back() is not None:
                pass
            state.data["editing"] = False
            if state.step != CompletionStep.CONFIRM:
                state.jump(CompletionStep.CONFIRM)
        else:
            state.advance(CompletionStep.CONFIRM)
        return await self.render(state, actor)

    async def on_edit_reply(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        state.data["editing"] = True
        state.advance(CompletionStep.CAPTURE_REPLY)
        return await self.render(state, actor)

    def on_back(self, state: WizardState) -> None:
        if state.step == CompletionStep.CONFIRM:
            state.data["editing"] = False

    # -------------------------------------------------------------------------
    # Resolve
    # -------------------------------------------------------------------------

    async def on_resolve(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        task = await self._own_active_task(state.data.get("task_id"), actor)
        if task is None:
            return self.finish(state, "ℹ️ This task is no longer pending. Nothing was changed.")

        # The wizard is done; a redelivered confirm must not find it again
        self.registry.discard(state.conversation_id)
        reply = state.data.get("reply")

        try:
            if decide_completion_bypass(actor.user, task):
                return await self._complete_directly(task, actor.user, reply)
            return await self._request_completion_approval(task, actor.user, reply)
        except TaskflowError:
            # Status writes are compare-and-transition; a second confirm cannot apply twice
            self.registry.restore(state)
            raise

    async def _complete_directly(self, task: Task, actor: User, reply: Optional[str]) -> StepResult:
        changed = await self.store.update_task_status(
            task.id,
            TaskStatus.COMPLETED,
            expected_status=task.status,
            actor=f"user {actor.id}",
            completion_reply=reply,
            approved_by=actor.id,
        )
        if not changed:
            return StepResult.done("ℹ️ This task was already handled.")

        task = await self.store.get_task_details(task.id)
        await self.notifier.send(actor.telegram_id, MessageTemplates.self_completed(task))
        await self._notify_cc(task, actor, "Completed")
        return StepResult.done(f"✅ Task marked as completed.\n\n📝 {task.description}", task_id=task.id)

    async def _request_completion_approval(self, task: Task, requester: User, reply: Optional[str]) -> StepResult:
        changed = await self.store.update_task_status(
            task.id,
            TaskStatus.PENDING_APPROVAL,
            expected_status=task.status,
            actor=f"user {requester.id}",
            approval_stage=ApprovalStage.COMPLETION,
            completion_reply=reply,
        )
        if not changed:
            return StepResult.done("ℹ️ This task changed while you were completing it. Nothing was changed.")

        task = await self.store.get_task_details(task.id)
        direct_manager = await self.directory.get_user(requester.manager_id) if requester.manager_id else None
        message = MessageTemplates.completion_approval_request(task, requester.display_name)
        buttons = approval_buttons(ApprovalStage.COMPLETION, task.id)

        async def notify(candidate: User) -> bool:
            return await self.notifier.send(candidate.telegram_id, message, buttons)

        chain = await resolve_approval_chain(requester, direct_manager, await self.directory.get_all_managers(), notify)
        if chain.reached:
            await self._notify_cc(task, requester, "Awaiting approval")
            return StepResult.done(
                f"📨 Completion sent to {chain.approver.display_name} for approval.\n\n📝 {task.description}",
                task_id=task.id,
            )

        await self.store.update_task_status(
            task.id,
            TaskStatus.COMPLETED,
            expected_status=TaskStatus.PENDING_APPROVAL,
            expected_stage=ApprovalStage.COMPLETION,
            actor="auto-approval",
            auto_approved=True,
        )
        task = await self.store.get_task_details(task.id)
        await self._notify_cc(task, requester, "Completed")
        return StepResult.done(MessageTemplates.completion_auto_approved(task), task_id=task.id)

    async def _notify_cc(self, task: Task, actor: User, status_label: str) -> None:
        for user in await self.store.get_cc_users(task.id):
            if user.is_reachable and user.id != actor.id:
                await self.notifier.send(user.telegram_id, MessageTemplates.cc_status_changed(task, status_label))

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def _task_summary(self, task: Task) -> str:
        lines = [
            f"📝 *Task:* {task.description}",
            f"📅 *Due:* {format_due(task.due_date, task.has_time_component)}",
        ]
        if task.priority:
            lines.append(f"🔥 *Priority:* {task.priority.value}")
        if task.project_name:
            lines.append(f"📁 *Project:* {task.project_name}")
        if task.status == TaskStatus.OVERDUE:
            lines.append("⚠️ *Overdue*")
        return "\n".join(lines)

    async def render(self, state: WizardState, actor: ActorContext, notice: Optional[str] = None) -> StepResult:
        step = state.step
        buttons = []
        task = None
        if step != CompletionStep.SELECT_TASK:
            task = await self.store.get_task_details(state.data.get("task_id"))
            if task is None:
                return self.finish(state, "⚠️ Task not found. Please start again with /complete.")

        if step == CompletionStep.SELECT_TASK:
            tasks = await self.store.get_tasks_by_employee(actor.user.id, ACTIVE_STATUSES)
            if not tasks:
                return self.finish(state, NO_PENDING_TASKS)
            text = "✅ *Select a task to complete:*"
            for t in tasks:
                marker = "⚠️ " if t.status == TaskStatus.OVERDUE else ""
                label = t.description if len(t.description) <= 40 else f"{t.description[:37]}..."
                buttons.append([(f"{marker}{label}", callback_data(ActionTag.SELECT, t.id))])

        elif step == CompletionStep.OFFER_REPLY:
            text = f"{self._task_summary(task)}\n\nWould you like to add a completion note?"
            buttons.append([
                ("💬 Add reply", callback_data(ActionTag.SELECT, "reply")),
                ("⏭ Skip", callback_data(ActionTag.SKIP)),
            ])

        elif step == CompletionStep.CAPTURE_REPLY:
            text = f"💬 Send your completion note ({MIN_REPLY_LENGTH} to {MAX_REPLY_LENGTH} characters)."

        else:
            reply = state.data.get("reply")
            text = f"📋 *Confirm completion*\n\n{self._task_summary(task)}"
            if reply:
                text += f"\n💬 *Reply:* {reply}"
            buttons.append([("✏️ Edit reply", callback_data(ActionTag.EDIT, "reply"))])
            buttons.append([("✅ Confirm completion", callback_data(ActionTag.CONFIRM))])

        buttons.append(NAV_ROW)
        return StepResult(text=with_notice(notice, text), buttons=buttons, step=step_name(step))
