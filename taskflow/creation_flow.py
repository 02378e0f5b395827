"""
Task Creation Wizard

SelectAssignee -> EnterDetails -> [ClarifyAmPm] -> SelectPriority -> SelectProject -> Confirm -> commit

- SelectAssignee only for admins (all users) and managers (own employees,
  themselves, and the No Person backlog). Employees start at EnterDetails
  with themselves as the assignee.
- EnterDetails takes "description\\n<due date>" in one message. When the last
  line is not a date, the whole message becomes the description and the
  step asks for the due date. Invalid input re-prompts in place, keeping
  whatever was already valid.
- ClarifyAmPm is entered when the due time has no am/pm.
- Confirm offers edit jumps (description, due date, priority, project, CC);
  each edit comes back to Confirm.
- Commit decides the initial status, persists the task with its reminders
  and CC list, then notifies the approver and/or assignee.
"""

import logging
from enum import Enum
from typing import Optional, List

from .approval_flow import approval_buttons
from .approval_router import decide_initial_status, resolve_approval_chain
from .database import TaskflowError
from .date_parser import DateTimeParser, ParseResult, apply_meridiem, format_due, FORMAT_EXAMPLES
from .directory import ActorContext, UserDirectory
from .models import (
    MIN_DESCRIPTION_LENGTH,
    NO_PERSON_ID,
    ApprovalStage,
    NewTask,
    Priority,
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

logger = logging.getLogger("creation_flow")


class CreationStep(str, Enum):
    SELECT_ASSIGNEE = "select_assignee"
    ENTER_DETAILS = "enter_details"
    CLARIFY_AM_PM = "clarify_am_pm"
    SELECT_PRIORITY = "select_priority"
    SELECT_PROJECT = "select_project"
    CONFIRM = "confirm"
    SELECT_CC = "select_cc"


# Sub-steps of ENTER_DETAILS
AWAIT_DESCRIPTION = "description"
AWAIT_DUE_DATE = "due_date"

EDIT_TARGETS = {
    "description": CreationStep.ENTER_DETAILS,
    "due_date": CreationStep.ENTER_DETAILS,
    "priority": CreationStep.SELECT_PRIORITY,
    "project": CreationStep.SELECT_PROJECT,
    "cc": CreationStep.SELECT_CC,
}


class CreationFlow(BaseFlow):
    """Conversational task creation."""

    kind = FlowKind.CREATION
    first_step = CreationStep.SELECT_ASSIGNEE

    TRANSITIONS = {
        CreationStep.SELECT_ASSIGNEE: {ActionTag.SELECT: "on_assignee"},
        CreationStep.ENTER_DETAILS: {ActionTag.TEXT: "on_details"},
        CreationStep.CLARIFY_AM_PM: {ActionTag.MERIDIEM: "on_meridiem", ActionTag.TEXT: "on_meridiem_text"},
        CreationStep.SELECT_PRIORITY: {ActionTag.SELECT: "on_priority", ActionTag.SKIP: "on_priority_skip"},
        CreationStep.SELECT_PROJECT: {ActionTag.SELECT: "on_project", ActionTag.SKIP: "on_project_skip"},
        CreationStep.CONFIRM: {ActionTag.CONFIRM: "on_commit", ActionTag.EDIT: "on_edit"},
        CreationStep.SELECT_CC: {ActionTag.SELECT: "on_cc_toggle", ActionTag.CONFIRM: "on_cc_done"},
    }

    def __init__(
        self,
        registry,
        clock,
        store: TaskStore,
        directory: UserDirectory,
        notifier: NotificationDispatcher,
        parser: DateTimeParser,
    ):
        super().__init__(registry, clock)
        self.store = store
        self.directory = directory
        self.notifier = notifier
        self.parser = parser

    # -------------------------------------------------------------------------
    # Entry
    # -------------------------------------------------------------------------

    async def start(self, conversation_id: int, actor: ActorContext) -> StepResult:
        now = self.clock()
        if actor.can_assign_others:
            state = self.registry.start(
                conversation_id, actor.user.telegram_id, self.kind, CreationStep.SELECT_ASSIGNEE, now
            )
        else:
            state = self.registry.start(
                conversation_id, actor.user.telegram_id, self.kind, CreationStep.ENTER_DETAILS, now
            )
            state.data["employee_id"] = actor.user.id
            state.data["employee_name"] = actor.user.display_name
        state.data["cc_user_ids"] = []
        logger.info(f"Conversation {conversation_id}: creation flow started by user {actor.user.id}")
        return await self.render(state, actor)

    async def assignee_candidates(self, actor: ActorContext) -> List[User]:
        if actor.sees_all_users:
            return await self.directory.get_all_users()
        candidates = [actor.user]
        team = await self.directory.get_employees_by_manager_id(actor.user.id)
        candidates.extend(u for u in team if u.id != actor.user.id)
        candidates.append(await self.directory.ensure_no_person())
        return candidates

    # -------------------------------------------------------------------------
    # SelectAssignee
    # -------------------------------------------------------------------------

    async def on_assignee(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        candidates = {u.id: u for u in await self.assignee_candidates(actor)}
        try:
            user = candidates.get(int(action.value))
        except (TypeError, ValueError):
            user = None
        if user is None:
            return await self.render(state, actor, notice="⚠️ That user is not available. Please pick from the list.")

        state.data["employee_id"] = user.id
        state.data["employee_name"] = user.display_name
        state.data["awaiting"] = None
        state.advance(CreationStep.ENTER_DETAILS)
        return await self.render(state, actor)

    # -------------------------------------------------------------------------
    # EnterDetails
    # -------------------------------------------------------------------------

    def _take_description(self, state: WizardState, text: str) -> Optional[str]:
        description = text.strip()
        if len(description) < MIN_DESCRIPTION_LENGTH:
            return f"⚠️ The description must be at least {MIN_DESCRIPTION_LENGTH} characters."
        state.data["description"] = description
        return None

    def _take_due(self, state: WizardState, parsed: ParseResult) -> Optional[str]:
        if not parsed.ok:
            return f"⚠️ {parsed.error}"
        if parsed.needs_clarification:
            # Any earlier due date stays until the meridiem is chosen
            state.data["tentative_due"] = parsed.date
            state.data["ambiguous_hour"] = parsed.ambiguous_hour
            return None
        if parsed.date <= self.clock():
            return "⚠️ The due date is in the past. Please enter a future date."
        state.data["due_date"] = parsed.date
        state.data["has_time"] = parsed.has_time_component
        state.data["tentative_due"] = None
        state.data["ambiguous_hour"] = None
        return None

    async def on_details(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        text = (action.value or "").strip()
        awaiting = state.data.get("awaiting")
        now = self.clock()

        if not text:
            notice = "⚠️ Please send some text."
        elif awaiting == AWAIT_DESCRIPTION:
            notice = self._take_description(state, text)
        elif awaiting == AWAIT_DUE_DATE:
            notice = self._take_due(state, self.parser.parse(text, now))
        else:
            lines = [line.strip() for line in text.splitlines() if line.strip()]
            last = self.parser.parse(lines[-1], now)
            if len(lines) == 1 and last.ok:
                if state.data.get("description"):
                    notice = self._take_due(state, last)
                else:
                    notice = "⚠️ Please include a task description, not just a date."
            elif len(lines) > 1 and last.ok:
                description_error = self._take_description(state, "\n".join(lines[:-1]))
                due_error = self._take_due(state, last)
                notice = description_error or due_error
            else:
                # No date on the last line: everything is the description
                notice = self._take_description(state, text)

        return await self._continue_details(state, actor, notice)

    async def _continue_details(self, state: WizardState, actor: ActorContext, notice: Optional[str]) -> StepResult:
        """Ask for whatever is still missing, or move on."""
        if not state.data.get("description"):
            state.data["awaiting"] = AWAIT_DESCRIPTION
            return await self.render(state, actor, notice=notice)

        if state.data.get("tentative_due") is not None:
            if notice is None:
                state.data["awaiting"] = None
                state.advance(CreationStep.CLARIFY_AM_PM)
                return await self.render(state, actor)
            self._clear_tentative(state)
            state.data["awaiting"] = AWAIT_DUE_DATE
            return await self.render(state, actor, notice=notice)

        if not state.data.get("due_date"):
            state.data["awaiting"] = AWAIT_DUE_DATE
            return await self.render(state, actor, notice=notice)

        state.data["awaiting"] = None
        return await self._after_due_date(state, actor, notice)

    async def _after_due_date(self, state: WizardState, actor: ActorContext, notice: Optional[str] = None) -> StepResult:
        if state.data.get("editing"):
            return await self._return_to_confirm(state, actor, notice)
        state.advance(CreationStep.SELECT_PRIORITY)
        return await self.render(state, actor, notice=notice)

    # -------------------------------------------------------------------------
    # ClarifyAmPm
    # -------------------------------------------------------------------------

    async def on_meridiem(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        meridiem = (action.value or "").lower()
        tentative = state.data.get("tentative_due")
        hour = state.data.get("ambiguous_hour")
        if meridiem not in ("am", "pm") or tentative is None or hour is None:
            return await self.render(state, actor, notice="⚠️ Please choose AM or PM.")

        due = apply_meridiem(tentative, hour, meridiem)
        if due <= self.clock():
            self._clear_tentative(state)
            state.go_back()
            state.data["awaiting"] = AWAIT_DUE_DATE
            return await self.render(
                state, actor, notice="⚠️ The due date is in the past. Please enter a future date."
            )

        state.data["due_date"] = due
        state.data["has_time"] = True
        return await self._after_due_date(state, actor)

    def _clear_tentative(self, state: WizardState) -> None:
        state.data["tentative_due"] = None
        state.data["ambiguous_hour"] = None

    async def on_meridiem_text(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        text = (action.value or "").strip().lower()
        if text in ("am", "pm"):
            return await self.on_meridiem(state, Action.meridiem(text, action.interaction_id), actor)
        return await self.render(state, actor, notice="⚠️ Please choose AM or PM.")

    # -------------------------------------------------------------------------
    # SelectPriority / SelectProject
    # -------------------------------------------------------------------------

    async def on_priority(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        choice = next((p for p in Priority if p.value.lower() == (action.value or "").lower()), None)
        if choice is None:
            return await self.render(state, actor, notice="⚠️ Unknown priority.")
        state.data["priority"] = choice
        return await self._after_priority(state, actor)

    async def on_priority_skip(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        state.data["priority"] = None
        return await self._after_priority(state, actor)

    async def _after_priority(self, state: WizardState, actor: ActorContext) -> StepResult:
        if state.data.get("editing"):
            return await self._return_to_confirm(state, actor)
        state.advance(CreationStep.SELECT_PROJECT)
        return await self.render(state, actor)

    async def on_project(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        try:
            project = await self.directory.get_project(int(action.value))
        except (TypeError, ValueError):
            project = None
        if project is None or project.status != "active":
            return await self.render(state, actor, notice="⚠️ Project not found. Please pick from the list or skip.")
        state.data["project_id"] = project.id
        state.data["project_name"] = project.name
        return await self._after_project(state, actor)

    async def on_project_skip(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        state.data["project_id"] = None
        state.data["project_name"] = None
        return await self._after_project(state, actor)

    async def _after_project(self, state: WizardState, actor: ActorContext) -> StepResult:
        if state.data.get("editing"):
            return await self._return_to_confirm(state, actor)
        state.advance(CreationStep.CONFIRM)
        return await self.render(state, actor)

    # -------------------------------------------------------------------------
    # Confirm / edits / CC
    # -------------------------------------------------------------------------

    async def _return_to_confirm(self, state: WizardState, actor: ActorContext, notice: Optional[str] = None) -> StepResult:
        while state.step != CreationStep.CONFIRM and state.go_back() is not None:
            pass
        if state.step != CreationStep.CONFIRM:
            state.jump(CreationStep.CONFIRM)
        state.data["editing"] = False
        state.data["awaiting"] = None
        self._clear_tentative(state)
        return await self.render(state, actor, notice=notice)

    async def on_edit(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        target = action.value or ""
        step = EDIT_TARGETS.get(target)
        if step is None:
            return await self.render(state, actor, notice="⚠️ Nothing to edit there.")

        state.data["editing"] = step != CreationStep.SELECT_CC
        self._clear_tentative(state)
        if target == "description":
            state.data["awaiting"] = AWAIT_DESCRIPTION
        elif target == "due_date":
            state.data["awaiting"] = AWAIT_DUE_DATE
        state.advance(step)
        return await self.render(state, actor)

    async def cc_candidates(self, state: WizardState) -> List[User]:
        employee_id = state.data.get("employee_id")
        return [u for u in await self.directory.get_all_users() if u.id != employee_id]

    async def on_cc_toggle(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        candidates = {u.id for u in await self.cc_candidates(state)}
        try:
            user_id = int(action.value)
        except (TypeError, ValueError):
            user_id = None
        if user_id not in candidates:
            return await self.render(state, actor, notice="⚠️ That user is not available.")
        selected: List[int] = state.data.setdefault("cc_user_ids", [])
        if user_id in selected:
            selected.remove(user_id)
        else:
            selected.append(user_id)
        return await self.render(state, actor)

    async def on_cc_done(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        return await self._return_to_confirm(state, actor)

    def on_back(self, state: WizardState) -> None:
        state.data["awaiting"] = None
        if state.step != CreationStep.CLARIFY_AM_PM:
            self._clear_tentative(state)
        if state.step == CreationStep.CONFIRM:
            state.data["editing"] = False

    # -------------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------------

    async def on_commit(self, state: WizardState, action: Action, actor: ActorContext) -> StepResult:
        data = state.data
        due = data.get("due_date")
        if not data.get("description"):
            data["editing"] = True
            data["awaiting"] = AWAIT_DESCRIPTION
            state.advance(CreationStep.ENTER_DETAILS)
            return await self.render(state, actor, notice="⚠️ Please add a description first.")
        if due is None or due <= self.clock():
            data["editing"] = True
            data["awaiting"] = AWAIT_DUE_DATE
            state.advance(CreationStep.ENTER_DETAILS)
            notice = "⚠️ Please set a due date first." if due is None else "⚠️ The due date has passed. Please enter a new one."
            return await self.render(state, actor, notice=notice)

        employee = await self.directory.get_user(data["employee_id"])
        if employee is None:
            return self.finish(state, "⚠️ The selected user no longer exists. Please start again with /newtask.")

        # The wizard is done; a redelivered confirm must not find it again
        self.registry.discard(state.conversation_id)

        creator = actor.user
        status = decide_initial_status(creator.role, employee.role, employee.id == creator.id)
        new_task = NewTask(
            description=data["description"],
            employee_id=employee.id,
            assigned_by=creator.id,
            due_date=due,
            has_time_component=data.get("has_time", True),
            status=status,
            priority=data.get("priority"),
            project_id=data.get("project_id"),
            approval_stage=ApprovalStage.CREATION if status == TaskStatus.PENDING_APPROVAL else None,
            cc_user_ids=list(data.get("cc_user_ids") or []),
        )
        try:
            task_id = await self.store.create_task(new_task)
        except TaskflowError:
            # Nothing was written, so the confirmation can be retried
            self.registry.restore(state)
            raise
        await self.store.create_reminders(task_id)
        if new_task.cc_user_ids:
            await self.store.add_cc_users(task_id, new_task.cc_user_ids)

        task = await self.store.get_task_details(task_id)
        if status == TaskStatus.PENDING_APPROVAL:
            text = await self._request_creation_approval(task, creator)
        else:
            text = await self._announce_assignment(task, creator, employee)

        await self._notify_cc(task, employee)
        return StepResult.done(text, task_id=task_id)

    async def _request_creation_approval(self, task: Task, requester: User) -> str:
        direct_manager = await self.directory.get_user(requester.manager_id) if requester.manager_id else None
        message = MessageTemplates.creation_approval_request(task, requester.display_name)
        buttons = approval_buttons(ApprovalStage.CREATION, task.id)

        async def notify(candidate: User) -> bool:
            return await self.notifier.send(candidate.telegram_id, message, buttons)

        chain = await resolve_approval_chain(requester, direct_manager, await self.directory.get_all_managers(), notify)
        if chain.reached:
            return MessageTemplates.creation_request_sent(task, chain.approver.display_name)

        await self.store.update_task_status(
            task.id,
            TaskStatus.PENDING,
            expected_status=TaskStatus.PENDING_APPROVAL,
            expected_stage=ApprovalStage.CREATION,
            actor="auto-approval",
            auto_approved=True,
        )
        task.status = TaskStatus.PENDING
        return MessageTemplates.creation_request_sent(task, None)

    async def _announce_assignment(self, task: Task, creator: User, employee: User) -> str:
        if employee.id == creator.id:
            delivered = await self.notifier.send(creator.telegram_id, MessageTemplates.self_assigned(task))
            if not delivered:
                logger.warning(f"Task {task.id}: self-assignment notice not delivered to user {creator.id}")
            return f"✅ Task created and assigned to yourself.\n\n📝 {task.description}"

        text = f"✅ Task created for {employee.display_name}.\n\n📝 {task.description}"
        if employee.id == NO_PERSON_ID:
            return text + "\n\nThe task is in the unassigned backlog."
        if not employee.is_reachable:
            return text + "\n\n⚠️ The assignee has not started the bot, so they were not notified."

        delivered = await self.notifier.send(
            employee.telegram_id, MessageTemplates.new_task_assigned(task, creator.display_name)
        )
        if not delivered:
            return text + "\n\n⚠️ The assignee could not be notified. They may have blocked the bot."
        return text

    async def _notify_cc(self, task: Task, employee: User) -> None:
        for user in await self.store.get_cc_users(task.id):
            if user.is_reachable:
                await self.notifier.send(user.telegram_id, MessageTemplates.cc_added(task, employee.display_name))

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def summary(self, state: WizardState) -> str:
        data = state.data
        due = data.get("due_date")
        priority = data.get("priority")
        lines = [
            f"👤 *Assignee:* {data.get('employee_name') or 'Not selected'}",
            f"📝 *Description:* {data.get('description') or 'Not set'}",
            f"📅 *Due:* {format_due(due, data.get('has_time', True)) if due else 'Not set'}",
            f"🔥 *Priority:* {priority.value if priority else 'None'}",
            f"📁 *Project:* {data.get('project_name') or 'None'}",
        ]
        cc_ids = data.get("cc_user_ids") or []
        if cc_ids:
            lines.append(f"👀 *CC:* {len(cc_ids)} user(s)")
        return "\n".join(lines)

    async def render(self, state: WizardState, actor: ActorContext, notice: Optional[str] = None) -> StepResult:
        step = state.step
        buttons = []

        if step == CreationStep.SELECT_ASSIGNEE:
            text = "👤 *Who is this task for?*"
            users = await self.assignee_candidates(actor)
            for i in range(0, len(users), 2):
                buttons.append([
                    (("🙋 Myself" if u.id == actor.user.id else u.display_name), callback_data(ActionTag.SELECT, u.id))
                    for u in users[i:i + 2]
                ])

        elif step == CreationStep.ENTER_DETAILS:
            awaiting = state.data.get("awaiting")
            if awaiting == AWAIT_DESCRIPTION:
                text = f"📝 Please send the task description (at least {MIN_DESCRIPTION_LENGTH} characters)."
            elif awaiting == AWAIT_DUE_DATE:
                text = f"📅 Please send the due date, for example:\n{FORMAT_EXAMPLES}"
            else:
                text = (
                    "📝 Send the task description with the due date on the last line, for example:\n\n"
                    "Fix login bug\n15 3pm"
                )
            if state.data.get("description") or state.data.get("due_date"):
                text = f"{self.summary(state)}\n\n{text}"

        elif step == CreationStep.CLARIFY_AM_PM:
            hour = state.data.get("ambiguous_hour")
            text = f"⏰ You entered the time {hour} without AM or PM. Which did you mean?"
            buttons.append([
                (f"{hour} AM", callback_data(ActionTag.MERIDIEM, "am")),
                (f"{hour} PM", callback_data(ActionTag.MERIDIEM, "pm")),
            ])

        elif step == CreationStep.SELECT_PRIORITY:
            text = "🔥 *Select a priority* (optional)"
            buttons.append([(p.value, callback_data(ActionTag.SELECT, p.value)) for p in Priority])
            buttons.append([("⏭ Skip", callback_data(ActionTag.SKIP))])

        elif step == CreationStep.SELECT_PROJECT:
            projects = await self.directory.get_active_projects()
            text = "📁 *Select a project* (optional)" if projects else "📁 No active projects."
            for project in projects:
                buttons.append([(project.name, callback_data(ActionTag.SELECT, project.id))])
            buttons.append([("⏭ Skip", callback_data(ActionTag.SKIP))])

        elif step == CreationStep.SELECT_CC:
            selected = set(state.data.get("cc_user_ids") or [])
            text = "👀 *Select users to CC* (tap again to remove)"
            for user in await self.cc_candidates(state):
                mark = "✅ " if user.id in selected else ""
                buttons.append([(f"{mark}{user.display_name}", callback_data(ActionTag.SELECT, user.id))])
            buttons.append([("Done", callback_data(ActionTag.CONFIRM))])

        else:
            text = f"📋 *Please review the task*\n\n{self.summary(state)}"
            buttons.extend([
                [("✏️ Description", callback_data(ActionTag.EDIT, "description")),
                 ("✏️ Due date", callback_data(ActionTag.EDIT, "due_date"))],
                [("✏️ Priority", callback_data(ActionTag.EDIT, "priority")),
                 ("✏️ Project", callback_data(ActionTag.EDIT, "project"))],
                [("👀 CC users", callback_data(ActionTag.EDIT, "cc"))],
                [("✅ Create task", callback_data(ActionTag.CONFIRM))],
            ])

        buttons.append(NAV_ROW)
        return StepResult(text=with_notice(notice, text), buttons=buttons, step=step_name(step))
