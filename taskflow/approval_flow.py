"""
Approval Decisions

Single-step approve/reject handling for the controls sent to approvers:

- creation request: approve -> pending, reject -> rejected
- completion request: approve -> completed (completion_reply kept),
  reject -> pending (back in the active work queue)

Each decision is a compare-and-transition on (pending_approval, stage). A
control that was already used, or raced by another approver, gets an
"already handled" notice and changes nothing.
"""

import logging
from typing import Optional, List, Tuple, Dict

from .directory import ActorContext, UserDirectory
from .models import ApprovalStage, TaskStatus
from .notifications import ButtonRow, MessageTemplates, NotificationDispatcher
from .task_store import TaskStore

logger = logging.getLogger("approval_flow")

ALREADY_HANDLED = "ℹ️ This request was already handled."

APPROVAL_CALLBACKS: Dict[Tuple[ApprovalStage, bool], str] = {
    (ApprovalStage.CREATION, True): "tca",
    (ApprovalStage.CREATION, False): "tcr",
    (ApprovalStage.COMPLETION, True): "cpa",
    (ApprovalStage.COMPLETION, False): "cpr",
}
CALLBACK_DECISIONS = {prefix: key for key, prefix in APPROVAL_CALLBACKS.items()}

# (stage, approved) -> resulting status
DECISION_TARGETS: Dict[Tuple[ApprovalStage, bool], TaskStatus] = {
    (ApprovalStage.CREATION, True): TaskStatus.PENDING,
    (ApprovalStage.CREATION, False): TaskStatus.REJECTED,
    (ApprovalStage.COMPLETION, True): TaskStatus.COMPLETED,
    (ApprovalStage.COMPLETION, False): TaskStatus.PENDING,
}


def approval_buttons(stage: ApprovalStage, task_id: int, number: Optional[int] = None) -> List[ButtonRow]:
    """Approve/reject row for one request. number labels the row in a list of several."""
    suffix = f" #{number}" if number is not None else ""
    return [[
        (f"✅ Approve{suffix}", f"{APPROVAL_CALLBACKS[(stage, True)]}:{task_id}"),
        (f"❌ Reject{suffix}", f"{APPROVAL_CALLBACKS[(stage, False)]}:{task_id}"),
    ]]


def parse_approval_callback(data: str) -> Optional[Tuple[ApprovalStage, bool, int]]:
    """Decode "tca:12" style payloads. None if data is not an approval control."""
    prefix, _, task_id = (data or "").partition(":")
    decision = CALLBACK_DECISIONS.get(prefix)
    if decision is None or not task_id.isdigit():
        return None
    stage, approved = decision
    return stage, approved, int(task_id)


class ApprovalDecisions:
    """Applies an approver's decision and tells the requester."""

    def __init__(self, store: TaskStore, directory: UserDirectory, notifier: NotificationDispatcher):
        self.store = store
        self.directory = directory
        self.notifier = notifier

    async def decide(
        self,
        actor: ActorContext,
        stage: ApprovalStage,
        approve: bool,
        task_id: int,
    ) -> Tuple[bool, str]:
        """
        Approve or reject one request.

        Returns (success, message for the approver).
        """
        if not actor.can_approve:
            return False, "🚫 Sorry, only managers can approve or reject tasks."

        task = await self.store.get_task_details(task_id)
        if task is None:
            return False, f"Task {task_id} not found."

        if stage == ApprovalStage.COMPLETION and task.employee_id == actor.user.id:
            return False, "🚫 You cannot decide on your own completion request."

        if task.status != TaskStatus.PENDING_APPROVAL or task.approval_stage != stage:
            return False, ALREADY_HANDLED

        target = DECISION_TARGETS[(stage, approve)]
        fields = {}
        if stage == ApprovalStage.CREATION or approve:
            fields["approved_by"] = actor.user.id
            fields["auto_approved"] = False

        changed = await self.store.update_task_status(
            task_id,
            target,
            expected_status=TaskStatus.PENDING_APPROVAL,
            expected_stage=stage,
            actor=f"user {actor.user.id}",
            **fields,
        )
        if not changed:
            return False, ALREADY_HANDLED

        task = await self.store.get_task_details(task_id)
        verb = "approved" if approve else "rejected"
        what = "task" if stage == ApprovalStage.CREATION else "completion of"
        message = f"{'✅' if approve else '❌'} You have {verb} the {what} \"{task.description}\"."
        logger.info(f"Task {task_id}: {stage.value} {verb} by user {actor.user.id}")

        employee = await self.directory.get_user(task.employee_id)
        if stage == ApprovalStage.CREATION:
            text = MessageTemplates.creation_decided(task, approve, actor.user.display_name)
        else:
            text = MessageTemplates.completion_decided(task, approve, actor.user.display_name)

        delivered = False
        if employee is not None and employee.is_reachable:
            delivered = await self.notifier.send(employee.telegram_id, text)
        if not delivered:
            message += "\n\n⚠️ The employee could not be notified. They may have blocked the bot or not started it."

        if stage == ApprovalStage.COMPLETION and approve:
            for user in await self.store.get_cc_users(task_id):
                if user.is_reachable and user.id != actor.user.id:
                    await self.notifier.send(user.telegram_id, MessageTemplates.cc_status_changed(task, "Completed"))

        return True, message
