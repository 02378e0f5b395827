"""
Approval Router

Role-based decisions about whether a task needs a manager's approval and,
when it does, who gets asked.

Approver chain:
1. The requester's direct manager, if they have a channel identity and are
   not the requester.
2. Every other manager in id order (excluding the direct manager and the
   requester), stopping at the first one the notification reaches.
3. Nobody reached: the caller auto-approves (AutoApproved outcome). A task
   is never left in pending_approval with zero notified approvers.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, List, Callable, Awaitable

from .models import Role, Task, TaskStatus, User

logger = logging.getLogger("approval_router")


# -----------------------------------------------------------------------------
# Initial Status
# -----------------------------------------------------------------------------
def decide_initial_status(creator_role: Role, employee_role: Role, is_self_assigned: bool) -> TaskStatus:
    """
    Decide the status of a newly created task.

    - Admin: pending, whoever the target is
    - Manager assigning an employee: pending
    - Manager self-assigning: pending
    - Anything else (an employee's own task request): pending_approval
    """
    if creator_role == Role.ADMIN:
        return TaskStatus.PENDING
    if creator_role == Role.MANAGER and (employee_role == Role.EMPLOYEE or is_self_assigned):
        return TaskStatus.PENDING
    return TaskStatus.PENDING_APPROVAL


def decide_completion_bypass(actor: User, task: Task) -> bool:
    """True iff an admin/manager is completing a task they assigned to themselves."""
    return (
        task.employee_id == actor.id
        and task.assigned_by == actor.id
        and actor.role in (Role.ADMIN, Role.MANAGER)
    )


# -----------------------------------------------------------------------------
# Approver Chain
# -----------------------------------------------------------------------------
@dataclass
class ChainResult:
    """Outcome of walking the approver chain."""
    approver: Optional[User] = None
    attempted: List[int] = field(default_factory=list)

    @property
    def reached(self) -> bool:
        return self.approver is not None


def build_approver_chain(
    requester: User,
    direct_manager: Optional[User],
    managers: List[User],
) -> List[User]:
    """Ordered candidate approvers. Candidates without a channel identity are dropped."""
    chain: List[User] = []
    if direct_manager is not None and direct_manager.is_reachable and direct_manager.id != requester.id:
        chain.append(direct_manager)

    excluded = {requester.id}
    if direct_manager is not None:
        excluded.add(direct_manager.id)

    for manager in sorted(managers, key=lambda m: m.id):
        if manager.id in excluded or not manager.is_reachable:
            continue
        chain.append(manager)
        excluded.add(manager.id)
    return chain


async def resolve_approval_chain(
    requester: User,
    direct_manager: Optional[User],
    managers: List[User],
    notify: Callable[[User], Awaitable[bool]],
) -> ChainResult:
    """
    Notify candidates in chain order until one delivery succeeds.

    notify() must report delivery failure as False rather than raising.
    """
    result = ChainResult()
    for candidate in build_approver_chain(requester, direct_manager, managers):
        result.attempted.append(candidate.id)
        delivered = await notify(candidate)
        if delivered:
            result.approver = candidate
            logger.info(f"Approver for request by user {requester.id}: user {candidate.id}")
            return result
        logger.warning(f"Approver candidate {candidate.id} could not be notified, trying next")

    logger.warning(f"No approver reachable for request by user {requester.id} (tried {result.attempted})")
    return result
