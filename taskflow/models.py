"""
Task Lifecycle Models

Domain types shared by the store, the wizards and the bot adapter.

Status meanings:
- pending_approval: awaiting a manager's decision (creation request or completion)
- pending: active, assigned, awaiting completion
- overdue: pending with due date passed (set only by the periodic sweep)
- completed: terminal, completed_at set
- rejected: terminal for creation rejection
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional, List, Union

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
NO_PERSON_ID = 0
NO_PERSON_USERNAME = "no_person"
NO_PERSON_NAME = "No Person"

MIN_DESCRIPTION_LENGTH = 5
MIN_REPLY_LENGTH = 3
MAX_REPLY_LENGTH = 500


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class TaskStatus(str, Enum):
    """Task lifecycle status."""
    PENDING_APPROVAL = "pending_approval"
    PENDING = "pending"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    REJECTED = "rejected"


class ApprovalStage(str, Enum):
    """Which decision a pending_approval task is waiting for."""
    CREATION = "creation"
    COMPLETION = "completion"


class Priority(str, Enum):
    """Optional task priority."""
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class Role(IntEnum):
    """
    User roles.

    Numeric values are storage values only; never compare roles by order.
    """
    ADMIN = 0
    MANAGER = 1
    EMPLOYEE = 2


class ReminderType(IntEnum):
    """One reminder row per (task, type) is created with every task."""
    TOMORROW = 0
    TODAY_1H = 1
    TODAY_4H = 2
    OVERDUE_1 = 3
    OVERDUE_2 = 4

    @property
    def label(self) -> str:
        return self.name.lower()


ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.OVERDUE)


# -----------------------------------------------------------------------------
# Approval Outcome
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ApprovedBy:
    """A human approver made the decision."""
    user_id: int


@dataclass(frozen=True)
class AutoApproved:
    """No approver could be reached; the system approved on their behalf."""
    reason: str = "no reachable approver"


ApprovalOutcome = Union[ApprovedBy, AutoApproved]


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------
@dataclass
class User:
    """A bot user. telegram_id is None for users without a channel identity."""
    id: int
    username: Optional[str]
    first_name: str
    role: Role
    telegram_id: Optional[int] = None
    last_name: Optional[str] = None
    manager_id: Optional[int] = None

    @property
    def display_name(self) -> str:
        if self.id == NO_PERSON_ID:
            return NO_PERSON_NAME
        if self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.first_name or (self.username or f"user {self.id}")

    @property
    def is_no_person(self) -> bool:
        return self.id == NO_PERSON_ID

    @property
    def is_reachable(self) -> bool:
        return self.telegram_id is not None and not self.is_no_person


@dataclass
class Project:
    id: int
    name: str
    status: str = "active"
    manager_id: Optional[int] = None


@dataclass
class Task:
    """A unit of work assigned to exactly one employee by exactly one assigner."""
    id: int
    description: str
    employee_id: int
    assigned_by: int
    due_date: datetime
    status: TaskStatus
    has_time_component: bool = True
    priority: Optional[Priority] = None
    project_id: Optional[int] = None
    approved_by: Optional[int] = None
    auto_approved: bool = False
    approval_stage: Optional[ApprovalStage] = None
    completed_at: Optional[datetime] = None
    completion_reply: Optional[str] = None
    created_at: Optional[datetime] = None
    # Filled by TaskStore.get_task_details
    employee_name: Optional[str] = None
    assigner_name: Optional[str] = None
    project_name: Optional[str] = None

    @property
    def is_self_assigned(self) -> bool:
        return self.employee_id == self.assigned_by

    @property
    def approval(self) -> Optional[ApprovalOutcome]:
        if self.auto_approved:
            return AutoApproved()
        if self.approved_by is not None:
            return ApprovedBy(self.approved_by)
        return None


@dataclass
class DueReminder:
    """A reminder row that is due, joined with what is needed to send it."""
    reminder_id: int
    reminder_type: ReminderType
    task_id: int
    description: str
    due_date: datetime
    telegram_id: Optional[int]
    employee_name: str


@dataclass
class NewTask:
    """Fields accumulated by the creation wizard for TaskStore.create_task."""
    description: str
    employee_id: int
    assigned_by: int
    due_date: datetime
    status: TaskStatus
    has_time_component: bool = True
    priority: Optional[Priority] = None
    project_id: Optional[int] = None
    approved_by: Optional[int] = None
    auto_approved: bool = False
    approval_stage: Optional[ApprovalStage] = None
    cc_user_ids: List[int] = field(default_factory=list)
