"""
Pytest configuration for taskflow tests.

This module provides:
1. An in-memory SQLite store with seeded users and a project
2. A recording notifier whose deliveries can be made to fail per chat
3. A settable reference clock shared by the store and the engine
"""

from datetime import datetime, timedelta
from typing import List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from taskflow.config import Settings
from taskflow.database import Database
from taskflow.date_parser import DateTimeParser
from taskflow.directory import UserDirectory
from taskflow.engine import TaskLifecycleEngine
from taskflow.models import NewTask, Role, TaskStatus, ApprovalStage
from taskflow.notifications import ButtonRow, NotificationDispatcher
from taskflow.task_store import TaskStore


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
REFERENCE_NOW = datetime(2025, 6, 10, 9, 0, 0)

ADA_TELEGRAM_ID = 1001
MIA_TELEGRAM_ID = 1002
SAM_TELEGRAM_ID = 1003
MAX_TELEGRAM_ID = 1004


# -----------------------------------------------------------------------------
# Test Doubles
# -----------------------------------------------------------------------------
class FakeClock:
    """Callable clock returning a fixed, adjustable time."""

    def __init__(self, now: datetime = REFERENCE_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier(NotificationDispatcher):
    """Records every send; chats listed in failing report delivery failure."""

    def __init__(self):
        self.sent: List[Tuple[int, str, Optional[List[ButtonRow]]]] = []
        self.failing: Set[int] = set()

    async def send(self, chat_id, message, buttons=None) -> bool:
        self.sent.append((chat_id, message, buttons))
        return chat_id not in self.failing

    def messages_to(self, chat_id: int) -> List[str]:
        return [message for target, message, _ in self.sent if target == chat_id]

    def buttons_to(self, chat_id: int) -> List[Optional[List[ButtonRow]]]:
        return [buttons for target, _, buttons in self.sent if target == chat_id]


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", timezone="UTC", log_file="")


@pytest_asyncio.fixture
async def db():
    database = Database("sqlite://")
    await database.create_all()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def directory(db):
    directory = UserDirectory(db)
    await directory.ensure_no_person()
    return directory


@pytest.fixture
def store(db, clock):
    return TaskStore(db, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def users(directory):
    """Ada (admin), Mia and Max (managers), Sam (employee reporting to Mia)."""
    ada = await directory.add_user("Ada", Role.ADMIN, telegram_id=ADA_TELEGRAM_ID, username="ada")
    mia = await directory.add_user("Mia", Role.MANAGER, telegram_id=MIA_TELEGRAM_ID, username="mia")
    max_ = await directory.add_user("Max", Role.MANAGER, telegram_id=MAX_TELEGRAM_ID, username="max")
    sam = await directory.add_user(
        "Sam", Role.EMPLOYEE, telegram_id=SAM_TELEGRAM_ID, username="sam", manager_id=mia.id
    )
    return {"ada": ada, "mia": mia, "max": max_, "sam": sam}


@pytest_asyncio.fixture
async def project(directory, users):
    return await directory.add_project("Website", manager_id=users["mia"].id)


@pytest.fixture
def engine(store, directory, notifier, clock, users):
    return TaskLifecycleEngine(
        store=store,
        directory=directory,
        notifier=notifier,
        parser=DateTimeParser(),
        clock=clock,
        idle_timeout=timedelta(minutes=30),
        processed_limit=50,
    )


@pytest.fixture
def create_test_task(store):
    """Factory inserting a task directly, bypassing the wizard."""

    async def _create(
        employee,
        assigner,
        description: str = "Write the weekly report",
        due_date: datetime = REFERENCE_NOW + timedelta(days=2),
        status: TaskStatus = TaskStatus.PENDING,
        approval_stage: Optional[ApprovalStage] = None,
        with_reminders: bool = False,
    ) -> int:
        task_id = await store.create_task(NewTask(
            description=description,
            employee_id=employee.id,
            assigned_by=assigner.id,
            due_date=due_date,
            status=status,
            approval_stage=approval_stage,
        ))
        if with_reminders:
            await store.create_reminders(task_id)
        return task_id

    return _create
