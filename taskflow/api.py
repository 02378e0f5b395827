"""
Task Board API - FastAPI Application

Read-only REST slice over the task store, backing the kanban mini-app:

- GET /health                 service status, timezone, process memory
- GET /tasks                  filter by employee_id and/or status
- GET /tasks/{task_id}        one task with names resolved
- GET /users/{user_id}/board  a user's tasks grouped into status columns

All writes go through the bot; this API never mutates tasks.
"""

import logging
import os
from datetime import datetime
from typing import Optional, List, Dict

import psutil
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from . import __version__
from .config import Settings, configure_logging, get_settings
from .database import Database
from .directory import UserDirectory
from .models import Task, TaskStatus
from .task_store import TaskStore

logger = logging.getLogger("task_api")

BOARD_COLUMNS = [
    TaskStatus.PENDING_APPROVAL,
    TaskStatus.PENDING,
    TaskStatus.OVERDUE,
    TaskStatus.COMPLETED,
    TaskStatus.REJECTED,
]


# -----------------------------------------------------------------------------
# Response Models
# -----------------------------------------------------------------------------
class TaskModel(BaseModel):
    id: int
    description: str
    employee_id: int
    assigned_by: int
    due_date: datetime
    has_time_component: bool
    status: str
    priority: Optional[str] = None
    project_id: Optional[int] = None
    approved_by: Optional[int] = None
    auto_approved: bool = False
    approval_stage: Optional[str] = None
    completed_at: Optional[datetime] = None
    completion_reply: Optional[str] = None
    employee_name: Optional[str] = None
    assigner_name: Optional[str] = None
    project_name: Optional[str] = None


class BoardResponse(BaseModel):
    user_id: int
    user_name: str
    columns: Dict[str, List[TaskModel]]
    total: int


class HealthResponse(BaseModel):
    status: str
    version: str
    timezone: str
    timestamp: datetime
    memory_rss_mb: float


def to_model(task: Task) -> TaskModel:
    return TaskModel(
        id=task.id,
        description=task.description,
        employee_id=task.employee_id,
        assigned_by=task.assigned_by,
        due_date=task.due_date,
        has_time_component=task.has_time_component,
        status=task.status.value,
        priority=task.priority.value if task.priority else None,
        project_id=task.project_id,
        approved_by=task.approved_by,
        auto_approved=task.auto_approved,
        approval_stage=task.approval_stage.value if task.approval_stage else None,
        completed_at=task.completed_at,
        completion_reply=task.completion_reply,
        employee_name=task.employee_name,
        assigner_name=task.assigner_name,
        project_name=task.project_name,
    )


# -----------------------------------------------------------------------------
# FastAPI Application
# -----------------------------------------------------------------------------
def create_app(
    store: Optional[TaskStore] = None,
    directory: Optional[UserDirectory] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the API. Without a store, one is opened on the configured database."""
    settings = settings or get_settings()
    owned_db: Optional[Database] = None
    if store is None or directory is None:
        owned_db = Database(settings.database_url)
        store = store or TaskStore(owned_db, clock=settings.now)
        directory = directory or UserDirectory(owned_db)

    app = FastAPI(
        title="Taskflow - Task Board API",
        description="Read-only view of tasks managed through the Telegram bot",
        version=__version__,
    )

    if owned_db is not None:
        @app.on_event("startup")
        async def startup_event():
            await owned_db.create_all()

        @app.on_event("shutdown")
        async def shutdown_event():
            await owned_db.dispose()

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        rss = psutil.Process(os.getpid()).memory_info().rss
        return HealthResponse(
            status="healthy",
            version=__version__,
            timezone=settings.timezone,
            timestamp=settings.now(),
            memory_rss_mb=round(rss / (1024 * 1024), 1),
        )

    @app.get("/tasks", response_model=List[TaskModel])
    async def list_tasks(
        employee_id: Optional[int] = Query(default=None),
        status: Optional[str] = Query(default=None),
    ):
        try:
            status_filter = TaskStatus(status) if status else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")

        if employee_id is not None:
            tasks = await store.get_tasks_by_employee(employee_id, [status_filter] if status_filter else None)
        elif status_filter is not None:
            tasks = await store.get_tasks_by_status(status_filter)
        else:
            raise HTTPException(status_code=400, detail="Provide employee_id or status")
        return [to_model(t) for t in tasks]

    @app.get("/tasks/{task_id}", response_model=TaskModel)
    async def get_task(task_id: int):
        task = await store.get_task_details(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return to_model(task)

    @app.get("/users/{user_id}/board", response_model=BoardResponse)
    async def get_board(user_id: int):
        user = await directory.get_user(user_id)
        if user is None:
            raise HTTPException(status_code=404, detail=f"User {user_id} not found")

        columns: Dict[str, List[TaskModel]] = {status.value: [] for status in BOARD_COLUMNS}
        tasks = await store.get_tasks_by_employee(user_id)
        for task in tasks:
            columns[task.status.value].append(to_model(task))
        return BoardResponse(user_id=user.id, user_name=user.display_name, columns=columns, total=len(tasks))

    return app


def main():
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    logger.info(f"Starting task board API on {settings.api_host}:{settings.api_port}")
    uvicorn.run(create_app(settings=settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
