"""
User Directory

Identity, role and project lookups over the relational store, plus the
single per-interaction role resolution (resolve_actor) that the wizards and
approval handlers receive as an explicit value.
"""

import logging
from dataclasses import dataclass
from typing import Optional, List

from sqlalchemy import select

from .database import Database, UserRow, ProjectRow
from .models import (
    NO_PERSON_ID,
    NO_PERSON_NAME,
    NO_PERSON_USERNAME,
    Project,
    Role,
    User,
)

logger = logging.getLogger("directory")


@dataclass(frozen=True)
class ActorContext:
    """The acting user and what their role allows, resolved once per interaction."""
    user: User

    @property
    def role(self) -> Role:
        return self.user.role

    @property
    def is_admin(self) -> bool:
        return self.user.role == Role.ADMIN

    @property
    def is_manager(self) -> bool:
        return self.user.role == Role.MANAGER

    @property
    def can_assign_others(self) -> bool:
        return self.user.role in (Role.ADMIN, Role.MANAGER)

    @property
    def can_approve(self) -> bool:
        return self.user.role in (Role.ADMIN, Role.MANAGER)

    @property
    def sees_all_users(self) -> bool:
        return self.user.role == Role.ADMIN


def _to_user(row: UserRow) -> User:
    return User(
        id=row.id,
        telegram_id=row.telegram_id,
        username=row.username,
        first_name=row.first_name,
        last_name=row.last_name,
        role=Role(row.role),
        manager_id=row.manager_id,
    )


def _to_project(row: ProjectRow) -> Project:
    return Project(id=row.id, name=row.name, status=row.status, manager_id=row.manager_id)


class UserDirectory:
    """Users, roles and projects."""

    def __init__(self, db: Database):
        self.db = db

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def add_user(
        self,
        first_name: str,
        role: Role = Role.EMPLOYEE,
        telegram_id: Optional[int] = None,
        username: Optional[str] = None,
        last_name: Optional[str] = None,
        manager_id: Optional[int] = None,
    ) -> User:
        async with self.db.session() as session:
            row = UserRow(
                telegram_id=telegram_id,
                username=username,
                first_name=first_name,
                last_name=last_name,
                role=int(role),
                manager_id=manager_id,
            )
            session.add(row)
            await session.flush()
            user = _to_user(row)
        logger.info(f"User {user.id} ({user.display_name}) added with role {role.name}")
        return user

    async def ensure_no_person(self) -> User:
        """Create the unassigned-backlog sentinel user if it does not exist."""
        async with self.db.session() as session:
            row = await session.get(UserRow, NO_PERSON_ID)
            if row is None:
                row = UserRow(
                    id=NO_PERSON_ID,
                    telegram_id=None,
                    username=NO_PERSON_USERNAME,
                    first_name=NO_PERSON_NAME,
                    last_name=None,
                    role=int(Role.EMPLOYEE),
                    manager_id=None,
                )
                session.add(row)
                await session.flush()
            return _to_user(row)

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self.db.session() as session:
            row = await session.get(UserRow, user_id)
            return _to_user(row) if row else None

    async def get_user_by_channel_id(self, telegram_id: int) -> Optional[User]:
        async with self.db.session() as session:
            row = (await session.scalars(
                select(UserRow).where(UserRow.telegram_id == telegram_id).limit(1)
            )).first()
            return _to_user(row) if row else None

    async def get_user_with_manager(self, user_id: int) -> tuple:
        """Return (user, manager) where either may be None."""
        user = await self.get_user(user_id)
        if user is None or user.manager_id is None:
            return user, None
        return user, await self.get_user(user.manager_id)

    async def is_manager(self, telegram_id: int) -> bool:
        user = await self.get_user_by_channel_id(telegram_id)
        return user is not None and user.role == Role.MANAGER

    async def is_admin(self, telegram_id: int) -> bool:
        user = await self.get_user_by_channel_id(telegram_id)
        return user is not None and user.role == Role.ADMIN

    async def get_employees_by_manager_id(self, manager_id: int) -> List[User]:
        async with self.db.session() as session:
            rows = (await session.scalars(
                select(UserRow)
                .where(UserRow.manager_id == manager_id, UserRow.id != NO_PERSON_ID)
                .order_by(UserRow.first_name, UserRow.id)
            )).all()
            return [_to_user(r) for r in rows]

    async def get_all_managers(self) -> List[User]:
        """Managers in a stable order (by id)."""
        async with self.db.session() as session:
            rows = (await session.scalars(
                select(UserRow).where(UserRow.role == int(Role.MANAGER)).order_by(UserRow.id)
            )).all()
            return [_to_user(r) for r in rows]

    async def get_all_users(self) -> List[User]:
        async with self.db.session() as session:
            rows = (await session.scalars(
                select(UserRow).where(UserRow.id != NO_PERSON_ID).order_by(UserRow.first_name, UserRow.id)
            )).all()
            return [_to_user(r) for r in rows]

    async def resolve_actor(self, telegram_id: int) -> Optional[ActorContext]:
        """Single role lookup for one interaction. None for unregistered users."""
        user = await self.get_user_by_channel_id(telegram_id)
        if user is None:
            logger.warning(f"Interaction from unregistered telegram id {telegram_id}")
            return None
        return ActorContext(user=user)

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    async def add_project(self, name: str, manager_id: Optional[int] = None, status: str = "active") -> Project:
        async with self.db.session() as session:
            row = ProjectRow(name=name, manager_id=manager_id, status=status)
            session.add(row)
            await session.flush()
            return _to_project(row)

    async def get_active_projects(self) -> List[Project]:
        async with self.db.session() as session:
            rows = (await session.scalars(
                select(ProjectRow).where(ProjectRow.status == "active").order_by(ProjectRow.id.desc())
            )).all()
            return [_to_project(r) for r in rows]

    async def get_project(self, project_id: int) -> Optional[Project]:
        async with self.db.session() as session:
            row = await session.get(ProjectRow, project_id)
            return _to_project(row) if row else None
