from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import delete, or_

import app.db.session as db
from app.config import settings
from app.core.simulations.models import ActorRole, SimActor
from app.db.models.scopes import RoleScope, SubAdminAssignment, TeacherClassAssignment
from app.db.models.user import User
from app.utils.security import create_access_token, get_password_hash

logger = logging.getLogger(__name__)

# Keeps IN (...) lists well under SQLite's bound-parameter limit.
DELETE_CHUNK_SIZE = 500


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i : i + size]


class ActorFactory:
    """Creates synthetic accounts with session tokens, and deletes them afterwards."""

    def __init__(self, *, password: Optional[str] = None) -> None:
        self._password = password if password is not None else settings.SIMULATION_ACTOR_PASSWORD
        self._password_hash: Optional[str] = None

    async def _hash(self) -> str:
        # Every synthetic account shares one password; hash it once per factory.
        if self._password_hash is None:
            self._password_hash = await asyncio.to_thread(get_password_hash, self._password)
        return self._password_hash

    async def create_actor(self, role: ActorRole, run_id: str) -> SimActor:
        suffix = uuid.uuid4().hex[:8]
        email = f"sim_{role.value.lower()}_{run_id}_{suffix}"
        user_id = uuid.uuid4()

        async with db.AsyncSessionLocal() as session:
            session.add(
                User(
                    id=user_id,
                    email=email,
                    display_name=f"SIM {role.value} {suffix}",
                    password_hash=await self._hash(),
                    role=role.value,
                )
            )
            await session.commit()

        token = create_access_token(user_id, role=role.value)
        return SimActor(user_id=str(user_id), role=role, token=token, email=email)

    async def delete_actors(self, user_ids: Iterable[str]) -> int:
        """Delete the accounts and every scope row that references them."""
        ids = [uuid.UUID(str(u)) for u in user_ids if u]
        if not ids:
            return 0

        deleted = 0
        async with db.AsyncSessionLocal() as session:
            for chunk in _chunks(ids, DELETE_CHUNK_SIZE):
                await session.execute(
                    delete(TeacherClassAssignment).where(TeacherClassAssignment.teacher_id.in_(chunk))
                )
                await session.execute(
                    delete(SubAdminAssignment).where(
                        or_(SubAdminAssignment.sub_admin_id.in_(chunk), SubAdminAssignment.teacher_id.in_(chunk))
                    )
                )
                await session.execute(delete(RoleScope).where(RoleScope.user_id.in_(chunk)))
                result = await session.execute(delete(User).where(User.id.in_(chunk)))
                deleted += int(result.rowcount or 0)
            await session.commit()

        logger.info("simulation.actors.deleted count=%d", deleted)
        return deleted
