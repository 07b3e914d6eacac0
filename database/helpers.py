"""
Database helper functions shared by the pipeline components.

"""

from __future__ import annotations

import uuid
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import InvalidInput
from database.models import EmailConnection, User


def to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    """Coerce a user-supplied id, raising ``InvalidInput`` when malformed."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise InvalidInput(f"Invalid id: {value!r}")


async def ensure_user_exists(session: AsyncSession, user_id: str | uuid.UUID, email: str | None = None) -> None:
    """Create a ``User`` row if one does not already exist (idempotent)."""
    uid = to_uuid(user_id)
    existing = await session.get(User, uid)
    if existing is None:
        session.add(User(user_id=uid, email=email or f"{uid}@users.local"))
        await session.flush()


async def list_user_ids(session: AsyncSession) -> List[uuid.UUID]:
    result = await session.execute(select(User.user_id))
    return list(result.scalars().all())


async def list_sync_enabled_user_ids(session: AsyncSession, provider: str = "gmail") -> List[uuid.UUID]:
    result = await session.execute(
        select(EmailConnection.user_id).where(
            EmailConnection.provider == provider,
            EmailConnection.sync_enabled.is_(True),
        )
    )
    return list(result.scalars().all())


async def get_connection(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    provider: str = "gmail",
) -> EmailConnection | None:
    result = await session.execute(
        select(EmailConnection).where(
            EmailConnection.user_id == to_uuid(user_id),
            EmailConnection.provider == provider,
        )
    )
    return result.scalar_one_or_none()
