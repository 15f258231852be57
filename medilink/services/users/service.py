from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medilink.db import models

logger = logging.getLogger(__name__)


class DuplicateEmailError(ValueError):
    """Another account already uses the requested email."""


async def list_users(session: AsyncSession) -> list[models.User]:
    res = await session.execute(select(models.User).order_by(models.User.created_at))
    return list(res.scalars().all())


async def update_user(session: AsyncSession, user_id: str, changes: dict) -> models.User | None:
    """Apply an admin edit to a user; returns None when there is no such user.

    Only the keys present in ``changes`` are written. The email uniqueness is
    left to the database, so the caller must roll back on DuplicateEmailError.
    """
    user = await session.get(models.User, user_id)
    if not user:
        return None

    for field, value in changes.items():
        if value is None:
            continue
        if field == "email":
            value = value.strip().lower()
        setattr(user, field, value)
    try:
        await session.flush()
    except IntegrityError as e:
        raise DuplicateEmailError(f"Email already in use: {changes.get('email')}") from e
    return user


async def delete_user(session: AsyncSession, user_id: str) -> bool:
    # addresses, subscriptions, orders and notifications go with the user via ON DELETE CASCADE
    res = await session.execute(delete(models.User).where(models.User.id == user_id))
    deleted = bool(res.rowcount)
    if deleted:
        logger.info("Deleted user %s", user_id)
    return deleted
