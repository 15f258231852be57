from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medilink.db import models

logger = logging.getLogger(__name__)


async def create_notification(
    session: AsyncSession,
    user_id: str,
    type_: str,
    title: str,
    message: str,
    related_order_id: str | None = None,
) -> models.Notification:
    """Queue a notification row on the caller's session.

    The row is committed together with whatever state change it describes.
    """
    if type_ not in models.NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {type_}")
    notification = models.Notification(
        user_id=user_id,
        type=type_,
        title=title,
        message=message,
        related_order_id=related_order_id,
        is_read=False,
    )
    session.add(notification)
    await session.flush()
    logger.info("Notification %r for user %s (%s)", title, user_id, type_)
    return notification


async def list_notifications(session: AsyncSession, user_id: str) -> list[models.Notification]:
    q = (
        select(models.Notification)
        .where(models.Notification.user_id == user_id)
        .order_by(models.Notification.created_at.desc())
    )
    res = await session.execute(q)
    return list(res.scalars().all())


async def unread_count(session: AsyncSession, user_id: str) -> int:
    q = select(func.count(models.Notification.id)).where(
        models.Notification.user_id == user_id,
        models.Notification.is_read.is_(False),
    )
    res = await session.execute(q)
    return int(res.scalar() or 0)


async def mark_as_read(session: AsyncSession, notification_id: str, user_id: str) -> bool:
    q = (
        update(models.Notification)
        .where(models.Notification.id == notification_id, models.Notification.user_id == user_id)
        .values(is_read=True)
    )
    res = await session.execute(q)
    return bool(res.rowcount)


async def mark_all_as_read(session: AsyncSession, user_id: str) -> int:
    q = update(models.Notification).where(models.Notification.user_id == user_id).values(is_read=True)
    res = await session.execute(q)
    return int(res.rowcount or 0)
