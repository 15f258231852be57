from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medilink.db import models


async def list_addresses(session: AsyncSession, user_id: str) -> list[models.UserAddress]:
    q = (
        select(models.UserAddress)
        .where(models.UserAddress.user_id == user_id)
        .order_by(models.UserAddress.created_at)
    )
    res = await session.execute(q)
    return list(res.scalars().all())


async def _clear_default(session: AsyncSession, user_id: str) -> None:
    await session.execute(
        update(models.UserAddress).where(models.UserAddress.user_id == user_id).values(is_default=False)
    )


async def create_address(session: AsyncSession, user_id: str, **fields) -> models.UserAddress:
    if fields.get("is_default"):
        await _clear_default(session, user_id)
    address = models.UserAddress(user_id=user_id, **fields)
    address.address_line2 = address.address_line2 or None
    session.add(address)
    await session.flush()
    return address


async def update_address(session: AsyncSession, user_id: str, address_id: str, changes: dict) -> models.UserAddress | None:
    """Patch an address owned by ``user_id``; returns None when it is not theirs."""
    address = await session.get(models.UserAddress, address_id)
    if not address or address.user_id != user_id:
        return None

    if changes.get("is_default"):
        await _clear_default(session, user_id)
    for field, value in changes.items():
        if field == "address_line2":
            value = value or None
        elif value is None or value == "":
            continue
        setattr(address, field, value)
    await session.flush()
    return address
