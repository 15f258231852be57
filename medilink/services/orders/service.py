from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from medilink.db import models
from medilink.services.notifications.service import create_notification

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def money(value: str | Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def line_total(unit_price: str | Decimal, quantity: int) -> Decimal:
    return money(money(unit_price) * quantity)


async def get_active_product(session: AsyncSession, product_id: str) -> models.Product | None:
    product = await session.get(models.Product, product_id)
    if not product or not product.is_active:
        return None
    return product


async def list_active_products(session: AsyncSession) -> list[models.Product]:
    q = select(models.Product).where(models.Product.is_active.is_(True)).order_by(models.Product.created_at)
    res = await session.execute(q)
    return list(res.scalars().all())


async def first_shipping_address(session: AsyncSession, user_id: str) -> models.UserAddress | None:
    q = (
        select(models.UserAddress)
        .where(models.UserAddress.user_id == user_id)
        .order_by(models.UserAddress.is_default.desc(), models.UserAddress.created_at)
        .limit(1)
    )
    res = await session.execute(q)
    return res.scalars().first()


async def create_order(
    session: AsyncSession,
    *,
    user_id: str,
    product: models.Product,
    quantity: int,
    stripe_checkout_session_id: str | None,
    stripe_payment_intent_id: str | None,
) -> models.Order:
    """Add a pending single-line order for ``product``.

    Prices come from the product as it is now, not from the checkout. The
    caller owns the transaction so the order and its item land together.
    """
    unit_price = money(product.price)
    total_price = line_total(unit_price, quantity)
    address = await first_shipping_address(session, user_id)

    order = models.Order(
        user_id=user_id,
        stripe_payment_intent_id=stripe_payment_intent_id,
        stripe_checkout_session_id=stripe_checkout_session_id,
        total_amount=str(total_price),
        currency=product.currency,
        status="pending",
        shipping_address_id=address.id if address else None,
    )
    session.add(order)
    await session.flush()

    session.add(
        models.OrderItem(
            order_id=order.id,
            product_id=product.id,
            quantity=quantity,
            unit_price=str(unit_price),
            total_price=str(total_price),
        )
    )
    await session.flush()
    logger.info("Order %s created for user %s: %s x %s = %s", order.id, user_id, quantity, product.id, total_price)
    return order


def _orders_query():
    return (
        select(models.Order)
        .options(selectinload(models.Order.items).selectinload(models.OrderItem.product))
        .order_by(models.Order.created_at.desc())
    )


async def list_user_orders(session: AsyncSession, user_id: str) -> list[models.Order]:
    res = await session.execute(_orders_query().where(models.Order.user_id == user_id))
    return list(res.scalars().all())


async def list_all_orders(session: AsyncSession) -> list[models.Order]:
    res = await session.execute(_orders_query())
    return list(res.scalars().all())


async def get_addresses_by_id(session: AsyncSession, address_ids: set[str]) -> dict[str, models.UserAddress]:
    if not address_ids:
        return {}
    q = select(models.UserAddress).where(models.UserAddress.id.in_(address_ids))
    res = await session.execute(q)
    return {a.id: a for a in res.scalars().all()}


async def update_order(
    session: AsyncSession,
    order: models.Order,
    *,
    status: str | None = None,
    tracking_number: str | None = None,
    notes: str | None = None,
    fields_set: set[str] | frozenset[str] = frozenset(),
) -> models.Notification:
    """Apply an admin edit and tell the owner about it.

    ``fields_set`` names the optional fields that were sent, so an explicit
    empty value clears tracking number / notes while an omitted one is kept.
    """
    if status:
        if status not in models.ORDER_STATUSES:
            raise ValueError(f"Unknown order status: {status}")
        order.status = status
    if "tracking_number" in fields_set:
        order.tracking_number = tracking_number or None
    if "notes" in fields_set:
        order.notes = notes or None
    await session.flush()

    message = f"Your order status has been updated to {order.status}."
    if tracking_number:
        message += f" Tracking number: {tracking_number}"
    return await create_notification(session, order.user_id, "order_update", "Order Update", message, order.id)
