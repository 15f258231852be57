from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medilink.db import models

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierFeatures:
    tier: str
    name: str
    monthly_price: str
    features: tuple[str, ...]


TIER_FEATURES: dict[str, TierFeatures] = {
    "basic": TierFeatures(
        tier="basic",
        name="Basic",
        monthly_price="4.99",
        features=("Private profiles", "Custom branding", "Priority support", "Basic analytics"),
    ),
    "pro": TierFeatures(
        tier="pro",
        name="Pro",
        monthly_price="9.99",
        features=("Everything in Basic", "Advanced analytics", "Multiple profiles", "API access", "Custom domains"),
    ),
    "premium": TierFeatures(
        tier="premium",
        name="Premium",
        monthly_price="19.99",
        features=("Everything in Pro", "White-label solution", "Dedicated support", "Custom integrations", "Team management"),
    ),
}

# Stripe's documented subscription statuses; anything else is stored verbatim but logged.
KNOWN_STATUSES = frozenset(
    {"active", "trialing", "past_due", "canceled", "unpaid", "incomplete", "incomplete_expired", "paused"}
)


def from_unix(ts: Any) -> datetime | None:
    if ts is None or ts == "":
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def remote_period_bounds(remote: dict) -> tuple[datetime | None, datetime | None]:
    """Current period of a Stripe subscription object.

    Newer API versions moved the bounds from the subscription onto its items.
    """
    start = remote.get("current_period_start")
    end = remote.get("current_period_end")
    if start is None and end is None:
        items = (remote.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return from_unix(start), from_unix(end)


def customer_id_of(remote: dict) -> str:
    customer = remote.get("customer")
    if isinstance(customer, dict):
        return customer.get("id", "")
    return customer or ""


def check_status(status: str, stripe_subscription_id: str) -> str:
    if status not in KNOWN_STATUSES:
        logger.warning("Unrecognised status %r for subscription %s; storing as-is", status, stripe_subscription_id)
    return status


def is_subscription_active(sub: models.Subscription | None) -> bool:
    if not sub:
        return False
    if sub.status not in {"active", "trialing"}:
        return False
    if sub.current_period_end is None:
        return True
    now = datetime.now(tz=timezone.utc)
    end = sub.current_period_end
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return end > now


async def get_by_stripe_id(session: AsyncSession, stripe_subscription_id: str) -> models.Subscription | None:
    q = select(models.Subscription).where(models.Subscription.stripe_subscription_id == stripe_subscription_id)
    res = await session.execute(q)
    return res.scalars().first()


async def get_user_subscription(session: AsyncSession, user_id: str) -> models.Subscription | None:
    q = (
        select(models.Subscription)
        .where(models.Subscription.user_id == user_id)
        .order_by(models.Subscription.updated_at.desc(), models.Subscription.created_at.desc())
    )
    res = await session.execute(q)
    return res.scalars().first()


async def get_current_tier(session: AsyncSession, user_id: str) -> str:
    sub = await get_user_subscription(session, user_id)
    if is_subscription_active(sub):
        return sub.tier
    return "free"


async def create_from_remote(
    session: AsyncSession,
    *,
    user_id: str,
    tier: str,
    billing_period: str,
    remote: dict,
) -> models.Subscription:
    """Add a local row mirroring a freshly retrieved Stripe subscription.

    The caller owns the existence check and the transaction.
    """
    start, end = remote_period_bounds(remote)
    sub = models.Subscription(
        user_id=user_id,
        stripe_subscription_id=remote["id"],
        stripe_customer_id=customer_id_of(remote),
        tier=tier,
        status=check_status(remote.get("status", ""), remote["id"]),
        billing_period=billing_period,
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=bool(remote.get("cancel_at_period_end") or False),
    )
    session.add(sub)
    await session.flush()
    return sub


def apply_remote_state(sub: models.Subscription, remote: dict) -> None:
    """Overwrite the mirrored lifecycle fields; the remote object always wins."""
    start, end = remote_period_bounds(remote)
    sub.status = check_status(remote.get("status", ""), sub.stripe_subscription_id)
    sub.current_period_start = start
    sub.current_period_end = end
    sub.cancel_at_period_end = bool(remote.get("cancel_at_period_end") or False)
    sub.canceled_at = from_unix(remote.get("canceled_at"))


async def set_cancel_at_period_end(session: AsyncSession, gateway, sub: models.Subscription, cancel: bool) -> None:
    """Schedule (or undo) cancellation at period end, remotely first."""
    stripe_subscription_id = sub.stripe_subscription_id
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(
        None, lambda: gateway.update_subscription(stripe_subscription_id, cancel_at_period_end=cancel)
    )
    sub.cancel_at_period_end = cancel
    await session.flush()
    logger.info("Subscription %s cancel_at_period_end=%s", sub.stripe_subscription_id, cancel)
