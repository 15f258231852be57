from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from medilink.core.settings import settings
from medilink.db import models
from medilink.services.subscriptions.service import TIER_FEATURES, get_user_subscription

logger = logging.getLogger(__name__)

TIERS = tuple(TIER_FEATURES)
PERIODS = ("month", "year")


class GatewayConfigError(RuntimeError):
    """Stripe is used but the key or price it needs is not configured."""


class SignatureError(Exception):
    """The webhook payload could not be authenticated."""


@dataclass
class CheckoutResult:
    provider: str
    url: str
    session_id: str | None = None


def stripe_price_for(tier: str, period: str) -> str:
    if tier not in TIERS or period not in PERIODS:
        raise GatewayConfigError(f"Unsupported subscription {tier}_{period}")
    price = getattr(settings, f"stripe_price_{tier}_{period}", None)
    if not price:
        raise GatewayConfigError(f"Stripe price ID not found for {tier}_{period}")
    return price


def _as_dict(obj: Any) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


class StripeGateway:
    """Thin wrapper over the Stripe SDK.

    Every call passes the API key explicitly so the module-level
    ``stripe.api_key`` is never mutated. Objects returned by Stripe are
    converted to plain dicts before they leave this class.
    """

    def __init__(self, secret_key: str | None) -> None:
        self.secret_key = secret_key

    def _key(self) -> str:
        if not self.secret_key:
            raise GatewayConfigError("STRIPE_SECRET_KEY is not set")
        return self.secret_key

    def verify_event(self, payload: bytes, sig_header: str | None, webhook_secret: str | None) -> dict:
        """Check the ``Stripe-Signature`` header and decode the event.

        Raises SignatureError when the secret or header is missing or the
        signature does not match. The payload is only parsed after the
        signature has been accepted.
        """
        if not webhook_secret or not sig_header:
            raise SignatureError("Missing signature or webhook secret")
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            raise SignatureError("Payload is not valid UTF-8") from e
        try:
            event = stripe.Webhook.construct_event(text, sig_header, webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(str(e)) from e
        except (AttributeError, TypeError) as e:
            # signed JSON that is not an object
            raise ValueError("Webhook payload is not an event object") from e
        return _as_dict(event)

    def retrieve_subscription(self, subscription_id: str) -> dict:
        sub = stripe.Subscription.retrieve(subscription_id, api_key=self._key())
        return _as_dict(sub)

    def update_subscription(self, subscription_id: str, *, cancel_at_period_end: bool) -> dict:
        sub = stripe.Subscription.modify(
            subscription_id,
            cancel_at_period_end=cancel_at_period_end,
            api_key=self._key(),
        )
        return _as_dict(sub)

    def create_customer(self, *, email: str, name: str, user_id: str) -> str:
        customer = stripe.Customer.create(
            email=email,
            name=name,
            metadata={"userId": user_id},
            api_key=self._key(),
        )
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        mode: str,
        price_id: str,
        quantity: int,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
    ) -> CheckoutResult:
        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode=mode,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": quantity}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            api_key=self._key(),
        )
        return CheckoutResult(provider="stripe", url=session.url, session_id=session.id)


def get_gateway() -> StripeGateway:
    return StripeGateway(settings.stripe_secret_key)


async def run_blocking(fn, *args, **kwargs):
    """Run a blocking Stripe SDK call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


async def _customer_for(session: AsyncSession, gateway: StripeGateway, user: models.User) -> str:
    sub = await get_user_subscription(session, user.id)
    if sub and sub.stripe_customer_id:
        return sub.stripe_customer_id
    return await run_blocking(gateway.create_customer, email=user.email, name=user.name, user_id=user.id)


async def create_subscription_checkout(
    session: AsyncSession,
    gateway: StripeGateway,
    user: models.User,
    *,
    tier: str,
    period: str,
    base_url: str,
) -> CheckoutResult:
    price_id = stripe_price_for(tier, period)
    customer_id = await _customer_for(session, gateway, user)
    return await run_blocking(
        gateway.create_checkout_session,
        customer_id=customer_id,
        mode="subscription",
        price_id=price_id,
        quantity=1,
        success_url=f"{base_url}/dashboard/account?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/dashboard/account?canceled=true",
        metadata={"userId": user.id, "tier": tier, "period": period, "type": "subscription"},
    )


async def create_product_checkout(
    session: AsyncSession,
    gateway: StripeGateway,
    user: models.User,
    *,
    product: models.Product,
    quantity: int,
    base_url: str,
) -> CheckoutResult:
    if not product.stripe_price_id:
        raise GatewayConfigError(f"Product {product.id} has no Stripe price")
    customer_id = await _customer_for(session, gateway, user)
    return await run_blocking(
        gateway.create_checkout_session,
        customer_id=customer_id,
        mode="payment",
        price_id=product.stripe_price_id,
        quantity=quantity,
        success_url=f"{base_url}/dashboard/orders?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/dashboard/orders?canceled=true",
        metadata={"userId": user.id, "productId": product.id, "quantity": str(quantity), "type": "product"},
    )
