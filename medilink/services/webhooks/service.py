"""Stripe webhook reconciliation.

Each verified event is mapped onto the local subscription, order and
notification tables. Stripe is authoritative: local rows are mirrored from the
event (or from a fresh API read) and never used to second-guess it.

Structurally incomplete events are acknowledged without changes. Anything
that fails while applying a recognised event propagates so the caller can
answer 5xx and Stripe retries. Each event's writes share one transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medilink.services.notifications.service import create_notification
from medilink.services.orders.service import create_order, get_active_product
from medilink.services.payments.service import SignatureError, StripeGateway, run_blocking
from medilink.services.subscriptions import service as subscriptions

logger = logging.getLogger(__name__)

PROCESSED = "processed"
IGNORED = "ignored"


class AuthenticationError(Exception):
    """Missing or invalid webhook signature; nothing was applied."""


class MalformedEventError(Exception):
    """The payload was signed but is not a decodable event."""


@dataclass(frozen=True)
class WebhookConfig:
    webhook_secret: str | None


class PaymentEventReconciler:
    def __init__(
        self,
        config: WebhookConfig,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeGateway,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.gateway = gateway
        self._handlers: dict[str, Callable[[str, dict], Awaitable[str]]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_changed,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
        }

    async def handle(self, payload: bytes, signature: str | None) -> str:
        try:
            event = self.gateway.verify_event(payload, signature, self.config.webhook_secret)
        except SignatureError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise AuthenticationError(str(e)) from e
        except ValueError as e:
            raise MalformedEventError("Webhook payload is not valid JSON") from e

        if not isinstance(event, dict):
            raise MalformedEventError("Webhook payload is not an event object")

        etype = event.get("type", "")
        handler = self._handlers.get(etype)
        if handler is None:
            logger.debug("Ignoring webhook event %s (%s)", event.get("id"), etype)
            return IGNORED

        data = (event.get("data") or {}).get("object") or {}
        logger.info("Processing webhook event %s (%s)", event.get("id"), etype)
        return await handler(etype, data)

    async def _on_checkout_completed(self, etype: str, checkout: dict) -> str:
        metadata = checkout.get("metadata") or {}
        user_id = metadata.get("userId")
        if not user_id:
            logger.error("No userId in metadata of checkout session %s", checkout.get("id"))
            return IGNORED

        mode = checkout.get("mode")
        if mode == "subscription":
            return await self._activate_subscription(user_id, checkout, metadata)
        if mode == "payment":
            return await self._place_order(user_id, checkout, metadata)
        logger.info("Checkout session %s has unhandled mode %r", checkout.get("id"), mode)
        return IGNORED

    async def _activate_subscription(self, user_id: str, checkout: dict, metadata: dict) -> str:
        tier = metadata.get("tier")
        period = metadata.get("period")
        subscription_ref = checkout.get("subscription")
        if isinstance(subscription_ref, dict):
            subscription_ref = subscription_ref.get("id")
        if not tier or not period or not subscription_ref:
            logger.error(
                "Checkout session %s lacks tier/period/subscription (tier=%r period=%r subscription=%r)",
                checkout.get("id"), tier, period, subscription_ref,
            )
            return IGNORED

        remote = await run_blocking(self.gateway.retrieve_subscription, subscription_ref)
        stripe_subscription_id = remote["id"]

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    if await subscriptions.get_by_stripe_id(db, stripe_subscription_id):
                        logger.info("Subscription %s already recorded; skipping", stripe_subscription_id)
                        return IGNORED
                    await subscriptions.create_from_remote(
                        db, user_id=user_id, tier=tier, billing_period=period, remote=remote
                    )
                    await create_notification(
                        db,
                        user_id,
                        "subscription_update",
                        "Subscription Activated",
                        f"Your {tier} subscription has been activated successfully!",
                    )
        except IntegrityError:
            # A concurrent delivery inserted the same subscription first.
            async with self.session_factory() as db:
                if await subscriptions.get_by_stripe_id(db, stripe_subscription_id) is None:
                    raise
            logger.info("Subscription %s inserted concurrently; treating as duplicate", stripe_subscription_id)
            return IGNORED
        return PROCESSED

    async def _place_order(self, user_id: str, checkout: dict, metadata: dict) -> str:
        product_id = metadata.get("productId")
        if not product_id:
            logger.error("No productId in metadata of checkout session %s", checkout.get("id"))
            return IGNORED
        try:
            quantity = int(metadata.get("quantity") or 1)
        except (TypeError, ValueError):
            quantity = 0
        if quantity < 1:
            logger.error("Invalid quantity %r in checkout session %s", metadata.get("quantity"), checkout.get("id"))
            return IGNORED

        # TODO: dedupe on stripe_checkout_session_id; a redelivered event currently creates a second order.
        async with self.session_factory() as db:
            async with db.begin():
                product = await get_active_product(db, product_id)
                if not product:
                    logger.error("Checkout session %s references missing or inactive product %s", checkout.get("id"), product_id)
                    return IGNORED
                order = await create_order(
                    db,
                    user_id=user_id,
                    product=product,
                    quantity=quantity,
                    stripe_checkout_session_id=checkout.get("id"),
                    stripe_payment_intent_id=checkout.get("payment_intent"),
                )
                await create_notification(
                    db,
                    user_id,
                    "order_update",
                    "Order Placed",
                    f"Your order for {product.name} has been placed successfully!",
                    order.id,
                )
        return PROCESSED

    async def _on_subscription_changed(self, etype: str, remote: dict) -> str:
        stripe_subscription_id = remote.get("id")
        if not stripe_subscription_id:
            return IGNORED

        async with self.session_factory() as db:
            async with db.begin():
                sub = await subscriptions.get_by_stripe_id(db, stripe_subscription_id)
                if not sub:
                    logger.info("No local subscription for %s; nothing to reconcile", stripe_subscription_id)
                    return IGNORED
                subscriptions.apply_remote_state(sub, remote)

                if etype == "customer.subscription.deleted":
                    await create_notification(
                        db,
                        sub.user_id,
                        "subscription_update",
                        "Subscription Canceled",
                        "Your subscription has been canceled. You will continue to have access until the end of your billing period.",
                    )
                elif sub.cancel_at_period_end:
                    await create_notification(
                        db,
                        sub.user_id,
                        "subscription_update",
                        "Subscription Will Cancel",
                        "Your subscription will cancel at the end of the current billing period.",
                    )
        return PROCESSED

    async def _on_invoice_paid(self, etype: str, invoice: dict) -> str:
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            return IGNORED

        async with self.session_factory() as db:
            async with db.begin():
                sub = await subscriptions.get_by_stripe_id(db, stripe_subscription_id)
                if not sub:
                    return IGNORED
                # bounds the invoice does not carry are kept
                if invoice.get("period_start") is not None:
                    sub.current_period_start = subscriptions.from_unix(invoice["period_start"])
                if invoice.get("period_end") is not None:
                    sub.current_period_end = subscriptions.from_unix(invoice["period_end"])
        return PROCESSED

    async def _on_invoice_failed(self, etype: str, invoice: dict) -> str:
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            return IGNORED

        async with self.session_factory() as db:
            async with db.begin():
                sub = await subscriptions.get_by_stripe_id(db, stripe_subscription_id)
                if not sub:
                    return IGNORED
                sub.status = "past_due"
                await create_notification(
                    db,
                    sub.user_id,
                    "subscription_update",
                    "Payment Failed",
                    "Your subscription payment failed. Please update your payment method.",
                )
        return PROCESSED


def invoice_subscription_id(invoice: dict) -> str | None:
    ref = invoice.get("subscription")
    if not ref:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        ref = details.get("subscription")
    if isinstance(ref, dict):
        ref = ref.get("id")
    return ref or None
