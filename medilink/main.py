from __future__ import annotations

import logging
from datetime import datetime

import redis
import uvicorn
from fastapi import Cookie, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware
from sqlalchemy import select

from medilink.core.security import unsign_session
from medilink.core.settings import settings
from medilink.db import models
from medilink.db.session import SessionLocal
from medilink.schemas import (
    AddressCreate,
    AddressUpdate,
    AdminOrderUpdate,
    AdminUserUpdate,
    CheckoutRequest,
    NotificationUpdate,
    SubscriptionAction,
)
from medilink.services.addresses.service import create_address, list_addresses, update_address
from medilink.services.notifications.service import (
    list_notifications,
    mark_all_as_read,
    mark_as_read,
    unread_count,
)
from medilink.services.orders.service import (
    get_active_product,
    get_addresses_by_id,
    list_active_products,
    list_all_orders,
    list_user_orders,
    update_order,
)
from medilink.services.payments.service import (
    GatewayConfigError,
    StripeGateway,
    create_product_checkout,
    create_subscription_checkout,
    get_gateway,
)
from medilink.services.subscriptions.service import (
    TIER_FEATURES,
    get_current_tier,
    get_user_subscription,
    set_cancel_at_period_end,
)
from medilink.services.users.service import DuplicateEmailError, delete_user, list_users, update_user
from medilink.services.webhooks.service import (
    AuthenticationError,
    MalformedEventError,
    PaymentEventReconciler,
    WebhookConfig,
)


logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)

if settings.allowed_hosts and settings.allowed_hosts.strip() != "*":
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=[h.strip() for h in settings.allowed_hosts.split(",") if h.strip()])


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    if settings.enforce_https:
        forwarded_proto = (request.headers.get("x-forwarded-proto") or "").split(",")[0].strip().lower()
        is_secure = forwarded_proto == "https" or request.url.scheme == "https"
        if not is_secure:
            https_url = str(request.url.replace(scheme="https"))
            return RedirectResponse(https_url, status_code=307)

    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if settings.enforce_https:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"
    return response


@app.on_event("startup")
async def startup_bootstrap_admins() -> None:
    if not settings.admin_emails:
        return
    emails = [e.strip().lower() for e in settings.admin_emails.split(",") if e.strip()]
    if not emails:
        return
    async with SessionLocal() as db:
        q = select(models.User).where(models.User.email.in_(emails))
        res = await db.execute(q)
        users = list(res.scalars().all())
        for u in users:
            u.is_admin = True
        await db.commit()
        logger.info("Bootstrapped %s admin(s)", len(users))


async def get_db():
    async with SessionLocal() as session:
        yield session


async def get_current_user(
    session_token: str | None = Cookie(default=None, alias=settings.session_cookie_name),
    db=Depends(get_db),
) -> models.User | None:
    if not session_token:
        return None
    user_id = unsign_session(session_token)
    if not user_id:
        return None
    return await db.get(models.User, user_id)


async def require_user(user=Depends(get_current_user)) -> models.User:
    if not user:
        raise HTTPException(401, "Unauthorized")
    return user


async def require_admin(user=Depends(get_current_user)) -> models.User:
    if not user or not user.is_admin:
        raise HTTPException(403, "Unauthorized")
    return user


def get_reconciler() -> PaymentEventReconciler:
    return PaymentEventReconciler(
        WebhookConfig(webhook_secret=settings.stripe_webhook_secret),
        SessionLocal,
        get_gateway(),
    )


def _rate_limit_ok(key: str, limit: int, window_seconds: int) -> bool:
    if not settings.rate_limit_enabled:
        return True
    try:
        conn = redis.from_url(settings.redis_url)
        count = conn.incr(key)
        if count == 1:
            conn.expire(key, window_seconds)
        return int(count) <= int(limit)
    except redis.RedisError:
        # fail open when redis is unavailable
        logger.warning("Rate limiter unavailable; allowing %s", key)
        return True


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _subscription_json(sub: models.Subscription) -> dict:
    return {
        "id": sub.id,
        "userId": sub.user_id,
        "stripeSubscriptionId": sub.stripe_subscription_id,
        "stripeCustomerId": sub.stripe_customer_id,
        "tier": sub.tier,
        "status": sub.status,
        "billingPeriod": sub.billing_period,
        "currentPeriodStart": _iso(sub.current_period_start),
        "currentPeriodEnd": _iso(sub.current_period_end),
        "cancelAtPeriodEnd": sub.cancel_at_period_end,
        "canceledAt": _iso(sub.canceled_at),
    }


def _product_json(p: models.Product) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "price": p.price,
        "currency": p.currency,
        "imageUrl": p.image_url,
        "stripePriceId": p.stripe_price_id,
    }


def _address_json(a: models.UserAddress | None) -> dict | None:
    if a is None:
        return None
    return {
        "id": a.id,
        "addressLine1": a.address_line1,
        "addressLine2": a.address_line2,
        "city": a.city,
        "state": a.state,
        "postalCode": a.postal_code,
        "country": a.country,
        "isDefault": a.is_default,
    }


def _order_json(o: models.Order, addresses: dict[str, models.UserAddress]) -> dict:
    return {
        "id": o.id,
        "userId": o.user_id,
        "status": o.status,
        "totalAmount": o.total_amount,
        "currency": o.currency,
        "trackingNumber": o.tracking_number,
        "notes": o.notes,
        "stripeCheckoutSessionId": o.stripe_checkout_session_id,
        "createdAt": _iso(o.created_at),
        "items": [
            {
                "id": item.id,
                "quantity": item.quantity,
                "unitPrice": item.unit_price,
                "totalPrice": item.total_price,
                "product": {
                    "id": item.product.id,
                    "name": item.product.name,
                    "description": item.product.description,
                    "imageUrl": item.product.image_url,
                },
            }
            for item in o.items
        ],
        "shippingAddress": _address_json(addresses.get(o.shipping_address_id or "")),
    }


def _notification_json(n: models.Notification) -> dict:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "relatedOrderId": n.related_order_id,
        "isRead": n.is_read,
        "createdAt": _iso(n.created_at),
    }


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/stripe/webhook")
async def stripe_webhook(request: Request, reconciler: PaymentEventReconciler = Depends(get_reconciler)):
    payload = await request.body()
    sig = request.headers.get("Stripe-Signature")
    try:
        outcome = await reconciler.handle(payload, sig)
    except AuthenticationError:
        return JSONResponse({"error": "Invalid signature"}, status_code=400)
    except MalformedEventError:
        return JSONResponse({"error": "Invalid payload"}, status_code=400)
    except Exception:
        logger.exception("Error processing webhook")
        return JSONResponse({"error": "Webhook processing failed"}, status_code=500)
    return {"received": True, "outcome": outcome}


@app.get("/api/stripe/tiers")
async def subscription_tiers():
    return {
        "tiers": [
            {"id": f.tier, "name": f.name, "monthlyPrice": f.monthly_price, "features": list(f.features)}
            for f in TIER_FEATURES.values()
        ]
    }


@app.post("/api/stripe/checkout")
async def stripe_checkout(
    body: CheckoutRequest,
    user=Depends(require_user),
    db=Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    if not _rate_limit_ok(
        f"rl:checkout:{user.id}", settings.rate_limit_checkout_limit, settings.rate_limit_checkout_window_seconds
    ):
        raise HTTPException(429, "Too many checkout attempts")

    try:
        if body.type == "subscription":
            if not body.tier or not body.period:
                raise HTTPException(400, "Tier and period are required")
            if body.tier not in TIER_FEATURES or body.period not in {"month", "year"}:
                raise HTTPException(400, "Unsupported tier or period")
            checkout = await create_subscription_checkout(
                db, gateway, user, tier=body.tier, period=body.period, base_url=settings.base_url
            )
        else:
            if not body.product_id:
                raise HTTPException(400, "Product ID is required")
            product = await get_active_product(db, body.product_id)
            if not product:
                raise HTTPException(404, "Product not found")
            checkout = await create_product_checkout(
                db, gateway, user, product=product, quantity=body.quantity, base_url=settings.base_url
            )
    except GatewayConfigError:
        logger.exception("Checkout misconfigured for user %s", user.id)
        raise HTTPException(500, "Payments are not configured")
    return {"url": checkout.url}


@app.get("/api/stripe/subscription")
async def get_subscription(user=Depends(require_user), db=Depends(get_db)):
    sub = await get_user_subscription(db, user.id)
    return {
        "subscription": _subscription_json(sub) if sub else None,
        "currentTier": await get_current_tier(db, user.id),
    }


@app.delete("/api/stripe/subscription")
async def cancel_subscription(
    user=Depends(require_user),
    db=Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    sub = await get_user_subscription(db, user.id)
    if not sub or not sub.stripe_subscription_id:
        raise HTTPException(404, "No active subscription found")
    await set_cancel_at_period_end(db, gateway, sub, True)
    await db.commit()
    return {"success": True, "message": "Subscription will be canceled at the end of the billing period"}


@app.patch("/api/stripe/subscription")
async def update_subscription(
    body: SubscriptionAction,
    user=Depends(require_user),
    db=Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    sub = await get_user_subscription(db, user.id)
    if not sub or not sub.stripe_subscription_id:
        raise HTTPException(404, "No active subscription found")
    if body.action != "resume":
        raise HTTPException(400, "Invalid action")
    await set_cancel_at_period_end(db, gateway, sub, False)
    await db.commit()
    return {"success": True, "message": "Subscription resumed"}


@app.get("/api/products")
async def products(db=Depends(get_db)):
    return {"products": [_product_json(p) for p in await list_active_products(db)]}


@app.get("/api/orders")
async def my_orders(user=Depends(require_user), db=Depends(get_db)):
    orders = await list_user_orders(db, user.id)
    addresses = await get_addresses_by_id(db, {o.shipping_address_id for o in orders if o.shipping_address_id})
    return {"orders": [_order_json(o, addresses) for o in orders]}


@app.get("/api/notifications")
async def notifications(user=Depends(require_user), db=Depends(get_db)):
    items = await list_notifications(db, user.id)
    return {
        "notifications": [_notification_json(n) for n in items],
        "unreadCount": await unread_count(db, user.id),
    }


@app.patch("/api/notifications")
async def update_notifications(body: NotificationUpdate, user=Depends(require_user), db=Depends(get_db)):
    if body.mark_all:
        await mark_all_as_read(db, user.id)
    elif body.notification_id:
        if not await mark_as_read(db, body.notification_id, user.id):
            raise HTTPException(404, "Notification not found")
    else:
        raise HTTPException(400, "Invalid request")
    await db.commit()
    return {"success": True}


@app.get("/api/address")
async def addresses(user=Depends(require_user), db=Depends(get_db)):
    return {"addresses": [_address_json(a) for a in await list_addresses(db, user.id)]}


@app.post("/api/address")
async def add_address(body: AddressCreate, user=Depends(require_user), db=Depends(get_db)):
    address = await create_address(db, user.id, **body.model_dump())
    await db.commit()
    return {"success": True, "addressId": address.id}


@app.put("/api/address")
async def edit_address(body: AddressUpdate, user=Depends(require_user), db=Depends(get_db)):
    changes = body.model_dump(exclude_unset=True, exclude={"address_id"})
    address = await update_address(db, user.id, body.address_id, changes)
    if not address:
        raise HTTPException(404, "Address not found")
    await db.commit()
    return {"success": True}


@app.get("/api/admin/orders")
async def admin_orders(admin=Depends(require_admin), db=Depends(get_db)):
    orders = await list_all_orders(db)
    addresses = await get_addresses_by_id(db, {o.shipping_address_id for o in orders if o.shipping_address_id})
    owners = {}
    user_ids = {o.user_id for o in orders}
    if user_ids:
        res = await db.execute(select(models.User).where(models.User.id.in_(user_ids)))
        owners = {u.id: u for u in res.scalars().all()}

    result = []
    for o in orders:
        data = _order_json(o, addresses)
        owner = owners.get(o.user_id)
        data["user"] = {"id": owner.id, "name": owner.name, "email": owner.email} if owner else None
        result.append(data)
    return {"orders": result}


@app.patch("/api/admin/orders")
async def admin_update_order(body: AdminOrderUpdate, admin=Depends(require_admin), db=Depends(get_db)):
    order = await db.get(models.Order, body.order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    try:
        await update_order(
            db,
            order,
            status=body.status,
            tracking_number=body.tracking_number,
            notes=body.notes,
            fields_set=body.model_fields_set,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    await db.commit()
    logger.info("Admin %s updated order %s", admin.id, order.id)
    return {"success": True}


def _user_json(u: models.User) -> dict:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "isAdmin": u.is_admin,
        "createdAt": _iso(u.created_at),
    }


@app.get("/api/admin/users")
async def admin_users(admin=Depends(require_admin), db=Depends(get_db)):
    return {"users": [_user_json(u) for u in await list_users(db)]}


@app.put("/api/admin/users/{user_id}")
async def admin_update_user(user_id: str, body: AdminUserUpdate, admin=Depends(require_admin), db=Depends(get_db)):
    try:
        user = await update_user(db, user_id, body.model_dump(exclude_unset=True))
    except DuplicateEmailError:
        await db.rollback()
        raise HTTPException(400, "Email already exists")
    if not user:
        raise HTTPException(404, "User not found")
    await db.commit()
    logger.info("Admin %s updated user %s", admin.id, user_id)
    return {"user": _user_json(user)}


@app.delete("/api/admin/users/{user_id}")
async def admin_delete_user(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    if not await delete_user(db, user_id):
        raise HTTPException(404, "User not found")
    await db.commit()
    logger.info("Admin %s deleted user %s", admin.id, user_id)
    return {"success": True}


def run() -> None:
    uvicorn.run(
        "medilink.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "dev",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
