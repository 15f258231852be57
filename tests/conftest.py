"""
Shared fixtures.

Tests run against a throwaway SQLite file through aiosqlite. Webhook payloads
are signed for real with the Stripe signature scheme; only the gateway's
network calls are replaced.
"""
import hashlib
import hmac
import json
import threading
import time
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from medilink.core.security import sign_session
from medilink.core.settings import settings
from medilink.db import models
from medilink.main import app, get_db, get_reconciler
from medilink.services.payments.service import CheckoutResult, StripeGateway, get_gateway
from medilink.services.webhooks.service import PaymentEventReconciler, WebhookConfig

WEBHOOK_SECRET = "whsec_test_fake_secret"

# 2026-01-01T00:00:00Z .. 2026-02-01T00:00:00Z
PERIOD_START = 1767225600
PERIOD_END = 1769904000


def pytest_configure(config):
    config.addinivalue_line("markers", "payment: payment and webhook tests")


class FakeGateway(StripeGateway):
    """StripeGateway with the network calls recorded instead of sent."""

    def __init__(self) -> None:
        super().__init__("sk_test_fake_key_for_testing")
        self.subscriptions: dict[str, dict] = {}
        self.retrieved: list[str] = []
        self.updates: list[tuple[str, bool]] = []
        self.customers: list[dict] = []
        self.checkouts: list[dict] = []
        self.fail_retrieve = False
        # ids of the threads the SDK-facing calls ran on
        self.call_threads: list[int] = []

    def retrieve_subscription(self, subscription_id: str) -> dict:
        self.retrieved.append(subscription_id)
        self.call_threads.append(threading.get_ident())
        if self.fail_retrieve:
            raise RuntimeError("Stripe API unavailable")
        return self.subscriptions[subscription_id]

    def update_subscription(self, subscription_id: str, *, cancel_at_period_end: bool) -> dict:
        self.updates.append((subscription_id, cancel_at_period_end))
        self.call_threads.append(threading.get_ident())
        return {"id": subscription_id, "cancel_at_period_end": cancel_at_period_end}

    def create_customer(self, *, email: str, name: str, user_id: str) -> str:
        customer_id = f"cus_fake_{len(self.customers) + 1}"
        self.customers.append({"id": customer_id, "email": email, "name": name, "user_id": user_id})
        return customer_id

    def create_checkout_session(self, **kwargs: Any) -> CheckoutResult:
        self.checkouts.append(kwargs)
        self.call_threads.append(threading.get_ident())
        return CheckoutResult(provider="stripe", url="https://checkout.stripe.test/c/cs_test_1", session_id="cs_test_1")


def remote_subscription(subscription_id: str = "sub_123", **overrides: Any) -> dict:
    data = {
        "id": subscription_id,
        "object": "subscription",
        "customer": "cus_123",
        "status": "active",
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "cancel_at_period_end": False,
        "canceled_at": None,
    }
    data.update(overrides)
    return data


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode("utf-8")


async def count_rows(session_factory, model, *criteria) -> int:
    async with session_factory() as s:
        q = select(func.count()).select_from(model)
        if criteria:
            q = q.where(*criteria)
        res = await s.execute(q)
        return int(res.scalar() or 0)


async def fetch_all(session_factory, model, *criteria) -> list:
    async with session_factory() as s:
        q = select(model)
        if criteria:
            q = q.where(*criteria)
        res = await s.execute(q)
        return list(res.scalars().all())


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'medilink_test.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        # ON DELETE CASCADE / SET NULL behave as they do on Postgres
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    await engine.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def reconciler(session_factory, gateway) -> PaymentEventReconciler:
    return PaymentEventReconciler(WebhookConfig(webhook_secret=WEBHOOK_SECRET), session_factory, gateway)


async def _add(session_factory, obj):
    async with session_factory() as s:
        s.add(obj)
        await s.commit()
    return obj


@pytest_asyncio.fixture
async def user(session_factory) -> models.User:
    return await _add(session_factory, models.User(name="Ada Patient", email="ada@example.com"))


@pytest_asyncio.fixture
async def other_user(session_factory) -> models.User:
    return await _add(session_factory, models.User(name="Bob Other", email="bob@example.com"))


@pytest_asyncio.fixture
async def admin(session_factory) -> models.User:
    return await _add(session_factory, models.User(name="Admin", email="admin@example.com", is_admin=True))


@pytest_asyncio.fixture
async def product(session_factory) -> models.Product:
    return await _add(
        session_factory,
        models.Product(
            name="QR Sticker Pack",
            description="Weatherproof QR stickers",
            price="19.99",
            currency="usd",
            stripe_price_id="price_sticker",
            is_active=True,
        ),
    )


@pytest.fixture
def seed(session_factory):
    """Insert arbitrary rows and return them."""

    async def _seed(*objs):
        async with session_factory() as s:
            s.add_all(objs)
            await s.commit()
        return objs[0] if len(objs) == 1 else objs

    return _seed


@pytest_asyncio.fixture
async def client(session_factory, gateway, monkeypatch) -> AsyncGenerator[AsyncClient, Any]:
    async def _get_db():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_reconciler] = lambda: PaymentEventReconciler(
        WebhookConfig(webhook_secret=WEBHOOK_SECRET), session_factory, gateway
    )
    monkeypatch.setattr(settings, "rate_limit_enabled", False)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def login(client: AsyncClient, user: models.User) -> AsyncClient:
    client.cookies.set(settings.session_cookie_name, sign_session(user.id))
    return client
