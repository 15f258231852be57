import pytest

from conftest import count_rows, make_event, remote_subscription, sign_payload
from medilink import main
from medilink.core.settings import settings
from medilink.db import models


def _checkout(user_id: str) -> dict:
    return {
        "id": "cs_sub_http",
        "mode": "subscription",
        "subscription": "sub_123",
        "metadata": {"userId": user_id, "tier": "basic", "period": "month", "type": "subscription"},
    }


async def post_event(client, payload: bytes, signature: str | None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return await client.post("/api/stripe/webhook", content=payload, headers=headers)


@pytest.mark.payment
@pytest.mark.asyncio
async def test_valid_event_is_acknowledged(client, session_factory, gateway, user):
    gateway.subscriptions["sub_123"] = remote_subscription()
    payload = make_event("checkout.session.completed", _checkout(user.id))

    r = await post_event(client, payload, sign_payload(payload))

    assert r.status_code == 200
    assert r.json() == {"received": True, "outcome": "processed"}
    assert await count_rows(session_factory, models.Subscription, models.Subscription.user_id == user.id) == 1


@pytest.mark.payment
@pytest.mark.asyncio
async def test_bad_signature_is_400(client, session_factory, gateway, user):
    gateway.subscriptions["sub_123"] = remote_subscription()
    payload = make_event("checkout.session.completed", _checkout(user.id))

    r = await post_event(client, payload, "t=1,v1=deadbeef")

    assert r.status_code == 400
    assert r.json() == {"error": "Invalid signature"}
    assert await count_rows(session_factory, models.Subscription) == 0


@pytest.mark.payment
@pytest.mark.asyncio
async def test_missing_signature_is_400(client):
    r = await post_event(client, make_event("invoice.payment_failed", {"subscription": "sub_1"}), None)
    assert r.status_code == 400


@pytest.mark.payment
@pytest.mark.asyncio
async def test_signed_non_json_is_400(client):
    payload = b"{not json"
    r = await post_event(client, payload, sign_payload(payload))

    assert r.status_code == 400
    assert r.json() == {"error": "Invalid payload"}


@pytest.mark.payment
@pytest.mark.asyncio
async def test_processing_failure_is_500(client, session_factory, gateway, user):
    gateway.fail_retrieve = True
    payload = make_event("checkout.session.completed", _checkout(user.id))

    r = await post_event(client, payload, sign_payload(payload))

    assert r.status_code == 500
    assert r.json() == {"error": "Webhook processing failed"}
    assert await count_rows(session_factory, models.Subscription) == 0


@pytest.mark.payment
@pytest.mark.asyncio
async def test_unknown_event_is_200(client):
    payload = make_event("charge.refunded", {"id": "ch_1"})

    r = await post_event(client, payload, sign_payload(payload))

    assert r.status_code == 200
    assert r.json()["outcome"] == "ignored"


@pytest.mark.asyncio
async def test_health_sets_security_headers(client):
    r = await client.get("/health")

    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"


@pytest.mark.parametrize("environment,reload", [("dev", True), ("prod", False)])
def test_run_serves_the_app(monkeypatch, environment, reload):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))
    monkeypatch.setattr(settings, "environment", environment)
    monkeypatch.setattr(settings, "port", 8123)

    main.run()

    [(target, kwargs)] = calls
    assert target == "medilink.main:app"
    assert kwargs["port"] == 8123
    assert kwargs["reload"] is reload
