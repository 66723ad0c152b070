import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from loyalty_api.core.settings import settings
from loyalty_api.models.webhook_event import WebhookEvent, WebhookEventStatus
from loyalty_api.services.loyalty.ledger import PointsLedger
from loyalty_api.services.webhooks.square import compute_signature, extract_payment, verify_signature

from seed import payment_payload, seed_shop

NOTIFICATION_URL = "https://loyalty.example.com/api/v1/webhooks/square"


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def test_signature_round_trip_and_rejection() -> None:
    body = b'{"event_id":"evt-1"}'
    signature = compute_signature("sig-key", NOTIFICATION_URL, body)

    assert verify_signature(signature_key="sig-key", notification_url=NOTIFICATION_URL, body=body, signature=signature)
    assert not verify_signature(
        signature_key="sig-key", notification_url=NOTIFICATION_URL, body=body + b" ", signature=signature
    )
    assert not verify_signature(signature_key="sig-key", notification_url=NOTIFICATION_URL, body=body, signature=None)


def test_extract_payment_falls_back_to_approved_money_and_itemizations() -> None:
    payload = {
        "data": {
            "object": {
                "payment": {
                    "id": "PAY-1",
                    "status": "COMPLETED",
                    "approved_money": {"amount": 1250},
                    "itemizations": [{"name": "Latte", "quantity": "2"}],
                }
            }
        }
    }
    payment = extract_payment(payload)
    assert payment.amount_cents == 1250
    assert payment.completed is True
    assert payment.line_items[0].quantity == 2
    assert extract_payment({"data": {"object": {}}}) is None


@pytest.mark.asyncio
async def test_webhook_credits_points_and_dedups_deliveries(app_with_db) -> None:
    app, session_factory = app_with_db
    async with session_factory() as session:
        shop = await seed_shop(session, points_per_dollar=10)
        await session.commit()

    payload = payment_payload("evt-100", amount_cents=2000)
    async with _client(app) as client:
        first = await client.post("/api/v1/webhooks/square", json=payload)
        assert first.status_code == 200
        assert first.json()["ok"] is True
        assert first.json()["status"] == "processed"

        duplicate = await client.post("/api/v1/webhooks/square", json=payload)
        assert duplicate.status_code == 200
        assert duplicate.json()["status"] == "duplicate"

        ignored = await client.post("/api/v1/webhooks/square", json={"type": "payment.updated"})
        assert ignored.json()["status"] == "ignored"

    async with session_factory() as session:
        events = (await session.execute(select(func.count()).select_from(WebhookEvent))).scalar_one()
        stored = (await session.execute(select(WebhookEvent))).scalar_one()
        balance = await PointsLedger(session).get_balance(shop.customer_id, shop.merchant_id)

    assert events == 1
    assert stored.status == WebhookEventStatus.PROCESSED
    assert balance == 200


@pytest.mark.asyncio
async def test_failed_processing_still_acknowledges_delivery(app_with_db) -> None:
    app, session_factory = app_with_db
    async with session_factory() as session:
        await seed_shop(session, with_program=False)
        await session.commit()

    async with _client(app) as client:
        response = await client.post("/api/v1/webhooks/square", json=payment_payload("evt-1"))

    assert response.status_code == 200
    assert response.json()["status"] == "failed"


@pytest.mark.asyncio
async def test_webhook_signature_is_verified_when_configured(app_with_db, monkeypatch) -> None:
    app, session_factory = app_with_db
    async with session_factory() as session:
        await seed_shop(session)
        await session.commit()
    monkeypatch.setattr(settings, "square_webhook_signature_key", "sig-key")
    monkeypatch.setattr(settings, "square_webhook_notification_url", NOTIFICATION_URL)

    body = json.dumps(payment_payload("evt-signed")).encode("utf-8")
    headers = {"content-type": "application/json"}

    async with _client(app) as client:
        rejected = await client.post(
            "/api/v1/webhooks/square",
            content=body,
            headers={**headers, "x-square-hmacsha256-signature": "bogus"},
        )
        assert rejected.status_code == 401

        accepted = await client.post(
            "/api/v1/webhooks/square",
            content=body,
            headers={
                **headers,
                "x-square-hmacsha256-signature": compute_signature("sig-key", NOTIFICATION_URL, body),
            },
        )
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "processed"


@pytest.mark.asyncio
async def test_malformed_body_is_rejected(app_with_db) -> None:
    app, _ = app_with_db
    async with _client(app) as client:
        response = await client.post(
            "/api/v1/webhooks/square",
            content=b"not-json",
            headers={"content-type": "application/json"},
        )
    assert response.status_code == 400
