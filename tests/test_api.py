"""Tests for the HTTP surface."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp.test_utils import TestClient, TestServer

from libero.api import create_api_app
from libero.errors import (
    AccessDeniedError,
    ConflictError,
    ExternalProviderError,
    SignatureVerificationError,
)
from libero.services.subscription import CheckoutResult
from libero.services.webhooks import WebhookResult


@pytest.fixture
def services():
    reconciler = MagicMock()
    reconciler.handle_provider_webhook = AsyncMock(
        return_value=WebhookResult("evt_1", "invoice.paid", processed=True)
    )
    subscriptions = MagicMock()
    subscriptions.create_checkout = AsyncMock()
    subscriptions.cancel_subscription = AsyncMock()
    resolver = MagicMock()
    resolver.accessible_categories = AsyncMock(return_value=[])
    resolver.check_bet_access = AsyncMock()
    return reconciler, subscriptions, resolver


@pytest.fixture
def app(services, fake_redis):
    reconciler, subscriptions, resolver = services
    return create_api_app(reconciler, subscriptions, resolver, redis=fake_redis)


async def _client(app) -> TestClient:
    client = TestClient(TestServer(app))
    await client.start_server()
    return client


@pytest.mark.asyncio
async def test_health(app):
    client = await _client(app)
    try:
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "redis": "ok"}
    finally:
        await client.close()


# ── Stripe webhook ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_webhook_passes_raw_body_and_signature(app, services):
    reconciler = services[0]
    client = await _client(app)
    try:
        resp = await client.post(
            "/webhooks/stripe", data=b'{"id": "evt_1"}', headers={"Stripe-Signature": "t=1,v1=abc"}
        )
        assert resp.status == 200
        assert (await resp.json())["processed"] is True
    finally:
        await client.close()
    reconciler.handle_provider_webhook.assert_awaited_once_with(b'{"id": "evt_1"}', "t=1,v1=abc")


@pytest.mark.asyncio
async def test_webhook_bad_signature_is_400(app, services):
    services[0].handle_provider_webhook.side_effect = SignatureVerificationError("Invalid webhook signature")
    client = await _client(app)
    try:
        resp = await client.post("/webhooks/stripe", data=b"{}")
        assert resp.status == 400
        assert await resp.json() == {"error": "Invalid webhook signature"}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_webhook_processing_failure_still_acknowledged(app, services):
    services[0].handle_provider_webhook.return_value = WebhookResult(
        "evt_1", "charge.refunded", processed=False, error="boom"
    )
    client = await _client(app)
    try:
        resp = await client.post("/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "x"})
        assert resp.status == 200
        assert (await resp.json())["processed"] is False
    finally:
        await client.close()


# ── Subscription API ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_checkout_requires_identity(app):
    client = await _client(app)
    try:
        resp = await client.post("/api/checkout", json={"packId": "gold"})
        assert resp.status == 401
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_checkout_requires_pack(app):
    client = await _client(app)
    try:
        resp = await client.post("/api/checkout", json={}, headers={"X-User-Id": "u1"})
        assert resp.status == 400
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_checkout_success(app, services):
    subscriptions = services[1]
    subscriptions.create_checkout.return_value = CheckoutResult(
        checkout_url="https://checkout.stripe.test/cs_1",
        session_id="cs_1",
        pack_id="gold",
        pack_name="Gold",
        price=Decimal("30.00"),
        is_upgrade=True,
        upgrade_price_difference=Decimal("10.00"),
    )
    client = await _client(app)
    try:
        resp = await client.post("/api/checkout", json={"packId": "gold"}, headers={"X-User-Id": "u1"})
        body = await resp.json()
    finally:
        await client.close()

    assert resp.status == 200
    assert body["checkoutUrl"] == "https://checkout.stripe.test/cs_1"
    assert body["upgradePriceDifference"] == "10.00"
    subscriptions.create_checkout.assert_awaited_once_with("u1", "gold")


@pytest.mark.asyncio
async def test_checkout_downgrade_is_409(app, services):
    services[1].create_checkout.side_effect = ConflictError("Cannot downgrade from Gold")
    client = await _client(app)
    try:
        resp = await client.post("/api/checkout", json={"packId": "silver"}, headers={"X-User-Id": "u1"})
        assert resp.status == 409
        assert "downgrade" in (await resp.json())["error"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_provider_outage_is_502(app, services):
    services[1].create_checkout.side_effect = ExternalProviderError("stripe down")
    client = await _client(app)
    try:
        resp = await client.post("/api/checkout", json={"packId": "gold"}, headers={"X-User-Id": "u1"})
        assert resp.status == 502
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_cancel_immediately(app, services):
    sub = MagicMock(id="s1", status="CANCELLED", cancel_at_period_end=False)
    services[1].cancel_subscription.return_value = sub
    client = await _client(app)
    try:
        resp = await client.post(
            "/api/subscriptions/s1/cancel", json={"immediate": True}, headers={"X-User-Id": "u1"}
        )
        assert await resp.json() == {"id": "s1", "status": "CANCELLED", "cancelAtPeriodEnd": False}
    finally:
        await client.close()
    services[1].cancel_subscription.assert_awaited_once_with("u1", "s1", immediate=True)


# ── Entitlements ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_entitlements_lists_categories(app, services):
    football = MagicMock(id="c1")
    football.name = "Football"
    services[2].accessible_categories.return_value = [football]
    client = await _client(app)
    try:
        resp = await client.get("/api/entitlements", headers={"X-User-Id": "u1"})
        assert await resp.json() == {"categories": [{"id": "c1", "name": "Football"}]}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_bet_access_denied_is_403(app, services):
    services[2].check_bet_access.side_effect = AccessDeniedError("You do not have access to this bet")
    client = await _client(app)
    try:
        resp = await client.get("/api/bets/b1/access", headers={"X-User-Id": "u1"})
        assert resp.status == 403
    finally:
        await client.close()
