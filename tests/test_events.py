"""Tests for Stripe event normalisation."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from libero.errors import ValidationError
from libero.services.events import (
    EVENT_SCHEMA_VERSION,
    ChargeRefunded,
    CheckoutCompleted,
    InvoicePaid,
    SubscriptionUpdated,
    UnhandledEvent,
    normalize_stripe_event,
)


def _event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "created": 1773576000, "data": {"object": obj}}


def test_checkout_completed_with_upgrade_metadata():
    ev = normalize_stripe_event(
        _event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "mode": "payment",
                "customer": "cus_1",
                "payment_intent": {"id": "pi_1"},
                "amount_total": 1000,
                "currency": "eur",
                "metadata": {
                    "userId": "u1",
                    "packId": "gold",
                    "isUpgrade": "true",
                    "previousPackId": "silver",
                    "previousSubscriptionId": "s1",
                    "currentSubscriptionId": "sub_silver",
                    "createSubscriptionAfterPayment": "true",
                    "fullPriceAmount": "3000",
                },
            },
        )
    )

    assert ev.schema_version == EVENT_SCHEMA_VERSION
    assert ev.provider == "stripe"
    assert ev.created == datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
    body = ev.body
    assert isinstance(body, CheckoutCompleted)
    assert body.payment_intent_id == "pi_1"
    assert body.amount_total == Decimal("10")
    assert body.currency == "EUR"
    assert body.is_upgrade is True
    assert body.replaced_stripe_subscription_id == "sub_silver"
    assert body.create_subscription_after_payment is True
    assert body.full_price_cents == 3000


def test_checkout_completed_without_metadata():
    body = normalize_stripe_event(
        _event("checkout.session.completed", {"id": "cs_1", "subscription": "sub_1"})
    ).body
    assert body.user_id is None
    assert body.mode == "subscription"
    assert body.stripe_subscription_id == "sub_1"
    assert body.is_upgrade is False


def test_subscription_updated_reads_item_periods():
    body = normalize_stripe_event(
        _event(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "status": "active",
                "items": {
                    "data": [{"current_period_start": 1773576000, "current_period_end": 1776254400}]
                },
            },
        )
    ).body
    assert isinstance(body, SubscriptionUpdated)
    assert body.period_start == datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
    assert body.period_end == datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)


def test_invoice_subscription_from_parent_details():
    body = normalize_stripe_event(
        _event(
            "invoice.paid",
            {
                "id": "in_1",
                "amount_paid": 2999,
                "currency": "eur",
                "parent": {"subscription_details": {"subscription": "sub_1"}},
            },
        )
    ).body
    assert isinstance(body, InvoicePaid)
    assert body.stripe_subscription_id == "sub_1"
    assert body.amount == Decimal("29.99")


def test_invoice_payment_succeeded_is_an_invoice_paid():
    body = normalize_stripe_event(
        _event("invoice.payment_succeeded", {"id": "in_1", "subscription": "sub_1"})
    ).body
    assert isinstance(body, InvoicePaid)


def test_charge_refunded():
    body = normalize_stripe_event(
        _event(
            "charge.refunded",
            {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 500, "currency": "eur"},
        )
    ).body
    assert body == ChargeRefunded("ch_1", "pi_1", None, Decimal("5"), "EUR")


def test_unknown_type_is_unhandled():
    body = normalize_stripe_event(_event("customer.created", {"id": "cus_1"})).body
    assert body == UnhandledEvent("customer.created")


def test_missing_id_or_type():
    with pytest.raises(ValidationError):
        normalize_stripe_event({"type": "charge.refunded"})
    with pytest.raises(ValidationError):
        normalize_stripe_event({"id": "evt_1"})


def test_malformed_object():
    with pytest.raises(ValidationError):
        normalize_stripe_event(_event("charge.refunded", {"amount_refunded": 500}))
