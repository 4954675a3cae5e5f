"""Internal payment events.

Raw Stripe payloads are normalised into this closed set of dataclasses right
after signature verification; nothing past the reconciler reads provider JSON.
Bump ``EVENT_SCHEMA_VERSION`` whenever a field changes meaning.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Union

from libero.errors import ValidationError
from libero.utils.dates import from_epoch

EVENT_SCHEMA_VERSION = 1
PROVIDER_STRIPE = "stripe"


# ── Event types ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class CheckoutCompleted:
    session_id: str
    mode: str
    user_id: str | None
    pack_id: str | None
    customer_id: str | None
    stripe_subscription_id: str | None
    payment_intent_id: str | None
    amount_total: Decimal | None
    currency: str | None
    is_upgrade: bool = False
    previous_pack_id: str | None = None
    previous_subscription_id: str | None = None
    replaced_stripe_subscription_id: str | None = None
    old_pack_name: str | None = None
    create_subscription_after_payment: bool = False
    full_price_cents: int | None = None


@dataclass(frozen=True)
class SubscriptionUpdated:
    stripe_subscription_id: str
    status: str | None
    period_start: datetime | None
    period_end: datetime | None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class SubscriptionDeleted:
    stripe_subscription_id: str


@dataclass(frozen=True)
class InvoicePaid:
    invoice_id: str
    stripe_subscription_id: str | None
    customer_id: str | None
    payment_intent_id: str | None
    amount: Decimal | None
    currency: str | None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    invoice_id: str
    stripe_subscription_id: str | None
    customer_id: str | None
    amount: Decimal | None
    currency: str | None
    reason: str | None = None


@dataclass(frozen=True)
class ChargeFailed:
    charge_id: str
    payment_intent_id: str | None
    customer_id: str | None
    amount: Decimal | None
    currency: str | None
    reason: str | None = None


@dataclass(frozen=True)
class DisputeCreated:
    dispute_id: str
    charge_id: str | None
    payment_intent_id: str | None
    amount: Decimal | None
    currency: str | None
    reason: str | None = None


@dataclass(frozen=True)
class ChargeRefunded:
    charge_id: str
    payment_intent_id: str | None
    customer_id: str | None
    amount_refunded: Decimal | None
    currency: str | None


@dataclass(frozen=True)
class UnhandledEvent:
    event_type: str


InternalEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    ChargeFailed,
    DisputeCreated,
    ChargeRefunded,
    UnhandledEvent,
]


@dataclass(frozen=True)
class ProviderEvent:
    """Envelope around one verified delivery."""

    provider: str
    event_id: str
    event_type: str
    created: datetime | None
    body: InternalEvent
    schema_version: int = EVENT_SCHEMA_VERSION


# ── Field helpers ─────────────────────────────────────────────────────


def _ref(value: Any) -> str | None:
    """Stripe references arrive as an id string or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return value or None


def _cents(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(int(value)) / 100


def _flag(value: Any) -> bool:
    return str(value).lower() == "true"


def _int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _invoice_subscription(obj: dict[str, Any]) -> str | None:
    sub = _ref(obj.get("subscription"))
    if sub:
        return sub
    details = (obj.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


# ── Parsers ───────────────────────────────────────────────────────────


def _checkout_completed(obj: dict[str, Any]) -> CheckoutCompleted:
    meta = obj.get("metadata") or {}
    return CheckoutCompleted(
        session_id=obj["id"],
        mode=obj.get("mode") or "subscription",
        user_id=meta.get("userId") or None,
        pack_id=meta.get("packId") or None,
        customer_id=_ref(obj.get("customer")),
        stripe_subscription_id=_ref(obj.get("subscription")),
        payment_intent_id=_ref(obj.get("payment_intent")),
        amount_total=_cents(obj.get("amount_total")),
        currency=(obj.get("currency") or "").upper() or None,
        is_upgrade=_flag(meta.get("isUpgrade")),
        previous_pack_id=meta.get("previousPackId") or None,
        previous_subscription_id=meta.get("previousSubscriptionId") or None,
        replaced_stripe_subscription_id=meta.get("currentSubscriptionId") or None,
        old_pack_name=meta.get("oldPackName") or None,
        create_subscription_after_payment=_flag(meta.get("createSubscriptionAfterPayment")),
        full_price_cents=_int(meta.get("fullPriceAmount")),
    )


def _subscription_updated(obj: dict[str, Any]) -> SubscriptionUpdated:
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    if start is None or end is None:
        items = (obj.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return SubscriptionUpdated(
        stripe_subscription_id=obj["id"],
        status=obj.get("status"),
        period_start=from_epoch(start),
        period_end=from_epoch(end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
    )


def _subscription_deleted(obj: dict[str, Any]) -> SubscriptionDeleted:
    return SubscriptionDeleted(stripe_subscription_id=obj["id"])


def _invoice_paid(obj: dict[str, Any]) -> InvoicePaid:
    return InvoicePaid(
        invoice_id=obj["id"],
        stripe_subscription_id=_invoice_subscription(obj),
        customer_id=_ref(obj.get("customer")),
        payment_intent_id=_ref(obj.get("payment_intent")),
        amount=_cents(obj.get("amount_paid")),
        currency=(obj.get("currency") or "").upper() or None,
    )


def _invoice_payment_failed(obj: dict[str, Any]) -> InvoicePaymentFailed:
    error = (obj.get("last_finalization_error") or {}).get("message")
    return InvoicePaymentFailed(
        invoice_id=obj["id"],
        stripe_subscription_id=_invoice_subscription(obj),
        customer_id=_ref(obj.get("customer")),
        amount=_cents(obj.get("amount_due")),
        currency=(obj.get("currency") or "").upper() or None,
        reason=error,
    )


def _charge_failed(obj: dict[str, Any]) -> ChargeFailed:
    return ChargeFailed(
        charge_id=obj["id"],
        payment_intent_id=_ref(obj.get("payment_intent")),
        customer_id=_ref(obj.get("customer")),
        amount=_cents(obj.get("amount")),
        currency=(obj.get("currency") or "").upper() or None,
        reason=obj.get("failure_message"),
    )


def _dispute_created(obj: dict[str, Any]) -> DisputeCreated:
    return DisputeCreated(
        dispute_id=obj["id"],
        charge_id=_ref(obj.get("charge")),
        payment_intent_id=_ref(obj.get("payment_intent")),
        amount=_cents(obj.get("amount")),
        currency=(obj.get("currency") or "").upper() or None,
        reason=obj.get("reason"),
    )


def _charge_refunded(obj: dict[str, Any]) -> ChargeRefunded:
    return ChargeRefunded(
        charge_id=obj["id"],
        payment_intent_id=_ref(obj.get("payment_intent")),
        customer_id=_ref(obj.get("customer")),
        amount_refunded=_cents(obj.get("amount_refunded")),
        currency=(obj.get("currency") or "").upper() or None,
    )


_PARSERS: dict[str, Callable[[dict[str, Any]], InternalEvent]] = {
    "checkout.session.completed": _checkout_completed,
    "customer.subscription.updated": _subscription_updated,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.paid": _invoice_paid,
    "invoice.payment_succeeded": _invoice_paid,
    "invoice.payment_failed": _invoice_payment_failed,
    "charge.failed": _charge_failed,
    "charge.dispute.created": _dispute_created,
    "charge.refunded": _charge_refunded,
}


def normalize_stripe_event(payload: dict[str, Any]) -> ProviderEvent:
    """Turn a verified Stripe event into a :class:`ProviderEvent`."""
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise ValidationError("Webhook event has no id or type")

    obj = (payload.get("data") or {}).get("object") or {}
    parser = _PARSERS.get(event_type)
    if parser is None:
        body: InternalEvent = UnhandledEvent(event_type=event_type)
    else:
        try:
            body = parser(obj)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed {event_type} payload: {e}") from e

    return ProviderEvent(
        provider=PROVIDER_STRIPE,
        event_id=event_id,
        event_type=event_type,
        created=from_epoch(payload.get("created")),
        body=body,
    )
