"""Payment provider – the Stripe side of checkout, cancellation and webhooks."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import stripe

from libero.config import settings
from libero.errors import ExternalProviderError, SignatureVerificationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


class PaymentProvider(Protocol):
    async def get_or_create_customer(
        self, user_id: str, email: str, name: str | None = None
    ) -> str: ...

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        pack_id: str,
        pack_name: str,
        user_id: str,
        price_id: str | None,
        price_cents: int,
        currency: str,
        upgrade_cents: int | None,
        metadata: dict[str, str],
    ) -> CheckoutSession: ...

    async def cancel_subscription(self, subscription_id: str, immediate: bool) -> None: ...

    async def create_subscription_with_trial(
        self,
        *,
        customer_id: str,
        pack_id: str,
        pack_name: str,
        user_id: str,
        price_cents: int,
        currency: str,
        trial_days: int,
        payment_method_id: str | None = None,
    ) -> str: ...

    async def get_payment_method_for_intent(self, payment_intent_id: str) -> str | None: ...

    async def create_refund(self, payment_intent_id: str, amount_cents: int | None = None) -> str: ...

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]: ...


class StripeGateway:
    """:class:`PaymentProvider` backed by the official ``stripe`` SDK.

    Every SDK failure surfaces as :class:`ExternalProviderError`.
    """

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        client: stripe.StripeClient | None = None,
    ) -> None:
        self._webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self._client = client or stripe.StripeClient(
            api_key or settings.STRIPE_SECRET_KEY,
            http_client=stripe.AIOHTTPClient(),
        )

    # ── Customers ─────────────────────────────────────────────────────

    async def get_or_create_customer(
        self, user_id: str, email: str, name: str | None = None
    ) -> str:
        """Reuse the customer registered under *email*, relinking it if needed."""
        try:
            found = await self._client.customers.list_async(
                params={"email": email, "limit": 1}
            )
            if found.data:
                existing = found.data[0]
                previous = (existing.metadata or {}).get("userId")
                if previous != user_id:
                    logger.info(
                        "Relinking Stripe customer %s from user %s to %s",
                        existing.id,
                        previous,
                        user_id,
                    )
                    await self._client.customers.update_async(
                        existing.id,
                        params={
                            "metadata": {
                                "userId": user_id,
                                "previousUserId": previous or "unknown",
                            }
                        },
                    )
                return existing.id
            params: dict[str, Any] = {"email": email, "metadata": {"userId": user_id}}
            if name:
                params["name"] = name
            customer = await self._client.customers.create_async(params=params)
        except stripe.StripeError as e:
            raise ExternalProviderError(f"Stripe customer lookup failed: {e}") from e
        logger.info("Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    # ── Checkout ──────────────────────────────────────────────────────

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        pack_id: str,
        pack_name: str,
        user_id: str,
        price_id: str | None,
        price_cents: int,
        currency: str,
        upgrade_cents: int | None,
        metadata: dict[str, str],
    ) -> CheckoutSession:
        """Create a hosted checkout.

        An upgrade charges only *upgrade_cents* once; the recurring
        subscription is created when that payment completes. Otherwise packs
        with a catalogue price use it directly and the rest get an inline price.
        """
        common: dict[str, Any] = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "success_url": f"{settings.FRONTEND_URL}/packs?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{settings.FRONTEND_URL}/packs?payment=cancelled",
            "allow_promotion_codes": True,
            "saved_payment_method_options": {"payment_method_save": "enabled"},
            "customer_update": {"address": "auto", "name": "never"},
        }
        sub_data = {"metadata": {"packId": pack_id, "userId": user_id}}

        if price_id and not upgrade_cents:
            params = {
                **common,
                "mode": "subscription",
                "line_items": [{"price": price_id, "quantity": 1}],
                "metadata": metadata,
                "subscription_data": sub_data,
            }
        elif upgrade_cents:
            params = {
                **common,
                "mode": "payment",
                "line_items": [
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "product_data": {
                                "name": f"{pack_name} - Upgrade from {metadata.get('oldPackName') or 'current plan'}",
                                "description": "One-time upgrade fee (difference for this month)",
                            },
                            "unit_amount": upgrade_cents,
                        },
                        "quantity": 1,
                    }
                ],
                "payment_intent_data": {"setup_future_usage": "off_session"},
                "metadata": {
                    **metadata,
                    "isUpgrade": "true",
                    "fullPriceAmount": str(price_cents),
                    "upgradePriceAmount": str(upgrade_cents),
                    "createSubscriptionAfterPayment": "true",
                },
            }
        else:
            params = {
                **common,
                "mode": "subscription",
                "line_items": [
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "product_data": {
                                "name": pack_name,
                                "description": f"Monthly subscription to {pack_name}",
                            },
                            "unit_amount": price_cents,
                            "recurring": {"interval": "month"},
                        },
                        "quantity": 1,
                    }
                ],
                "metadata": metadata,
                "subscription_data": sub_data,
            }

        try:
            session = await self._client.checkout.sessions.create_async(params=params)
        except stripe.StripeError as e:
            raise ExternalProviderError(f"Could not create checkout session: {e}") from e

        logger.info(
            "Checkout session %s (%s) for user %s, pack %s",
            session.id,
            params["mode"],
            user_id,
            pack_id,
        )
        return CheckoutSession(id=session.id, url=session.url)

    # ── Subscriptions ─────────────────────────────────────────────────

    async def cancel_subscription(self, subscription_id: str, immediate: bool) -> None:
        try:
            if immediate:
                await self._client.subscriptions.cancel_async(subscription_id)
            else:
                await self._client.subscriptions.update_async(
                    subscription_id, params={"cancel_at_period_end": True}
                )
        except stripe.StripeError as e:
            raise ExternalProviderError(
                f"Could not cancel Stripe subscription {subscription_id}: {e}"
            ) from e
        logger.info(
            "Stripe subscription %s cancelled (%s)",
            subscription_id,
            "immediately" if immediate else "at period end",
        )

    async def create_subscription_with_trial(
        self,
        *,
        customer_id: str,
        pack_id: str,
        pack_name: str,
        user_id: str,
        price_cents: int,
        currency: str,
        trial_days: int,
        payment_method_id: str | None = None,
    ) -> str:
        """Full-price subscription whose first charge falls after *trial_days*."""
        try:
            price = await self._client.prices.create_async(
                params={
                    "unit_amount": price_cents,
                    "currency": currency.lower(),
                    "recurring": {"interval": "month"},
                    "product_data": {"name": pack_name, "metadata": {"packId": pack_id}},
                }
            )
            params: dict[str, Any] = {
                "customer": customer_id,
                "items": [{"price": price.id}],
                "trial_period_days": trial_days,
                "metadata": {"packId": pack_id, "userId": user_id},
            }
            if payment_method_id:
                params["default_payment_method"] = payment_method_id
            sub = await self._client.subscriptions.create_async(params=params)
        except stripe.StripeError as e:
            raise ExternalProviderError(f"Could not create trial subscription: {e}") from e
        logger.info("Stripe subscription %s with %d-day trial", sub.id, trial_days)
        return sub.id

    # ── Payments ──────────────────────────────────────────────────────

    async def get_payment_method_for_intent(self, payment_intent_id: str) -> str | None:
        try:
            intent = await self._client.payment_intents.retrieve_async(payment_intent_id)
        except stripe.StripeError as e:
            raise ExternalProviderError(f"Could not load payment intent: {e}") from e
        method = intent.payment_method
        if method is None or isinstance(method, str):
            return method
        return method.id

    async def create_refund(self, payment_intent_id: str, amount_cents: int | None = None) -> str:
        params: dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_cents is not None:
            params["amount"] = amount_cents
        try:
            refund = await self._client.refunds.create_async(params=params)
        except stripe.StripeError as e:
            raise ExternalProviderError(f"Refund failed: {e}") from e
        return refund.id

    # ── Webhooks ──────────────────────────────────────────────────────

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Check the ``Stripe-Signature`` header and return the decoded body."""
        if not signature or not self._webhook_secret:
            raise SignatureVerificationError("Missing webhook signature")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureVerificationError("Webhook body is not valid UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(
                text,
                signature,
                self._webhook_secret,
                settings.STRIPE_WEBHOOK_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError("Invalid webhook signature") from e
        try:
            body = json.loads(text)
        except ValueError as e:
            raise SignatureVerificationError("Webhook body is not valid JSON") from e
        if not isinstance(body, dict):
            raise SignatureVerificationError("Webhook body is not an object")
        return body
