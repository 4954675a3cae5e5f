"""Webhook reconciler – applies verified Stripe events to local state.

Each delivery is logged by ``(provider, event_id)`` before anything else;
redeliveries bump ``retry_count`` and an event already processed is never
handled twice. Handlers always read current database state, so events that
arrive out of order cannot revive a terminal subscription.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libero.config import settings
from libero.db.engine import async_session
from libero.db.repositories.pack_repo import PackRepo
from libero.db.repositories.subscription_repo import SubscriptionRepo
from libero.db.repositories.transaction_repo import TransactionRepo
from libero.db.repositories.user_repo import UserRepo
from libero.db.repositories.webhook_event_repo import WebhookEventRepo
from libero.errors import ExternalProviderError, ValidationError
from libero.models.subscription import UpgradeOrigin
from libero.models.user import User
from libero.services.events import (
    PROVIDER_STRIPE,
    ChargeFailed,
    ChargeRefunded,
    CheckoutCompleted,
    DisputeCreated,
    InternalEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
    normalize_stripe_event,
)
from libero.services.notifier import Notifier
from libero.services.payments import PaymentProvider, to_cents
from libero.services.subscription import SubscriptionService
from libero.services.telegram import TelegramGateway
from libero.utils.dates import utcnow
from libero.utils.enums import AlertKind, TransactionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    processed: bool
    duplicate: bool = False
    error: str | None = None


class WebhookReconciler:
    def __init__(
        self,
        subscriptions: SubscriptionService,
        payments: PaymentProvider,
        notifier: Notifier,
        telegram: TelegramGateway | None = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
    ) -> None:
        self._subscriptions = subscriptions
        self._payments = payments
        self._notifier = notifier
        self._telegram = telegram
        self._session_factory = session_factory
        self._handlers: dict[type, Callable[[Any], Awaitable[None]]] = {
            CheckoutCompleted: self._on_checkout_completed,
            SubscriptionUpdated: self._on_subscription_updated,
            SubscriptionDeleted: self._on_subscription_deleted,
            InvoicePaid: self._on_invoice_paid,
            InvoicePaymentFailed: self._on_invoice_payment_failed,
            ChargeFailed: self._on_charge_failed,
            DisputeCreated: self._on_dispute_created,
            ChargeRefunded: self._on_charge_refunded,
            UnhandledEvent: self._on_unhandled,
        }

    # ── Entry point ───────────────────────────────────────────────────

    async def handle_provider_webhook(
        self, raw_payload: bytes, signature: str | None
    ) -> WebhookResult:
        """Verify, log, and apply one delivery.

        Raises :class:`SignatureVerificationError` or :class:`ValidationError`
        only before the event is logged; afterwards failures are stored on
        the event row and reported in the result.
        """
        payload = self._payments.verify_webhook(raw_payload, signature)
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise ValidationError("Webhook event has no id or type")

        async with self._session_factory() as session, session.begin():
            row = await WebhookEventRepo(session).record(
                PROVIDER_STRIPE, event_id, event_type, json.dumps(payload)
            )
            row_id, already, retries = row.id, row.processed, row.retry_count

        if already:
            logger.info("Duplicate webhook %s (%s), retry #%d", event_id, event_type, retries)
            return WebhookResult(event_id, event_type, processed=True, duplicate=True)

        try:
            event = normalize_stripe_event(payload)
            await self.dispatch(event.body)
        except Exception as e:
            logger.exception("Webhook %s (%s) failed: %s", event_id, event_type, e)
            async with self._session_factory() as session, session.begin():
                await WebhookEventRepo(session).mark_failed(row_id, str(e))
            return WebhookResult(event_id, event_type, processed=False, error=str(e))

        async with self._session_factory() as session, session.begin():
            await WebhookEventRepo(session).mark_processed(row_id, utcnow())
        logger.info("Webhook %s (%s) processed", event_id, event_type)
        return WebhookResult(event_id, event_type, processed=True)

    async def dispatch(self, event: InternalEvent) -> None:
        await self._handlers[type(event)](event)

    # ── Lookups ───────────────────────────────────────────────────────

    async def _user(self, user_id: str | None = None, customer_id: str | None = None) -> User | None:
        async with self._session_factory() as session:
            repo = UserRepo(session)
            if user_id:
                return await repo.get(user_id)
            if customer_id:
                return await repo.get_by_stripe_customer(customer_id)
        return None

    # ── Checkout ──────────────────────────────────────────────────────

    async def _on_checkout_completed(self, ev: CheckoutCompleted) -> None:
        logger.info("Checkout %s completed, mode=%s", ev.session_id, ev.mode)
        if not ev.user_id or not ev.pack_id:
            logger.warning("Checkout %s has no user/pack metadata", ev.session_id)
            return

        async with self._session_factory() as session:
            if await TransactionRepo(session).get_by_checkout_session(ev.session_id):
                logger.info("Checkout %s already booked, skipping", ev.session_id)
                return
            user = await UserRepo(session).get(ev.user_id)
            pack = await PackRepo(session).get(ev.pack_id)
        if user is None or pack is None:
            logger.error("Checkout %s references unknown user or pack", ev.session_id)
            return

        stripe_sub_id = ev.stripe_subscription_id
        if ev.mode == "payment" and ev.create_subscription_after_payment:
            stripe_sub_id = await self._create_upgrade_subscription(
                ev, user, pack.name, pack.price_monthly, pack.currency
            )
        if stripe_sub_id:
            try:
                await self._payments.cancel_subscription(stripe_sub_id, immediate=False)
            except ExternalProviderError as e:
                logger.error("Could not disable auto-renew on %s: %s", stripe_sub_id, e)

        upgrade = (
            UpgradeOrigin(ev.previous_pack_id, ev.previous_subscription_id)
            if ev.is_upgrade and ev.previous_pack_id
            else None
        )
        sub = await self._subscriptions.complete_checkout(
            user_id=user.id,
            pack_id=pack.id,
            checkout_session_id=ev.session_id,
            amount=ev.amount_total if ev.amount_total is not None else Decimal("0"),
            currency=ev.currency or pack.currency,
            stripe_subscription_id=stripe_sub_id,
            upgrade=upgrade,
            payment_intent_id=ev.payment_intent_id,
            extra={"mode": ev.mode, "isUpgrade": ev.is_upgrade},
        )
        if sub is None:
            return

        # After the local switch, so the deletion webhook finds nothing ACTIVE.
        replaced = ev.replaced_stripe_subscription_id
        if ev.is_upgrade and replaced and replaced != stripe_sub_id:
            try:
                await self._payments.cancel_subscription(replaced, immediate=True)
            except ExternalProviderError as e:
                logger.error("Could not cancel replaced subscription %s: %s", replaced, e)

        bot_link = None
        if self._telegram is not None:
            try:
                bot_link = await self._telegram.bot_link_url(user.id)
            except Exception as e:
                logger.error("Could not build bot link for %s: %s", user.id, e)
        await self._notifier.send_payment_confirmation(
            user,
            pack.name,
            ev.amount_total,
            ev.currency or pack.currency,
            bot_link,
            is_upgrade=sub.is_upgrade,
        )

    async def _create_upgrade_subscription(
        self,
        ev: CheckoutCompleted,
        user: User,
        pack_name: str,
        price: Decimal,
        currency: str,
    ) -> str | None:
        """Full-price subscription after a one-time upgrade payment."""
        customer_id = ev.customer_id or user.stripe_customer_id
        if not customer_id:
            logger.error("Upgrade checkout %s has no customer", ev.session_id)
            return None
        payment_method = None
        if ev.payment_intent_id:
            try:
                payment_method = await self._payments.get_payment_method_for_intent(
                    ev.payment_intent_id
                )
            except ExternalProviderError as e:
                logger.warning("No payment method for %s: %s", ev.payment_intent_id, e)
        try:
            return await self._payments.create_subscription_with_trial(
                customer_id=customer_id,
                pack_id=ev.pack_id or "",
                pack_name=pack_name,
                user_id=user.id,
                price_cents=ev.full_price_cents or to_cents(price),
                currency=currency,
                trial_days=settings.UPGRADE_TRIAL_DAYS,
                payment_method_id=payment_method,
            )
        except ExternalProviderError as e:
            logger.error("Trial subscription for upgrade %s failed: %s", ev.session_id, e)
            return None

    # ── Subscription lifecycle ────────────────────────────────────────

    async def _on_subscription_updated(self, ev: SubscriptionUpdated) -> None:
        await self._subscriptions.update_subscription_period(
            ev.stripe_subscription_id, ev.period_start, ev.period_end
        )

    async def _on_subscription_deleted(self, ev: SubscriptionDeleted) -> None:
        logger.info("Stripe subscription %s deleted", ev.stripe_subscription_id)
        await self._subscriptions.handle_provider_subscription_cancelled(
            ev.stripe_subscription_id
        )

    # ── Invoices & charges ────────────────────────────────────────────

    async def _on_invoice_paid(self, ev: InvoicePaid) -> None:
        if not ev.stripe_subscription_id:
            logger.warning("Invoice %s has no subscription", ev.invoice_id)
            return
        if not ev.amount:
            logger.info("Skipping zero-amount invoice %s", ev.invoice_id)
            return
        async with self._session_factory() as session:
            sub = await SubscriptionRepo(session).get_by_stripe_id(ev.stripe_subscription_id)
            booked = await TransactionRepo(session).get_by_invoice(
                ev.invoice_id, TransactionStatus.COMPLETED
            )
        if sub is None:
            logger.warning("No local subscription for Stripe %s", ev.stripe_subscription_id)
            return
        if booked is not None:
            logger.info("Invoice %s already booked", ev.invoice_id)
            return
        await self._subscriptions.record_transaction(
            user_id=sub.user_id,
            subscription_id=sub.id,
            amount=ev.amount,
            currency=ev.currency or "EUR",
            status=TransactionStatus.COMPLETED,
            payment_intent_id=ev.payment_intent_id,
            invoice_id=ev.invoice_id,
            description="Subscription invoice",
        )
        logger.info("Recorded invoice %s for subscription %s", ev.invoice_id, sub.id)

    async def _on_invoice_payment_failed(self, ev: InvoicePaymentFailed) -> None:
        sub = None
        if ev.stripe_subscription_id:
            async with self._session_factory() as session:
                sub = await SubscriptionRepo(session).get_by_stripe_id(ev.stripe_subscription_id)
        if sub is not None:
            await self._subscriptions.record_transaction(
                user_id=sub.user_id,
                subscription_id=sub.id,
                amount=ev.amount or Decimal("0"),
                currency=ev.currency or "EUR",
                status=TransactionStatus.FAILED,
                invoice_id=ev.invoice_id,
                description="Invoice payment failed",
            )
        user = await self._user(
            user_id=sub.user_id if sub else None, customer_id=ev.customer_id
        )
        await self._notifier.send_admin_payment_alert(
            AlertKind.CHARGE_FAILED,
            user,
            ev.amount,
            ev.currency,
            ev.invoice_id,
            reason=ev.reason or f"Invoice payment failed for {ev.stripe_subscription_id}",
        )
        logger.warning("Invoice %s payment failed", ev.invoice_id)

    async def _on_charge_failed(self, ev: ChargeFailed) -> None:
        user = await self._user(customer_id=ev.customer_id)
        if user is not None:
            current = await self._subscriptions.get_active_paid_subscription(user.id)
            if current is not None:
                await self._subscriptions.record_transaction(
                    user_id=user.id,
                    subscription_id=current[0].id,
                    amount=ev.amount or Decimal("0"),
                    currency=ev.currency or "EUR",
                    status=TransactionStatus.FAILED,
                    payment_intent_id=ev.payment_intent_id,
                    description="Charge failed",
                    extra={"chargeId": ev.charge_id},
                )
        await self._notifier.send_admin_payment_alert(
            AlertKind.CHARGE_FAILED,
            user,
            ev.amount,
            ev.currency,
            ev.payment_intent_id or ev.charge_id,
            reason=ev.reason or f"Charge failed for customer {ev.customer_id}",
        )
        logger.warning("Charge %s failed", ev.charge_id)

    async def _on_dispute_created(self, ev: DisputeCreated) -> None:
        user = None
        if ev.payment_intent_id:
            async with self._session_factory() as session:
                tx = await TransactionRepo(session).get_by_payment_intent(ev.payment_intent_id)
                if tx is not None:
                    user = await UserRepo(session).get(tx.user_id)
        await self._notifier.send_admin_payment_alert(
            AlertKind.DISPUTE_CREATED,
            user,
            ev.amount,
            ev.currency,
            ev.charge_id or ev.dispute_id,
            reason=f"Dispute reason: {ev.reason or 'unknown'}",
        )
        logger.warning("Dispute %s opened", ev.dispute_id)

    async def _on_charge_refunded(self, ev: ChargeRefunded) -> None:
        outcome = await self._subscriptions.handle_refund(
            ev.payment_intent_id, ev.charge_id, ev.amount_refunded, ev.currency
        )
        if not outcome.refunded:
            logger.warning("Refund of charge %s matched nothing new", ev.charge_id)
            return
        user = await self._user(user_id=outcome.user_id, customer_id=ev.customer_id)
        reason = "Refund processed."
        if outcome.restored_pack_id:
            reason += f" Previous pack restored: {outcome.restored_pack_id}"
        await self._notifier.send_admin_payment_alert(
            AlertKind.REFUND_PROCESSED,
            user,
            ev.amount_refunded,
            ev.currency,
            ev.charge_id,
            reason=reason,
        )

    async def _on_unhandled(self, ev: UnhandledEvent) -> None:
        logger.info("Ignoring webhook type %s", ev.event_type)
