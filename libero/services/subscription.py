"""Subscription state machine – purchase, upgrade, cancel, refund.

A subscription row only moves ``ACTIVE -> CANCELLED`` or ``ACTIVE -> EXPIRED``;
renewals and restorations are new rows. Every read-modify-write locks the
user row first, and provider calls made after a commit never roll it back.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libero.db.engine import async_session
from libero.db.repositories.pack_repo import PackRepo
from libero.db.repositories.subscription_repo import SubscriptionRepo
from libero.db.repositories.transaction_repo import TransactionRepo
from libero.db.repositories.user_repo import UserRepo
from libero.errors import (
    ConflictError,
    ExternalProviderError,
    NotFoundError,
    ValidationError,
)
from libero.models.pack import Pack
from libero.models.subscription import Subscription, UpgradeOrigin
from libero.models.transaction import Transaction
from libero.services.notifier import Notifier
from libero.services.payments import PaymentProvider, to_cents
from libero.services.telegram import TelegramGateway
from libero.utils.dates import add_months, utcnow
from libero.utils.enums import TransactionStatus

logger = logging.getLogger(__name__)

MIN_VALID_YEAR = 2000


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: str | None
    session_id: str
    pack_id: str
    pack_name: str
    price: Decimal
    is_upgrade: bool
    upgrade_price_difference: Decimal | None


@dataclass(frozen=True)
class RefundOutcome:
    transaction_id: str | None = None
    user_id: str | None = None
    refunded: bool = False
    cancelled_subscription_id: str | None = None
    restored_subscription_id: str | None = None
    restored_pack_id: str | None = None


class SubscriptionService:
    def __init__(
        self,
        payments: PaymentProvider,
        notifier: Notifier,
        telegram: TelegramGateway | None = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._payments = payments
        self._notifier = notifier
        self._telegram = telegram
        self._session_factory = session_factory
        self._clock = clock

    # ── Queries ───────────────────────────────────────────────────────

    async def get_active_paid_subscription(
        self, user_id: str
    ) -> tuple[Subscription, Pack] | None:
        async with self._session_factory() as session:
            return await SubscriptionRepo(session).get_active_paid(user_id, self._clock())

    async def has_other_active_paid(
        self, user_id: str, exclude_subscription_id: str | None = None
    ) -> bool:
        async with self._session_factory() as session:
            count = await SubscriptionRepo(session).count_other_active_paid(
                user_id, self._clock(), exclude_subscription_id
            )
        return count > 0

    # ── Eligibility & checkout ────────────────────────────────────────

    async def _eligibility(
        self, session: AsyncSession, user_id: str, pack: Pack
    ) -> tuple[Subscription, Pack] | None:
        if pack.is_free:
            raise ValidationError(
                "Free packs cannot be purchased, they are automatically assigned"
            )
        if not pack.is_active:
            raise ValidationError(f"Pack {pack.name} is not available for purchase")

        subs = SubscriptionRepo(session)
        now = self._clock()
        if await subs.get_active_for_pack(user_id, pack.id, now) is not None:
            raise ConflictError("You already have an active subscription for this pack")

        current = await subs.get_active_paid(user_id, now)
        if current is not None:
            _, current_pack = current
            if pack.price_monthly <= current_pack.price_monthly:
                raise ConflictError(
                    f"Cannot downgrade from {current_pack.name} "
                    f"({current_pack.price_monthly}/month) to {pack.name} "
                    f"({pack.price_monthly}/month). Only upgrades are allowed."
                )
        return current

    async def check_purchase_eligibility(
        self, user_id: str, pack: Pack
    ) -> tuple[Subscription, Pack] | None:
        """Raise if *user_id* may not buy *pack*; return their current paid plan."""
        async with self._session_factory() as session:
            return await self._eligibility(session, user_id, pack)

    async def create_checkout(self, user_id: str, pack_id: str) -> CheckoutResult:
        async with self._session_factory() as session:
            pack = await PackRepo(session).get(pack_id)
            if pack is None:
                raise NotFoundError("Pack not found")
            user = await UserRepo(session).get(user_id)
            if user is None:
                raise NotFoundError("User not found")
            current = await self._eligibility(session, user_id, pack)

        customer_id = user.stripe_customer_id
        if not customer_id:
            customer_id = await self._payments.get_or_create_customer(
                user.id, user.email, user.username
            )
            async with self._session_factory() as session, session.begin():
                await UserRepo(session).set_stripe_customer(user.id, customer_id)

        current_sub, current_pack = current if current else (None, None)
        difference = (
            pack.price_monthly - current_pack.price_monthly if current_pack else None
        )
        metadata = {
            "userId": user.id,
            "packId": pack.id,
            "isUpgrade": "true" if current_pack else "false",
            "currentSubscriptionId": (current_sub.stripe_subscription_id or "") if current_sub else "",
            "previousSubscriptionId": current_sub.id if current_sub else "",
            "previousPackId": current_pack.id if current_pack else "",
            "oldPackName": current_pack.name if current_pack else "",
        }
        session_info = await self._payments.create_checkout_session(
            customer_id=customer_id,
            pack_id=pack.id,
            pack_name=pack.name,
            user_id=user.id,
            price_id=pack.stripe_price_id,
            price_cents=to_cents(pack.price_monthly),
            currency=pack.currency,
            upgrade_cents=to_cents(difference) if difference is not None else None,
            metadata=metadata,
        )
        logger.info("Checkout %s created for user %s, pack %s", session_info.id, user.id, pack.id)
        return CheckoutResult(
            checkout_url=session_info.url,
            session_id=session_info.id,
            pack_id=pack.id,
            pack_name=pack.name,
            price=pack.price_monthly,
            is_upgrade=current_pack is not None,
            upgrade_price_difference=difference,
        )

    # ── Activation ────────────────────────────────────────────────────

    async def _activate(
        self,
        session: AsyncSession,
        user_id: str,
        pack_id: str,
        stripe_subscription_id: str | None,
        upgrade: UpgradeOrigin | None,
    ) -> Subscription:
        if await UserRepo(session).lock(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
        pack = await PackRepo(session).get(pack_id)
        if pack is None:
            raise NotFoundError(f"Pack {pack_id} not found")
        if pack.is_free:
            raise ValidationError("Free packs are never stored as subscriptions")

        subs = SubscriptionRepo(session)
        now = self._clock()
        current = await subs.get_active_paid(user_id, now)
        origin = upgrade
        if current is not None:
            current_sub, current_pack = current
            await subs.cancel(current_sub.id, now)
            if origin is None:
                if current_pack.id == pack.id:
                    origin = current_sub.upgrade_origin
                else:
                    origin = UpgradeOrigin(current_pack.id, current_sub.id)
            logger.info(
                "Cancelled subscription %s (%s) for user %s in favour of %s",
                current_sub.id,
                current_pack.name,
                user_id,
                pack.name,
            )

        sub = await subs.create(
            user_id=user_id,
            pack_id=pack.id,
            period_start=now,
            period_end=add_months(now),
            stripe_subscription_id=stripe_subscription_id,
            origin=origin,
        )
        logger.info(
            "Activated subscription %s: user=%s pack=%s until %s upgrade=%s",
            sub.id,
            user_id,
            pack.name,
            sub.current_period_end,
            origin is not None,
        )
        return sub

    async def activate_paid_subscription(
        self,
        user_id: str,
        pack_id: str,
        stripe_subscription_id: str | None = None,
        upgrade: UpgradeOrigin | None = None,
    ) -> Subscription:
        """Replace the user's paid plan with *pack_id* for one calendar month."""
        async with self._session_factory() as session, session.begin():
            return await self._activate(
                session, user_id, pack_id, stripe_subscription_id, upgrade
            )

    async def complete_checkout(
        self,
        user_id: str,
        pack_id: str,
        checkout_session_id: str,
        amount: Decimal,
        currency: str,
        stripe_subscription_id: str | None = None,
        upgrade: UpgradeOrigin | None = None,
        payment_intent_id: str | None = None,
        invoice_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Subscription | None:
        """Activate and book the payment of a checkout, once per session.

        Returns None when the session was already booked.
        """
        async with self._session_factory() as session, session.begin():
            txs = TransactionRepo(session)
            if await txs.get_by_checkout_session(checkout_session_id) is not None:
                logger.info("Checkout %s already booked", checkout_session_id)
                return None
            sub = await self._activate(
                session, user_id, pack_id, stripe_subscription_id, upgrade
            )
            await txs.create(
                user_id=user_id,
                subscription_id=sub.id,
                amount=amount,
                currency=currency,
                status=TransactionStatus.COMPLETED,
                payment_intent_id=payment_intent_id,
                invoice_id=invoice_id,
                checkout_session_id=checkout_session_id,
                description="Upgrade payment" if sub.is_upgrade else "Subscription payment",
                extra=extra,
            )
        return sub

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel_subscription(
        self, user_id: str, subscription_id: str, immediate: bool = False
    ) -> Subscription:
        async with self._session_factory() as session:
            sub = await SubscriptionRepo(session).get_for_user(subscription_id, user_id)
            if sub is None:
                raise NotFoundError("Subscription not found")
            pack = await PackRepo(session).get(sub.pack_id)
            if pack is not None and pack.is_free:
                raise ValidationError("Free pack subscriptions cannot be cancelled")
            if not sub.is_active:
                raise ConflictError(f"Subscription is already {sub.status.lower()}")

        if sub.stripe_subscription_id:
            await self._payments.cancel_subscription(sub.stripe_subscription_id, immediate)

        async with self._session_factory() as session, session.begin():
            await UserRepo(session).lock(user_id)
            subs = SubscriptionRepo(session)
            if immediate:
                await subs.cancel(sub.id, self._clock())
            else:
                await subs.mark_cancel_at_period_end(sub.id)
            updated = await subs.get(sub.id)

        logger.info(
            "User %s cancelled subscription %s (%s)",
            user_id,
            sub.id,
            "immediately" if immediate else "at period end",
        )
        if immediate:
            await self._guard_access(user_id, exclude_subscription_id=sub.id)
        return updated or sub

    async def handle_provider_subscription_cancelled(
        self, stripe_subscription_id: str
    ) -> list[str]:
        """Mirror a provider-side deletion; returns the local ids cancelled."""
        async with self._session_factory() as session, session.begin():
            subs = SubscriptionRepo(session)
            linked = await subs.get_by_stripe_id(stripe_subscription_id)
            if linked is None:
                logger.info("No local subscription for Stripe %s", stripe_subscription_id)
                return []
            await UserRepo(session).lock(linked.user_id)
            cancelled = await subs.cancel_by_stripe_id(stripe_subscription_id, self._clock())

        for sub in cancelled:
            logger.info("Subscription %s cancelled by provider", sub.id)
        for user_id in {sub.user_id for sub in cancelled}:
            await self._guard_access(user_id)
        return [sub.id for sub in cancelled]

    # ── Provider updates ──────────────────────────────────────────────

    async def update_subscription_period(
        self,
        stripe_subscription_id: str,
        period_start: datetime | None,
        period_end: datetime | None,
    ) -> int:
        """Refresh the billing period of ACTIVE rows. Bogus timestamps are ignored."""
        if (
            period_start is None
            or period_end is None
            or period_start.year < MIN_VALID_YEAR
            or period_end.year < MIN_VALID_YEAR
        ):
            logger.warning(
                "Invalid period for %s: start=%s end=%s",
                stripe_subscription_id,
                period_start,
                period_end,
            )
            return 0
        async with self._session_factory() as session, session.begin():
            updated = await SubscriptionRepo(session).update_period(
                stripe_subscription_id, period_start, period_end
            )
        logger.info("Updated period of %d row(s) for %s", updated, stripe_subscription_id)
        return updated

    async def record_transaction(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        status: TransactionStatus,
        subscription_id: str | None = None,
        payment_intent_id: str | None = None,
        invoice_id: str | None = None,
        description: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Transaction:
        async with self._session_factory() as session, session.begin():
            return await TransactionRepo(session).create(
                user_id=user_id,
                amount=amount,
                currency=currency,
                status=status,
                subscription_id=subscription_id,
                payment_intent_id=payment_intent_id,
                invoice_id=invoice_id,
                description=description,
                extra=extra,
            )

    # ── Refunds ───────────────────────────────────────────────────────

    async def handle_refund(
        self,
        payment_intent_id: str | None,
        charge_id: str | None = None,
        amount_refunded: Decimal | None = None,
        currency: str | None = None,
    ) -> RefundOutcome:
        """Book a refund and unwind one step of the user's upgrade lineage.

        The refunded ledger row becomes REFUNDED, the current paid
        subscription is cancelled and, when it was an upgrade from a paid
        pack, that pack is restored as a new row carrying the previous
        subscription's own lineage.
        """
        if not payment_intent_id:
            raise ValidationError("Refund without a payment intent cannot be matched")

        stripe_to_cancel: str | None = None
        restored: Subscription | None = None
        cancelled_pack_name: str | None = None
        restored_pack_name: str | None = None

        async with self._session_factory() as session, session.begin():
            txs = TransactionRepo(session)
            tx = await txs.get_by_payment_intent(payment_intent_id)
            if tx is None:
                logger.warning(
                    "Refund for unknown payment intent %s (charge %s)",
                    payment_intent_id,
                    charge_id,
                )
                return RefundOutcome()
            if tx.status == TransactionStatus.REFUNDED.value:
                logger.info("Transaction %s already refunded", tx.id)
                return RefundOutcome(transaction_id=tx.id, user_id=tx.user_id)

            user = await UserRepo(session).lock(tx.user_id)
            await txs.mark_refunded(tx.id)

            subs = SubscriptionRepo(session)
            packs = PackRepo(session)
            now = self._clock()
            current = await subs.get_active_paid(tx.user_id, now)
            cancelled_id = None
            if current is not None:
                current_sub, current_pack = current
                await subs.cancel(current_sub.id, now)
                cancelled_id = current_sub.id
                cancelled_pack_name = current_pack.name
                stripe_to_cancel = current_sub.stripe_subscription_id

                origin = current_sub.upgrade_origin
                if origin is not None:
                    previous_pack = await packs.get(origin.restoration_target())
                    if previous_pack is not None and not previous_pack.is_free:
                        previous_sub = (
                            await subs.get(origin.previous_subscription_id)
                            if origin.previous_subscription_id
                            else None
                        )
                        restored = await subs.create(
                            user_id=tx.user_id,
                            pack_id=previous_pack.id,
                            period_start=now,
                            period_end=add_months(now),
                            origin=previous_sub.upgrade_origin if previous_sub else None,
                        )
                        restored_pack_name = previous_pack.name
                        logger.info(
                            "Restored %s for user %s after refund of %s",
                            previous_pack.name,
                            tx.user_id,
                            current_sub.id,
                        )
            amount = amount_refunded if amount_refunded is not None else tx.amount
            currency = currency or tx.currency

        outcome = RefundOutcome(
            transaction_id=tx.id,
            user_id=tx.user_id,
            refunded=True,
            cancelled_subscription_id=cancelled_id,
            restored_subscription_id=restored.id if restored else None,
            restored_pack_id=restored.pack_id if restored else None,
        )
        logger.info("Refund booked: %s", outcome)

        if stripe_to_cancel:
            try:
                await self._payments.cancel_subscription(stripe_to_cancel, immediate=True)
            except ExternalProviderError as e:
                logger.error("Stripe cancel after refund failed: %s", e)

        if restored is None:
            await self._guard_access(tx.user_id, exclude_subscription_id=cancelled_id)

        if user is not None:
            await self._notifier.send_refund_confirmation(
                user, cancelled_pack_name, amount, currency, restored_pack_name
            )
        return outcome

    # ── Telegram access guard ─────────────────────────────────────────

    async def _guard_access(
        self, user_id: str, exclude_subscription_id: str | None = None
    ) -> bool:
        """Ban from the VIP chats unless another paid subscription is live."""
        if self._telegram is None:
            return False
        try:
            if await self.has_other_active_paid(user_id, exclude_subscription_id):
                logger.info("User %s keeps VIP access through another subscription", user_id)
                return False
            return await self._telegram.kick_user_by_user_id(user_id)
        except Exception as e:
            logger.error("Access guard for user %s failed: %s", user_id, e)
            return False
