"""Subscription repository – queries and transitions for the subscriptions table."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from libero.models.pack import Pack
from libero.models.subscription import Subscription, UpgradeOrigin
from libero.models.user import User
from libero.utils.enums import SubscriptionStatus

ACTIVE = SubscriptionStatus.ACTIVE.value


class SubscriptionRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def get(self, subscription_id: str) -> Subscription | None:
        return await self._s.get(Subscription, subscription_id)

    async def get_for_user(self, subscription_id: str, user_id: str) -> Subscription | None:
        result = await self._s.execute(
            select(Subscription).where(
                Subscription.id == subscription_id,
                Subscription.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_stripe_id(self, stripe_subscription_id: str) -> Subscription | None:
        """Return the newest local row mirroring a Stripe subscription."""
        result = await self._s.execute(
            select(Subscription)
            .where(Subscription.stripe_subscription_id == stripe_subscription_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_active_paid(
        self, user_id: str, now: datetime
    ) -> tuple[Subscription, Pack] | None:
        """Return the user's live paid subscription with its pack, or None.

        ``current_period_end > now`` is checked here as well as by the sweep,
        so a missed sweep never extends access.
        """
        result = await self._s.execute(
            select(Subscription, Pack)
            .join(Pack, Pack.id == Subscription.pack_id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == ACTIVE,
                Subscription.current_period_end > now,
                Pack.is_free == False,  # noqa: E712
            )
            .order_by(Pack.price_monthly.desc(), Subscription.created_at.desc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def get_active_for_pack(
        self, user_id: str, pack_id: str, now: datetime
    ) -> Subscription | None:
        result = await self._s.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.pack_id == pack_id,
                Subscription.status == ACTIVE,
                Subscription.current_period_end > now,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def active_pack_ids(self, user_id: str, now: datetime) -> set[str]:
        result = await self._s.execute(
            select(Subscription.pack_id).where(
                Subscription.user_id == user_id,
                Subscription.status == ACTIVE,
                Subscription.current_period_end > now,
            )
        )
        return set(result.scalars().all())

    async def count_other_active_paid(
        self, user_id: str, now: datetime, exclude_id: str | None = None
    ) -> int:
        """Count live paid subscriptions of a user, optionally excluding one row."""
        stmt = (
            select(func.count())
            .select_from(Subscription)
            .join(Pack, Pack.id == Subscription.pack_id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == ACTIVE,
                Subscription.current_period_end > now,
                Pack.is_free == False,  # noqa: E712
            )
        )
        if exclude_id is not None:
            stmt = stmt.where(Subscription.id != exclude_id)
        result = await self._s.execute(stmt)
        return result.scalar_one()

    async def create(
        self,
        user_id: str,
        pack_id: str,
        period_start: datetime,
        period_end: datetime,
        stripe_subscription_id: str | None = None,
        origin: UpgradeOrigin | None = None,
    ) -> Subscription:
        sub = Subscription(
            user_id=user_id,
            pack_id=pack_id,
            status=ACTIVE,
            current_period_start=period_start,
            current_period_end=period_end,
            stripe_subscription_id=stripe_subscription_id,
        )
        sub.upgrade_origin = origin
        self._s.add(sub)
        await self._s.flush()
        return sub

    async def cancel(self, subscription_id: str, now: datetime) -> bool:
        """Move an ACTIVE row to CANCELLED. Returns False if it was not ACTIVE."""
        result = await self._s.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.status == ACTIVE)
            .values(
                status=SubscriptionStatus.CANCELLED.value,
                cancelled_at=now,
                updated_at=now,
            )
        )
        return (result.rowcount or 0) > 0

    async def cancel_by_stripe_id(
        self, stripe_subscription_id: str, now: datetime
    ) -> list[Subscription]:
        """Cancel every ACTIVE row linked to a Stripe subscription; return them."""
        result = await self._s.execute(
            select(Subscription).where(
                Subscription.stripe_subscription_id == stripe_subscription_id,
                Subscription.status == ACTIVE,
            )
        )
        rows = list(result.scalars().all())
        for sub in rows:
            await self.cancel(sub.id, now)
        return rows

    async def mark_cancel_at_period_end(self, subscription_id: str) -> None:
        await self._s.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(cancel_at_period_end=True)
        )

    async def expire_if_active(self, subscription_id: str, now: datetime) -> bool:
        """Conditionally move a row to EXPIRED; False if it already left ACTIVE."""
        result = await self._s.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.status == ACTIVE)
            .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
        )
        return (result.rowcount or 0) > 0

    async def update_period(
        self,
        stripe_subscription_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> int:
        """Refresh the period of ACTIVE rows only; terminal rows are never touched."""
        result = await self._s.execute(
            update(Subscription)
            .where(
                Subscription.stripe_subscription_id == stripe_subscription_id,
                Subscription.status == ACTIVE,
            )
            .values(current_period_start=period_start, current_period_end=period_end)
        )
        return result.rowcount or 0

    async def get_overdue(self, now: datetime) -> list[tuple[Subscription, Pack, User]]:
        """Every ACTIVE row whose period has ended, however long ago."""
        result = await self._s.execute(
            select(Subscription, Pack, User)
            .join(Pack, Pack.id == Subscription.pack_id)
            .join(User, User.id == Subscription.user_id)
            .where(
                Subscription.status == ACTIVE,
                Subscription.current_period_end <= now,
            )
            .order_by(Subscription.current_period_end)
        )
        return [(row[0], row[1], row[2]) for row in result.all()]

    async def get_ending_between(
        self, start: datetime, end: datetime
    ) -> list[tuple[Subscription, Pack, User]]:
        """ACTIVE paid rows whose period ends inside ``[start, end)``."""
        result = await self._s.execute(
            select(Subscription, Pack, User)
            .join(Pack, Pack.id == Subscription.pack_id)
            .join(User, User.id == Subscription.user_id)
            .where(
                Subscription.status == ACTIVE,
                Subscription.current_period_end >= start,
                Subscription.current_period_end < end,
                Pack.is_free == False,  # noqa: E712
            )
        )
        return [(row[0], row[1], row[2]) for row in result.all()]
