"""User repository – lookups, row locks and external account mappings."""

from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from libero.models.user import User


class UserRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def get(self, user_id: str) -> User | None:
        return await self._s.get(User, user_id)

    async def lock(self, user_id: str) -> User | None:
        """Select the user row ``FOR UPDATE``.

        Every read-modify-write of a user's subscriptions takes this lock
        first, so checkout completion, refunds, cancels and expiry serialise
        per user.
        """
        result = await self._s.execute(
            select(User).where(User.id == user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_by_stripe_customer(self, customer_id: str) -> User | None:
        result = await self._s.execute(
            select(User).where(User.stripe_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    async def get_by_telegram_id(self, telegram_user_id: int) -> User | None:
        result = await self._s.execute(
            select(User).where(User.telegram_user_id == telegram_user_id)
        )
        return result.scalar_one_or_none()

    async def set_stripe_customer(self, user_id: str, customer_id: str) -> None:
        await self._s.execute(
            update(User).where(User.id == user_id).values(stripe_customer_id=customer_id)
        )

    async def link_telegram(self, user_id: str, telegram_user_id: int) -> None:
        """Attach a Telegram account, detaching it from any other user first."""
        await self._s.execute(
            update(User)
            .where(User.telegram_user_id == telegram_user_id, User.id != user_id)
            .values(telegram_user_id=None)
        )
        await self._s.execute(
            update(User).where(User.id == user_id).values(telegram_user_id=telegram_user_id)
        )
