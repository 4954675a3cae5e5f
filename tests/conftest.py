"""Shared fixtures for Libero tests."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

# Ensure BOT_TOKEN is set before any libero module triggers Settings validation
os.environ.setdefault("BOT_TOKEN", "0:TEST_TOKEN")

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from libero.db.engine import init_db
from libero.models.category import Bet, Category
from libero.models.pack import Pack, PackCategory, PackHierarchy
from libero.models.subscription import Subscription, UpgradeOrigin
from libero.models.transaction import Transaction
from libero.models.user import User
from libero.services.notifier import Notifier
from libero.services.payments import CheckoutSession
from libero.services.telegram import TelegramGateway
from libero.utils.dates import add_months
from libero.utils.enums import SubscriptionStatus, TransactionStatus

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that tests move by hand."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def fake_redis():
    """In-memory mock that behaves like redis.asyncio.Redis for the subset we use."""

    store: dict[str, str] = {}

    redis = AsyncMock()

    async def _set(key, value, ex=None, nx=False):
        if nx and key in store:
            return None  # Key already exists
        store[key] = value
        return True

    async def _get(key):
        return store.get(key)

    async def _getdel(key):
        return store.pop(key, None)

    async def _delete(*keys):
        count = 0
        for k in keys:
            if k in store:
                del store[k]
                count += 1
        return count

    async def _eval(script, numkeys, key, token):
        # Only the compare-and-delete lock release script is used
        if store.get(key) == token:
            del store[key]
            return 1
        return 0

    redis.set = AsyncMock(side_effect=_set)
    redis.get = AsyncMock(side_effect=_get)
    redis.getdel = AsyncMock(side_effect=_getdel)
    redis.delete = AsyncMock(side_effect=_delete)
    redis.eval = AsyncMock(side_effect=_eval)
    redis.ping = AsyncMock(return_value=True)

    redis._store = store  # Expose for assertions
    return redis


# ── Database ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    """A throwaway SQLite database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'libero.db'}")

    # pysqlite defers BEGIN on its own; emit it explicitly so savepoints work.
    @event.listens_for(engine.sync_engine, "connect")
    def _no_autobegin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    await init_db(engine)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


class Seeder:
    """Insert rows directly, bypassing the services under test."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def _add(self, *rows):
        async with self._factory() as session, session.begin():
            session.add_all(rows)
        return rows[0] if len(rows) == 1 else rows

    async def user(
        self,
        email: str = "punter@example.com",
        telegram_user_id: int | None = None,
        language: str = "en",
        stripe_customer_id: str | None = None,
    ) -> User:
        return await self._add(
            User(
                email=email,
                username=email.split("@")[0],
                preferred_language=language,
                status="ACTIVE",
                telegram_user_id=telegram_user_id,
                stripe_customer_id=stripe_customer_id,
            )
        )

    async def pack(
        self,
        name: str,
        price: str = "0",
        is_free: bool = False,
        is_active: bool = True,
        stripe_price_id: str | None = None,
    ) -> Pack:
        return await self._add(
            Pack(
                name=name,
                price_monthly=Decimal(price),
                is_free=is_free,
                is_active=is_active,
                stripe_price_id=stripe_price_id,
            )
        )

    async def category(self, name: str, is_active: bool = True) -> Category:
        return await self._add(Category(name=name, is_active=is_active))

    async def bet(self, category: Category, title: str = "Over 2.5") -> Bet:
        return await self._add(Bet(category_id=category.id, title=title))

    async def assign(self, pack: Pack, *categories: Category) -> None:
        await self._add(
            *[PackCategory(pack_id=pack.id, category_id=c.id) for c in categories]
        )

    async def include(self, parent: Pack, child: Pack) -> None:
        await self._add(PackHierarchy(pack_id=parent.id, includes_pack_id=child.id))

    async def subscription(
        self,
        user: User,
        pack: Pack,
        start: datetime = NOW,
        end: datetime | None = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        stripe_subscription_id: str | None = None,
        origin: UpgradeOrigin | None = None,
    ) -> Subscription:
        sub = Subscription(
            user_id=user.id,
            pack_id=pack.id,
            status=status.value,
            current_period_start=start,
            current_period_end=end or add_months(start),
            stripe_subscription_id=stripe_subscription_id,
        )
        sub.upgrade_origin = origin
        return await self._add(sub)

    async def transaction(
        self,
        user: User,
        amount: str,
        subscription: Subscription | None = None,
        payment_intent_id: str | None = None,
        checkout_session_id: str | None = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> Transaction:
        return await self._add(
            Transaction(
                user_id=user.id,
                subscription_id=subscription.id if subscription else None,
                amount=Decimal(amount),
                currency="EUR",
                status=status.value,
                stripe_payment_intent_id=payment_intent_id,
                checkout_session_id=checkout_session_id,
            )
        )


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


# ── Collaborators ─────────────────────────────────────────────────────


@pytest.fixture
def payments():
    """Stand-in for the Stripe gateway."""
    gateway = MagicMock()
    gateway.get_or_create_customer = AsyncMock(return_value="cus_test")
    gateway.create_checkout_session = AsyncMock(
        return_value=CheckoutSession(id="cs_test", url="https://checkout.stripe.test/cs_test")
    )
    gateway.cancel_subscription = AsyncMock(return_value=None)
    gateway.create_subscription_with_trial = AsyncMock(return_value="sub_trial")
    gateway.get_payment_method_for_intent = AsyncMock(return_value="pm_card")
    gateway.create_refund = AsyncMock(return_value="re_test")
    gateway.verify_webhook = MagicMock()
    return gateway


@pytest.fixture
def notifier():
    return AsyncMock(spec=Notifier)


@pytest.fixture
def telegram():
    gateway = AsyncMock(spec=TelegramGateway)
    gateway.kick_user_by_user_id.return_value = True
    gateway.kick_user.return_value = True
    gateway.bot_link_url.return_value = "https://t.me/libero_bot?start=link_abc"
    return gateway
