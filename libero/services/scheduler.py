"""Periodic sweeps – hourly expiry and daily renewal reminders.

Both sweeps are safe to run twice over the same window: expiry relies on a
conditional ``ACTIVE -> EXPIRED`` update and reminders are de-duplicated in
Redis. A short Redis lock keeps replicas from sweeping at the same time.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libero.config import settings
from libero.db.engine import async_session
from libero.db.repositories.subscription_repo import SubscriptionRepo
from libero.db.repositories.user_repo import UserRepo
from libero.models.pack import Pack
from libero.models.subscription import Subscription
from libero.models.user import User
from libero.services.notifier import Notifier
from libero.services.telegram import TelegramGateway
from libero.utils.dates import (
    as_utc,
    local_day_window,
    seconds_until_local_time,
    seconds_until_next_hour,
    utcnow,
)
from libero.utils.enums import Language

logger = logging.getLogger(__name__)

EXPIRY_LOCK_KEY = "lock:expiry_sweep"
REMINDER_LOCK_KEY = "lock:reminder_sweep"
SWEEP_LOCK_TTL = 600
REMINDER_DEDUP_TTL = 86_400 * 2

# Delete the lock only while it still holds our token.
_RELEASE_LOCK = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def _acquire_lock(redis: aioredis.Redis, key: str) -> str | None:
    token = uuid.uuid4().hex
    if await redis.set(key, token, ex=SWEEP_LOCK_TTL, nx=True):
        return token
    return None


async def _release_lock(redis: aioredis.Redis, key: str, token: str) -> None:
    if not await redis.eval(_RELEASE_LOCK, 1, key, token):
        logger.warning("Lock %s expired before the sweep finished", key)


@dataclass
class SweepReport:
    examined: int = 0
    changed: int = 0
    failed: int = 0
    skipped: bool = False


# ── Expiry ────────────────────────────────────────────────────────────


class ExpirySweeper:
    def __init__(
        self,
        redis: aioredis.Redis,
        notifier: Notifier,
        telegram: TelegramGateway | None = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._redis = redis
        self._notifier = notifier
        self._telegram = telegram
        self._session_factory = session_factory
        self._clock = clock

    async def run_once(self) -> SweepReport:
        """Expire every ACTIVE row whose period has ended, however long ago."""
        token = await _acquire_lock(self._redis, EXPIRY_LOCK_KEY)
        if token is None:
            logger.info("Expiry sweep already running elsewhere, skipping")
            return SweepReport(skipped=True)
        try:
            now = self._clock()
            async with self._session_factory() as session:
                overdue = await SubscriptionRepo(session).get_overdue(now)

            report = SweepReport(examined=len(overdue))
            for sub, pack, user in overdue:
                try:
                    if await self._expire_one(sub, pack, user, now):
                        report.changed += 1
                except Exception as e:
                    report.failed += 1
                    logger.error("Failed to expire subscription %s: %s", sub.id, e)
        finally:
            await _release_lock(self._redis, EXPIRY_LOCK_KEY, token)

        if report.examined:
            logger.info(
                "Expiry sweep: %d overdue, %d expired, %d failed",
                report.examined,
                report.changed,
                report.failed,
            )
        return report

    async def _expire_one(self, sub: Subscription, pack: Pack, user: User, now: datetime) -> bool:
        async with self._session_factory() as session, session.begin():
            # Serialised with checkout and refund on the same user row
            await UserRepo(session).lock(user.id)
            repo = SubscriptionRepo(session)
            if not await repo.expire_if_active(sub.id, now):
                return False
            others = 0 if pack.is_free else await repo.count_other_active_paid(user.id, now, sub.id)

        logger.info("Subscription %s (%s) of user %s expired", sub.id, pack.name, user.id)
        if pack.is_free:
            return True
        if others:
            logger.info("User %s still has a paid subscription, keeping VIP access", user.id)
            return True

        if self._telegram is not None and user.telegram_user_id:
            await self._telegram.kick_user(
                user.telegram_user_id, Language.of(user.preferred_language)
            )
        await self._notifier.send_subscription_ended(user, pack.name)
        return True


# ── Reminders ─────────────────────────────────────────────────────────


class ReminderSender:
    def __init__(
        self,
        redis: aioredis.Redis,
        notifier: Notifier,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        clock: Callable[[], datetime] = utcnow,
        tz: str | None = None,
    ) -> None:
        self._redis = redis
        self._notifier = notifier
        self._session_factory = session_factory
        self._clock = clock
        self._tz = ZoneInfo(tz or settings.TIMEZONE)

    async def run_once(self) -> SweepReport:
        """Remind owners of paid subscriptions ending N local days from today."""
        start, end = local_day_window(self._clock(), self._tz, settings.REMINDER_DAYS_BEFORE)
        token = await _acquire_lock(self._redis, REMINDER_LOCK_KEY)
        if token is None:
            logger.info("Reminder sweep already running elsewhere, skipping")
            return SweepReport(skipped=True)
        try:
            async with self._session_factory() as session:
                due = await SubscriptionRepo(session).get_ending_between(start, end)

            report = SweepReport(examined=len(due))
            for sub, pack, user in due:
                dedup_key = f"renewal_remind:{sub.id}"
                try:
                    if not await self._redis.set(dedup_key, "1", ex=REMINDER_DEDUP_TTL, nx=True):
                        continue
                    await self._notifier.send_renewal_reminder(
                        user, pack.name, as_utc(sub.current_period_end).astimezone(self._tz)
                    )
                    report.changed += 1
                except Exception as e:
                    report.failed += 1
                    logger.error("Reminder for subscription %s failed: %s", sub.id, e)
        finally:
            await _release_lock(self._redis, REMINDER_LOCK_KEY, token)

        logger.info(
            "Reminder sweep %s..%s: %d due, %d sent", start, end, report.examined, report.changed
        )
        return report


# ── Background tasks ──────────────────────────────────────────────────


class PeriodicTask:
    """Run *job* forever, sleeping ``delay(now)`` seconds before each run."""

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        delay: Callable[[datetime], float],
    ) -> None:
        self._name = name
        self._job = job
        self._delay = delay
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self._name)
        logger.info("%s task started.", self._name)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("%s task stopped.", self._name)

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._delay(utcnow()))
            try:
                await self._job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("%s error: %s", self._name, e)


def expiry_task(sweeper: ExpirySweeper) -> PeriodicTask:
    """Hourly, at the top of the hour."""
    return PeriodicTask("expiry-sweep", sweeper.run_once, seconds_until_next_hour)


def reminder_task(sender: ReminderSender) -> PeriodicTask:
    """Daily at ``REMINDER_HOUR`` local time."""
    tz = ZoneInfo(settings.TIMEZONE)
    return PeriodicTask(
        "renewal-reminder",
        sender.run_once,
        lambda now: seconds_until_local_time(now, tz, settings.REMINDER_HOUR),
    )
