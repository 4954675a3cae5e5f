"""Tests for the expiry sweep, renewal reminders and the periodic task loop."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from libero.db.repositories.user_repo import UserRepo
from libero.models.subscription import Subscription
from libero.services.scheduler import (
    EXPIRY_LOCK_KEY,
    ExpirySweeper,
    PeriodicTask,
    ReminderSender,
)
from libero.utils.enums import Language, SubscriptionStatus

from conftest import NOW


@pytest.fixture
def sweeper(fake_redis, notifier, telegram, session_factory, clock):
    return ExpirySweeper(fake_redis, notifier, telegram, session_factory, clock)


async def _status(session_factory, sub_id: str) -> str:
    async with session_factory() as session:
        return (await session.get(Subscription, sub_id)).status


# ── Expiry ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_expired_subscription_loses_access(seed, sweeper, telegram, notifier, session_factory):
    user = await seed.user(telegram_user_id=4242, language="el")
    gold = await seed.pack("Gold", price="30")
    sub = await seed.subscription(user, gold, start=NOW - timedelta(days=31), end=NOW - timedelta(hours=1))

    report = await sweeper.run_once()

    assert report.examined == 1
    assert report.changed == 1
    assert await _status(session_factory, sub.id) == SubscriptionStatus.EXPIRED.value
    telegram.kick_user.assert_awaited_once_with(4242, Language.EL)
    notifier.send_subscription_ended.assert_awaited_once()


@pytest.mark.asyncio
async def test_long_overdue_rows_are_caught_up(seed, sweeper, session_factory):
    """A sweep that missed days still expires everything that lapsed."""
    user = await seed.user()
    gold = await seed.pack("Gold", price="30")
    sub = await seed.subscription(user, gold, start=NOW - timedelta(days=90), end=NOW - timedelta(days=60))

    await sweeper.run_once()

    assert await _status(session_factory, sub.id) == SubscriptionStatus.EXPIRED.value


@pytest.mark.asyncio
async def test_other_paid_subscription_keeps_access(seed, sweeper, telegram, notifier):
    user = await seed.user(telegram_user_id=4242)
    silver = await seed.pack("Silver", price="20")
    gold = await seed.pack("Gold", price="30")
    await seed.subscription(user, silver, start=NOW - timedelta(days=31), end=NOW - timedelta(hours=1))
    await seed.subscription(user, gold)

    report = await sweeper.run_once()

    assert report.changed == 1
    telegram.kick_user.assert_not_awaited()
    notifier.send_subscription_ended.assert_not_awaited()


@pytest.mark.asyncio
async def test_future_and_terminal_rows_are_untouched(seed, sweeper, session_factory):
    user = await seed.user()
    gold = await seed.pack("Gold", price="30")
    live = await seed.subscription(user, gold)
    done = await seed.subscription(
        user, gold, end=NOW - timedelta(days=1), status=SubscriptionStatus.CANCELLED
    )

    report = await sweeper.run_once()

    assert report.examined == 0
    assert await _status(session_factory, live.id) == "ACTIVE"
    assert await _status(session_factory, done.id) == "CANCELLED"


@pytest.mark.asyncio
async def test_second_sweep_is_a_no_op(seed, sweeper, notifier):
    user = await seed.user()
    gold = await seed.pack("Gold", price="30")
    await seed.subscription(user, gold, start=NOW - timedelta(days=31), end=NOW - timedelta(hours=1))

    await sweeper.run_once()
    again = await sweeper.run_once()

    assert again.examined == 0
    notifier.send_subscription_ended.assert_awaited_once()


@pytest.mark.asyncio
async def test_sweep_skips_while_locked(sweeper, fake_redis):
    await fake_redis.set(EXPIRY_LOCK_KEY, "1")
    report = await sweeper.run_once()
    assert report.skipped is True


@pytest.mark.asyncio
async def test_sweep_releases_lock(seed, sweeper, fake_redis):
    await sweeper.run_once()
    assert EXPIRY_LOCK_KEY not in fake_redis._store



@pytest.mark.asyncio
async def test_sweep_leaves_lock_taken_over_by_another_replica(seed, sweeper, fake_redis, telegram):
    user = await seed.user(telegram_user_id=4242)
    gold = await seed.pack("Gold", price="30")
    await seed.subscription(user, gold, start=NOW - timedelta(days=31), end=NOW - timedelta(hours=1))

    async def _lock_expires_meanwhile(*args):
        fake_redis._store[EXPIRY_LOCK_KEY] = "other-replica"
        return True

    telegram.kick_user.side_effect = _lock_expires_meanwhile

    await sweeper.run_once()

    assert fake_redis._store[EXPIRY_LOCK_KEY] == "other-replica"


@pytest.mark.asyncio
async def test_expiry_locks_the_user_row(seed, sweeper, monkeypatch):
    user = await seed.user()
    gold = await seed.pack("Gold", price="30")
    await seed.subscription(user, gold, start=NOW - timedelta(days=31), end=NOW - timedelta(hours=1))
    locked = []
    original = UserRepo.lock

    async def _recording_lock(self, user_id):
        locked.append(user_id)
        return await original(self, user_id)

    monkeypatch.setattr(UserRepo, "lock", _recording_lock)

    await sweeper.run_once()

    assert locked == [user.id]


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_sweep(seed, sweeper, telegram, notifier):
    first = await seed.user(email="a@example.com", telegram_user_id=1)
    second = await seed.user(email="b@example.com", telegram_user_id=2)
    gold = await seed.pack("Gold", price="30")
    for user in (first, second):
        await seed.subscription(user, gold, start=NOW - timedelta(days=31), end=NOW - timedelta(hours=1))
    notifier.send_subscription_ended.side_effect = [RuntimeError("smtp down"), None]

    report = await sweeper.run_once()

    assert report.changed == 1
    assert report.failed == 1
    assert telegram.kick_user.await_count == 2


# ── Reminders ─────────────────────────────────────────────────────────


@pytest.fixture
def reminders(fake_redis, notifier, session_factory, clock):
    return ReminderSender(fake_redis, notifier, session_factory, clock, tz="Europe/Athens")


@pytest.mark.asyncio
async def test_reminder_for_subscription_ending_in_three_days(seed, reminders, notifier):
    user = await seed.user()
    gold = await seed.pack("Gold", price="30")
    await seed.subscription(user, gold, start=NOW - timedelta(days=27), end=NOW + timedelta(days=3))

    report = await reminders.run_once()

    assert report.changed == 1
    _, pack_name, period_end = notifier.send_renewal_reminder.call_args.args
    assert pack_name == "Gold"
    assert period_end.utcoffset() == timedelta(hours=2)


@pytest.mark.asyncio
async def test_reminder_is_sent_once(seed, reminders, notifier, fake_redis):
    user = await seed.user()
    gold = await seed.pack("Gold", price="30")
    await seed.subscription(user, gold, start=NOW - timedelta(days=27), end=NOW + timedelta(days=3))

    await reminders.run_once()
    await reminders.run_once()

    notifier.send_renewal_reminder.assert_awaited_once()


@pytest.mark.asyncio
async def test_reminder_ignores_other_days_and_free_packs(seed, reminders, notifier):
    user = await seed.user()
    gold = await seed.pack("Gold", price="30")
    free = await seed.pack("Free", is_free=True)
    await seed.subscription(user, gold, end=NOW + timedelta(days=5))
    await seed.subscription(user, free, end=NOW + timedelta(days=3))

    report = await reminders.run_once()

    assert report.examined == 0
    notifier.send_renewal_reminder.assert_not_awaited()


@pytest.mark.asyncio
async def test_reminder_uses_local_day_boundary(seed, reminders, notifier, clock):
    """23:30 UTC on the 15th is already the 16th in Athens."""
    clock.now = datetime(2026, 3, 15, 23, 30, tzinfo=timezone.utc)
    user = await seed.user()
    gold = await seed.pack("Gold", price="30")
    # 19th 10:00 Athens: three local days from the 16th
    await seed.subscription(user, gold, end=datetime(2026, 3, 19, 8, 0, tzinfo=timezone.utc))

    report = await reminders.run_once()

    assert report.changed == 1


# ── PeriodicTask ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_periodic_task_survives_job_errors():
    calls = 0
    done = asyncio.Event()

    async def job():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")
        done.set()

    task = PeriodicTask("test", job, lambda now: 0)
    await task.start()
    await asyncio.wait_for(done.wait(), timeout=1)
    await task.stop()

    assert calls >= 2


@pytest.mark.asyncio
async def test_periodic_task_stop_before_first_run():
    job = AsyncMock()
    task = PeriodicTask("test", job, lambda now: 3600)
    await task.start()
    await task.stop()
    job.assert_not_awaited()
