"""Tests for date helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from libero.utils.dates import (
    add_months,
    as_utc,
    from_epoch,
    local_day_window,
    seconds_until_local_time,
    seconds_until_next_hour,
)

ATHENS = ZoneInfo("Europe/Athens")


# ── add_months ────────────────────────────────────────────────────────


def test_add_months_plain():
    start = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
    assert add_months(start) == datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)


def test_add_months_clamps_to_end_of_february():
    assert add_months(datetime(2026, 1, 31)) == datetime(2026, 2, 28)


def test_add_months_leap_year():
    assert add_months(datetime(2028, 1, 31)) == datetime(2028, 2, 29)


def test_add_months_rolls_over_year():
    assert add_months(datetime(2026, 12, 10)) == datetime(2027, 1, 10)


def test_add_months_multiple():
    assert add_months(datetime(2026, 8, 31), 6) == datetime(2027, 2, 28)


# ── as_utc / from_epoch ───────────────────────────────────────────────


def test_as_utc_naive_is_treated_as_utc():
    naive = datetime(2026, 5, 1, 8, 30)
    assert as_utc(naive) == datetime(2026, 5, 1, 8, 30, tzinfo=timezone.utc)


def test_as_utc_converts_other_zones():
    local = datetime(2026, 5, 1, 11, 30, tzinfo=ATHENS)  # UTC+3 in summer
    assert as_utc(local) == datetime(2026, 5, 1, 8, 30, tzinfo=timezone.utc)


def test_from_epoch():
    assert from_epoch(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert from_epoch(None) is None


# ── Scheduling windows ────────────────────────────────────────────────


def test_local_day_window_uses_local_calendar_day():
    """23:30 UTC is already the next day in Athens."""
    now = datetime(2026, 1, 10, 23, 30, tzinfo=timezone.utc)
    start, end = local_day_window(now, ATHENS, 3)
    # Local today is Jan 11; target day is Jan 14 (UTC+2 in winter)
    assert start == datetime(2026, 1, 13, 22, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 1, 14, 22, 0, tzinfo=timezone.utc)


def test_local_day_window_across_dst_change():
    """The window is 23h long on the day clocks go forward."""
    now = datetime(2026, 3, 26, 10, 0, tzinfo=timezone.utc)
    start, end = local_day_window(now, ATHENS, 3)
    assert (end - start).total_seconds() == 23 * 3600


def test_seconds_until_next_hour():
    now = datetime(2026, 1, 1, 10, 59, 30, tzinfo=timezone.utc)
    assert seconds_until_next_hour(now) == 30


def test_seconds_until_local_time_later_today():
    now = datetime(2026, 1, 1, 5, 0, tzinfo=timezone.utc)  # 07:00 Athens
    assert seconds_until_local_time(now, ATHENS, 9) == 2 * 3600


def test_seconds_until_local_time_tomorrow():
    now = datetime(2026, 1, 1, 7, 0, tzinfo=timezone.utc)  # 09:00 Athens, already due
    assert seconds_until_local_time(now, ATHENS, 9) == 24 * 3600
