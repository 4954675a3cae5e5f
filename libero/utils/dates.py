"""Date helpers – UTC normalisation and calendar-month arithmetic."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone, tzinfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by some drivers) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int = 1) -> datetime:
    """Add calendar months, clamping to the last day of the target month.

    Jan 31 + 1 month is Feb 28 (or Feb 29 in a leap year), never March.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def from_epoch(seconds: int | float | None) -> datetime | None:
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def local_day_window(
    now: datetime, tz: tzinfo, days_ahead: int
) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` UTC bounds of the local day *days_ahead* from *now*."""
    local_today = as_utc(now).astimezone(tz).date()
    first = local_today + timedelta(days=days_ahead)
    after = first + timedelta(days=1)
    start = datetime(first.year, first.month, first.day, tzinfo=tz)
    end = datetime(after.year, after.month, after.day, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def seconds_until_next_hour(now: datetime) -> float:
    """Seconds until minute 0 of the next hour."""
    next_hour = as_utc(now).replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return (next_hour - as_utc(now)).total_seconds()


def seconds_until_local_time(now: datetime, tz: tzinfo, hour: int) -> float:
    """Seconds until the next occurrence of ``hour:00`` in *tz*."""
    local_now = as_utc(now).astimezone(tz)
    target = local_now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= local_now:
        target = target + timedelta(days=1)
    return (target - local_now).total_seconds()
