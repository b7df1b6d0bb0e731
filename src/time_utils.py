"""Time helpers for UTC storage and calendar arithmetic."""

from __future__ import annotations

import calendar
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int, day_of_month: int | None = None) -> datetime:
    """Shift a datetime by whole months, clamping the day to the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    target_day = day_of_month or value.day
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(target_day, last_day))


def add_years(value: datetime, years: int) -> datetime:
    """Shift a datetime by whole years; Feb 29 clamps to Feb 28."""
    year = value.year + years
    last_day = calendar.monthrange(year, value.month)[1]
    return value.replace(year=year, day=min(value.day, last_day))
