from __future__ import annotations

import calendar as cal
import os
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterator
from zoneinfo import ZoneInfo


def _configured_tz() -> tzinfo:
    """Return the timezone used to decide which calendar day it is."""
    tz_name = os.getenv("WG_TZ")
    if tz_name:
        return ZoneInfo(tz_name)
    return timezone.utc


def get_now() -> datetime:
    """Return the current time in the configured timezone.

    Uses the ``WG_TZ`` environment variable if set, otherwise UTC.
    """
    return datetime.now(_configured_tz())


def get_today() -> date:
    return get_now().date()


def ensure_tz(dt: datetime | None) -> datetime | None:
    """Ensure ``dt`` is timezone-aware.

    SQLite hands back naive datetimes; everything is written in UTC so a
    naive value is interpreted as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_utc(dt: datetime | None) -> datetime | None:
    """Convert ``dt`` to UTC for storage."""
    if dt is None:
        return None
    return ensure_tz(dt).astimezone(timezone.utc)


def local_date(dt: datetime) -> date:
    """Return the calendar day ``dt`` falls on in the configured timezone."""
    return ensure_tz(dt).astimezone(_configured_tz()).date()


def parse_date(value: str) -> date:
    """Parse an ISO calendar date (``YYYY-MM-DD``)."""
    return date.fromisoformat(value.strip())


def add_months(d: date, months: int) -> date:
    """Add ``months`` to ``d``, clamping the day to the target month's length."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, cal.monthrange(year, month)[1])
    return d.replace(year=year, month=month, day=day)


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every calendar day from ``start`` to ``end`` inclusive."""
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)
