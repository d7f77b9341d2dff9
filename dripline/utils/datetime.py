"""Datetime utilities for timezone-aware UTC timestamps."""
from __future__ import annotations

from datetime import UTC, date, datetime

import pytz


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def local_date(value: datetime, timezone: str) -> date:
    """Calendar date of ``value`` as seen in ``timezone``."""
    return ensure_utc(value).astimezone(pytz.timezone(timezone)).date()


def at_local_hour(value: datetime, hour: int, timezone: str) -> datetime:
    """Move ``value`` to ``hour``:00 on the same local day in ``timezone``."""
    tz = pytz.timezone(timezone)
    local = ensure_utc(value).astimezone(tz)
    naive = datetime(local.year, local.month, local.day, hour)
    return tz.localize(naive).astimezone(UTC)


def local_hour(value: datetime, timezone: str) -> int:
    return ensure_utc(value).astimezone(pytz.timezone(timezone)).hour


