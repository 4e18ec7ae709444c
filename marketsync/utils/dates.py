"""Datetime helpers.

All timestamps persisted by the engine are naive UTC datetimes.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pendulum

DEFAULT_TZ = "UTC"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a provider ISO-8601 timestamp into naive UTC."""
    if not value:
        return None
    try:
        parsed = pendulum.parse(value)
    except ValueError:
        return None
    if not isinstance(parsed, pendulum.DateTime):
        return None
    parsed = parsed.in_timezone("UTC")
    return datetime(
        parsed.year,
        parsed.month,
        parsed.day,
        parsed.hour,
        parsed.minute,
        parsed.second,
        parsed.microsecond,
    )


def hours(value: float) -> timedelta:
    return timedelta(hours=value)


def ttl_from_env() -> timedelta:
    return hours(float(os.environ.get("MARKET_DATA_TTL_HOURS", "24")))
