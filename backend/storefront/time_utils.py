from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional


# Anything that returns "now" as a UTC-naive datetime. Services take one of
# these instead of calling utcnow() directly so tests can pin the date.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize to UTC-naive. Naive input is taken to be UTC already.

    Postgres hands back aware datetimes for timestamptz columns, SQLite
    naive ones; discount windows compare against a naive clock either way.
    """
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def fixed_clock(moment: datetime) -> Clock:
    """Clock that always reports `moment`."""
    pinned = as_utc_naive(moment)
    return lambda: pinned


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z', second precision.
    """
    naive = as_utc_naive(dt)
    if naive is None:
        return None
    return naive.replace(microsecond=0).isoformat() + "Z"
