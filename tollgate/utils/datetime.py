"""Datetime helpers.

Timestamps are stored as naive UTC datetimes; these helpers keep every
caller on that convention without using deprecated ``datetime.utcnow()``.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def parse_timestamp(value: object) -> datetime | None:
    """Parse a stored expiry into naive UTC.

    Accepts datetimes and ISO-8601 strings (a trailing ``Z`` included).
    Returns None for anything missing or unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return as_naive_utc(parsed)
    return None


def expires_after(seconds: float, *, now: datetime | None = None) -> datetime:
    """Absolute expiry for a relative ``expires_in`` value."""
    return (now or utcnow()) + timedelta(seconds=seconds)
