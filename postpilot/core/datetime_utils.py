"""Centralized datetime utilities for consistent timezone handling.

All functions return naive datetimes for database compatibility
(SQLAlchemy models use naive UTC).

Usage:
    from postpilot.core.datetime_utils import utc_now, to_naive_utc

    now = utc_now()
    record.finished_at = now
"""

from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    """Get current UTC time as naive datetime.

    Returns naive datetime for database compatibility.
    Replaces deprecated datetime.utcnow().
    """
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Convert a datetime to naive UTC.

    Args:
        dt: Datetime to convert (can be aware or naive)

    Returns:
        Naive UTC datetime for database compatibility
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    # Convert to UTC and strip timezone
    return dt.astimezone(UTC).replace(tzinfo=None)


def to_aware_utc(dt: datetime) -> datetime:
    """Attach the UTC timezone to a naive UTC datetime.

    Args:
        dt: Naive UTC or aware datetime

    Returns:
        Aware datetime in UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def elapsed_ms(started_at: datetime, finished_at: datetime) -> int:
    """Milliseconds between two naive UTC timestamps, never negative."""
    delta: timedelta = finished_at - started_at
    return max(int(delta.total_seconds() * 1000), 0)
