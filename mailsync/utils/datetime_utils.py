"""
Datetime utility functions for consistent timezone handling.

All functions return timezone-aware datetime objects in UTC. Naive datetimes
coming from mail headers or the database are assumed to already be UTC.

Examples:
    >>> from mailsync.utils.datetime_utils import utc_now, subtract_months
    >>> cutoff = subtract_months(utc_now(), 3)
"""

import calendar
from datetime import datetime, timezone, timedelta
from typing import Optional

# IMAP requires English month names regardless of locale
_IMAP_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def utc_now() -> datetime:
    """
    Get current UTC time as a timezone-aware datetime object.

    This is the preferred way to get the current time in the application.
    It replaces the deprecated datetime.utcnow() which returns a naive datetime.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC timezone.

    Notes:
        - If dt is naive (no timezone), it's assumed to be UTC
        - If dt has a timezone, it's converted to UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def optional_utc(dt: Optional[datetime]) -> Optional[datetime]:
    return to_utc(dt) if dt is not None else None


def subtract_months(dt: datetime, months: int) -> datetime:
    """
    Move a datetime back by calendar months, clamping the day of month.

    Args:
        dt: Base datetime.
        months: Number of calendar months to subtract (non-negative).

    Returns:
        datetime: Same time of day, ``months`` months earlier.

    Examples:
        >>> subtract_months(datetime(2025, 5, 31, tzinfo=timezone.utc), 3)
        datetime.datetime(2025, 2, 28, 0, 0, tzinfo=datetime.timezone.utc)
    """
    if months < 0:
        raise ValueError("months must be non-negative")

    total = dt.year * 12 + (dt.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def imap_date(dt: datetime) -> str:
    """Format a date for IMAP SEARCH criteria (RFC 3501 ``date`` production, e.g. 01-Feb-2025)."""
    dt = to_utc(dt)
    return f"{dt.day:02d}-{_IMAP_MONTHS[dt.month - 1]}-{dt.year}"


def timedelta_seconds(start: datetime, end: Optional[datetime] = None) -> float:
    """Time difference in seconds between two datetimes (end defaults to now)."""
    if end is None:
        end = utc_now()
    return (to_utc(end) - to_utc(start)).total_seconds()


def add_seconds(dt: datetime, seconds: float) -> datetime:
    return dt + timedelta(seconds=seconds)
