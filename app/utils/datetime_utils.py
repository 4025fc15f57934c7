"""
Timezone-aware datetime utilities.

All datetime operations should use these helpers to ensure consistent
timezone handling across the codebase.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Union

Timestamp = Optional[Union[str, int, float, datetime]]


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def parse_db_timestamp(value: Timestamp) -> Optional[datetime]:
    """
    Parse timestamp from database, ensuring timezone-aware UTC.

    Handles:
    - ISO format strings with Z suffix
    - ISO format strings with +00:00 offset
    - Epoch milliseconds (as stored by some OAuth providers)
    - Naive datetimes (assumed UTC)
    - Already timezone-aware datetimes

    Returns:
        Timezone-aware datetime in UTC, or None if input is None/empty/invalid
    """
    if value is None:
        return None

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)

    if isinstance(value, str):
        if not value:
            return None
        value = value.replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
    elif isinstance(value, datetime):
        dt = value
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def is_past(timestamp: Timestamp) -> bool:
    """
    True if the timestamp is in the past. None means "never expires".
    """
    dt = parse_db_timestamp(timestamp)
    if dt is None:
        return False
    return utc_now() > dt


def expires_within(timestamp: Timestamp, buffer_seconds: int) -> bool:
    """
    Check if timestamp falls within the next buffer_seconds (or has passed).

    An unknown/unparseable expiry counts as expiring so callers refresh.
    """
    dt = parse_db_timestamp(timestamp)
    if dt is None:
        return True
    return utc_now() > dt - timedelta(seconds=buffer_seconds)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for the database (ISO 8601, UTC)."""
    if dt is None:
        return None
    return parse_db_timestamp(dt).isoformat()


def format_display(value: Timestamp, fmt: str = "%Y-%m-%d %H:%M:%S UTC") -> str:
    """Format a timestamp for humans (PDF pages, emails). Empty string if invalid."""
    dt = parse_db_timestamp(value)
    if dt is None:
        return ""
    return dt.strftime(fmt)
