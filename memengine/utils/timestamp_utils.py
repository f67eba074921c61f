"""
Timestamp utilities for consistent time handling across the engine.

All stored timestamps are timezone-aware UTC datetimes, serialized as ISO-8601 strings.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to an ISO-8601 string.

    Args:
        value: Datetime to serialize (naive values are treated as UTC)

    Returns:
        ISO-8601 string, or None when value is None
    """
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a host-supplied timestamp into an aware datetime.

    Accepts datetimes, ISO-8601 strings (a trailing 'Z' or a space separator is fine)
    and unix timestamps in seconds. Offsets present in the input are preserved so
    that local-hour bucketing sees the user's wall clock.

    Args:
        value: Timestamp in any supported representation

    Returns:
        Aware datetime, or None when the value is empty or unparseable
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    return None


def days_between(earlier: datetime, later: datetime) -> float:
    """Return the fractional number of days from earlier to later."""
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / 86400.0
