"""
Chat Sync Core - Timestamp Utilities
Centralized timestamp handling for consistent message ordering

All timestamps inside the core are timezone-aware UTC.
"""

from datetime import datetime, timezone
from typing import Optional, Union

TimestampLike = Union[datetime, str, int, float, None]


def utcnow() -> datetime:
    """
    Get current UTC time consistently.

    Returns:
        Timezone-aware UTC datetime
    """
    return datetime.now(timezone.utc)


def parse_timestamp(ts: TimestampLike) -> Optional[datetime]:
    """
    Convert a provider timestamp to an aware UTC datetime.

    Accepts datetimes (naive ones are assumed UTC), ISO strings with or
    without a 'Z' suffix, "YYYY-MM-DD HH:MM:SS" strings and epoch numbers
    in seconds or milliseconds.

    Returns:
        Aware UTC datetime, or None when the value cannot be parsed
    """
    if ts is None or isinstance(ts, bool):
        return None

    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            return ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc)

    if isinstance(ts, (int, float)):
        seconds = ts / 1000.0 if ts > 1e11 else float(ts)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(ts, str):
        value = ts.strip()
        if not value:
            return None
        if value.isdigit():
            return parse_timestamp(int(value))
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
        return parse_timestamp(parsed)

    return None


def normalize_timestamp(ts: TimestampLike) -> datetime:
    """Like parse_timestamp, falling back to now for missing or garbled values"""
    parsed = parse_timestamp(ts)
    return parsed if parsed is not None else utcnow()


def to_utc_iso(dt: Optional[datetime]) -> Optional[str]:
    """
    Convert datetime to UTC ISO format string.

    Args:
        dt: datetime object (naive or aware)

    Returns:
        ISO format string with UTC timezone, or None if input is None
    """
    if dt is None:
        return None

    # If naive, assume UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc).isoformat().replace('+00:00', 'Z')

    return dt.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def millis_between(a: datetime, b: datetime) -> float:
    """Absolute distance between two datetimes in milliseconds"""
    return abs((a - b).total_seconds()) * 1000.0
