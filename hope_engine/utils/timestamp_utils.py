"""
Timestamp utilities for consistent time handling across the engine.
"""

from datetime import datetime, timezone
from typing import Optional

SECONDS_PER_WEEK = 7 * 24 * 3600
SECONDS_PER_DAY = 24 * 3600


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes so they compare with aware ones.

    Args:
        value: datetime, naive or aware

    Returns:
        Aware datetime, or None if value is None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def weeks_between(earlier: Optional[datetime], later: datetime) -> float:
    """Number of weeks elapsed from earlier to later.

    A missing earlier timestamp counts as "just now", i.e. zero weeks.
    """
    if earlier is None:
        return 0.0
    delta = ensure_utc(later) - ensure_utc(earlier)
    return delta.total_seconds() / SECONDS_PER_WEEK


def days_between(earlier: Optional[datetime], later: datetime) -> float:
    """Number of days elapsed from earlier to later."""
    if earlier is None:
        return 0.0
    delta = ensure_utc(later) - ensure_utc(earlier)
    return delta.total_seconds() / SECONDS_PER_DAY


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for JSON payloads."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp produced by to_iso (or a store)."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))
