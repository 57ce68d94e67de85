"""
Datetime helpers.

Everything stored or compared by the sync engine is a timezone-aware UTC
datetime. Some database drivers (SQLite) hand back naive values even for
``TIMESTAMP(timezone=True)`` columns; ``to_utc`` treats those as UTC.
"""

from datetime import datetime, timezone, timedelta
from email.utils import parsedate_to_datetime
from typing import Optional


def utc_now() -> datetime:
    """Current time in UTC as an aware datetime."""
    return datetime.now(timezone.utc)


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert a datetime to UTC.

    Naive datetimes are assumed to already be in UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def is_expired(dt: Optional[datetime], margin_seconds: int = 0) -> bool:
    """True when ``dt`` is missing or falls within ``margin_seconds`` of now."""
    if dt is None:
        return True
    return to_utc(dt) <= utc_now() + timedelta(seconds=margin_seconds)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as returned by Graph (``...Z`` suffix)."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(value))


def parse_rfc2822(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 2822 ``Date`` header, returning None when unparseable."""
    if not value:
        return None
    try:
        return to_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return None


def from_epoch_millis(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
