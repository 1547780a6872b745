"""
UTC timestamp helpers.

All stored timestamps are UTC. Documents written by the ingestion pipeline may
carry either BSON dates or ISO 8601 strings.
"""
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

from dateutil.parser import parse as parse_datetime

UTC_TZ = ZoneInfo("UTC")


def now_utc() -> datetime:
    """Aware datetime for the current instant in UTC."""
    return datetime.now(UTC_TZ)


def to_utc(dt: datetime) -> datetime:
    """Normalize ``dt`` to an aware UTC datetime."""
    if dt.tzinfo is None:
        # BSON dates come back naive and are UTC
        dt = dt.replace(tzinfo=UTC_TZ)
    return dt.astimezone(UTC_TZ)


def coerce_utc(value: Any) -> Optional[datetime]:
    """Turn a stored timestamp (datetime or ISO string) into an aware UTC datetime.

    Returns None for missing or unparseable values.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, str):
        try:
            return to_utc(parse_datetime(value))
        except (ValueError, OverflowError):
            return None
    return None


def hours_since(value: Any, now: Optional[datetime] = None) -> Optional[float]:
    """Age of a stored timestamp in hours, or None if it can't be read."""
    moment = coerce_utc(value)
    if moment is None:
        return None
    reference = to_utc(now) if now else now_utc()
    return (reference - moment).total_seconds() / 3600.0
