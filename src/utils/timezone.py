"""
Timestamp helpers.

SQLite returns naive datetimes for DateTime(timezone=True) columns while
PostgreSQL returns aware ones; everything the pipeline compares goes
through ensure_utc first.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string or epoch seconds into an aware UTC datetime.
    Returns None for missing or unparseable values.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        try:
            return datetime.fromtimestamp(raw, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(raw, str):
        try:
            return ensure_utc(date_parser.isoparse(raw))
        except (ValueError, OverflowError):
            return None
    return None
