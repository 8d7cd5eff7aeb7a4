"""
Clock helpers.

All persisted timestamps are timezone-aware. Naive datetimes handed to the
rule evaluator or tier state machine are read as venue-local wall time.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return as_utc(dt).isoformat()


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Accepts a datetime, an ISO-8601 string (with or without a trailing Z),
    or None. Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def venue_clock(now: datetime, tz_name: str) -> datetime:
    """
    Returns `now` as an aware datetime in the venue's timezone.
    """
    tz = ZoneInfo(tz_name)
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now.astimezone(tz)
