"""Datetime utilities with consistent UTC timezone handling.

Remote timestamps, mapping sync times and backup timestamps all go through
these helpers so that every datetime in the sync pipeline is timezone-aware.
"""

from datetime import date, datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def today_local() -> date:
    """Return today's calendar date in the local timezone.

    Overdue rendering compares against the user's wall-clock day, not UTC.
    """
    return datetime.now().date()


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a naive datetime; aware values and None pass through."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """ISO 8601 text with an explicit offset, as stored in mapping and backup records."""
    return ensure_aware(dt).isoformat() if dt is not None else None


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp as returned by the remote service.

    Accepts a trailing ``Z`` and returns None for empty or unparseable input.
    """
    if not value:
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        return ensure_aware(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    """Parse a ``YYYY-MM-DD`` date (a datetime string is cut to its date)."""
    if not value:
        return None

    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def timestamp_slug(dt: Optional[datetime] = None) -> str:
    """Filesystem-safe, lexically sortable timestamp used in archive names."""
    dt = ensure_aware(dt) if dt is not None else now_utc()
    return dt.strftime("%Y%m%dT%H%M%S%fZ")
