"""Timestamp helpers shared by the normalizer, the store and the fetcher."""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a remote timestamp into an aware UTC datetime.

    Accepts datetimes and ISO-8601 strings with a ``Z`` suffix, an explicit
    offset, or no zone at all (read as UTC). Returns None for anything that
    does not parse.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)

    text = str(value).strip()
    if not text:
        return None

    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except (ValueError, TypeError):
        return None

    return ensure_utc(parsed)


def to_remote_comparable(value: datetime) -> str:
    """Format a datetime the way the records endpoint compares it.

    UTC, second precision, no zone suffix: ``2024-05-01T13:45:00``.
    """
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S")


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    """ISO string for an optional datetime."""
    value = ensure_utc(value)
    return value.isoformat() if value else None
