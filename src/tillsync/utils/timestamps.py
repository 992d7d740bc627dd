"""
Timestamp helpers.

All timestamps inside tillsync are timezone-aware UTC datetimes. They are
persisted as ISO-8601 text and exchanged with the backend in the same
format (``Z`` suffix accepted on input).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime for storage, or pass None through."""
    if value is None:
        return None
    return ensure_aware(value).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a stored or remote timestamp.

    Accepts datetimes, ISO-8601 strings (including a trailing ``Z``) and
    epoch milliseconds as sent by JavaScript clients.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_aware(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported timestamp value: {value!r}")
