"""
ISO-8601 timestamp helpers.

Persisted timestamps are UTC text with millisecond precision and a ``Z``
suffix (``2024-05-01T12:30:00.000Z``). Mappers rely on to_iso(from_iso(s))
returning ``s`` unchanged for text in that form.
"""

from __future__ import annotations

from datetime import datetime, timezone


def now_iso() -> str:
    """Current UTC time as ISO-8601 text."""
    return to_iso(datetime.now(timezone.utc))


def to_iso(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC text.

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def from_iso(text: str) -> datetime:
    """Parse ISO-8601 text into an aware datetime."""
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
