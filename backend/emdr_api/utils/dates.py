"""Date/time helpers shared by models and services.

All persisted timestamps are naive UTC. Incoming aware datetimes are
converted with `to_utc_naive` before they are compared or stored.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return the current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def week_start(value: datetime) -> date:
    """Return the Monday of the ISO week containing `value`."""
    d = value.date() if isinstance(value, datetime) else value
    return d - timedelta(days=d.weekday())


def parse_hhmm(text: str) -> int:
    """Parse `HH:MM` into minutes after midnight, raising ValueError on bad input."""
    if not isinstance(text, str) or ":" not in text:
        raise ValueError(f"invalid time of day: {text!r}")
    hours_s, minutes_s = text.split(":", 1)
    hours, minutes = int(hours_s), int(minutes_s)
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"invalid time of day: {text!r}")
    return hours * 60 + minutes


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize a naive-UTC timestamp with an explicit `Z` suffix."""
    if value is None:
        return None
    return value.isoformat() + "Z"
