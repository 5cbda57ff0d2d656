"""
core/clock.py -- Wall-clock helpers shared by every layer.

All timestamps in AuthGate are timezone-aware UTC datetimes in memory and
ISO-8601 strings (always with microseconds) at rest. Fixed-width strings
compare lexically in the same order as the instants they encode, which is
what lets the store filter on expiry columns with plain string comparison.

Services accept a `clock` callable so tests can move time past lockout and
expiry windows without sleeping.
"""

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a fixed-width UTC ISO-8601 string (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
