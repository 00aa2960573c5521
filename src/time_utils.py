"""Clock abstraction and UTC helpers.

Timestamps are stored as UTC. Naive values read back from the database are
treated as UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current time."""

    def now(self) -> datetime:
        """Return the current timezone-aware UTC time."""
        ...


class SystemClock:
    """Clock backed by the system wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock pinned to an explicit instant, advanced manually."""

    def __init__(self, value: datetime) -> None:
        self._value = to_utc(value)

    def now(self) -> datetime:
        return self._value

    def set(self, value: datetime) -> None:
        """Move the clock to a new instant."""
        self._value = to_utc(value)

    def advance(self, **delta: float) -> datetime:
        """Advance the clock by a ``timedelta``-style keyword delta."""
        self._value = self._value + timedelta(**delta)
        return self._value


def to_utc(value: datetime) -> datetime:
    """Convert a datetime to aware UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def optional_utc(value: datetime | None) -> datetime | None:
    """Return ``to_utc(value)`` or ``None``."""
    if value is None:
        return None
    return to_utc(value)


def utc_now() -> datetime:
    """Return the current time as aware UTC."""
    return datetime.now(timezone.utc)
