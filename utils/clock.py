"""
Time source for the subscription logic.

Everything that needs "now" takes a Clock so tests can pin the instant.
All instants are timezone-aware UTC; naive values coming back from SQLite
are treated as UTC.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return value as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Clock:
    """System clock."""

    def now(self) -> datetime:
        return utc_now()


class FixedClock(Clock):
    """Clock pinned to a given instant; advance() moves it forward."""

    def __init__(self, instant: datetime):
        self._instant = as_utc(instant)

    def now(self) -> datetime:
        return self._instant

    def advance(self, delta: timedelta) -> datetime:
        self._instant = self._instant + delta
        return self._instant


_system_clock = Clock()


def get_clock() -> Clock:
    """FastAPI dependency returning the process clock."""
    return _system_clock
