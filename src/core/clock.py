"""
Injected clock.

The engine never reads the wall clock itself: callers pass ``now`` in, and
the boundary code that has no ``now`` asks a ``Clock``.  Tests swap in a
``FixedClock`` to freeze time.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Timezone-aware wall clock (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Always returns the same instant."""

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant

    def now(self) -> datetime:
        return self._instant


_clock: Clock = SystemClock()


def get_clock() -> Clock:
    """Return the process-wide clock used at the API boundary."""
    return _clock


def set_clock(clock: Clock) -> Clock:
    """Replace the process-wide clock; returns the previous one."""
    global _clock
    previous = _clock
    _clock = clock
    return previous
