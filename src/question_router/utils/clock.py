"""Time sources for the scheduler and reconciler."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Anything that can tell the current UTC time."""

    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock:
    """A clock that only moves when told to.

    Example:
        clock = ManualClock(datetime(2024, 1, 1, 9, 0, tzinfo=UTC))
        clock.advance(minutes=2)
    """

    def __init__(self, start: datetime | None = None) -> None:
        current = start or datetime(2024, 1, 1, tzinfo=UTC)
        if current.tzinfo is None:
            raise ValueError("ManualClock requires a timezone-aware start time")
        self._now = current

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            raise ValueError("ManualClock requires timezone-aware datetimes")
        self._now = value

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        """Move the clock forward and return the new time.

        Accepts either a timedelta or timedelta keyword arguments.
        """
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        self._now += step
        return self._now
