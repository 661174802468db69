"""
Clock -- injectable time source.

Services receive a Clock through their constructor and never call
``datetime.now()`` or ``date.today()`` themselves: audit entry timestamps,
dispensation dates, re-preparation urgency and dispatch note reception
times all come from here.  ``SystemClock`` is the only place that reads
the wall clock.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """``now()`` is timezone-aware UTC; ``today()`` is its calendar date."""

    @abstractmethod
    def now(self) -> datetime: ...

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock for tests and replays.

    Time only moves through ``set_time``, ``advance``, ``advance_days`` or
    ``tick``; repeated ``now()`` calls return the same instant.
    """

    DEFAULT_START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, fixed_time: datetime | None = None):
        self._current = fixed_time or self.DEFAULT_START

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        self._current = time

    def advance(self, seconds: int = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        self._current += timedelta(days=days)

    def tick(self) -> datetime:
        """One second forward; returns the new instant."""
        self.advance(1)
        return self._current
