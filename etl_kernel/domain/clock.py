"""
Clock -- injectable source of wall-clock time.

Trackers stamp ``started_at`` / ``ended_at`` on job and step executions
through a Clock, never through ``datetime.now()`` directly, so execution
history is reproducible under test.  Durations (flush timeouts) are not
wall-clock time and use ``time.monotonic()`` instead.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        ``now()`` returns a timezone-aware UTC ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Production clock (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock starting at a fixed instant.

    With ``step`` set, every ``now()`` call moves the clock forward by that
    amount afterwards, so successive timestamps of one run are strictly
    ordered.  With the default ``step`` of zero the time only changes on
    ``advance()``.
    """

    def __init__(
        self,
        start: datetime | None = None,
        step: timedelta = timedelta(0),
    ):
        self._current = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._step = step

    def now(self) -> datetime:
        current = self._current
        self._current += self._step
        return current

    def advance(self, seconds: float = 1) -> None:
        self._current += timedelta(seconds=seconds)
