"""
Clock collaborators.

Every time-dependent component receives a ``Clock`` instead of calling
``datetime.now()`` directly, so tests can pin day boundaries and cooldowns.
"""

import datetime
import threading
from abc import ABC, abstractmethod
from typing import Optional


class Clock(ABC):
    """Source of the current time."""

    @abstractmethod
    def now(self) -> datetime.datetime:
        """Return the current local time."""
        pass

    def today(self) -> datetime.date:
        """Return the current calendar day."""
        return self.now().date()

    def timestamp(self) -> float:
        """Return the current time as epoch seconds."""
        return self.now().timestamp()


class SystemClock(Clock):
    """Wall clock."""

    def now(self) -> datetime.datetime:
        return datetime.datetime.now()


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Thread-safe, so it can drive concurrency tests as well as day-boundary
    tests.
    """

    def __init__(self, start: Optional[datetime.datetime] = None):
        """
        Initialize the clock.

        Args:
            start: Initial time (defaults to 2024-01-01 09:00)
        """
        self._now = start or datetime.datetime(2024, 1, 1, 9, 0, 0)
        self._lock = threading.Lock()

    def now(self) -> datetime.datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime.datetime) -> None:
        """Jump to an absolute time."""
        with self._lock:
            self._now = value

    def advance(self, **delta) -> datetime.datetime:
        """
        Move the clock forward.

        Args:
            **delta: Keyword arguments accepted by ``datetime.timedelta``

        Returns:
            The new current time
        """
        with self._lock:
            self._now = self._now + datetime.timedelta(**delta)
            return self._now


_default_clock: Clock = SystemClock()


def get_clock() -> Clock:
    """Get the process-wide default clock."""
    return _default_clock
