"""
Clock -- injectable time source.

Services, engines and the reconciliation job receive a ``Clock`` through
their constructor and never call ``datetime.now()`` directly, so sweeps,
cooldowns and backoff windows can be driven deterministically in tests.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now()`` returns a ``datetime``; production clocks return
          timezone-aware UTC values.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...


class SystemClock(Clock):
    """Production clock returning the actual UTC system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value on repeated calls until ``advance()``
    or ``set_time()`` is called.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._offset = timedelta(0)

    def now(self) -> datetime:
        return self._fixed_time + self._offset

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        self._fixed_time = time
        self._offset = timedelta(0)

    def advance(self, seconds: int = 0, *, minutes: int = 0, days: int = 0) -> datetime:
        """Advance the clock and return the new time."""
        self._offset += timedelta(seconds=seconds, minutes=minutes, days=days)
        return self.now()
