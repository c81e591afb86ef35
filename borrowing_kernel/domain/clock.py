"""
Clock -- injectable time source.

Responsibility:
    Services never call ``datetime.now()`` directly; they receive a Clock.
    Overdue derivation, stage timestamps and audit timestamps all come from
    the injected instance, so tests can move time across a due date.

Architecture position:
    Kernel > Domain.  SystemClock is the one sanctioned I/O boundary for
    time.

Failure modes:
    - SequentialClock raises ValueError when built from an empty list.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone, tzinfo


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now()`` returns a timezone-aware ``datetime`` in UTC.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current UTC time."""
        ...

    def today(self, tz: tzinfo = timezone.utc) -> date:
        """Calendar date of ``now()`` in *tz*."""
        return self.now().astimezone(tz).date()


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value on repeated calls until ``advance()``
    or ``set_time()`` is called.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = _to_utc(
            fixed_time or datetime(2025, 1, 6, 9, 0, 0, tzinfo=timezone.utc)
        )
        self._offset = timedelta()

    def now(self) -> datetime:
        return self._fixed_time + self._offset

    def set_time(self, time: datetime) -> None:
        self._fixed_time = _to_utc(time)
        self._offset = timedelta()

    def advance(self, seconds: int = 0, *, days: int = 0, hours: int = 0) -> datetime:
        """Move the clock forward and return the new time."""
        self._offset += timedelta(days=days, hours=hours, seconds=seconds)
        return self.now()


class SequentialClock(Clock):
    """Returns the given times in order, then repeats the last one."""

    def __init__(self, times: Iterable[datetime]):
        self._times = [_to_utc(t) for t in times]
        if not self._times:
            raise ValueError("SequentialClock requires at least one time")
        self._index = 0

    def now(self) -> datetime:
        value = self._times[min(self._index, len(self._times) - 1)]
        self._index += 1
        return value


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
