"""
Core Module - Clock.

============================================================
RESPONSIBILITY
============================================================
Single source of "now" for operations and schedules.

- Progress timestamps, export filenames and recurrence
  evaluation all read the injected clock
- MockClock lets tests fire schedules without waiting
- Instants handed out are always aware UTC datetimes

============================================================
SERIALIZATION
============================================================
Persisted configs and jobs store instants as ISO 8601 text.
to_iso8601/from_iso8601 are the only converters used for that,
so stored values always rehydrate to aware UTC datetimes.

============================================================
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional


# ============================================================
# CLOCKS
# ============================================================

class ClockProtocol(ABC):
    """Where operations and the scheduler read the time."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def seconds_until(self, instant: datetime) -> float:
        """Negative once instant has passed."""
        return (ensure_utc(instant) - self.now()).total_seconds()


class SystemClock(ClockProtocol):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class MockClock(ClockProtocol):
    """
    Manually driven clock.

    Nothing moves it except set_time(), advance() and freeze(),
    which is what makes timer and retry tests deterministic.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._current = ensure_utc(initial_time or datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._current

    def set_time(self, new_time: datetime) -> None:
        self._current = ensure_utc(new_time)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """Move forward; kwargs are timedelta units (minutes=, days=, ...)."""
        self._current += timedelta(seconds=seconds, **kwargs)

    @contextmanager
    def freeze(self, at_time: Optional[datetime] = None) -> Iterator[None]:
        """Pin the clock inside the block, then return to where it was."""
        saved = self._current
        if at_time is not None:
            self._current = ensure_utc(at_time)
        try:
            yield
        finally:
            self._current = saved


class ClockFactory:
    """Process-wide default, used when no clock is injected."""

    _instance: Optional[ClockProtocol] = None

    @classmethod
    def get_clock(cls) -> ClockProtocol:
        if cls._instance is None:
            cls._instance = SystemClock()
        return cls._instance

    @classmethod
    def set_clock(cls, clock: ClockProtocol) -> None:
        cls._instance = clock

    @classmethod
    def reset(cls) -> None:
        cls._instance = SystemClock()

    @classmethod
    @contextmanager
    def use_mock(cls, initial_time: Optional[datetime] = None) -> Iterator[MockClock]:
        """Make a MockClock the default for the block."""
        previous = cls._instance
        mock = MockClock(initial_time)
        cls._instance = mock
        try:
            yield mock
        finally:
            cls._instance = previous


# ============================================================
# ISO 8601 HELPERS
# ============================================================

def ensure_utc(dt: datetime) -> datetime:
    """Naive values are taken as UTC; aware values are converted."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso8601(dt: Optional[datetime]) -> Optional[str]:
    return ensure_utc(dt).isoformat() if dt is not None else None


def from_iso8601(text: Optional[str]) -> Optional[datetime]:
    """Accepts a trailing 'Z'; None and '' give None."""
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def now_utc() -> datetime:
    return ClockFactory.get_clock().now()


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ClockFactory",
    "ensure_utc",
    "to_iso8601",
    "from_iso8601",
    "now_utc",
]
