"""
Core Module - Evaluation Clock.

============================================================
RESPONSIBILITY
============================================================
Provides the single time source used by decision evaluation.

- The engine never reads the wall clock; callers pass `now`
- The scheduling service asks a clock for `now` once per run
- A settable clock enables time simulation (e.g. "what does
  this decision look like 45 days after expiry?")

============================================================
DESIGN PRINCIPLES
============================================================
- UTC only - naive datetimes are interpreted as UTC
- Mockable for testing
- Thread-safe

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import threading


SECONDS_PER_DAY = 86400.0
SECONDS_PER_HOUR = 3600.0


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the evaluation clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """Production clock using actual system time (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


# ============================================================
# MOCK CLOCK (TESTING / TIME SIMULATION)
# ============================================================

class MockClock(ClockProtocol):
    """
    Settable clock.

    Used by tests and by time simulation, where a sweep is
    replayed as if it ran at a chosen moment.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        self._time = ensure_utc(initial_time) if initial_time else datetime.now(timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)


# ============================================================
# CLOCK FACTORY
# ============================================================

class ClockFactory:
    """Holds the process-wide default clock."""

    _instance: Optional[ClockProtocol] = None
    _lock = threading.Lock()

    @classmethod
    def get_clock(cls) -> ClockProtocol:
        """Get the global clock instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = SystemClock()
            return cls._instance


# ============================================================
# TIMESTAMP UTILITIES
# ============================================================

def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Some backends (SQLite) hand back naive datetimes even for
    timezone-aware columns; those are taken to be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def days_between(start: datetime, end: datetime) -> float:
    """Fractional days from `start` to `end` (negative if end < start)."""
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / SECONDS_PER_DAY


def hours_between(start: datetime, end: datetime) -> float:
    """Fractional hours from `start` to `end`."""
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / SECONDS_PER_HOUR


def now_utc() -> datetime:
    """Get current UTC time using global clock."""
    return ClockFactory.get_clock().now()


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ClockFactory",
    "ensure_utc",
    "days_between",
    "hours_between",
    "now_utc",
    "SECONDS_PER_DAY",
    "SECONDS_PER_HOUR",
]
