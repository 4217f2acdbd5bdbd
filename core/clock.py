"""
Core Module - System Clock.

============================================================
RESPONSIBILITY
============================================================
Provides a unified, testable clock abstraction for the
alerting pipeline.

- Candle windows, debounce windows and escalation waits are
  all computed from this clock
- Enables deterministic testing (time travel in tests)
- Ensures consistent UTC timestamps across all modules

============================================================
DESIGN PRINCIPLES
============================================================
- UTC only inside business logic
- Local time only at the presentation edge (to_local)
- Injected into every service, never a global
- Thread-safe

============================================================
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging
import threading
import time


logger = logging.getLogger(__name__)


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for system clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """Get a monotonic reading in seconds, used for deadlines."""
        pass

    def today(self) -> date:
        """Get current UTC date."""
        return self.now().date()

    def minutes_since(self, moment: datetime) -> float:
        """Minutes elapsed between a past moment and now."""
        return (self.now() - ensure_utc(moment)).total_seconds() / 60.0


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """
    Production clock using actual system time.

    All times are in UTC.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Allows time manipulation for deterministic tests. The
    monotonic reading advances together with wall time.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        self._time = ensure_utc(initial_time or datetime.now(timezone.utc))
        self._monotonic = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def monotonic(self) -> float:
        with self._lock:
            return self._monotonic

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        with self._lock:
            new_time = ensure_utc(new_time)
            self._monotonic += max((new_time - self._time).total_seconds(), 0.0)
            self._time = new_time

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        with self._lock:
            delta = timedelta(seconds=seconds, **kwargs)
            self._time = self._time + delta
            self._monotonic += delta.total_seconds()


# ============================================================
# TIMESTAMP UTILITIES
# ============================================================

def ensure_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC (SQLite hands
    back naive datetimes for timezone-aware columns).
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_local(dt: datetime, tz_name: Optional[str]) -> datetime:
    """
    Convert a UTC datetime to the given IANA timezone.

    zoneinfo resolves the UTC offset for the instant itself, so
    conversions across DST transitions are correct. Unknown or
    empty zone names fall back to UTC.
    """
    dt = ensure_utc(dt)
    if not tz_name:
        return dt
    try:
        return dt.astimezone(ZoneInfo(tz_name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r}, rendering in UTC")
        return dt


def to_iso8601(dt: datetime) -> str:
    """Convert datetime to ISO 8601 string."""
    return ensure_utc(dt).isoformat()


def from_iso8601(iso_string: str) -> datetime:
    """Parse ISO 8601 string to datetime."""
    return ensure_utc(datetime.fromisoformat(iso_string))


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "to_local",
    "to_iso8601",
    "from_iso8601",
]
