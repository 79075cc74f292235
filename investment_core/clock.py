"""
Clock abstraction so time-dependent calculations can be tested deterministically.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
import threading


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime"""
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given instant until explicitly moved"""

    def __init__(self, instant: datetime):
        self._lock = threading.Lock()
        self._instant = ensure_utc(instant)

    def now(self) -> datetime:
        with self._lock:
            return self._instant

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._instant = ensure_utc(instant)

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by a timedelta built from kwargs (days=..., hours=...)"""
        with self._lock:
            self._instant = self._instant + timedelta(**kwargs)
            return self._instant


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
