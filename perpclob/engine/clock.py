"""
Injectable clocks.

Engines take a zero-argument callable returning an aware UTC datetime.
SystemClock is the wall clock; FakeClock is advanced by hand in tests
and simulations.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now()


class FakeClock:
    """Manually driven clock."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def __call__(self) -> datetime:
        return self.now()

    def advance(self, seconds: float = 0.0, **kwargs) -> datetime:
        """Move forward by seconds plus any timedelta keyword (hours=, minutes=)."""
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, **kwargs)
            return self._now

    def set(self, ts: datetime) -> None:
        with self._lock:
            self._now = ts
