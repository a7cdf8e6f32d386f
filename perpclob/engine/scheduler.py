"""
Interval scheduler for background engines.

Each IntervalJob owns one daemon thread that calls `tick(now)` every
`interval_seconds` until stopped. A failing tick is logged and the
loop keeps going. `run_once` invokes the same tick synchronously,
which is how tests drive engines with a fake clock.
"""

import threading
from datetime import datetime
from typing import Callable, Dict, Optional

from ..utils.logger import get_logger

logger = get_logger()


class IntervalJob:
    """Periodic job on its own thread."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        tick: Callable[[datetime], None],
        clock: Callable[[], datetime],
        on_state_change: Optional[Callable[[bool], None]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"{name}: interval_seconds must be > 0")
        self.name = name
        self.interval_seconds = interval_seconds
        self._tick = tick
        self._clock = clock
        self._on_state_change = on_state_change
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.runs = 0
        self.failures = 0
        self.last_run_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        with self._lock:
            if self.is_running:
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
            self._thread.start()
        if self._on_state_change:
            self._on_state_change(True)
        logger.info(f"{self.name} started (every {self.interval_seconds}s)")
        return True

    def stop(self, timeout: float = 5.0) -> bool:
        """Stop the loop and wait for the thread. Returns False if it was not running."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return False
            self._stop_event.set()
            self._thread = None
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
        if self._on_state_change:
            self._on_state_change(False)
        logger.info(f"{self.name} stopped")
        return True

    def run_once(self, now: Optional[datetime] = None) -> None:
        """Run one tick on the calling thread."""
        now = now or self._clock()
        try:
            self._tick(now)
        except Exception as e:
            self.failures += 1
            logger.error(f"{self.name} tick failed: {e}")
        finally:
            self.runs += 1
            self.last_run_at = now

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

    def status(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "is_running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
        }
