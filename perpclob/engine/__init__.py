"""
Clocks and the interval scheduler that drives background engines.
"""

from .clock import FakeClock, SystemClock
from .scheduler import IntervalJob

__all__ = ["FakeClock", "SystemClock", "IntervalJob"]
