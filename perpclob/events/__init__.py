"""
Venue events and the sinks they are published to.
"""

from .types import EventType, VenueEvent
from .sinks import EventDispatcher, EventSink, JournalSink, LoggingSink, MemorySink

__all__ = [
    "EventType",
    "VenueEvent",
    "EventDispatcher",
    "EventSink",
    "JournalSink",
    "LoggingSink",
    "MemorySink",
]
