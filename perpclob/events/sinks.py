"""
Event sinks and the dispatcher that feeds them.

Sinks:
- MemorySink: keeps events in a list (tests, embedding)
- JournalSink: appends one JSON line per event
- LoggingSink: writes a compact debug line per event

A failing sink never affects trading: the dispatcher logs and moves on.
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional

from .types import EventType, VenueEvent
from ..utils.logger import get_logger

logger = get_logger()


class EventSink(ABC):
    """Base class for event consumers."""

    @abstractmethod
    def publish(self, event: VenueEvent) -> None:
        """Deliver one event."""
        ...

    def close(self) -> None:
        """Release resources held by the sink."""


class MemorySink(EventSink):
    """Collects events in memory."""

    def __init__(self):
        self._events: List[VenueEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: VenueEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[VenueEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: EventType) -> List[VenueEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class JournalSink(EventSink):
    """
    Persistent event journal writing JSONL files.

    Each line is a complete JSON object: event type, market, owner,
    timestamp and the payload snapshot.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._count = 0
        logger.info(f"JournalSink initialized: {self._path}")

    def publish(self, event: VenueEvent) -> None:
        """Append a JSON line to the journal file."""
        line = json.dumps(event.to_dict(), default=str)
        with self._lock:
            with open(self._path, "a", encoding="utf-8", newline="\n") as f:
                f.write(line + "\n")
            self._count += 1

    @property
    def path(self) -> Path:
        """Path to the journal file."""
        return self._path

    @property
    def event_count(self) -> int:
        return self._count


class LoggingSink(EventSink):
    """Writes each event as a debug log line."""

    def publish(self, event: VenueEvent) -> None:
        logger.debug(
            f"[EVENT:{event.event_type.value}] market={event.market} owner={event.owner}"
        )


class EventDispatcher:
    """
    Delivers events to every registered sink.

    Called after domain locks are released. Sink failures are logged
    and swallowed so a broken consumer cannot stall matching.
    """

    def __init__(self, sinks: Optional[Iterable[EventSink]] = None):
        self._sinks: List[EventSink] = list(sinks or [])
        self._lock = threading.Lock()
        self._failures = 0

    def add_sink(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    @property
    def failures(self) -> int:
        return self._failures

    def dispatch(self, events: Iterable[VenueEvent]) -> None:
        with self._lock:
            sinks = list(self._sinks)
        for event in events:
            for sink in sinks:
                try:
                    sink.publish(event)
                except Exception as e:
                    self._failures += 1
                    logger.warning(
                        f"Event sink {type(sink).__name__} failed on "
                        f"{event.event_type.value}: {e}"
                    )

    def close(self) -> None:
        with self._lock:
            sinks = list(self._sinks)
        for sink in sinks:
            sink.close()
