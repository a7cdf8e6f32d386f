"""
Tests for the interval scheduler, clocks and event sinks.
"""

import json
import threading
from datetime import datetime, timezone

import pytest

from perpclob.engine.clock import FakeClock
from perpclob.engine.scheduler import IntervalJob
from perpclob.events.sinks import EventDispatcher, EventSink, JournalSink, MemorySink
from perpclob.events.types import EventType, VenueEvent
from perpclob.venue.types import OrderType, Side

SYMBOL = "TEST-PERP"


class BrokenSink(EventSink):
    def publish(self, event):
        raise RuntimeError("sink down")


def make_event(event_type=EventType.BOOK_CHANGED, **payload):
    return VenueEvent(
        event_type,
        payload,
        market=SYMBOL,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


class TestFakeClock:

    def test_advance_and_set(self):
        clock = FakeClock()
        start = clock()

        assert clock.advance(hours=1, seconds=30) == start.replace(hour=1, second=30)
        clock.set(start)
        assert clock.now() == start


class TestIntervalJob:

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            IntervalJob("job", 0, lambda now: None, FakeClock())

    def test_run_once_counts_runs_and_failures(self):
        clock = FakeClock()
        calls = []

        def tick(now):
            calls.append(now)
            if len(calls) == 2:
                raise RuntimeError("boom")

        job = IntervalJob("job", 1.0, tick, clock)
        job.run_once()
        job.run_once()

        assert calls == [clock(), clock()]
        status = job.status()
        assert status["runs"] == 2
        assert status["failures"] == 1
        assert status["last_run_at"] == clock().isoformat()

    def test_start_stop_report_state_changes(self):
        ticked = threading.Event()
        states = []
        job = IntervalJob(
            "job", 0.01, lambda now: ticked.set(), FakeClock(),
            on_state_change=states.append,
        )

        assert job.start() is True
        assert job.start() is False
        assert ticked.wait(timeout=2.0)
        assert job.stop() is True
        assert job.stop() is False

        assert states == [True, False]
        assert job.is_running is False
        assert job.runs >= 1


class TestSinks:

    def test_journal_writes_json_lines(self, tmp_path):
        sink = JournalSink(tmp_path / "journal" / "events.jsonl")

        sink.publish(make_event(level=100.0))
        sink.publish(make_event(EventType.FUNDING_SETTLED, rate=0.001))

        lines = sink.path.read_text(encoding="utf-8").splitlines()
        assert sink.event_count == 2
        first = json.loads(lines[0])
        assert first["event"] == "book_changed"
        assert first["market"] == SYMBOL
        assert first["payload"] == {"level": 100.0}
        assert json.loads(lines[1])["event"] == "funding_settled"

    def test_dispatcher_isolates_failing_sink(self):
        memory = MemorySink()
        dispatcher = EventDispatcher([BrokenSink(), memory])

        dispatcher.dispatch([make_event(), make_event()])

        assert len(memory.events) == 2
        assert dispatcher.failures == 2

    def test_remove_sink(self):
        memory = MemorySink()
        dispatcher = EventDispatcher([memory])
        dispatcher.remove_sink(memory)

        dispatcher.dispatch([make_event()])

        assert memory.events == []


class TestVenueEvents:
    """Operations emit their events after the market lock is released."""

    def test_trade_emits_expected_events(self, funded, sink):
        funded.place_order(SYMBOL, "bob", Side.SELL, OrderType.LIMIT, 1.0, price=100.0)
        sink.clear()

        funded.place_order(SYMBOL, "alice", Side.BUY, OrderType.LIMIT, 1.0, price=100.0)

        types = {e.event_type for e in sink.events}
        assert EventType.TRADE_EXECUTED in types
        assert EventType.ORDER_UPDATED in types
        assert EventType.POSITION_UPDATED in types
        assert EventType.BALANCE_CHANGED in types
        assert EventType.BOOK_CHANGED in types
        trade = sink.of_type(EventType.TRADE_EXECUTED)[0]
        assert trade.payload["price"] == pytest.approx(100.0)

    def test_sink_can_reenter_venue(self, funded):
        seen = []

        class ReadingSink(EventSink):
            def publish(self, event):
                if event.event_type == EventType.TRADE_EXECUTED:
                    seen.append(funded.order_book(SYMBOL)["best_ask"])

        funded.dispatcher.add_sink(ReadingSink())
        funded.place_order(SYMBOL, "bob", Side.SELL, OrderType.LIMIT, 2.0, price=100.0)
        funded.place_order(SYMBOL, "alice", Side.BUY, OrderType.LIMIT, 1.0, price=100.0)

        assert seen == [pytest.approx(100.0)]
