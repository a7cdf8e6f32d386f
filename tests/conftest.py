"""
Shared fixtures for venue tests.

The logger is configured console-only before any venue module is
imported so test runs never create a logs/ directory.
"""

import pytest

from perpclob.utils.logger import setup_logger

setup_logger(log_dir=None, log_level="WARNING")

from perpclob.engine.clock import FakeClock
from perpclob.events.sinks import MemorySink
from perpclob.venue.exchange import Venue
from perpclob.venue.pricing import OraclePriceCache
from perpclob.venue.types import Market, MarketKind


SYMBOL = "TEST-PERP"


def make_market(symbol: str = SYMBOL, **overrides) -> Market:
    """Perp market with tick 0.01, lot 0.01, 10% initial and 5% maintenance margin."""
    values = dict(
        symbol=symbol,
        name="Test Perpetual",
        kind=MarketKind.PERP,
        base_asset=symbol.split("-")[0],
        tick_size=0.01,
        lot_size=0.01,
        min_order_size=0.01,
        max_order_size=1000.0,
        max_leverage=10.0,
        initial_margin_rate=0.1,
        maintenance_margin_rate=0.05,
    )
    values.update(overrides)
    return Market(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def prices():
    return OraclePriceCache()


@pytest.fixture
def market_factory():
    return make_market


@pytest.fixture
def market():
    return make_market()


@pytest.fixture
def venue(market, sink, prices, clock):
    """In-memory venue with one market and ledger invariant checks on."""
    from perpclob.venue.exchange import VenueConfig

    v = Venue(
        markets=[market],
        price_source=prices,
        sinks=[sink],
        config=VenueConfig(check_ledger_invariants=True),
        clock=clock,
    )
    yield v
    v.shutdown()


@pytest.fixture
def funded(venue):
    """Venue with alice, bob and carol holding 10,000 each."""
    for owner in ("alice", "bob", "carol"):
        venue.deposit(owner, 10_000)
    return venue
