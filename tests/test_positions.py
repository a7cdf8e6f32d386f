"""
Tests for position accounting: liquidation price, PnL, increase/reduce/flip.
"""

from datetime import datetime, timezone

import pytest

from perpclob.venue.positions import (
    calculate_liquidation_price,
    calculate_unrealized_pnl,
    would_be_liquidated,
)
from perpclob.venue.types import (
    OrderType,
    Position,
    PositionSide,
    PositionStatus,
    Side,
)

SYMBOL = "TEST-PERP"


def limit(venue, owner, side, qty, price):
    return venue.place_order(SYMBOL, owner, side, OrderType.LIMIT, qty, price=price)


def open_long(venue, owner="alice", counterparty="bob", qty=1.0, price=100.0):
    limit(venue, counterparty, Side.SELL, qty, price)
    limit(venue, owner, Side.BUY, qty, price)
    return venue.get_position(owner, SYMBOL)


def make_position(side=PositionSide.LONG, size=1.0, entry=100.0, margin=10.0, liq=95.0):
    return Position(
        position_id="pos-test",
        market=SYMBOL,
        owner="alice",
        side=side,
        size=size,
        entry_price=entry,
        margin=margin,
        liquidation_price=liq,
        opened_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


class TestFormulas:

    def test_long_liquidation_price(self):
        """size 1 @ 100, margin 10, mmr 5% -> 100 - (10 - 5) / 1 = 95.00."""
        price = calculate_liquidation_price(PositionSide.LONG, 100.0, 1.0, 10.0, 0.05)
        assert price == pytest.approx(95.00)

    def test_short_liquidation_price(self):
        price = calculate_liquidation_price(PositionSide.SHORT, 100.0, 1.0, 10.0, 0.05)
        assert price == pytest.approx(105.00)

    def test_long_liquidation_price_floors_at_zero(self):
        price = calculate_liquidation_price(PositionSide.LONG, 100.0, 1.0, 200.0, 0.05)
        assert price == 0.0

    def test_unrealized_pnl_sign(self):
        assert calculate_unrealized_pnl(make_position(), 104.0) == pytest.approx(4.0)
        short = make_position(side=PositionSide.SHORT, liq=105.0)
        assert calculate_unrealized_pnl(short, 104.0) == pytest.approx(-4.0)

    def test_trigger_is_inclusive(self):
        long = make_position()
        assert would_be_liquidated(long, 95.0)
        assert not would_be_liquidated(long, 95.01)
        short = make_position(side=PositionSide.SHORT, liq=105.0)
        assert would_be_liquidated(short, 105.0)
        assert not would_be_liquidated(short, 104.99)


class TestLifecycle:
    """Positions driven by trades on a venue."""

    def test_open_sets_margin_and_liquidation_price(self, funded):
        position = open_long(funded)

        assert position.side == PositionSide.LONG
        assert position.size == pytest.approx(1.0)
        assert position.margin == pytest.approx(10.0)
        assert position.leverage == pytest.approx(10.0)
        assert position.liquidation_price == pytest.approx(95.00)

        short = funded.get_position("bob", SYMBOL)
        assert short.side == PositionSide.SHORT
        assert short.liquidation_price == pytest.approx(105.00)

    def test_increase_averages_entry(self, funded):
        open_long(funded, qty=1.0, price=100.0)
        position = open_long(funded, qty=1.0, price=110.0)

        assert position.size == pytest.approx(2.0)
        assert position.entry_price == pytest.approx(105.0)
        assert position.margin == pytest.approx(21.0)

    def test_reduce_realizes_pnl_and_releases_margin(self, funded):
        open_long(funded, qty=2.0, price=100.0)
        limit(funded, "carol", Side.BUY, 1.0, 110.0)

        limit(funded, "alice", Side.SELL, 1.0, 110.0)

        position = funded.get_position("alice", SYMBOL)
        assert position.size == pytest.approx(1.0)
        assert position.margin == pytest.approx(10.0)
        assert position.realized_pnl == pytest.approx(10.0)
        assert position.liquidation_price == pytest.approx(95.0)
        balance = funded.get_balance("alice")
        assert balance.locked == pytest.approx(10.0)
        assert balance.total == pytest.approx(10_010)

    def test_close_with_loss_draws_from_margin(self, funded):
        open_long(funded, qty=1.0, price=100.0)
        limit(funded, "carol", Side.BUY, 1.0, 97.0)

        limit(funded, "alice", Side.SELL, 1.0, 97.0)

        assert funded.get_position("alice", SYMBOL) is None
        balance = funded.get_balance("alice")
        assert balance.locked == pytest.approx(0.0)
        assert balance.total == pytest.approx(9_997)
        closed = funded.position_history("alice")[0]
        assert closed.status == PositionStatus.CLOSED
        assert closed.realized_pnl == pytest.approx(-3.0)

    def test_flip_opens_remainder_on_other_side(self, funded):
        open_long(funded, qty=1.0, price=100.0)
        limit(funded, "carol", Side.BUY, 3.0, 100.0)

        limit(funded, "alice", Side.SELL, 3.0, 100.0)

        position = funded.get_position("alice", SYMBOL)
        assert position.side == PositionSide.SHORT
        assert position.size == pytest.approx(2.0)
        assert position.margin == pytest.approx(20.0)
        assert funded.get_balance("alice").locked == pytest.approx(20.0)
        statuses = [p.status for p in funded.owner_positions("alice")]
        assert sorted(s.value for s in statuses) == ["closed", "open"]

    def test_one_open_position_per_market(self, funded):
        open_long(funded)
        open_long(funded)
        open_positions = funded.owner_positions("alice", PositionStatus.OPEN)
        assert len(open_positions) == 1


class TestSummary:

    def test_summary_uses_mark_price(self, funded, prices):
        open_long(funded, qty=1.0, price=100.0)
        funded.set_index_price(SYMBOL, 102.0)

        summary = funded.position_summary("alice")

        assert summary["open_positions"] == 1
        assert summary["total_margin"] == pytest.approx(10.0)
        assert summary["total_unrealized_pnl"] == pytest.approx(2.0)
        assert summary["positions"][0]["mark_price"] == pytest.approx(102.0)
