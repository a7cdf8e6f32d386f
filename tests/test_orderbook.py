"""
Tests for the aggregated order book.
"""

import pytest

from perpclob.venue.orderbook import OrderBook
from perpclob.venue.types import Order, OrderStatus, OrderType, Side


@pytest.fixture
def book():
    b = OrderBook("TEST-PERP")
    b.add_level(Side.BUY, 99.0, 2.0)
    b.add_level(Side.BUY, 98.0, 1.0)
    b.add_level(Side.BUY, 99.0, 1.0)
    b.add_level(Side.SELL, 101.0, 1.5)
    b.add_level(Side.SELL, 102.0, 3.0)
    return b


class TestLevels:

    def test_best_prices_and_spread(self, book):
        assert book.best_bid() == 99.0
        assert book.best_ask() == 101.0
        assert book.spread() == pytest.approx(2.0)
        assert book.mid_price() == pytest.approx(100.0)

    def test_prices_are_best_first(self, book):
        assert book.prices(Side.BUY) == [99.0, 98.0]
        assert book.prices(Side.SELL) == [101.0, 102.0]

    def test_levels_aggregate_orders(self, book):
        level = book.level(Side.BUY, 99.0)
        assert level.quantity == pytest.approx(3.0)
        assert level.order_count == 2
        assert level.total == pytest.approx(297.0)

    def test_partial_removal_keeps_order_count(self, book):
        book.remove_quantity(Side.BUY, 99.0, 0.5, order_done=False)
        level = book.level(Side.BUY, 99.0)
        assert level.quantity == pytest.approx(2.5)
        assert level.order_count == 2

    def test_level_disappears_when_empty(self, book):
        book.remove_quantity(Side.SELL, 101.0, 1.5)
        assert book.level(Side.SELL, 101.0) is None
        assert book.best_ask() == 102.0

    def test_empty_book_has_no_mid(self):
        book = OrderBook("EMPTY-PERP")
        assert book.is_empty()
        assert book.mid_price() is None
        assert book.spread() is None


class TestSweep:

    def test_sweep_walks_levels(self, book):
        fillable, notional, worst = book.sweep(Side.BUY, 2.0)
        assert fillable == pytest.approx(2.0)
        assert notional == pytest.approx(1.5 * 101.0 + 0.5 * 102.0)
        assert worst == 102.0

    def test_sweep_is_bounded_by_depth(self, book):
        fillable, _, _ = book.sweep(Side.SELL, 10.0)
        assert fillable == pytest.approx(4.0)

    def test_sweep_respects_limit_price(self, book):
        fillable, _, worst = book.sweep(Side.BUY, 10.0, limit_price=101.0)
        assert fillable == pytest.approx(1.5)
        assert worst == 101.0


class TestSnapshot:

    def test_snapshot_depth_and_totals(self, book):
        snapshot = book.snapshot(depth=1)
        assert snapshot["market"] == "TEST-PERP"
        assert len(snapshot["bids"]) == 1
        assert snapshot["bids"][0]["price"] == 99.0
        assert snapshot["asks"][0]["total"] == pytest.approx(151.5)
        assert snapshot["best_bid"] == 99.0
        assert snapshot["spread"] == pytest.approx(2.0)

    def test_rebuild_from_resting_orders(self):
        book = OrderBook("TEST-PERP")
        orders = [
            Order("o1", "TEST-PERP", "a", Side.BUY, OrderType.LIMIT, 100.0, 2.0,
                  filled_quantity=0.5, status=OrderStatus.PARTIAL),
            Order("o2", "TEST-PERP", "b", Side.SELL, OrderType.LIMIT, 101.0, 1.0,
                  status=OrderStatus.OPEN),
            Order("o3", "TEST-PERP", "c", Side.SELL, OrderType.LIMIT, 101.0, 1.0,
                  status=OrderStatus.CANCELLED),
            Order("o4", "OTHER-PERP", "d", Side.SELL, OrderType.LIMIT, 105.0, 1.0,
                  status=OrderStatus.OPEN),
        ]

        loaded = book.rebuild(orders)

        assert loaded == 2
        assert book.level(Side.BUY, 100.0).quantity == pytest.approx(1.5)
        assert book.level(Side.SELL, 101.0).order_count == 1
