"""
Tests for order placement, matching and cancellation.

Validates that:
1. Crossing orders trade at the maker price with price-time priority
2. Post-only, reduce-only and market orders follow their rules
3. Margin reservations are locked, converted and released exactly once
4. Rejections come back as error codes and leave balances untouched
5. Quote value is conserved across owners when fees are zero
"""

import pytest

from perpclob.events.types import EventType
from perpclob.venue.exchange import Venue
from perpclob.venue.types import (
    ErrorCode,
    MarketStatus,
    OrderStatus,
    OrderType,
    PositionSide,
    Side,
)

SYMBOL = "TEST-PERP"


def limit(venue, owner, side, qty, price, **kwargs):
    return venue.place_order(SYMBOL, owner, side, OrderType.LIMIT, qty, price=price, **kwargs)


def market_order(venue, owner, side, qty, **kwargs):
    return venue.place_order(SYMBOL, owner, side, OrderType.MARKET, qty, **kwargs)


class TestCrossing:
    """Basic matching."""

    def test_crossing_limits_trade_at_maker_price(self, funded):
        """buy 1.0 @ 100.00 then sell 1.0 @ 100.00 -> one trade, both filled."""
        bid = limit(funded, "bob", Side.BUY, 1.0, 100.00)
        ask = limit(funded, "alice", Side.SELL, 1.0, 100.00)

        assert bid.success and ask.success
        assert len(ask.trades) == 1
        trade = ask.trades[0]
        assert trade.price == pytest.approx(100.00)
        assert trade.quantity == pytest.approx(1.0)
        assert trade.side == Side.SELL
        assert trade.maker_owner == "bob"
        assert trade.taker_owner == "alice"
        assert ask.order.status == OrderStatus.FILLED
        assert funded.get_order(bid.order.order_id).status == OrderStatus.FILLED
        assert funded.order_book(SYMBOL)["bids"] == []

    def test_fill_executes_at_maker_price_with_improvement(self, funded):
        limit(funded, "bob", Side.SELL, 1.0, 100.50)
        limit(funded, "carol", Side.SELL, 1.0, 101.00)

        result = limit(funded, "alice", Side.BUY, 2.0, 101.00)

        assert [t.price for t in result.trades] == [100.50, 101.00]
        position = funded.get_position("alice", SYMBOL)
        assert position.entry_price == pytest.approx(100.75)
        # Improvement on the first fill is unlocked, not kept as margin
        assert position.margin == pytest.approx(20.15)
        assert funded.get_balance("alice").locked == pytest.approx(20.15)

    def test_time_priority_within_level(self, funded):
        first = limit(funded, "bob", Side.SELL, 1.0, 101.00)
        second = limit(funded, "carol", Side.SELL, 1.0, 101.00)

        result = limit(funded, "alice", Side.BUY, 1.5, 101.00)

        assert [t.maker_order_id for t in result.trades] == [
            first.order.order_id,
            second.order.order_id,
        ]
        assert [t.quantity for t in result.trades] == pytest.approx([1.0, 0.5])
        resting = funded.get_order(second.order.order_id)
        assert resting.status == OrderStatus.PARTIAL
        assert resting.remaining_quantity == pytest.approx(0.5)
        assert funded.order_book(SYMBOL)["asks"][0]["quantity"] == pytest.approx(0.5)

    def test_better_price_matches_first(self, funded):
        limit(funded, "bob", Side.BUY, 1.0, 99.00)
        better = limit(funded, "carol", Side.BUY, 1.0, 99.50)

        result = limit(funded, "alice", Side.SELL, 1.0, 98.00)

        assert result.trades[0].maker_order_id == better.order.order_id
        assert result.trades[0].price == pytest.approx(99.50)

    def test_non_crossing_limit_rests(self, funded):
        limit(funded, "bob", Side.SELL, 1.0, 101.00)
        result = limit(funded, "alice", Side.BUY, 1.0, 100.00)

        assert result.trades == []
        assert result.order.status == OrderStatus.OPEN
        snapshot = funded.order_book(SYMBOL)
        assert snapshot["best_bid"] == pytest.approx(100.00)
        assert snapshot["best_ask"] == pytest.approx(101.00)

    def test_partial_fill_keeps_remaining_reservation(self, funded):
        bid = limit(funded, "bob", Side.BUY, 2.0, 100.00)
        limit(funded, "alice", Side.SELL, 1.0, 100.00)

        order = funded.get_order(bid.order.order_id)
        assert order.status == OrderStatus.PARTIAL
        assert order.reserved_margin == pytest.approx(10.0)
        assert funded.get_balance("bob").locked == pytest.approx(20.0)

    def test_self_trade_is_allowed(self, funded):
        limit(funded, "alice", Side.SELL, 1.0, 100.00)
        result = limit(funded, "alice", Side.BUY, 1.0, 100.00)

        assert len(result.trades) == 1
        assert funded.get_position("alice", SYMBOL) is None
        balance = funded.get_balance("alice")
        assert balance.locked == pytest.approx(0.0)
        assert balance.total == pytest.approx(10_000)


class TestOrderRules:
    """Validation, post-only, reduce-only and market orders."""

    def test_price_and_quantity_are_rounded(self, funded):
        result = limit(funded, "alice", Side.BUY, 1.239, 100.004)

        assert result.order.price == pytest.approx(100.00)
        assert result.order.quantity == pytest.approx(1.23)

    def test_quantity_below_lot_is_rejected(self, funded):
        result = limit(funded, "alice", Side.BUY, 0.004, 100.00)
        assert not result.success
        assert result.error_code == ErrorCode.INVALID_QUANTITY

    def test_invalid_price_is_rejected(self, funded):
        result = limit(funded, "alice", Side.BUY, 1.0, 0)
        assert result.error_code == ErrorCode.INVALID_PRICE

    def test_unknown_market(self, funded):
        result = funded.place_order("NOPE-PERP", "alice", Side.BUY, OrderType.LIMIT, 1, price=1)
        assert result.error_code == ErrorCode.MARKET_NOT_FOUND

    def test_paused_market_rejects_orders(self, funded):
        funded.set_market_status(SYMBOL, MarketStatus.PAUSED)
        result = limit(funded, "alice", Side.BUY, 1.0, 100.00)
        assert result.error_code == ErrorCode.MARKET_INACTIVE

    def test_insufficient_balance_is_rejected(self, funded):
        funded.deposit("dave", 5)

        result = limit(funded, "dave", Side.BUY, 1.0, 100.00)

        assert not result.success
        assert result.error_code == ErrorCode.INSUFFICIENT_BALANCE
        assert funded.order_book(SYMBOL)["bids"] == []
        assert funded.get_balance("dave").free == pytest.approx(5)

    def test_post_only_that_would_cross_is_rejected(self, funded):
        limit(funded, "bob", Side.SELL, 1.0, 101.00)
        before = funded.get_balance("alice")

        result = limit(funded, "alice", Side.BUY, 1.0, 101.00, post_only=True)

        assert result.error_code == ErrorCode.POST_ONLY_WOULD_MATCH
        after = funded.get_balance("alice")
        assert after.free == pytest.approx(before.free)
        assert after.locked == pytest.approx(before.locked)

    def test_post_only_that_does_not_cross_rests(self, funded):
        limit(funded, "bob", Side.SELL, 1.0, 101.00)
        result = limit(funded, "alice", Side.BUY, 1.0, 100.99, post_only=True)
        assert result.success
        assert result.order.status == OrderStatus.OPEN

    def test_market_order_remainder_is_discarded(self, funded):
        limit(funded, "bob", Side.SELL, 1.0, 101.00)

        result = market_order(funded, "alice", Side.BUY, 3.0)

        assert result.success
        assert result.order.status == OrderStatus.FILLED
        assert result.order.quantity == pytest.approx(1.0)
        snapshot = funded.order_book(SYMBOL)
        assert snapshot["bids"] == [] and snapshot["asks"] == []
        assert funded.get_balance("alice").locked == pytest.approx(10.1)

    def test_market_order_without_liquidity(self, funded):
        result = market_order(funded, "alice", Side.BUY, 1.0)
        assert result.error_code == ErrorCode.NO_PRICE_AVAILABLE
        assert funded.get_balance("alice").locked == 0

    def test_reduce_only_without_position_is_rejected(self, funded):
        limit(funded, "bob", Side.BUY, 1.0, 100.00)
        result = limit(funded, "alice", Side.SELL, 1.0, 100.00, reduce_only=True)
        assert result.error_code == ErrorCode.INVALID_QUANTITY

    def test_reduce_only_is_capped_at_position_size(self, funded):
        limit(funded, "bob", Side.SELL, 1.0, 100.00)
        limit(funded, "alice", Side.BUY, 1.0, 100.00)
        limit(funded, "carol", Side.BUY, 5.0, 100.00)

        result = limit(funded, "alice", Side.SELL, 3.0, 100.00, reduce_only=True)

        assert result.order.quantity == pytest.approx(1.0)
        assert result.order.status == OrderStatus.FILLED
        assert funded.get_position("alice", SYMBOL) is None

    def test_resting_reduce_only_cancelled_when_position_is_gone(self, funded):
        """Two resting reduce-only sells together exceed a long of 1."""
        limit(funded, "bob", Side.SELL, 1.0, 100.00)
        limit(funded, "alice", Side.BUY, 1.0, 100.00)
        first = limit(funded, "alice", Side.SELL, 1.0, 105.00, reduce_only=True)
        second = limit(funded, "alice", Side.SELL, 1.0, 106.00, reduce_only=True)
        assert first.order.status == OrderStatus.OPEN
        assert second.order.status == OrderStatus.OPEN

        result = limit(funded, "carol", Side.BUY, 2.0, 106.00)

        assert len(result.trades) == 1
        assert result.trades[0].maker_order_id == first.order.order_id
        assert funded.get_order(first.order.order_id).status == OrderStatus.FILLED
        assert funded.get_order(second.order.order_id).status == OrderStatus.CANCELLED
        assert funded.get_position("alice", SYMBOL) is None
        assert all(p.side == PositionSide.LONG for p in funded.owner_positions("alice"))
        assert funded.open_orders("alice") == []
        assert funded.get_balance("alice").locked == pytest.approx(0)
        assert funded.ledger.check_invariants("alice") == []

        book = funded.order_book(SYMBOL)
        assert book["asks"] == []
        assert book["best_bid"] == pytest.approx(106.00)

    def test_resting_reduce_only_partially_filled_then_cancelled(self, funded):
        limit(funded, "bob", Side.SELL, 1.0, 100.00)
        limit(funded, "alice", Side.BUY, 1.0, 100.00)
        first = limit(funded, "alice", Side.SELL, 0.6, 105.00, reduce_only=True)
        second = limit(funded, "alice", Side.SELL, 1.0, 106.00, reduce_only=True)

        result = limit(funded, "carol", Side.BUY, 2.0, 106.00)

        assert [t.quantity for t in result.trades] == pytest.approx([0.6, 0.4])
        assert funded.get_order(first.order.order_id).status == OrderStatus.FILLED
        capped = funded.get_order(second.order.order_id)
        assert capped.status == OrderStatus.CANCELLED
        assert capped.filled_quantity == pytest.approx(0.4)
        assert funded.get_position("alice", SYMBOL) is None
        assert funded.get_balance("alice").locked == pytest.approx(0)


class TestCancel:
    """Cancellation and reservation release."""

    def test_cancel_releases_reservation(self, funded):
        placed = limit(funded, "bob", Side.BUY, 1.0, 99.00)
        assert funded.get_balance("bob").locked == pytest.approx(9.9)

        result = funded.cancel_order(placed.order.order_id, "bob")

        assert result.success
        assert result.released_margin == pytest.approx(9.9)
        assert result.order.status == OrderStatus.CANCELLED
        assert funded.get_balance("bob").locked == pytest.approx(0)
        assert funded.order_book(SYMBOL)["bids"] == []

    def test_second_cancel_is_not_cancellable(self, funded):
        placed = limit(funded, "bob", Side.BUY, 1.0, 99.00)
        funded.cancel_order(placed.order.order_id, "bob")

        again = funded.cancel_order(placed.order.order_id, "bob")

        assert not again.success
        assert again.error_code == ErrorCode.NOT_CANCELLABLE
        assert funded.get_balance("bob").free == pytest.approx(10_000)

    def test_cancel_by_other_owner_is_rejected(self, funded):
        placed = limit(funded, "bob", Side.BUY, 1.0, 99.00)
        result = funded.cancel_order(placed.order.order_id, "alice")
        assert result.error_code == ErrorCode.NOT_OWNER
        assert funded.get_order(placed.order.order_id).status == OrderStatus.OPEN

    def test_cancel_filled_order_is_rejected(self, funded):
        placed = limit(funded, "bob", Side.BUY, 1.0, 100.00)
        limit(funded, "alice", Side.SELL, 1.0, 100.00)
        result = funded.cancel_order(placed.order.order_id, "bob")
        assert result.error_code == ErrorCode.NOT_CANCELLABLE

    def test_cancel_unknown_order(self, funded):
        result = funded.cancel_order("order-missing", "bob")
        assert result.error_code == ErrorCode.ORDER_NOT_FOUND

    def test_cancel_partial_releases_only_remainder(self, funded):
        placed = limit(funded, "bob", Side.BUY, 2.0, 100.00)
        limit(funded, "alice", Side.SELL, 0.5, 100.00)

        result = funded.cancel_order(placed.order.order_id, "bob")

        assert result.released_margin == pytest.approx(15.0)
        assert funded.get_balance("bob").locked == pytest.approx(5.0)


class TestSyntheticLiquidity:
    """Ownerless quotes."""

    def test_refresh_replaces_quotes(self, funded):
        funded.refresh_synthetic_liquidity(SYMBOL, [(Side.SELL, 101.0, 5.0), (Side.BUY, 99.0, 5.0)])
        funded.refresh_synthetic_liquidity(SYMBOL, [(Side.SELL, 102.0, 2.0)])

        snapshot = funded.order_book(SYMBOL)
        assert [level["price"] for level in snapshot["asks"]] == [102.0]
        assert snapshot["bids"] == []

    def test_taker_against_synthetic_quote(self, funded):
        funded.refresh_synthetic_liquidity(SYMBOL, [(Side.SELL, 101.0, 5.0)])

        result = market_order(funded, "alice", Side.BUY, 1.0)

        trade = result.trades[0]
        assert trade.maker_is_synthetic
        assert trade.maker_owner is None
        position = funded.get_position("alice", SYMBOL)
        assert position.side == PositionSide.LONG
        assert position.size == pytest.approx(1.0)

    def test_cancel_synthetic_orders(self, funded):
        funded.refresh_synthetic_liquidity(SYMBOL, [(Side.SELL, 101.0, 5.0), (Side.BUY, 99.0, 5.0)])
        assert funded.cancel_synthetic_orders(SYMBOL) == 2
        assert funded.order_book(SYMBOL)["asks"] == []


class TestAccounting:
    """Conservation and fees."""

    def test_round_trip_is_zero_sum(self, funded):
        limit(funded, "alice", Side.SELL, 1.0, 100.00)
        limit(funded, "bob", Side.BUY, 1.0, 100.00)
        limit(funded, "bob", Side.SELL, 1.0, 110.00)
        limit(funded, "alice", Side.BUY, 1.0, 110.00)

        alice = funded.get_balance("alice")
        bob = funded.get_balance("bob")
        assert bob.total == pytest.approx(10_010)
        assert alice.total == pytest.approx(9_990)
        assert alice.locked == pytest.approx(0)
        assert bob.locked == pytest.approx(0)
        assert funded.ledger.totals()["total"] == pytest.approx(30_000)
        for owner in ("alice", "bob", "carol"):
            assert funded.ledger.check_invariants(owner) == []

    def test_locked_matches_margin_and_reservations(self, funded):
        limit(funded, "bob", Side.BUY, 2.0, 100.00)
        limit(funded, "alice", Side.SELL, 1.0, 100.00)
        limit(funded, "bob", Side.BUY, 1.0, 95.00)

        position = funded.get_position("bob", SYMBOL)
        reserved = sum(o.reserved_margin for o in funded.open_orders("bob"))
        assert funded.get_balance("bob").locked == pytest.approx(position.margin + reserved)

    def test_fees_are_charged_to_both_sides(self, market_factory, clock):
        venue = Venue(
            markets=[market_factory(maker_fee_rate=0.0005, taker_fee_rate=0.001)],
            clock=clock,
        )
        venue.deposit("alice", 1_000)
        venue.deposit("bob", 1_000)

        limit(venue, "bob", Side.BUY, 1.0, 100.00)
        result = limit(venue, "alice", Side.SELL, 1.0, 100.00)

        trade = result.trades[0]
        assert trade.maker_fee == pytest.approx(0.05)
        assert trade.taker_fee == pytest.approx(0.1)
        assert venue.get_balance("bob").total == pytest.approx(999.95)
        assert venue.get_balance("alice").total == pytest.approx(999.9)
        assert venue.matching.stats.fee_revenue == pytest.approx(0.15)
        assert venue.get_position("alice", SYMBOL).total_fees_paid == pytest.approx(0.1)


class TestQueriesAndEvents:

    def test_trade_emits_events(self, funded, sink):
        sink.clear()
        limit(funded, "bob", Side.BUY, 1.0, 100.00)
        limit(funded, "alice", Side.SELL, 1.0, 100.00)

        assert len(sink.of_type(EventType.TRADE_EXECUTED)) == 1
        assert sink.of_type(EventType.POSITION_UPDATED)
        assert sink.of_type(EventType.BOOK_CHANGED)
        owners = {e.owner for e in sink.of_type(EventType.BALANCE_CHANGED)}
        assert {"alice", "bob"} <= owners

    def test_histories(self, funded):
        limit(funded, "bob", Side.BUY, 1.0, 100.00)
        limit(funded, "alice", Side.SELL, 1.0, 100.00)
        limit(funded, "bob", Side.BUY, 1.0, 90.00)

        assert len(funded.trade_history("alice")) == 1
        assert len(funded.recent_trades(SYMBOL)) == 1
        history = funded.order_history("bob")
        assert [o.price for o in history] == [90.00, 100.00]
        assert [o.price for o in funded.open_orders("bob")] == [90.00]
