"""
Tests for spot markets.

Validates that:
1. A spot sell is limited to the base the owner holds
2. Resting spot sells count against what is left to sell
3. Spot sells reserve no quote and release the long as they fill
4. Funding and liquidation never touch spot markets
"""

import pytest

from perpclob.venue.exchange import Venue, VenueConfig
from perpclob.venue.types import ErrorCode, MarketKind, OrderStatus, OrderType, PositionSide, Side

SPOT = "TEST-USDC"


@pytest.fixture
def spot_venue(market_factory, prices, clock):
    venue = Venue(
        markets=[market_factory(SPOT, name="Test Spot", kind=MarketKind.SPOT)],
        price_source=prices,
        config=VenueConfig(check_ledger_invariants=True),
        clock=clock,
    )
    venue.deposit("alice", 1_000)
    venue.deposit("bob", 1_000)
    yield venue
    venue.shutdown()


@pytest.fixture
def holding(spot_venue):
    """alice holds 2 base bought at 100 from a synthetic quote."""
    spot_venue.refresh_synthetic_liquidity(SPOT, [(Side.SELL, 100.0, 2.0)])
    result = limit(spot_venue, "alice", Side.BUY, 2.0, 100.0)
    assert result.order.status == OrderStatus.FILLED
    return spot_venue


def limit(venue, owner, side, qty, price):
    return venue.place_order(SPOT, owner, side, OrderType.LIMIT, qty, price=price)


class TestSpotSells:
    """Sells are backed by held base, never by quote."""

    def test_sell_without_holdings_is_rejected(self, spot_venue):
        result = limit(spot_venue, "alice", Side.SELL, 1.0, 100.0)

        assert not result.success
        assert result.error_code == ErrorCode.INSUFFICIENT_BALANCE
        assert spot_venue.get_balance("alice").locked == pytest.approx(0)
        assert spot_venue.order_book(SPOT)["asks"] == []

    def test_buy_locks_full_notional(self, holding):
        position = holding.get_position("alice", SPOT)

        assert position.side == PositionSide.LONG
        assert position.size == pytest.approx(2.0)
        assert position.margin == pytest.approx(200.0)
        assert holding.get_balance("alice").locked == pytest.approx(200.0)

    def test_resting_sells_use_up_holdings(self, holding):
        first = limit(holding, "alice", Side.SELL, 1.5, 110.0)
        assert first.success
        assert first.order.reserved_margin == pytest.approx(0)
        assert holding.get_balance("alice").locked == pytest.approx(200.0)

        too_much = limit(holding, "alice", Side.SELL, 1.0, 111.0)
        assert too_much.error_code == ErrorCode.INSUFFICIENT_BALANCE

        rest = limit(holding, "alice", Side.SELL, 0.5, 111.0)
        assert rest.success

    def test_cancel_frees_holdings_for_another_sell(self, holding):
        first = limit(holding, "alice", Side.SELL, 2.0, 110.0)
        assert limit(holding, "alice", Side.SELL, 1.0, 110.0).error_code == ErrorCode.INSUFFICIENT_BALANCE

        holding.cancel_order(first.order.order_id, "alice")

        assert limit(holding, "alice", Side.SELL, 1.0, 110.0).success

    def test_filled_sells_close_the_holding(self, holding):
        limit(holding, "alice", Side.SELL, 1.5, 110.0)
        limit(holding, "alice", Side.SELL, 0.5, 111.0)

        result = limit(holding, "bob", Side.BUY, 2.0, 111.0)

        assert [t.price for t in result.trades] == [110.0, 111.0]
        assert holding.get_position("alice", SPOT) is None
        alice = holding.get_balance("alice")
        assert alice.locked == pytest.approx(0)
        assert alice.total == pytest.approx(1_000 + 1.5 * 10 + 0.5 * 11)
        assert holding.get_position("bob", SPOT).size == pytest.approx(2.0)
        for owner in ("alice", "bob"):
            assert holding.ledger.check_invariants(owner) == []

    def test_taker_sell_cannot_flip_to_short(self, holding):
        limit(holding, "bob", Side.BUY, 5.0, 99.0)

        oversized = limit(holding, "alice", Side.SELL, 3.0, 99.0)
        assert oversized.error_code == ErrorCode.INSUFFICIENT_BALANCE

        result = limit(holding, "alice", Side.SELL, 2.0, 99.0)
        assert result.order.status == OrderStatus.FILLED
        assert holding.get_position("alice", SPOT) is None
        assert holding.get_balance("alice").locked == pytest.approx(0)


class TestSpotHasNoDerivativeEngines:
    """Funding and liquidation act on perps only."""

    def test_trigger_funding_is_refused(self, holding):
        payment, error = holding.trigger_funding(SPOT)

        assert payment is None
        assert error == ErrorCode.NOT_A_PERP
        assert holding.funding_history(SPOT) == []

    def test_funding_tick_skips_spot(self, holding, clock):
        holding.funding.initialize_funding_times()
        clock.advance(hours=9)

        assert holding.run_funding() == []
        assert holding.get_market(SPOT).next_funding_time is None
        assert holding.funding_history(SPOT) == []

    def test_liquidation_skips_spot(self, holding, prices):
        position = holding.get_position("alice", SPOT)
        # Fully funded long still reports a liquidation price of 5
        assert position.liquidation_price > 4.0
        holding.set_index_price(SPOT, 4.0)

        assert holding.run_liquidations() == []
        assert holding.check_liquidation(position.position_id) is False
        assert holding.positions_at_risk(threshold_pct=100) == []
        assert holding.get_position("alice", SPOT).size == pytest.approx(2.0)
        assert holding.liquidation_stats()["total_liquidations"] == 0
