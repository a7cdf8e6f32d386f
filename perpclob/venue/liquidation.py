"""
Liquidation monitor for mark-based liquidation.

Each tick scans the open positions of every active market against the
market's blended mark price:
- long triggers when mark <= liquidation price
- short triggers when mark >= liquidation price

A triggered position is force-closed at the mark price through the
position manager's close path and tagged `liquidated`. Losses are
collected from the position's margin only; any excess is bad debt.

Only positions with status=open are considered, so a position is
liquidated at most once.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .positions import PositionManager, calculate_unrealized_pnl, would_be_liquidated
from .pricing import PriceSource, resolve_prices
from .registry import MarketRegistry, MarketState
from .types import Position, PositionStatus, utcnow
from ..config.constants import DEFAULT_AT_RISK_THRESHOLD_PCT
from ..events import types as ev
from ..events.types import VenueEvent
from ..utils.logger import get_logger

logger = get_logger()


@dataclass
class LiquidationConfig:
    """Configuration for the liquidation monitor."""
    at_risk_threshold_pct: float = DEFAULT_AT_RISK_THRESHOLD_PCT


@dataclass
class LiquidationStats:
    """Running totals."""
    total_liquidations: int = 0
    total_value_liquidated: float = 0.0
    total_bad_debt: float = 0.0
    last_liquidation_at: Optional[datetime] = None
    is_running: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_liquidations": self.total_liquidations,
            "total_value_liquidated": self.total_value_liquidated,
            "total_bad_debt": self.total_bad_debt,
            "last_liquidation_at": (
                self.last_liquidation_at.isoformat() if self.last_liquidation_at else None
            ),
            "is_running": self.is_running,
        }


class LiquidationMonitor:
    """
    Checks liquidation conditions and handles forced closure.

    Liquidation is triggered when the mark price crosses the position's
    liquidation price.
    """

    def __init__(
        self,
        registry: MarketRegistry,
        positions: PositionManager,
        price_source: Optional[PriceSource] = None,
        config: Optional[LiquidationConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._registry = registry
        self._positions = positions
        self._prices = price_source
        self._config = config or LiquidationConfig()
        self._clock = clock or utcnow
        self._in_flight = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stats = LiquidationStats()

    @property
    def stats(self) -> LiquidationStats:
        return self._stats

    def set_running(self, running: bool) -> None:
        self._stats.is_running = running

    def tick(self, now: Optional[datetime] = None) -> List[VenueEvent]:
        """
        Scan every active perp market once.

        Concurrent invocations skip instead of running twice.

        Returns:
            Events to dispatch
        """
        if not self._in_flight.acquire(blocking=False):
            logger.debug("Liquidation scan already in progress, skipping")
            return []
        try:
            now = now or self._clock()
            events: List[VenueEvent] = []
            for state in self._registry.perp_states():
                try:
                    events.extend(self._scan_market(state, now))
                except Exception as e:
                    logger.error(f"Liquidation scan failed for {state.symbol}: {e}")
            return events
        finally:
            self._in_flight.release()

    def _scan_market(self, state: MarketState, now: datetime) -> List[VenueEvent]:
        events: List[VenueEvent] = []
        with state.lock:
            mark, _ = resolve_prices(state, self._prices)
            if mark is None:
                logger.debug(f"No price for {state.symbol}, liquidation scan skipped")
                return events
            for position in self._positions.liquidatable_positions(state.symbol, mark):
                try:
                    self._liquidate(state, position, mark, now, events)
                except Exception as e:
                    logger.error(f"Liquidation failed for {position.position_id}: {e}")
        return events

    def _liquidate(self, state: MarketState, position: Position, mark: float,
                   now: datetime, events: List[VenueEvent]) -> None:
        notional = position.entry_price * position.size
        side = position.side.value
        size = position.size
        liquidation_price = position.liquidation_price

        result = self._positions.close_slice(
            position,
            state.market,
            position.size,
            mark,
            events,
            reference_id=position.position_id,
            status=PositionStatus.LIQUIDATED,
            loss_from_free=False,
        )

        with self._stats_lock:
            self._stats.total_liquidations += 1
            self._stats.total_value_liquidated += notional
            self._stats.total_bad_debt += result.bad_debt
            self._stats.last_liquidation_at = now

        logger.risk(
            "LIQUIDATED",
            f"{state.symbol} {side} position force-closed",
            owner=position.owner,
            position=position.position_id,
            size=size,
            mark=f"{mark:.4f}",
            liq_price=f"{liquidation_price:.4f}",
            pnl=f"{result.realized_pnl:.6f}",
            margin_returned=f"{result.margin_returned:.6f}",
        )
        events.append(ev.position_liquidated(position, mark, notional, result.margin_returned))

    # ─────────────────────────────────────────────────────────────────────
    # Manual checks and queries
    # ─────────────────────────────────────────────────────────────────────

    def check_position(self, position_id: str) -> Tuple[bool, List[VenueEvent]]:
        """
        Check one position now and liquidate it if triggered.

        Returns:
            (liquidated, events)
        """
        position = self._positions.get_position(position_id)
        if position is None or position.status != PositionStatus.OPEN:
            return False, []
        state = self._registry.get(position.market)
        if state is None or not state.market.is_perp:
            return False, []

        events: List[VenueEvent] = []
        with state.lock:
            # Re-read under the lock; a trade may have changed it
            position = self._positions.get_position(position_id)
            mark, _ = resolve_prices(state, self._prices)
            if mark is None or not would_be_liquidated(position, mark):
                return False, events
            self._liquidate(state, position, mark, self._clock(), events)
        return True, events

    def positions_at_risk(self, threshold_pct: Optional[float] = None) -> List[Dict[str, object]]:
        """
        Open positions whose mark price is within threshold_pct of liquidation.

        Returns:
            Entries sorted closest to liquidation first
        """
        threshold = self._config.at_risk_threshold_pct if threshold_pct is None else threshold_pct
        at_risk = []
        for state in self._registry.perp_states():
            with state.lock:
                mark, _ = resolve_prices(state, self._prices)
                if mark is None or mark <= 0:
                    continue
                for position in self._positions.open_positions(state.symbol):
                    distance_pct = abs(mark - position.liquidation_price) / mark * 100
                    if distance_pct > threshold:
                        continue
                    entry = position.to_dict()
                    entry["mark_price"] = mark
                    entry["distance_pct"] = distance_pct
                    entry["unrealized_pnl"] = calculate_unrealized_pnl(position, mark)
                    at_risk.append(entry)
        return sorted(at_risk, key=lambda e: e["distance_pct"])
