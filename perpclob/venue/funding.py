"""
Funding engine: periodic payments between longs and shorts.

For every active market whose next funding time has passed:
  mark  = 0.7 * book mid + 0.3 * index (or whichever is known)
  rate  = clamp(0.1 * (mark - index) / index, -1%, +1%), 6 decimals
  owed  = size * mark * rate * (+1 long, -1 short)

Positive owed: the owner pays. The payment is drawn from the position's
locked margin first, then free balance. If the account cannot cover it,
the position's remaining margin is forfeited up to the amount owed and
its liquidation price recomputed; the round itself never fails.
Negative owed: the owner is credited.

next_funding_time advances one interval per round whether or not any
positions existed. Each round is kept in a bounded per-market history.
"""

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, List, Optional

from .ledger import Ledger
from .positions import PositionManager
from .pricing import PriceSource, resolve_prices
from .registry import MarketRegistry, MarketState
from .types import (
    EPSILON,
    FundingPayment,
    Position,
    PositionSide,
    utcnow,
)
from ..config.constants import (
    FUNDING_DAMPENER,
    FUNDING_HISTORY_SIZE,
    FUNDING_RATE_CAP,
    FUNDING_RATE_DECIMALS,
    FUNDING_RATE_FLOOR,
)
from ..events import types as ev
from ..events.types import VenueEvent
from ..store.base import VenueStore
from ..utils.logger import get_logger

logger = get_logger()


@dataclass
class FundingConfig:
    """Configuration for funding settlement."""
    dampener: float = FUNDING_DAMPENER
    rate_cap: float = FUNDING_RATE_CAP
    rate_floor: float = FUNDING_RATE_FLOOR
    history_size: int = FUNDING_HISTORY_SIZE


@dataclass
class FundingStats:
    """Running totals across all markets."""
    total_funding_processed: int = 0
    total_payments_distributed: float = 0.0
    total_margin_forfeited: float = 0.0
    last_funding_at: Optional[datetime] = None
    is_running: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_funding_processed": self.total_funding_processed,
            "total_payments_distributed": self.total_payments_distributed,
            "total_margin_forfeited": self.total_margin_forfeited,
            "last_funding_at": self.last_funding_at.isoformat() if self.last_funding_at else None,
            "is_running": self.is_running,
        }


def annualized_rate(rate: float, interval_hours: float) -> float:
    """Per-interval rate scaled to a year."""
    return rate * (365 * 24 / interval_hours)


def next_interval_boundary(now: datetime, interval_hours: float) -> datetime:
    """First UTC boundary of the funding interval strictly after now."""
    interval = interval_hours * 3600
    ts = now.timestamp()
    boundary = (int(ts // interval) + 1) * interval
    return datetime.fromtimestamp(boundary, tz=timezone.utc)


class FundingEngine:
    """Computes funding rates and settles payments per market."""

    def __init__(
        self,
        registry: MarketRegistry,
        store: VenueStore,
        ledger: Ledger,
        positions: PositionManager,
        price_source: Optional[PriceSource] = None,
        config: Optional[FundingConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._registry = registry
        self._store = store
        self._ledger = ledger
        self._positions = positions
        self._prices = price_source
        self._config = config or FundingConfig()
        self._clock = clock or utcnow
        self._in_flight = threading.Lock()
        self._history: Dict[str, Deque[FundingPayment]] = {}
        self._history_lock = threading.Lock()
        self._stats = FundingStats()

    @property
    def stats(self) -> FundingStats:
        return self._stats

    def set_running(self, running: bool) -> None:
        self._stats.is_running = running

    # ─────────────────────────────────────────────────────────────────────
    # Rate
    # ─────────────────────────────────────────────────────────────────────

    def calculate_funding_rate(self, mark: Optional[float], index: Optional[float]) -> float:
        """Dampened, clamped premium of mark over index (0 without an index)."""
        if mark is None or index is None or index <= 0:
            return 0.0
        raw = self._config.dampener * (mark - index) / index
        clamped = max(self._config.rate_floor, min(self._config.rate_cap, raw))
        return round(clamped, FUNDING_RATE_DECIMALS)

    # ─────────────────────────────────────────────────────────────────────
    # Scheduling
    # ─────────────────────────────────────────────────────────────────────

    def initialize_funding_times(self, now: Optional[datetime] = None) -> None:
        """Align every market's next funding time to its UTC interval boundary."""
        now = now or self._clock()
        for state in self._registry.states():
            if not state.market.is_perp:
                continue
            with state.lock:
                market = state.market
                market.next_funding_time = next_interval_boundary(
                    now, market.funding_interval_hours
                )
                self._registry.save(market)
                logger.debug(f"{market.symbol} next funding at {market.next_funding_time.isoformat()}")

    def tick(self, now: Optional[datetime] = None) -> List[VenueEvent]:
        """
        Settle every active perp market whose funding time has come.

        Concurrent invocations skip instead of running twice.

        Returns:
            Events to dispatch
        """
        if not self._in_flight.acquire(blocking=False):
            logger.debug("Funding round already in progress, skipping")
            return []
        try:
            now = now or self._clock()
            events: List[VenueEvent] = []
            for state in self._registry.perp_states():
                market = state.market
                if market.next_funding_time is None:
                    with state.lock:
                        market.next_funding_time = next_interval_boundary(
                            now, market.funding_interval_hours
                        )
                        self._registry.save(market)
                    continue
                if market.next_funding_time > now:
                    continue
                try:
                    _, market_events = self._settle_market(state, now, scheduled=True)
                    events.extend(market_events)
                except Exception as e:
                    logger.error(f"Funding failed for {market.symbol}: {e}")
            return events
        finally:
            self._in_flight.release()

    def trigger(self, market: str, now: Optional[datetime] = None):
        """
        Force a funding round for one market now.

        Returns:
            (FundingPayment or None when no price was available, events)
        """
        state = self._registry.get(market)
        if state is None or not state.market.is_perp:
            return None, []
        return self._settle_market(state, now or self._clock())

    # ─────────────────────────────────────────────────────────────────────
    # Settlement
    # ─────────────────────────────────────────────────────────────────────

    def _settle_market(self, state: MarketState, now: datetime, scheduled: bool = False):
        events: List[VenueEvent] = []
        with state.lock:
            market = state.market
            # A forced round may have moved the schedule since tick read it
            if scheduled and (market.next_funding_time is None or market.next_funding_time > now):
                return None, events
            mark, index = resolve_prices(state, self._prices)
            if mark is None:
                logger.warning(f"No price for {market.symbol}, funding round skipped")
                return None, events

            rate = self.calculate_funding_rate(mark, index)
            market.funding_rate = rate

            long_paid = 0.0
            short_paid = 0.0
            long_size = 0.0
            short_size = 0.0
            positions = self._store.open_positions(market.symbol)

            for position in positions:
                try:
                    paid = self._settle_position(state, position, mark, rate, now, events)
                except Exception as e:
                    logger.error(f"Funding failed for position {position.position_id}: {e}")
                    continue
                if position.side == PositionSide.LONG:
                    long_paid += paid
                    long_size += position.size
                else:
                    short_paid += paid
                    short_size += position.size

            interval = timedelta(hours=market.funding_interval_hours)
            next_time = (market.next_funding_time or now) + interval
            if next_time <= now:
                next_time = now + interval
            market.next_funding_time = next_time
            self._registry.save(market)

            payment = FundingPayment(
                market=market.symbol,
                funding_rate=rate,
                mark_price=mark,
                index_price=index,
                long_payment=long_paid,
                short_payment=short_paid,
                total_long_size=long_size,
                total_short_size=short_size,
                positions_count=len(positions),
                timestamp=now,
            )

        self._record(payment)
        events.append(ev.funding_settled(payment))
        logger.funding(
            market.symbol, rate,
            mark=f"{mark:.4f}", index=index, positions=len(positions),
            long_paid=f"{long_paid:.6f}", short_paid=f"{short_paid:.6f}",
        )
        return payment, events

    def _settle_position(self, state: MarketState, position: Position, mark: float,
                         rate: float, now: datetime, events: List[VenueEvent]) -> float:
        """
        Apply one position's funding.

        Returns:
            Amount paid by the owner (negative when received)
        """
        owed = position.size * mark * rate * position.side.sign
        position.last_funding_time = now
        if abs(owed) <= EPSILON:
            self._store.save_position(position)
            return 0.0

        if owed < 0:
            received = -owed
            self._ledger.credit(position.owner, received, "Funding received", position.position_id)
            position.accumulated_funding += received
            paid = -received
        else:
            paid = self._collect(position, owed)
            position.accumulated_funding -= paid

        position.updated_at = now
        self._positions.refresh(position, state.market)
        with self._history_lock:
            self._stats.total_payments_distributed += abs(paid)

        events.append(ev.funding_paid(position, paid, rate))
        events.append(ev.position_updated(position))
        events.append(ev.balance_changed(self._ledger.get_balance(position.owner), "funding"))
        return paid

    def _collect(self, position: Position, owed: float) -> float:
        """Debit a funding payment; forfeit margin when the account falls short."""
        debit = self._ledger.debit_locked_first(
            position.owner, owed, "Funding payment", position.position_id,
            max_from_locked=position.margin,
        )
        if not debit.success:
            forfeit = min(owed, position.margin)
            collected = 0.0
            from_locked = 0.0
            if forfeit > EPSILON:
                debit = self._ledger.debit_locked_first(
                    position.owner, forfeit, "Funding margin forfeit", position.position_id,
                    max_from_locked=position.margin, allow_partial=True,
                )
                collected = debit.amount
                from_locked = debit.from_locked
            with self._history_lock:
                self._stats.total_margin_forfeited += from_locked
            logger.risk(
                "MARGIN_FORFEIT",
                "Funding payment exceeds balance, margin reduced",
                owner=position.owner,
                position=position.position_id,
                owed=f"{owed:.6f}",
                collected=f"{collected:.6f}",
            )
            position.margin = max(0.0, position.margin - from_locked)
            return collected

        position.margin = max(0.0, position.margin - debit.from_locked)
        return debit.amount

    def _record(self, payment: FundingPayment) -> None:
        with self._history_lock:
            history = self._history.setdefault(
                payment.market, deque(maxlen=self._config.history_size)
            )
            history.appendleft(payment)
            self._stats.total_funding_processed += 1
            self._stats.last_funding_at = payment.timestamp

    # ─────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────

    def history(self, market: str, limit: int = 20) -> List[FundingPayment]:
        """Funding rounds newest first."""
        with self._history_lock:
            return list(self._history.get(market, ()))[:limit]

    def funding_rate_info(self, market: str) -> Optional[Dict[str, object]]:
        """Current and predicted funding for a market."""
        state = self._registry.get(market)
        if state is None:
            return None
        with state.lock:
            mark, index = resolve_prices(state, self._prices)
            m = state.market
            predicted = self.calculate_funding_rate(mark, index)
            return {
                "market": m.symbol,
                "funding_rate": m.funding_rate,
                "predicted_funding_rate": predicted,
                "annualized_rate": annualized_rate(m.funding_rate, m.funding_interval_hours),
                "mark_price": mark,
                "index_price": index,
                "funding_interval_hours": m.funding_interval_hours,
                "next_funding_time": m.next_funding_time.isoformat() if m.next_funding_time else None,
            }

    def predicted_funding_rate(self, market: str) -> Optional[float]:
        info = self.funding_rate_info(market)
        return info["predicted_funding_rate"] if info else None

    def estimate_payment(self, market: str, side: PositionSide, size: float) -> Optional[float]:
        """
        Estimated next payment for a hypothetical position.

        Returns:
            Amount the owner would pay (negative when receiving), or None without a price
        """
        info = self.funding_rate_info(market)
        if info is None or info["mark_price"] is None:
            return None
        side = PositionSide(side)
        return size * info["mark_price"] * info["predicted_funding_rate"] * side.sign
