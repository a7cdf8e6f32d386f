"""
Venue orchestrator.

Thin facade that wires the components together and dispatches the
events their operations return:

1. ledger: Ledger (balances, change log)
2. registry: MarketRegistry (market state, books, per-market locks)
3. positions: PositionManager (margin, PnL, liquidation price)
4. matching: MatchingEngine (place / cancel / synthetic liquidity)
5. funding: FundingEngine (periodic payments)
6. liquidation: LiquidationMonitor (forced closes)
7. dispatcher: EventDispatcher (sinks)

Domain operations run under the market lock and return events; the
facade dispatches them after the lock is released. Funding and
liquidation run on IntervalJob threads that the admin surface can
start and stop.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .funding import FundingConfig, FundingEngine
from .ledger import Ledger, LedgerConfig
from .liquidation import LiquidationConfig, LiquidationMonitor
from .matching import MatchingEngine
from .positions import PositionManager
from .pricing import OraclePriceCache, PriceSource, resolve_prices
from .registry import MarketRegistry
from .types import (
    BalanceChange,
    BalanceResult,
    CancelOrderResult,
    ErrorCode,
    FundingPayment,
    Market,
    MarketStatus,
    Order,
    OrderType,
    PlaceOrderResult,
    Position,
    PositionStatus,
    Side,
    Trade,
)
from ..config.constants import (
    DEFAULT_AT_RISK_THRESHOLD_PCT,
    DEFAULT_BOOK_DEPTH,
    DEFAULT_FUNDING_CHECK_SECONDS,
    DEFAULT_LIQUIDATION_CHECK_SECONDS,
    FUNDING_HISTORY_SIZE,
)
from ..engine.clock import SystemClock
from ..engine.scheduler import IntervalJob
from ..events import types as ev
from ..events.sinks import EventDispatcher, EventSink
from ..events.types import VenueEvent
from ..store.base import VenueStore
from ..store.memory_store import MemoryStore
from ..utils.logger import get_logger

logger = get_logger()


@dataclass
class VenueConfig:
    """Configuration for the venue orchestrator."""
    funding_check_seconds: float = DEFAULT_FUNDING_CHECK_SECONDS
    liquidation_check_seconds: float = DEFAULT_LIQUIDATION_CHECK_SECONDS
    funding_history_size: int = FUNDING_HISTORY_SIZE
    at_risk_threshold_pct: float = DEFAULT_AT_RISK_THRESHOLD_PCT
    check_ledger_invariants: bool = False


class Venue:
    """Simulated perpetuals venue."""

    def __init__(
        self,
        markets: Iterable[Market] = (),
        store: Optional[VenueStore] = None,
        price_source: Optional[PriceSource] = None,
        sinks: Optional[Iterable[EventSink]] = None,
        config: Optional[VenueConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the venue.

        Args:
            markets: Markets to list. When empty, markets saved in the store are used.
            store: Record store (defaults to an in-memory store)
            price_source: Index/mark price provider (defaults to an OraclePriceCache)
            sinks: Event sinks
            config: Optional venue configuration
            clock: Zero-argument callable returning the current UTC time
        """
        self._config = config or VenueConfig()
        self.clock = clock or SystemClock()
        self.store = store or MemoryStore()
        self.prices = price_source or OraclePriceCache()
        self.dispatcher = EventDispatcher(sinks)

        self.ledger = Ledger(
            store=self.store,
            config=LedgerConfig(check_invariants=self._config.check_ledger_invariants),
            clock=self.clock,
        )
        self.registry = MarketRegistry(self.store)
        markets = list(markets) or self.store.load_markets()
        for market in markets:
            self.registry.register(market)

        self.positions = PositionManager(self.ledger, self.store, clock=self.clock)
        self.matching = MatchingEngine(
            self.registry, self.ledger, self.store, self.positions, clock=self.clock
        )
        self.funding = FundingEngine(
            self.registry,
            self.store,
            self.ledger,
            self.positions,
            price_source=self.prices,
            config=FundingConfig(history_size=self._config.funding_history_size),
            clock=self.clock,
        )
        self.liquidation = LiquidationMonitor(
            self.registry,
            self.positions,
            price_source=self.prices,
            config=LiquidationConfig(at_risk_threshold_pct=self._config.at_risk_threshold_pct),
            clock=self.clock,
        )

        self._funding_job = IntervalJob(
            "funding-engine",
            self._config.funding_check_seconds,
            self.run_funding,
            self.clock,
            on_state_change=self.funding.set_running,
        )
        self._liquidation_job = IntervalJob(
            "liquidation-monitor",
            self._config.liquidation_check_seconds,
            self.run_liquidations,
            self.clock,
            on_state_change=self.liquidation.set_running,
        )

        self.rebuild_books()
        logger.info(f"Venue initialized: markets={self.registry.symbols()}")

    # ─────────────────────────────────────────────────────────────────────
    # Markets
    # ─────────────────────────────────────────────────────────────────────

    def markets(self) -> List[Market]:
        return [s.market for s in self.registry.states()]

    def get_market(self, symbol: str) -> Optional[Market]:
        return self.registry.market(symbol)

    def list_market(self, market: Market) -> Market:
        """List a new market at runtime."""
        return self.registry.register(market).market

    def set_market_status(self, symbol: str, status: MarketStatus) -> Optional[Market]:
        return self.registry.set_status(symbol, MarketStatus(status))

    def set_index_price(self, symbol: str, price: float) -> None:
        """Push an oracle price (external pollers call this)."""
        if isinstance(self.prices, OraclePriceCache):
            self.prices.set_price(symbol, price)
        state = self.registry.get(symbol)
        if state is not None:
            with state.lock:
                state.market.oracle_price = price
                self.registry.save(state.market)

    def mark_price(self, symbol: str) -> Optional[float]:
        state = self.registry.get(symbol)
        if state is None:
            return None
        with state.lock:
            mark, _ = resolve_prices(state, self.prices)
        return mark

    def order_book(self, symbol: str, depth: int = DEFAULT_BOOK_DEPTH) -> Optional[Dict[str, object]]:
        state = self.registry.get(symbol)
        if state is None:
            return None
        with state.lock:
            return state.book.snapshot(depth)

    def rebuild_books(self) -> Dict[str, int]:
        """Rebuild every book from stored resting orders."""
        return self.registry.rebuild_books()

    # ─────────────────────────────────────────────────────────────────────
    # Accounts
    # ─────────────────────────────────────────────────────────────────────

    def deposit(self, owner: str, amount: float, reason: str = "Deposit") -> BalanceResult:
        result = self.ledger.credit(owner, amount, reason)
        if result.success:
            self._dispatch([ev.balance_changed(self.ledger.get_balance(owner), reason)])
        return result

    def withdraw(self, owner: str, amount: float, reason: str = "Withdrawal") -> BalanceResult:
        result = self.ledger.debit(owner, amount, reason)
        if result.success:
            self._dispatch([ev.balance_changed(self.ledger.get_balance(owner), reason)])
        return result

    def get_balance(self, owner: str):
        return self.ledger.get_balance(owner)

    def balance_history(self, owner: str, limit: int = 50, offset: int = 0) -> List[BalanceChange]:
        return self.ledger.history(owner, limit, offset)

    # ─────────────────────────────────────────────────────────────────────
    # Orders
    # ─────────────────────────────────────────────────────────────────────

    def place_order(
        self,
        market: str,
        owner: Optional[str],
        side: Side,
        order_type: OrderType,
        quantity: float,
        price: Optional[float] = None,
        post_only: bool = False,
        reduce_only: bool = False,
    ) -> PlaceOrderResult:
        result = self.matching.place_order(
            market, owner, side, order_type, quantity,
            price=price, post_only=post_only, reduce_only=reduce_only,
        )
        self._dispatch(result.events)
        return result

    def cancel_order(self, order_id: str, owner: Optional[str]) -> CancelOrderResult:
        result = self.matching.cancel_order(order_id, owner)
        self._dispatch(result.events)
        return result

    def refresh_synthetic_liquidity(
        self, market: str, quotes: Iterable[Tuple[Side, float, float]]
    ) -> PlaceOrderResult:
        result = self.matching.refresh_synthetic_liquidity(market, quotes)
        self._dispatch(result.events)
        return result

    def cancel_synthetic_orders(self, market: str) -> int:
        count, events = self.matching.cancel_synthetic_orders(market)
        self._dispatch(events)
        return count

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.matching.get_order(order_id)

    def open_orders(self, owner: str, market: Optional[str] = None) -> List[Order]:
        return self.matching.open_orders(owner, market)

    def order_history(self, owner: str, market: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> List[Order]:
        return self.matching.order_history(owner, market, limit, offset)

    def trade_history(self, owner: str, market: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> List[Trade]:
        return self.matching.trade_history(owner, market, limit, offset)

    def recent_trades(self, market: str, limit: int = 50) -> List[Trade]:
        return self.matching.recent_trades(market, limit)

    # ─────────────────────────────────────────────────────────────────────
    # Positions
    # ─────────────────────────────────────────────────────────────────────

    def get_position(self, owner: str, market: str) -> Optional[Position]:
        return self.positions.get_open_position(owner, market)

    def owner_positions(self, owner: str,
                        status: Optional[PositionStatus] = None) -> List[Position]:
        return self.store.positions_for_owner(owner, status)

    def position_history(self, owner: str, limit: int = 50, offset: int = 0) -> List[Position]:
        return self.positions.position_history(owner, limit, offset)

    def position_summary(self, owner: str) -> Dict[str, object]:
        return self.positions.position_summary(owner, self.mark_price)

    # ─────────────────────────────────────────────────────────────────────
    # Funding and liquidation
    # ─────────────────────────────────────────────────────────────────────

    def run_funding(self, now: Optional[datetime] = None) -> List[VenueEvent]:
        """One funding tick (what the funding thread runs)."""
        events = self.funding.tick(now)
        self._dispatch(events)
        return events

    def run_liquidations(self, now: Optional[datetime] = None) -> List[VenueEvent]:
        """One liquidation tick (what the liquidation thread runs)."""
        events = self.liquidation.tick(now)
        self._dispatch(events)
        return events

    def trigger_funding(self, market: str) -> Tuple[Optional[FundingPayment], Optional[ErrorCode]]:
        """
        Force a funding round for one market.

        Returns:
            (payment, None) on success, (None, error code) otherwise
        """
        state = self.registry.get(market)
        if state is None:
            return None, ErrorCode.MARKET_NOT_FOUND
        if not state.market.is_perp:
            return None, ErrorCode.NOT_A_PERP
        payment, events = self.funding.trigger(market)
        self._dispatch(events)
        if payment is None:
            return None, ErrorCode.NO_PRICE_AVAILABLE
        return payment, None

    def check_liquidation(self, position_id: str) -> bool:
        liquidated, events = self.liquidation.check_position(position_id)
        self._dispatch(events)
        return liquidated

    def funding_history(self, market: str, limit: int = 20) -> List[FundingPayment]:
        return self.funding.history(market, limit)

    def funding_rate_info(self, market: str) -> Optional[Dict[str, object]]:
        return self.funding.funding_rate_info(market)

    def funding_stats(self) -> Dict[str, object]:
        return self.funding.stats.to_dict()

    def liquidation_stats(self) -> Dict[str, object]:
        return self.liquidation.stats.to_dict()

    def positions_at_risk(self, threshold_pct: Optional[float] = None) -> List[Dict[str, object]]:
        return self.liquidation.positions_at_risk(threshold_pct)

    def venue_stats(self) -> Dict[str, object]:
        return {
            "markets": self.registry.symbols(),
            "matching": self.matching.stats.to_dict(),
            "funding": self.funding_stats(),
            "liquidation": self.liquidation_stats(),
            "ledger": self.ledger.totals(),
            "event_sink_failures": self.dispatcher.failures,
        }

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    def start_funding_engine(self) -> bool:
        if not self._funding_job.is_running:
            self.funding.initialize_funding_times()
        return self._funding_job.start()

    def stop_funding_engine(self) -> bool:
        return self._funding_job.stop()

    def start_liquidation_monitor(self) -> bool:
        return self._liquidation_job.start()

    def stop_liquidation_monitor(self) -> bool:
        return self._liquidation_job.stop()

    def engine_status(self) -> Dict[str, object]:
        return {
            "funding": self._funding_job.status(),
            "liquidation": self._liquidation_job.status(),
        }

    def start(self) -> None:
        self.start_funding_engine()
        self.start_liquidation_monitor()

    def shutdown(self) -> None:
        """Stop background jobs and release the store and sinks."""
        self.stop_funding_engine()
        self.stop_liquidation_monitor()
        self.dispatcher.close()
        self.store.close()
        logger.info("Venue shut down")

    def _dispatch(self, events: List[VenueEvent]) -> None:
        if events:
            self.dispatcher.dispatch(events)


def create_venue(
    config=None,
    sinks: Optional[Iterable[EventSink]] = None,
    price_source: Optional[PriceSource] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Venue:
    """
    Build a Venue from the environment configuration.

    Args:
        config: Config instance (defaults to get_config())
        sinks: Extra event sinks; a JournalSink is added when a journal path is set
        price_source: Optional price source
        clock: Optional clock

    Returns:
        Venue with markets from the configured YAML file (or the store on restart)
    """
    from ..config.config import StoreBackend, get_config
    from ..config.markets import load_markets
    from ..events.sinks import JournalSink, LoggingSink
    from ..store.duckdb_store import DuckDBStore

    config = config or get_config()

    if config.store.backend == StoreBackend.DUCKDB:
        store: VenueStore = DuckDBStore(config.store.db_path)
    else:
        store = MemoryStore()

    markets: List[Market] = []
    if not store.load_markets():
        markets = load_markets(config.markets.markets_file)

    all_sinks: List[EventSink] = [LoggingSink(), *(sinks or [])]
    if config.store.journal_path:
        all_sinks.append(JournalSink(config.store.journal_path))

    return Venue(
        markets=markets,
        store=store,
        price_source=price_source,
        sinks=all_sinks,
        config=VenueConfig(
            funding_check_seconds=config.engine.funding_check_seconds,
            liquidation_check_seconds=config.engine.liquidation_check_seconds,
            funding_history_size=config.engine.funding_history_size,
        ),
        clock=clock,
    )
