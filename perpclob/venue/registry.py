"""
Market registry: the per-market state every engine shares.

Each MarketState bundles the market definition, its order book and the
re-entrant lock that serializes everything touching that market
(placement, cancellation, synthetic refresh, and every position
mutation from trades, funding or liquidation).
"""

import itertools
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .orderbook import OrderBook
from .types import Market, MarketStatus
from ..store.base import VenueStore
from ..utils.logger import get_logger

logger = get_logger()


@dataclass
class MarketState:
    """Live state of one market."""
    market: Market
    book: OrderBook
    lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def symbol(self) -> str:
        return self.market.symbol


class MarketRegistry:
    """Explicit owner of all market states (no module-level globals)."""

    def __init__(self, store: VenueStore):
        self._store = store
        self._states: Dict[str, MarketState] = {}
        self._lock = threading.Lock()
        # Orders and trades share one sequence
        last = max(store.max_order_sequence(), store.max_trade_sequence())
        self._sequence = itertools.count(last + 1)
        self._sequence_lock = threading.Lock()

    def register(self, market: Market) -> MarketState:
        """
        Add a market.

        Raises:
            ValueError: If the symbol is already registered
        """
        with self._lock:
            if market.symbol in self._states:
                raise ValueError(f"Market already registered: {market.symbol}")
            state = MarketState(market=market, book=OrderBook(market.symbol))
            self._states[market.symbol] = state
        self._store.save_market(market)
        logger.info(f"Market registered: {market.symbol} ({market.kind.value})")
        return state

    def get(self, symbol: str) -> Optional[MarketState]:
        with self._lock:
            return self._states.get(symbol)

    def market(self, symbol: str) -> Optional[Market]:
        state = self.get(symbol)
        return state.market if state else None

    def symbols(self) -> List[str]:
        with self._lock:
            return sorted(self._states)

    def states(self) -> List[MarketState]:
        with self._lock:
            return [self._states[s] for s in sorted(self._states)]

    def active_states(self) -> List[MarketState]:
        return [s for s in self.states() if s.market.is_active]

    def perp_states(self) -> List[MarketState]:
        """Active perpetual markets (the ones funding and liquidation act on)."""
        return [s for s in self.active_states() if s.market.is_perp]

    def set_status(self, symbol: str, status: MarketStatus) -> Optional[Market]:
        state = self.get(symbol)
        if state is None:
            return None
        with state.lock:
            state.market.status = status
            self._store.save_market(state.market)
        logger.info(f"Market {symbol} status -> {status.value}")
        return state.market

    def save(self, market: Market) -> None:
        self._store.save_market(market)

    def next_sequence(self) -> int:
        """Monotonic arrival number for orders and trades."""
        with self._sequence_lock:
            return next(self._sequence)

    def rebuild_books(self) -> Dict[str, int]:
        """
        Reconstruct every book from the stored open/partial orders.

        Returns:
            Map symbol -> number of resting orders loaded
        """
        loaded = {}
        for state in self.states():
            with state.lock:
                loaded[state.symbol] = state.book.rebuild(self._store.open_orders(state.symbol))
        logger.info(f"Order books rebuilt: {loaded}")
        return loaded
