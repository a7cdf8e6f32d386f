"""
Price inputs for funding and liquidation.

PriceSource is the narrow interface to external price polling:
- get_index_price: reference (oracle) price of the underlying
- get_mark_price_candidate: external mark estimate used when the book
  has no two-sided market

Mark price blend:
  mark = 0.7 * book mid + 0.3 * index   when both are known
       = whichever one is known         otherwise
       = None                           when neither is (caller skips)
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from ..config.constants import MARK_INDEX_WEIGHT, MARK_MID_WEIGHT


class PriceSource(ABC):
    """External price provider."""

    @abstractmethod
    def get_index_price(self, market: str) -> Optional[float]:
        ...

    def get_mark_price_candidate(self, market: str) -> Optional[float]:
        return self.get_index_price(market)


class OraclePriceCache(PriceSource):
    """
    Thread-safe cache that external pollers push prices into.

    A mark candidate may be pushed separately; otherwise the index
    doubles as the candidate.
    """

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self._lock = threading.Lock()
        self._index: Dict[str, float] = dict(prices or {})
        self._mark: Dict[str, float] = {}

    def set_price(self, market: str, price: float, mark: Optional[float] = None) -> None:
        if price is None or price <= 0:
            raise ValueError(f"Price must be > 0, got {price}")
        with self._lock:
            self._index[market] = price
            if mark is not None:
                self._mark[market] = mark

    def clear(self, market: str) -> None:
        with self._lock:
            self._index.pop(market, None)
            self._mark.pop(market, None)

    def get_index_price(self, market: str) -> Optional[float]:
        with self._lock:
            return self._index.get(market)

    def get_mark_price_candidate(self, market: str) -> Optional[float]:
        with self._lock:
            return self._mark.get(market, self._index.get(market))


def blend_mark_price(mid: Optional[float], index: Optional[float]) -> Optional[float]:
    """Blend book mid and index into a mark price."""
    if mid is not None and index is not None:
        return MARK_MID_WEIGHT * mid + MARK_INDEX_WEIGHT * index
    if mid is not None:
        return mid
    return index


def resolve_prices(state, source: Optional[PriceSource]) -> Tuple[Optional[float], Optional[float]]:
    """
    Current (mark, index) of a market. Caller holds the market lock.

    The index comes from the price source, falling back to the market's
    configured oracle price. When the book has no two-sided market and
    no index is known, the source's mark candidate is used as the mark.
    """
    symbol = state.market.symbol
    index = source.get_index_price(symbol) if source else None
    if index is None:
        index = state.market.oracle_price
    mark = blend_mark_price(state.book.mid_price(), index)
    if mark is None and source is not None:
        mark = source.get_mark_price_candidate(symbol)
    return mark, index
