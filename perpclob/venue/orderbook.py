"""
Aggregated price-level order book.

One OrderBook per market keeps, per side, a map price -> BookLevel
(total resting quantity and number of orders). Individual orders and
their time priority live in the store; the book is a cache that can be
rebuilt from the open/partial orders at any time.

Not thread-safe on its own: callers hold the market lock.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .types import EPSILON, Order, Side, utcnow
from ..config.constants import DEFAULT_BOOK_DEPTH


@dataclass
class BookLevel:
    """Aggregated resting interest at one price."""
    price: float
    quantity: float
    order_count: int

    @property
    def total(self) -> float:
        return self.price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "quantity": self.quantity,
            "order_count": self.order_count,
            "total": self.total,
        }


class OrderBook:
    """Bid and ask levels for one market."""

    def __init__(self, market: str):
        self.market = market
        self._bids: Dict[float, BookLevel] = {}
        self._asks: Dict[float, BookLevel] = {}
        self.updated_at: Optional[datetime] = None

    def _side(self, side: Side) -> Dict[float, BookLevel]:
        return self._bids if side == Side.BUY else self._asks

    # ─────────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────────

    def add_level(self, side: Side, price: float, quantity: float) -> None:
        """Add one resting order's quantity at price."""
        if quantity <= EPSILON:
            return
        levels = self._side(side)
        level = levels.get(price)
        if level is None:
            levels[price] = BookLevel(price=price, quantity=quantity, order_count=1)
        else:
            level.quantity += quantity
            level.order_count += 1
        self.updated_at = utcnow()

    def remove_quantity(self, side: Side, price: float, quantity: float,
                        order_done: bool = True) -> None:
        """
        Remove quantity from a level.

        Args:
            side: Book side
            price: Level price
            quantity: Quantity leaving the book
            order_done: The order behind it left the book entirely
                (filled or cancelled), so the order count drops too
        """
        levels = self._side(side)
        level = levels.get(price)
        if level is None:
            return
        level.quantity -= quantity
        if order_done:
            level.order_count -= 1
        if level.quantity <= EPSILON or level.order_count <= 0:
            del levels[price]
        self.updated_at = utcnow()

    def clear(self) -> None:
        self._bids.clear()
        self._asks.clear()
        self.updated_at = utcnow()

    def rebuild(self, orders: Iterable[Order]) -> int:
        """
        Reconstruct the book from resting orders.

        Returns:
            Number of orders loaded
        """
        self.clear()
        count = 0
        for order in orders:
            if order.market != self.market or not order.status.is_resting():
                continue
            if order.remaining_quantity <= EPSILON:
                continue
            self.add_level(order.side, order.price, order.remaining_quantity)
            count += 1
        return count

    # ─────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────

    def best_bid(self) -> Optional[float]:
        return max(self._bids) if self._bids else None

    def best_ask(self) -> Optional[float]:
        return min(self._asks) if self._asks else None

    def best_price(self, side: Side) -> Optional[float]:
        return self.best_bid() if side == Side.BUY else self.best_ask()

    def spread(self) -> Optional[float]:
        bid, ask = self.best_bid(), self.best_ask()
        if bid is None or ask is None:
            return None
        return ask - bid

    def mid_price(self) -> Optional[float]:
        bid, ask = self.best_bid(), self.best_ask()
        if bid is None or ask is None:
            return None
        return (bid + ask) / 2

    def prices(self, side: Side) -> List[float]:
        """Level prices best first (bids descending, asks ascending)."""
        return sorted(self._side(side), reverse=(side == Side.BUY))

    def level(self, side: Side, price: float) -> Optional[BookLevel]:
        return self._side(side).get(price)

    def depth(self, side: Side) -> float:
        return sum(level.quantity for level in self._side(side).values())

    def is_empty(self, side: Optional[Side] = None) -> bool:
        if side is None:
            return not self._bids and not self._asks
        return not self._side(side)

    def sweep(self, taker_side: Side, quantity: float,
              limit_price: Optional[float] = None) -> Tuple[float, float, Optional[float]]:
        """
        Walk the opposite side as a taker would.

        Args:
            taker_side: Side of the incoming order
            quantity: Quantity to take
            limit_price: Stop at levels worse than this price

        Returns:
            (fillable quantity, notional, worst price reached)
        """
        book_side = taker_side.opposite()
        remaining = quantity
        notional = 0.0
        worst = None
        for price in self.prices(book_side):
            if remaining <= EPSILON:
                break
            if limit_price is not None:
                if taker_side == Side.BUY and price > limit_price:
                    break
                if taker_side == Side.SELL and price < limit_price:
                    break
            take = min(remaining, self._side(book_side)[price].quantity)
            notional += take * price
            remaining -= take
            worst = price
        return quantity - max(remaining, 0.0), notional, worst

    def snapshot(self, depth: int = DEFAULT_BOOK_DEPTH) -> Dict[str, Any]:
        """
        Levels best first, each annotated with `total = price * quantity`.

        Returns:
            {"market", "bids", "asks", "best_bid", "best_ask", "spread", "updated_at"}
        """
        bids = [self._bids[p].to_dict() for p in self.prices(Side.BUY)[:depth]]
        asks = [self._asks[p].to_dict() for p in self.prices(Side.SELL)[:depth]]
        return {
            "market": self.market,
            "bids": bids,
            "asks": asks,
            "best_bid": self.best_bid(),
            "best_ask": self.best_ask(),
            "spread": self.spread(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
