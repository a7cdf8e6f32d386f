"""
Persistence interface for venue records.

The domain only talks to VenueStore. Implementations:
- MemoryStore: dict-backed, default for tests and demos
- DuckDBStore: durable single-file store

Query contracts:
- resting orders at a price level come back in arrival (sequence) order
- open orders means status open or partial
- histories come back newest first
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..venue.types import (
    Balance,
    BalanceChange,
    Market,
    Order,
    Position,
    PositionStatus,
    Side,
    Trade,
)


class VenueStore(ABC):
    """Abstract record store."""

    # ─────────────────────────────────────────────────────────────────────
    # Markets
    # ─────────────────────────────────────────────────────────────────────

    @abstractmethod
    def save_market(self, market: Market) -> None:
        ...

    @abstractmethod
    def load_markets(self) -> List[Market]:
        ...

    # ─────────────────────────────────────────────────────────────────────
    # Orders
    # ─────────────────────────────────────────────────────────────────────

    @abstractmethod
    def save_order(self, order: Order) -> None:
        """Insert or replace an order."""
        ...

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    def open_orders(self, market: str) -> List[Order]:
        """Open/partial orders of a market ordered by sequence."""
        ...

    @abstractmethod
    def open_orders_for_owner(self, owner: str, market: Optional[str] = None) -> List[Order]:
        ...

    @abstractmethod
    def resting_orders_at(self, market: str, side: Side, price: float) -> List[Order]:
        """Open/partial orders at one price level ordered by sequence."""
        ...

    @abstractmethod
    def synthetic_open_orders(self, market: str) -> List[Order]:
        ...

    @abstractmethod
    def order_history(self, owner: str, market: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> List[Order]:
        """Orders of an owner newest first."""
        ...

    @abstractmethod
    def max_order_sequence(self) -> int:
        ...

    # ─────────────────────────────────────────────────────────────────────
    # Trades
    # ─────────────────────────────────────────────────────────────────────

    @abstractmethod
    def append_trade(self, trade: Trade) -> None:
        ...

    @abstractmethod
    def recent_trades(self, market: str, limit: int = 50) -> List[Trade]:
        ...

    @abstractmethod
    def trades_for_owner(self, owner: str, market: Optional[str] = None,
                         limit: int = 50, offset: int = 0) -> List[Trade]:
        ...

    @abstractmethod
    def max_trade_sequence(self) -> int:
        ...

    # ─────────────────────────────────────────────────────────────────────
    # Positions
    # ─────────────────────────────────────────────────────────────────────

    @abstractmethod
    def save_position(self, position: Position) -> None:
        ...

    @abstractmethod
    def get_position(self, position_id: str) -> Optional[Position]:
        ...

    @abstractmethod
    def open_position(self, owner: str, market: str) -> Optional[Position]:
        ...

    @abstractmethod
    def open_positions(self, market: Optional[str] = None) -> List[Position]:
        ...

    @abstractmethod
    def positions_for_owner(self, owner: str,
                            status: Optional[PositionStatus] = None) -> List[Position]:
        ...

    # ─────────────────────────────────────────────────────────────────────
    # Balances
    # ─────────────────────────────────────────────────────────────────────

    @abstractmethod
    def save_balance(self, balance: Balance) -> None:
        """Persist account totals (the change log is appended separately)."""
        ...

    @abstractmethod
    def append_balance_change(self, owner: str, change: BalanceChange) -> None:
        ...

    @abstractmethod
    def load_balances(self) -> List[Balance]:
        """All accounts with their change logs in append order."""
        ...

    def close(self) -> None:
        """Release resources."""
