"""
In-memory VenueStore.

Records are copied on the way in and out so callers observe the same
semantics as with a durable store: a mutation is visible only after
it is saved.

Lookups on the matching path go through indexes kept up to date by the
save methods, so their cost follows the live book and open positions
rather than the whole history:
- resting order ids per market and per (market, side, price)
- order ids, trades and position ids per owner
- the open position id per (owner, market)
"""

import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .base import VenueStore
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

LevelKey = Tuple[str, Side, float]


class MemoryStore(VenueStore):
    """Dict-backed store guarded by one lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._markets: Dict[str, Market] = {}
        self._balances: Dict[str, Balance] = {}
        self._changes: Dict[str, List[BalanceChange]] = {}

        self._orders: Dict[str, Order] = {}
        self._resting_by_market: Dict[str, Set[str]] = {}
        self._resting_by_level: Dict[LevelKey, Set[str]] = {}
        self._orders_by_owner: Dict[str, List[str]] = {}
        self._max_order_sequence = 0

        self._trades_by_market: Dict[str, List[Trade]] = {}
        self._trades_by_owner: Dict[str, List[Trade]] = {}
        self._max_trade_sequence = 0

        self._positions: Dict[str, Position] = {}
        self._open_position_ids: Dict[Tuple[str, str], str] = {}
        self._positions_by_owner: Dict[str, List[str]] = {}

    # Markets

    def save_market(self, market: Market) -> None:
        with self._lock:
            self._markets[market.symbol] = replace(market)

    def load_markets(self) -> List[Market]:
        with self._lock:
            return [replace(m) for m in self._markets.values()]

    # Orders

    def save_order(self, order: Order) -> None:
        with self._lock:
            if order.order_id not in self._orders and order.owner is not None:
                self._orders_by_owner.setdefault(order.owner, []).append(order.order_id)
            self._orders[order.order_id] = replace(order)
            self._max_order_sequence = max(self._max_order_sequence, order.sequence)

            level = (order.market, order.side, order.price)
            if order.status.is_resting():
                self._resting_by_market.setdefault(order.market, set()).add(order.order_id)
                self._resting_by_level.setdefault(level, set()).add(order.order_id)
            else:
                self._resting_by_market.get(order.market, set()).discard(order.order_id)
                ids = self._resting_by_level.get(level)
                if ids is not None:
                    ids.discard(order.order_id)
                    if not ids:
                        del self._resting_by_level[level]

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order else None

    def _copy_orders(self, order_ids: Iterable[str], predicate=None) -> List[Order]:
        with self._lock:
            selected = [
                replace(self._orders[i]) for i in order_ids
                if predicate is None or predicate(self._orders[i])
            ]
        return sorted(selected, key=lambda o: o.sequence)

    def open_orders(self, market: str) -> List[Order]:
        with self._lock:
            return self._copy_orders(list(self._resting_by_market.get(market, ())))

    def open_orders_for_owner(self, owner: str, market: Optional[str] = None) -> List[Order]:
        with self._lock:
            if market is None:
                ids = [i for ids in self._resting_by_market.values() for i in ids]
            else:
                ids = list(self._resting_by_market.get(market, ()))
            return self._copy_orders(ids, lambda o: o.owner == owner)

    def resting_orders_at(self, market: str, side: Side, price: float) -> List[Order]:
        with self._lock:
            return self._copy_orders(list(self._resting_by_level.get((market, side, price), ())))

    def synthetic_open_orders(self, market: str) -> List[Order]:
        with self._lock:
            return self._copy_orders(
                list(self._resting_by_market.get(market, ())), lambda o: o.is_synthetic
            )

    def order_history(self, owner: str, market: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> List[Order]:
        with self._lock:
            orders = self._copy_orders(
                list(self._orders_by_owner.get(owner, ())),
                lambda o: market is None or o.market == market,
            )
        orders.reverse()
        return orders[offset:offset + limit]

    def max_order_sequence(self) -> int:
        with self._lock:
            return self._max_order_sequence

    # Trades

    def append_trade(self, trade: Trade) -> None:
        with self._lock:
            self._trades_by_market.setdefault(trade.market, []).append(trade)
            for owner in {trade.maker_owner, trade.taker_owner} - {None}:
                self._trades_by_owner.setdefault(owner, []).append(trade)
            self._max_trade_sequence = max(self._max_trade_sequence, trade.sequence)

    def recent_trades(self, market: str, limit: int = 50) -> List[Trade]:
        with self._lock:
            trades = self._trades_by_market.get(market, [])
            return list(reversed(trades[-limit:])) if limit > 0 else []

    def trades_for_owner(self, owner: str, market: Optional[str] = None,
                         limit: int = 50, offset: int = 0) -> List[Trade]:
        with self._lock:
            trades = [
                t for t in self._trades_by_owner.get(owner, [])
                if market is None or t.market == market
            ]
        trades.reverse()
        return trades[offset:offset + limit]

    def max_trade_sequence(self) -> int:
        with self._lock:
            return self._max_trade_sequence

    # Positions

    def save_position(self, position: Position) -> None:
        with self._lock:
            if position.position_id not in self._positions:
                self._positions_by_owner.setdefault(position.owner, []).append(position.position_id)
            self._positions[position.position_id] = replace(position)

            key = (position.owner, position.market)
            if position.status == PositionStatus.OPEN:
                self._open_position_ids[key] = position.position_id
            elif self._open_position_ids.get(key) == position.position_id:
                del self._open_position_ids[key]

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(position_id)
            return replace(position) if position else None

    def open_position(self, owner: str, market: str) -> Optional[Position]:
        with self._lock:
            position_id = self._open_position_ids.get((owner, market))
            return replace(self._positions[position_id]) if position_id else None

    def open_positions(self, market: Optional[str] = None) -> List[Position]:
        with self._lock:
            return [
                replace(self._positions[position_id])
                for (_, symbol), position_id in self._open_position_ids.items()
                if market is None or symbol == market
            ]

    def positions_for_owner(self, owner: str,
                            status: Optional[PositionStatus] = None) -> List[Position]:
        with self._lock:
            positions = [
                replace(self._positions[i]) for i in self._positions_by_owner.get(owner, ())
                if status is None or self._positions[i].status == status
            ]
        return sorted(positions, key=lambda p: p.opened_at or p.updated_at, reverse=True)

    # Balances

    def save_balance(self, balance: Balance) -> None:
        with self._lock:
            self._balances[balance.owner] = replace(balance, changes=[])

    def append_balance_change(self, owner: str, change: BalanceChange) -> None:
        with self._lock:
            self._changes.setdefault(owner, []).append(change)

    def load_balances(self) -> List[Balance]:
        with self._lock:
            return [
                replace(b, changes=list(self._changes.get(owner, [])))
                for owner, b in self._balances.items()
            ]
