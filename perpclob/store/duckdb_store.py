"""
DuckDB-backed VenueStore.

Each record kind is one table holding the indexed columns the queries
filter on plus the full record as a JSON document. Upserts use
INSERT OR REPLACE on the primary key.

Tables:
- markets(symbol PK)
- orders(order_id PK, market, owner, side, price, status, sequence, is_synthetic)
- trades(trade_id PK, market, maker_owner, taker_owner, sequence)
- positions(position_id PK, market, owner, status, opened_at)
- balances(owner PK)
- balance_changes(id from sequence, owner)

One connection is shared; a lock serializes access to it.
"""

import json
import threading
from pathlib import Path
from typing import List, Optional, Union

import duckdb

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
from ..utils.logger import get_logger

logger = get_logger()

_RESTING = ("open", "partial")


class DuckDBStore(VenueStore):
    """Durable single-file store."""

    def __init__(self, db_path: Union[str, Path] = "data/venue.duckdb"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self.conn = duckdb.connect(str(self.db_path))
        self._init_schema()
        logger.info(f"DuckDBStore initialized: db={self.db_path}")

    def _init_schema(self):
        """Create tables if missing."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS markets (
                symbol VARCHAR PRIMARY KEY,
                data VARCHAR NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR PRIMARY KEY,
                market VARCHAR NOT NULL,
                owner VARCHAR,
                side VARCHAR NOT NULL,
                price DOUBLE NOT NULL,
                status VARCHAR NOT NULL,
                sequence BIGINT NOT NULL,
                is_synthetic BOOLEAN NOT NULL,
                data VARCHAR NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                trade_id VARCHAR PRIMARY KEY,
                market VARCHAR NOT NULL,
                maker_owner VARCHAR,
                taker_owner VARCHAR,
                sequence BIGINT NOT NULL,
                data VARCHAR NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS positions (
                position_id VARCHAR PRIMARY KEY,
                market VARCHAR NOT NULL,
                owner VARCHAR NOT NULL,
                status VARCHAR NOT NULL,
                opened_at VARCHAR,
                data VARCHAR NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                owner VARCHAR PRIMARY KEY,
                data VARCHAR NOT NULL
            )
        """)
        self.conn.execute("CREATE SEQUENCE IF NOT EXISTS balance_change_seq")
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS balance_changes (
                id BIGINT PRIMARY KEY,
                owner VARCHAR NOT NULL,
                data VARCHAR NOT NULL
            )
        """)

    def _fetch(self, sql: str, params: Optional[list] = None) -> List[dict]:
        with self._lock:
            rows = self.conn.execute(sql, params or []).fetchall()
        return [json.loads(row[0]) for row in rows]

    # ─────────────────────────────────────────────────────────────────────
    # Markets
    # ─────────────────────────────────────────────────────────────────────

    def save_market(self, market: Market) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO markets VALUES (?, ?)",
                [market.symbol, json.dumps(market.to_dict())],
            )

    def load_markets(self) -> List[Market]:
        return [Market.from_dict(d) for d in self._fetch(
            "SELECT data FROM markets ORDER BY symbol"
        )]

    # ─────────────────────────────────────────────────────────────────────
    # Orders
    # ─────────────────────────────────────────────────────────────────────

    def save_order(self, order: Order) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO orders VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    order.order_id,
                    order.market,
                    order.owner,
                    order.side.value,
                    order.price,
                    order.status.value,
                    order.sequence,
                    order.is_synthetic,
                    json.dumps(order.to_dict()),
                ],
            )

    def get_order(self, order_id: str) -> Optional[Order]:
        rows = self._fetch("SELECT data FROM orders WHERE order_id = ?", [order_id])
        return Order.from_dict(rows[0]) if rows else None

    def open_orders(self, market: str) -> List[Order]:
        return [Order.from_dict(d) for d in self._fetch(
            "SELECT data FROM orders WHERE market = ? AND status IN (?, ?) ORDER BY sequence",
            [market, *_RESTING],
        )]

    def open_orders_for_owner(self, owner: str, market: Optional[str] = None) -> List[Order]:
        sql = "SELECT data FROM orders WHERE owner = ? AND status IN (?, ?)"
        params = [owner, *_RESTING]
        if market is not None:
            sql += " AND market = ?"
            params.append(market)
        return [Order.from_dict(d) for d in self._fetch(sql + " ORDER BY sequence", params)]

    def resting_orders_at(self, market: str, side: Side, price: float) -> List[Order]:
        return [Order.from_dict(d) for d in self._fetch(
            """
            SELECT data FROM orders
            WHERE market = ? AND side = ? AND price = ? AND status IN (?, ?)
            ORDER BY sequence
            """,
            [market, side.value, price, *_RESTING],
        )]

    def synthetic_open_orders(self, market: str) -> List[Order]:
        return [Order.from_dict(d) for d in self._fetch(
            """
            SELECT data FROM orders
            WHERE market = ? AND is_synthetic AND status IN (?, ?)
            ORDER BY sequence
            """,
            [market, *_RESTING],
        )]

    def order_history(self, owner: str, market: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> List[Order]:
        sql = "SELECT data FROM orders WHERE owner = ?"
        params: list = [owner]
        if market is not None:
            sql += " AND market = ?"
            params.append(market)
        sql += " ORDER BY sequence DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [Order.from_dict(d) for d in self._fetch(sql, params)]

    def max_order_sequence(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT MAX(sequence) FROM orders").fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    # ─────────────────────────────────────────────────────────────────────
    # Trades
    # ─────────────────────────────────────────────────────────────────────

    def append_trade(self, trade: Trade) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO trades VALUES (?, ?, ?, ?, ?, ?)",
                [
                    trade.trade_id,
                    trade.market,
                    trade.maker_owner,
                    trade.taker_owner,
                    trade.sequence,
                    json.dumps(trade.to_dict()),
                ],
            )

    def recent_trades(self, market: str, limit: int = 50) -> List[Trade]:
        return [Trade.from_dict(d) for d in self._fetch(
            "SELECT data FROM trades WHERE market = ? ORDER BY sequence DESC LIMIT ?",
            [market, limit],
        )]

    def trades_for_owner(self, owner: str, market: Optional[str] = None,
                         limit: int = 50, offset: int = 0) -> List[Trade]:
        sql = "SELECT data FROM trades WHERE (maker_owner = ? OR taker_owner = ?)"
        params: list = [owner, owner]
        if market is not None:
            sql += " AND market = ?"
            params.append(market)
        sql += " ORDER BY sequence DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [Trade.from_dict(d) for d in self._fetch(sql, params)]

    def max_trade_sequence(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT MAX(sequence) FROM trades").fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    # ─────────────────────────────────────────────────────────────────────
    # Positions
    # ─────────────────────────────────────────────────────────────────────

    def save_position(self, position: Position) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO positions VALUES (?, ?, ?, ?, ?, ?)",
                [
                    position.position_id,
                    position.market,
                    position.owner,
                    position.status.value,
                    position.opened_at.isoformat() if position.opened_at else None,
                    json.dumps(position.to_dict()),
                ],
            )

    def get_position(self, position_id: str) -> Optional[Position]:
        rows = self._fetch("SELECT data FROM positions WHERE position_id = ?", [position_id])
        return Position.from_dict(rows[0]) if rows else None

    def open_position(self, owner: str, market: str) -> Optional[Position]:
        rows = self._fetch(
            "SELECT data FROM positions WHERE owner = ? AND market = ? AND status = ?",
            [owner, market, PositionStatus.OPEN.value],
        )
        return Position.from_dict(rows[0]) if rows else None

    def open_positions(self, market: Optional[str] = None) -> List[Position]:
        sql = "SELECT data FROM positions WHERE status = ?"
        params: list = [PositionStatus.OPEN.value]
        if market is not None:
            sql += " AND market = ?"
            params.append(market)
        return [Position.from_dict(d) for d in self._fetch(sql + " ORDER BY opened_at", params)]

    def positions_for_owner(self, owner: str,
                            status: Optional[PositionStatus] = None) -> List[Position]:
        sql = "SELECT data FROM positions WHERE owner = ?"
        params: list = [owner]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        return [Position.from_dict(d) for d in self._fetch(
            sql + " ORDER BY opened_at DESC", params
        )]

    # ─────────────────────────────────────────────────────────────────────
    # Balances
    # ─────────────────────────────────────────────────────────────────────

    def save_balance(self, balance: Balance) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO balances VALUES (?, ?)",
                [balance.owner, json.dumps(balance.to_dict())],
            )

    def append_balance_change(self, owner: str, change: BalanceChange) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO balance_changes VALUES (nextval('balance_change_seq'), ?, ?)",
                [owner, json.dumps(change.to_dict())],
            )

    def load_balances(self) -> List[Balance]:
        with self._lock:
            balance_rows = self.conn.execute(
                "SELECT owner, data FROM balances ORDER BY owner"
            ).fetchall()
            change_rows = self.conn.execute(
                "SELECT owner, data FROM balance_changes ORDER BY id"
            ).fetchall()

        changes: dict = {}
        for owner, data in change_rows:
            changes.setdefault(owner, []).append(BalanceChange.from_dict(json.loads(data)))

        balances = []
        for owner, data in balance_rows:
            balance = Balance.from_dict(json.loads(data))
            balance.changes = changes.get(owner, [])
            balances.append(balance)
        return balances

    def close(self) -> None:
        with self._lock:
            self.conn.close()
