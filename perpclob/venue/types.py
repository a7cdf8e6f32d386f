"""
Core types for the venue.

Provides all shared enums, records and result objects:
- Market: Instrument definition with tick/lot rounding
- Order, Trade, Position: Trade lifecycle types
- Balance, BalanceChange: Ledger account and its append-only change log
- FundingPayment: One settled funding round
- BalanceResult, PlaceOrderResult, CancelOrderResult: Operation outcomes

Type design principles:
- Business failures are values (result objects with an ErrorCode), not exceptions
- Records are serializable (to_dict / from_dict) for persistence and events
- All monetary values are in the quote currency of the market
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

# Tolerance for float comparisons on balances and quantities
EPSILON = 1e-9


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def round_to_step(value: float, step: float, rounding: str = ROUND_HALF_UP) -> float:
    """
    Round a value to a multiple of step using decimal arithmetic.

    Args:
        value: Raw value (price or quantity)
        step: Tick size or lot size
        rounding: decimal rounding mode

    Returns:
        Value snapped to the step grid
    """
    if step <= 0:
        return value
    d_step = Decimal(str(step))
    units = (Decimal(str(value)) / d_step).to_integral_value(rounding=rounding)
    return float(units * d_step)


def is_positive(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > EPSILON


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────

class Side(str, Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"

    def opposite(self) -> "Side":
        return Side.SELL if self == Side.BUY else Side.BUY


class OrderType(str, Enum):
    """Order type."""
    LIMIT = "limit"
    MARKET = "market"


class OrderStatus(str, Enum):
    """Order status."""
    PENDING = "pending"
    OPEN = "open"
    PARTIAL = "partial"
    FILLED = "filled"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED)

    def is_resting(self) -> bool:
        return self in (OrderStatus.OPEN, OrderStatus.PARTIAL)


class PositionSide(str, Enum):
    """Position direction."""
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self == PositionSide.LONG else -1

    @classmethod
    def from_order_side(cls, side: Side) -> "PositionSide":
        return cls.LONG if side == Side.BUY else cls.SHORT


class PositionStatus(str, Enum):
    """Position status."""
    OPEN = "open"
    CLOSED = "closed"
    LIQUIDATED = "liquidated"


class MarketKind(str, Enum):
    """Instrument kind. Spot orders reserve the full notional."""
    PERP = "perp"
    SPOT = "spot"


class MarketStatus(str, Enum):
    """Market trading status."""
    ACTIVE = "active"
    PAUSED = "paused"
    SETTLEMENT = "settlement"


class ChangeKind(str, Enum):
    """Ledger change kind."""
    CREDIT = "credit"
    DEBIT = "debit"
    LOCK = "lock"
    UNLOCK = "unlock"


class ErrorCode(str, Enum):
    """Business error codes returned in result objects."""
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    MARKET_NOT_FOUND = "MARKET_NOT_FOUND"
    MARKET_INACTIVE = "MARKET_INACTIVE"
    POST_ONLY_WOULD_MATCH = "POST_ONLY_WOULD_MATCH"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    NOT_OWNER = "NOT_OWNER"
    NOT_CANCELLABLE = "NOT_CANCELLABLE"
    NO_PRICE_AVAILABLE = "NO_PRICE_AVAILABLE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_PRICE = "INVALID_PRICE"
    NOT_A_PERP = "NOT_A_PERP"


# ─────────────────────────────────────────────────────────────────────────────
# Market
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Market:
    """
    Tradable instrument definition.

    Rates are fractions (0.1 = 10%). Funding interval is in hours.
    """
    symbol: str
    name: str = ""
    kind: MarketKind = MarketKind.PERP
    base_asset: str = ""
    quote_asset: str = "USDC"
    tick_size: float = 0.01
    lot_size: float = 1.0
    min_order_size: float = 1.0
    max_order_size: float = 1_000_000.0
    max_leverage: float = 10.0
    initial_margin_rate: float = 0.1
    maintenance_margin_rate: float = 0.05
    maker_fee_rate: float = 0.0
    taker_fee_rate: float = 0.0
    funding_interval_hours: float = 8.0
    funding_rate: float = 0.0
    next_funding_time: Optional[datetime] = None
    oracle_price: Optional[float] = None
    status: MarketStatus = MarketStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == MarketStatus.ACTIVE

    @property
    def is_perp(self) -> bool:
        """Perps carry funding and can be liquidated; spot does neither."""
        return self.kind == MarketKind.PERP

    @property
    def margin_rate(self) -> float:
        """Fraction of notional reserved when an order is placed."""
        return 1.0 if self.kind == MarketKind.SPOT else self.initial_margin_rate

    def round_price(self, price: float) -> float:
        return round_to_step(price, self.tick_size, ROUND_HALF_UP)

    def round_quantity(self, quantity: float) -> float:
        """Round down to the lot grid."""
        return round_to_step(quantity, self.lot_size, ROUND_DOWN)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "kind": self.kind.value,
            "base_asset": self.base_asset,
            "quote_asset": self.quote_asset,
            "tick_size": self.tick_size,
            "lot_size": self.lot_size,
            "min_order_size": self.min_order_size,
            "max_order_size": self.max_order_size,
            "max_leverage": self.max_leverage,
            "initial_margin_rate": self.initial_margin_rate,
            "maintenance_margin_rate": self.maintenance_margin_rate,
            "maker_fee_rate": self.maker_fee_rate,
            "taker_fee_rate": self.taker_fee_rate,
            "funding_interval_hours": self.funding_interval_hours,
            "funding_rate": self.funding_rate,
            "next_funding_time": _iso(self.next_funding_time),
            "oracle_price": self.oracle_price,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Market":
        values = dict(data)
        values["kind"] = MarketKind(values.get("kind", "perp"))
        values["status"] = MarketStatus(values.get("status", "active"))
        values["next_funding_time"] = _parse_ts(values.get("next_funding_time"))
        return cls(**values)


# ─────────────────────────────────────────────────────────────────────────────
# Order
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Order:
    """
    Order on the venue.

    Market orders carry price 0. `reserved_margin` is the margin still
    locked for the unfilled remainder; it is zeroed when released.
    """
    order_id: str
    market: str
    owner: Optional[str]
    side: Side
    order_type: OrderType
    price: float
    quantity: float
    filled_quantity: float = 0.0
    average_price: float = 0.0
    post_only: bool = False
    reduce_only: bool = False
    is_synthetic: bool = False
    status: OrderStatus = OrderStatus.PENDING
    sequence: int = 0
    reserved_margin: float = 0.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def remaining_quantity(self) -> float:
        remaining = self.quantity - self.filled_quantity
        return remaining if remaining > EPSILON else 0.0

    def apply_fill(self, quantity: float, price: float, ts: datetime) -> None:
        """Record an execution and move the status forward."""
        total_cost = self.average_price * self.filled_quantity + price * quantity
        self.filled_quantity += quantity
        self.average_price = total_cost / self.filled_quantity
        self.updated_at = ts
        if self.remaining_quantity <= EPSILON:
            self.filled_quantity = self.quantity
            self.status = OrderStatus.FILLED
            self.filled_at = ts
        else:
            self.status = OrderStatus.PARTIAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "market": self.market,
            "owner": self.owner,
            "side": self.side.value,
            "order_type": self.order_type.value,
            "price": self.price,
            "quantity": self.quantity,
            "filled_quantity": self.filled_quantity,
            "remaining_quantity": self.remaining_quantity,
            "average_price": self.average_price,
            "post_only": self.post_only,
            "reduce_only": self.reduce_only,
            "is_synthetic": self.is_synthetic,
            "status": self.status.value,
            "sequence": self.sequence,
            "reserved_margin": self.reserved_margin,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "filled_at": _iso(self.filled_at),
            "cancelled_at": _iso(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        values = {k: v for k, v in data.items() if k != "remaining_quantity"}
        values["side"] = Side(values["side"])
        values["order_type"] = OrderType(values["order_type"])
        values["status"] = OrderStatus(values["status"])
        for key in ("created_at", "updated_at", "filled_at", "cancelled_at"):
            values[key] = _parse_ts(values.get(key))
        return cls(**values)


# ─────────────────────────────────────────────────────────────────────────────
# Trade
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Trade:
    """Immutable record of one match. `side` is the taker side."""
    trade_id: str
    market: str
    maker_order_id: str
    maker_owner: Optional[str]
    maker_is_synthetic: bool
    taker_order_id: str
    taker_owner: Optional[str]
    taker_is_synthetic: bool
    side: Side
    price: float
    quantity: float
    quote_quantity: float
    maker_fee: float = 0.0
    taker_fee: float = 0.0
    timestamp: Optional[datetime] = None
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "market": self.market,
            "maker_order_id": self.maker_order_id,
            "maker_owner": self.maker_owner,
            "maker_is_synthetic": self.maker_is_synthetic,
            "taker_order_id": self.taker_order_id,
            "taker_owner": self.taker_owner,
            "taker_is_synthetic": self.taker_is_synthetic,
            "side": self.side.value,
            "price": self.price,
            "quantity": self.quantity,
            "quote_quantity": self.quote_quantity,
            "maker_fee": self.maker_fee,
            "taker_fee": self.taker_fee,
            "timestamp": _iso(self.timestamp),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        values = dict(data)
        values["side"] = Side(values["side"])
        values["timestamp"] = _parse_ts(values.get("timestamp"))
        return cls(**values)


# ─────────────────────────────────────────────────────────────────────────────
# Position
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Position:
    """
    Leveraged exposure of one owner in one market.

    `accumulated_funding` is cash received from funding (negative when paying).
    """
    position_id: str
    market: str
    owner: str
    side: PositionSide
    size: float
    entry_price: float
    margin: float
    leverage: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    liquidation_price: float = 0.0
    accumulated_funding: float = 0.0
    total_fees_paid: float = 0.0
    status: PositionStatus = PositionStatus.OPEN
    opened_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    last_funding_time: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN and self.size > EPSILON

    @property
    def notional(self) -> float:
        return self.size * self.entry_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "market": self.market,
            "owner": self.owner,
            "side": self.side.value,
            "size": self.size,
            "entry_price": self.entry_price,
            "margin": self.margin,
            "leverage": self.leverage,
            "unrealized_pnl": self.unrealized_pnl,
            "realized_pnl": self.realized_pnl,
            "liquidation_price": self.liquidation_price,
            "accumulated_funding": self.accumulated_funding,
            "total_fees_paid": self.total_fees_paid,
            "status": self.status.value,
            "opened_at": _iso(self.opened_at),
            "updated_at": _iso(self.updated_at),
            "closed_at": _iso(self.closed_at),
            "last_funding_time": _iso(self.last_funding_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        values = dict(data)
        values["side"] = PositionSide(values["side"])
        values["status"] = PositionStatus(values["status"])
        for key in ("opened_at", "updated_at", "closed_at", "last_funding_time"):
            values[key] = _parse_ts(values.get(key))
        return cls(**values)


# ─────────────────────────────────────────────────────────────────────────────
# Balance
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BalanceChange:
    """One append-only ledger entry."""
    amount: float
    kind: ChangeKind
    reason: str
    timestamp: datetime
    reference_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "kind": self.kind.value,
            "reason": self.reason,
            "timestamp": _iso(self.timestamp),
            "reference_id": self.reference_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BalanceChange":
        return cls(
            amount=data["amount"],
            kind=ChangeKind(data["kind"]),
            reason=data["reason"],
            timestamp=_parse_ts(data["timestamp"]),
            reference_id=data.get("reference_id"),
        )


@dataclass
class Balance:
    """Per-owner account in the quote currency."""
    owner: str
    free: float = 0.0
    locked: float = 0.0
    total_credits: float = 0.0
    total_debits: float = 0.0
    changes: List[BalanceChange] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def total(self) -> float:
        return self.free + self.locked

    def to_dict(self, include_changes: bool = False) -> Dict[str, Any]:
        result = {
            "owner": self.owner,
            "free": self.free,
            "locked": self.locked,
            "total": self.total,
            "total_credits": self.total_credits,
            "total_debits": self.total_debits,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_changes:
            result["changes"] = [c.to_dict() for c in self.changes]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Balance":
        return cls(
            owner=data["owner"],
            free=data.get("free", 0.0),
            locked=data.get("locked", 0.0),
            total_credits=data.get("total_credits", 0.0),
            total_debits=data.get("total_debits", 0.0),
            changes=[BalanceChange.from_dict(c) for c in data.get("changes", [])],
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Funding
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FundingPayment:
    """
    One settled funding round for a market.

    long_payment/short_payment are the totals paid by each side
    (negative when that side received).
    """
    market: str
    funding_rate: float
    mark_price: float
    index_price: Optional[float]
    long_payment: float
    short_payment: float
    total_long_size: float
    total_short_size: float
    positions_count: int
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market": self.market,
            "funding_rate": self.funding_rate,
            "mark_price": self.mark_price,
            "index_price": self.index_price,
            "long_payment": self.long_payment,
            "short_payment": self.short_payment,
            "total_long_size": self.total_long_size,
            "total_short_size": self.total_short_size,
            "positions_count": self.positions_count,
            "timestamp": _iso(self.timestamp),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class BalanceResult:
    """
    Outcome of a ledger operation.

    `amount` is what was actually applied (can be below the request when
    a partial debit is allowed). `from_locked` is the locked share of a
    locked-first debit.
    """
    success: bool
    owner: str
    amount: float = 0.0
    from_locked: float = 0.0
    free: float = 0.0
    locked: float = 0.0
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "owner": self.owner,
            "amount": self.amount,
            "from_locked": self.from_locked,
            "free": self.free,
            "locked": self.locked,
            "error_code": self.error_code.value if self.error_code else None,
            "error": self.error,
        }


@dataclass
class PlaceOrderResult:
    """Outcome of an order placement."""
    success: bool
    order: Optional[Order] = None
    trades: List[Trade] = field(default_factory=list)
    events: List[Any] = field(default_factory=list)
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None

    @classmethod
    def rejected(cls, code: ErrorCode, message: str) -> "PlaceOrderResult":
        return cls(success=False, error_code=code, error=message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "order": self.order.to_dict() if self.order else None,
            "trades": [t.to_dict() for t in self.trades],
            "error_code": self.error_code.value if self.error_code else None,
            "error": self.error,
        }


@dataclass
class CancelOrderResult:
    """Outcome of a cancel request."""
    success: bool
    order: Optional[Order] = None
    released_margin: float = 0.0
    events: List[Any] = field(default_factory=list)
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None

    @classmethod
    def rejected(
        cls, code: ErrorCode, message: str, order: Optional[Order] = None
    ) -> "CancelOrderResult":
        return cls(success=False, order=order, error_code=code, error=message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "order": self.order.to_dict() if self.order else None,
            "released_margin": self.released_margin,
            "error_code": self.error_code.value if self.error_code else None,
            "error": self.error,
        }
