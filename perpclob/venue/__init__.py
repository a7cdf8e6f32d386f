"""
Venue core: ledger, order book, matching, positions, funding and liquidation.

The orchestrator lives in `perpclob.venue.exchange` (Venue, create_venue).
"""

from .types import (
    Market,
    MarketKind,
    MarketStatus,
    Order,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    PositionStatus,
    Side,
    Trade,
    ErrorCode,
)

__all__ = [
    "Market",
    "MarketKind",
    "MarketStatus",
    "Order",
    "OrderStatus",
    "OrderType",
    "Position",
    "PositionSide",
    "PositionStatus",
    "Side",
    "Trade",
    "ErrorCode",
]
