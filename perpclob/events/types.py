"""
Domain events emitted by venue operations.

Operations never publish directly. They return a list of VenueEvent
values which the EventDispatcher delivers once the market lock is
released. Every event is a flat, JSON-serializable snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..venue.types import Balance, FundingPayment, Order, Position, Trade, utcnow


class EventType(str, Enum):
    """Event type."""
    TRADE_EXECUTED = "trade_executed"
    ORDER_UPDATED = "order_updated"
    POSITION_UPDATED = "position_updated"
    BALANCE_CHANGED = "balance_changed"
    BOOK_CHANGED = "book_changed"
    FUNDING_SETTLED = "funding_settled"
    FUNDING_PAID = "funding_paid"
    POSITION_LIQUIDATED = "position_liquidated"


@dataclass(frozen=True)
class VenueEvent:
    """One discrete event with its payload snapshot."""
    event_type: EventType
    payload: Dict[str, Any]
    market: Optional[str] = None
    owner: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event_type.value,
            "market": self.market,
            "owner": self.owner,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Factories
# ─────────────────────────────────────────────────────────────────────────────

def trade_executed(trade: Trade) -> VenueEvent:
    return VenueEvent(EventType.TRADE_EXECUTED, trade.to_dict(), market=trade.market)


def order_updated(order: Order) -> VenueEvent:
    return VenueEvent(
        EventType.ORDER_UPDATED, order.to_dict(), market=order.market, owner=order.owner
    )


def position_updated(position: Position) -> VenueEvent:
    return VenueEvent(
        EventType.POSITION_UPDATED,
        position.to_dict(),
        market=position.market,
        owner=position.owner,
    )


def balance_changed(balance: Balance, reason: str) -> VenueEvent:
    payload = balance.to_dict()
    payload["reason"] = reason
    return VenueEvent(EventType.BALANCE_CHANGED, payload, owner=balance.owner)


def book_changed(market: str, snapshot: Dict[str, Any]) -> VenueEvent:
    return VenueEvent(EventType.BOOK_CHANGED, snapshot, market=market)


def funding_settled(payment: FundingPayment) -> VenueEvent:
    return VenueEvent(EventType.FUNDING_SETTLED, payment.to_dict(), market=payment.market)


def funding_paid(position: Position, amount: float, rate: float) -> VenueEvent:
    """Per-position funding cash flow. Positive amount means the owner paid."""
    return VenueEvent(
        EventType.FUNDING_PAID,
        {
            "position_id": position.position_id,
            "side": position.side.value,
            "size": position.size,
            "amount": amount,
            "funding_rate": rate,
        },
        market=position.market,
        owner=position.owner,
    )


def position_liquidated(position: Position, mark_price: float,
                        notional: float, margin_remaining: float) -> VenueEvent:
    return VenueEvent(
        EventType.POSITION_LIQUIDATED,
        {
            "position_id": position.position_id,
            "side": position.side.value,
            "mark_price": mark_price,
            "notional": notional,
            "margin_remaining": margin_remaining,
            "realized_pnl": position.realized_pnl,
        },
        market=position.market,
        owner=position.owner,
    )
