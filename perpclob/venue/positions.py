"""
Position manager: margin, PnL and liquidation price per (owner, market).

Applies executed fills to positions:
- open: no position yet
- increase: same side, entry becomes the size-weighted average
- reduce/close: opposite side, realizes PnL and releases margin pro rata
- flip: opposite side larger than the position, closes it and opens
  the remainder in the new direction

Margin for a fill is already locked in the ledger by the order that
produced it. The manager moves it into the position (open/increase),
or unlocks it and settles PnL (reduce/close).

Settlement of a closed slice:
- gain: unlock the released margin, credit the PnL
- loss: debit the loss from locked (up to the released margin) then
  free; whatever cannot be collected is logged as bad debt

Callers hold the market lock; the manager itself is not synchronized.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .ledger import Ledger
from .types import (
    EPSILON,
    Market,
    Position,
    PositionSide,
    PositionStatus,
    Side,
    utcnow,
)
from ..events import types as ev
from ..events.types import VenueEvent
from ..store.base import VenueStore
from ..utils.logger import get_logger

logger = get_logger()


def calculate_liquidation_price(
    side: PositionSide,
    entry_price: float,
    size: float,
    margin: float,
    maintenance_margin_rate: float,
) -> float:
    """
    Price at which margin net of the adverse move equals maintenance margin.

    mm = entry * size * mmr, move = (margin - mm) / size
    long: max(0, entry - move); short: entry + move
    """
    if size <= EPSILON:
        return 0.0
    maintenance = entry_price * size * maintenance_margin_rate
    move = (margin - maintenance) / size
    if side == PositionSide.LONG:
        return max(0.0, entry_price - move)
    return entry_price + move


def calculate_unrealized_pnl(position: Position, price: float) -> float:
    """Mark-to-market PnL of the open size at price."""
    if not position.is_open:
        return 0.0
    return (price - position.entry_price) * position.size * position.side.sign


def would_be_liquidated(position: Position, price: float) -> bool:
    """Long triggers at or below the liquidation price, short at or above."""
    if not position.is_open:
        return False
    if position.side == PositionSide.LONG:
        return price <= position.liquidation_price
    return price >= position.liquidation_price


@dataclass
class CloseResult:
    """Settlement of a closed slice of a position."""
    realized_pnl: float
    released_margin: float
    collected_loss: float = 0.0
    bad_debt: float = 0.0
    margin_returned: float = 0.0


class PositionManager:
    """Maintains positions and settles their PnL into the ledger."""

    def __init__(
        self,
        ledger: Ledger,
        store: VenueStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._ledger = ledger
        self._store = store
        self._clock = clock or utcnow

    # ─────────────────────────────────────────────────────────────────────
    # Fills
    # ─────────────────────────────────────────────────────────────────────

    def on_trade(
        self,
        owner: str,
        market: Market,
        side: Side,
        quantity: float,
        price: float,
        margin_delta: float,
        events: List[VenueEvent],
        reference_id: Optional[str] = None,
    ) -> Optional[Position]:
        """
        Apply one fill for owner.

        Args:
            owner: Account owner
            market: Market of the fill
            side: Side of the owner's order
            quantity: Filled quantity
            price: Execution price
            margin_delta: Margin locked for this fill
            events: Event list to append to
            reference_id: Trade id recorded on ledger changes

        Returns:
            The open position after the fill, or None when it closed flat
        """
        now = self._clock()
        fill_side = PositionSide.from_order_side(side)
        position = self._store.open_position(owner, market.symbol)

        if position is None:
            position = self._open(owner, market, fill_side, quantity, price, margin_delta, now)
            logger.trade("POSITION_OPENED", market.symbol, fill_side.value, quantity,
                         price=price, margin=f"{margin_delta:.4f}")
            events.append(ev.position_updated(position))
            return position

        if position.side == fill_side:
            new_size = position.size + quantity
            position.entry_price = (
                position.entry_price * position.size + price * quantity
            ) / new_size
            position.size = new_size
            position.margin += margin_delta
            position.updated_at = now
            self._refresh(position, market)
            self._store.save_position(position)
            events.append(ev.position_updated(position))
            return position

        # Opposite side: reduce, close, or flip
        close_qty = min(quantity, position.size)
        open_qty = quantity - close_qty
        closing_margin = margin_delta * close_qty / quantity if quantity > 0 else 0.0
        opening_margin = margin_delta - closing_margin

        if closing_margin > EPSILON:
            self._ledger.unlock(owner, closing_margin, "Margin released (reducing fill)",
                                reference_id)

        self.close_slice(position, market, close_qty, price, events,
                         reference_id=reference_id)

        if open_qty > EPSILON:
            flipped = self._open(owner, market, fill_side, open_qty, price, opening_margin, now)
            logger.trade("POSITION_FLIPPED", market.symbol, fill_side.value, open_qty,
                         price=price, margin=f"{opening_margin:.4f}")
            events.append(ev.position_updated(flipped))
            return flipped

        return position if position.is_open else None

    def close_slice(
        self,
        position: Position,
        market: Market,
        quantity: float,
        price: float,
        events: List[VenueEvent],
        reference_id: Optional[str] = None,
        status: PositionStatus = PositionStatus.CLOSED,
        loss_from_free: bool = True,
    ) -> CloseResult:
        """
        Close `quantity` of a position at price and settle it.

        Args:
            position: Open position (mutated and saved)
            market: Its market
            quantity: Size to close (capped at the position size)
            price: Close price
            events: Event list to append to
            reference_id: Recorded on ledger changes
            status: Terminal status when the position goes flat
            loss_from_free: Collect losses beyond the released margin from free;
                when False the excess is bad debt (liquidations)
        """
        now = self._clock()
        quantity = min(quantity, position.size)
        realized = (price - position.entry_price) * quantity * position.side.sign
        fraction = quantity / position.size if position.size > 0 else 1.0
        release = position.margin * fraction
        if fraction >= 1.0 - EPSILON:
            release = position.margin

        result = self._settle(position.owner, release, realized, reference_id, loss_from_free)

        position.size -= quantity
        position.margin -= release
        position.realized_pnl += realized
        position.updated_at = now

        if position.size <= EPSILON:
            position.size = 0.0
            position.margin = 0.0
            position.leverage = 0.0
            position.liquidation_price = 0.0
            position.unrealized_pnl = 0.0
            position.status = status
            position.closed_at = now
            logger.trade("POSITION_CLOSED", market.symbol, position.side.value, quantity,
                         price=price, pnl=realized, status=status.value)
        else:
            self._refresh(position, market)

        self._store.save_position(position)
        events.append(ev.position_updated(position))
        events.append(ev.balance_changed(self._ledger.get_balance(position.owner),
                                         "position settlement"))
        return result

    def _open(self, owner: str, market: Market, side: PositionSide, size: float,
              price: float, margin: float, now: datetime) -> Position:
        position = Position(
            position_id=f"pos-{uuid.uuid4().hex[:12]}",
            market=market.symbol,
            owner=owner,
            side=side,
            size=size,
            entry_price=price,
            margin=margin,
            opened_at=now,
            updated_at=now,
            last_funding_time=now,
        )
        self._refresh(position, market)
        self._store.save_position(position)
        return position

    def _refresh(self, position: Position, market: Market) -> None:
        """Recompute derived fields after size/entry/margin moved."""
        position.leverage = position.notional / position.margin if position.margin > EPSILON else 0.0
        position.liquidation_price = calculate_liquidation_price(
            position.side,
            position.entry_price,
            position.size,
            position.margin,
            market.maintenance_margin_rate,
        )

    def refresh(self, position: Position, market: Market) -> None:
        """Recompute leverage and liquidation price and persist."""
        self._refresh(position, market)
        self._store.save_position(position)

    def _settle(self, owner: str, release: float, realized: float,
                reference_id: Optional[str], loss_from_free: bool) -> CloseResult:
        result = CloseResult(realized_pnl=realized, released_margin=release)

        if realized >= 0:
            if release > EPSILON:
                self._ledger.unlock(owner, release, "Margin released", reference_id)
            if realized > EPSILON:
                self._ledger.credit(owner, realized, "Realized PnL", reference_id)
            result.margin_returned = release + realized
            return result

        loss = -realized
        collectible = loss if loss_from_free else min(loss, release)
        from_locked = 0.0
        if collectible > EPSILON:
            debit = self._ledger.debit_locked_first(
                owner,
                collectible,
                "Realized loss",
                reference_id,
                max_from_locked=release,
                allow_partial=True,
            )
            result.collected_loss = debit.amount
            from_locked = debit.from_locked

        leftover = release - from_locked
        if leftover > EPSILON:
            self._ledger.unlock(owner, leftover, "Margin released", reference_id)
            result.margin_returned = leftover

        result.bad_debt = max(0.0, loss - result.collected_loss)
        if result.bad_debt > EPSILON:
            logger.risk(
                "BAD_DEBT",
                "Loss exceeds collectible funds",
                owner=owner,
                loss=f"{loss:.6f}",
                collected=f"{result.collected_loss:.6f}",
                bad_debt=f"{result.bad_debt:.6f}",
                reference=reference_id,
            )
        return result

    # ─────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────

    def get_position(self, position_id: str) -> Optional[Position]:
        return self._store.get_position(position_id)

    def get_open_position(self, owner: str, market: str) -> Optional[Position]:
        return self._store.open_position(owner, market)

    def open_positions(self, market: Optional[str] = None) -> List[Position]:
        return self._store.open_positions(market)

    def liquidatable_positions(self, market: str, price: float) -> List[Position]:
        """Open positions of a market that would be liquidated at price."""
        return [p for p in self._store.open_positions(market) if would_be_liquidated(p, price)]

    def position_history(self, owner: str, limit: int = 50, offset: int = 0) -> List[Position]:
        """Closed and liquidated positions newest first."""
        positions = [
            p for p in self._store.positions_for_owner(owner)
            if p.status != PositionStatus.OPEN
        ]
        return positions[offset:offset + limit]

    def position_summary(
        self,
        owner: str,
        mark_price: Callable[[str], Optional[float]],
    ) -> Dict[str, object]:
        """
        Aggregate an owner's exposure.

        Args:
            owner: Account owner
            mark_price: Resolves a market symbol to its current mark price

        Returns:
            Totals plus one entry per open position with live unrealized PnL
        """
        open_positions = self._store.positions_for_owner(owner, PositionStatus.OPEN)
        all_positions = self._store.positions_for_owner(owner)

        entries = []
        total_unrealized = 0.0
        for position in open_positions:
            price = mark_price(position.market)
            if price is not None:
                position.unrealized_pnl = calculate_unrealized_pnl(position, price)
            total_unrealized += position.unrealized_pnl
            entry = position.to_dict()
            entry["mark_price"] = price
            entries.append(entry)

        return {
            "owner": owner,
            "open_positions": len(open_positions),
            "total_margin": sum(p.margin for p in open_positions),
            "total_notional": sum(p.notional for p in open_positions),
            "total_unrealized_pnl": total_unrealized,
            "total_realized_pnl": sum(p.realized_pnl for p in all_positions),
            "total_funding": sum(p.accumulated_funding for p in all_positions),
            "positions": entries,
        }
