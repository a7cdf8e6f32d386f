"""
Price-time priority matching engine.

Order flow (all under the market lock):
1. Validate market, quantity and price (rounded to lot / tick)
2. Post-only orders that would cross are rejected before any mutation
3. Reduce-only orders are capped at the opposite position size
4. Margin is reserved in the ledger (synthetic orders reserve nothing)
5. Opposite levels are walked best price first, resting orders at a
   level in arrival order; every match executes at the maker price
6. Limit remainder rests on the book; market remainder is discarded

Margin bookkeeping:
- order.reserved_margin is the margin still locked for the unfilled part
- each fill converts price * qty * margin_rate of it into position margin
- price improvement on a limit order is unlocked immediately
- whatever is left when the order leaves the book is unlocked exactly once
"""

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .ledger import Ledger
from .positions import PositionManager
from .registry import MarketRegistry, MarketState
from .types import (
    EPSILON,
    CancelOrderResult,
    ErrorCode,
    Market,
    MarketKind,
    Order,
    OrderStatus,
    OrderType,
    PlaceOrderResult,
    PositionSide,
    Side,
    Trade,
    is_positive,
    utcnow,
)
from ..events import types as ev
from ..events.types import VenueEvent
from ..store.base import VenueStore
from ..utils.logger import get_logger

logger = get_logger()


@dataclass
class MatchingStats:
    """Running counters."""
    orders_placed: int = 0
    orders_rejected: int = 0
    orders_cancelled: int = 0
    trades_executed: int = 0
    volume: float = 0.0
    fee_revenue: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "orders_placed": self.orders_placed,
            "orders_rejected": self.orders_rejected,
            "orders_cancelled": self.orders_cancelled,
            "trades_executed": self.trades_executed,
            "volume": self.volume,
            "fee_revenue": self.fee_revenue,
        }


class MatchingEngine:
    """Places, matches and cancels orders."""

    def __init__(
        self,
        registry: MarketRegistry,
        ledger: Ledger,
        store: VenueStore,
        positions: PositionManager,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._registry = registry
        self._ledger = ledger
        self._store = store
        self._positions = positions
        self._clock = clock or utcnow
        self._stats = MatchingStats()
        self._stats_lock = threading.Lock()

    @property
    def stats(self) -> MatchingStats:
        return self._stats

    # ─────────────────────────────────────────────────────────────────────
    # Placement
    # ─────────────────────────────────────────────────────────────────────

    def place_order(
        self,
        market: str,
        owner: Optional[str],
        side: Side,
        order_type: OrderType,
        quantity: float,
        price: Optional[float] = None,
        post_only: bool = False,
        reduce_only: bool = False,
    ) -> PlaceOrderResult:
        """
        Place an order and match it against the book.

        Args:
            market: Market symbol
            owner: Account owner, or None for a synthetic (liquidity) order
            side: buy or sell
            order_type: limit or market
            quantity: Base quantity (rounded down to the lot size)
            price: Limit price (rounded to the tick size); ignored for market orders
            post_only: Reject instead of taking liquidity
            reduce_only: Only reduce an existing opposite position

        Returns:
            PlaceOrderResult with the order, its trades and the events to dispatch
        """
        side = Side(side)
        order_type = OrderType(order_type)
        state = self._registry.get(market)
        if state is None:
            return self._reject(ErrorCode.MARKET_NOT_FOUND, f"Market not found: {market}")

        with state.lock:
            result = self._place_locked(
                state, owner, side, order_type, quantity, price, post_only, reduce_only
            )

        with self._stats_lock:
            if result.success:
                self._stats.orders_placed += 1
            else:
                self._stats.orders_rejected += 1
        return result

    def _place_locked(
        self,
        state: MarketState,
        owner: Optional[str],
        side: Side,
        order_type: OrderType,
        quantity: float,
        price: Optional[float],
        post_only: bool,
        reduce_only: bool,
    ) -> PlaceOrderResult:
        market = state.market
        book = state.book
        is_synthetic = owner is None

        if not market.is_active:
            return self._reject(
                ErrorCode.MARKET_INACTIVE,
                f"Market {market.symbol} is {market.status.value}",
            )

        quantity, error = self._validate_quantity(market, quantity)
        if error:
            return error

        if order_type == OrderType.LIMIT:
            if not is_positive(price):
                return self._reject(ErrorCode.INVALID_PRICE, f"Limit price must be > 0, got {price}")
            price = market.round_price(price)
            if price <= EPSILON:
                return self._reject(ErrorCode.INVALID_PRICE, "Limit price rounds to zero")
        else:
            price = 0.0

        if post_only:
            if order_type == OrderType.MARKET or self._crosses(book, side, price):
                return self._reject(
                    ErrorCode.POST_ONLY_WOULD_MATCH,
                    "Post-only order would take liquidity",
                )

        if reduce_only and not is_synthetic:
            position = self._store.open_position(owner, market.symbol)
            if position is None or position.side == PositionSide.from_order_side(side):
                return self._reject(
                    ErrorCode.INVALID_QUANTITY,
                    "Reduce-only order has no position to reduce",
                )
            quantity = min(quantity, position.size)

        if not is_synthetic and self._sells_holdings(market, side):
            available = self._spot_available(owner, market.symbol)
            if quantity > available + EPSILON:
                return self._reject(
                    ErrorCode.INSUFFICIENT_BALANCE,
                    f"Spot sell of {quantity} {market.base_asset} exceeds available {available}",
                )

        # Reservation
        if order_type == OrderType.MARKET:
            fillable, notional, _ = book.sweep(side, quantity)
            if fillable <= EPSILON:
                return self._reject(
                    ErrorCode.NO_PRICE_AVAILABLE,
                    f"No liquidity on the {side.opposite().value} side of {market.symbol}",
                )
            reserve = notional * market.margin_rate
        else:
            reserve = price * quantity * market.margin_rate
        if self._sells_holdings(market, side):
            # Spot sells deliver held base; no quote is reserved
            reserve = 0.0

        order_id = f"order-{uuid.uuid4().hex[:12]}"
        now = self._clock()
        if not is_synthetic and reserve > EPSILON:
            locked = self._ledger.lock(owner, reserve, "Order margin", order_id)
            if not locked.success:
                return self._reject(locked.error_code, locked.error)
        else:
            reserve = 0.0

        order = Order(
            order_id=order_id,
            market=market.symbol,
            owner=owner,
            side=side,
            order_type=order_type,
            price=price,
            quantity=quantity,
            post_only=post_only,
            reduce_only=reduce_only,
            is_synthetic=is_synthetic,
            status=OrderStatus.PENDING,
            sequence=self._registry.next_sequence(),
            reserved_margin=reserve,
            created_at=now,
            updated_at=now,
        )

        events: List[VenueEvent] = []
        touched: Set[str] = set()
        if owner is not None:
            touched.add(owner)

        trades = self._match(state, order, events, touched)
        self._finish_taker(state, order)
        self._store.save_order(order)

        if not is_synthetic:
            logger.trade(
                "ORDER_PLACED", market.symbol, side.value, order.quantity,
                price=price or None, order_type=order_type.value,
                status=order.status.value, fills=len(trades),
            )

        events.append(ev.order_updated(order))
        events.append(ev.book_changed(market.symbol, book.snapshot()))
        for who in sorted(touched):
            events.append(ev.balance_changed(self._ledger.get_balance(who), "order activity"))

        return PlaceOrderResult(success=True, order=order, trades=trades, events=events)

    def _validate_quantity(self, market: Market, quantity: float) -> Tuple[float, Optional[PlaceOrderResult]]:
        if not is_positive(quantity):
            return quantity, self._reject(
                ErrorCode.INVALID_QUANTITY, f"Quantity must be > 0, got {quantity}"
            )
        rounded = market.round_quantity(quantity)
        if rounded < market.lot_size - EPSILON:
            return rounded, self._reject(
                ErrorCode.INVALID_QUANTITY,
                f"Quantity {quantity} is below the lot size {market.lot_size}",
            )
        if rounded < market.min_order_size - EPSILON:
            return rounded, self._reject(
                ErrorCode.INVALID_QUANTITY,
                f"Quantity {rounded} is below the minimum {market.min_order_size}",
            )
        if rounded > market.max_order_size + EPSILON:
            return rounded, self._reject(
                ErrorCode.INVALID_QUANTITY,
                f"Quantity {rounded} exceeds the maximum {market.max_order_size}",
            )
        return rounded, None

    @staticmethod
    def _crosses(book, side: Side, price: float) -> bool:
        if side == Side.BUY:
            best_ask = book.best_ask()
            return best_ask is not None and price >= best_ask
        best_bid = book.best_bid()
        return best_bid is not None and price <= best_bid

    @staticmethod
    def _reject(code: ErrorCode, message: str) -> PlaceOrderResult:
        logger.debug(f"Order rejected: {code.value} - {message}")
        return PlaceOrderResult.rejected(code, message)

    # ─────────────────────────────────────────────────────────────────────
    # Matching
    # ─────────────────────────────────────────────────────────────────────

    def _match(self, state: MarketState, taker: Order,
               events: List[VenueEvent], touched: Set[str]) -> List[Trade]:
        book = state.book
        maker_side = taker.side.opposite()
        trades: List[Trade] = []

        for level_price in book.prices(maker_side):
            if taker.remaining_quantity <= EPSILON:
                break
            if taker.order_type == OrderType.LIMIT:
                if taker.side == Side.BUY and level_price > taker.price + EPSILON:
                    break
                if taker.side == Side.SELL and level_price < taker.price - EPSILON:
                    break

            for maker in self._store.resting_orders_at(state.symbol, maker_side, level_price):
                if taker.remaining_quantity <= EPSILON:
                    break

                available = maker.remaining_quantity
                if self._caps_to_position(maker, state.market):
                    available = min(available, self._reduce_capacity(maker))
                    if available <= EPSILON:
                        self._cancel_locked(state, maker, events, "reduce-only exhausted")
                        continue

                fill = min(taker.remaining_quantity, available)
                trade = self._execute(state, taker, maker, fill, level_price, events, touched)
                trades.append(trade)

                if (self._caps_to_position(maker, state.market)
                        and maker.remaining_quantity > EPSILON
                        and self._reduce_capacity(maker) <= EPSILON):
                    self._cancel_locked(state, maker, events, "reduce-only exhausted")

        return trades

    @staticmethod
    def _sells_holdings(market: Market, side: Side) -> bool:
        return market.kind == MarketKind.SPOT and side == Side.SELL

    def _caps_to_position(self, order: Order, market: Market) -> bool:
        """Resting orders that may only trade against the owner's position."""
        if order.is_synthetic:
            return False
        return order.reduce_only or self._sells_holdings(market, order.side)

    def _spot_available(self, owner: str, market: str) -> float:
        """Held base quantity not already offered by resting sells."""
        position = self._store.open_position(owner, market)
        if position is None or position.side != PositionSide.LONG:
            return 0.0
        offered = sum(
            o.remaining_quantity for o in self._store.open_orders_for_owner(owner, market)
            if o.side == Side.SELL
        )
        return max(position.size - offered, 0.0)

    def _reduce_capacity(self, order: Order) -> float:
        position = self._store.open_position(order.owner, order.market)
        if position is None or position.side == PositionSide.from_order_side(order.side):
            return 0.0
        return position.size

    def _execute(
        self,
        state: MarketState,
        taker: Order,
        maker: Order,
        quantity: float,
        price: float,
        events: List[VenueEvent],
        touched: Set[str],
    ) -> Trade:
        market = state.market
        now = self._clock()
        quote = price * quantity
        maker_fee = quote * market.maker_fee_rate if not maker.is_synthetic else 0.0
        taker_fee = quote * market.taker_fee_rate if not taker.is_synthetic else 0.0

        trade = Trade(
            trade_id=f"trade-{uuid.uuid4().hex[:12]}",
            market=market.symbol,
            maker_order_id=maker.order_id,
            maker_owner=maker.owner,
            maker_is_synthetic=maker.is_synthetic,
            taker_order_id=taker.order_id,
            taker_owner=taker.owner,
            taker_is_synthetic=taker.is_synthetic,
            side=taker.side,
            price=price,
            quantity=quantity,
            quote_quantity=quote,
            maker_fee=maker_fee,
            taker_fee=taker_fee,
            timestamp=now,
            sequence=self._registry.next_sequence(),
        )

        maker.apply_fill(quantity, price, now)
        taker.apply_fill(quantity, price, now)
        state.book.remove_quantity(
            maker.side, price, quantity, order_done=maker.status == OrderStatus.FILLED
        )

        maker_margin = self._take_reservation(maker, market, quantity, price)
        taker_margin = self._take_reservation(taker, market, quantity, price)
        if maker.status == OrderStatus.FILLED:
            self._release_reservation(maker, "Order filled")

        self._store.append_trade(trade)
        self._store.save_order(maker)

        for order, margin, fee in ((maker, maker_margin, maker_fee), (taker, taker_margin, taker_fee)):
            if order.is_synthetic or order.owner is None:
                continue
            touched.add(order.owner)
            position = self._positions.on_trade(
                order.owner, market, order.side, quantity, price, margin,
                events, reference_id=trade.trade_id,
            )
            if fee > EPSILON:
                self._charge_fee(order.owner, fee, trade.trade_id, position)

        with self._stats_lock:
            self._stats.trades_executed += 1
            self._stats.volume += quote

        logger.trade(
            "TRADE", market.symbol, taker.side.value, quantity, price=price,
            maker=maker.order_id, taker=taker.order_id,
        )
        events.append(ev.trade_executed(trade))
        events.append(ev.order_updated(maker))
        return trade

    def _take_reservation(self, order: Order, market: Market,
                          quantity: float, price: float) -> float:
        """
        Convert part of an order's reservation into margin for one fill.

        Returns:
            Margin handed to the position for this fill
        """
        if order.is_synthetic or order.owner is None:
            return 0.0
        if self._sells_holdings(market, order.side):
            return 0.0
        rate = market.margin_rate
        needed = price * quantity * rate
        if order.order_type == OrderType.LIMIT:
            consumed = min(order.reserved_margin, order.price * quantity * rate)
        else:
            consumed = min(order.reserved_margin, needed)
        order.reserved_margin -= consumed
        if order.reserved_margin <= EPSILON:
            order.reserved_margin = 0.0

        if consumed > needed + EPSILON:
            self._ledger.unlock(order.owner, consumed - needed, "Price improvement", order.order_id)
            return needed
        if consumed < needed - EPSILON:
            extra = self._ledger.lock(order.owner, needed - consumed, "Fill margin top-up",
                                      order.order_id)
            if extra.success:
                return needed
            return consumed
        return consumed

    def _release_reservation(self, order: Order, reason: str) -> float:
        """Unlock whatever reservation the order still holds. Idempotent."""
        amount = order.reserved_margin
        order.reserved_margin = 0.0
        if order.owner is None or amount <= EPSILON:
            return 0.0
        result = self._ledger.unlock(order.owner, amount, reason, order.order_id)
        if not result.success:
            logger.error(
                f"Failed to release margin {amount:.8f} for {order.order_id}: {result.error}"
            )
            return 0.0
        return amount

    def _charge_fee(self, owner: str, fee: float, trade_id: str, position) -> None:
        charged = self._ledger.debit_locked_first(
            owner, fee, "Trading fee", trade_id, max_from_locked=0.0, allow_partial=True
        )
        if charged.amount < fee - EPSILON:
            logger.risk("WARNING", "Fee only partially collected", owner=owner,
                        fee=f"{fee:.6f}", collected=f"{charged.amount:.6f}")
        with self._stats_lock:
            self._stats.fee_revenue += charged.amount
        if position is not None and charged.amount > EPSILON:
            position.total_fees_paid += charged.amount
            self._store.save_position(position)

    def _finish_taker(self, state: MarketState, order: Order) -> None:
        """Rest, fill, or discard what is left of the incoming order."""
        now = self._clock()
        if order.order_type == OrderType.MARKET:
            if order.filled_quantity <= EPSILON:
                order.status = OrderStatus.CANCELLED
                order.cancelled_at = now
            else:
                # Unfilled market quantity is dropped rather than rested
                order.quantity = order.filled_quantity
                order.status = OrderStatus.FILLED
                order.filled_at = order.filled_at or now
            self._release_reservation(order, "Market order remainder")
            return

        if order.remaining_quantity > EPSILON:
            order.status = OrderStatus.PARTIAL if order.filled_quantity > EPSILON else OrderStatus.OPEN
            state.book.add_level(order.side, order.price, order.remaining_quantity)
        else:
            self._release_reservation(order, "Order filled")

    # ─────────────────────────────────────────────────────────────────────
    # Cancellation
    # ─────────────────────────────────────────────────────────────────────

    def cancel_order(self, order_id: str, owner: Optional[str]) -> CancelOrderResult:
        """
        Cancel a resting order.

        Args:
            order_id: Order to cancel
            owner: Requesting owner (must match the order's owner)

        Returns:
            CancelOrderResult; a second cancel of the same order is NOT_CANCELLABLE
        """
        order = self._store.get_order(order_id)
        if order is None:
            return CancelOrderResult.rejected(ErrorCode.ORDER_NOT_FOUND, f"Order not found: {order_id}")
        state = self._registry.get(order.market)
        if state is None:
            return CancelOrderResult.rejected(
                ErrorCode.MARKET_NOT_FOUND, f"Market not found: {order.market}"
            )

        with state.lock:
            # Re-read: a concurrent match may have moved the order
            order = self._store.get_order(order_id)
            if order.owner != owner:
                return CancelOrderResult.rejected(
                    ErrorCode.NOT_OWNER, "Order belongs to another owner"
                )
            if order.status.is_terminal():
                return CancelOrderResult.rejected(
                    ErrorCode.NOT_CANCELLABLE,
                    f"Order is {order.status.value}",
                    order=order,
                )
            events: List[VenueEvent] = []
            released = self._cancel_locked(state, order, events, "user request")
            events.append(ev.book_changed(state.symbol, state.book.snapshot()))
            if owner is not None:
                events.append(ev.balance_changed(self._ledger.get_balance(owner), "order cancelled"))

        with self._stats_lock:
            self._stats.orders_cancelled += 1
        return CancelOrderResult(success=True, order=order, released_margin=released, events=events)

    def _cancel_locked(self, state: MarketState, order: Order,
                       events: List[VenueEvent], reason: str) -> float:
        now = self._clock()
        if order.status.is_resting() and order.remaining_quantity > EPSILON:
            state.book.remove_quantity(order.side, order.price, order.remaining_quantity, True)
        released = self._release_reservation(order, "Order cancelled")
        order.status = OrderStatus.CANCELLED
        order.cancelled_at = now
        order.updated_at = now
        self._store.save_order(order)
        events.append(ev.order_updated(order))
        if not order.is_synthetic:
            logger.trade("ORDER_CANCELLED", order.market, order.side.value,
                         order.remaining_quantity, price=order.price, reason=reason)
        return released

    # ─────────────────────────────────────────────────────────────────────
    # Synthetic liquidity
    # ─────────────────────────────────────────────────────────────────────

    def cancel_synthetic_orders(self, market: str) -> Tuple[int, List[VenueEvent]]:
        """Cancel every resting synthetic order of a market."""
        state = self._registry.get(market)
        if state is None:
            return 0, []
        events: List[VenueEvent] = []
        with state.lock:
            orders = self._store.synthetic_open_orders(market)
            for order in orders:
                self._cancel_locked(state, order, events, "synthetic refresh")
            if orders:
                events.append(ev.book_changed(market, state.book.snapshot()))
        return len(orders), events

    def refresh_synthetic_liquidity(
        self,
        market: str,
        quotes: Iterable[Tuple[Side, float, float]],
    ) -> PlaceOrderResult:
        """
        Atomically replace a market's synthetic quotes.

        Args:
            market: Market symbol
            quotes: (side, price, quantity) limit quotes to post

        Returns:
            PlaceOrderResult aggregating any trades the new quotes produced
        """
        state = self._registry.get(market)
        if state is None:
            return self._reject(ErrorCode.MARKET_NOT_FOUND, f"Market not found: {market}")

        events: List[VenueEvent] = []
        trades: List[Trade] = []
        with state.lock:
            _, cancel_events = self.cancel_synthetic_orders(market)
            events.extend(cancel_events)
            for side, price, quantity in quotes:
                placed = self._place_locked(
                    state, None, Side(side), OrderType.LIMIT, quantity, price, False, False
                )
                if not placed.success:
                    logger.debug(f"Synthetic quote skipped: {placed.error}")
                    continue
                trades.extend(placed.trades)
                events.extend(placed.events)
        return PlaceOrderResult(success=True, trades=trades, events=events)

    # ─────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._store.get_order(order_id)

    def open_orders(self, owner: str, market: Optional[str] = None) -> List[Order]:
        return self._store.open_orders_for_owner(owner, market)

    def order_history(self, owner: str, market: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> List[Order]:
        return self._store.order_history(owner, market, limit, offset)

    def trade_history(self, owner: str, market: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> List[Trade]:
        return self._store.trades_for_owner(owner, market, limit, offset)

    def recent_trades(self, market: str, limit: int = 50) -> List[Trade]:
        return self._store.recent_trades(market, limit)
