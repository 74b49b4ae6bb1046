"""
position_book.py - Open Position Tracking

Positions are created by filled entry orders, grow or shrink with further
fills, follow price refreshes and close when their quantity reaches zero.
One position per (portfolio, symbol); fills against the position's
direction reduce it and realize P&L, they never flip it.
"""

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from execution.orders import OrderSide


logger = logging.getLogger(__name__)

# Quantities below this are treated as zero
QUANTITY_EPSILON = 1e-12


class PositionSide(Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def entry_order_side(self) -> OrderSide:
        return OrderSide.BUY if self is PositionSide.LONG else OrderSide.SELL

    @property
    def exit_order_side(self) -> OrderSide:
        return OrderSide.SELL if self is PositionSide.LONG else OrderSide.BUY


class PositionStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"
    PENDING = "pending"


@dataclass
class Position:
    """
    Position in one symbol for one portfolio.

    Attributes:
        unrealized_pnl: Mark-to-market P&L of the open quantity
        realized_pnl: P&L locked in by reducing fills (net of exit fees)
        trade_id: Id of the trade that opened the position
    """
    symbol: str
    portfolio_id: str
    side: PositionSide
    quantity: float
    entry_price: float
    current_price: float
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    entry_time: float = field(default_factory=time.time)
    status: PositionStatus = PositionStatus.OPEN
    trade_id: str = field(default_factory=lambda: f"trade_{uuid.uuid4().hex[:12]}")
    fees: float = 0.0
    closed_at: Optional[float] = None

    @property
    def direction(self) -> int:
        return 1 if self.side == PositionSide.LONG else -1

    @property
    def market_value(self) -> float:
        return self.quantity * self.current_price

    @property
    def cost_basis(self) -> float:
        return self.quantity * self.entry_price

    def mark(self, price: float) -> None:
        self.current_price = price
        self.unrealized_pnl = (price - self.entry_price) * self.quantity * self.direction

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'portfolio_id': self.portfolio_id,
            'side': self.side.value,
            'quantity': self.quantity,
            'entry_price': self.entry_price,
            'current_price': self.current_price,
            'unrealized_pnl': self.unrealized_pnl,
            'realized_pnl': self.realized_pnl,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'entry_time': self.entry_time,
            'status': self.status.value,
            'trade_id': self.trade_id,
            'fees': self.fees,
            'closed_at': self.closed_at,
        }


@dataclass
class ClosedTrade:
    """A completed round trip, produced when a position closes."""
    trade_id: str
    portfolio_id: str
    symbol: str
    side: PositionSide
    quantity: float
    entry_price: float
    exit_price: float
    pnl: float
    pnl_pct: float
    fees: float
    entry_time: float
    exit_time: float
    exit_reason: str = "signal"
    slippage: float = 0.0

    @property
    def duration(self) -> float:
        return self.exit_time - self.entry_time

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'trade_id': self.trade_id,
            'portfolio_id': self.portfolio_id,
            'symbol': self.symbol,
            'side': self.side.value,
            'quantity': self.quantity,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'pnl': self.pnl,
            'pnl_pct': self.pnl_pct,
            'fees': self.fees,
            'entry_time': self.entry_time,
            'exit_time': self.exit_time,
            'duration': self.duration,
            'exit_reason': self.exit_reason,
            'slippage': self.slippage,
        }


@dataclass
class FillOutcome:
    """Effect of one fill on the book."""
    position: Position
    opened: bool = False
    closed_trade: Optional[ClosedTrade] = None
    ignored_quantity: float = 0.0


class PositionBook:
    """Thread-safe store of open positions."""

    def __init__(self, closed_history_size: int = 1000):
        self._lock = threading.RLock()
        self._positions: Dict[Tuple[str, str], Position] = {}
        # Quantity closed so far, so a round trip reports its full size
        self._closed_qty: Dict[Tuple[str, str], float] = {}
        self._closed: Deque[ClosedTrade] = deque(maxlen=closed_history_size)

    def apply_fill(
        self,
        portfolio_id: str,
        symbol: str,
        side: OrderSide,
        quantity: float,
        price: float,
        fee: float = 0.0,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        trade_id: Optional[str] = None,
        exit_reason: str = "signal",
    ) -> FillOutcome:
        """
        Apply an executed quantity.

        Args:
            portfolio_id: Owning portfolio
            symbol: Trading pair
            side: Side of the filled order
            quantity: Newly executed quantity (not cumulative)
            price: Fill price
            fee: Commission for this fill
            stop_loss/take_profit: Protective levels for a newly opened position
            trade_id: Id for a newly opened position
            exit_reason: Recorded on the ClosedTrade when the fill closes the position

        Returns:
            FillOutcome
        """
        if quantity <= 0 or price <= 0:
            raise ValueError(f"fill quantity and price must be positive, got {quantity} @ {price}")

        key = (portfolio_id, symbol)
        with self._lock:
            position = self._positions.get(key)

            if position is None:
                position = Position(
                    symbol=symbol,
                    portfolio_id=portfolio_id,
                    side=PositionSide.LONG if side == OrderSide.BUY else PositionSide.SHORT,
                    quantity=quantity,
                    entry_price=price,
                    current_price=price,
                    stop_loss=stop_loss,
                    take_profit=take_profit,
                    fees=fee,
                )
                if trade_id:
                    position.trade_id = trade_id
                self._positions[key] = position
                self._closed_qty[key] = 0.0
                logger.info(f"Position opened: {portfolio_id} {position.side.value} {quantity} {symbol} @ {price}")
                return FillOutcome(position=position, opened=True)

            if side == position.side.entry_order_side:
                total = position.quantity + quantity
                position.entry_price = (position.entry_price * position.quantity + price * quantity) / total
                position.quantity = total
                position.fees += fee
                position.mark(price)
                return FillOutcome(position=position)

            closing = min(quantity, position.quantity)
            ignored = quantity - closing
            if ignored > QUANTITY_EPSILON:
                logger.warning(f"Fill of {quantity} exceeds {symbol} position {position.quantity}, ignoring {ignored}")
            position.realized_pnl += (price - position.entry_price) * closing * position.direction
            position.quantity -= closing
            position.fees += fee
            self._closed_qty[key] = self._closed_qty.get(key, 0.0) + closing
            position.mark(price)

            if position.quantity > QUANTITY_EPSILON:
                return FillOutcome(position=position, ignored_quantity=max(0.0, ignored))

            trade = self._close(key, position, price, exit_reason)
            return FillOutcome(position=position, closed_trade=trade, ignored_quantity=max(0.0, ignored))

    def _close(self, key: Tuple[str, str], position: Position, price: float, reason: str) -> ClosedTrade:
        """Caller holds the lock."""
        now = time.time()
        position.quantity = 0.0
        position.status = PositionStatus.CLOSED
        position.closed_at = now
        position.unrealized_pnl = 0.0
        closed_qty = self._closed_qty.pop(key, 0.0)
        del self._positions[key]

        net = position.realized_pnl - position.fees
        basis = position.entry_price * closed_qty
        trade = ClosedTrade(
            trade_id=position.trade_id,
            portfolio_id=position.portfolio_id,
            symbol=position.symbol,
            side=position.side,
            quantity=closed_qty,
            entry_price=position.entry_price,
            exit_price=price,
            pnl=net,
            pnl_pct=net / basis if basis > 0 else 0.0,
            fees=position.fees,
            entry_time=position.entry_time,
            exit_time=now,
            exit_reason=reason,
        )
        self._closed.append(trade)
        logger.info(f"Position closed: {position.portfolio_id} {position.symbol} pnl={net:.2f} ({reason})")
        return trade

    def refresh_price(self, symbol: str, price: float) -> List[Position]:
        """Mark every open position in symbol to price."""
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")
        with self._lock:
            updated = [p for (_, s), p in self._positions.items() if s == symbol]
            for position in updated:
                position.mark(price)
        return updated

    def check_exit_trigger(self, portfolio_id: str, symbol: str) -> Optional[str]:
        """Return 'stop_loss' or 'take_profit' when the current price hits a protective level."""
        with self._lock:
            position = self._positions.get((portfolio_id, symbol))
            if position is None:
                return None
            price = position.current_price
            if position.side == PositionSide.LONG:
                if position.stop_loss is not None and price <= position.stop_loss:
                    return 'stop_loss'
                if position.take_profit is not None and price >= position.take_profit:
                    return 'take_profit'
            else:
                if position.stop_loss is not None and price >= position.stop_loss:
                    return 'stop_loss'
                if position.take_profit is not None and price <= position.take_profit:
                    return 'take_profit'
        return None

    def close_position(self, portfolio_id: str, symbol: str, price: float, reason: str = "manual") -> Optional[ClosedTrade]:
        """Close the whole position at price without an order (reconciliation)."""
        with self._lock:
            position = self._positions.get((portfolio_id, symbol))
            if position is None:
                return None
            return self.apply_fill(portfolio_id, symbol, position.side.exit_order_side,
                                   position.quantity, price, exit_reason=reason).closed_trade

    def get_position(self, portfolio_id: str, symbol: str) -> Optional[Position]:
        with self._lock:
            return self._positions.get((portfolio_id, symbol))

    def has_open_position(self, portfolio_id: str, symbol: str) -> bool:
        with self._lock:
            return (portfolio_id, symbol) in self._positions

    def get_open_positions(self, portfolio_id: Optional[str] = None) -> List[Position]:
        with self._lock:
            return [p for (pid, _), p in self._positions.items() if portfolio_id is None or pid == portfolio_id]

    def get_closed_trades(self, portfolio_id: Optional[str] = None, limit: Optional[int] = None) -> List[ClosedTrade]:
        with self._lock:
            trades = [t for t in self._closed if portfolio_id is None or t.portfolio_id == portfolio_id]
        return trades if limit is None else trades[-limit:]
