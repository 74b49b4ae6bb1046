"""
orders.py - Order Model

Order enums, the OrderRequest submitted by the engine and the Order record
whose state follows exchange-reported transitions. No placement logic here.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class OrderType(Enum):
    """Order types."""
    MARKET = "market"
    LIMIT = "limit"
    STOP_LOSS = "stop_loss"
    STOP_LOSS_LIMIT = "stop_loss_limit"
    TAKE_PROFIT = "take_profit"
    TAKE_PROFIT_LIMIT = "take_profit_limit"

    @property
    def requires_price(self) -> bool:
        return self in (OrderType.LIMIT, OrderType.STOP_LOSS_LIMIT, OrderType.TAKE_PROFIT_LIMIT)

    @property
    def requires_stop_price(self) -> bool:
        return self in (OrderType.STOP_LOSS, OrderType.STOP_LOSS_LIMIT,
                        OrderType.TAKE_PROFIT, OrderType.TAKE_PROFIT_LIMIT)


class OrderSide(Enum):
    """Order sides."""
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderStatus(Enum):
    """Exchange-reported order status."""
    NEW = "new"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"
    PENDING_CANCEL = "pending_cancel"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    OrderStatus.FILLED,
    OrderStatus.CANCELED,
    OrderStatus.REJECTED,
    OrderStatus.EXPIRED,
})


class TimeInForce(Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"


@dataclass
class OrderRequest:
    """
    Order request structure.

    Attributes:
        symbol: Trading pair symbol
        side: Buy or sell
        order_type: Type of order
        quantity: Amount to trade
        portfolio_id: Owning portfolio
        price: Limit price (limit types)
        stop_price: Trigger price (stop-loss / take-profit types)
        time_in_force: GTC, IOC or FOK
        client_order_id: Client-generated order ID
        reference_price: Price used for value checks and slippage (market orders)
        metadata: Additional order information
    """
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: float
    portfolio_id: Optional[str] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    time_in_force: TimeInForce = TimeInForce.GTC
    client_order_id: Optional[str] = None
    reference_price: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Generate client order ID if not provided."""
        if self.client_order_id is None:
            self.client_order_id = f"te_{uuid.uuid4().hex[:16]}"

    @property
    def effective_price(self) -> Optional[float]:
        """Price used to value the order."""
        return self.price or self.reference_price or self.stop_price

    @property
    def notional(self) -> Optional[float]:
        price = self.effective_price
        return None if price is None else price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'side': self.side.value,
            'order_type': self.order_type.value,
            'quantity': self.quantity,
            'portfolio_id': self.portfolio_id,
            'price': self.price,
            'stop_price': self.stop_price,
            'time_in_force': self.time_in_force.value,
            'client_order_id': self.client_order_id,
            'reference_price': self.reference_price,
            'metadata': self.metadata,
        }


@dataclass
class OrderReport:
    """Order state as reported by the exchange (poll or stream)."""
    exchange_order_id: str
    symbol: str
    status: OrderStatus
    executed_quantity: float = 0.0
    average_price: Optional[float] = None
    commission: float = 0.0
    client_order_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Order:
    """
    Tracked order.

    State only moves through apply_report(); a terminal status is final.
    """
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: float
    portfolio_id: Optional[str] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    time_in_force: TimeInForce = TimeInForce.GTC
    status: OrderStatus = OrderStatus.NEW
    executed_quantity: float = 0.0
    average_price: Optional[float] = None
    commission: float = 0.0
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[str] = None
    reference_price: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_request(cls, request: OrderRequest) -> "Order":
        return cls(
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            quantity=request.quantity,
            portfolio_id=request.portfolio_id,
            price=request.price,
            stop_price=request.stop_price,
            time_in_force=request.time_in_force,
            client_order_id=request.client_order_id,
            reference_price=request.reference_price,
            metadata=dict(request.metadata),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def remaining_quantity(self) -> float:
        return max(0.0, self.quantity - self.executed_quantity)

    def apply_report(self, report: OrderReport) -> Optional[float]:
        """
        Apply an exchange report.

        Args:
            report: Latest reported state

        Returns:
            Newly executed quantity (0.0 when only the status changed), or None
            when the report was ignored (order already terminal, or the report
            moves executed quantity backwards).
        """
        if self.is_terminal:
            if report.status != self.status:
                logger.warning(
                    f"Ignoring {report.status.value} report for terminal order "
                    f"{self.client_order_id} ({self.status.value})"
                )
            return None
        if report.executed_quantity < self.executed_quantity:
            logger.warning(
                f"Ignoring stale report for {self.client_order_id}: "
                f"executed {report.executed_quantity} < {self.executed_quantity}"
            )
            return None

        delta = report.executed_quantity - self.executed_quantity
        if report.status == self.status and delta == 0:
            return None

        self.status = report.status
        self.executed_quantity = report.executed_quantity
        if report.average_price is not None:
            self.average_price = report.average_price
        self.commission = max(self.commission, report.commission)
        if report.exchange_order_id:
            self.exchange_order_id = report.exchange_order_id
        self.updated_at = report.timestamp
        return delta

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'side': self.side.value,
            'order_type': self.order_type.value,
            'quantity': self.quantity,
            'portfolio_id': self.portfolio_id,
            'price': self.price,
            'stop_price': self.stop_price,
            'time_in_force': self.time_in_force.value,
            'status': self.status.value,
            'executed_quantity': self.executed_quantity,
            'average_price': self.average_price,
            'commission': self.commission,
            'client_order_id': self.client_order_id,
            'exchange_order_id': self.exchange_order_id,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'metadata': self.metadata,
        }

    def __repr__(self) -> str:
        """String representation."""
        return (f"Order({self.client_order_id} {self.side.value} {self.quantity} {self.symbol} "
                f"{self.order_type.value} status={self.status.value} filled={self.executed_quantity})")
