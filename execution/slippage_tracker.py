"""
slippage_tracker.py - Slippage & Execution-Quality Tracker

Measures realized versus expected fill prices, flags unacceptable slippage,
decides whether a fill with excessive slippage may be retried and how much
to shrink the retry, and keeps rolling per-symbol execution analytics.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from execution.orders import OrderSide


logger = logging.getLogger(__name__)


class SlippageMethod(Enum):
    """How slippage is measured."""
    PERCENTAGE = "percentage"
    ABSOLUTE = "absolute"
    HYBRID = "hybrid"


# Histogram bucket upper bounds (fractions); the last bucket is open-ended
HISTOGRAM_BUCKETS = (
    ('0-1%', 0.01),
    ('1-3%', 0.03),
    ('3-5%', 0.05),
    ('>5%', None),
)


@dataclass
class SlippageResult:
    """
    Slippage of one fill.

    Attributes:
        slippage_pct: |actual - expected| / expected
        slippage_amount: Absolute notional cost |actual - expected| * quantity
        adverse: True when the fill was worse than expected for its side
        acceptable: slippage_pct within the configured ceiling
        within_tolerance: slippage_pct within the tighter tolerance
    """
    symbol: str
    side: OrderSide
    expected_price: float
    actual_price: float
    quantity: float
    slippage_pct: float
    slippage_amount: float
    adverse: bool
    acceptable: bool
    within_tolerance: bool
    method: SlippageMethod
    order_id: Optional[str] = None
    execution_time: Optional[float] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'side': self.side.value,
            'expected_price': self.expected_price,
            'actual_price': self.actual_price,
            'quantity': self.quantity,
            'slippage_pct': self.slippage_pct,
            'slippage_amount': self.slippage_amount,
            'adverse': self.adverse,
            'acceptable': self.acceptable,
            'within_tolerance': self.within_tolerance,
            'method': self.method.value,
            'order_id': self.order_id,
            'execution_time': self.execution_time,
            'timestamp': self.timestamp,
        }


@dataclass
class SlippageAnalysis:
    """Rolling per-symbol execution analytics."""
    symbol: str
    total_fills: int = 0
    average_slippage: float = 0.0
    min_slippage: float = 0.0
    max_slippage: float = 0.0
    total_cost: float = 0.0
    histogram: Dict[str, int] = field(default_factory=lambda: {name: 0 for name, _ in HISTOGRAM_BUCKETS})
    success_rate: float = 0.0
    average_execution_time: Optional[float] = None
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'total_fills': self.total_fills,
            'average_slippage': self.average_slippage,
            'min_slippage': self.min_slippage,
            'max_slippage': self.max_slippage,
            'total_cost': self.total_cost,
            'histogram': dict(self.histogram),
            'success_rate': self.success_rate,
            'average_execution_time': self.average_execution_time,
            'updated_at': self.updated_at,
        }


def bucket_for(slippage_pct: float) -> str:
    for name, upper in HISTOGRAM_BUCKETS:
        if upper is None or slippage_pct <= upper:
            return name
    return HISTOGRAM_BUCKETS[-1][0]


class SlippageTracker:
    """
    Thread-safe slippage tracker.

    Args:
        max_slippage: Ceiling above which a fill is unacceptable (fraction)
        tolerance: Tighter informational tolerance (fraction)
        method: Measurement method
        retry_on_high_slippage: Allow retries after unacceptable slippage
        max_retries: Retry ceiling per order
        protection_enabled: When False every fill is accepted and sizes are never reduced
        history_size: Fills kept per symbol
    """

    def __init__(
        self,
        max_slippage: float = 0.02,
        tolerance: float = 0.005,
        method: SlippageMethod = SlippageMethod.PERCENTAGE,
        retry_on_high_slippage: bool = True,
        max_retries: int = 3,
        protection_enabled: bool = True,
        history_size: int = 100,
    ):
        if not 0 < max_slippage <= 1:
            raise ValueError(f"max_slippage must be in (0, 1], got {max_slippage}")
        if not 0 <= tolerance <= max_slippage:
            raise ValueError("tolerance must be in [0, max_slippage]")
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.max_slippage = max_slippage
        self.tolerance = tolerance
        self.method = SlippageMethod(method) if not isinstance(method, SlippageMethod) else method
        self.retry_on_high_slippage = retry_on_high_slippage
        self.max_retries = max_retries
        self.protection_enabled = protection_enabled
        self.history_size = history_size

        self._lock = threading.RLock()
        self._history: Dict[str, Deque[SlippageResult]] = {}
        self._analytics: Dict[str, SlippageAnalysis] = {}

        logger.info(f"SlippageTracker initialized: ceiling={max_slippage:.2%}, method={self.method.value}")

    def record_fill(
        self,
        symbol: str,
        expected_price: float,
        actual_price: float,
        side: OrderSide,
        quantity: float,
        order_id: Optional[str] = None,
        execution_time: Optional[float] = None,
    ) -> SlippageResult:
        """
        Measure one fill and update the symbol's analytics.

        Args:
            symbol: Trading pair
            expected_price: Price the decision was based on
            actual_price: Average fill price
            side: Order side
            quantity: Filled quantity
            order_id: Optional order reference
            execution_time: Optional seconds from submission to fill

        Returns:
            SlippageResult

        Raises:
            ValueError: If prices or quantity are not positive
        """
        if expected_price <= 0 or actual_price <= 0:
            raise ValueError("expected_price and actual_price must be positive")
        if quantity <= 0:
            raise ValueError(f"quantity must be positive, got {quantity}")

        diff = actual_price - expected_price
        amount = abs(diff) * quantity
        if self.method == SlippageMethod.ABSOLUTE:
            pct = amount / (expected_price * quantity)
        else:
            pct = abs(diff) / expected_price
        adverse = diff > 0 if side == OrderSide.BUY else diff < 0
        acceptable = (not self.protection_enabled) or pct <= self.max_slippage

        result = SlippageResult(
            symbol=symbol,
            side=side,
            expected_price=expected_price,
            actual_price=actual_price,
            quantity=quantity,
            slippage_pct=pct,
            slippage_amount=amount,
            adverse=adverse,
            acceptable=acceptable,
            within_tolerance=pct <= self.tolerance,
            method=self.method,
            order_id=order_id,
            execution_time=execution_time,
        )

        with self._lock:
            history = self._history.setdefault(symbol, deque(maxlen=self.history_size))
            history.append(result)
            self._analytics[symbol] = self._recompute(symbol, history)

        if not acceptable:
            logger.warning(f"High slippage on {symbol}: {pct:.2%} > {self.max_slippage:.2%} (order {order_id})")
        return result

    def _recompute(self, symbol: str, history: Deque[SlippageResult]) -> SlippageAnalysis:
        values = [r.slippage_pct for r in history]
        analysis = SlippageAnalysis(symbol=symbol, total_fills=len(values))
        analysis.average_slippage = sum(values) / len(values)
        analysis.min_slippage = min(values)
        analysis.max_slippage = max(values)
        analysis.total_cost = sum(r.slippage_amount for r in history)
        for r in history:
            analysis.histogram[bucket_for(r.slippage_pct)] += 1
        analysis.success_rate = sum(1 for r in history if r.acceptable) / len(values)
        times = [r.execution_time for r in history if r.execution_time is not None]
        analysis.average_execution_time = sum(times) / len(times) if times else None
        return analysis

    def should_retry(self, result: SlippageResult, attempt: int) -> bool:
        """
        Whether an order with this slippage may be retried.

        Args:
            result: Slippage of the latest fill
            attempt: Retries already made for this order
        """
        if not self.retry_on_high_slippage or attempt >= self.max_retries:
            return False
        return not result.acceptable

    def optimal_order_size(self, quantity: float, slippage_pct: float) -> float:
        """
        Quantity for the next attempt.

        Once observed slippage passes half the ceiling, shrink proportionally,
        never below 10% of the original quantity.
        """
        if not self.protection_enabled or slippage_pct <= self.max_slippage * 0.5:
            return quantity
        factor = max(0.1, 1 - slippage_pct / self.max_slippage)
        return quantity * factor

    def get_analysis(self, symbol: str) -> Optional[SlippageAnalysis]:
        with self._lock:
            return self._analytics.get(symbol)

    def get_all_analyses(self) -> List[SlippageAnalysis]:
        with self._lock:
            return list(self._analytics.values())

    def get_history(self, symbol: str, limit: Optional[int] = None) -> List[SlippageResult]:
        """Recorded fills for a symbol, oldest first."""
        with self._lock:
            items = list(self._history.get(symbol, []))
        return items if limit is None else items[-limit:]
