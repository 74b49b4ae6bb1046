"""
order_validator.py - Basic Order Validation

First validation layer applied to every order before placement:
required fields, quantity, prices required by the order type, order value
bounds, soft warnings for extreme quantities and the per-symbol ceiling of
active orders. Returns every violated check, never only the first.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.errors import ValidationError
from execution.orders import OrderRequest, OrderSide, OrderType


logger = logging.getLogger(__name__)


class Severity(Enum):
    """Validation severity, ordered from least to most serious."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


@dataclass
class RuleResult:
    """
    Outcome of one validation rule.

    Attributes:
        rule_id: Rule identifier
        passed: Whether the rule passed
        severity: Severity of the failure (or of the warning when passed)
        message: Human-readable explanation
        warning: Warning raised by a passing rule
        recommendations: Suggested remediations
    """
    rule_id: str
    passed: bool
    severity: Severity
    message: str = ""
    warning: Optional[str] = None
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'rule_id': self.rule_id,
            'passed': self.passed,
            'severity': self.severity.name,
            'message': self.message,
            'warning': self.warning,
            'recommendations': list(self.recommendations),
        }


@dataclass
class ValidationResult:
    """
    Aggregated validation outcome.

    Attributes:
        is_valid: True when no blocking failure occurred
        errors: Blocking reasons
        warnings: Non-blocking findings
        results: Per-rule results in evaluation order
        blocking_rule: First rule that blocked, if any
        severity: Highest severity among failures
    """
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    results: List[RuleResult] = field(default_factory=list)
    blocking_rule: Optional[str] = None
    severity: Optional[Severity] = None

    def raise_for_errors(self, message: str = "Validation failed") -> None:
        """Raise ValidationError carrying every reason when invalid."""
        if not self.is_valid:
            raise ValidationError(f"{message}: {'; '.join(self.errors)}", reasons=self.errors,
                                  context={'blocking_rule': self.blocking_rule})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'is_valid': self.is_valid,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'results': [r.to_dict() for r in self.results],
            'blocking_rule': self.blocking_rule,
            'severity': self.severity.name if self.severity else None,
        }


class OrderValidator:
    """
    Basic order validation.

    Args:
        max_orders_per_symbol: Ceiling of active orders per symbol
        min_order_value: Minimum notional (quote currency)
        max_order_value: Maximum notional (quote currency)
        min_quantity_warning: Quantities below this produce a warning
        max_quantity_warning: Quantities above this produce a warning
    """

    def __init__(
        self,
        max_orders_per_symbol: int = 5,
        min_order_value: float = 10.0,
        max_order_value: float = 10000.0,
        min_quantity_warning: float = 0.0001,
        max_quantity_warning: float = 1_000_000,
    ):
        if max_orders_per_symbol < 1:
            raise ValueError(f"max_orders_per_symbol must be >= 1, got {max_orders_per_symbol}")
        if not 0 <= min_order_value < max_order_value:
            raise ValueError("require 0 <= min_order_value < max_order_value")
        self.max_orders_per_symbol = max_orders_per_symbol
        self.min_order_value = min_order_value
        self.max_order_value = max_order_value
        self.min_quantity_warning = min_quantity_warning
        self.max_quantity_warning = max_quantity_warning

    def validate(self, request: OrderRequest, active_orders: int = 0) -> ValidationResult:
        """
        Validate an order request.

        Args:
            request: Order to validate
            active_orders: Number of currently active orders for the symbol

        Returns:
            ValidationResult listing every error and warning
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not request.symbol or not isinstance(request.symbol, str):
            errors.append("symbol is required")
        if not isinstance(request.side, OrderSide):
            errors.append("side must be BUY or SELL")
        if not isinstance(request.order_type, OrderType):
            errors.append("order type is required")

        quantity = request.quantity
        if not isinstance(quantity, (int, float)) or quantity <= 0:
            errors.append(f"quantity must be greater than 0, got {quantity!r}")
            quantity = None
        else:
            if quantity < self.min_quantity_warning:
                warnings.append(f"very small quantity {quantity}")
            if quantity > self.max_quantity_warning:
                warnings.append(f"very large quantity {quantity}")

        if isinstance(request.order_type, OrderType):
            if request.order_type.requires_price and not request.price:
                errors.append(f"price is required for {request.order_type.value} orders")
            if request.order_type.requires_stop_price and not request.stop_price:
                errors.append(f"stop price is required for {request.order_type.value} orders")
        for name in ('price', 'stop_price', 'reference_price'):
            value = getattr(request, name)
            if value is not None and value <= 0:
                errors.append(f"{name} must be positive, got {value}")

        price = request.effective_price
        if quantity is not None and price is not None and price > 0:
            value = quantity * price
            if value < self.min_order_value:
                errors.append(f"order value {value:.2f} below minimum {self.min_order_value:.2f}")
            elif value > self.max_order_value:
                errors.append(f"order value {value:.2f} above maximum {self.max_order_value:.2f}")
        elif quantity is not None and price is None:
            warnings.append("order value not checked: no price available")

        if active_orders >= self.max_orders_per_symbol:
            errors.append(
                f"active order limit reached for {request.symbol} "
                f"({active_orders}/{self.max_orders_per_symbol})"
            )

        if errors:
            logger.warning(f"Order {request.client_order_id} rejected: {errors}")
        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            blocking_rule='basic' if errors else None,
            severity=Severity.HIGH if errors else None,
        )
