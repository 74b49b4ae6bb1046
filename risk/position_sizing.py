"""
position_sizing.py - Position Size Calculator

Turns a portfolio budget, a decision confidence and optional volatility
into a bounded quantity. Does not generate trading signals and does not
check portfolio limits - only determines sizing for existing decisions.

Method priority:
    KELLY        confidence above kelly_min_confidence
    VOLATILITY   volatility supplied
    RISK_PARITY  the portfolio already holds open positions
    FIXED        budget * max_risk_per_position / price
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.errors import ValidationError


logger = logging.getLogger(__name__)


class SizingMethod(Enum):
    """Position sizing calculation methods."""
    KELLY = "KELLY"
    VOLATILITY = "VOLATILITY"
    RISK_PARITY = "RISK_PARITY"
    FIXED = "FIXED"


@dataclass
class SizingResult:
    """
    Result of position sizing calculation.

    Attributes:
        quantity: Units to trade (base currency)
        method: Sizing method that produced the quantity
        value: quantity * price
        fraction: Share of the budget committed
        max_quantity: Affordability ceiling budget / price
        reasoning: Calculation notes
    """
    quantity: float
    method: SizingMethod
    value: float
    fraction: float
    max_quantity: float
    reasoning: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'quantity': self.quantity,
            'method': self.method.value,
            'value': self.value,
            'fraction': self.fraction,
            'max_quantity': self.max_quantity,
            'reasoning': list(self.reasoning),
        }

    def __repr__(self) -> str:
        return f"SizingResult(method={self.method.value}, qty={self.quantity:.6f}, value=${self.value:.2f})"


def kelly_fraction(confidence: float, multiplier: float = 0.25) -> float:
    """
    Kelly fraction assuming 1:1 payout odds, scaled by multiplier.

    f = (2p - (1 - p)) / 2, floored at zero.
    """
    raw = (2 * confidence - (1 - confidence)) / 2
    return max(0.0, raw * multiplier)


class PositionSizer:
    """
    Position size calculator.

    Kelly, volatility and risk-parity sizes can only shrink the fixed-fraction
    base quantity; every result is clamped to budget / price.
    """

    def __init__(
        self,
        max_risk_per_position: float = 0.05,
        kelly_multiplier: float = 0.25,
        kelly_min_confidence: float = 0.8,
    ):
        """
        Initialize position sizer.

        Args:
            max_risk_per_position: Budget fraction committed by fixed sizing (0.05 = 5%)
            kelly_multiplier: Scale applied to the raw Kelly fraction
            kelly_min_confidence: Kelly sizing applies strictly above this confidence
        """
        if not 0 < max_risk_per_position <= 1:
            raise ValueError(f"max_risk_per_position must be between 0 and 1, got {max_risk_per_position}")
        if not 0 < kelly_multiplier <= 1:
            raise ValueError(f"kelly_multiplier must be between 0 and 1, got {kelly_multiplier}")
        if not 0 <= kelly_min_confidence < 1:
            raise ValueError(f"kelly_min_confidence must be in [0, 1), got {kelly_min_confidence}")

        self.max_risk_per_position = max_risk_per_position
        self.kelly_multiplier = kelly_multiplier
        self.kelly_min_confidence = kelly_min_confidence

        logger.info(
            f"PositionSizer initialized: max_risk={max_risk_per_position:.1%}, "
            f"kelly_multiplier={kelly_multiplier}"
        )

    @classmethod
    def from_config(cls, sizing: Dict[str, Any]) -> "PositionSizer":
        return cls(
            max_risk_per_position=sizing.get('max_risk_per_position', 0.05),
            kelly_multiplier=sizing.get('kelly_multiplier', 0.25),
            kelly_min_confidence=sizing.get('kelly_min_confidence', 0.8),
        )

    def size_position(
        self,
        budget: float,
        confidence: float,
        price: float,
        volatility: Optional[float] = None,
        open_positions: int = 0,
    ) -> SizingResult:
        """
        Calculate position size.

        Args:
            budget: Capital available to the symbol (quote currency)
            confidence: Decision confidence in [0, 1]
            price: Expected entry price
            volatility: Optional return volatility (fraction)
            open_positions: Positions already open in the portfolio

        Returns:
            SizingResult

        Raises:
            ValidationError: On non-positive budget/price or out-of-range confidence
        """
        reasons = []
        if budget is None or budget <= 0:
            reasons.append(f"budget must be positive, got {budget}")
        if price is None or price <= 0:
            reasons.append(f"price must be positive, got {price}")
        if confidence is None or not 0 <= confidence <= 1:
            reasons.append(f"confidence must be in [0, 1], got {confidence}")
        if volatility is not None and volatility < 0:
            reasons.append(f"volatility must be >= 0, got {volatility}")
        if open_positions < 0:
            reasons.append(f"open_positions must be >= 0, got {open_positions}")
        if reasons:
            raise ValidationError("Invalid sizing input", reasons=reasons)

        max_quantity = budget / price
        base_quantity = budget * self.max_risk_per_position / price
        notes = [f"base {base_quantity:.6f} = {budget:.2f} x {self.max_risk_per_position:.2%} / {price}"]

        if confidence > self.kelly_min_confidence:
            fraction = kelly_fraction(confidence, self.kelly_multiplier)
            kelly_quantity = budget * fraction / price
            quantity = min(base_quantity, kelly_quantity)
            method = SizingMethod.KELLY
            notes.append(f"kelly fraction {fraction:.4f} at confidence {confidence:.2f}")
        elif volatility is not None:
            factor = max(0.1, 1 - 2 * volatility)
            quantity = base_quantity * factor
            method = SizingMethod.VOLATILITY
            notes.append(f"volatility {volatility:.4f} scales base by {factor:.2f}")
        elif open_positions > 0:
            share = budget / (open_positions + 1)
            quantity = min(base_quantity, share * self.max_risk_per_position / price)
            method = SizingMethod.RISK_PARITY
            notes.append(f"equal risk share across {open_positions + 1} positions")
        else:
            quantity = base_quantity
            method = SizingMethod.FIXED

        quantity = max(0.0, min(quantity, max_quantity))
        value = quantity * price

        logger.debug(f"Sized position: {method.value} qty={quantity:.6f} value=${value:.2f}")
        return SizingResult(
            quantity=quantity,
            method=method,
            value=value,
            fraction=value / budget,
            max_quantity=max_quantity,
            reasoning=notes,
        )
