"""
portfolio_risk_manager.py - Portfolio-Level Risk Assessment & Limits

Scores a prospective position and decides whether it may be opened:
- Position weight within the portfolio
- Correlation with positions already held (injected correlation matrix)
- Market risk from return volatility
- Liquidity risk from order size

This is a risk-reduction system: it can block trades, never enlarge them.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from core.errors import ValidationError


logger = logging.getLogger(__name__)

DEFAULT_VOLATILITY = 0.02
CORRELATION_RISK_FACTOR = 0.02
MARKET_RISK_FACTOR = 0.1
BASE_LIQUIDITY_RISK = 0.01


class RiskLevel(Enum):
    """Aggregate risk bands."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def risk_level_for(total: float) -> RiskLevel:
    if total < 0.05:
        return RiskLevel.LOW
    if total < 0.10:
        return RiskLevel.MEDIUM
    if total < 0.20:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


@dataclass
class ExistingPosition:
    """Minimal view of an open position used for risk aggregation."""
    symbol: str
    value: float


@dataclass
class PositionRisk:
    """
    Risk breakdown for one prospective position.

    Attributes:
        current_risk: Position value as a fraction of portfolio value
        correlation_risk: Sum of 0.02 x |corr| over highly correlated holdings
        market_risk: Volatility x 0.1
        liquidity_risk: 0.01 + min(quantity / 1000, 0.05)
        total_risk: Sum of the above
    """
    symbol: str
    portfolio_id: str
    current_risk: float
    correlation_risk: float
    market_risk: float
    liquidity_risk: float
    total_risk: float
    risk_level: RiskLevel
    volatility: float
    correlated_symbols: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'portfolio_id': self.portfolio_id,
            'current_risk': self.current_risk,
            'correlation_risk': self.correlation_risk,
            'market_risk': self.market_risk,
            'liquidity_risk': self.liquidity_risk,
            'total_risk': self.total_risk,
            'risk_level': self.risk_level.value,
            'volatility': self.volatility,
            'correlated_symbols': list(self.correlated_symbols),
        }


@dataclass
class RiskValidation:
    """Outcome of validate_position."""
    is_valid: bool
    reason: Optional[str]
    risk: PositionRisk
    total_portfolio_risk: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'is_valid': self.is_valid,
            'reason': self.reason,
            'risk': self.risk.to_dict(),
            'total_portfolio_risk': self.total_portfolio_risk,
        }


PositionsProvider = Callable[[str], Iterable[ExistingPosition]]


class PortfolioRiskManager:
    """
    Portfolio-level risk management with correlation and exposure limits.

    Core responsibilities:
    - Hold the injected correlation matrix
    - Estimate per-symbol volatility from recorded prices
    - Assess a prospective position's risk
    - Enforce position-count, per-position, total and correlation limits

    Open positions come from positions_provider(portfolio_id) unless passed
    explicitly to assess_risk / validate_position.
    """

    def __init__(
        self,
        max_positions: int = 10,
        max_risk_per_position: float = 0.05,
        max_total_risk: float = 0.20,
        correlation_threshold: float = 0.7,
        max_correlation_risk: float = 0.10,
        volatility_lookback: int = 30,
        positions_provider: Optional[PositionsProvider] = None,
        history_size: int = 100,
    ):
        """
        Initialize portfolio risk manager.

        Args:
            max_positions: Open position ceiling per portfolio
            max_risk_per_position: Maximum position weight (0.05 = 5%)
            max_total_risk: Maximum combined weight of all positions
            correlation_threshold: |corr| above which a holding adds correlation risk
            max_correlation_risk: Correlation risk ceiling for a new position
            volatility_lookback: Returns used for volatility estimates
            positions_provider: Callable returning a portfolio's open positions
            history_size: Risk assessments retained per symbol
        """
        if max_positions < 1:
            raise ValueError(f"max_positions must be >= 1, got {max_positions}")
        if not 0 < max_risk_per_position <= max_total_risk <= 1:
            raise ValueError("require 0 < max_risk_per_position <= max_total_risk <= 1")
        if not 0 <= correlation_threshold <= 1:
            raise ValueError(f"correlation_threshold must be in [0, 1], got {correlation_threshold}")
        if volatility_lookback < 2:
            raise ValueError(f"volatility_lookback must be >= 2, got {volatility_lookback}")

        self.max_positions = max_positions
        self.max_risk_per_position = max_risk_per_position
        self.max_total_risk = max_total_risk
        self.correlation_threshold = correlation_threshold
        self.max_correlation_risk = max_correlation_risk
        self.volatility_lookback = volatility_lookback
        self.positions_provider = positions_provider

        self._lock = threading.RLock()
        self._correlations: Dict[Tuple[str, str], float] = {}
        self._prices: Dict[str, Deque[float]] = {}
        self._volatility: Dict[str, float] = {}
        self._history_size = history_size
        self._history: Dict[str, Deque[PositionRisk]] = {}

        self.blocked_count = 0

        logger.info(
            f"PortfolioRiskManager initialized: max_positions={max_positions}, "
            f"max_risk_per_position={max_risk_per_position:.1%}, max_total_risk={max_total_risk:.1%}"
        )

    @classmethod
    def from_config(cls, risk: Dict[str, Any], positions_provider: Optional[PositionsProvider] = None) -> "PortfolioRiskManager":
        return cls(
            max_positions=risk.get('max_positions', 10),
            max_risk_per_position=risk.get('max_risk_per_position', 0.05),
            max_total_risk=risk.get('max_total_risk', 0.20),
            correlation_threshold=risk.get('correlation_threshold', 0.7),
            max_correlation_risk=risk.get('max_correlation_risk', 0.10),
            volatility_lookback=risk.get('volatility_lookback', 30),
            positions_provider=positions_provider,
        )

    # -----------------------
    # Correlation
    # -----------------------

    def update_correlation(self, symbol_a: str, symbol_b: str, correlation: float) -> None:
        """Set one pairwise correlation; stored once, looked up symmetrically."""
        if not -1 <= correlation <= 1:
            raise ValueError(f"correlation must be in [-1, 1], got {correlation}")
        with self._lock:
            self._correlations[tuple(sorted((symbol_a, symbol_b)))] = correlation

    def update_correlations(self, matrix: Dict[str, Dict[str, float]]) -> None:
        """
        Load a pre-computed correlation matrix.

        Args:
            matrix: {symbol: {other_symbol: correlation}}
        """
        for symbol_a, row in matrix.items():
            for symbol_b, value in row.items():
                if symbol_a != symbol_b:
                    self.update_correlation(symbol_a, symbol_b, value)
        logger.info(f"Correlation matrix updated for {len(matrix)} symbols")

    def get_correlation(self, symbol_a: str, symbol_b: str) -> float:
        if symbol_a == symbol_b:
            return 1.0
        with self._lock:
            return self._correlations.get(tuple(sorted((symbol_a, symbol_b))), 0.0)

    # -----------------------
    # Volatility
    # -----------------------

    def record_price(self, symbol: str, price: float) -> None:
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")
        with self._lock:
            prices = self._prices.setdefault(symbol, deque(maxlen=self.volatility_lookback + 1))
            prices.append(price)
            if len(prices) >= 3:
                self._volatility[symbol] = self._std_of_returns(prices)

    def update_volatility(self, symbol: str, prices: Sequence[float]) -> float:
        """Replace a symbol's price window (e.g. from candle closes) and return its volatility."""
        window = [p for p in prices if p and p > 0][-(self.volatility_lookback + 1):]
        with self._lock:
            self._prices[symbol] = deque(window, maxlen=self.volatility_lookback + 1)
            if len(window) >= 3:
                self._volatility[symbol] = self._std_of_returns(window)
            return self._volatility.get(symbol, DEFAULT_VOLATILITY)

    @staticmethod
    def _std_of_returns(prices: Iterable[float]) -> float:
        arr = np.asarray(list(prices), dtype=float)
        returns = np.diff(arr) / arr[:-1]
        return float(np.std(returns))

    def get_volatility(self, symbol: str) -> float:
        """Volatility estimate, DEFAULT_VOLATILITY until enough prices are recorded."""
        with self._lock:
            return self._volatility.get(symbol, DEFAULT_VOLATILITY)

    # -----------------------
    # Assessment
    # -----------------------

    def _existing(self, portfolio_id: str, existing_positions: Optional[Iterable[ExistingPosition]]) -> List[ExistingPosition]:
        if existing_positions is not None:
            return list(existing_positions)
        if self.positions_provider is not None:
            return list(self.positions_provider(portfolio_id))
        return []

    def assess_risk(
        self,
        symbol: str,
        portfolio_id: str,
        quantity: float,
        price: float,
        portfolio_value: float,
        existing_positions: Optional[Iterable[ExistingPosition]] = None,
    ) -> PositionRisk:
        """
        Score a prospective position.

        Args:
            symbol: Trading pair
            portfolio_id: Owning portfolio
            quantity: Proposed quantity
            price: Expected price
            portfolio_value: Portfolio total value (quote currency)
            existing_positions: Open positions; defaults to positions_provider

        Returns:
            PositionRisk

        Raises:
            ValidationError: On non-positive inputs
        """
        reasons = []
        if quantity <= 0:
            reasons.append(f"quantity must be positive, got {quantity}")
        if price <= 0:
            reasons.append(f"price must be positive, got {price}")
        if portfolio_value <= 0:
            reasons.append(f"portfolio_value must be positive, got {portfolio_value}")
        if reasons:
            raise ValidationError("Invalid risk assessment input", reasons=reasons)

        current_risk = quantity * price / portfolio_value

        correlation_risk = 0.0
        correlated = []
        for position in self._existing(portfolio_id, existing_positions):
            if position.symbol == symbol:
                continue
            corr = abs(self.get_correlation(symbol, position.symbol))
            if corr > self.correlation_threshold:
                correlation_risk += corr * CORRELATION_RISK_FACTOR
                correlated.append(position.symbol)

        volatility = self.get_volatility(symbol)
        market_risk = volatility * MARKET_RISK_FACTOR
        liquidity_risk = BASE_LIQUIDITY_RISK + min(quantity / 1000, 0.05)
        total = current_risk + correlation_risk + market_risk + liquidity_risk

        risk = PositionRisk(
            symbol=symbol,
            portfolio_id=portfolio_id,
            current_risk=current_risk,
            correlation_risk=correlation_risk,
            market_risk=market_risk,
            liquidity_risk=liquidity_risk,
            total_risk=total,
            risk_level=risk_level_for(total),
            volatility=volatility,
            correlated_symbols=correlated,
        )
        with self._lock:
            self._history.setdefault(symbol, deque(maxlen=self._history_size)).append(risk)
        return risk

    def calculate_portfolio_risk(
        self,
        portfolio_id: str,
        portfolio_value: float,
        existing_positions: Optional[Iterable[ExistingPosition]] = None,
    ) -> float:
        """Combined weight of all open positions."""
        if portfolio_value <= 0:
            return 0.0
        return sum(p.value for p in self._existing(portfolio_id, existing_positions)) / portfolio_value

    def validate_position(
        self,
        symbol: str,
        portfolio_id: str,
        quantity: float,
        price: float,
        portfolio_value: float,
        existing_positions: Optional[Iterable[ExistingPosition]] = None,
    ) -> RiskValidation:
        """
        Decide whether a position may be opened.

        Checks, in order: position count, per-position risk, total portfolio
        risk and correlation risk. The first violation is the reason.

        Returns:
            RiskValidation
        """
        existing = self._existing(portfolio_id, existing_positions)
        risk = self.assess_risk(symbol, portfolio_id, quantity, price, portfolio_value, existing)
        current_total = self.calculate_portfolio_risk(portfolio_id, portfolio_value, existing)
        new_total = current_total + risk.current_risk

        reason = None
        if len(existing) >= self.max_positions:
            reason = f"Maximum positions per portfolio reached ({len(existing)}/{self.max_positions})"
        elif risk.current_risk > self.max_risk_per_position:
            reason = f"Position risk {risk.current_risk:.2%} exceeds maximum {self.max_risk_per_position:.2%}"
        elif new_total > self.max_total_risk:
            reason = f"Total portfolio risk {new_total:.2%} would exceed maximum {self.max_total_risk:.2%}"
        elif risk.correlation_risk > self.max_correlation_risk:
            reason = (
                f"Correlation risk {risk.correlation_risk:.2%} exceeds maximum {self.max_correlation_risk:.2%} "
                f"({', '.join(risk.correlated_symbols)})"
            )

        if reason:
            with self._lock:
                self.blocked_count += 1
            logger.warning(f"Position blocked for {portfolio_id} {symbol}: {reason}")
        else:
            logger.debug(f"Position approved for {portfolio_id} {symbol}: total risk {risk.total_risk:.4f}")
        return RiskValidation(is_valid=reason is None, reason=reason, risk=risk, total_portfolio_risk=new_total)

    def get_risk_history(self, symbol: str, limit: Optional[int] = None) -> List[PositionRisk]:
        with self._lock:
            items = list(self._history.get(symbol, []))
        return items if limit is None else items[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'correlation_pairs': len(self._correlations),
                'symbols_with_volatility': len(self._volatility),
                'blocked_count': self.blocked_count,
            }
