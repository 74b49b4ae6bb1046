"""
trade_validator.py - Advanced Pre-Trade Validation

Composable rule registry evaluated before an order is sent. Rules are
registered by id, evaluated in insertion order, and can be enabled or
disabled individually. Each rule returns a RuleResult with a severity:

- CRITICAL failure: evaluation stops immediately, trade rejected
- HIGH failure: trade rejected unless HIGH overrides are allowed
- MEDIUM / LOW failure: trade allowed, failure reported as a warning
"""

import abc
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from execution.order_validator import RuleResult, Severity, ValidationResult
from execution.orders import OrderSide


logger = logging.getLogger(__name__)


@dataclass
class MarketData:
    """Market snapshot for the traded symbol."""
    volume: float = 0.0
    volatility: float = 0.0
    spread: float = 0.0
    liquidity: float = 0.0


@dataclass
class PortfolioData:
    """Portfolio snapshot at decision time."""
    current_positions: int = 0
    total_value: float = 0.0
    available_balance: float = 0.0
    risk_exposure: float = 0.0


@dataclass
class MarketConditions:
    is_high_volatility: bool = False
    is_low_liquidity: bool = False
    is_news_event: bool = False
    is_market_open: bool = True


@dataclass
class TradeValidationData:
    """
    Everything the advanced rules look at.

    Attributes:
        symbol: Trading pair
        side: Order side
        quantity: Order quantity
        price: Expected execution price
        ai_confidence: Sentiment-side confidence [0, 1]
        technical_confidence: Technical-analysis confidence [0, 1]
    """
    symbol: str
    side: OrderSide
    quantity: float
    price: float
    ai_confidence: float = 0.0
    technical_confidence: float = 0.0
    market_data: MarketData = field(default_factory=MarketData)
    portfolio_data: PortfolioData = field(default_factory=PortfolioData)
    market_conditions: MarketConditions = field(default_factory=MarketConditions)

    @property
    def trade_value(self) -> float:
        return self.quantity * self.price


class ValidationRule(abc.ABC):
    """Common interface for advanced validation rules."""

    rule_id: str = ""
    description: str = ""
    severity: Severity = Severity.MEDIUM

    @abc.abstractmethod
    def validate(self, data: TradeValidationData) -> RuleResult:
        ...

    def _pass(self, message: str = "", warning: Optional[str] = None,
              recommendations: Optional[List[str]] = None) -> RuleResult:
        return RuleResult(self.rule_id, True, self.severity, message, warning, list(recommendations or []))

    def _fail(self, message: str, severity: Optional[Severity] = None,
              recommendations: Optional[List[str]] = None) -> RuleResult:
        return RuleResult(self.rule_id, False, severity or self.severity, message, None, list(recommendations or []))


class MarketVolatilityRule(ValidationRule):
    rule_id = "market_volatility"
    description = "Market volatility ceiling"
    severity = Severity.HIGH

    def __init__(self, max_volatility: float = 0.05, warn_volatility: float = 0.03):
        self.max_volatility = max_volatility
        self.warn_volatility = warn_volatility

    def validate(self, data: TradeValidationData) -> RuleResult:
        vol = data.market_data.volatility
        if vol > self.max_volatility:
            return self._fail(
                f"volatility {vol:.2%} exceeds {self.max_volatility:.2%}",
                recommendations=["Wait for volatility to settle", "Reduce position size"],
            )
        if vol > self.warn_volatility:
            return self._pass(warning=f"elevated volatility {vol:.2%}",
                              recommendations=["Consider a smaller position"])
        return self._pass(f"volatility {vol:.2%} acceptable")


class LiquidityRule(ValidationRule):
    rule_id = "liquidity_check"
    description = "Available liquidity must cover a share of the trade notional"
    severity = Severity.CRITICAL

    def __init__(self, min_liquidity_ratio: float = 0.10):
        self.min_liquidity_ratio = min_liquidity_ratio

    def validate(self, data: TradeValidationData) -> RuleResult:
        required = data.trade_value * self.min_liquidity_ratio
        if data.market_data.liquidity < required:
            return self._fail(
                f"liquidity {data.market_data.liquidity:.2f} below required {required:.2f}",
                recommendations=["Reduce order size", "Split the order over time"],
            )
        return self._pass("liquidity sufficient")


class PortfolioRiskRule(ValidationRule):
    rule_id = "portfolio_risk"
    description = "Portfolio risk exposure ceiling"
    severity = Severity.HIGH

    def __init__(self, max_portfolio_risk: float = 0.20):
        self.max_portfolio_risk = max_portfolio_risk

    def validate(self, data: TradeValidationData) -> RuleResult:
        pd_ = data.portfolio_data
        if pd_.total_value <= 0:
            return self._fail("portfolio value unavailable",
                              recommendations=["Refresh portfolio valuation"])
        exposure = pd_.risk_exposure + data.trade_value / pd_.total_value
        if exposure > self.max_portfolio_risk:
            return self._fail(
                f"risk exposure {exposure:.2%} would exceed {self.max_portfolio_risk:.2%}",
                recommendations=["Close or reduce existing positions", "Reduce order size"],
            )
        return self._pass(f"risk exposure {exposure:.2%}")


class MarketConditionsRule(ValidationRule):
    rule_id = "market_conditions"
    description = "Blackout on closed markets, news events and thin volatile markets"
    severity = Severity.MEDIUM

    def validate(self, data: TradeValidationData) -> RuleResult:
        mc = data.market_conditions
        if not mc.is_market_open:
            return self._fail("market is closed", Severity.CRITICAL)
        if mc.is_news_event:
            return self._fail("news event in progress", Severity.HIGH,
                              recommendations=["Wait until the news event has passed"])
        if mc.is_high_volatility and mc.is_low_liquidity:
            return self._fail("high volatility with low liquidity", Severity.HIGH,
                              recommendations=["Wait for liquidity to return"])
        if mc.is_high_volatility or mc.is_low_liquidity:
            return self._pass(warning="unfavourable market conditions")
        return self._pass("market conditions normal")


class ConfidenceRule(ValidationRule):
    rule_id = "confidence_check"
    description = "Minimum combined AI/technical confidence"
    severity = Severity.MEDIUM

    def __init__(self, min_confidence: float = 0.5, warn_confidence: float = 0.7):
        self.min_confidence = min_confidence
        self.warn_confidence = warn_confidence

    def validate(self, data: TradeValidationData) -> RuleResult:
        combined = (data.ai_confidence + data.technical_confidence) / 2
        if combined < self.min_confidence:
            return self._fail(f"combined confidence {combined:.2f} below {self.min_confidence:.2f}",
                              Severity.HIGH, recommendations=["Wait for stronger signals"])
        if combined < self.warn_confidence:
            return self._fail(f"combined confidence {combined:.2f} below {self.warn_confidence:.2f}",
                              Severity.MEDIUM)
        return self._pass(f"combined confidence {combined:.2f}")


class PositionLimitRule(ValidationRule):
    rule_id = "position_limit"
    description = "Maximum number of open positions"
    severity = Severity.HIGH

    def __init__(self, max_positions: int = 10):
        self.max_positions = max_positions

    def validate(self, data: TradeValidationData) -> RuleResult:
        count = data.portfolio_data.current_positions
        if count >= self.max_positions:
            return self._fail(f"position limit reached ({count}/{self.max_positions})",
                              recommendations=["Close an existing position first"])
        return self._pass(f"{count}/{self.max_positions} positions open")


class SpreadRule(ValidationRule):
    rule_id = "spread_check"
    description = "Maximum bid/ask spread"
    severity = Severity.MEDIUM

    def __init__(self, max_spread: float = 0.002):
        self.max_spread = max_spread

    def validate(self, data: TradeValidationData) -> RuleResult:
        spread = data.market_data.spread
        if spread > self.max_spread:
            return self._fail(f"spread {spread:.4%} exceeds {self.max_spread:.4%}",
                              recommendations=["Use a limit order"])
        return self._pass(f"spread {spread:.4%}")


def default_rules(settings: Optional[Dict[str, Any]] = None) -> List[ValidationRule]:
    """Build the standard rule set from trade_validation settings."""
    s = settings or {}
    return [
        MarketVolatilityRule(s.get('max_volatility', 0.05), s.get('warn_volatility', 0.03)),
        LiquidityRule(s.get('min_liquidity_ratio', 0.10)),
        PortfolioRiskRule(s.get('max_portfolio_risk', 0.20)),
        MarketConditionsRule(),
        ConfidenceRule(s.get('min_confidence', 0.5), s.get('warn_confidence', 0.7)),
        PositionLimitRule(s.get('max_positions', 10)),
        SpreadRule(s.get('max_spread', 0.002)),
    ]


class TradeValidator:
    """
    Ordered registry of validation rules.

    Usage:
        validator = TradeValidator()
        validator.disable_rule("spread_check")
        result = validator.validate(data)
    """

    def __init__(self, rules: Optional[List[ValidationRule]] = None, allow_high_override: bool = False,
                 history_size: int = 100):
        self._lock = threading.RLock()
        self._rules: Dict[str, ValidationRule] = {}
        self._disabled: set = set()
        self.allow_high_override = allow_high_override
        self._history = deque(maxlen=history_size)
        for rule in (default_rules() if rules is None else rules):
            self.register_rule(rule)

    # -----------------------
    # Registry
    # -----------------------
    def register_rule(self, rule: ValidationRule) -> None:
        """Add a rule (replacing one with the same id keeps its position)."""
        if not rule.rule_id:
            raise ValueError("rule_id is required")
        with self._lock:
            self._rules[rule.rule_id] = rule

    def unregister_rule(self, rule_id: str) -> bool:
        with self._lock:
            self._disabled.discard(rule_id)
            return self._rules.pop(rule_id, None) is not None

    def enable_rule(self, rule_id: str) -> None:
        with self._lock:
            if rule_id not in self._rules:
                raise KeyError(f"Unknown rule '{rule_id}'")
            self._disabled.discard(rule_id)

    def disable_rule(self, rule_id: str) -> None:
        with self._lock:
            if rule_id not in self._rules:
                raise KeyError(f"Unknown rule '{rule_id}'")
            self._disabled.add(rule_id)

    def get_rules(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {'rule_id': r.rule_id, 'description': r.description,
                 'severity': r.severity.name, 'enabled': r.rule_id not in self._disabled}
                for r in self._rules.values()
            ]

    # -----------------------
    # Evaluation
    # -----------------------
    def validate(self, data: TradeValidationData, override_high: Optional[bool] = None) -> ValidationResult:
        """
        Evaluate enabled rules in registration order.

        Args:
            data: Trade context
            override_high: Allow HIGH failures through (defaults to allow_high_override)

        Returns:
            ValidationResult with per-rule results
        """
        override = self.allow_high_override if override_high is None else override_high
        with self._lock:
            rules = [r for r in self._rules.values() if r.rule_id not in self._disabled]

        result = ValidationResult(is_valid=True)
        for rule in rules:
            outcome = rule.validate(data)
            result.results.append(outcome)
            if outcome.warning:
                result.warnings.append(f"{outcome.rule_id}: {outcome.warning}")
            if outcome.passed:
                continue

            if result.severity is None or outcome.severity.value > result.severity.value:
                result.severity = outcome.severity
            reason = f"{outcome.rule_id} ({outcome.severity.name}): {outcome.message}"

            if outcome.severity == Severity.CRITICAL:
                result.errors.append(reason)
                result.blocking_rule = result.blocking_rule or outcome.rule_id
                break
            if outcome.severity == Severity.HIGH and not override:
                result.errors.append(reason)
                result.blocking_rule = result.blocking_rule or outcome.rule_id
            elif outcome.severity == Severity.HIGH:
                result.warnings.append(f"overridden {reason}")
            else:
                result.warnings.append(reason)

        result.is_valid = not result.errors
        with self._lock:
            self._history.append({'symbol': data.symbol, 'is_valid': result.is_valid,
                                  'blocking_rule': result.blocking_rule})
        if not result.is_valid:
            logger.warning(f"Trade validation failed for {data.symbol}: {result.errors}")
        return result

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = len(self._history)
            passed = sum(1 for h in self._history if h['is_valid'])
            blocked: Dict[str, int] = {}
            for h in self._history:
                if h['blocking_rule']:
                    blocked[h['blocking_rule']] = blocked.get(h['blocking_rule'], 0) + 1
        return {
            'validations': total,
            'pass_rate': passed / total if total else 0.0,
            'blocked_by_rule': blocked,
        }
