"""
errors.py - Trading Engine Error Taxonomy

Every failure the core surfaces is a TradingEngineError carrying an ErrorKind,
a context dict and a timestamp. The kind decides how the failure travels:

- VALIDATION / CONFIGURATION: never retried, surfaced immediately
- RATE_LIMIT: retried after the reported reset time
- NETWORK / TIMEOUT: retried with bounded backoff
- EXCHANGE_API: retried unless it is a terminal business rejection
- CIRCUIT_OPEN: fast-fail, never retried
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(Enum):
    """Failure categories understood by retry and circuit-breaker logic."""
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    EXCHANGE_API = "exchange_api"
    CIRCUIT_OPEN = "circuit_open"
    RETRY_EXHAUSTED = "retry_exhausted"
    PORTFOLIO = "portfolio"
    ORDER = "order"


# Kinds the retry policy is allowed to retry
RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK,
    ErrorKind.TIMEOUT,
    ErrorKind.RATE_LIMIT,
    ErrorKind.EXCHANGE_API,
})


class TradingEngineError(RuntimeError):
    """Base error for the trading engine."""

    kind: ErrorKind = ErrorKind.ORDER

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'kind': self.kind.value,
            'type': type(self).__name__,
            'message': self.message,
            'context': self.context,
            'timestamp': self.timestamp,
        }


class ValidationError(TradingEngineError):
    """Malformed or out-of-policy input. Carries every violated reason."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, reasons: Optional[List[str]] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.reasons: List[str] = list(reasons or [message])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['reasons'] = list(self.reasons)
        return data


class InsufficientDataError(ValidationError):
    """Input series is shorter than the lookback an indicator needs."""

    def __init__(self, required: int, available: int, symbol: Optional[str] = None):
        message = f"Insufficient data: {available} candles available, {required} required"
        super().__init__(message, context={'required': required, 'available': available, 'symbol': symbol})
        self.required = required
        self.available = available


class ConfigurationError(TradingEngineError):
    """Invalid configuration. Fatal at startup outside test mode."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, reasons: Optional[List[str]] = None):
        super().__init__(message, {'reasons': list(reasons or [])})
        self.reasons: List[str] = list(reasons or [message])


class RateLimitError(TradingEngineError):
    """Request ceiling reached; retry after reset_time (epoch seconds)."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str, reset_time: Optional[float] = None,
                 limit: Optional[int] = None, window: Optional[float] = None,
                 context: Optional[Dict[str, Any]] = None):
        ctx = dict(context or {})
        ctx.update({'reset_time': reset_time, 'limit': limit, 'window': window})
        super().__init__(message, ctx)
        self.reset_time = reset_time
        self.limit = limit
        self.window = window


class NetworkError(TradingEngineError):
    kind = ErrorKind.NETWORK


class ExchangeTimeoutError(TradingEngineError):
    kind = ErrorKind.TIMEOUT


class ExchangeAPIError(TradingEngineError):
    """
    Error reported by the exchange.

    terminal=True marks business rejections (insufficient balance, invalid
    order, unknown order) that are surfaced as-is instead of retried.
    """

    kind = ErrorKind.EXCHANGE_API

    def __init__(self, message: str, code: Optional[str] = None, terminal: bool = False,
                 context: Optional[Dict[str, Any]] = None):
        ctx = dict(context or {})
        ctx.update({'code': code, 'terminal': terminal})
        super().__init__(message, ctx)
        self.code = code
        self.terminal = terminal


class CircuitOpenError(TradingEngineError):
    """Call refused because the circuit breaker is open."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, name: str, remaining: float):
        super().__init__(
            f"Circuit breaker '{name}' is open, retry in {remaining:.1f}s",
            {'breaker': name, 'remaining': remaining},
        )
        self.name = name
        self.remaining = remaining


class RetryExhaustedError(TradingEngineError):
    """Transient failures persisted past the configured attempt ceiling."""

    kind = ErrorKind.RETRY_EXHAUSTED

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}",
            {'operation': operation, 'attempts': attempts, 'last_error': repr(last_error)},
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class PortfolioError(TradingEngineError):
    kind = ErrorKind.PORTFOLIO


class OrderError(TradingEngineError):
    kind = ErrorKind.ORDER


def is_retryable(exc: BaseException) -> bool:
    """Return True if exc belongs to the retry whitelist."""
    if not isinstance(exc, TradingEngineError):
        return False
    if exc.kind not in RETRYABLE_KINDS:
        return False
    if isinstance(exc, ExchangeAPIError) and exc.terminal:
        return False
    return True


def counts_as_failure(exc: BaseException) -> bool:
    """
    Return True if exc should count against a circuit breaker.

    Caller mistakes and business rejections say nothing about the health of
    the dependency, so they are not counted.
    """
    if isinstance(exc, (ValidationError, ConfigurationError, CircuitOpenError)):
        return False
    if isinstance(exc, ExchangeAPIError) and exc.terminal:
        return False
    return True
