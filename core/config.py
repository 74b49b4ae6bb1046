"""
config.py - Engine Configuration

Loads the engine configuration from YAML, merges it over built-in defaults,
applies CLI/programmatic overrides and validates the result. Invalid values
abort startup with ConfigurationError, except in test mode where the problems
are logged and startup continues.

Exchange credentials are read from the environment (optionally a .env file),
never from the YAML file.
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from core.errors import ConfigurationError


logger = logging.getLogger(__name__)


class Environment(Enum):
    """Trading environment modes."""
    PAPER = "paper"
    TESTNET = "testnet"
    LIVE = "live"
    TEST = "test"


def default_config() -> Dict[str, Any]:
    """Return the default configuration dictionary."""
    return {
        'environment': 'paper',
        'exchange': {
            'id': 'binance',
            'testnet': True,
            'timeout': 10.0,
        },
        'trading': {
            'auto_trading': False,
            'decision_interval': 300,         # seconds between decision cycles
            'position_refresh_interval': 60,
            'candle_timeframe': '1h',
            'candle_limit': 100,
            'sweep_interval': 60,
        },
        'decision': {
            'min_confidence': 0.7,
            'sentiment_weight': 0.4,
            'technical_weight': 0.6,
            'technical_entry_threshold': 0.7,
            'sentiment_entry_threshold': 0.3,
            'exit_threshold': 0.5,
            'stop_loss_pct': 0.05,
            'take_profit_pct': 0.10,
        },
        'technical': {
            'rsi_period': 14,
            'rsi_overbought': 70,
            'rsi_oversold': 30,
            'sma_period': 20,
            'ema_period': 20,
            'volume_period': 20,
            'support_resistance_period': 20,
            'macd_fast': 12,
            'macd_slow': 26,
            'macd_signal': 9,
            'bollinger_period': 20,
            'bollinger_std': 2.0,
            'stochastic_period': 14,
            'williams_period': 14,
            'atr_period': 14,
            'history_size': 100,
        },
        'sentiment': {
            'bullish_threshold': 0.2,
            'bearish_threshold': -0.2,
            'strong_threshold': 0.6,
            'moderate_threshold': 0.3,
            'weights': {'news': 0.4, 'social': 0.3, 'market': 0.3},
            'history_size': 100,
            'retention_hours': 24,
            'max_observations': 500,
        },
        'sizing': {
            'max_risk_per_position': 0.05,
            'kelly_multiplier': 0.25,
            'kelly_min_confidence': 0.8,
        },
        'risk': {
            'max_positions': 10,
            'max_risk_per_position': 0.05,
            'max_total_risk': 0.20,
            'correlation_threshold': 0.7,
            'max_correlation_risk': 0.10,
            'volatility_lookback': 30,
        },
        'orders': {
            'max_orders_per_symbol': 5,
            'max_order_value': 10000.0,
            'min_order_value': 10.0,
            'poll_interval': 5.0,
            'monitor_timeout': 300.0,
            'history_size': 100,
        },
        'trade_validation': {
            'enabled': True,
            'max_volatility': 0.05,
            'warn_volatility': 0.03,
            'min_liquidity_ratio': 0.10,
            'max_portfolio_risk': 0.20,
            'min_confidence': 0.5,
            'warn_confidence': 0.7,
            'max_positions': 10,
            'max_spread': 0.002,
            'override_high': False,
        },
        'retry': {
            'max_attempts': 3,
            'base_delay': 1.0,
            'max_delay': 30.0,
            'multiplier': 2.0,
            'jitter': 0.1,
        },
        'circuit_breaker': {
            'failure_threshold': 5,
            'recovery_timeout': 60.0,
            'monitoring_window': 300.0,
        },
        'rate_limits': {
            'categories': {
                'rest': {'limit': 1200, 'window': 60.0},
                'orders': {'limit': 50, 'window': 10.0},
                'websocket': {'limit': 5, 'window': 1.0},
            },
            'max_wait': 30.0,
        },
        'slippage': {
            'max_slippage': 0.02,
            'tolerance': 0.005,
            'method': 'percentage',
            'retry_on_high_slippage': True,
            'max_retries': 3,
            'history_size': 100,
        },
        'performance': {
            'max_drawdown_alert': 0.10,
            'min_win_rate': 0.5,
            'min_trades_for_win_rate': 10,
            'max_consecutive_losses': 5,
            'history_size': 1000,
        },
        'cache': {
            'default_ttl': 300.0,
        },
        'api': {
            'enabled': False,
            'host': '127.0.0.1',
            'port': 8000,
        },
        'monitoring': {
            'log_level': 'INFO',
            'log_file': None,
        },
        'portfolios': [],
    }


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of base with override merged in recursively."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _check_fraction(reasons: List[str], section: Dict[str, Any], name: str, path: str,
                    allow_zero: bool = False) -> None:
    value = section.get(name)
    if not isinstance(value, (int, float)):
        reasons.append(f"{path}.{name} must be a number")
        return
    low_ok = value >= 0 if allow_zero else value > 0
    if not low_ok or value > 1:
        reasons.append(f"{path}.{name} must be in {'[0' if allow_zero else '(0'}, 1], got {value}")


def _check_positive(reasons: List[str], section: Dict[str, Any], name: str, path: str) -> None:
    value = section.get(name)
    if not isinstance(value, (int, float)) or value <= 0:
        reasons.append(f"{path}.{name} must be a positive number, got {value!r}")


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate a merged configuration.

    Args:
        config: Configuration dictionary (already merged over defaults)

    Returns:
        List of problems; empty when the configuration is valid
    """
    reasons: List[str] = []

    env = config.get('environment')
    if env not in {e.value for e in Environment}:
        reasons.append(f"environment must be one of paper/testnet/live/test, got {env!r}")

    trading = config.get('trading', {})
    for name in ('decision_interval', 'position_refresh_interval', 'sweep_interval', 'candle_limit'):
        _check_positive(reasons, trading, name, 'trading')

    decision = config.get('decision', {})
    for name in ('min_confidence', 'sentiment_weight', 'technical_weight',
                 'technical_entry_threshold', 'sentiment_entry_threshold', 'exit_threshold',
                 'stop_loss_pct', 'take_profit_pct'):
        _check_fraction(reasons, decision, name, 'decision', allow_zero=True)

    technical = config.get('technical', {})
    for name in ('rsi_period', 'sma_period', 'ema_period', 'volume_period', 'support_resistance_period',
                 'macd_fast', 'macd_slow', 'macd_signal', 'bollinger_period', 'bollinger_std',
                 'stochastic_period', 'williams_period', 'atr_period', 'history_size'):
        _check_positive(reasons, technical, name, 'technical')
    if technical.get('macd_fast', 0) >= technical.get('macd_slow', 0):
        reasons.append("technical.macd_fast must be smaller than technical.macd_slow")
    if not 0 < technical.get('rsi_oversold', 0) < technical.get('rsi_overbought', 0) < 100:
        reasons.append("technical rsi thresholds must satisfy 0 < oversold < overbought < 100")

    sentiment = config.get('sentiment', {})
    if not sentiment.get('bearish_threshold', 0) < 0 < sentiment.get('bullish_threshold', 0):
        reasons.append("sentiment thresholds must satisfy bearish < 0 < bullish")
    if not 0 < sentiment.get('moderate_threshold', 0) < sentiment.get('strong_threshold', 0) <= 1:
        reasons.append("sentiment strength thresholds must satisfy 0 < moderate < strong <= 1")
    weights = sentiment.get('weights', {})
    for category in ('news', 'social', 'market'):
        if not isinstance(weights.get(category), (int, float)) or weights[category] < 0:
            reasons.append(f"sentiment.weights.{category} must be a non-negative number")

    sizing = config.get('sizing', {})
    _check_fraction(reasons, sizing, 'max_risk_per_position', 'sizing')
    _check_fraction(reasons, sizing, 'kelly_multiplier', 'sizing')
    _check_fraction(reasons, sizing, 'kelly_min_confidence', 'sizing', allow_zero=True)

    risk = config.get('risk', {})
    _check_positive(reasons, risk, 'max_positions', 'risk')
    _check_positive(reasons, risk, 'volatility_lookback', 'risk')
    for name in ('max_risk_per_position', 'max_total_risk', 'correlation_threshold', 'max_correlation_risk'):
        _check_fraction(reasons, risk, name, 'risk')
    if risk.get('max_risk_per_position', 0) > risk.get('max_total_risk', 0):
        reasons.append("risk.max_risk_per_position cannot exceed risk.max_total_risk")

    orders = config.get('orders', {})
    for name in ('max_orders_per_symbol', 'max_order_value', 'min_order_value',
                 'poll_interval', 'monitor_timeout', 'history_size'):
        _check_positive(reasons, orders, name, 'orders')
    if orders.get('min_order_value', 0) >= orders.get('max_order_value', 0):
        reasons.append("orders.min_order_value must be smaller than orders.max_order_value")

    retry = config.get('retry', {})
    _check_positive(reasons, retry, 'max_attempts', 'retry')
    _check_positive(reasons, retry, 'base_delay', 'retry')
    _check_positive(reasons, retry, 'max_delay', 'retry')
    if not isinstance(retry.get('multiplier'), (int, float)) or retry.get('multiplier', 0) < 1:
        reasons.append("retry.multiplier must be >= 1")
    if retry.get('base_delay', 0) > retry.get('max_delay', 0):
        reasons.append("retry.base_delay cannot exceed retry.max_delay")
    _check_fraction(reasons, retry, 'jitter', 'retry', allow_zero=True)

    breaker = config.get('circuit_breaker', {})
    for name in ('failure_threshold', 'recovery_timeout', 'monitoring_window'):
        _check_positive(reasons, breaker, name, 'circuit_breaker')

    limits = config.get('rate_limits', {})
    _check_positive(reasons, limits, 'max_wait', 'rate_limits')
    categories = limits.get('categories', {})
    if not categories:
        reasons.append("rate_limits.categories must define at least one category")
    for name, ceiling in categories.items():
        _check_positive(reasons, ceiling, 'limit', f'rate_limits.categories.{name}')
        _check_positive(reasons, ceiling, 'window', f'rate_limits.categories.{name}')

    slippage = config.get('slippage', {})
    _check_fraction(reasons, slippage, 'max_slippage', 'slippage')
    _check_fraction(reasons, slippage, 'tolerance', 'slippage', allow_zero=True)
    if slippage.get('method') not in ('percentage', 'absolute', 'hybrid'):
        reasons.append(f"slippage.method must be percentage/absolute/hybrid, got {slippage.get('method')!r}")

    api = config.get('api', {})
    port = api.get('port')
    if not isinstance(port, int) or not 0 < port < 65536:
        reasons.append(f"api.port must be a valid TCP port, got {port!r}")

    for i, entry in enumerate(config.get('portfolios') or []):
        if not isinstance(entry, dict) or not entry.get('name'):
            reasons.append(f"portfolios[{i}] must be a mapping with a name")
            continue
        if not isinstance(entry.get('budget'), (int, float)) or entry['budget'] <= 0:
            reasons.append(f"portfolios[{i}].budget must be positive")

    return reasons


def is_test_mode(config: Optional[Dict[str, Any]] = None) -> bool:
    """True when running under tests (config environment or TRADING_ENV)."""
    if os.environ.get('TRADING_ENV', '').lower() == Environment.TEST.value:
        return True
    return bool(config) and config.get('environment') == Environment.TEST.value


@dataclass
class EngineConfig:
    """
    Validated configuration with typed section access.

    Attributes:
        data: Full merged configuration dictionary
        source: Path the configuration was loaded from (None for defaults)
        problems: Validation problems tolerated in test mode
    """
    data: Dict[str, Any] = field(default_factory=default_config)
    source: Optional[str] = None
    problems: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]] = None, source: Optional[str] = None) -> "EngineConfig":
        """
        Merge config over defaults and validate it.

        Raises:
            ConfigurationError: If validation fails outside test mode
        """
        merged = deep_merge(default_config(), config or {})
        problems = validate_config(merged)
        if problems:
            if is_test_mode(merged):
                logger.warning(f"Configuration has {len(problems)} problem(s), continuing in test mode: {problems}")
            else:
                for problem in problems:
                    logger.error(f"Invalid configuration: {problem}")
                raise ConfigurationError(f"Invalid configuration ({len(problems)} problem(s))", problems)
        return cls(data=merged, source=source, problems=problems)

    @classmethod
    def load(cls, path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> "EngineConfig":
        """
        Load configuration from a YAML file.

        Missing files fall back to defaults. Overrides are merged after the file.

        Raises:
            ConfigurationError: If the file cannot be parsed or validation fails
        """
        raw: Dict[str, Any] = {}
        if path:
            config_file = Path(path)
            if config_file.exists():
                logger.info(f"Loading configuration from {path}")
                try:
                    with open(config_file, 'r') as f:
                        raw = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(f"Invalid configuration file {path}: {e}") from e
                if not isinstance(raw, dict):
                    raise ConfigurationError(f"Configuration file {path} must contain a mapping")
            else:
                logger.warning(f"Config file {path} not found, using defaults")
        merged = deep_merge(raw, overrides or {})
        return cls.from_dict(merged, source=path)

    def section(self, name: str) -> Dict[str, Any]:
        """Return a copy of one configuration section."""
        return copy.deepcopy(self.data.get(name, {}))

    @property
    def environment(self) -> Environment:
        return Environment(self.data['environment'])

    @property
    def test_mode(self) -> bool:
        return is_test_mode(self.data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return copy.deepcopy(self.data)


def load_credentials(exchange_id: str, env_file: Optional[str] = None) -> Dict[str, Optional[str]]:
    """
    Read exchange API credentials from the environment.

    Looks for <EXCHANGE>_API_KEY / <EXCHANGE>_API_SECRET, loading env_file
    (or a .env in the working directory) first when present.
    """
    if env_file and Path(env_file).exists():
        load_dotenv(env_file)
    else:
        load_dotenv()
    prefix = exchange_id.upper()
    return {
        'api_key': os.environ.get(f"{prefix}_API_KEY"),
        'secret': os.environ.get(f"{prefix}_API_SECRET"),
    }
