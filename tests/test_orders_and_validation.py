"""
test_orders_and_validation.py - Tests for the order model, basic order validation and pre-trade rules
"""

import pytest

from core.errors import ValidationError
from execution.order_validator import OrderValidator, Severity
from execution.orders import Order, OrderReport, OrderRequest, OrderSide, OrderStatus, OrderType
from execution.trade_validator import (
    MarketConditions,
    MarketData,
    PortfolioData,
    TradeValidationData,
    TradeValidator,
    default_rules,
)


def _request(**kwargs):
    params = dict(symbol='BTC/USDT', side=OrderSide.BUY, order_type=OrderType.MARKET,
                  quantity=0.1, reference_price=1000.0)
    params.update(kwargs)
    return OrderRequest(**params)


def _report(order, status, executed=0.0, price=None):
    return OrderReport(exchange_order_id="ex1", symbol=order.symbol, status=status,
                       executed_quantity=executed, average_price=price,
                       client_order_id=order.client_order_id)


class TestOrder:
    """Test order state transitions from exchange reports."""

    def test_client_id_generated(self):
        request = _request()
        assert request.client_order_id.startswith("te_")
        assert _request().client_order_id != request.client_order_id

    def test_partial_then_full_fill(self):
        order = Order.from_request(_request(quantity=1.0))
        assert order.apply_report(_report(order, OrderStatus.PARTIALLY_FILLED, 0.4, 100.0)) == pytest.approx(0.4)
        assert order.remaining_quantity == pytest.approx(0.6)
        assert order.apply_report(_report(order, OrderStatus.FILLED, 1.0, 101.0)) == pytest.approx(0.6)
        assert order.is_terminal
        assert order.exchange_order_id == "ex1"
        assert order.average_price == 101.0

    def test_terminal_is_final(self):
        order = Order.from_request(_request())
        order.apply_report(_report(order, OrderStatus.CANCELED))
        assert order.apply_report(_report(order, OrderStatus.FILLED, 0.1, 1.0)) is None
        assert order.status == OrderStatus.CANCELED

    def test_stale_and_duplicate_reports_ignored(self):
        order = Order.from_request(_request(quantity=1.0))
        order.apply_report(_report(order, OrderStatus.PARTIALLY_FILLED, 0.5, 100.0))
        assert order.apply_report(_report(order, OrderStatus.PARTIALLY_FILLED, 0.3, 100.0)) is None
        assert order.apply_report(_report(order, OrderStatus.PARTIALLY_FILLED, 0.5, 100.0)) is None
        assert order.executed_quantity == 0.5

    def test_status_only_change_returns_zero(self):
        order = Order.from_request(_request())
        assert order.apply_report(_report(order, OrderStatus.PENDING_CANCEL)) == 0.0

    def test_to_dict(self):
        data = Order.from_request(_request(metadata={'intent': 'entry'})).to_dict()
        assert data['side'] == "buy"
        assert data['status'] == "new"
        assert data['metadata'] == {'intent': 'entry'}


class TestOrderValidator:
    """Test basic order validation."""

    def test_valid_market_order(self):
        result = OrderValidator().validate(_request())
        assert result.is_valid
        assert result.errors == []

    def test_every_error_reported(self):
        validator = OrderValidator(max_orders_per_symbol=2)
        request = _request(order_type=OrderType.STOP_LOSS_LIMIT, quantity=0, reference_price=None)
        result = validator.validate(request, active_orders=2)
        assert not result.is_valid
        assert len(result.errors) == 4
        assert result.severity == Severity.HIGH
        with pytest.raises(ValidationError) as exc_info:
            result.raise_for_errors()
        assert exc_info.value.reasons == result.errors

    def test_value_bounds(self):
        validator = OrderValidator(min_order_value=10.0, max_order_value=1000.0)
        assert not validator.validate(_request(quantity=0.001)).is_valid
        assert not validator.validate(_request(quantity=2.0)).is_valid
        assert validator.validate(_request(quantity=0.5)).is_valid

    def test_warnings_do_not_block(self):
        result = OrderValidator(min_order_value=0.0).validate(_request(quantity=0.00001))
        assert result.is_valid
        assert any("small quantity" in w for w in result.warnings)

    def test_missing_price_warns(self):
        result = OrderValidator().validate(_request(reference_price=None))
        assert result.is_valid
        assert result.warnings == ["order value not checked: no price available"]

    def test_invalid_constructor(self):
        with pytest.raises(ValueError):
            OrderValidator(max_orders_per_symbol=0)
        with pytest.raises(ValueError):
            OrderValidator(min_order_value=100.0, max_order_value=50.0)


def _trade(**overrides):
    data = TradeValidationData(
        symbol='BTC/USDT', side=OrderSide.BUY, quantity=0.1, price=1000.0,
        ai_confidence=0.8, technical_confidence=0.9,
        market_data=MarketData(volume=1e6, volatility=0.01, spread=0.001, liquidity=10000.0),
        portfolio_data=PortfolioData(current_positions=1, total_value=10000.0,
                                     available_balance=5000.0, risk_exposure=0.05),
    )
    for key, value in overrides.items():
        setattr(data, key, value)
    return data


class TestTradeValidator:
    """Test rule severities, ordering and overrides."""

    def test_healthy_trade_passes(self):
        result = TradeValidator().validate(_trade())
        assert result.is_valid
        assert len(result.results) == 7

    def test_critical_stops_evaluation(self):
        data = _trade(market_data=MarketData(volatility=0.01, spread=0.001, liquidity=1.0))
        result = TradeValidator().validate(data)
        assert not result.is_valid
        assert result.blocking_rule == "liquidity_check"
        assert result.severity == Severity.CRITICAL
        assert [r.rule_id for r in result.results] == ["market_volatility", "liquidity_check"]

    def test_high_failure_blocks_unless_overridden(self):
        data = _trade(market_data=MarketData(volatility=0.08, spread=0.001, liquidity=10000.0))
        validator = TradeValidator()
        blocked = validator.validate(data)
        assert not blocked.is_valid
        assert blocked.blocking_rule == "market_volatility"

        allowed = validator.validate(data, override_high=True)
        assert allowed.is_valid
        assert any(w.startswith("overridden market_volatility") for w in allowed.warnings)

    def test_medium_failure_is_warning(self):
        data = _trade(market_data=MarketData(volatility=0.01, spread=0.01, liquidity=10000.0))
        result = TradeValidator().validate(data)
        assert result.is_valid
        assert result.severity == Severity.MEDIUM
        assert any("spread_check" in w for w in result.warnings)

    def test_closed_market_is_critical(self):
        result = TradeValidator().validate(_trade(market_conditions=MarketConditions(is_market_open=False)))
        assert result.blocking_rule == "market_conditions"
        assert result.severity == Severity.CRITICAL

    def test_low_confidence_is_high(self):
        result = TradeValidator().validate(_trade(ai_confidence=0.2, technical_confidence=0.3))
        assert not result.is_valid
        assert result.blocking_rule == "confidence_check"

    def test_portfolio_exposure(self):
        data = _trade(portfolio_data=PortfolioData(current_positions=1, total_value=1000.0, risk_exposure=0.15))
        result = TradeValidator().validate(data)
        assert result.blocking_rule == "portfolio_risk"

    def test_disable_and_stats(self):
        validator = TradeValidator()
        validator.disable_rule("confidence_check")
        assert validator.validate(_trade(ai_confidence=0.0, technical_confidence=0.0)).is_valid
        assert [r['enabled'] for r in validator.get_rules() if r['rule_id'] == "confidence_check"] == [False]

        validator.enable_rule("confidence_check")
        assert not validator.validate(_trade(ai_confidence=0.0, technical_confidence=0.0)).is_valid
        stats = validator.get_stats()
        assert stats['validations'] == 2
        assert stats['blocked_by_rule'] == {"confidence_check": 1}

        with pytest.raises(KeyError):
            validator.disable_rule("missing")

    def test_default_rules_from_settings(self):
        rules = default_rules({'max_positions': 1})
        validator = TradeValidator(rules=rules)
        assert validator.validate(_trade()).blocking_rule == "position_limit"
