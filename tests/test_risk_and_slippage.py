"""
test_risk_and_slippage.py - Tests for position sizing, portfolio risk limits and slippage tracking
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from core.errors import ValidationError
from execution.orders import OrderSide
from execution.slippage_tracker import SlippageMethod, SlippageTracker
from risk.portfolio_risk_manager import (
    DEFAULT_VOLATILITY,
    ExistingPosition,
    PortfolioRiskManager,
    RiskLevel,
)
from risk.position_sizing import PositionSizer, SizingMethod, kelly_fraction


class TestPositionSizer:
    """Test sizing method priority and bounds."""

    def test_fixed(self):
        result = PositionSizer().size_position(budget=10000, confidence=0.6, price=100)
        assert result.method == SizingMethod.FIXED
        assert result.quantity == pytest.approx(5.0)
        assert result.fraction == pytest.approx(0.05)
        assert result.max_quantity == pytest.approx(100.0)

    def test_kelly_only_shrinks(self):
        sizer = PositionSizer(kelly_multiplier=0.05)
        result = sizer.size_position(budget=10000, confidence=0.9, price=100)
        assert result.method == SizingMethod.KELLY
        assert result.quantity == pytest.approx(10000 * kelly_fraction(0.9, 0.05) / 100)
        assert result.quantity < 5.0

        capped = PositionSizer().size_position(budget=10000, confidence=0.9, price=100)
        assert capped.method == SizingMethod.KELLY
        assert capped.quantity == pytest.approx(5.0)

    def test_kelly_fraction_floor(self):
        assert kelly_fraction(0.2) == 0.0
        assert kelly_fraction(0.9, 1.0) == pytest.approx(0.85)

    def test_volatility_scaling(self):
        sizer = PositionSizer()
        assert sizer.size_position(10000, 0.6, 100, volatility=0.1).quantity == pytest.approx(4.0)
        extreme = sizer.size_position(10000, 0.6, 100, volatility=0.6)
        assert extreme.method == SizingMethod.VOLATILITY
        assert extreme.quantity == pytest.approx(0.5)

    def test_risk_parity_with_open_positions(self):
        result = PositionSizer().size_position(10000, 0.6, 100, open_positions=3)
        assert result.method == SizingMethod.RISK_PARITY
        assert result.quantity == pytest.approx(1.25)

    def test_invalid_input_lists_every_reason(self):
        with pytest.raises(ValidationError) as exc_info:
            PositionSizer().size_position(budget=0, confidence=1.5, price=100)
        assert len(exc_info.value.reasons) == 2

    def test_from_config(self):
        sizer = PositionSizer.from_config({'max_risk_per_position': 0.1})
        assert sizer.size_position(1000, 0.5, 10).quantity == pytest.approx(10.0)


class TestPortfolioRiskManager:
    """Test risk scoring and limit enforcement."""

    def test_assessment_components(self):
        manager = PortfolioRiskManager()
        risk = manager.assess_risk('BTC/USDT', 'p1', quantity=4, price=100, portfolio_value=10000)
        assert risk.current_risk == pytest.approx(0.04)
        assert risk.market_risk == pytest.approx(DEFAULT_VOLATILITY * 0.1)
        assert risk.liquidity_risk == pytest.approx(0.014)
        assert risk.total_risk == pytest.approx(0.056)
        assert risk.risk_level == RiskLevel.MEDIUM
        assert len(manager.get_risk_history('BTC/USDT')) == 1

    def test_per_position_limit(self):
        result = PortfolioRiskManager().validate_position('BTC/USDT', 'p1', 6, 100, 10000, [])
        assert not result.is_valid
        assert result.reason.startswith("Position risk")

    def test_position_count_limit(self):
        manager = PortfolioRiskManager(max_positions=2)
        existing = [ExistingPosition('ETH/USDT', 10), ExistingPosition('SOL/USDT', 10)]
        result = manager.validate_position('BTC/USDT', 'p1', 1, 100, 10000, existing)
        assert result.reason.startswith("Maximum positions")
        assert manager.blocked_count == 1

    def test_blocked_count_under_concurrent_validation(self):
        manager = PortfolioRiskManager(max_positions=1)
        existing = [ExistingPosition('ETH/USDT', 10)]

        def _validate(_):
            return manager.validate_position('BTC/USDT', 'p1', 1, 100, 10000, existing)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(_validate, range(200)))

        assert not any(r.is_valid for r in results)
        assert manager.get_stats()['blocked_count'] == 200

    def test_total_risk_limit(self):
        existing = [ExistingPosition('ETH/USDT', 1800)]
        result = PortfolioRiskManager().validate_position('BTC/USDT', 'p1', 4, 100, 10000, existing)
        assert result.reason.startswith("Total portfolio risk")
        assert result.total_portfolio_risk == pytest.approx(0.22)

    def test_correlation_limit(self):
        manager = PortfolioRiskManager(max_correlation_risk=0.01)
        manager.update_correlations({'BTC/USDT': {'ETH/USDT': 0.9, 'BTC/USDT': 1.0}})
        assert manager.get_correlation('ETH/USDT', 'BTC/USDT') == 0.9

        result = manager.validate_position('BTC/USDT', 'p1', 1, 100, 10000,
                                           [ExistingPosition('ETH/USDT', 100)])
        assert result.reason.startswith("Correlation risk")
        assert result.risk.correlated_symbols == ['ETH/USDT']
        assert result.risk.correlation_risk == pytest.approx(0.018)

    def test_approved_position(self):
        result = PortfolioRiskManager().validate_position('BTC/USDT', 'p1', 2, 100, 10000, [])
        assert result.is_valid
        assert result.reason is None

    def test_positions_provider(self):
        manager = PortfolioRiskManager(max_positions=1,
                                       positions_provider=lambda pid: [ExistingPosition('ETH/USDT', 50)])
        assert not manager.validate_position('BTC/USDT', 'p1', 1, 100, 10000).is_valid

    def test_volatility_estimates(self):
        manager = PortfolioRiskManager()
        assert manager.update_volatility('BTC/USDT', [100.0, 110.0, 99.0]) == pytest.approx(0.1)
        manager.record_price('ETH/USDT', 10.0)
        manager.record_price('ETH/USDT', 11.0)
        assert manager.get_volatility('ETH/USDT') == DEFAULT_VOLATILITY

    def test_invalid_inputs(self):
        with pytest.raises(ValidationError):
            PortfolioRiskManager().assess_risk('BTC/USDT', 'p1', 0, 100, 10000)
        with pytest.raises(ValueError):
            PortfolioRiskManager().update_correlation('A', 'B', 1.5)
        with pytest.raises(ValueError):
            PortfolioRiskManager(max_risk_per_position=0.5, max_total_risk=0.2)


class TestSlippageTracker:
    """Test slippage measurement, retry decisions and analytics."""

    def test_adverse_buy_within_ceiling(self):
        result = SlippageTracker().record_fill('BTC/USDT', 100.0, 101.0, OrderSide.BUY, 2.0)
        assert result.slippage_pct == pytest.approx(0.01)
        assert result.slippage_amount == pytest.approx(2.0)
        assert result.adverse
        assert result.acceptable
        assert not result.within_tolerance

    def test_favourable_sell_still_measured(self):
        tracker = SlippageTracker()
        result = tracker.record_fill('BTC/USDT', 100.0, 103.0, OrderSide.SELL, 1.0)
        assert not result.adverse
        assert not result.acceptable
        assert tracker.should_retry(result, 0)
        assert not tracker.should_retry(result, 3)

    def test_retry_disabled(self):
        tracker = SlippageTracker(retry_on_high_slippage=False)
        result = tracker.record_fill('BTC/USDT', 100.0, 110.0, OrderSide.BUY, 1.0)
        assert not tracker.should_retry(result, 0)

    def test_optimal_order_size(self):
        tracker = SlippageTracker(max_slippage=0.02)
        assert tracker.optimal_order_size(10.0, 0.005) == 10.0
        assert tracker.optimal_order_size(10.0, 0.015) == pytest.approx(2.5)
        assert tracker.optimal_order_size(10.0, 0.05) == pytest.approx(1.0)

    def test_protection_disabled(self):
        tracker = SlippageTracker(protection_enabled=False)
        assert tracker.record_fill('BTC/USDT', 100.0, 150.0, OrderSide.BUY, 1.0).acceptable
        assert tracker.optimal_order_size(10.0, 0.5) == 10.0

    def test_analysis(self):
        tracker = SlippageTracker(method=SlippageMethod.ABSOLUTE)
        tracker.record_fill('ETH/USDT', 100.0, 101.0, OrderSide.BUY, 2.0, execution_time=1.0)
        tracker.record_fill('ETH/USDT', 100.0, 96.0, OrderSide.SELL, 2.0, execution_time=3.0)

        analysis = tracker.get_analysis('ETH/USDT')
        assert analysis.total_fills == 2
        assert analysis.total_cost == pytest.approx(10.0)
        assert analysis.histogram['0-1%'] == 1
        assert analysis.histogram['3-5%'] == 1
        assert analysis.success_rate == 0.5
        assert analysis.average_execution_time == 2.0
        assert len(tracker.get_history('ETH/USDT', limit=1)) == 1
        assert [a.symbol for a in tracker.get_all_analyses()] == ['ETH/USDT']

    def test_invalid(self):
        with pytest.raises(ValueError):
            SlippageTracker().record_fill('BTC/USDT', 0.0, 1.0, OrderSide.BUY, 1.0)
        with pytest.raises(ValueError):
            SlippageTracker(max_slippage=0.01, tolerance=0.02)
