"""
test_trading_engine.py - End-to-end engine tests on the offline paper gateway
"""

import asyncio
import time
from unittest.mock import Mock

import pytest

from analysis.sentiment_aggregator import SentimentObservation
from core.errors import PortfolioError
from core.events import POSITION_CLOSED, POSITION_OPENED, SLIPPAGE_EXCEEDED
from execution.orders import OrderRequest, OrderSide, OrderStatus, OrderType
from strategies.decision_engine import PositionState, TradeAction
from conftest import build_candles, build_paper_engine, trending_closes


SYMBOL = 'BTC/USDT'


def _portfolio(engine, symbols=(SYMBOL,), allocation=20.0):
    portfolio = engine.portfolios.create_portfolio("Main", budget=10000.0, max_per_symbol=25.0)
    for symbol in symbols:
        engine.portfolios.add_symbol(portfolio.id, symbol, allocation)
    engine.sync_tracked_symbols()
    return portfolio


def _uptrend(engine, symbol=SYMBOL):
    volumes = [100.0] * 59 + [200.0]
    engine.gateway.set_candles(symbol, build_candles(trending_closes(60, 100.0, 1.0), volumes))


async def _bullish_sentiment(engine, symbol=SYMBOL):
    engine.sentiment.ingest(SentimentObservation(symbol=symbol, source='newsapi', sentiment=0.8,
                                                 confidence=0.9, timestamp=time.time()))
    await asyncio.sleep(0)


async def _enter_long(engine, portfolio):
    _uptrend(engine)
    await _bullish_sentiment(engine)
    return await engine.run_decision_cycle(portfolio.id)


class TestDecisionCycle:
    """Test the analysis -> decision -> order pipeline."""

    @pytest.mark.asyncio
    async def test_bullish_signals_open_long(self):
        engine = build_paper_engine()
        portfolio = _portfolio(engine)

        decisions = await _enter_long(engine, portfolio)

        assert [d.action for d in decisions] == [TradeAction.BUY]
        assert decisions[0].executable
        position = engine.positions.get_position(portfolio.id, SYMBOL)
        assert position is not None
        assert position.quantity == pytest.approx(2000.0 * 0.05 / 159.0)
        assert position.stop_loss == pytest.approx(159.0 * 0.95)
        assert position.take_profit == pytest.approx(159.0 * 1.10)
        assert engine.decisions.get_state(portfolio.id, SYMBOL) == PositionState.OPEN
        assert engine.stats['orders_submitted'] == 1
        assert engine.repository.get_analysis('technical', SYMBOL)['signal'] == "BUY"
        assert engine.repository.get_analysis('sentiment', SYMBOL)['score'] == pytest.approx(0.8)
        assert len(engine.repository.list_decisions(portfolio.id)) == 1
        assert engine.event_bus.get_recent(event_type=POSITION_OPENED)

    @pytest.mark.asyncio
    async def test_no_sentiment_holds(self):
        engine = build_paper_engine()
        portfolio = _portfolio(engine)
        _uptrend(engine)

        decisions = await engine.run_decision_cycle(portfolio.id)

        assert decisions[0].action == TradeAction.HOLD
        assert engine.stats['orders_submitted'] == 0
        assert engine.positions.get_open_positions() == []

    @pytest.mark.asyncio
    async def test_open_position_is_not_doubled(self):
        engine = build_paper_engine()
        portfolio = _portfolio(engine)
        await _enter_long(engine, portfolio)

        decisions = await engine.run_decision_cycle(portfolio.id)

        assert decisions[0].action == TradeAction.HOLD
        assert engine.stats['orders_submitted'] == 1

    @pytest.mark.asyncio
    async def test_symbol_failure_does_not_stop_cycle(self):
        logger_manager = Mock()
        engine = build_paper_engine(logger_manager=logger_manager)
        portfolio = _portfolio(engine, symbols=(SYMBOL, 'ETH/USDT'))
        _uptrend(engine)

        decisions = await engine.run_decision_cycle(portfolio.id)

        assert [d.symbol for d in decisions] == [SYMBOL]
        assert engine.stats['errors'] == 1
        assert logger_manager.log_error.call_args.args[0] == "decision_cycle_failed"

    @pytest.mark.asyncio
    async def test_unexpected_symbol_error_does_not_stop_cycle(self):
        logger_manager = Mock()
        engine = build_paper_engine(logger_manager=logger_manager)
        portfolio = _portfolio(engine, symbols=(SYMBOL, 'ETH/USDT'))
        _uptrend(engine)
        _uptrend(engine, 'ETH/USDT')
        engine.technical.analyze = Mock(side_effect=RuntimeError("nan in frame"))

        decisions = await engine.run_decision_cycle(portfolio.id)

        assert decisions == []
        assert engine.technical.analyze.call_count == 2
        assert engine.stats['errors'] == 2
        assert logger_manager.log_error.call_args.args[0] == "decision_cycle_failed"

    @pytest.mark.asyncio
    async def test_unknown_portfolio(self):
        with pytest.raises(PortfolioError):
            await build_paper_engine().run_decision_cycle('missing')

    @pytest.mark.asyncio
    async def test_risk_limit_blocks_entry(self):
        engine = build_paper_engine({'risk': {'max_risk_per_position': 0.005}})
        portfolio = _portfolio(engine)

        await _enter_long(engine, portfolio)

        assert engine.stats['risk_blocked'] == 1
        assert engine.stats['orders_submitted'] == 0
        assert engine.decisions.get_state(portfolio.id, SYMBOL) == PositionState.FLAT

    @pytest.mark.asyncio
    async def test_trade_validation_blocks_entry(self):
        strict = {'min_confidence': 0.99, 'warn_confidence': 0.995}
        engine = build_paper_engine({'trade_validation': strict})
        portfolio = _portfolio(engine)

        await _enter_long(engine, portfolio)

        assert engine.stats['validation_blocked'] == 1
        assert engine.stats['orders_submitted'] == 0
        assert engine.trade_validator.get_stats()['blocked_by_rule'] == {"confidence_check": 1}

    @pytest.mark.asyncio
    async def test_high_override_lets_entry_through(self):
        strict = {'min_confidence': 0.99, 'warn_confidence': 0.995, 'override_high': True}
        engine = build_paper_engine({'trade_validation': strict})
        portfolio = _portfolio(engine)

        await _enter_long(engine, portfolio)

        assert engine.stats['validation_blocked'] == 0
        assert engine.positions.has_open_position(portfolio.id, SYMBOL)

    @pytest.mark.asyncio
    async def test_rejected_order_returns_to_flat(self):
        logger_manager = Mock()
        engine = build_paper_engine(balances={'USDT': 10.0}, logger_manager=logger_manager)
        portfolio = _portfolio(engine)

        await _enter_long(engine, portfolio)

        assert engine.stats['orders_rejected'] == 1
        assert engine.positions.get_open_positions() == []
        assert engine.decisions.get_state(portfolio.id, SYMBOL) == PositionState.FLAT
        assert logger_manager.log_error.call_args.args[0] == "order_rejected"

    @pytest.mark.asyncio
    async def test_high_slippage_is_reported(self):
        engine = build_paper_engine()
        engine.gateway.slippage_bps = 300.0
        portfolio = _portfolio(engine)

        await _enter_long(engine, portfolio)

        events = engine.event_bus.get_recent(event_type=SLIPPAGE_EXCEEDED)
        assert len(events) == 1
        assert events[0].payload['slippage_pct'] > 0.02
        assert engine.stats['slippage_retries'] == 0


class TestPositionManagement:
    """Test position refresh and exits."""

    @pytest.mark.asyncio
    async def test_stop_loss_exit(self):
        engine = build_paper_engine()
        portfolio = _portfolio(engine)
        await _enter_long(engine, portfolio)

        engine.gateway.set_price(SYMBOL, 150.0)
        exits = await engine.refresh_positions(portfolio.id)

        assert len(exits) == 1
        assert exits[0].success
        assert engine.positions.get_open_positions() == []
        trades = engine.repository.list_trades(portfolio.id)
        assert trades[0]['exit_reason'] == 'stop_loss'
        assert trades[0]['pnl'] < 0
        assert engine.performance.get_metrics(portfolio.id, SYMBOL).losing_trades == 1
        assert engine.decisions.get_state(portfolio.id, SYMBOL) == PositionState.FLAT
        assert engine.stats['protective_exits'] == 1
        assert engine.event_bus.get_recent(event_type=POSITION_CLOSED)

    @pytest.mark.asyncio
    async def test_refresh_marks_without_exit(self):
        engine = build_paper_engine()
        portfolio = _portfolio(engine)
        await _enter_long(engine, portfolio)

        engine.gateway.set_price(SYMBOL, 165.0)
        assert await engine.refresh_positions(portfolio.id) == []

        position = engine.positions.get_position(portfolio.id, SYMBOL)
        assert position.current_price == 165.0
        assert position.unrealized_pnl > 0
        assert engine.portfolios.get_portfolio(portfolio.id).performance.total_pnl > 0

    @pytest.mark.asyncio
    async def test_late_fill_is_reconciled_after_monitoring_stops(self):
        engine = build_paper_engine()
        portfolio = _portfolio(engine)
        engine.gateway.set_price(SYMBOL, 100.0)
        engine.decisions.mark_entering(portfolio.id, SYMBOL)
        result = await engine.order_manager.place_order(OrderRequest(
            symbol=SYMBOL, side=OrderSide.BUY, order_type=OrderType.LIMIT, quantity=1.0, price=95.0,
            portfolio_id=portfolio.id, reference_price=95.0,
        ))
        assert result.order.status == OrderStatus.NEW
        engine.order_manager.stop_monitoring_for_portfolio(portfolio.id)

        engine.gateway.set_price(SYMBOL, 94.0)
        settled = await engine.reconcile_orders()

        assert settled == [result.order]
        assert result.order.status == OrderStatus.FILLED
        assert engine.positions.has_open_position(portfolio.id, SYMBOL)
        assert engine.decisions.get_state(portfolio.id, SYMBOL) == PositionState.OPEN
        assert engine.order_manager.get_active_orders() == []

    @pytest.mark.asyncio
    async def test_manual_close(self):
        engine = build_paper_engine()
        portfolio = _portfolio(engine)
        await _enter_long(engine, portfolio)

        result = await engine.close_position(portfolio.id, SYMBOL)

        assert result.success
        assert engine.repository.list_trades(portfolio.id)[0]['exit_reason'] == 'manual'
        assert await engine.close_position(portfolio.id, SYMBOL) is None


class TestAutomation:
    """Test automation timers and the engine lifecycle."""

    SETTINGS = {'trading': {'decision_interval': 3600, 'position_refresh_interval': 3600}}

    @pytest.mark.asyncio
    async def test_start_and_stop_automation(self):
        engine = build_paper_engine(self.SETTINGS)
        portfolio = _portfolio(engine)
        _uptrend(engine)

        assert engine.start_automation(portfolio.id)
        assert not engine.start_automation(portfolio.id)
        for _ in range(5):
            await asyncio.sleep(0)

        assert engine.stats['cycles'] == 1
        assert engine.is_automated(portfolio.id)
        assert engine.stop_automation(portfolio.id)
        assert not engine.stop_automation(portfolio.id)
        await engine.shutdown()
        assert not engine.is_automated(portfolio.id)

    @pytest.mark.asyncio
    async def test_unexpected_job_error_keeps_timer_running(self):
        engine = build_paper_engine({'trading': {'decision_interval': 3600, 'position_refresh_interval': 0.01}})
        portfolio = _portfolio(engine)
        _uptrend(engine)
        calls = []

        async def failing_refresh(portfolio_id):
            calls.append(portfolio_id)
            raise RuntimeError("mark failed")

        engine.refresh_positions = failing_refresh
        assert engine.start_automation(portfolio.id)
        for _ in range(50):
            await asyncio.sleep(0.01)
            if len(calls) >= 3:
                break

        assert len(calls) >= 3
        assert engine.is_automated(portfolio.id)
        assert engine.stats['errors'] >= 3
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_portfolio_cannot_be_automated(self):
        with pytest.raises(PortfolioError):
            build_paper_engine().start_automation('missing')

    @pytest.mark.asyncio
    async def test_lifecycle_with_auto_trading(self):
        engine = build_paper_engine({'trading': {**self.SETTINGS['trading'], 'auto_trading': True}})
        portfolio = _portfolio(engine)

        await engine.start()
        status = engine.status()
        assert status['running']
        assert status['automated_portfolios'] == [portfolio.id]
        assert status['tracked_symbols'] == [SYMBOL]

        await engine.shutdown()
        assert not engine.status()['running']
        assert engine.status()['automated_portfolios'] == []
