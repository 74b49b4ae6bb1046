"""
trading_engine.py - Engine Orchestrator

Wires the analysis, decision, risk and execution components together.
This module contains ONLY orchestration logic - indicator math, decision
rules, sizing, risk limits and order handling live in their own modules.

Per portfolio, while automation is running:
1. Decision cycle (every decision_interval seconds), per active symbol:
   candles -> technical analysis -> latest sentiment -> decision ->
   portfolio risk validation -> trade validation -> order placement
2. Position refresh (every position_refresh_interval seconds):
   ticker -> position marks -> stop-loss / take-profit exits

Fills reported by the order manager update the position book, the
slippage tracker, the performance tracker, the decision state machine and
the repository. Maintenance sweeps expire repository cache entries and
rate limiter windows.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from analysis.sentiment_aggregator import SentimentAggregator
from analysis.technical_analysis import TechnicalAnalysisEngine
from core.errors import PortfolioError, TradingEngineError
from core.events import POSITION_CLOSED, POSITION_OPENED, SLIPPAGE_EXCEEDED, EventBus
from execution.order_manager import OrderLifecycleManager, PlacementResult
from execution.orders import Order, OrderRequest, OrderSide, OrderType
from execution.rate_limiter import RateLimiter
from execution.slippage_tracker import SlippageMethod, SlippageResult, SlippageTracker
from execution.trade_validator import (
    MarketConditions,
    MarketData,
    PortfolioData,
    TradeValidationData,
    TradeValidator,
    default_rules,
)
from monitoring.metrics import PerformanceTracker
from portfolio.portfolio_manager import Portfolio, PortfolioManager
from portfolio.position_book import PositionBook
from risk.portfolio_risk_manager import ExistingPosition, PortfolioRiskManager
from risk.position_sizing import PositionSizer
from storage.repository import InMemoryRepository, Repository
from strategies.decision_engine import DecisionEngine, DecisionIntent, PositionState, TradeAction, TradeDecision


logger = logging.getLogger(__name__)

QUANTITY_EPSILON = 1e-12


class TradingEngine:
    """
    Autonomous trading orchestrator.

    Args:
        gateway: Exchange gateway (rate limited)
        order_manager: Order lifecycle manager bound to the same gateway
        technical: Technical analysis engine
        sentiment: Sentiment aggregator
        decisions: Decision engine
        risk_manager: Portfolio risk manager
        trade_validator: Advanced trade validator, None disables the stage
        slippage: Slippage tracker
        portfolios: Portfolio manager
        positions: Position book shared with the portfolio manager
        performance: Closed-trade performance tracker
        repository: Persistence
        rate_limiter: Limiter behind the gateway, swept periodically
        event_bus: Notification channel
        logger_manager: Optional LoggerManager for structured trade/error logs
        settings: trading config section
        override_high: Let HIGH trade-validation failures through
    """

    def __init__(
        self,
        gateway,
        order_manager: OrderLifecycleManager,
        technical: TechnicalAnalysisEngine,
        sentiment: SentimentAggregator,
        decisions: DecisionEngine,
        risk_manager: PortfolioRiskManager,
        trade_validator: Optional[TradeValidator],
        slippage: SlippageTracker,
        portfolios: PortfolioManager,
        positions: PositionBook,
        performance: PerformanceTracker,
        repository: Repository,
        rate_limiter: Optional[RateLimiter] = None,
        event_bus: Optional[EventBus] = None,
        logger_manager=None,
        settings: Optional[Dict[str, Any]] = None,
        override_high: bool = False,
    ):
        settings = settings or {}
        self.gateway = gateway
        self.order_manager = order_manager
        self.technical = technical
        self.sentiment = sentiment
        self.decisions = decisions
        self.risk_manager = risk_manager
        self.trade_validator = trade_validator
        self.slippage = slippage
        self.portfolios = portfolios
        self.positions = positions
        self.performance = performance
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.event_bus = event_bus
        self.logger_manager = logger_manager
        self.override_high = override_high

        self.auto_trading = settings.get('auto_trading', False)
        self.decision_interval = settings.get('decision_interval', 300)
        self.position_refresh_interval = settings.get('position_refresh_interval', 60)
        self.candle_timeframe = settings.get('candle_timeframe', '1h')
        self.candle_limit = settings.get('candle_limit', 100)
        self.sweep_interval = settings.get('sweep_interval', 60)

        self._automation: Dict[str, asyncio.Event] = {}
        self._automation_tasks: Dict[str, List[asyncio.Task]] = {}
        self._maintenance: Optional[asyncio.Task] = None
        self._running = False
        self._started_at: Optional[float] = None

        # Latest fill slippage per symbol, used to shrink the next order
        self._last_slippage: Dict[str, float] = {}
        # Per order: commission already booked and latest slippage measurement
        self._commission_seen: Dict[str, float] = {}
        self._order_slippage: Dict[str, SlippageResult] = {}

        self.stats = {
            'cycles': 0,
            'decisions': 0,
            'orders_submitted': 0,
            'orders_rejected': 0,
            'risk_blocked': 0,
            'validation_blocked': 0,
            'protective_exits': 0,
            'slippage_retries': 0,
            'errors': 0,
        }

        order_manager.on_fill(self._on_fill)
        order_manager.on_terminal(self._on_terminal)

    @classmethod
    def from_config(
        cls,
        config,
        gateway,
        repository: Optional[Repository] = None,
        event_bus: Optional[EventBus] = None,
        rate_limiter: Optional[RateLimiter] = None,
        logger_manager=None,
    ) -> "TradingEngine":
        """
        Build every component from an EngineConfig.

        Args:
            config: EngineConfig
            gateway: Exchange gateway, already wrapped by RateLimitedGateway
            repository: Persistence (in-memory by default)
            event_bus: Notification channel (created when omitted)
            rate_limiter: Limiter behind the gateway
            logger_manager: Optional LoggerManager
        """
        event_bus = event_bus or EventBus(logger_manager=logger_manager)
        repository = repository or InMemoryRepository(default_ttl=config.section('cache').get('default_ttl', 300))
        positions = PositionBook()

        def _existing(portfolio_id: str) -> List[ExistingPosition]:
            return [ExistingPosition(p.symbol, p.market_value) for p in positions.get_open_positions(portfolio_id)]

        slippage_cfg = config.section('slippage')
        validation_cfg = config.section('trade_validation')
        performance_cfg = config.section('performance')

        return cls(
            gateway=gateway,
            order_manager=OrderLifecycleManager.from_config(config, gateway, event_bus=event_bus),
            technical=TechnicalAnalysisEngine.from_config(config.section('technical'), event_bus=event_bus),
            sentiment=SentimentAggregator.from_config(config.section('sentiment'), event_bus=event_bus),
            decisions=DecisionEngine.from_config(
                config.section('decision'),
                sizer=PositionSizer.from_config(config.section('sizing')),
                event_bus=event_bus,
            ),
            risk_manager=PortfolioRiskManager.from_config(config.section('risk'), positions_provider=_existing),
            trade_validator=(TradeValidator(default_rules(validation_cfg))
                             if validation_cfg.get('enabled', True) else None),
            slippage=SlippageTracker(
                max_slippage=slippage_cfg.get('max_slippage', 0.02),
                tolerance=slippage_cfg.get('tolerance', 0.005),
                method=SlippageMethod(slippage_cfg.get('method', 'percentage')),
                retry_on_high_slippage=slippage_cfg.get('retry_on_high_slippage', True),
                max_retries=slippage_cfg.get('max_retries', 3),
                protection_enabled=slippage_cfg.get('protection_enabled', True),
                history_size=slippage_cfg.get('history_size', 100),
            ),
            portfolios=PortfolioManager(repository, positions),
            positions=positions,
            performance=PerformanceTracker.from_config(performance_cfg, event_bus=event_bus),
            repository=repository,
            rate_limiter=rate_limiter,
            event_bus=event_bus,
            logger_manager=logger_manager,
            settings=config.section('trading'),
            override_high=validation_cfg.get('override_high', False),
        )

    # -----------------------
    # Helpers
    # -----------------------

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event_type, payload)

    def _record_error(self, event: str, error: Exception, **context) -> None:
        self.stats['errors'] += 1
        if self.logger_manager is not None:
            payload = error.to_dict() if isinstance(error, TradingEngineError) else {'message': str(error)}
            self.logger_manager.log_error(event, str(error), {**context, 'error': payload})

    def _settle_state(self, portfolio_id: str, symbol: str) -> None:
        """Align the decision state with the position book once nothing is in flight."""
        state = self.decisions.get_state(portfolio_id, symbol)
        if self.positions.has_open_position(portfolio_id, symbol):
            if state != PositionState.OPEN:
                self.decisions.mark_open(portfolio_id, symbol)
        elif state != PositionState.FLAT:
            self.decisions.mark_flat(portfolio_id, symbol)

    def sync_tracked_symbols(self) -> List[str]:
        """Register every portfolio symbol with the sentiment aggregator."""
        for portfolio in self.portfolios.list_portfolios():
            for symbol in portfolio.symbols:
                if not self.sentiment.is_tracked(symbol):
                    self.sentiment.register_symbol(symbol)
        return self.sentiment.tracked_symbols()

    # -----------------------
    # Decision cycle
    # -----------------------

    async def run_decision_cycle(self, portfolio_id: str) -> List[TradeDecision]:
        """
        Analyze, decide and (when executable) trade every active symbol once.

        Symbol failures are logged and do not stop the cycle.

        Raises:
            PortfolioError: Unknown portfolio
        """
        portfolio = self.portfolios.require(portfolio_id)
        self.stats['cycles'] += 1
        decisions = []
        for symbol in self.portfolios.active_symbols(portfolio_id):
            try:
                decision = await self.process_symbol(portfolio, symbol)
            except TradingEngineError as e:
                logger.error(f"Decision cycle failed for {portfolio.name} {symbol}: {e}")
                self._record_error("decision_cycle_failed", e, portfolio_id=portfolio_id, symbol=symbol)
                continue
            except Exception as e:
                logger.error(f"Unexpected error in decision cycle for {portfolio.name} {symbol}: {e}", exc_info=True)
                self._record_error("decision_cycle_failed", e, portfolio_id=portfolio_id, symbol=symbol)
                continue
            decisions.append(decision)
        logger.info(f"Decision cycle for {portfolio.name}: {len(decisions)} decisions")
        return decisions

    async def process_symbol(self, portfolio: Portfolio, symbol: str) -> TradeDecision:
        """Run the pipeline for one symbol and return the recorded decision."""
        candles = await self.gateway.get_candles(symbol, self.candle_timeframe, self.candle_limit)
        technical = self.technical.analyze(symbol, candles)
        self.repository.save_analysis('technical', symbol, technical.to_dict())
        self.risk_manager.update_volatility(symbol, [c.close for c in candles])

        sentiment = self.sentiment.get_latest(symbol)
        if sentiment is not None:
            self.repository.save_analysis('sentiment', symbol, sentiment.to_dict())

        decision = self.decisions.decide(
            portfolio.id,
            symbol,
            technical,
            sentiment,
            position=self.positions.get_position(portfolio.id, symbol),
            budget=portfolio.symbol_budget(symbol),
            volatility=self.risk_manager.get_volatility(symbol),
            open_positions=len(self.positions.get_open_positions(portfolio.id)),
        )
        self.stats['decisions'] += 1
        self.repository.append_decision(decision.to_dict())

        if decision.executable:
            await self.execute_decision(decision)
        return decision

    async def execute_decision(self, decision: TradeDecision) -> Optional[PlacementResult]:
        """
        Turn an executable decision into an order.

        Entries pass portfolio risk and trade validation first. Returns None
        when the decision was not executed.
        """
        if not decision.executable or decision.intent == DecisionIntent.NONE:
            return None
        portfolio = self.portfolios.require(decision.portfolio_id)
        symbol = decision.symbol
        side = OrderSide(decision.action.value.lower())

        if decision.intent == DecisionIntent.EXIT:
            position = self.positions.get_position(portfolio.id, symbol)
            if position is None:
                logger.warning(f"Exit decision for {symbol} without an open position")
                return None
            return await self._submit_exit(portfolio.id, symbol, position.quantity,
                                           decision.price or position.current_price, "signal")

        quantity = decision.quantity or 0.0
        price = decision.price
        if quantity <= 0 or not price:
            logger.info(f"Entry for {portfolio.name} {symbol} skipped: no size ({decision.sizing_method})")
            return None
        if symbol in self._last_slippage:
            quantity = self.slippage.optimal_order_size(quantity, self._last_slippage[symbol])

        portfolio_value = portfolio.performance.total_value or portfolio.budget.total
        risk = self.risk_manager.validate_position(symbol, portfolio.id, quantity, price, portfolio_value)
        if not risk.is_valid:
            self.stats['risk_blocked'] += 1
            return None

        if self.trade_validator is not None:
            data = await self._validation_data(decision, quantity, portfolio, portfolio_value,
                                               risk.total_portfolio_risk - risk.risk.current_risk)
            result = self.trade_validator.validate(data, override_high=self.override_high)
            if not result.is_valid:
                self.stats['validation_blocked'] += 1
                return None

        request = OrderRequest(
            symbol=symbol,
            side=side,
            order_type=OrderType.MARKET,
            quantity=quantity,
            portfolio_id=portfolio.id,
            reference_price=price,
            metadata={
                'intent': DecisionIntent.ENTRY.value,
                'stop_loss': decision.stop_loss,
                'take_profit': decision.take_profit,
                'confidence': decision.confidence,
            },
        )
        self.decisions.mark_entering(portfolio.id, symbol)
        return await self._submit(request)

    async def _validation_data(self, decision: TradeDecision, quantity: float, portfolio: Portfolio,
                               portfolio_value: float, exposure: float) -> TradeValidationData:
        ticker = await self.gateway.get_ticker(decision.symbol)
        book = await self.gateway.get_order_book(decision.symbol)
        open_positions = self.positions.get_open_positions(portfolio.id)
        invested = sum(p.market_value for p in open_positions)
        return TradeValidationData(
            symbol=decision.symbol,
            side=OrderSide(decision.action.value.lower()),
            quantity=quantity,
            price=decision.price,
            ai_confidence=(decision.sentiment or {}).get('confidence', 0.0),
            technical_confidence=(decision.technical or {}).get('confidence', 0.0),
            market_data=MarketData(
                volume=ticker.volume,
                volatility=self.risk_manager.get_volatility(decision.symbol),
                spread=ticker.spread or 0.0,
                liquidity=book.liquidity(),
            ),
            portfolio_data=PortfolioData(
                current_positions=len(open_positions),
                total_value=portfolio_value,
                available_balance=max(0.0, portfolio_value - invested),
                risk_exposure=exposure,
            ),
            market_conditions=MarketConditions(),
        )

    async def _submit_exit(self, portfolio_id: str, symbol: str, quantity: float,
                           reference_price: Optional[float], reason: str) -> Optional[PlacementResult]:
        position = self.positions.get_position(portfolio_id, symbol)
        if position is None:
            return None
        request = OrderRequest(
            symbol=symbol,
            side=position.side.exit_order_side,
            order_type=OrderType.MARKET,
            quantity=quantity,
            portfolio_id=portfolio_id,
            reference_price=reference_price,
            metadata={'intent': DecisionIntent.EXIT.value, 'exit_reason': reason},
        )
        self.decisions.mark_exiting(portfolio_id, symbol)
        return await self._submit(request)

    async def _submit(self, request: OrderRequest) -> PlacementResult:
        self.stats['orders_submitted'] += 1
        result = await self.order_manager.place_order(request)
        if not result.success:
            self.stats['orders_rejected'] += 1
            self._record_error("order_rejected", result.error, symbol=request.symbol,
                               portfolio_id=request.portfolio_id)
            self._settle_state(request.portfolio_id, request.symbol)
        return result

    # -----------------------
    # Fill handling
    # -----------------------

    def _on_fill(self, order: Order, quantity: float, price: float) -> None:
        if order.portfolio_id is None:
            return
        portfolio_id, symbol = order.portfolio_id, order.symbol
        seen = self._commission_seen.get(order.client_order_id, 0.0)
        fee = max(0.0, order.commission - seen)
        self._commission_seen[order.client_order_id] = order.commission

        slip = None
        if order.reference_price:
            slip = self.slippage.record_fill(
                symbol, order.reference_price, price, order.side, quantity,
                order_id=order.client_order_id, execution_time=time.time() - order.created_at,
            )
            self._last_slippage[symbol] = slip.slippage_pct
            self._order_slippage[order.client_order_id] = slip
            if not slip.acceptable:
                self._emit(SLIPPAGE_EXCEEDED, slip.to_dict())

        outcome = self.positions.apply_fill(
            portfolio_id, symbol, order.side, quantity, price, fee,
            stop_loss=order.metadata.get('stop_loss'),
            take_profit=order.metadata.get('take_profit'),
            trade_id=order.client_order_id,
            exit_reason=order.metadata.get('exit_reason', 'signal'),
        )
        self.portfolios.mark_traded(portfolio_id, symbol)

        if outcome.opened:
            self.decisions.mark_open(portfolio_id, symbol)
            self._emit(POSITION_OPENED, outcome.position.to_dict())
        if outcome.closed_trade is not None:
            trade = outcome.closed_trade
            trade.slippage = sum(r.slippage_amount for r in self.slippage.get_history(symbol)
                                 if r.order_id == order.client_order_id)
            self.performance.record_trade(trade)
            self.repository.append_trade(trade.to_dict())
            if self.logger_manager is not None:
                self.logger_manager.log_trade(trade.to_dict())
            self.decisions.mark_flat(portfolio_id, symbol)
            self._emit(POSITION_CLOSED, trade.to_dict())

    async def _on_terminal(self, order: Order) -> None:
        self._commission_seen.pop(order.client_order_id, None)
        slip = self._order_slippage.pop(order.client_order_id, None)
        if order.portfolio_id is None:
            return

        attempt = order.metadata.get('slippage_retry', 0)
        remainder = order.remaining_quantity
        if remainder > QUANTITY_EPSILON and slip is not None and self.slippage.should_retry(slip, attempt):
            request = OrderRequest(
                symbol=order.symbol,
                side=order.side,
                order_type=OrderType.MARKET,
                quantity=self.slippage.optimal_order_size(remainder, slip.slippage_pct),
                portfolio_id=order.portfolio_id,
                reference_price=order.reference_price,
                metadata={**order.metadata, 'slippage_retry': attempt + 1, 'parent_order': order.client_order_id},
            )
            logger.warning(f"Re-placing {request.quantity} {order.symbol} after {slip.slippage_pct:.2%} slippage "
                           f"(retry {attempt + 1})")
            self.stats['slippage_retries'] += 1
            result = await self._submit(request)
            if result.success:
                return
        self._settle_state(order.portfolio_id, order.symbol)

    # -----------------------
    # Positions
    # -----------------------

    async def refresh_positions(self, portfolio_id: str) -> List[PlacementResult]:
        """
        Mark open positions to market and exit those past a protective level.

        Returns:
            Placement results of triggered exits
        """
        exits = []
        symbols = {p.symbol for p in self.positions.get_open_positions(portfolio_id)}
        for symbol in sorted(symbols):
            try:
                ticker = await self.gateway.get_ticker(symbol)
            except TradingEngineError as e:
                logger.warning(f"Ticker refresh failed for {symbol}: {e}")
                continue
            self.positions.refresh_price(symbol, ticker.last)
            self.risk_manager.record_price(symbol, ticker.last)

            reason = self.positions.check_exit_trigger(portfolio_id, symbol)
            if reason is None or self.decisions.get_state(portfolio_id, symbol) != PositionState.OPEN:
                continue
            logger.info(f"{reason} triggered for {portfolio_id} {symbol} @ {ticker.last}")
            self.stats['protective_exits'] += 1
            result = await self.close_position(portfolio_id, symbol, reason, reference_price=ticker.last)
            if result is not None:
                exits.append(result)

        if self.portfolios.get_portfolio(portfolio_id) is not None:
            performance = self.portfolios.calculate_performance(portfolio_id)
            self.performance.record_equity(portfolio_id, performance.total_value)
        return exits

    async def close_position(self, portfolio_id: str, symbol: str, reason: str = "manual",
                             reference_price: Optional[float] = None) -> Optional[PlacementResult]:
        """Submit a market order closing the whole position."""
        position = self.positions.get_position(portfolio_id, symbol)
        if position is None:
            return None
        if self.decisions.get_state(portfolio_id, symbol) == PositionState.FLAT:
            self.decisions.mark_open(portfolio_id, symbol)
        return await self._submit_exit(portfolio_id, symbol, position.quantity,
                                       reference_price or position.current_price, reason)

    # -----------------------
    # Automation
    # -----------------------

    def is_automated(self, portfolio_id: str) -> bool:
        return portfolio_id in self._automation

    def start_automation(self, portfolio_id: str) -> bool:
        """
        Start the decision and position-refresh timers of a portfolio.

        Returns:
            False when automation was already running

        Raises:
            PortfolioError: Unknown portfolio
        """
        portfolio = self.portfolios.require(portfolio_id)
        if portfolio_id in self._automation:
            return False
        self.sync_tracked_symbols()

        stop = asyncio.Event()
        self._automation[portfolio_id] = stop
        self._automation_tasks[portfolio_id] = [
            asyncio.create_task(self._every(self.decision_interval, stop, self.run_decision_cycle, portfolio_id),
                                name=f"decisions-{portfolio_id}"),
            asyncio.create_task(self._every(self.position_refresh_interval, stop, self.refresh_positions,
                                            portfolio_id),
                                name=f"positions-{portfolio_id}"),
        ]
        logger.info(f"Automation started for {portfolio.name} (every {self.decision_interval}s)")
        return True

    def stop_automation(self, portfolio_id: str) -> bool:
        """
        Stop a portfolio's timers and its order monitors.

        A cycle already running finishes; no new cycle starts. Open orders
        stay on the exchange.
        """
        stop = self._automation.pop(portfolio_id, None)
        if stop is None:
            return False
        stop.set()
        self.order_manager.stop_monitoring_for_portfolio(portfolio_id)
        logger.info(f"Automation stopped for {portfolio_id}")
        return True

    async def _every(self, interval: float, stop: asyncio.Event, job, portfolio_id: str) -> None:
        while not stop.is_set():
            try:
                await job(portfolio_id)
            except PortfolioError as e:
                logger.error(f"Automation for {portfolio_id} halted: {e}")
                self.stop_automation(portfolio_id)
                return
            except TradingEngineError as e:
                logger.error(f"{job.__name__} failed for {portfolio_id}: {e}")
                self._record_error(f"{job.__name__}_failed", e, portfolio_id=portfolio_id)
            except Exception as e:
                logger.error(f"Unexpected error in {job.__name__} for {portfolio_id}: {e}", exc_info=True)
                self._record_error(f"{job.__name__}_failed", e, portfolio_id=portfolio_id)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.repository.sweep_cache()
            await self.reconcile_orders()

    async def reconcile_orders(self) -> List[Order]:
        """Apply late fills of orders whose monitors timed out or were stopped."""
        try:
            return await self.order_manager.reconcile_unmonitored()
        except Exception as e:
            logger.error(f"Order reconciliation failed: {e}", exc_info=True)
            self._record_error("order_reconciliation_failed", e)
            return []

    # -----------------------
    # Lifecycle
    # -----------------------

    async def start(self) -> None:
        """Subscribe to execution reports, start sweepers and, when enabled, automation."""
        if self._running:
            return
        await self.gateway.subscribe_account(self.order_manager.handle_execution_report)
        if self.rate_limiter is not None:
            self.rate_limiter.start_sweeper(self.sweep_interval)
        self._maintenance = asyncio.create_task(self._maintenance_loop(), name="engine-maintenance")
        self.sync_tracked_symbols()
        self._running = True
        self._started_at = time.time()

        if self.auto_trading:
            for portfolio in self.portfolios.list_portfolios(active_only=True):
                self.start_automation(portfolio.id)
        logger.info("Trading engine started")

    async def shutdown(self, cancel_open_orders: bool = False) -> None:
        """Stop automation, background tasks and the gateway."""
        logger.info("Shutting down trading engine...")
        for portfolio_id in list(self._automation):
            self.stop_automation(portfolio_id)
        tasks = [t for group in self._automation_tasks.values() for t in group]
        self._automation_tasks.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if cancel_open_orders:
            canceled = await self.order_manager.cancel_all()
            logger.info(f"Canceled {len(canceled)} open orders")
        await self.order_manager.shutdown()

        if self._maintenance is not None:
            self._maintenance.cancel()
            await asyncio.gather(self._maintenance, return_exceptions=True)
            self._maintenance = None
        if self.rate_limiter is not None:
            await self.rate_limiter.stop_sweeper()
        await self.gateway.close()
        self._running = False
        logger.info("Trading engine stopped")

    def status(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'uptime': time.time() - self._started_at if self._started_at else 0.0,
            'automated_portfolios': sorted(self._automation),
            'open_positions': len(self.positions.get_open_positions()),
            'active_orders': len(self.order_manager.get_active_orders()),
            'tracked_symbols': self.sentiment.tracked_symbols(),
            'orders': self.order_manager.get_stats(),
            'engine': dict(self.stats),
            'rate_limiter': self.rate_limiter.get_stats() if self.rate_limiter else None,
            'events': self.event_bus.get_stats() if self.event_bus else None,
        }
