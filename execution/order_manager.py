"""
order_manager.py - Order Lifecycle Management

Validates, places, monitors and cancels orders. Does not make strategy
decisions - purely operational order management.

Placement path:
    OrderValidator -> RetryPolicy -> CircuitBreaker -> gateway.place_order

The gateway is expected to be rate limited (RateLimitedGateway). Accepted
orders are polled by one monitor task each until a terminal status or the
monitor timeout. Streaming execution reports are applied through the same
per-symbol lock, so transitions within a symbol follow arrival order.
Terminal orders leave the active set for a bounded per-symbol history.

Every placement emits order.placed or order.failed in addition to the
returned PlacementResult.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from core.errors import OrderError, TradingEngineError, ValidationError
from core.events import (
    CIRCUIT_STATE_CHANGED,
    ORDER_CANCELED,
    ORDER_FAILED,
    ORDER_FILLED,
    ORDER_MONITOR_TIMEOUT,
    ORDER_PLACED,
    ORDER_UPDATED,
)
from execution.circuit_breaker import CircuitBreaker
from execution.order_validator import OrderValidator, ValidationResult
from execution.orders import Order, OrderReport, OrderRequest, OrderStatus
from execution.retry import RetryConfig, RetryPolicy


logger = logging.getLogger(__name__)

# callback(order, fill_quantity, fill_price)
FillCallback = Callable[[Order, float, float], Any]
# callback(order) once the order reaches a terminal status
TerminalCallback = Callable[[Order], Any]


@dataclass
class PlacementResult:
    """
    Typed outcome of place_order.

    Attributes:
        success: Order accepted by the exchange
        order: Tracked order when accepted
        error: Failure cause when not accepted
        validation: Basic validation outcome
        attempts: Placement attempts made against the exchange
    """
    success: bool
    order: Optional[Order] = None
    error: Optional[Exception] = None
    validation: Optional[ValidationResult] = None
    attempts: int = 0

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'success': self.success,
            'order': self.order.to_dict() if self.order else None,
            'error': self.error.to_dict() if isinstance(self.error, TradingEngineError)
            else (str(self.error) if self.error else None),
            'validation': self.validation.to_dict() if self.validation else None,
            'attempts': self.attempts,
        }


class OrderLifecycleManager:
    """
    Order placement and tracking.

    Args:
        gateway: Exchange gateway (rate limited)
        validator: Basic order validator
        circuit_breaker: Breaker guarding placement
        retry_policy: Retry policy for transient placement/cancel failures
        event_bus: Optional EventBus for order notifications
        poll_interval: Seconds between monitor polls
        monitor_timeout: Seconds after which monitoring force-stops
        history_size: Terminal orders retained per symbol
    """

    def __init__(
        self,
        gateway,
        validator: Optional[OrderValidator] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        event_bus=None,
        poll_interval: float = 5.0,
        monitor_timeout: float = 300.0,
        history_size: int = 100,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")
        if monitor_timeout < poll_interval:
            raise ValueError("monitor_timeout must be >= poll_interval")

        self.gateway = gateway
        self.validator = validator or OrderValidator()
        self.circuit_breaker = circuit_breaker or CircuitBreaker("order-placement")
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_bus = event_bus
        self.poll_interval = poll_interval
        self.monitor_timeout = monitor_timeout
        self.history_size = history_size
        self._sleep = sleep
        self._clock = clock

        self._active: Dict[str, Order] = {}
        self._exchange_ids: Dict[str, str] = {}
        self._history: Dict[str, Deque[Order]] = {}
        self._symbol_locks: Dict[str, asyncio.Lock] = {}
        # placements validated but not yet registered, per symbol
        self._pending: Dict[str, int] = {}
        self._monitors: Dict[str, asyncio.Task] = {}
        self._report_tasks: Set[asyncio.Task] = set()
        self._fill_callbacks: List[FillCallback] = []
        self._terminal_callbacks: List[TerminalCallback] = []

        self.stats = {
            'placed': 0,
            'failed': 0,
            'rejected_validation': 0,
            'filled': 0,
            'canceled': 0,
            'monitor_timeouts': 0,
        }

        logger.info(f"OrderLifecycleManager initialized: poll={poll_interval}s, timeout={monitor_timeout}s")

    @classmethod
    def from_config(cls, config, gateway, event_bus=None, **kwargs) -> "OrderLifecycleManager":
        """
        Build the manager and its validator, breaker and retry policy from EngineConfig.

        Args:
            config: EngineConfig (orders, retry and circuit_breaker sections are read)
            gateway: Exchange gateway
            event_bus: Optional EventBus
        """
        orders = config.section('orders')
        breaker = config.section('circuit_breaker')

        def _breaker_changed(name, old, new):
            if event_bus is not None:
                event_bus.emit(CIRCUIT_STATE_CHANGED, {'name': name, 'from': old.value, 'to': new.value})

        return cls(
            gateway=gateway,
            validator=OrderValidator(
                max_orders_per_symbol=orders.get('max_orders_per_symbol', 5),
                min_order_value=orders.get('min_order_value', 10.0),
                max_order_value=orders.get('max_order_value', 10000.0),
            ),
            circuit_breaker=CircuitBreaker(
                name="order-placement",
                failure_threshold=breaker.get('failure_threshold', 5),
                recovery_timeout=breaker.get('recovery_timeout', 60.0),
                monitoring_window=breaker.get('monitoring_window', 300.0),
                on_state_change=_breaker_changed,
            ),
            retry_policy=RetryPolicy(RetryConfig.from_dict(config.section('retry'))),
            event_bus=event_bus,
            poll_interval=orders.get('poll_interval', 5.0),
            monitor_timeout=orders.get('monitor_timeout', 300.0),
            history_size=orders.get('history_size', 100),
            **kwargs,
        )

    # -----------------------
    # Helpers
    # -----------------------

    def _lock_for(self, symbol: str) -> asyncio.Lock:
        lock = self._symbol_locks.get(symbol)
        if lock is None:
            lock = self._symbol_locks[symbol] = asyncio.Lock()
        return lock

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event_type, payload)

    def on_fill(self, callback: FillCallback) -> None:
        """Register callback(order, fill_quantity, fill_price) for every new execution."""
        self._fill_callbacks.append(callback)

    def on_terminal(self, callback: TerminalCallback) -> None:
        """Register callback(order) for orders reaching a terminal status."""
        self._terminal_callbacks.append(callback)

    async def _invoke(self, callback: Callable[..., Any], *args) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Order callback {getattr(callback, '__name__', callback)} failed: {e}", exc_info=True)

    def active_count(self, symbol: str) -> int:
        """Active orders of a symbol, including placements still in flight."""
        return sum(1 for o in self._active.values() if o.symbol == symbol) + self._pending.get(symbol, 0)

    def _release(self, symbol: str) -> None:
        remaining = self._pending.get(symbol, 0) - 1
        if remaining > 0:
            self._pending[symbol] = remaining
        else:
            self._pending.pop(symbol, None)

    # -----------------------
    # Placement
    # -----------------------

    async def place_order(self, request: OrderRequest) -> PlacementResult:
        """
        Validate and place an order, then start monitoring it.

        Args:
            request: Order to place

        Returns:
            PlacementResult; errors are returned, not raised, except for
            unexpected non-engine exceptions which propagate after the
            failure event is emitted
        """
        symbol = request.symbol
        # validation and the slot reservation are atomic per symbol; the exchange call is not under the lock
        async with self._lock_for(symbol):
            validation = self.validator.validate(request, self.active_count(symbol))
            if validation.is_valid:
                self._pending[symbol] = self._pending.get(symbol, 0) + 1
        if not validation.is_valid:
            error = ValidationError(f"Order validation failed: {'; '.join(validation.errors)}",
                                    reasons=validation.errors,
                                    context={'client_order_id': request.client_order_id})
            self.stats['rejected_validation'] += 1
            self._emit(ORDER_FAILED, {'request': request.to_dict(), 'error': error.to_dict(), 'attempts': 0})
            return PlacementResult(success=False, error=error, validation=validation)
        for warning in validation.warnings:
            logger.warning(f"Order {request.client_order_id}: {warning}")

        attempts = 0
        reserved = True

        async def _attempt() -> OrderReport:
            nonlocal attempts
            attempts += 1
            return await self.circuit_breaker.call(self.gateway.place_order, request)

        try:
            try:
                report = await self.retry_policy.execute(_attempt, name=f"place_order {symbol}")
            except TradingEngineError as e:
                self.stats['failed'] += 1
                logger.error(f"Order {request.client_order_id} failed after {attempts} attempt(s): {e}")
                self._emit(ORDER_FAILED, {'request': request.to_dict(), 'error': e.to_dict(), 'attempts': attempts})
                return PlacementResult(success=False, error=e, validation=validation, attempts=attempts)
            except Exception as e:
                self.stats['failed'] += 1
                self._emit(ORDER_FAILED, {'request': request.to_dict(), 'error': {'message': str(e)},
                                          'attempts': attempts})
                raise

            order = Order.from_request(request)
            order.exchange_order_id = report.exchange_order_id
            async with self._lock_for(symbol):
                self._active[order.client_order_id] = order
                self._exchange_ids[report.exchange_order_id] = order.client_order_id
                self._release(symbol)
                reserved = False
        finally:
            if reserved:
                self._release(symbol)
        self.stats['placed'] += 1

        logger.info(f"Order placed: {order.client_order_id} -> {report.exchange_order_id} "
                    f"{order.side.value} {order.quantity} {order.symbol}")
        self._emit(ORDER_PLACED, {'order': order.to_dict(), 'attempts': attempts})

        await self.apply_report(report)
        if not order.is_terminal:
            self._start_monitor(order)
        return PlacementResult(success=True, order=order, validation=validation, attempts=attempts)

    # -----------------------
    # Report application
    # -----------------------

    def _find(self, report: OrderReport) -> Optional[Order]:
        client_id = self._exchange_ids.get(report.exchange_order_id) or report.client_order_id
        if client_id is None:
            return None
        return self._active.get(client_id)

    async def apply_report(self, report: OrderReport) -> Optional[Order]:
        """
        Apply an exchange report to the matching active order.

        Returns:
            The order when the report changed it, else None
        """
        async with self._lock_for(report.symbol):
            order = self._find(report)
            if order is None:
                logger.debug(f"No active order for report {report.exchange_order_id} ({report.status.value})")
                return None
            previous_qty = order.executed_quantity
            previous_avg = order.average_price
            delta = order.apply_report(report)
            if delta is None:
                return None
            terminal = order.is_terminal
            if terminal:
                self._finalize(order)

        self._emit(ORDER_UPDATED, {'order': order.to_dict()})

        if delta > 0:
            fill_price = self._fill_price(previous_qty, previous_avg, order, delta)
            logger.info(f"Order {order.client_order_id} executed {delta} {order.symbol} @ {fill_price}")
            for callback in list(self._fill_callbacks):
                await self._invoke(callback, order, delta, fill_price)

        if terminal:
            if order.status == OrderStatus.FILLED:
                self.stats['filled'] += 1
                self._emit(ORDER_FILLED, {'order': order.to_dict()})
            elif order.status == OrderStatus.CANCELED:
                self.stats['canceled'] += 1
                self._emit(ORDER_CANCELED, {'order': order.to_dict()})
            logger.info(f"Order {order.client_order_id} terminal: {order.status.value}")
            for callback in list(self._terminal_callbacks):
                await self._invoke(callback, order)
        return order

    @staticmethod
    def _fill_price(previous_qty: float, previous_avg: Optional[float], order: Order, delta: float) -> float:
        """Price of the newly executed slice, derived from cumulative averages."""
        average = order.average_price or order.price or order.reference_price or 0.0
        if previous_qty > 0 and previous_avg is not None and order.average_price is not None:
            incremental = (order.average_price * order.executed_quantity - previous_avg * previous_qty) / delta
            if incremental > 0:
                return incremental
        return average

    def _finalize(self, order: Order) -> None:
        """Move a terminal order to history. Caller holds the symbol lock."""
        self._active.pop(order.client_order_id, None)
        if order.exchange_order_id:
            self._exchange_ids.pop(order.exchange_order_id, None)
        history = self._history.setdefault(order.symbol, deque(maxlen=self.history_size))
        history.append(order)

        task = self._monitors.pop(order.client_order_id, None)
        current = asyncio.current_task()
        if task is not None and task is not current and not task.done():
            task.cancel()

    def handle_execution_report(self, report: OrderReport) -> None:
        """
        Streaming entry point; schedules the report for application.

        Reports for one symbol are applied in the order they arrive.
        """
        task = asyncio.get_running_loop().create_task(self.apply_report(report))
        self._report_tasks.add(task)
        task.add_done_callback(self._report_done)

    def _report_done(self, task: asyncio.Task) -> None:
        self._report_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Execution report application failed: {task.exception()}", exc_info=task.exception())

    # -----------------------
    # Monitoring
    # -----------------------

    def _start_monitor(self, order: Order) -> None:
        task = asyncio.get_running_loop().create_task(self._monitor(order), name=f"monitor-{order.client_order_id}")
        self._monitors[order.client_order_id] = task

    async def _monitor(self, order: Order) -> None:
        started = self._clock()
        try:
            while not order.is_terminal:
                await self._sleep(self.poll_interval)
                if order.is_terminal:
                    break
                if self._clock() - started >= self.monitor_timeout:
                    self.stats['monitor_timeouts'] += 1
                    order.metadata['monitor_timed_out'] = True
                    logger.warning(f"Monitoring stopped for {order.client_order_id} after {self.monitor_timeout}s "
                                   f"(status {order.status.value})")
                    self._emit(ORDER_MONITOR_TIMEOUT, {'order': order.to_dict()})
                    break
                try:
                    report = await self.gateway.get_order(order.symbol, order.exchange_order_id)
                except TradingEngineError as e:
                    logger.warning(f"Status poll failed for {order.client_order_id}: {e}")
                    continue
                except Exception as e:
                    logger.error(f"Unexpected status poll failure for {order.client_order_id}: {e}", exc_info=True)
                    continue
                await self.apply_report(report)
        finally:
            if self._monitors.get(order.client_order_id) is asyncio.current_task():
                del self._monitors[order.client_order_id]

    async def refresh_order(self, client_order_id: str) -> Optional[Order]:
        """Poll one active order immediately."""
        order = self._active.get(client_order_id)
        if order is None:
            return None
        report = await self.gateway.get_order(order.symbol, order.exchange_order_id)
        await self.apply_report(report)
        return order

    async def reconcile_unmonitored(self, portfolio_id: Optional[str] = None) -> List[Order]:
        """
        Poll active orders no monitor is watching (timed out or stopped).

        Fills that happened after monitoring ended are applied here, so fill
        and terminal callbacks still run for them.

        Returns:
            Orders that reached a terminal status
        """
        settled = []
        for client_id, order in list(self._active.items()):
            if portfolio_id is not None and order.portfolio_id != portfolio_id:
                continue
            task = self._monitors.get(client_id)
            if task is not None and not task.done():
                continue
            try:
                await self.refresh_order(client_id)
            except TradingEngineError as e:
                logger.warning(f"Reconciliation poll failed for {client_id}: {e}")
                continue
            if order.is_terminal:
                settled.append(order)
        if settled:
            logger.info(f"Reconciled {len(settled)} unmonitored orders")
        return settled

    def stop_monitoring_for_portfolio(self, portfolio_id: str) -> int:
        """
        Cancel monitor tasks of a portfolio's orders; the orders stay active.

        Returns:
            Number of monitors stopped
        """
        stopped = 0
        for client_id, order in list(self._active.items()):
            if order.portfolio_id != portfolio_id:
                continue
            task = self._monitors.pop(client_id, None)
            if task is not None and not task.done():
                task.cancel()
                stopped += 1
        if stopped:
            logger.info(f"Stopped {stopped} order monitors for portfolio {portfolio_id}")
        return stopped

    # -----------------------
    # Cancellation
    # -----------------------

    async def cancel_order(self, client_order_id: str) -> Order:
        """
        Cancel an active order.

        Raises:
            OrderError: Unknown or already terminal order
            TradingEngineError: Exchange failure after retries
        """
        order = self._active.get(client_order_id)
        if order is None:
            raise OrderError(f"No active order {client_order_id}", context={'client_order_id': client_order_id})

        report = await self.retry_policy.execute(
            lambda: self.gateway.cancel_order(order.symbol, order.exchange_order_id),
            name=f"cancel_order {order.symbol}",
        )
        await self.apply_report(report)
        return order

    async def cancel_all(self, portfolio_id: Optional[str] = None, symbol: Optional[str] = None) -> List[Order]:
        """Cancel matching active orders; failures are logged and the rest proceed."""
        targets = [o for o in list(self._active.values())
                   if (portfolio_id is None or o.portfolio_id == portfolio_id)
                   and (symbol is None or o.symbol == symbol)]
        canceled = []
        for order in targets:
            try:
                canceled.append(await self.cancel_order(order.client_order_id))
            except TradingEngineError as e:
                logger.error(f"Failed to cancel {order.client_order_id}: {e}")
        return canceled

    # -----------------------
    # Queries
    # -----------------------

    def get_order(self, client_order_id: str) -> Optional[Order]:
        order = self._active.get(client_order_id)
        if order is not None:
            return order
        for history in self._history.values():
            for past in history:
                if past.client_order_id == client_order_id:
                    return past
        return None

    def get_active_orders(self, portfolio_id: Optional[str] = None, symbol: Optional[str] = None) -> List[Order]:
        return [o for o in list(self._active.values())
                if (portfolio_id is None or o.portfolio_id == portfolio_id)
                and (symbol is None or o.symbol == symbol)]

    def get_order_history(self, symbol: str, limit: Optional[int] = None) -> List[Order]:
        items = list(self._history.get(symbol, []))
        return items if limit is None else items[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'active_orders': len(self._active),
            'monitors': len(self._monitors),
            'circuit_breaker': self.circuit_breaker.get_status(),
        }

    async def shutdown(self) -> None:
        """Stop every monitor and pending report task; open orders are left on the exchange."""
        tasks = list(self._monitors.values()) + list(self._report_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._monitors.clear()
        self._report_tasks.clear()
        logger.info("OrderLifecycleManager shut down")
