"""
exchange.py - Exchange Gateway

The core talks to the exchange only through the ExchangeGateway interface:
candles, ticker, order book, account info, order placement/cancel/query and
streaming subscriptions. Every call is treated as slow, rate-limited and
intermittently failing.

Implementations:
- CcxtExchangeGateway: ccxt.async_support client with per-request timeouts and
  ccxt exceptions mapped onto the engine error taxonomy
- RateLimitedGateway: wrapper that gates every call through the RateLimiter

Retries are not done here; they belong to the order lifecycle's retry policy.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import ccxt
import ccxt.async_support as ccxt_async

from core.errors import (
    ExchangeAPIError,
    ExchangeTimeoutError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from data.candles import Candle
from execution.orders import OrderReport, OrderRequest, OrderStatus, OrderType


logger = logging.getLogger(__name__)

# Callback signatures for streaming subscriptions
AccountCallback = Callable[[OrderReport], Any]
MarketCallback = Callable[["Ticker"], Any]


@dataclass
class Ticker:
    """Top-of-book snapshot."""
    symbol: str
    last: float
    bid: Optional[float] = None
    ask: Optional[float] = None
    volume: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @property
    def spread(self) -> Optional[float]:
        """Relative bid/ask spread, or None when either side is missing."""
        if not self.bid or not self.ask:
            return None
        mid = (self.bid + self.ask) / 2
        return (self.ask - self.bid) / mid if mid > 0 else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'last': self.last,
            'bid': self.bid,
            'ask': self.ask,
            'volume': self.volume,
            'spread': self.spread,
            'timestamp': self.timestamp,
        }


@dataclass
class OrderBook:
    """Depth snapshot: bids descending, asks ascending, as (price, amount)."""
    symbol: str
    bids: List[Tuple[float, float]] = field(default_factory=list)
    asks: List[Tuple[float, float]] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None

    @property
    def spread(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        mid = (self.best_bid + self.best_ask) / 2
        return (self.best_ask - self.best_bid) / mid if mid > 0 else None

    def liquidity(self, side: str = "both") -> float:
        """Quote-currency notional available in the book."""
        bids = sum(p * a for p, a in self.bids)
        asks = sum(p * a for p, a in self.asks)
        if side == "bids":
            return bids
        if side == "asks":
            return asks
        return bids + asks


@dataclass
class AccountInfo:
    """Balances keyed by asset: {"free": x, "used": y, "total": z}."""
    balances: Dict[str, Dict[str, float]] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def free(self, asset: str) -> float:
        return float(self.balances.get(asset, {}).get('free', 0.0))


class ExchangeGateway(abc.ABC):
    """Abstract exchange access used by the core."""

    @abc.abstractmethod
    async def get_candles(self, symbol: str, interval: str = "1h", limit: int = 100) -> List[Candle]:
        ...

    @abc.abstractmethod
    async def get_ticker(self, symbol: str) -> Ticker:
        ...

    @abc.abstractmethod
    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook:
        ...

    @abc.abstractmethod
    async def get_account_info(self) -> AccountInfo:
        ...

    @abc.abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderReport:
        ...

    @abc.abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> OrderReport:
        ...

    @abc.abstractmethod
    async def get_order(self, symbol: str, order_id: str) -> OrderReport:
        ...

    @abc.abstractmethod
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderReport]:
        ...

    @abc.abstractmethod
    async def subscribe_account(self, callback: AccountCallback, source: Optional[ExchangeGateway] = None) -> None:
        """
        Deliver order execution reports for the account to callback.

        Args:
            callback: Receives every OrderReport
            source: Gateway polling implementations fetch through (defaults to
                self); wrappers pass themselves so polls stay gated
        """

    @abc.abstractmethod
    async def subscribe_market(self, symbol: str, callback: MarketCallback,
                               source: Optional[ExchangeGateway] = None) -> None:
        """Deliver ticker updates for symbol to callback (source as for subscribe_account)."""

    @abc.abstractmethod
    async def keepalive(self) -> None:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...


# -----------------------
# ccxt status / error mapping
# -----------------------
_CCXT_STATUS = {
    'open': OrderStatus.NEW,
    'closed': OrderStatus.FILLED,
    'canceled': OrderStatus.CANCELED,
    'cancelled': OrderStatus.CANCELED,
    'expired': OrderStatus.EXPIRED,
    'rejected': OrderStatus.REJECTED,
}

_RAW_STATUS = {s.name: s for s in OrderStatus}

_CCXT_ORDER_TYPE = {
    OrderType.MARKET: 'market',
    OrderType.LIMIT: 'limit',
    OrderType.STOP_LOSS: 'STOP_LOSS',
    OrderType.STOP_LOSS_LIMIT: 'STOP_LOSS_LIMIT',
    OrderType.TAKE_PROFIT: 'TAKE_PROFIT',
    OrderType.TAKE_PROFIT_LIMIT: 'TAKE_PROFIT_LIMIT',
}

# Business rejections that must not be retried
_TERMINAL_CCXT_ERRORS = (
    ccxt.InsufficientFunds,
    ccxt.InvalidOrder,
    ccxt.OrderNotFound,
    ccxt.AuthenticationError,
    ccxt.PermissionDenied,
    ccxt.BadSymbol,
    ccxt.BadRequest,
)


def map_ccxt_exception(exc: Exception, operation: str) -> Exception:
    """
    Translate a ccxt (or asyncio timeout) exception into the engine taxonomy.

    Args:
        exc: Raised exception
        operation: Gateway operation name for context

    Returns:
        Engine exception to raise in its place
    """
    context = {'operation': operation, 'exchange_error': type(exc).__name__}
    if isinstance(exc, asyncio.TimeoutError):
        return ExchangeTimeoutError(f"{operation} timed out", context)
    if isinstance(exc, (ccxt.RateLimitExceeded, ccxt.DDoSProtection)):
        return RateLimitError(f"{operation} rate limited by exchange: {exc}", context=context)
    if isinstance(exc, ccxt.RequestTimeout):
        return ExchangeTimeoutError(f"{operation} timed out: {exc}", context)
    if isinstance(exc, ccxt.NetworkError):
        return NetworkError(f"{operation} network error: {exc}", context)
    if isinstance(exc, _TERMINAL_CCXT_ERRORS):
        return ExchangeAPIError(f"{operation} rejected: {exc}", code=type(exc).__name__,
                                terminal=True, context=context)
    if isinstance(exc, ccxt.ExchangeError):
        return ExchangeAPIError(f"{operation} failed: {exc}", code=type(exc).__name__, context=context)
    return exc


def report_from_ccxt(order: Dict[str, Any]) -> OrderReport:
    """Normalize a ccxt unified order structure."""
    info = order.get('info') or {}
    raw_status = str(info.get('status', '')).upper()
    status = _RAW_STATUS.get(raw_status)
    if status is None:
        status = _CCXT_STATUS.get(str(order.get('status', 'open')).lower(), OrderStatus.NEW)
    filled = float(order.get('filled') or 0.0)
    if status == OrderStatus.NEW and filled > 0:
        status = OrderStatus.PARTIALLY_FILLED

    fee = order.get('fee') or {}
    timestamp = order.get('lastTradeTimestamp') or order.get('timestamp')
    return OrderReport(
        exchange_order_id=str(order.get('id')),
        symbol=order.get('symbol'),
        status=status,
        executed_quantity=filled,
        average_price=order.get('average') or order.get('price'),
        commission=float(fee.get('cost') or 0.0),
        client_order_id=order.get('clientOrderId'),
        timestamp=(timestamp / 1000.0) if timestamp else time.time(),
        raw=info,
    )


class CcxtExchangeGateway(ExchangeGateway):
    """
    ccxt-backed gateway.

    Usage:
        gw = CcxtExchangeGateway('binance', api_key=..., secret=..., testnet=True)
        candles = await gw.get_candles('BTC/USDT', '1h', 100)
        await gw.close()

    Streaming is provided by polling tasks so the gateway works on any ccxt
    exchange; each subscription is one task, cancelled by close().
    """

    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        exchange_id: str,
        api_key: Optional[str] = None,
        secret: Optional[str] = None,
        testnet: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = 5.0,
        client: Any = None,
    ):
        """
        Initialize gateway.

        Args:
            exchange_id: ccxt exchange id (e.g. 'binance')
            api_key: API key (optional for public data)
            secret: API secret
            testnet: Use the exchange sandbox
            timeout: Per-request timeout in seconds
            poll_interval: Polling interval for streaming subscriptions
            client: Preconstructed ccxt client (tests)
        """
        self.exchange_id = exchange_id
        self.timeout = timeout
        self.poll_interval = poll_interval
        if client is None:
            ex_cls = getattr(ccxt_async, exchange_id, None)
            if ex_cls is None:
                raise ValidationError(f"Exchange '{exchange_id}' not available in ccxt.async_support")
            client = ex_cls({'apiKey': api_key, 'secret': secret, 'enableRateLimit': True})
            if testnet:
                client.set_sandbox_mode(True)
        self._client = client
        self._stream_tasks: List[asyncio.Task] = []
        self._closed = False
        logger.info(f"CcxtExchangeGateway initialized: {exchange_id} (testnet={testnet})")

    async def _call(self, operation: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout)
        except (asyncio.TimeoutError, ccxt.BaseError) as exc:
            mapped = map_ccxt_exception(exc, operation)
            logger.warning(f"Exchange call {operation} failed: {mapped}")
            raise mapped from exc

    # -----------------------
    # Market data
    # -----------------------
    async def get_candles(self, symbol: str, interval: str = "1h", limit: int = 100) -> List[Candle]:
        rows = await self._call('get_candles', self._client.fetch_ohlcv, symbol, interval, None, limit)
        candles = [Candle.from_row(r) for r in rows or []]
        candles.sort(key=lambda c: c.timestamp)
        return candles

    async def get_ticker(self, symbol: str) -> Ticker:
        raw = await self._call('get_ticker', self._client.fetch_ticker, symbol)
        return Ticker(
            symbol=symbol,
            last=float(raw.get('last') or raw.get('close') or 0.0),
            bid=raw.get('bid'),
            ask=raw.get('ask'),
            volume=float(raw.get('quoteVolume') or raw.get('baseVolume') or 0.0),
            timestamp=(raw['timestamp'] / 1000.0) if raw.get('timestamp') else time.time(),
        )

    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook:
        raw = await self._call('get_order_book', self._client.fetch_order_book, symbol, depth)
        return OrderBook(
            symbol=symbol,
            bids=[(float(p), float(a)) for p, a, *_ in raw.get('bids', [])],
            asks=[(float(p), float(a)) for p, a, *_ in raw.get('asks', [])],
        )

    async def get_account_info(self) -> AccountInfo:
        raw = await self._call('get_account_info', self._client.fetch_balance)
        balances = {}
        for asset, total in (raw.get('total') or {}).items():
            balances[asset] = {
                'free': float((raw.get('free') or {}).get(asset) or 0.0),
                'used': float((raw.get('used') or {}).get(asset) or 0.0),
                'total': float(total or 0.0),
            }
        return AccountInfo(balances=balances)

    # -----------------------
    # Orders
    # -----------------------
    async def place_order(self, request: OrderRequest) -> OrderReport:
        params: Dict[str, Any] = {'clientOrderId': request.client_order_id}
        if request.order_type.requires_stop_price:
            params['stopPrice'] = request.stop_price
        if request.order_type.requires_price:
            params['timeInForce'] = request.time_in_force.value
        raw = await self._call(
            'place_order',
            self._client.create_order,
            request.symbol,
            _CCXT_ORDER_TYPE[request.order_type],
            request.side.value,
            request.quantity,
            request.price,
            params,
        )
        report = report_from_ccxt(raw)
        report.client_order_id = report.client_order_id or request.client_order_id
        return report

    async def cancel_order(self, symbol: str, order_id: str) -> OrderReport:
        raw = await self._call('cancel_order', self._client.cancel_order, order_id, symbol)
        report = report_from_ccxt(raw)
        if report.status in (OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED):
            report.status = OrderStatus.PENDING_CANCEL
        return report

    async def get_order(self, symbol: str, order_id: str) -> OrderReport:
        raw = await self._call('get_order', self._client.fetch_order, order_id, symbol)
        return report_from_ccxt(raw)

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderReport]:
        raw = await self._call('get_open_orders', self._client.fetch_open_orders, symbol)
        return [report_from_ccxt(o) for o in raw or []]

    # -----------------------
    # Streaming (polling based)
    # -----------------------
    async def subscribe_account(self, callback: AccountCallback, source: Optional[ExchangeGateway] = None) -> None:
        """
        Poll open orders and report every status/quantity change.

        Orders that leave the open set are fetched once more so their final
        (filled/canceled) report is delivered, then forgotten.
        """
        fetcher = source or self
        # exchange order id -> (symbol, status, executed quantity)
        seen: Dict[str, Tuple[str, OrderStatus, float]] = {}

        async def _poll():
            while not self._closed:
                try:
                    await _poll_once()
                except (NetworkError, ExchangeTimeoutError, RateLimitError, ExchangeAPIError) as e:
                    logger.warning(f"Account stream poll failed: {e}")
                await asyncio.sleep(self.poll_interval)

        async def _poll_once():
            open_ids = set()
            for report in await fetcher.get_open_orders():
                key = report.exchange_order_id
                open_ids.add(key)
                state = (report.symbol, report.status, report.executed_quantity)
                if seen.get(key) != state:
                    seen[key] = state
                    callback(report)

            for key in [k for k in seen if k not in open_ids]:
                try:
                    report = await fetcher.get_order(seen[key][0], key)
                except (NetworkError, ExchangeTimeoutError, RateLimitError) as e:
                    logger.warning(f"Final status fetch for order {key} failed, retrying next poll: {e}")
                    continue
                except ExchangeAPIError as e:
                    logger.warning(f"Final status of order {key} unavailable: {e}")
                    del seen[key]
                    continue
                del seen[key]
                callback(report)

        self._stream_tasks.append(asyncio.create_task(_poll(), name="account-stream"))

    async def subscribe_market(self, symbol: str, callback: MarketCallback,
                               source: Optional[ExchangeGateway] = None) -> None:
        fetcher = source or self

        async def _poll():
            while not self._closed:
                try:
                    callback(await fetcher.get_ticker(symbol))
                except (NetworkError, ExchangeTimeoutError, RateLimitError, ExchangeAPIError) as e:
                    logger.warning(f"Market stream poll failed for {symbol}: {e}")
                await asyncio.sleep(self.poll_interval)

        self._stream_tasks.append(asyncio.create_task(_poll(), name=f"market-stream-{symbol}"))

    async def keepalive(self) -> None:
        if self._client.has.get('fetchTime'):
            await self._call('keepalive', self._client.fetch_time)
        else:
            await self._call('keepalive', self._client.load_markets)

    async def close(self) -> None:
        """Cancel streams and close the client (idempotent)."""
        if self._closed:
            return
        self._closed = True
        for task in self._stream_tasks:
            task.cancel()
        await asyncio.gather(*self._stream_tasks, return_exceptions=True)
        self._stream_tasks.clear()
        await self._client.close()
        logger.info(f"CcxtExchangeGateway closed: {self.exchange_id}")


class RateLimitedGateway(ExchangeGateway):
    """
    Gateway wrapper that waits on the rate limiter before every call.

    Order placement/cancellation use the 'orders' category, subscriptions the
    'websocket' category, everything else 'rest'.
    """

    def __init__(self, gateway: ExchangeGateway, rate_limiter: Any, identifier: str = "default"):
        self._gateway = gateway
        self._limiter = rate_limiter
        self.identifier = identifier

    @property
    def inner(self) -> ExchangeGateway:
        return self._gateway

    async def _gate(self, category: str) -> None:
        await self._limiter.wait_for_limit(category, self.identifier)

    async def get_candles(self, symbol: str, interval: str = "1h", limit: int = 100) -> List[Candle]:
        await self._gate('rest')
        return await self._gateway.get_candles(symbol, interval, limit)

    async def get_ticker(self, symbol: str) -> Ticker:
        await self._gate('rest')
        return await self._gateway.get_ticker(symbol)

    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook:
        await self._gate('rest')
        return await self._gateway.get_order_book(symbol, depth)

    async def get_account_info(self) -> AccountInfo:
        await self._gate('rest')
        return await self._gateway.get_account_info()

    async def place_order(self, request: OrderRequest) -> OrderReport:
        await self._gate('orders')
        return await self._gateway.place_order(request)

    async def cancel_order(self, symbol: str, order_id: str) -> OrderReport:
        await self._gate('orders')
        return await self._gateway.cancel_order(symbol, order_id)

    async def get_order(self, symbol: str, order_id: str) -> OrderReport:
        await self._gate('rest')
        return await self._gateway.get_order(symbol, order_id)

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderReport]:
        await self._gate('rest')
        return await self._gateway.get_open_orders(symbol)

    async def subscribe_account(self, callback: AccountCallback, source: Optional[ExchangeGateway] = None) -> None:
        await self._gate('websocket')
        await self._gateway.subscribe_account(callback, source=source or self)

    async def subscribe_market(self, symbol: str, callback: MarketCallback,
                               source: Optional[ExchangeGateway] = None) -> None:
        await self._gate('websocket')
        await self._gateway.subscribe_market(symbol, callback, source=source or self)

    async def keepalive(self) -> None:
        await self._gate('websocket')
        await self._gateway.keepalive()

    async def close(self) -> None:
        await self._gateway.close()
