"""
paper_exchange.py - Simulated Exchange Gateway

In-process ExchangeGateway that simulates order execution against reference
prices. Market data can come from a real gateway (paper trading on live
prices) or be set directly (offline runs and tests).

Fill model:
- MARKET orders fill immediately at ask (buy) / bid (sell) plus slippage
- LIMIT orders fill once the price crosses the limit, checked on every query
- STOP_LOSS / TAKE_PROFIT orders trigger when the price crosses stop_price
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from core.errors import ExchangeAPIError, ValidationError
from data.candles import Candle
from data.exchange import (
    AccountCallback,
    AccountInfo,
    ExchangeGateway,
    MarketCallback,
    OrderBook,
    Ticker,
)
from execution.orders import OrderReport, OrderRequest, OrderSide, OrderStatus, OrderType


logger = logging.getLogger(__name__)


@dataclass
class _SimOrder:
    order_id: str
    request: OrderRequest
    status: OrderStatus = OrderStatus.NEW
    executed: float = 0.0
    average_price: Optional[float] = None
    commission: float = 0.0
    updated_at: float = 0.0

    def report(self) -> OrderReport:
        return OrderReport(
            exchange_order_id=self.order_id,
            symbol=self.request.symbol,
            status=self.status,
            executed_quantity=self.executed,
            average_price=self.average_price,
            commission=self.commission,
            client_order_id=self.request.client_order_id,
            timestamp=self.updated_at or time.time(),
        )


class PaperExchangeGateway(ExchangeGateway):
    """
    Simulated exchange.

    Usage:
        gw = PaperExchangeGateway(initial_balances={'USDT': 10000})
        gw.set_price('BTC/USDT', 50000)
        report = await gw.place_order(OrderRequest('BTC/USDT', OrderSide.BUY, OrderType.MARKET, 0.01))
    """

    def __init__(
        self,
        market_data: Optional[ExchangeGateway] = None,
        initial_balances: Optional[Dict[str, float]] = None,
        fee_rate: float = 0.001,
        slippage_bps: float = 5.0,
        half_spread: float = 0.0005,
    ):
        """
        Initialize paper gateway.

        Args:
            market_data: Optional gateway used for candles/ticker/depth
            initial_balances: Starting free balances per asset
            fee_rate: Commission as a fraction of notional
            slippage_bps: Adverse slippage applied to market fills
            half_spread: Half spread used when synthesizing bid/ask
        """
        if fee_rate < 0 or slippage_bps < 0 or half_spread < 0:
            raise ValueError("fee_rate, slippage_bps and half_spread must be non-negative")
        self._market_data = market_data
        self.fee_rate = fee_rate
        self.slippage_bps = slippage_bps
        self.half_spread = half_spread

        self._lock = threading.RLock()
        self._balances: Dict[str, float] = dict(initial_balances or {'USDT': 100000.0})
        self._prices: Dict[str, float] = {}
        self._candles: Dict[str, List[Candle]] = {}
        self._orders: Dict[str, _SimOrder] = {}
        self._ids = itertools.count(1)
        self._account_callbacks: List[AccountCallback] = []
        self._market_callbacks: Dict[str, List[MarketCallback]] = {}
        self._closed = False

        logger.info(f"PaperExchangeGateway initialized: balances={self._balances}")

    # -----------------------
    # Simulation controls
    # -----------------------
    def set_price(self, symbol: str, price: float) -> None:
        """Set the reference price, re-evaluate resting orders and notify market subscribers."""
        if price <= 0:
            raise ValueError(f"Price must be positive, got {price}")
        with self._lock:
            self._prices[symbol] = float(price)
            callbacks = list(self._market_callbacks.get(symbol, []))
        self._evaluate_resting(symbol)
        ticker = self._synthetic_ticker(symbol)
        for cb in callbacks:
            cb(ticker)

    def set_candles(self, symbol: str, candles: List[Candle]) -> None:
        """Provide candles for offline runs; the last close becomes the price."""
        with self._lock:
            self._candles[symbol] = list(candles)
        if candles:
            self.set_price(symbol, candles[-1].close)

    def _base_quote(self, symbol: str):
        base, _, quote = symbol.partition('/')
        return base, quote or 'USDT'

    def _synthetic_ticker(self, symbol: str) -> Ticker:
        with self._lock:
            price = self._prices.get(symbol)
        if price is None:
            raise ExchangeAPIError(f"No price for {symbol}", code="BadSymbol", terminal=True)
        return Ticker(
            symbol=symbol,
            last=price,
            bid=price * (1 - self.half_spread),
            ask=price * (1 + self.half_spread),
        )

    # -----------------------
    # Market data
    # -----------------------
    async def get_candles(self, symbol: str, interval: str = "1h", limit: int = 100) -> List[Candle]:
        if self._market_data is not None:
            candles = await self._market_data.get_candles(symbol, interval, limit)
            if candles:
                with self._lock:
                    self._prices[symbol] = candles[-1].close
            return candles
        with self._lock:
            return list(self._candles.get(symbol, []))[-limit:]

    async def get_ticker(self, symbol: str) -> Ticker:
        if self._market_data is not None:
            ticker = await self._market_data.get_ticker(symbol)
            with self._lock:
                self._prices[symbol] = ticker.last
            self._evaluate_resting(symbol)
            return ticker
        return self._synthetic_ticker(symbol)

    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook:
        if self._market_data is not None:
            return await self._market_data.get_order_book(symbol, depth)
        ticker = self._synthetic_ticker(symbol)
        step = ticker.last * self.half_spread
        bids = [(ticker.bid - i * step, 1.0) for i in range(depth)]
        asks = [(ticker.ask + i * step, 1.0) for i in range(depth)]
        return OrderBook(symbol=symbol, bids=bids, asks=asks)

    async def get_account_info(self) -> AccountInfo:
        with self._lock:
            balances = {a: {'free': v, 'used': 0.0, 'total': v} for a, v in self._balances.items()}
        return AccountInfo(balances=balances)

    # -----------------------
    # Orders
    # -----------------------
    async def place_order(self, request: OrderRequest) -> OrderReport:
        if request.quantity <= 0:
            raise ExchangeAPIError("Invalid quantity", code="InvalidOrder", terminal=True)
        if request.order_type.requires_price and not request.price:
            raise ExchangeAPIError("Price required", code="InvalidOrder", terminal=True)
        if request.order_type.requires_stop_price and not request.stop_price:
            raise ExchangeAPIError("Stop price required", code="InvalidOrder", terminal=True)

        with self._lock:
            order = _SimOrder(order_id=f"paper_{next(self._ids)}", request=request, updated_at=time.time())
            self._orders[order.order_id] = order

        if request.order_type == OrderType.MARKET:
            ticker = self._synthetic_ticker(request.symbol) if self._market_data is None \
                else await self._market_data.get_ticker(request.symbol)
            slip = self.slippage_bps / 10000.0
            if request.side == OrderSide.BUY:
                price = (ticker.ask or ticker.last) * (1 + slip)
            else:
                price = (ticker.bid or ticker.last) * (1 - slip)
            self._fill(order, price)
        else:
            self._evaluate_resting(request.symbol)

        logger.info(f"Paper order {order.order_id} {request.side.value} {request.quantity} "
                    f"{request.symbol} -> {order.status.value}")
        return order.report()

    def _fill(self, order: _SimOrder, price: float) -> None:
        base, quote = self._base_quote(order.request.symbol)
        qty = order.request.quantity
        notional = price * qty
        fee = notional * self.fee_rate
        callbacks: List[AccountCallback] = []
        with self._lock:
            if order.status.is_terminal:
                return
            if order.request.side == OrderSide.BUY:
                if self._balances.get(quote, 0.0) < notional + fee:
                    order.status = OrderStatus.REJECTED
                    order.updated_at = time.time()
                    if order.request.order_type == OrderType.MARKET:
                        del self._orders[order.order_id]
                        raise ExchangeAPIError(
                            f"Insufficient {quote} balance for {notional:.2f}",
                            code="InsufficientFunds", terminal=True,
                        )
                    callbacks = list(self._account_callbacks)
                else:
                    self._balances[quote] = self._balances.get(quote, 0.0) - notional - fee
                    self._balances[base] = self._balances.get(base, 0.0) + qty
            else:
                self._balances[base] = self._balances.get(base, 0.0) - qty
                self._balances[quote] = self._balances.get(quote, 0.0) + notional - fee
            if order.status != OrderStatus.REJECTED:
                order.status = OrderStatus.FILLED
                order.executed = qty
                order.average_price = price
                order.commission = fee
                order.updated_at = time.time()
                callbacks = list(self._account_callbacks)
        report = order.report()
        for cb in callbacks:
            cb(report)

    def _evaluate_resting(self, symbol: str) -> None:
        with self._lock:
            price = self._prices.get(symbol)
            resting = [o for o in self._orders.values()
                       if o.request.symbol == symbol and not o.status.is_terminal
                       and o.status != OrderStatus.PENDING_CANCEL]
        if price is None:
            return
        for order in resting:
            req = order.request
            buy = req.side == OrderSide.BUY
            if req.order_type == OrderType.LIMIT:
                if (buy and price <= req.price) or (not buy and price >= req.price):
                    self._fill(order, req.price)
            elif req.order_type in (OrderType.STOP_LOSS, OrderType.STOP_LOSS_LIMIT):
                # Sell stops trigger on a fall, buy stops on a rise
                if (not buy and price <= req.stop_price) or (buy and price >= req.stop_price):
                    self._fill(order, req.price or price)
            elif req.order_type in (OrderType.TAKE_PROFIT, OrderType.TAKE_PROFIT_LIMIT):
                if (not buy and price >= req.stop_price) or (buy and price <= req.stop_price):
                    self._fill(order, req.price or price)

    def _lookup(self, order_id: str) -> _SimOrder:
        with self._lock:
            order = self._orders.get(order_id)
        if order is None:
            raise ExchangeAPIError(f"Order {order_id} not found", code="OrderNotFound", terminal=True)
        return order

    async def cancel_order(self, symbol: str, order_id: str) -> OrderReport:
        order = self._lookup(order_id)
        with self._lock:
            if order.status.is_terminal:
                raise ExchangeAPIError(f"Order {order_id} is {order.status.value}",
                                       code="OrderNotFound", terminal=True)
            order.status = OrderStatus.CANCELED
            order.updated_at = time.time()
            callbacks = list(self._account_callbacks)
        report = order.report()
        for cb in callbacks:
            cb(report)
        return report

    async def get_order(self, symbol: str, order_id: str) -> OrderReport:
        self._evaluate_resting(symbol)
        return self._lookup(order_id).report()

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderReport]:
        with self._lock:
            orders = [o for o in self._orders.values()
                      if not o.status.is_terminal and (symbol is None or o.request.symbol == symbol)]
        return [o.report() for o in orders]

    # -----------------------
    # Streaming
    # -----------------------
    async def subscribe_account(self, callback: AccountCallback, source: Optional[ExchangeGateway] = None) -> None:
        # fills are pushed as they happen; nothing is polled
        with self._lock:
            self._account_callbacks.append(callback)

    async def subscribe_market(self, symbol: str, callback: MarketCallback,
                               source: Optional[ExchangeGateway] = None) -> None:
        if self._market_data is not None:
            # poll through this gateway (or its wrapper) so simulated prices follow the feed
            await self._market_data.subscribe_market(symbol, callback, source=source or self)
            return
        with self._lock:
            self._market_callbacks.setdefault(symbol, []).append(callback)

    async def keepalive(self) -> None:
        if self._closed:
            raise ValidationError("Gateway is closed")

    async def close(self) -> None:
        with self._lock:
            self._closed = True
            self._account_callbacks.clear()
            self._market_callbacks.clear()
        if self._market_data is not None:
            await self._market_data.close()
        logger.info("PaperExchangeGateway closed")
