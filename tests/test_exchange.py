"""
test_exchange.py - Tests for the exchange gateways (ccxt mapping, rate gating, paper simulation)
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import ccxt
import pytest

from core.errors import (
    ExchangeAPIError,
    ExchangeTimeoutError,
    NetworkError,
    RateLimitError,
)
from data.exchange import (
    CcxtExchangeGateway,
    OrderBook,
    RateLimitedGateway,
    Ticker,
    map_ccxt_exception,
    report_from_ccxt,
)
from data.paper_exchange import PaperExchangeGateway
from execution.orders import OrderRequest, OrderSide, OrderStatus, OrderType
from conftest import build_candles


class TestMarketDataModels:
    """Test ticker and order book helpers."""

    def test_ticker_spread(self):
        ticker = Ticker('BTC/USDT', last=100.0, bid=99.0, ask=101.0)
        assert ticker.spread == pytest.approx(0.02)
        assert Ticker('BTC/USDT', last=100.0).spread is None

    def test_order_book_liquidity(self):
        book = OrderBook('BTC/USDT', bids=[(99.0, 2.0)], asks=[(101.0, 1.0)])
        assert book.best_bid == 99.0
        assert book.best_ask == 101.0
        assert book.liquidity("bids") == 198.0
        assert book.liquidity() == 299.0


class TestCcxtMapping:
    """Test ccxt exception and order mapping."""

    def test_exception_mapping(self):
        assert isinstance(map_ccxt_exception(ccxt.RateLimitExceeded("slow down"), "op"), RateLimitError)
        assert isinstance(map_ccxt_exception(ccxt.RequestTimeout("late"), "op"), ExchangeTimeoutError)
        assert isinstance(map_ccxt_exception(ccxt.NetworkError("reset"), "op"), NetworkError)

        funds = map_ccxt_exception(ccxt.InsufficientFunds("poor"), "op")
        assert isinstance(funds, ExchangeAPIError)
        assert funds.terminal
        assert funds.code == "InsufficientFunds"

        generic = map_ccxt_exception(ccxt.ExchangeError("500"), "op")
        assert isinstance(generic, ExchangeAPIError)
        assert not generic.terminal

    def test_report_from_ccxt_partial(self):
        report = report_from_ccxt({
            'id': 42, 'symbol': 'BTC/USDT', 'status': 'open', 'filled': 0.5,
            'average': 100.0, 'fee': {'cost': 0.05}, 'clientOrderId': 'te_x', 'timestamp': 1_000_000,
        })
        assert report.exchange_order_id == "42"
        assert report.status == OrderStatus.PARTIALLY_FILLED
        assert report.commission == 0.05
        assert report.timestamp == 1000.0

    def test_report_prefers_raw_status(self):
        report = report_from_ccxt({'id': '1', 'symbol': 'BTC/USDT', 'status': 'canceled',
                                   'info': {'status': 'EXPIRED'}})
        assert report.status == OrderStatus.EXPIRED


class TestCcxtExchangeGateway:
    """Test the ccxt gateway against a mocked client."""

    def _gateway(self, client):
        return CcxtExchangeGateway('binance', client=client, timeout=1.0)

    @pytest.mark.asyncio
    async def test_candles_sorted(self):
        client = Mock()
        client.fetch_ohlcv = AsyncMock(return_value=[
            [2000, 1, 2, 0.5, 1.5, 10],
            [1000, 1, 2, 0.5, 1.2, 10],
        ])
        candles = await self._gateway(client).get_candles('BTC/USDT', '1h', 2)
        assert [c.timestamp for c in candles] == [1000, 2000]
        client.fetch_ohlcv.assert_awaited_once_with('BTC/USDT', '1h', None, 2)

    @pytest.mark.asyncio
    async def test_errors_are_mapped(self):
        client = Mock()
        client.fetch_ticker = AsyncMock(side_effect=ccxt.RequestTimeout("late"))
        with pytest.raises(ExchangeTimeoutError):
            await self._gateway(client).get_ticker('BTC/USDT')

    @pytest.mark.asyncio
    async def test_place_order_passes_client_id(self):
        client = Mock()
        client.create_order = AsyncMock(return_value={
            'id': 'ex1', 'symbol': 'BTC/USDT', 'status': 'closed', 'filled': 1.0, 'average': 100.0,
        })
        request = OrderRequest('BTC/USDT', OrderSide.BUY, OrderType.MARKET, 1.0)
        report = await self._gateway(client).place_order(request)

        args = client.create_order.await_args.args
        assert args[1] == 'market'
        assert args[2] == 'buy'
        assert args[5]['clientOrderId'] == request.client_order_id
        assert report.status == OrderStatus.FILLED
        assert report.client_order_id == request.client_order_id

    @pytest.mark.asyncio
    async def test_balance_mapping_and_close(self):
        client = Mock()
        client.fetch_balance = AsyncMock(return_value={
            'total': {'USDT': 100.0}, 'free': {'USDT': 80.0}, 'used': {'USDT': 20.0}})
        client.close = AsyncMock()
        gateway = self._gateway(client)
        account = await gateway.get_account_info()
        assert account.free('USDT') == 80.0
        assert account.free('BTC') == 0.0

        await gateway.close()
        await gateway.close()
        client.close.assert_awaited_once()


class TestRateLimitedGateway:
    """Test category gating."""

    @pytest.mark.asyncio
    async def test_categories(self):
        inner = Mock()
        inner.place_order = AsyncMock(return_value="report")
        inner.get_ticker = AsyncMock(return_value="ticker")
        limiter = Mock()
        limiter.wait_for_limit = AsyncMock()
        gateway = RateLimitedGateway(inner, limiter, identifier="acct")

        assert await gateway.place_order("req") == "report"
        assert await gateway.get_ticker("BTC/USDT") == "ticker"
        calls = [c.args for c in limiter.wait_for_limit.await_args_list]
        assert calls == [('orders', 'acct'), ('rest', 'acct')]
        assert gateway.inner is inner

    @pytest.mark.asyncio
    async def test_account_stream_polls_are_gated_and_final_status_reported(self):
        polls = []

        async def fetch_open_orders(symbol):
            polls.append(symbol)
            if len(polls) == 1:
                return [{'id': 'ex1', 'symbol': 'BTC/USDT', 'status': 'open', 'filled': 0.0}]
            return []

        client = Mock()
        client.fetch_open_orders = AsyncMock(side_effect=fetch_open_orders)
        client.fetch_order = AsyncMock(return_value={
            'id': 'ex1', 'symbol': 'BTC/USDT', 'status': 'closed', 'filled': 1.0, 'average': 100.0,
        })
        client.close = AsyncMock()
        limiter = Mock()
        limiter.wait_for_limit = AsyncMock()
        inner = CcxtExchangeGateway('binance', client=client, timeout=1.0, poll_interval=0.01)
        gateway = RateLimitedGateway(inner, limiter)
        reports = []

        await gateway.subscribe_account(reports.append)
        for _ in range(100):
            await asyncio.sleep(0.01)
            if len(reports) >= 2 and len(polls) >= 4:
                break
        await gateway.close()

        assert [r.status for r in reports] == [OrderStatus.NEW, OrderStatus.FILLED]
        assert reports[1].executed_quantity == 1.0
        client.fetch_order.assert_awaited_once_with('ex1', 'BTC/USDT')
        gated = [c.args for c in limiter.wait_for_limit.await_args_list]
        assert gated[0] == ('websocket', 'default')
        # every open-orders poll and the final status fetch went through the limiter
        assert gated.count(('rest', 'default')) >= len(polls) + 1


class TestPaperExchangeGateway:
    """Test the simulated fill model."""

    @pytest.mark.asyncio
    async def test_market_buy_fills_with_slippage_and_fee(self):
        gateway = PaperExchangeGateway(initial_balances={'USDT': 1000.0}, fee_rate=0.001,
                                       slippage_bps=10, half_spread=0.0)
        gateway.set_price('BTC/USDT', 100.0)
        reports = []
        await gateway.subscribe_account(reports.append)

        report = await gateway.place_order(OrderRequest('BTC/USDT', OrderSide.BUY, OrderType.MARKET, 2.0))

        assert report.status == OrderStatus.FILLED
        assert report.average_price == pytest.approx(100.1)
        account = await gateway.get_account_info()
        assert account.free('BTC') == 2.0
        assert account.free('USDT') == pytest.approx(1000.0 - 200.2 - 0.2002)
        assert len(reports) == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_terminal(self):
        gateway = PaperExchangeGateway(initial_balances={'USDT': 10.0})
        gateway.set_price('BTC/USDT', 100.0)
        with pytest.raises(ExchangeAPIError) as exc_info:
            await gateway.place_order(OrderRequest('BTC/USDT', OrderSide.BUY, OrderType.MARKET, 1.0))
        assert exc_info.value.terminal
        assert await gateway.get_open_orders() == []

    @pytest.mark.asyncio
    async def test_limit_order_rests_until_crossed(self):
        gateway = PaperExchangeGateway(initial_balances={'USDT': 1000.0})
        gateway.set_price('ETH/USDT', 100.0)
        report = await gateway.place_order(
            OrderRequest('ETH/USDT', OrderSide.BUY, OrderType.LIMIT, 1.0, price=95.0))
        assert report.status == OrderStatus.NEW
        assert len(await gateway.get_open_orders('ETH/USDT')) == 1

        gateway.set_price('ETH/USDT', 94.0)
        filled = await gateway.get_order('ETH/USDT', report.exchange_order_id)
        assert filled.status == OrderStatus.FILLED
        assert filled.average_price == 95.0

    @pytest.mark.asyncio
    async def test_stop_loss_triggers_on_fall(self):
        gateway = PaperExchangeGateway(initial_balances={'USDT': 0.0, 'BTC': 1.0})
        gateway.set_price('BTC/USDT', 100.0)
        report = await gateway.place_order(
            OrderRequest('BTC/USDT', OrderSide.SELL, OrderType.STOP_LOSS, 1.0, stop_price=90.0))
        assert report.status == OrderStatus.NEW
        gateway.set_price('BTC/USDT', 89.0)
        assert (await gateway.get_order('BTC/USDT', report.exchange_order_id)).status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_cancel(self):
        gateway = PaperExchangeGateway()
        gateway.set_price('BTC/USDT', 100.0)
        report = await gateway.place_order(
            OrderRequest('BTC/USDT', OrderSide.BUY, OrderType.LIMIT, 1.0, price=50.0))
        canceled = await gateway.cancel_order('BTC/USDT', report.exchange_order_id)
        assert canceled.status == OrderStatus.CANCELED
        with pytest.raises(ExchangeAPIError):
            await gateway.cancel_order('BTC/USDT', report.exchange_order_id)

    @pytest.mark.asyncio
    async def test_offline_candles_and_depth(self):
        gateway = PaperExchangeGateway()
        gateway.set_candles('BTC/USDT', build_candles([100.0, 101.0, 102.0]))
        candles = await gateway.get_candles('BTC/USDT', limit=2)
        assert [c.close for c in candles] == [101.0, 102.0]
        ticker = await gateway.get_ticker('BTC/USDT')
        assert ticker.last == 102.0
        book = await gateway.get_order_book('BTC/USDT', depth=5)
        assert len(book.bids) == 5
        assert book.best_bid < book.best_ask

    @pytest.mark.asyncio
    async def test_unknown_symbol(self):
        gateway = PaperExchangeGateway()
        with pytest.raises(ExchangeAPIError):
            await gateway.get_ticker('DOGE/USDT')

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            PaperExchangeGateway(fee_rate=-0.1)
