"""
main.py - Trading Engine Entry Point

Builds the engine from configuration and runs it until SIGINT/SIGTERM.
This file contains ONLY wiring - no analysis, decision, risk or execution logic.

Wiring order:
1. Core (config, event bus)
2. Monitoring (logging)
3. Data (exchange gateway behind the rate limiter)
4. Engine (analysis, decisions, risk, execution, portfolios)
5. Interfaces (optional sentiment webhook / read API)

Supports: paper/testnet/live/test modes with graceful shutdown.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

from core.config import EngineConfig, Environment, load_credentials
from core.errors import ConfigurationError, TradingEngineError
from core.events import EventBus
from core.trading_engine import TradingEngine
from data.exchange import CcxtExchangeGateway, RateLimitedGateway
from data.paper_exchange import PaperExchangeGateway
from execution.rate_limiter import RateLimiter
from interfaces.api import create_app, serve
from monitoring.logger import LoggerManager
from storage.repository import InMemoryRepository


logger = logging.getLogger(__name__)


class TradingApplication:
    """Owns the configured engine and its optional API server."""

    def __init__(self, config: EngineConfig, snapshot_path: Optional[str] = None, run_once: bool = False):
        self.config = config
        self.snapshot_path = snapshot_path
        self.run_once = run_once
        self.logger_mgr: Optional[LoggerManager] = None
        self.repository: Optional[InMemoryRepository] = None
        self.engine: Optional[TradingEngine] = None
        self._api_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    # -----------------------
    # Setup
    # -----------------------

    def _build_gateway(self, rate_limiter: RateLimiter):
        exchange = self.config.section('exchange')
        environment = self.config.environment
        if environment == Environment.LIVE or environment == Environment.TESTNET:
            credentials = load_credentials(exchange['id'], exchange.get('env_file'))
            if not credentials['api_key'] or not credentials['secret']:
                raise ConfigurationError(f"{environment.value} mode requires {exchange['id'].upper()}_API_KEY "
                                         f"and {exchange['id'].upper()}_API_SECRET")
            inner = CcxtExchangeGateway(
                exchange['id'],
                api_key=credentials['api_key'],
                secret=credentials['secret'],
                testnet=environment == Environment.TESTNET or exchange.get('testnet', False),
                timeout=exchange.get('timeout', 10.0),
            )
        else:
            budget = sum(p.get('budget', 0) for p in self.config.data.get('portfolios') or [])
            market_data = None
            if environment == Environment.PAPER:
                market_data = CcxtExchangeGateway(exchange['id'], timeout=exchange.get('timeout', 10.0))
            inner = PaperExchangeGateway(market_data=market_data, initial_balances={'USDT': budget or 100000.0})
        logger.info(f"Exchange gateway: {type(inner).__name__} ({environment.value})")
        return RateLimitedGateway(inner, rate_limiter)

    def _seed_portfolios(self) -> None:
        """Create configured portfolios missing from the repository."""
        manager = self.engine.portfolios
        existing = {p.name.lower() for p in manager.list_portfolios()}
        for entry in self.config.data.get('portfolios') or []:
            if entry['name'].lower() in existing:
                continue
            portfolio = manager.create_portfolio(
                name=entry['name'],
                budget=entry['budget'],
                max_per_symbol=entry.get('max_per_symbol', 100),
                currency=entry.get('currency', 'USDT'),
                constraints=entry.get('constraints'),
                description=entry.get('description'),
            )
            for symbol, allocation in (entry.get('symbols') or {}).items():
                manager.add_symbol(portfolio.id, symbol, allocation)

    async def setup(self) -> None:
        self.logger_mgr = LoggerManager.from_config(self.config.section('monitoring'))
        logger.info("=" * 80)
        logger.info(f"TRADING ENGINE - {self.config.environment.value.upper()} MODE")
        logger.info("=" * 80)

        limits = self.config.section('rate_limits')
        rate_limiter = RateLimiter(categories=limits.get('categories'), max_wait=limits.get('max_wait', 30.0))
        event_bus = EventBus(logger_manager=self.logger_mgr)
        self.repository = InMemoryRepository(
            default_ttl=self.config.section('cache').get('default_ttl', 300),
            snapshot_path=self.snapshot_path,
        )
        if self.snapshot_path:
            self.repository.load_snapshot()

        self.engine = TradingEngine.from_config(
            self.config,
            self._build_gateway(rate_limiter),
            repository=self.repository,
            event_bus=event_bus,
            rate_limiter=rate_limiter,
            logger_manager=self.logger_mgr,
        )
        self.engine.portfolios.load()
        self._seed_portfolios()
        self.logger_mgr.log_event("engine.setup", {
            'environment': self.config.environment.value,
            'portfolios': len(self.engine.portfolios.list_portfolios()),
        })

    # -----------------------
    # Run / shutdown
    # -----------------------

    def request_stop(self) -> None:
        self._stop.set()

    async def run(self) -> int:
        try:
            await self.setup()
            await self.engine.start()

            if self.run_once:
                for portfolio in self.engine.portfolios.list_portfolios(active_only=True):
                    decisions = await self.engine.run_decision_cycle(portfolio.id)
                    for decision in decisions:
                        logger.info(f"{portfolio.name} {decision.symbol}: {decision.action.value} "
                                    f"({decision.confidence:.2f}) - {decision.reasoning}")
                return 0

            api = self.config.section('api')
            if api.get('enabled'):
                app = create_app(self.engine, self.logger_mgr)
                self._api_task = asyncio.create_task(serve(app, api['host'], api['port']), name="api-server")
                logger.info(f"API listening on {api['host']}:{api['port']}")

            await self._stop.wait()
            return 0
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e} {e.reasons}")
            return 2
        except TradingEngineError as e:
            logger.error(f"Fatal engine error: {e}", exc_info=True)
            return 1
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("INITIATING GRACEFUL SHUTDOWN")
        if self._api_task is not None:
            self._api_task.cancel()
            await asyncio.gather(self._api_task, return_exceptions=True)
        if self.engine is not None:
            logger.info(f"Final status: {self.engine.status()['engine']}")
            await self.engine.shutdown()
        if self.repository is not None and self.snapshot_path:
            self.repository.save_snapshot()
        if self.logger_mgr is not None:
            self.logger_mgr.log_event("engine.shutdown", {})
            self.logger_mgr.close()
        logger.info("SHUTDOWN COMPLETE")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Autonomous crypto trading engine")
    parser.add_argument('-c', '--config', default='core/config.yaml', help='Path to config YAML')
    parser.add_argument('-e', '--environment', choices=[e.value for e in Environment], help='Override environment')
    parser.add_argument('--exchange-id', dest='exchange_id', help='Override exchange id')
    parser.add_argument('--log-level', dest='log_level', help='Override log level (DEBUG/INFO/WARNING/ERROR)')
    parser.add_argument('--auto-trading', dest='auto_trading', action='store_true', default=None,
                        help='Start automation for every active portfolio')
    parser.add_argument('--api', dest='api', action='store_true', default=None, help='Serve the webhook/read API')
    parser.add_argument('--snapshot', help='JSON file used to persist portfolios, trades and decisions')
    parser.add_argument('--once', dest='once', action='store_true', help='Run a single decision cycle and exit')
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI flags into configuration overrides."""
    overrides: Dict[str, Any] = {}
    if args.environment:
        overrides['environment'] = args.environment
    if args.exchange_id:
        overrides.setdefault('exchange', {})['id'] = args.exchange_id
    if args.log_level:
        overrides.setdefault('monitoring', {})['log_level'] = args.log_level
    if args.auto_trading is not None:
        overrides.setdefault('trading', {})['auto_trading'] = True
    if args.api is not None:
        overrides.setdefault('api', {})['enabled'] = True
    return overrides


async def _main(args: argparse.Namespace) -> int:
    config = EngineConfig.load(args.config, overrides_from_args(args))
    app = TradingApplication(config, snapshot_path=args.snapshot, run_once=args.once)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.request_stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(app.request_stop))
    return await app.run()


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_main(args))
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        for reason in e.reasons:
            logger.error(f"  - {reason}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
