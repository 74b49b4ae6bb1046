"""
test_main.py - Tests for CLI parsing and the application wiring
"""

import json

import pytest
import yaml

from core.config import EngineConfig
from main import TradingApplication, build_parser, main, overrides_from_args


def _write_config(tmp_path, **extra):
    config = {
        'environment': 'test',
        'monitoring': {'console': False},
        'portfolios': [
            {'name': 'Main', 'budget': 5000.0, 'max_per_symbol': 50.0, 'symbols': {'BTC/USDT': 30.0}},
        ],
    }
    config.update(extra)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config))
    return path


class TestCommandLine:
    """Test flag parsing and override translation."""

    def test_defaults_produce_no_overrides(self):
        args = build_parser().parse_args([])
        assert args.config == 'core/config.yaml'
        assert overrides_from_args(args) == {}

    def test_flags_become_overrides(self):
        args = build_parser().parse_args(['-e', 'paper', '--exchange-id', 'kraken', '--log-level', 'DEBUG',
                                          '--auto-trading', '--api'])
        assert overrides_from_args(args) == {
            'environment': 'paper',
            'exchange': {'id': 'kraken'},
            'monitoring': {'log_level': 'DEBUG'},
            'trading': {'auto_trading': True},
            'api': {'enabled': True},
        }

    def test_unknown_environment_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['-e', 'staging'])

    def test_invalid_configuration_exit_code(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({'decision': {'min_confidence': 5}}))
        assert main(['-c', str(path)]) == 2


class TestTradingApplication:
    """Test setup, single-cycle runs and snapshots."""

    @pytest.mark.asyncio
    async def test_run_once_seeds_portfolios_and_saves_snapshot(self, tmp_path):
        snapshot = tmp_path / "state.json"
        config = EngineConfig.load(str(_write_config(tmp_path)))
        app = TradingApplication(config, snapshot_path=str(snapshot), run_once=True)

        assert await app.run() == 0

        portfolios = app.engine.portfolios.list_portfolios()
        assert [p.name for p in portfolios] == ['Main']
        assert list(portfolios[0].symbols) == ['BTC/USDT']
        # no candles offline, so the symbol fails analysis without aborting the run
        assert app.engine.stats['errors'] == 1
        assert not app.engine.status()['running']

        saved = json.loads(snapshot.read_text())
        assert [p['name'] for p in saved['portfolios']] == ['Main']

    @pytest.mark.asyncio
    async def test_snapshot_is_not_seeded_twice(self, tmp_path):
        snapshot = tmp_path / "state.json"
        config = EngineConfig.load(str(_write_config(tmp_path)))
        await TradingApplication(config, snapshot_path=str(snapshot), run_once=True).run()

        app = TradingApplication(config, snapshot_path=str(snapshot), run_once=True)
        await app.run()
        assert len(app.engine.portfolios.list_portfolios()) == 1

    @pytest.mark.asyncio
    async def test_live_mode_requires_credentials(self, tmp_path, monkeypatch):
        monkeypatch.delenv('BINANCE_API_KEY', raising=False)
        monkeypatch.delenv('BINANCE_API_SECRET', raising=False)
        path = _write_config(tmp_path, environment='live',
                             exchange={'id': 'binance', 'env_file': str(tmp_path / "missing.env")})
        app = TradingApplication(EngineConfig.load(str(path)), run_once=True)

        assert await app.run() == 2
        assert app.engine is None
