"""
test_metrics_and_storage.py - Tests for performance metrics and the in-memory repository
"""

from unittest.mock import Mock

import pytest

from core.events import PERFORMANCE_ALERT
from monitoring.metrics import (
    PerformanceTracker,
    compute_metrics,
    loss_streak,
    max_drawdown,
    sharpe_ratio,
)
from portfolio.position_book import ClosedTrade, PositionSide
from storage.repository import InMemoryRepository


def _trade(pnl, symbol='BTC/USDT', portfolio_id='p1', exit_time=2000.0, fees=0.0):
    return ClosedTrade(
        trade_id=f"t{exit_time}", portfolio_id=portfolio_id, symbol=symbol, side=PositionSide.LONG,
        quantity=1.0, entry_price=100.0, exit_price=100.0 + pnl, pnl=pnl, pnl_pct=pnl / 100.0,
        fees=fees, entry_time=exit_time - 60.0, exit_time=exit_time,
    )


class TestMetricHelpers:
    """Test the pure metric computations."""

    def test_max_drawdown(self):
        assert max_drawdown([10.0, -20.0, 5.0], starting_equity=100.0) == pytest.approx(20.0 / 110.0)
        assert max_drawdown([5.0, 5.0]) == 0.0

    def test_sharpe_ratio(self):
        assert sharpe_ratio([0.1]) == 0.0
        assert sharpe_ratio([0.1, 0.1]) == 0.0
        assert sharpe_ratio([0.1, -0.1, 0.3]) == pytest.approx(0.1 / 0.16329931618554522)

    def test_loss_streak(self):
        assert loss_streak([1.0, -1.0, -2.0]) == 2
        assert loss_streak([-1.0, 1.0]) == 0

    def test_compute_metrics(self):
        metrics = compute_metrics([_trade(10.0, fees=1.0), _trade(-5.0), _trade(20.0)], 'p1')
        assert metrics.total_trades == 3
        assert metrics.win_rate == pytest.approx(2 / 3)
        assert metrics.total_pnl == 25.0
        assert metrics.average_win == 15.0
        assert metrics.average_loss == 5.0
        assert metrics.profit_factor == pytest.approx(6.0)
        assert metrics.best_trade == 20.0
        assert metrics.worst_trade == -5.0
        assert metrics.average_duration == 60.0
        assert metrics.total_fees == 1.0

    def test_no_losses_profit_factor_is_zero(self):
        assert compute_metrics([_trade(10.0)]).profit_factor == 0.0
        assert compute_metrics([]).total_trades == 0


class TestPerformanceTracker:
    """Test recording, alerts and equity drawdown."""

    def test_record_and_query(self):
        tracker = PerformanceTracker()
        tracker.record_trade(_trade(10.0, exit_time=1000.0))
        metrics = tracker.record_trade(_trade(-4.0, exit_time=2000.0))
        assert metrics.total_trades == 2
        assert tracker.get_metrics('p1', 'BTC/USDT') is metrics
        assert len(tracker.get_trade_history('p1', 'BTC/USDT', limit=1)) == 1
        assert tracker.get_metrics('p1', 'ETH/USDT') is None

    def test_portfolio_metrics_span_symbols(self):
        tracker = PerformanceTracker()
        tracker.record_trade(_trade(-5.0, 'ETH/USDT', exit_time=3000.0))
        tracker.record_trade(_trade(10.0, 'BTC/USDT', exit_time=1000.0))
        tracker.record_trade(_trade(7.0, 'BTC/USDT', portfolio_id='p2'))

        metrics = tracker.get_portfolio_metrics('p1', starting_equity=1000.0)
        assert metrics.total_trades == 2
        assert metrics.loss_streak == 1
        assert metrics.max_drawdown == pytest.approx(5.0 / 1010.0)
        assert len(tracker.get_all_metrics()) == 3

    def test_loss_streak_alert(self):
        bus = Mock()
        tracker = PerformanceTracker(max_consecutive_losses=2, max_drawdown_alert=1e9, event_bus=bus)
        tracker.record_trade(_trade(-1.0, exit_time=1000.0))
        assert tracker.get_alerts() == []

        tracker.record_trade(_trade(-1.0, exit_time=2000.0))
        alerts = tracker.get_alerts()
        assert [a['type'] for a in alerts] == ['LOSS_STREAK']
        assert bus.emit.call_args.args[0] == PERFORMANCE_ALERT

    def test_low_win_rate_needs_enough_trades(self):
        tracker = PerformanceTracker(min_trades_for_win_rate=3, max_drawdown_alert=1e9,
                                     max_consecutive_losses=100)
        tracker.record_trade(_trade(-1.0, exit_time=1.0))
        tracker.record_trade(_trade(-1.0, exit_time=2.0))
        assert tracker.get_alerts() == []
        tracker.record_trade(_trade(1.0, exit_time=3.0))
        assert tracker.get_alerts()[-1]['type'] == 'LOW_WIN_RATE'

    def test_equity_drawdown(self):
        tracker = PerformanceTracker()
        assert tracker.get_equity_drawdown('p1') == (None, None)
        for equity in (100.0, 120.0, 90.0, 110.0):
            tracker.record_equity('p1', equity)
        dd, dd_pct = tracker.get_equity_drawdown('p1')
        assert dd == pytest.approx(30.0)
        assert dd_pct == pytest.approx(25.0)

    def test_reset_and_from_config(self):
        tracker = PerformanceTracker.from_config({'min_win_rate': 0.6, 'ignored': True})
        assert tracker.min_win_rate == 0.6
        tracker.record_trade(_trade(1.0))
        tracker.reset()
        assert tracker.get_all_metrics() == []


class TestInMemoryRepository:
    """Test records, cache expiry and snapshots."""

    def test_portfolio_records_are_copies(self):
        repo = InMemoryRepository()
        record = {'id': 'p1', 'name': 'Main'}
        repo.save_portfolio(record)
        record['name'] = 'Changed'
        assert repo.get_portfolio('p1')['name'] == 'Main'
        assert repo.delete_portfolio('p1')
        assert not repo.delete_portfolio('p1')

        with pytest.raises(ValueError):
            repo.save_portfolio({'name': 'no id'})

    def test_trades_and_decisions_filtering(self):
        repo = InMemoryRepository()
        for pid in ('p1', 'p2', 'p1'):
            repo.append_trade({'portfolio_id': pid})
            repo.append_decision({'portfolio_id': pid})
        assert len(repo.list_trades('p1')) == 2
        assert len(repo.list_trades(limit=1)) == 1
        assert len(repo.list_decisions('p2')) == 1

    def test_analysis_snapshots(self):
        repo = InMemoryRepository()
        repo.save_analysis('technical', 'BTC/USDT', {'score': 0.5})
        assert repo.get_analysis('technical', 'BTC/USDT') == {'score': 0.5}
        assert repo.get_analysis('sentiment', 'BTC/USDT') is None

    def test_cache_expiry(self, clock):
        repo = InMemoryRepository(default_ttl=10, clock=clock)
        repo.cache_set('a', 1)
        repo.cache_set('b', 2, ttl=100)
        assert repo.cache_get('a') == 1

        clock.advance(10)
        assert repo.cache_get('a') is None
        repo.cache_set('c', 3, ttl=1)
        clock.advance(1)
        assert repo.sweep_cache() == 1
        assert repo.cache_get('b') == 2
        assert repo.cache_delete('b')
        assert repo.get_stats()['cache_entries'] == 0

    def test_snapshot_round_trip(self, tmp_path):
        path = tmp_path / "state" / "repo.json"
        repo = InMemoryRepository(snapshot_path=path)
        repo.save_portfolio({'id': 'p1', 'name': 'Main'})
        repo.append_trade({'portfolio_id': 'p1', 'pnl': 1.0})
        assert repo.save_snapshot() == path

        restored = InMemoryRepository()
        assert restored.load_snapshot(path)
        assert restored.get_portfolio('p1')['name'] == 'Main'
        assert restored.get_stats()['trades'] == 1

    def test_snapshot_paths(self, tmp_path):
        repo = InMemoryRepository()
        with pytest.raises(ValueError):
            repo.save_snapshot()
        assert not repo.load_snapshot(tmp_path / "missing.json")

    def test_invalid_ttl(self):
        with pytest.raises(ValueError):
            InMemoryRepository(default_ttl=0)
