"""
metrics.py - Trade performance tracking for the trading engine.

Responsibilities:
- Record closed trades per (portfolio, symbol) and recompute metrics after each one.
- Win rate, average/total PnL, peak-based drawdown, Sharpe, profit factor,
  best/worst trade, average duration, fees and slippage.
- Raise alerts (high drawdown, low win rate, loss streak) through the event bus.
- Keep per-portfolio equity samples for drawdown reporting.

Design notes:
- Trades are recorded by the engine when a position closes; this module never
  decides when to close anything.
- All public methods are thread-safe.
- Drawdown follows the cumulative PnL curve: (peak - running) / max(peak, 1)
  when no starting equity is known, otherwise relative to the equity peak.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from statistics import mean, pstdev
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from core.events import PERFORMANCE_ALERT
from portfolio.position_book import ClosedTrade


logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetrics:
    """Derived metrics over a set of closed trades. Never edited by hand."""
    portfolio_id: Optional[str]
    symbol: Optional[str]
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    average_pnl: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    profit_factor: float = 0.0
    average_duration: float = 0.0
    total_fees: float = 0.0
    total_slippage: float = 0.0
    loss_streak: int = 0
    last_updated: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'portfolio_id': self.portfolio_id,
            'symbol': self.symbol,
            'total_trades': self.total_trades,
            'winning_trades': self.winning_trades,
            'losing_trades': self.losing_trades,
            'win_rate': self.win_rate,
            'total_pnl': self.total_pnl,
            'average_pnl': self.average_pnl,
            'average_win': self.average_win,
            'average_loss': self.average_loss,
            'best_trade': self.best_trade,
            'worst_trade': self.worst_trade,
            'max_drawdown': self.max_drawdown,
            'sharpe_ratio': self.sharpe_ratio,
            'profit_factor': self.profit_factor,
            'average_duration': self.average_duration,
            'total_fees': self.total_fees,
            'total_slippage': self.total_slippage,
            'loss_streak': self.loss_streak,
            'last_updated': self.last_updated,
        }


@dataclass
class EquitySample:
    ts: float       # epoch seconds
    equity: float


# -----------------------
# Computation helpers
# -----------------------

def max_drawdown(pnls: Sequence[float], starting_equity: Optional[float] = None) -> float:
    """
    Peak-based maximum drawdown as a fraction.

    Args:
        pnls: Trade PnLs in chronological order
        starting_equity: Capital before the first trade; None measures the bare PnL curve
    """
    base = starting_equity or 0.0
    running = base
    peak = base
    worst = 0.0
    for pnl in pnls:
        running += pnl
        if running > peak:
            peak = running
        drawdown = (peak - running) / max(peak, 1.0)
        if drawdown > worst:
            worst = drawdown
    return worst


def sharpe_ratio(returns: Sequence[float]) -> float:
    """Mean over population standard deviation of per-trade returns (risk-free rate 0)."""
    if len(returns) < 2:
        return 0.0
    std = pstdev(returns)
    return mean(returns) / std if std > 0 else 0.0


def loss_streak(pnls: Sequence[float]) -> int:
    """Consecutive losing trades counted back from the latest."""
    streak = 0
    for pnl in reversed(pnls):
        if pnl < 0:
            streak += 1
        else:
            break
    return streak


def compute_metrics(
    trades: Sequence[ClosedTrade],
    portfolio_id: Optional[str] = None,
    symbol: Optional[str] = None,
    starting_equity: Optional[float] = None,
) -> PerformanceMetrics:
    """Build PerformanceMetrics from closed trades in chronological order."""
    metrics = PerformanceMetrics(portfolio_id=portfolio_id, symbol=symbol)
    if not trades:
        return metrics

    pnls = [t.pnl for t in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    gross_loss = abs(sum(losses))

    metrics.total_trades = len(trades)
    metrics.winning_trades = len(wins)
    metrics.losing_trades = len(losses)
    metrics.win_rate = len(wins) / len(trades)
    metrics.total_pnl = sum(pnls)
    metrics.average_pnl = metrics.total_pnl / len(trades)
    metrics.average_win = mean(wins) if wins else 0.0
    metrics.average_loss = abs(mean(losses)) if losses else 0.0
    metrics.best_trade = max(pnls)
    metrics.worst_trade = min(pnls)
    metrics.max_drawdown = max_drawdown(pnls, starting_equity)
    metrics.sharpe_ratio = sharpe_ratio([t.pnl_pct for t in trades])
    metrics.profit_factor = sum(wins) / gross_loss if gross_loss > 0 else 0.0
    metrics.average_duration = mean(t.duration for t in trades)
    metrics.total_fees = sum(t.fees for t in trades)
    metrics.total_slippage = sum(t.slippage for t in trades)
    metrics.loss_streak = loss_streak(pnls)
    return metrics


class PerformanceTracker:
    """
    Thread-safe trade performance tracker.

    Key methods:
      - record_trade(trade) -> PerformanceMetrics
      - get_metrics(portfolio_id, symbol)
      - get_portfolio_metrics(portfolio_id)
      - record_equity(portfolio_id, equity)

    Args:
        max_drawdown_alert: Drawdown fraction that triggers HIGH_DRAWDOWN
        min_win_rate: Win rate below which LOW_WIN_RATE fires
        min_trades_for_win_rate: Trades required before the win-rate alert applies
        max_consecutive_losses: Loss streak that triggers LOSS_STREAK
        history_size: Trades kept per (portfolio, symbol)
        event_bus: Optional EventBus receiving performance.alert events
    """

    def __init__(
        self,
        max_drawdown_alert: float = 0.10,
        min_win_rate: float = 0.5,
        min_trades_for_win_rate: int = 10,
        max_consecutive_losses: int = 5,
        history_size: int = 1000,
        equity_retention: int = 10_000,
        event_bus=None,
    ):
        self.max_drawdown_alert = max_drawdown_alert
        self.min_win_rate = min_win_rate
        self.min_trades_for_win_rate = min_trades_for_win_rate
        self.max_consecutive_losses = max_consecutive_losses
        self.history_size = history_size
        self.equity_retention = equity_retention
        self.event_bus = event_bus

        self._lock = threading.RLock()
        self._trades: Dict[Tuple[str, str], Deque[ClosedTrade]] = {}
        self._metrics: Dict[Tuple[str, str], PerformanceMetrics] = {}
        self._equity: Dict[str, Deque[EquitySample]] = {}
        self._alerts: Deque[Dict[str, Any]] = deque(maxlen=200)

    @classmethod
    def from_config(cls, performance: Dict[str, Any], event_bus=None) -> "PerformanceTracker":
        keys = ('max_drawdown_alert', 'min_win_rate', 'min_trades_for_win_rate',
                'max_consecutive_losses', 'history_size')
        return cls(**{k: performance[k] for k in keys if k in performance}, event_bus=event_bus)

    # -----------------------
    # Recording methods
    # -----------------------
    def record_trade(self, trade: ClosedTrade) -> PerformanceMetrics:
        """Record a closed trade and return the refreshed metrics for its key."""
        key = (trade.portfolio_id, trade.symbol)
        with self._lock:
            history = self._trades.setdefault(key, deque(maxlen=self.history_size))
            history.append(trade)
            metrics = compute_metrics(list(history), trade.portfolio_id, trade.symbol)
            self._metrics[key] = metrics

        logger.info(
            f"Trade recorded {trade.portfolio_id} {trade.symbol}: pnl={trade.pnl:.2f} "
            f"win_rate={metrics.win_rate:.1%} trades={metrics.total_trades}"
        )
        self._check_alerts(metrics)
        return metrics

    def record_equity(self, portfolio_id: str, equity: float, ts: Optional[float] = None) -> None:
        with self._lock:
            samples = self._equity.setdefault(portfolio_id, deque(maxlen=self.equity_retention))
            samples.append(EquitySample(ts=ts if ts is not None else time.time(), equity=float(equity)))

    # -----------------------
    # Alerts
    # -----------------------
    def _check_alerts(self, metrics: PerformanceMetrics) -> List[Dict[str, Any]]:
        alerts = []
        if metrics.max_drawdown > self.max_drawdown_alert:
            alerts.append(('HIGH_DRAWDOWN', f"High drawdown detected: {metrics.max_drawdown:.2%}"))
        if metrics.total_trades >= self.min_trades_for_win_rate and metrics.win_rate < self.min_win_rate:
            alerts.append(('LOW_WIN_RATE', f"Low win rate detected: {metrics.win_rate:.2%}"))
        if metrics.loss_streak >= self.max_consecutive_losses:
            alerts.append(('LOSS_STREAK', f"Loss streak detected: {metrics.loss_streak} consecutive losses"))

        emitted = []
        for alert_type, message in alerts:
            alert = {
                'type': alert_type,
                'message': message,
                'portfolio_id': metrics.portfolio_id,
                'symbol': metrics.symbol,
                'metrics': metrics.to_dict(),
                'timestamp': time.time(),
            }
            with self._lock:
                self._alerts.append(alert)
            logger.warning(f"Performance alert {metrics.portfolio_id} {metrics.symbol}: {message}")
            if self.event_bus is not None:
                self.event_bus.emit(PERFORMANCE_ALERT, alert)
            emitted.append(alert)
        return emitted

    # -----------------------
    # Public reporting
    # -----------------------
    def get_metrics(self, portfolio_id: str, symbol: str) -> Optional[PerformanceMetrics]:
        with self._lock:
            return self._metrics.get((portfolio_id, symbol))

    def get_all_metrics(self) -> List[PerformanceMetrics]:
        with self._lock:
            return list(self._metrics.values())

    def get_trade_history(self, portfolio_id: str, symbol: str, limit: Optional[int] = None) -> List[ClosedTrade]:
        with self._lock:
            items = list(self._trades.get((portfolio_id, symbol), []))
        return items if limit is None else items[-limit:]

    def get_portfolio_metrics(self, portfolio_id: str, starting_equity: Optional[float] = None) -> PerformanceMetrics:
        """Metrics across every symbol of a portfolio, trades ordered by exit time."""
        with self._lock:
            trades = [t for (pid, _), history in self._trades.items() if pid == portfolio_id for t in history]
        trades.sort(key=lambda t: t.exit_time)
        return compute_metrics(trades, portfolio_id, None, starting_equity)

    def get_equity_drawdown(self, portfolio_id: str) -> Tuple[Optional[float], Optional[float]]:
        """
        Maximum drawdown over recorded equity samples.

        Returns:
            (max_drawdown_abs, max_drawdown_pct) with pct in [0, 100], or (None, None) without samples
        """
        with self._lock:
            samples = list(self._equity.get(portfolio_id, []))
        if not samples:
            return None, None

        peak = samples[0].equity
        max_dd = 0.0
        max_dd_pct = 0.0
        for s in samples:
            if s.equity > peak:
                peak = s.equity
            dd = peak - s.equity
            dd_pct = (dd / peak * 100.0) if peak > 0 else 0.0
            max_dd = max(max_dd, dd)
            max_dd_pct = max(max_dd_pct, dd_pct)
        return max_dd, max_dd_pct

    def get_alerts(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self._alerts)
        return items if limit is None else items[-limit:]

    def reset(self) -> None:
        """Clear all recorded trades, metrics, equity and alerts."""
        with self._lock:
            self._trades.clear()
            self._metrics.clear()
            self._equity.clear()
            self._alerts.clear()
