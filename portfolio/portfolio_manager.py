"""
portfolio_manager.py - Portfolio Management

Creates portfolios, manages their symbols and allocations, validates their
constraints and derives performance snapshots from the position book.

Invariants:
- Sum of symbol allocations <= 100%
- Symbol count <= constraints.max_symbols
- A symbol holding an open position cannot be removed, and a portfolio
  with any open position cannot be deleted

Portfolios are persisted through the injected repository after every
mutation. Mutations of one portfolio are serialized by its own lock.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from statistics import mean
from typing import Any, Dict, List, Optional, Tuple

from core.errors import PortfolioError, ValidationError
from monitoring.metrics import compute_metrics
from portfolio.position_book import PositionBook
from storage.repository import Repository


logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ('USDT',)
DAY_SECONDS = 86400


class RebalanceFrequency(Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


@dataclass
class RiskConstraints:
    """
    Portfolio risk constraints. Percentages are expressed 0-100.
    """
    max_symbols: int = 20
    max_drawdown_pct: float = 20.0
    max_daily_loss_pct: float = 5.0
    max_position_size_pct: float = 25.0
    correlation_threshold: float = 0.7
    rebalance_frequency: RebalanceFrequency = RebalanceFrequency.WEEKLY
    stop_loss_pct: float = 5.0
    take_profit_pct: float = 10.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RiskConstraints":
        data = dict(data or {})
        if 'rebalance_frequency' in data:
            data['rebalance_frequency'] = RebalanceFrequency(data['rebalance_frequency'])
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'max_symbols': self.max_symbols,
            'max_drawdown_pct': self.max_drawdown_pct,
            'max_daily_loss_pct': self.max_daily_loss_pct,
            'max_position_size_pct': self.max_position_size_pct,
            'correlation_threshold': self.correlation_threshold,
            'rebalance_frequency': self.rebalance_frequency.value,
            'stop_loss_pct': self.stop_loss_pct,
            'take_profit_pct': self.take_profit_pct,
        }


@dataclass
class PortfolioBudget:
    total: float
    max_per_symbol: float
    currency: str = "USDT"

    def to_dict(self) -> Dict[str, Any]:
        return {'total': self.total, 'max_per_symbol': self.max_per_symbol, 'currency': self.currency}


@dataclass
class SymbolPerformance:
    total_pnl: float = 0.0
    total_pnl_pct: float = 0.0
    trades: int = 0
    win_rate: float = 0.0
    average_hold_time: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    last_calculated: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class PortfolioSymbol:
    """A symbol held by a portfolio with its allocation band (percent of budget)."""
    symbol: str
    allocation_pct: float
    min_allocation_pct: float
    max_allocation_pct: float
    is_active: bool = True
    added_at: float = field(default_factory=time.time)
    last_trade_at: Optional[float] = None
    performance: SymbolPerformance = field(default_factory=SymbolPerformance)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortfolioSymbol":
        data = dict(data)
        data.pop('position', None)
        data['performance'] = SymbolPerformance(**data.get('performance', {}))
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'allocation_pct': self.allocation_pct,
            'min_allocation_pct': self.min_allocation_pct,
            'max_allocation_pct': self.max_allocation_pct,
            'is_active': self.is_active,
            'added_at': self.added_at,
            'last_trade_at': self.last_trade_at,
            'performance': self.performance.to_dict(),
        }


@dataclass
class PortfolioPerformance:
    total_value: float = 0.0
    total_pnl: float = 0.0
    total_pnl_pct: float = 0.0
    daily_pnl: float = 0.0
    daily_pnl_pct: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_pct: float = 0.0
    sharpe_ratio: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    average_win: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0
    last_calculated: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class PortfolioHistoryEntry:
    timestamp: float
    total_value: float
    total_pnl: float
    total_pnl_pct: float
    daily_pnl: float
    daily_pnl_pct: float
    symbol_count: int
    active_positions: int

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class Portfolio:
    """
    Portfolio with its budget, symbols, constraints, performance and history.

    Attributes:
        symbols: Insertion-ordered symbol map
        history: Append-only snapshots written by record_history
    """
    id: str
    name: str
    budget: PortfolioBudget
    constraints: RiskConstraints = field(default_factory=RiskConstraints)
    symbols: Dict[str, PortfolioSymbol] = field(default_factory=dict)
    performance: PortfolioPerformance = field(default_factory=PortfolioPerformance)
    history: List[PortfolioHistoryEntry] = field(default_factory=list)
    description: Optional[str] = None
    is_active: bool = True
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def total_allocation(self) -> float:
        return sum(s.allocation_pct for s in self.symbols.values())

    def symbol_budget(self, symbol: str) -> float:
        """Capital assigned to symbol: allocation capped by max_per_symbol, both percent of total."""
        entry = self.symbols.get(symbol)
        if entry is None:
            return 0.0
        return self.budget.total * min(entry.allocation_pct, self.budget.max_per_symbol) / 100.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Portfolio":
        return cls(
            id=data['id'],
            name=data['name'],
            budget=PortfolioBudget(**data['budget']),
            constraints=RiskConstraints.from_dict(data.get('constraints')),
            symbols={s['symbol']: PortfolioSymbol.from_dict(s) for s in data.get('symbols', [])},
            performance=PortfolioPerformance(**data.get('performance', {})),
            history=[PortfolioHistoryEntry(**h) for h in data.get('history', [])],
            description=data.get('description'),
            is_active=data.get('is_active', True),
            created_at=data.get('created_at', time.time()),
            updated_at=data.get('updated_at', time.time()),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'budget': self.budget.to_dict(),
            'constraints': self.constraints.to_dict(),
            'symbols': [s.to_dict() for s in self.symbols.values()],
            'performance': self.performance.to_dict(),
            'history': [h.to_dict() for h in self.history],
            'is_active': self.is_active,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class PortfolioManager:
    """
    Portfolio CRUD, symbol management and analytics.

    Args:
        repository: Persistence for portfolio records
        position_book: Source of open positions and closed trades
    """

    def __init__(self, repository: Repository, position_book: Optional[PositionBook] = None):
        self.repository = repository
        self.position_book = position_book or PositionBook()
        self._lock = threading.RLock()
        self._portfolio_locks: Dict[str, threading.RLock] = {}
        self._portfolios: Dict[str, Portfolio] = {}

    def load(self) -> int:
        """Load persisted portfolios, returning how many were loaded."""
        records = self.repository.list_portfolios()
        with self._lock:
            for record in records:
                portfolio = Portfolio.from_dict(record)
                self._portfolios[portfolio.id] = portfolio
        logger.info(f"Loaded {len(records)} portfolios")
        return len(records)

    def _portfolio_lock(self, portfolio_id: str) -> threading.RLock:
        with self._lock:
            return self._portfolio_locks.setdefault(portfolio_id, threading.RLock())

    def _save(self, portfolio: Portfolio) -> None:
        portfolio.updated_at = time.time()
        self.repository.save_portfolio(portfolio.to_dict())

    # -----------------------
    # Portfolio CRUD
    # -----------------------

    def create_portfolio(
        self,
        name: str,
        budget: float,
        max_per_symbol: float,
        currency: str = "USDT",
        constraints: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Portfolio:
        """
        Create and persist a portfolio.

        Args:
            name: Unique name (case-insensitive)
            budget: Total budget in currency, > 0
            max_per_symbol: Per-symbol ceiling in percent, (0, 100]
            currency: Quote currency, must be USDT
            constraints: Overrides for RiskConstraints defaults
            description: Optional free text

        Raises:
            ValidationError: Invalid arguments
            PortfolioError: Name already taken
        """
        reasons = []
        if not name or not name.strip():
            reasons.append("Portfolio name is required")
        if budget is None or budget <= 0:
            reasons.append("Portfolio budget must be greater than 0")
        if max_per_symbol is None or not 0 < max_per_symbol <= 100:
            reasons.append("Max per symbol must be between 0 and 100")
        if currency not in SUPPORTED_CURRENCIES:
            reasons.append(f"Unsupported currency {currency}; supported: {', '.join(SUPPORTED_CURRENCIES)}")
        if reasons:
            raise ValidationError("Invalid portfolio", reasons=reasons)

        with self._lock:
            if any(p.name.lower() == name.strip().lower() for p in self._portfolios.values()):
                raise PortfolioError(f"Portfolio with name '{name}' already exists")
            portfolio = Portfolio(
                id=f"portfolio_{uuid.uuid4().hex[:12]}",
                name=name.strip(),
                description=description.strip() if description else None,
                budget=PortfolioBudget(total=budget, max_per_symbol=max_per_symbol, currency=currency),
                constraints=RiskConstraints.from_dict(constraints),
            )
            portfolio.performance.total_value = budget
            self._portfolios[portfolio.id] = portfolio
            self._save(portfolio)

        logger.info(f"Portfolio created: {portfolio.name} ({portfolio.id}) budget={budget} {currency}")
        return portfolio

    def get_portfolio(self, portfolio_id: str) -> Optional[Portfolio]:
        with self._lock:
            return self._portfolios.get(portfolio_id)

    def require(self, portfolio_id: str) -> Portfolio:
        portfolio = self.get_portfolio(portfolio_id)
        if portfolio is None:
            raise PortfolioError(f"Portfolio not found: {portfolio_id}", context={'portfolio_id': portfolio_id})
        return portfolio

    def list_portfolios(self, active_only: bool = False) -> List[Portfolio]:
        with self._lock:
            return [p for p in self._portfolios.values() if p.is_active or not active_only]

    def update_portfolio(
        self,
        portfolio_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        max_per_symbol: Optional[float] = None,
        constraints: Optional[Dict[str, Any]] = None,
        is_active: Optional[bool] = None,
    ) -> Portfolio:
        portfolio = self.require(portfolio_id)
        with self._portfolio_lock(portfolio_id):
            if name is not None:
                if not name.strip():
                    raise ValidationError("Portfolio name cannot be empty")
                with self._lock:
                    clash = any(p.id != portfolio_id and p.name.lower() == name.strip().lower()
                                for p in self._portfolios.values())
                if clash:
                    raise PortfolioError(f"Portfolio with name '{name}' already exists")
                portfolio.name = name.strip()
            if description is not None:
                portfolio.description = description.strip() or None
            if max_per_symbol is not None:
                if not 0 < max_per_symbol <= 100:
                    raise ValidationError("Max per symbol must be between 0 and 100")
                portfolio.budget.max_per_symbol = max_per_symbol
            if constraints:
                merged = portfolio.constraints.to_dict()
                merged.update(constraints)
                portfolio.constraints = RiskConstraints.from_dict(merged)
            if is_active is not None:
                portfolio.is_active = is_active
            self._save(portfolio)
        return portfolio

    def delete_portfolio(self, portfolio_id: str) -> None:
        """
        Raises:
            PortfolioError: Unknown portfolio or open positions remain
        """
        portfolio = self.require(portfolio_id)
        with self._portfolio_lock(portfolio_id):
            open_positions = self.position_book.get_open_positions(portfolio_id)
            if open_positions:
                raise PortfolioError(
                    f"Cannot delete portfolio {portfolio.name} with {len(open_positions)} open positions",
                    context={'symbols': [p.symbol for p in open_positions]},
                )
            with self._lock:
                del self._portfolios[portfolio_id]
                self._portfolio_locks.pop(portfolio_id, None)
            self.repository.delete_portfolio(portfolio_id)
        logger.info(f"Portfolio deleted: {portfolio.name} ({portfolio_id})")

    def update_budget(self, portfolio_id: str, new_budget: float) -> Portfolio:
        if new_budget is None or new_budget <= 0:
            raise ValidationError("Budget must be greater than 0")
        portfolio = self.require(portfolio_id)
        with self._portfolio_lock(portfolio_id):
            portfolio.budget.total = new_budget
            self._save(portfolio)
        logger.info(f"Portfolio {portfolio_id} budget updated to {new_budget}")
        return portfolio

    # -----------------------
    # Symbol management
    # -----------------------

    def add_symbol(
        self,
        portfolio_id: str,
        symbol: str,
        allocation_pct: float,
        min_allocation_pct: Optional[float] = None,
        max_allocation_pct: Optional[float] = None,
    ) -> PortfolioSymbol:
        """
        Add a symbol with an allocation (percent of budget).

        Raises:
            ValidationError: Bad symbol/allocation or constraint breach
            PortfolioError: Unknown portfolio
        """
        portfolio = self.require(portfolio_id)
        with self._portfolio_lock(portfolio_id):
            reasons = []
            if not symbol or not symbol.strip():
                reasons.append("Symbol is required")
            elif symbol in portfolio.symbols:
                reasons.append(f"Symbol {symbol} already exists in portfolio")
            if len(portfolio.symbols) >= portfolio.constraints.max_symbols:
                reasons.append(f"Portfolio cannot have more than {portfolio.constraints.max_symbols} symbols")
            if allocation_pct is None or not 0 < allocation_pct <= 100:
                reasons.append("Allocation must be between 0 and 100")
            elif portfolio.total_allocation + allocation_pct > 100:
                reasons.append(f"Total allocation cannot exceed 100% (currently {portfolio.total_allocation:.1f}%)")
            if reasons:
                raise ValidationError(f"Cannot add {symbol} to {portfolio.name}", reasons=reasons)

            entry = PortfolioSymbol(
                symbol=symbol,
                allocation_pct=allocation_pct,
                min_allocation_pct=min_allocation_pct if min_allocation_pct is not None else allocation_pct * 0.5,
                max_allocation_pct=(max_allocation_pct if max_allocation_pct is not None
                                    else min(100.0, allocation_pct * 1.5)),
            )
            portfolio.symbols[symbol] = entry
            self._save(portfolio)

        logger.info(f"Added {symbol} to {portfolio.name} at {allocation_pct}%")
        return entry

    def remove_symbol(self, portfolio_id: str, symbol: str) -> None:
        portfolio = self.require(portfolio_id)
        with self._portfolio_lock(portfolio_id):
            if symbol not in portfolio.symbols:
                raise PortfolioError(f"Symbol {symbol} not found in portfolio {portfolio.name}")
            if self.position_book.has_open_position(portfolio_id, symbol):
                raise PortfolioError(f"Cannot remove {symbol} with an open position")
            del portfolio.symbols[symbol]
            self._save(portfolio)
        logger.info(f"Removed {symbol} from {portfolio.name}")

    def update_symbol_allocation(self, portfolio_id: str, symbol: str, allocation_pct: float) -> PortfolioSymbol:
        portfolio = self.require(portfolio_id)
        with self._portfolio_lock(portfolio_id):
            entry = portfolio.symbols.get(symbol)
            if entry is None:
                raise PortfolioError(f"Symbol {symbol} not found in portfolio {portfolio.name}")
            if allocation_pct is None or not 0 < allocation_pct <= 100:
                raise ValidationError("Allocation must be between 0 and 100")
            total = portfolio.total_allocation - entry.allocation_pct + allocation_pct
            if total > 100:
                raise ValidationError(f"Total allocation cannot exceed 100% (would be {total:.1f}%)")
            entry.allocation_pct = allocation_pct
            self._save(portfolio)
        return entry

    def active_symbols(self, portfolio_id: str) -> List[str]:
        portfolio = self.require(portfolio_id)
        return [s.symbol for s in portfolio.symbols.values() if s.is_active]

    def mark_traded(self, portfolio_id: str, symbol: str) -> None:
        portfolio = self.get_portfolio(portfolio_id)
        if portfolio is not None and symbol in portfolio.symbols:
            portfolio.symbols[symbol].last_trade_at = time.time()

    # -----------------------
    # Validation & analytics
    # -----------------------

    def validate_constraints(self, portfolio_id: str) -> Tuple[bool, List[str]]:
        """
        Check a portfolio against its constraints.

        Returns:
            (is_valid, errors)
        """
        portfolio = self.require(portfolio_id)
        errors = []
        constraints = portfolio.constraints

        if len(portfolio.symbols) > constraints.max_symbols:
            errors.append(f"Portfolio exceeds maximum symbol count of {constraints.max_symbols}")
        if portfolio.total_allocation > 100:
            errors.append("Total symbol allocation exceeds 100%")
        for entry in portfolio.symbols.values():
            if entry.allocation_pct > portfolio.budget.max_per_symbol:
                errors.append(f"{entry.symbol} allocation {entry.allocation_pct}% exceeds max per symbol "
                              f"{portfolio.budget.max_per_symbol}%")
        if portfolio.performance.max_drawdown_pct > constraints.max_drawdown_pct:
            errors.append(f"Drawdown {portfolio.performance.max_drawdown_pct:.2f}% exceeds maximum "
                          f"{constraints.max_drawdown_pct}%")
        if -portfolio.performance.daily_pnl_pct > constraints.max_daily_loss_pct:
            errors.append(f"Daily loss {-portfolio.performance.daily_pnl_pct:.2f}% exceeds maximum "
                          f"{constraints.max_daily_loss_pct}%")
        for position in self.position_book.get_open_positions(portfolio_id):
            size_pct = position.market_value / portfolio.budget.total * 100
            if size_pct > constraints.max_position_size_pct:
                errors.append(f"{position.symbol} position size {size_pct:.2f}% exceeds maximum "
                              f"{constraints.max_position_size_pct}%")

        return not errors, errors

    def calculate_performance(self, portfolio_id: str) -> PortfolioPerformance:
        """Recompute the performance snapshot from closed trades and open positions."""
        portfolio = self.require(portfolio_id)
        now = time.time()
        closed = self.position_book.get_closed_trades(portfolio_id)
        open_positions = self.position_book.get_open_positions(portfolio_id)
        budget = portfolio.budget.total

        unrealized = sum(p.unrealized_pnl for p in open_positions)
        metrics = compute_metrics(closed, portfolio_id, starting_equity=budget)
        daily_realized = sum(t.pnl for t in closed if t.exit_time >= now - DAY_SECONDS)

        total_pnl = metrics.total_pnl + unrealized
        daily_pnl = daily_realized + unrealized
        performance = PortfolioPerformance(
            total_value=budget + total_pnl,
            total_pnl=total_pnl,
            total_pnl_pct=total_pnl / budget * 100,
            daily_pnl=daily_pnl,
            daily_pnl_pct=daily_pnl / budget * 100,
            max_drawdown=metrics.max_drawdown * budget,
            max_drawdown_pct=metrics.max_drawdown * 100,
            sharpe_ratio=metrics.sharpe_ratio,
            win_rate=metrics.win_rate,
            total_trades=metrics.total_trades,
            winning_trades=metrics.winning_trades,
            losing_trades=metrics.losing_trades,
            average_win=metrics.average_win,
            average_loss=metrics.average_loss,
            profit_factor=metrics.profit_factor,
            last_calculated=now,
        )

        with self._portfolio_lock(portfolio_id):
            portfolio.performance = performance
            for entry in portfolio.symbols.values():
                entry.performance = self._symbol_performance(portfolio, entry.symbol, closed, now)
            self._save(portfolio)
        return performance

    def _symbol_performance(self, portfolio: Portfolio, symbol: str, closed, now: float) -> SymbolPerformance:
        trades = [t for t in closed if t.symbol == symbol]
        if not trades:
            return SymbolPerformance(last_calculated=now)
        symbol_budget = portfolio.symbol_budget(symbol) or portfolio.budget.total
        metrics = compute_metrics(trades, portfolio.id, symbol, starting_equity=symbol_budget)
        return SymbolPerformance(
            total_pnl=metrics.total_pnl,
            total_pnl_pct=metrics.total_pnl / symbol_budget * 100,
            trades=metrics.total_trades,
            win_rate=metrics.win_rate,
            average_hold_time=mean(t.duration for t in trades),
            max_drawdown=metrics.max_drawdown,
            sharpe_ratio=metrics.sharpe_ratio,
            last_calculated=now,
        )

    def record_history(self, portfolio_id: str) -> PortfolioHistoryEntry:
        """Append the current performance snapshot to the portfolio history."""
        portfolio = self.require(portfolio_id)
        performance = self.calculate_performance(portfolio_id)
        entry = PortfolioHistoryEntry(
            timestamp=time.time(),
            total_value=performance.total_value,
            total_pnl=performance.total_pnl,
            total_pnl_pct=performance.total_pnl_pct,
            daily_pnl=performance.daily_pnl,
            daily_pnl_pct=performance.daily_pnl_pct,
            symbol_count=len(portfolio.symbols),
            active_positions=len(self.position_book.get_open_positions(portfolio_id)),
        )
        with self._portfolio_lock(portfolio_id):
            portfolio.history.append(entry)
            self._save(portfolio)
        return entry

    def portfolio_view(self, portfolio_id: str) -> Dict[str, Any]:
        """Portfolio dict with each symbol's open position attached."""
        portfolio = self.require(portfolio_id)
        data = portfolio.to_dict()
        for item in data['symbols']:
            position = self.position_book.get_position(portfolio_id, item['symbol'])
            item['position'] = position.to_dict() if position else None
        return data
