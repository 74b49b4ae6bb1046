"""
repository.py - Persistence Repository

Abstract storage interface for portfolios, trade history, analysis
snapshots, decisions and a generic expiring key-value cache, plus a
thread-safe in-memory implementation with optional JSON snapshots.
The engine never assumes a specific storage technology.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union


logger = logging.getLogger(__name__)


class Repository(ABC):
    """Storage interface consumed by the engine. Records are plain dicts."""

    # Portfolios

    @abstractmethod
    def save_portfolio(self, portfolio: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def get_portfolio(self, portfolio_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_portfolios(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def delete_portfolio(self, portfolio_id: str) -> bool:
        pass

    # Trades and decisions

    @abstractmethod
    def append_trade(self, trade: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def list_trades(self, portfolio_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def append_decision(self, decision: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def list_decisions(self, portfolio_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        pass

    # Analysis snapshots

    @abstractmethod
    def save_analysis(self, kind: str, symbol: str, snapshot: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def get_analysis(self, kind: str, symbol: str) -> Optional[Dict[str, Any]]:
        pass

    # Expiring cache

    @abstractmethod
    def cache_get(self, key: str) -> Any:
        pass

    @abstractmethod
    def cache_set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        pass

    @abstractmethod
    def cache_delete(self, key: str) -> bool:
        pass

    @abstractmethod
    def sweep_cache(self) -> int:
        """Remove expired cache entries, returning how many were removed."""


class InMemoryRepository(Repository):
    """
    Thread-safe in-memory repository.

    Args:
        default_ttl: Cache lifetime in seconds when set() gives none
        snapshot_path: Optional JSON file used by save_snapshot / load_snapshot
        clock: Time source for cache expiry
    """

    def __init__(
        self,
        default_ttl: float = 300,
        snapshot_path: Optional[Union[str, Path]] = None,
        clock: Callable[[], float] = time.time,
    ):
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")
        self.default_ttl = default_ttl
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._clock = clock

        self._lock = threading.RLock()
        self._portfolios: Dict[str, Dict[str, Any]] = {}
        self._trades: List[Dict[str, Any]] = []
        self._decisions: List[Dict[str, Any]] = []
        self._analysis: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._cache: Dict[str, Tuple[Any, float]] = {}

    # -----------------------
    # Portfolios
    # -----------------------

    def save_portfolio(self, portfolio: Dict[str, Any]) -> None:
        if 'id' not in portfolio:
            raise ValueError("portfolio record requires an 'id'")
        with self._lock:
            self._portfolios[portfolio['id']] = dict(portfolio)

    def get_portfolio(self, portfolio_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._portfolios.get(portfolio_id)
            return dict(record) if record is not None else None

    def list_portfolios(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(p) for p in self._portfolios.values()]

    def delete_portfolio(self, portfolio_id: str) -> bool:
        with self._lock:
            return self._portfolios.pop(portfolio_id, None) is not None

    # -----------------------
    # Trades and decisions
    # -----------------------

    def append_trade(self, trade: Dict[str, Any]) -> None:
        with self._lock:
            self._trades.append(dict(trade))

    def list_trades(self, portfolio_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = [t for t in self._trades if portfolio_id is None or t.get('portfolio_id') == portfolio_id]
        return items if limit is None else items[-limit:]

    def append_decision(self, decision: Dict[str, Any]) -> None:
        with self._lock:
            self._decisions.append(dict(decision))

    def list_decisions(self, portfolio_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = [d for d in self._decisions if portfolio_id is None or d.get('portfolio_id') == portfolio_id]
        return items if limit is None else items[-limit:]

    # -----------------------
    # Analysis snapshots
    # -----------------------

    def save_analysis(self, kind: str, symbol: str, snapshot: Dict[str, Any]) -> None:
        with self._lock:
            self._analysis[(kind, symbol)] = dict(snapshot)

    def get_analysis(self, kind: str, symbol: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._analysis.get((kind, symbol))

    # -----------------------
    # Cache
    # -----------------------

    def cache_get(self, key: str) -> Any:
        """Cached value, or None when missing or expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._cache[key]
                return None
            return value

    def cache_set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._cache[key] = (value, self._clock() + (ttl if ttl is not None else self.default_ttl))

    def cache_delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def sweep_cache(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._cache.items() if now >= expires_at]
            for key in expired:
                del self._cache[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    # -----------------------
    # Snapshots
    # -----------------------

    def save_snapshot(self, path: Optional[Union[str, Path]] = None) -> Path:
        """Write portfolios, trades and decisions to a JSON file."""
        target = Path(path) if path else self.snapshot_path
        if target is None:
            raise ValueError("no snapshot path configured")
        with self._lock:
            data = {
                'portfolios': list(self._portfolios.values()),
                'trades': list(self._trades),
                'decisions': list(self._decisions),
                'saved_at': time.time(),
            }
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(data, indent=2, default=str))
        logger.info(f"Repository snapshot saved to {target}")
        return target

    def load_snapshot(self, path: Optional[Union[str, Path]] = None) -> bool:
        """
        Load a JSON snapshot, replacing portfolios, trades and decisions.

        Returns:
            False when the file does not exist
        """
        source = Path(path) if path else self.snapshot_path
        if source is None or not source.exists():
            return False
        data = json.loads(source.read_text())
        with self._lock:
            self._portfolios = {p['id']: p for p in data.get('portfolios', [])}
            self._trades = list(data.get('trades', []))
            self._decisions = list(data.get('decisions', []))
        logger.info(f"Repository snapshot loaded from {source}: {len(self._portfolios)} portfolios")
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'portfolios': len(self._portfolios),
                'trades': len(self._trades),
                'decisions': len(self._decisions),
                'analysis_snapshots': len(self._analysis),
                'cache_entries': len(self._cache),
            }
