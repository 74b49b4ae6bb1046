"""
rate_limiter.py - Outbound Request Rate Limiter

Fixed-window counters keyed by (category, identifier). Every outbound
exchange call passes through check_limit() or the blocking wait_for_limit().

Guarantees:
- Within one window at most `limit` calls are allowed per key
- Rejections report the window's reset time (epoch seconds, >= now)
- Expired windows are removed by cleanup_expired() / the periodic sweeper
- Internal failures fail open: the request is allowed and the failure logged
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from core.errors import RateLimitError, ValidationError


logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Ceiling for one category: `limit` calls per `window` seconds."""
    limit: int
    window: float

    def __post_init__(self):
        if self.limit <= 0:
            raise ValueError(f"limit must be positive, got {self.limit}")
        if self.window <= 0:
            raise ValueError(f"window must be positive, got {self.window}")


@dataclass
class RateLimitResult:
    """Outcome of a limit check."""
    allowed: bool
    remaining: int
    reset_time: float
    limit: int
    failed_open: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'allowed': self.allowed,
            'remaining': self.remaining,
            'reset_time': self.reset_time,
            'limit': self.limit,
            'failed_open': self.failed_open,
        }


@dataclass
class _Window:
    count: int
    reset_time: float


DEFAULT_CATEGORIES = {
    'rest': RateLimitConfig(limit=1200, window=60.0),
    'orders': RateLimitConfig(limit=50, window=10.0),
    'websocket': RateLimitConfig(limit=5, window=1.0),
}


class RateLimiter:
    """
    Process-local fixed-window rate limiter.

    State is not shared across processes; running several engine instances
    against one account needs an external shared store.
    """

    def __init__(
        self,
        categories: Optional[Dict[str, Any]] = None,
        max_wait: float = 30.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            categories: name -> RateLimitConfig or {"limit": int, "window": seconds}
            max_wait: Default maximum wait for wait_for_limit() in seconds
            clock: Time source (epoch seconds)
            sleep: Async sleep used while waiting for capacity
        """
        if max_wait <= 0:
            raise ValueError(f"max_wait must be positive, got {max_wait}")
        self._lock = threading.Lock()
        self._categories: Dict[str, RateLimitConfig] = {}
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._sweeper: Optional[asyncio.Task] = None
        self._stats = {'allowed': 0, 'rejected': 0, 'failed_open': 0, 'waits': 0, 'wait_timeouts': 0, 'swept': 0}

        for name, cfg in (categories or DEFAULT_CATEGORIES).items():
            if isinstance(cfg, dict):
                cfg = RateLimitConfig(limit=int(cfg['limit']), window=float(cfg['window']))
            self._categories[name] = cfg

        logger.info(f"RateLimiter initialized: {', '.join(f'{n}={c.limit}/{c.window}s' for n, c in self._categories.items())}")

    def configure_category(self, name: str, limit: int, window: float) -> None:
        """Add or replace a category ceiling; existing windows keep counting."""
        cfg = RateLimitConfig(limit=limit, window=window)
        with self._lock:
            self._categories[name] = cfg

    def _config(self, category: str) -> RateLimitConfig:
        cfg = self._categories.get(category)
        if cfg is None:
            raise ValidationError(f"Unknown rate limit category '{category}'")
        return cfg

    # -----------------------
    # Checks
    # -----------------------
    def check_limit(self, category: str, identifier: str = "default") -> RateLimitResult:
        """
        Count one call against (category, identifier).

        Returns:
            RateLimitResult; allowed=False means the ceiling is reached until reset_time

        Raises:
            ValidationError: If the category is unknown
        """
        cfg = self._config(category)
        now = self._clock()
        try:
            with self._lock:
                key = (category, identifier)
                window = self._windows.get(key)
                if window is None or now >= window.reset_time:
                    window = _Window(count=0, reset_time=now + cfg.window)
                    self._windows[key] = window

                if window.count < cfg.limit:
                    window.count += 1
                    self._stats['allowed'] += 1
                    return RateLimitResult(True, cfg.limit - window.count, window.reset_time, cfg.limit)

                self._stats['rejected'] += 1
                return RateLimitResult(False, 0, window.reset_time, cfg.limit)
        except Exception as e:
            logger.error(f"Rate limiter failure for {category}:{identifier}, allowing request: {e}", exc_info=True)
            with self._lock:
                self._stats['failed_open'] += 1
            return RateLimitResult(True, 0, now, cfg.limit, failed_open=True)

    async def wait_for_limit(self, category: str, identifier: str = "default",
                             max_wait: Optional[float] = None) -> RateLimitResult:
        """
        Block until the call is allowed.

        Re-checks in sleeps of at most one second until capacity frees.

        Raises:
            RateLimitError: If capacity did not free within max_wait seconds
        """
        max_wait = self.max_wait if max_wait is None else max_wait
        deadline = self._clock() + max_wait
        waited = False
        while True:
            result = self.check_limit(category, identifier)
            if result.allowed:
                return result
            now = self._clock()
            if now >= deadline:
                with self._lock:
                    self._stats['wait_timeouts'] += 1
                cfg = self._config(category)
                raise RateLimitError(
                    f"Rate limit for {category}:{identifier} not freed within {max_wait:.1f}s",
                    reset_time=result.reset_time,
                    limit=cfg.limit,
                    window=cfg.window,
                    context={'category': category, 'identifier': identifier},
                )
            if not waited:
                waited = True
                with self._lock:
                    self._stats['waits'] += 1
                logger.debug(f"Rate limit reached for {category}:{identifier}, waiting")
            delay = min(1.0, max(result.reset_time - now, 0.001), max(deadline - now, 0.001))
            await self._sleep(delay)

    def get_limit_info(self, category: str, identifier: str = "default") -> RateLimitResult:
        """Current window state without counting a call."""
        cfg = self._config(category)
        now = self._clock()
        with self._lock:
            window = self._windows.get((category, identifier))
            if window is None or now >= window.reset_time:
                return RateLimitResult(True, cfg.limit, now + cfg.window, cfg.limit)
            return RateLimitResult(window.count < cfg.limit, cfg.limit - window.count, window.reset_time, cfg.limit)

    def reset_limit(self, category: str, identifier: Optional[str] = None) -> int:
        """Drop windows for a category (one identifier or all). Returns the number removed."""
        with self._lock:
            keys = [k for k in self._windows if k[0] == category and (identifier is None or k[1] == identifier)]
            for key in keys:
                del self._windows[key]
        return len(keys)

    # -----------------------
    # Sweeping
    # -----------------------
    def cleanup_expired(self) -> int:
        """Remove windows whose reset time has passed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, w in self._windows.items() if now >= w.reset_time]
            for key in expired:
                del self._windows[key]
            self._stats['swept'] += len(expired)
        if expired:
            logger.debug(f"Rate limiter swept {len(expired)} expired windows")
        return len(expired)

    def start_sweeper(self, interval: float = 60.0) -> asyncio.Task:
        """Start the periodic cleanup task on the running loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper

        async def _sweep():
            while True:
                await asyncio.sleep(interval)
                self.cleanup_expired()

        self._sweeper = asyncio.create_task(_sweep(), name="rate-limiter-sweeper")
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    def get_stats(self) -> Dict[str, Any]:
        """Counters plus the number of live windows."""
        with self._lock:
            stats = dict(self._stats)
            stats['active_windows'] = len(self._windows)
            stats['categories'] = {n: {'limit': c.limit, 'window': c.window} for n, c in self._categories.items()}
        return stats
