"""
retry.py - Retry Policy for Transient Exchange Failures

Retries only whitelisted transient kinds (network, timeout, rate limit and
non-terminal exchange API errors) with exponential backoff and jitter.
Rate-limited attempts wait at least until the reported reset time.
Everything else, validation and configuration errors included, is raised on
the first occurrence. Exhaustion raises RetryExhaustedError carrying the
attempt count and the last error.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from core.errors import RateLimitError, RetryExhaustedError, is_retryable


logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """
    Backoff parameters.

    Attributes:
        max_attempts: Total attempts including the first
        base_delay: Delay before the first retry (seconds)
        max_delay: Ceiling for backoff delays (seconds)
        multiplier: Exponential growth factor
        jitter: Relative jitter, delay is scaled by a factor in [1 - jitter, 1 + jitter]
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("require 0 <= base_delay <= max_delay")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")
        if not 0 <= self.jitter <= 1:
            raise ValueError(f"jitter must be in [0, 1], got {self.jitter}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        return cls(**{k: data[k] for k in ('max_attempts', 'base_delay', 'max_delay', 'multiplier', 'jitter') if k in data})


OnRetry = Callable[[int, BaseException, float], Any]


class RetryPolicy:
    """Executes an async operation with bounded retries."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    def compute_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """
        Delay before retry number `attempt` (1-based).

        Args:
            attempt: The attempt that just failed
            error: The failure, consulted for rate-limit reset times

        Returns:
            Seconds to wait
        """
        cfg = self.config
        delay = min(cfg.max_delay, cfg.base_delay * (cfg.multiplier ** (attempt - 1)))
        if cfg.jitter:
            delay *= 1 + cfg.jitter * (2 * self._rng() - 1)
            delay = min(cfg.max_delay, max(0.0, delay))
        if isinstance(error, RateLimitError) and error.reset_time is not None:
            delay = max(delay, error.reset_time - self._clock())
        return delay

    async def execute(self, operation: Callable[[], Awaitable[Any]], name: str = "operation",
                      on_retry: Optional[OnRetry] = None) -> Any:
        """
        Run operation until it succeeds, fails permanently, or attempts run out.

        Args:
            operation: Zero-argument coroutine factory
            name: Operation name for logs and errors
            on_retry: Optional callback(attempt, error, delay) before each retry sleep

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: Transient failures on every attempt
            Exception: Any non-retryable error, unchanged
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                if not is_retryable(exc):
                    if attempt > 1:
                        logger.warning(f"{name} failed permanently on attempt {attempt}: {exc}")
                    raise
                if attempt >= self.config.max_attempts:
                    logger.error(f"{name} failed after {attempt} attempts: {exc}")
                    raise RetryExhaustedError(name, attempt, exc) from exc
                delay = self.compute_delay(attempt, exc)
                logger.warning(
                    f"{name} attempt {attempt}/{self.config.max_attempts} failed: {exc}, "
                    f"retrying in {delay:.2f}s"
                )
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                await self._sleep(delay)
