"""
circuit_breaker.py - Circuit Breaker for Exchange Calls

CLOSED permits calls. `failure_threshold` consecutive failures inside the
monitoring window open the breaker; while OPEN every call fails fast with
CircuitOpenError without invoking the operation. After `recovery_timeout`
the breaker half-opens and lets exactly one probe through: success closes
it, failure re-opens it.

Validation errors and terminal exchange rejections do not count as failures.
The lock is never held while the wrapped operation runs.
"""

import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.errors import CircuitOpenError, counts_as_failure


logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Async circuit breaker.

    Usage:
        breaker = CircuitBreaker("orders", failure_threshold=5, recovery_timeout=60)
        report = await breaker.call(gateway.place_order, request)
    """

    def __init__(
        self,
        name: str = "exchange",
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        monitoring_window: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[Callable[[str, CircuitState, CircuitState], Any]] = None,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Breaker name used in errors and logs
            failure_threshold: Consecutive failures that open the breaker
            recovery_timeout: Seconds the breaker stays open before a probe
            monitoring_window: Failures older than this many seconds are forgotten
            clock: Monotonic time source
            on_state_change: Optional callback(name, old_state, new_state)
        """
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        if recovery_timeout <= 0 or monitoring_window <= 0:
            raise ValueError("recovery_timeout and monitoring_window must be positive")

        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.monitoring_window = monitoring_window
        self._clock = clock
        self._on_state_change = on_state_change

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque = deque()
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._stats = {'calls': 0, 'successes': 0, 'failures': 0, 'rejected': 0, 'opened': 0}

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    # -----------------------
    # State transitions (caller holds the lock)
    # -----------------------
    def _transition(self, new_state: CircuitState, changes: List[Tuple[CircuitState, CircuitState]]) -> None:
        if new_state == self._state:
            return
        changes.append((self._state, new_state))
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._stats['opened'] += 1
        elif new_state == CircuitState.CLOSED:
            self._opened_at = None
            self._failures.clear()
        self._probe_in_flight = False

    def _notify(self, changes: List[Tuple[CircuitState, CircuitState]]) -> None:
        for old, new in changes:
            level = logging.WARNING if new == CircuitState.OPEN else logging.INFO
            logger.log(level, f"Circuit breaker '{self.name}' {old.value} -> {new.value}")
            if self._on_state_change is not None:
                try:
                    self._on_state_change(self.name, old, new)
                except Exception as e:
                    logger.error(f"Circuit breaker state listener failed: {e}", exc_info=True)

    def _acquire(self) -> bool:
        """Admit or refuse a call. Returns True when the call is the half-open probe."""
        changes: List[Tuple[CircuitState, CircuitState]] = []
        try:
            with self._lock:
                now = self._clock()
                if self._state == CircuitState.OPEN:
                    elapsed = now - (self._opened_at or now)
                    if elapsed < self.recovery_timeout:
                        self._stats['rejected'] += 1
                        raise CircuitOpenError(self.name, self.recovery_timeout - elapsed)
                    self._transition(CircuitState.HALF_OPEN, changes)

                if self._state == CircuitState.HALF_OPEN:
                    if self._probe_in_flight:
                        self._stats['rejected'] += 1
                        raise CircuitOpenError(self.name, 0.0)
                    self._probe_in_flight = True
                    self._stats['calls'] += 1
                    return True

                self._stats['calls'] += 1
                return False
        finally:
            self._notify(changes)

    def record_success(self, probe: bool = False) -> None:
        changes: List[Tuple[CircuitState, CircuitState]] = []
        with self._lock:
            self._stats['successes'] += 1
            if self._state == CircuitState.HALF_OPEN and probe:
                self._transition(CircuitState.CLOSED, changes)
            elif self._state == CircuitState.CLOSED:
                self._failures.clear()
        self._notify(changes)

    def record_failure(self, probe: bool = False) -> None:
        changes: List[Tuple[CircuitState, CircuitState]] = []
        with self._lock:
            self._stats['failures'] += 1
            now = self._clock()
            if self._state == CircuitState.HALF_OPEN and probe:
                self._transition(CircuitState.OPEN, changes)
            elif self._state == CircuitState.CLOSED:
                self._failures.append(now)
                while self._failures and now - self._failures[0] > self.monitoring_window:
                    self._failures.popleft()
                if len(self._failures) >= self.failure_threshold:
                    self._transition(CircuitState.OPEN, changes)
        self._notify(changes)

    def _release_probe(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    # -----------------------
    # Public API
    # -----------------------
    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run fn through the breaker.

        Raises:
            CircuitOpenError: If the breaker refuses the call
            Exception: Whatever fn raises
        """
        probe = self._acquire()
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            if counts_as_failure(exc):
                self.record_failure(probe)
            elif probe:
                self._release_probe()
            raise
        except BaseException:
            # Cancellation says nothing about dependency health
            if probe:
                self._release_probe()
            raise
        self.record_success(probe)
        return result

    def reset(self) -> None:
        """Force the breaker closed."""
        changes: List[Tuple[CircuitState, CircuitState]] = []
        with self._lock:
            self._transition(CircuitState.CLOSED, changes)
        self._notify(changes)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            remaining = 0.0
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                remaining = max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))
            return {
                'name': self.name,
                'state': self._state.value,
                'recent_failures': len(self._failures),
                'failure_threshold': self.failure_threshold,
                'remaining_cooldown': remaining,
                **self._stats,
            }
