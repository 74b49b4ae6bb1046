"""
test_resilience.py - Tests for the circuit breaker, retry policy and rate limiter
"""

from unittest.mock import AsyncMock

import pytest

from core.errors import (
    CircuitOpenError,
    ExchangeAPIError,
    NetworkError,
    RateLimitError,
    RetryExhaustedError,
    ValidationError,
)
from execution.circuit_breaker import CircuitBreaker, CircuitState
from execution.rate_limiter import RateLimiter
from execution.retry import RetryConfig, RetryPolicy


class TestCircuitBreaker:
    """Test breaker state transitions."""

    def _breaker(self, clock, **kwargs):
        params = dict(failure_threshold=3, recovery_timeout=30.0, monitoring_window=60.0, clock=clock)
        params.update(kwargs)
        return CircuitBreaker("test", **params)

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_fails_fast(self, clock):
        breaker = self._breaker(clock)
        failing = AsyncMock(side_effect=NetworkError("down"))
        for _ in range(3):
            with pytest.raises(NetworkError):
                await breaker.call(failing)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(failing)
        assert failing.await_count == 3
        assert exc_info.value.remaining == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_half_open_probe_success_closes(self, clock):
        transitions = []
        breaker = self._breaker(clock, on_state_change=lambda n, o, s: transitions.append((o, s)))
        for _ in range(3):
            with pytest.raises(NetworkError):
                await breaker.call(AsyncMock(side_effect=NetworkError("down")))

        clock.advance(31)
        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert transitions == [
            (CircuitState.CLOSED, CircuitState.OPEN),
            (CircuitState.OPEN, CircuitState.HALF_OPEN),
            (CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    @pytest.mark.asyncio
    async def test_half_open_probe_failure_reopens(self, clock):
        breaker = self._breaker(clock, failure_threshold=1)
        with pytest.raises(NetworkError):
            await breaker.call(AsyncMock(side_effect=NetworkError("down")))
        clock.advance(31)
        with pytest.raises(NetworkError):
            await breaker.call(AsyncMock(side_effect=NetworkError("still down")))
        assert breaker.state == CircuitState.OPEN
        assert breaker.get_status()['opened'] == 2

    @pytest.mark.asyncio
    async def test_business_rejections_do_not_count(self, clock):
        breaker = self._breaker(clock, failure_threshold=1)
        with pytest.raises(ValidationError):
            await breaker.call(AsyncMock(side_effect=ValidationError("bad")))
        with pytest.raises(ExchangeAPIError):
            await breaker.call(AsyncMock(side_effect=ExchangeAPIError("funds", terminal=True)))
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_old_failures_leave_window(self, clock):
        breaker = self._breaker(clock, failure_threshold=2, monitoring_window=10.0)
        with pytest.raises(NetworkError):
            await breaker.call(AsyncMock(side_effect=NetworkError("down")))
        clock.advance(11)
        with pytest.raises(NetworkError):
            await breaker.call(AsyncMock(side_effect=NetworkError("down")))
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_count(self, clock):
        breaker = self._breaker(clock, failure_threshold=2)
        with pytest.raises(NetworkError):
            await breaker.call(AsyncMock(side_effect=NetworkError("down")))
        await breaker.call(AsyncMock(return_value=1))
        with pytest.raises(NetworkError):
            await breaker.call(AsyncMock(side_effect=NetworkError("down")))
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset(self, clock):
        breaker = self._breaker(clock, failure_threshold=1)
        with pytest.raises(NetworkError):
            await breaker.call(AsyncMock(side_effect=NetworkError("down")))
        breaker.reset()
        assert breaker.get_status()['state'] == "closed"

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)


class TestRetryPolicy:
    """Test bounded retries with backoff."""

    def _policy(self, fake_sleep, clock, **kwargs):
        config = RetryConfig(**{'max_attempts': 3, 'base_delay': 1.0, 'max_delay': 10.0,
                                'multiplier': 2.0, 'jitter': 0.0, **kwargs})
        return RetryPolicy(config, sleep=fake_sleep, clock=clock)

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, fake_sleep, clock):
        operation = AsyncMock(side_effect=[NetworkError("a"), NetworkError("b"), "done"])
        retries = []
        result = await self._policy(fake_sleep, clock).execute(
            operation, name="op", on_retry=lambda n, e, d: retries.append((n, d)))
        assert result == "done"
        assert fake_sleep.calls == [1.0, 2.0]
        assert retries == [(1, 1.0), (2, 2.0)]

    @pytest.mark.asyncio
    async def test_exhaustion(self, fake_sleep, clock):
        operation = AsyncMock(side_effect=NetworkError("down"))
        with pytest.raises(RetryExhaustedError) as exc_info:
            await self._policy(fake_sleep, clock).execute(operation, name="place_order")
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, NetworkError)
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self, fake_sleep, clock):
        operation = AsyncMock(side_effect=ExchangeAPIError("funds", terminal=True))
        with pytest.raises(ExchangeAPIError):
            await self._policy(fake_sleep, clock).execute(operation)
        assert operation.await_count == 1
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    async def test_rate_limit_waits_until_reset(self, fake_sleep, clock):
        error = RateLimitError("busy", reset_time=clock() + 7.5)
        operation = AsyncMock(side_effect=[error, "ok"])
        assert await self._policy(fake_sleep, clock).execute(operation) == "ok"
        assert fake_sleep.calls == [pytest.approx(7.5)]

    def test_delay_capped_and_jittered(self, clock):
        policy = RetryPolicy(RetryConfig(base_delay=1.0, max_delay=5.0, multiplier=3.0, jitter=0.5),
                             clock=clock, rng=lambda: 0.0)
        assert policy.compute_delay(1) == pytest.approx(0.5)
        assert policy.compute_delay(5) == pytest.approx(2.5)

    def test_config_validation(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)
        with pytest.raises(ValueError):
            RetryConfig(multiplier=0.5)
        assert RetryConfig.from_dict({'max_attempts': 5, 'unknown': 1}).max_attempts == 5


class TestRateLimiter:
    """Test fixed-window counting and waiting."""

    def _limiter(self, clock, fake_sleep=None, **kwargs):
        return RateLimiter(categories={'orders': {'limit': 2, 'window': 10.0}}, clock=clock,
                           sleep=fake_sleep, **kwargs)

    def test_ceiling_and_reset_time(self, clock):
        limiter = self._limiter(clock)
        assert limiter.check_limit('orders').remaining == 1
        assert limiter.check_limit('orders').allowed
        rejected = limiter.check_limit('orders')
        assert not rejected.allowed
        assert rejected.reset_time == clock() + 10.0

        clock.advance(10.0)
        assert limiter.check_limit('orders').allowed

    def test_identifiers_are_independent(self, clock):
        limiter = self._limiter(clock)
        limiter.check_limit('orders', 'a')
        limiter.check_limit('orders', 'a')
        assert limiter.check_limit('orders', 'b').allowed

    def test_unknown_category(self, clock):
        with pytest.raises(ValidationError):
            self._limiter(clock).check_limit('bogus')

    @pytest.mark.asyncio
    async def test_wait_for_limit_blocks_until_window_resets(self, clock, fake_sleep):
        limiter = self._limiter(clock, fake_sleep)
        limiter.check_limit('orders')
        limiter.check_limit('orders')
        result = await limiter.wait_for_limit('orders')
        assert result.allowed
        assert sum(fake_sleep.calls) == pytest.approx(10.0)
        assert limiter.get_stats()['waits'] == 1

    @pytest.mark.asyncio
    async def test_wait_for_limit_times_out(self, clock, fake_sleep):
        limiter = self._limiter(clock, fake_sleep)
        limiter.check_limit('orders')
        limiter.check_limit('orders')
        with pytest.raises(RateLimitError) as exc_info:
            await limiter.wait_for_limit('orders', max_wait=3.0)
        assert exc_info.value.reset_time == pytest.approx(1010.0)
        assert limiter.get_stats()['wait_timeouts'] == 1

    def test_info_reset_and_cleanup(self, clock):
        limiter = self._limiter(clock)
        limiter.check_limit('orders', 'a')
        limiter.check_limit('orders', 'b')
        assert limiter.get_limit_info('orders', 'a').remaining == 1
        assert limiter.reset_limit('orders', 'a') == 1
        assert limiter.get_limit_info('orders', 'a').remaining == 2

        clock.advance(11)
        assert limiter.cleanup_expired() == 1
        assert limiter.get_stats()['active_windows'] == 0

    @pytest.mark.asyncio
    async def test_sweeper_lifecycle(self, clock):
        limiter = self._limiter(clock)
        task = limiter.start_sweeper(interval=60.0)
        assert limiter.start_sweeper() is task
        await limiter.stop_sweeper()
        assert task.cancelled()
