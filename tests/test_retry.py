"""
Tests for Retry Logic and Rate Limiting (magnet_stream/retry.py)
"""

import pytest
from unittest.mock import AsyncMock

from magnet_stream.exceptions import (
    AuthInvalidError,
    NotFoundError,
    RateLimitedError,
    RateLimitTimeoutError,
    ServiceUnreachableError,
)
from magnet_stream.retry import (
    RetryHandler,
    RetryConfig,
    RateLimiter,
)


class FakeClock:
    """Monotonic clock advanced only by the limiter's own sleeps."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.now += delay


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_default_values(self):
        """Defaults give one try plus three retries at 1s, 2s, 4s."""
        config = RetryConfig()
        assert config.max_attempts == 4
        assert config.initial_delay == 1.0
        assert config.exponential_base == 2.0
        assert config.retry_on == (RateLimitedError,)


class TestRetryHandler:
    """Tests for RetryHandler."""

    @pytest.fixture
    def handler(self, no_sleep):
        return RetryHandler(RetryConfig(), sleep=no_sleep)

    async def test_successful_operation(self, handler):
        """Test successful operation doesn't retry."""
        operation = AsyncMock(return_value="success")
        result = await handler.with_retry(operation, operation_id="test")
        assert result == "success"
        operation.assert_called_once()

    async def test_rate_limits_back_off(self, handler, no_sleep):
        """Three retries wait 1s, 2s and 4s, then the error surfaces."""
        attempts = []

        async def always_limited():
            attempts.append(1)
            raise RateLimitedError("Rate limit exceeded")

        with pytest.raises(RateLimitedError):
            await handler.with_retry(always_limited, operation_id="test")

        assert len(attempts) == 4
        assert no_sleep.delays == [1.0, 2.0, 4.0]

    async def test_retry_then_success(self, handler, no_sleep):
        attempts = []

        async def limited_then_success():
            attempts.append(1)
            if len(attempts) < 3:
                raise RateLimitedError("Rate limit exceeded")
            return "success"

        assert await handler.with_retry(limited_then_success, operation_id="test") == "success"
        assert len(attempts) == 3
        assert no_sleep.delays == [1.0, 2.0]

    @pytest.mark.parametrize("error", [
        ServiceUnreachableError("Debrid service returned 503"),
        NotFoundError("Debrid resource not found"),
        AuthInvalidError("Debrid credential rejected"),
        ConnectionError("connection reset"),
    ])
    async def test_other_kinds_surface_immediately(self, handler, no_sleep, error):
        operation = AsyncMock(side_effect=error)

        with pytest.raises(type(error)):
            await handler.with_retry(operation, operation_id="test")

        operation.assert_called_once()
        assert no_sleep.delays == []

    async def test_custom_should_retry(self, handler, no_sleep):
        attempts = []

        async def op():
            attempts.append(1)
            raise ConnectionError("connection reset")

        with pytest.raises(ConnectionError):
            await handler.with_retry(
                op,
                operation_id="test",
                should_retry=lambda e: isinstance(e, ConnectionError),
            )
        assert len(attempts) == 4

    async def test_retry_on_can_be_widened(self, no_sleep):
        handler = RetryHandler(
            RetryConfig(retry_on=(RateLimitedError, ServiceUnreachableError)), sleep=no_sleep
        )
        operation = AsyncMock(side_effect=[ServiceUnreachableError("down"), "ok"])

        assert await handler.with_retry(operation, operation_id="test") == "ok"
        assert no_sleep.delays == [1.0]

    async def test_on_retry_callback(self, handler):
        on_retry = AsyncMock()

        async def always_limited():
            raise RateLimitedError("Rate limit exceeded")

        with pytest.raises(RateLimitedError):
            await handler.with_retry(always_limited, operation_id="test", on_retry=on_retry)

        assert on_retry.call_count == 3
        assert [c.args[1] for c in on_retry.call_args_list] == [1, 2, 3]

    def test_max_delay_cap(self):
        handler = RetryHandler(RetryConfig(initial_delay=10.0, max_delay=15.0))
        assert handler._calculate_delay(1) == 10.0
        assert handler._calculate_delay(5) == 15.0


class TestRateLimiter:
    """Tests for RateLimiter."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    async def test_acquire_success(self, clock):
        limiter = RateLimiter(capacity=10, window=60.0, clock=clock, sleep=clock.sleep)
        assert await limiter.acquire() is True
        assert limiter.tokens == 9

    async def test_grants_never_exceed_capacity_per_window(self, clock):
        """No sliding window ever holds more grants than capacity."""
        limiter = RateLimiter(capacity=5, window=10.0, clock=clock, sleep=clock.sleep)
        grants = []
        for _ in range(23):
            await limiter.acquire()
            grants.append(clock.now)

        for t in grants:
            in_window = [g for g in grants if t - 10.0 < g <= t]
            assert len(in_window) <= 5

        # the first burst is immediate, the sixth waits for the window
        assert grants[4] == 0.0
        assert grants[5] >= 10.0

    async def test_acquire_timeout(self, clock):
        limiter = RateLimiter(capacity=1, window=100.0, clock=clock, sleep=clock.sleep)
        await limiter.acquire()

        assert await limiter.acquire(timeout=0.1) is False
        assert limiter.get_stats()["throttled_requests"] == 1

    async def test_acquire_or_raise_timeout(self, clock):
        limiter = RateLimiter(capacity=1, window=100.0, clock=clock, sleep=clock.sleep)
        await limiter.acquire()

        with pytest.raises(RateLimitTimeoutError):
            await limiter.acquire_or_raise(timeout=0.1)

    async def test_penalize_drains_tokens(self, clock):
        limiter = RateLimiter(capacity=250, window=60.0, clock=clock, sleep=clock.sleep)
        await limiter.acquire()
        await limiter.penalize(10)

        assert limiter.tokens == 239
        assert limiter.get_stats()["penalties"] == 1

    async def test_penalize_floors_at_zero(self, clock):
        limiter = RateLimiter(capacity=5, window=60.0, clock=clock, sleep=clock.sleep)
        await limiter.penalize(10)
        assert limiter.tokens == 0

    async def test_refill_over_time(self, clock):
        limiter = RateLimiter(capacity=60, window=60.0, clock=clock, sleep=clock.sleep)
        await limiter.penalize(60)
        clock.now += 30
        await limiter.acquire()
        assert limiter.tokens == pytest.approx(29)

    async def test_stats(self, clock):
        limiter = RateLimiter(capacity=250, window=60.0, clock=clock, sleep=clock.sleep)
        await limiter.acquire()
        stats = limiter.get_stats()
        assert stats["total_requests"] == 1
        assert stats["capacity"] == 250
        assert stats["granted_in_window"] == 1
