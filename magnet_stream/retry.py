"""
Retry Logic and Rate Limiting for magnet-stream
Provides exponential backoff for transient debrid failures and a token
bucket that keeps the request rate under the service's per-minute cap.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Awaitable, TypeVar, Tuple, Type

from .exceptions import RateLimitedError, RateLimitTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 4  # first try + 3 retries
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0

    # Only these error kinds are retried, everything else surfaces at once
    retry_on: Tuple[Type[Exception], ...] = (RateLimitedError,)


class RetryHandler:
    """
    Handle retries with exponential backoff.
    Delay before retry n is initial_delay * base^(n-1), so 1s, 2s, 4s by default.
    """

    def __init__(
        self,
        config: RetryConfig = None,
        sleep: Callable[[float], Awaitable] = None,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: str = None,
        on_retry: Callable[[Exception, int], Awaitable] = None,
        should_retry: Callable[[Exception], bool] = None,
    ) -> T:
        """
        Execute operation with retry logic.

        Args:
            operation: Async callable to execute
            operation_id: Identifier for log lines (optional)
            on_retry: Callback before each retry (optional)
            should_retry: Custom check replacing the `retry_on` kinds

        Returns:
            Result from operation

        Raises:
            Last exception if all retries fail
        """
        max_attempts = self.config.max_attempts
        operation_id = operation_id or f"op_{id(operation)}"

        for attempt in range(1, max_attempts + 1):
            try:
                result = await operation()
                if attempt > 1:
                    logger.info(
                        f"Operation {operation_id} succeeded on attempt {attempt}"
                    )
                return result

            except Exception as e:
                if not self._is_retryable(e, should_retry):
                    logger.debug(
                        f"Operation {operation_id} failed with non-retryable error: {e}"
                    )
                    raise

                if attempt >= max_attempts:
                    logger.error(
                        f"Operation {operation_id} failed after {attempt} attempts: {e}"
                    )
                    raise

                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Operation {operation_id} failed (attempt {attempt}/{max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )

                if on_retry:
                    await on_retry(e, attempt)

                await self._sleep(delay)

    def _is_retryable(
        self,
        error: Exception,
        custom_check: Callable[[Exception], bool] = None,
    ) -> bool:
        if custom_check:
            return custom_check(error)
        return isinstance(error, self.config.retry_on)

    def _calculate_delay(self, attempt: int) -> float:
        """Exponential backoff capped at max_delay."""
        delay = self.config.initial_delay * (
            self.config.exponential_base ** (attempt - 1)
        )
        return min(delay, self.config.max_delay)


class RateLimiter:
    """
    Token bucket rate limiter for debrid API calls.

    Holds at most `capacity` tokens refilled continuously over `window`
    seconds. A log of grant times additionally caps grants to `capacity`
    in any sliding window, so a full bucket plus its refill can never
    burst past the service limit.
    """

    def __init__(
        self,
        capacity: int = 250,
        window: float = 60.0,
        clock: Callable[[], float] = None,
        sleep: Callable[[float], Awaitable] = None,
    ):
        self.capacity = capacity
        self.window = window
        self.refill_rate = capacity / window
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._tokens = float(capacity)
        self._last_refill = self._clock()
        self._grants: deque = deque()
        self._lock = asyncio.Lock()
        self._total_requests = 0
        self._throttled_requests = 0
        self._penalties = 0

    @property
    def tokens(self) -> float:
        return self._tokens

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._last_refill = now
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_rate)

        cutoff = now - self.window
        while self._grants and self._grants[0] <= cutoff:
            self._grants.popleft()

    async def acquire(self, timeout: float = None) -> bool:
        """
        Acquire a token, waiting if necessary.

        Args:
            timeout: Maximum time to wait for a token (None waits forever)

        Returns:
            True if token acquired, False if timeout
        """
        start_time = self._clock()

        while True:
            async with self._lock:
                now = self._clock()
                self._refill(now)

                if self._tokens >= 1.0 and len(self._grants) < self.capacity:
                    self._tokens -= 1.0
                    self._grants.append(now)
                    self._total_requests += 1
                    return True

                wait_time = 0.0
                if self._tokens < 1.0:
                    wait_time = (1.0 - self._tokens) / self.refill_rate
                if len(self._grants) >= self.capacity:
                    wait_time = max(wait_time, self._grants[0] + self.window - now)

            if timeout is not None and self._clock() - start_time + wait_time > timeout:
                self._throttled_requests += 1
                return False

            await self._sleep(max(wait_time, 0.001))

    async def acquire_or_raise(self, timeout: float = None) -> None:
        """Acquire a token or raise RateLimitTimeoutError."""
        if not await self.acquire(timeout=timeout):
            raise RateLimitTimeoutError(
                f"No rate limit token within {timeout}s", timeout=timeout
            )

    async def penalize(self, tokens: int = 10) -> None:
        """Drain tokens after the service pushed back with a 429."""
        async with self._lock:
            self._refill(self._clock())
            self._tokens = max(0.0, self._tokens - tokens)
            self._penalties += 1
        logger.debug(f"Rate limiter penalized by {tokens} tokens")

    def get_stats(self) -> dict:
        """Get rate limiter statistics."""
        return {
            "capacity": self.capacity,
            "window_seconds": self.window,
            "available_tokens": self._tokens,
            "granted_in_window": len(self._grants),
            "total_requests": self._total_requests,
            "throttled_requests": self._throttled_requests,
            "penalties": self._penalties,
        }
