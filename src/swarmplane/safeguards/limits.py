"""
Safeguards for External Calls
=============================

Bounded external calls, in-place retry of optimistic-concurrency conflicts,
and a circuit breaker that stops hammering a metric source that keeps
failing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from swarmplane.errors import ConflictError, ExternalTimeout

logger = logging.getLogger("swarmplane.safeguards")

T = TypeVar("T")


class CircuitBreakerOpen(Exception):
    """Raised when circuit breaker is open due to repeated failures."""


async def bounded_call(
    factory: Callable[[], Awaitable[T]],
    timeout: float,
    operation: str = "external call",
) -> T:
    """Await ``factory()`` for at most ``timeout`` seconds.

    Raises:
        ExternalTimeout: If the call does not finish in time.
    """
    try:
        return await asyncio.wait_for(factory(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"{operation} timed out after {timeout:.1f}s")
        raise ExternalTimeout(f"{operation} timed out after {timeout:.1f}s")


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 5,
    max_wait: float = 0.5,
) -> T:
    """Re-run a read-modify-write ``operation`` while it hits ConflictError.

    The operation must re-read the object on every attempt. The last
    ConflictError is re-raised once ``attempts`` is exhausted.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.01, max=max_wait),
        retry=retry_if_exception_type(ConflictError),
        reraise=True,
    ):
        with attempt:
            return await operation()
    raise AssertionError("unreachable")


class CircuitBreaker:
    """Circuit breaker with closed/open/half-open states.

    Opens after `failure_threshold` consecutive failures, preventing
    further requests until `reset_timeout` elapses. After timeout,
    enters half-open state: one request allowed to test recovery.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_timeout: float = 60.0,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._state: str = self.CLOSED
        self._failure_count: int = 0
        self._last_failure_time: float = 0.0

    @property
    def state(self) -> str:
        if self._state == self.OPEN:
            if self._clock() - self._last_failure_time >= self.reset_timeout:
                self._state = self.HALF_OPEN
                logger.info(f"Circuit breaker {self.name} transitioning to half-open")
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def check(self) -> None:
        """Check if requests are allowed.

        Raises:
            CircuitBreakerOpen: If circuit is open and timeout hasn't elapsed.
        """
        if self.state == self.OPEN:
            remaining = self.reset_timeout - (self._clock() - self._last_failure_time)
            raise CircuitBreakerOpen(
                f"Circuit breaker {self.name} open after {self._failure_count} failures. "
                f"Retry in {remaining:.1f}s"
            )

    def record_success(self) -> None:
        self._failure_count = 0
        if self._state != self.CLOSED:
            logger.info(f"Circuit breaker {self.name} closed after success (was {self._state})")
        self._state = self.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()
        if self._state == self.HALF_OPEN or self._failure_count >= self.failure_threshold:
            if self._state != self.OPEN:
                logger.error(
                    f"Circuit breaker {self.name} opened after "
                    f"{self._failure_count} consecutive failures"
                )
            self._state = self.OPEN

    def reset(self) -> None:
        self._state = self.CLOSED
        self._failure_count = 0
