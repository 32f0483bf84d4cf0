"""Tests for swarmplane safeguards."""

import asyncio

import pytest

from swarmplane.errors import ConflictError, ExternalTimeout
from swarmplane.safeguards import (
    CircuitBreaker,
    CircuitBreakerOpen,
    bounded_call,
    retry_on_conflict,
)


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# ── bounded_call ─────────────────────────────────────────────────────────────


class TestBoundedCall:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def fast():
            return 42

        assert await bounded_call(fast, timeout=1.0) == 42

    @pytest.mark.asyncio
    async def test_timeout_raises_external_timeout(self):
        async def slow():
            await asyncio.sleep(10)

        with pytest.raises(ExternalTimeout, match="metric read"):
            await bounded_call(slow, timeout=0.01, operation="metric read")

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        async def broken():
            raise ConnectionError("refused")

        with pytest.raises(ConnectionError):
            await bounded_call(broken, timeout=1.0)


# ── retry_on_conflict ────────────────────────────────────────────────────────


class TestRetryOnConflict:
    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConflictError("stale")
            return "ok"

        assert await retry_on_conflict(flaky, attempts=5, max_wait=0.01) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_reraises_after_attempts(self):
        calls = []

        async def always_stale():
            calls.append(1)
            raise ConflictError("stale")

        with pytest.raises(ConflictError):
            await retry_on_conflict(always_stale, attempts=3, max_wait=0.01)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await retry_on_conflict(broken, attempts=5)
        assert len(calls) == 1


# ── CircuitBreaker ───────────────────────────────────────────────────────────


class TestCircuitBreaker:
    def test_starts_closed(self):
        cb = CircuitBreaker()
        assert cb.state == CircuitBreaker.CLOSED
        cb.check()  # should not raise

    def test_opens_after_threshold_failures(self):
        cb = CircuitBreaker(failure_threshold=3, reset_timeout=60.0)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitBreaker.CLOSED

        cb.record_failure()  # 3rd failure
        assert cb.state == CircuitBreaker.OPEN

        with pytest.raises(CircuitBreakerOpen):
            cb.check()

    def test_success_resets_failure_count(self):
        cb = CircuitBreaker(failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        cb.record_success()
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitBreaker.CLOSED

    def test_half_open_after_reset_timeout(self):
        clock = ManualClock()
        cb = CircuitBreaker(failure_threshold=2, reset_timeout=60.0, clock=clock)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitBreaker.OPEN

        clock.now += 60.0
        assert cb.state == CircuitBreaker.HALF_OPEN
        cb.check()  # should NOT raise in half-open

    def test_half_open_success_closes(self):
        clock = ManualClock()
        cb = CircuitBreaker(failure_threshold=2, reset_timeout=60.0, clock=clock)
        cb.record_failure()
        cb.record_failure()
        clock.now += 61.0
        assert cb.state == CircuitBreaker.HALF_OPEN

        cb.record_success()
        assert cb.state == CircuitBreaker.CLOSED
        assert cb.failure_count == 0

    def test_half_open_failure_reopens(self):
        clock = ManualClock()
        cb = CircuitBreaker(failure_threshold=2, reset_timeout=60.0, clock=clock)
        cb.record_failure()
        cb.record_failure()
        clock.now += 61.0
        assert cb.state == CircuitBreaker.HALF_OPEN

        cb.record_failure()
        assert cb.state == CircuitBreaker.OPEN

    def test_reset(self):
        cb = CircuitBreaker(failure_threshold=1)
        cb.record_failure()
        assert cb.state == CircuitBreaker.OPEN
        cb.reset()
        assert cb.state == CircuitBreaker.CLOSED
