"""Tests for the deduplicating work queue."""

import asyncio

import pytest

from swarmplane.controller import WorkQueue


class TestDedupe:
    @pytest.mark.asyncio
    async def test_key_queued_once(self):
        queue = WorkQueue()
        queue.add("a")
        queue.add("a")
        queue.add("b")
        assert len(queue) == 2
        assert await queue.get() == "a"
        assert await queue.get() == "b"

    @pytest.mark.asyncio
    async def test_in_flight_key_requeued_after_done(self):
        queue = WorkQueue()
        queue.add("a")
        key = await queue.get()
        queue.add("a")
        assert len(queue) == 0  # never handed to a second worker

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == "a"

    @pytest.mark.asyncio
    async def test_done_without_readd(self):
        queue = WorkQueue()
        queue.add("a")
        queue.done(await queue.get())
        assert len(queue) == 0


class TestDelays:
    @pytest.mark.asyncio
    async def test_add_after(self):
        queue = WorkQueue()
        queue.add_after("a", 0.01)
        assert len(queue) == 0
        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    @pytest.mark.asyncio
    async def test_earliest_deadline_wins(self):
        queue = WorkQueue()
        queue.add_after("a", 60)
        queue.add_after("a", 0.01)
        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    @pytest.mark.asyncio
    async def test_rate_limited_backoff_doubles(self):
        queue = WorkQueue(base_delay=1.0, max_delay=5.0)
        delays = [queue.add_rate_limited("a") for _ in range(4)]
        assert delays == [1.0, 2.0, 4.0, 5.0]
        assert queue.num_requeues("a") == 4

        queue.forget("a")
        assert queue.num_requeues("a") == 0
        assert queue.add_rate_limited("a") == 1.0
        queue.shutdown()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_wakes_waiters(self):
        queue = WorkQueue()
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        queue.shutdown()
        assert await asyncio.wait_for(waiter, timeout=1) is None

    @pytest.mark.asyncio
    async def test_adds_ignored_after_shutdown(self):
        queue = WorkQueue()
        queue.shutdown()
        queue.add("a")
        queue.add_after("b", 1)
        assert len(queue) == 0
        assert queue.shutting_down
