"""
Deduplicating per-key work queue.

A key that is already queued is not queued twice. A key that is being
processed is never handed to a second worker; if it is added again while in
flight it is re-queued once the worker calls ``done``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Optional

logger = logging.getLogger("swarmplane.controller.queue")


class WorkQueue:
    def __init__(self, name: str = "", base_delay: float = 1.0, max_delay: float = 300.0):
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._wakeup.set()

    def add_after(self, key: str, delay: float) -> None:
        """Add ``key`` once ``delay`` seconds have passed.

        Only the earliest pending deadline per key is kept.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None and not existing.cancelled():
            if existing.when() <= deadline:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(deadline, self._fire, key)

    def add_rate_limited(self, key: str) -> float:
        """Re-add ``key`` with per-key exponential backoff; returns the delay."""
        failures = self._failures.get(key, 0)
        delay = min(self.base_delay * (2 ** failures), self.max_delay)
        self._failures[key] = failures + 1
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Optional[str]:
        """Wait for the next key; returns None once the queue is shut down."""
        while not self._queue:
            if self._shutting_down:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()
        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._wakeup.set()

    def shutdown(self) -> None:
        self._shutting_down = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._wakeup.set()

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)
