"""
Release queue.

When an agent fails or is torn down, its assignment ledger is emptied and
every entry is pushed here. The task scheduler drains the entries for its
task and treats each one as a failed attempt. Entries are removed only when
acknowledged, after the task status recording the failure is persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from swarmplane.models import SubtaskRef

logger = logging.getLogger("swarmplane.scheduler.queue")


@dataclass(frozen=True)
class ReleasedSubtask:
    ref: SubtaskRef
    agent: str
    reason: str


class ReleaseQueue:
    def __init__(self):
        self._pending: dict[str, list[ReleasedSubtask]] = {}
        self._listeners: list[Callable[[str], None]] = []

    def __len__(self) -> int:
        return sum(len(items) for items in self._pending.values())

    def subscribe(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(task_name)`` whenever work for that task is released."""
        self._listeners.append(listener)

    def release(self, agent: str, refs: Iterable[SubtaskRef], reason: str) -> list[ReleasedSubtask]:
        added = []
        for ref in refs:
            items = self._pending.setdefault(ref.task, [])
            if any(item.ref == ref for item in items):
                continue
            item = ReleasedSubtask(ref=ref, agent=agent, reason=reason)
            items.append(item)
            added.append(item)
        for task in sorted({item.ref.task for item in added}):
            logger.info(f"Released work of agent {agent} for task {task}: {reason}")
            for listener in self._listeners:
                listener(task)
        return added

    def pending(self, task: Optional[str] = None) -> list[ReleasedSubtask]:
        if task is not None:
            return list(self._pending.get(task, []))
        return [item for items in self._pending.values() for item in items]

    def ack(self, task: str, items: Iterable[ReleasedSubtask]) -> None:
        acked = set(items)
        remaining = [item for item in self._pending.get(task, []) if item not in acked]
        if remaining:
            self._pending[task] = remaining
        else:
            self._pending.pop(task, None)
