"""
Swarmplane Checkpoint Storage
=============================

Result storage for task checkpoints. A checkpoint records which subtasks of
a task have completed, together with their result payloads, so a failed task
can resume without re-executing finished work.

Design decisions
----------------
* **Atomic writes** -- each save writes to a temporary file in the same
  directory, then calls ``os.replace()``.
* **Stdlib only** -- all blocking I/O is delegated to ``asyncio.to_thread()``.
* **Envelope format** -- every checkpoint JSON carries version, step and
  ISO-8601 timestamp metadata alongside the payload.
* **Step-keyed files** -- ``step_<n>.json`` where ``n`` is the number of
  completed subtasks, so saving the same step twice overwrites one file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

from swarmplane.models import utcnow

logger = logging.getLogger("swarmplane.checkpoint")

__checkpoint_version__ = 1


@dataclass
class Checkpoint:
    task_id: str
    step: int
    payload: dict[str, Any]
    saved_at: str = ""

    @property
    def completed(self) -> dict[str, dict[str, Any]]:
        return self.payload.get("completed", {})


class CheckpointStore(Protocol):
    async def save(self, task_id: str, step: int, payload: dict[str, Any]) -> None: ...

    async def load(self, task_id: str) -> Optional[Checkpoint]: ...

    async def delete(self, task_id: str) -> None: ...


class FileCheckpointStore:
    """Checkpoints stored as JSON files in ``<checkpoint_dir>/<task_id>/``."""

    def __init__(self, checkpoint_dir: str | Path = "~/swarmplane-checkpoints") -> None:
        self.base_dir = Path(checkpoint_dir).expanduser()

    def _task_dir(self, task_id: str) -> Path:
        return self.base_dir / task_id

    async def save(self, task_id: str, step: int, payload: dict[str, Any]) -> Path:
        envelope = {
            "__checkpoint_version__": __checkpoint_version__,
            "__step__": step,
            "__timestamp__": utcnow().isoformat(),
            "payload": payload,
        }
        task_dir = self._task_dir(task_id)
        target = task_dir / f"step_{step:04d}.json"

        def _atomic_write() -> None:
            task_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = str(target) + ".tmp"
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(envelope, f, indent=2, default=str)
                os.replace(tmp_path, str(target))
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise

        await asyncio.to_thread(_atomic_write)
        logger.info("Checkpoint saved: %s/%s", task_id, target.name)
        return target

    async def load(self, task_id: str) -> Optional[Checkpoint]:
        """Load the highest-step checkpoint; corrupt files are logged and skipped."""
        task_dir = self._task_dir(task_id)

        def _load() -> Optional[Checkpoint]:
            if not task_dir.exists():
                return None
            files = sorted(task_dir.glob("step_*.json"), reverse=True)
            for f in files:
                try:
                    with open(f, encoding="utf-8") as fh:
                        data = json.load(fh)
                    return Checkpoint(
                        task_id=task_id,
                        step=int(data["__step__"]),
                        payload=dict(data["payload"]),
                        saved_at=data.get("__timestamp__", ""),
                    )
                except (OSError, ValueError, KeyError, TypeError) as exc:
                    logger.warning("Skipping corrupt checkpoint %s: %s", f.name, exc)
                    continue
            return None

        return await asyncio.to_thread(_load)

    async def delete(self, task_id: str) -> None:
        task_dir = self._task_dir(task_id)

        def _remove() -> None:
            if task_dir.exists():
                shutil.rmtree(task_dir)

        await asyncio.to_thread(_remove)
        logger.info("Checkpoints cleaned up for task %s", task_id)


@dataclass
class InMemoryCheckpointStore:
    """Checkpoint store kept in process memory."""

    checkpoints: dict[str, Checkpoint] = field(default_factory=dict)
    saves: list[tuple[str, int]] = field(default_factory=list)

    async def save(self, task_id: str, step: int, payload: dict[str, Any]) -> None:
        current = self.checkpoints.get(task_id)
        if current is not None and current.step > step:
            return
        self.checkpoints[task_id] = Checkpoint(
            task_id=task_id,
            step=step,
            payload=json.loads(json.dumps(payload, default=str)),
            saved_at=utcnow().isoformat(),
        )
        self.saves.append((task_id, step))

    async def load(self, task_id: str) -> Optional[Checkpoint]:
        return self.checkpoints.get(task_id)

    async def delete(self, task_id: str) -> None:
        self.checkpoints.pop(task_id, None)
