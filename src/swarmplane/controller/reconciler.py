"""
Reconciler base class.

``reconcile(name)`` never raises: every outcome becomes a ReconcileResult
that the controller turns into a requeue decision.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ClassVar, Optional

from pydantic import BaseModel

from swarmplane.errors import NotFoundError, TransientInfraError, ValidationError
from swarmplane.models import utcnow


@dataclass
class ReconcileResult:
    requeue_after: Optional[float] = None   # 0 means immediately
    error: Optional[str] = None

    @classmethod
    def done(cls) -> "ReconcileResult":
        return cls()

    @classmethod
    def requeue(cls, after: float = 0.0) -> "ReconcileResult":
        return cls(requeue_after=max(0.0, after))

    @classmethod
    def failed(cls, error: str) -> "ReconcileResult":
        return cls(error=error)


def earliest(*delays: Optional[float]) -> Optional[float]:
    """Smallest of the given requeue delays, ignoring None."""
    present = [d for d in delays if d is not None]
    return min(present) if present else None


class Reconciler:
    """Converges one object kind towards its declared spec."""

    kind: ClassVar[type[BaseModel]]

    def __init__(self, store, clock: Callable[[], datetime] = utcnow, metrics=None):
        self.store = store
        self.clock = clock
        self.metrics = metrics
        self.logger = logging.getLogger(f"swarmplane.{self.kind.KIND.lower()}")

    async def reconcile(self, name: str) -> ReconcileResult:
        start = time.perf_counter()
        try:
            result = await self._reconcile(name)
        except NotFoundError:
            result = ReconcileResult.done()
        except ValidationError as e:
            self.logger.error(f"{self.kind.KIND} {name}: {e.reason}: {e}")
            result = ReconcileResult.done()
        except TransientInfraError as e:
            self.logger.warning(f"{self.kind.KIND} {name}: {e.reason}, requeueing: {e}")
            result = ReconcileResult.failed(f"{e.reason}: {e}")
        except Exception as e:
            self.logger.exception(f"{self.kind.KIND} {name}: unexpected reconcile error")
            result = ReconcileResult.failed(f"{type(e).__name__}: {e}")
        if self.metrics is not None:
            await self.metrics.record(
                "reconcile_duration_seconds",
                time.perf_counter() - start,
                kind=self.kind.KIND,
                outcome="error" if result.error else "success",
            )
        return result

    async def _reconcile(self, name: str) -> ReconcileResult:
        raise NotImplementedError

    async def write_status(self, obj: BaseModel, before: BaseModel) -> BaseModel:
        """Persist ``obj.status`` only if it differs from ``before``."""
        if obj.status == before:
            return obj
        return await self.store.update_status(obj)

    async def ensure_finalizer(self, obj: BaseModel, finalizer: str) -> BaseModel:
        if finalizer in obj.metadata.finalizers:
            return obj
        obj.metadata.finalizers.append(finalizer)
        return await self.store.update(obj)

    async def remove_finalizer(self, obj: BaseModel, finalizer: str) -> None:
        if finalizer not in obj.metadata.finalizers:
            return
        obj.metadata.finalizers.remove(finalizer)
        await self.store.update(obj)
