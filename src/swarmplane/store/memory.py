"""
In-memory declarative state store.

Objects are pydantic models keyed by (kind, name). Every write bumps a
store-wide revision which becomes the object's ``resource_version``; a write
carrying an older version raises ConflictError. Callers always receive deep
copies, so mutating a returned object never touches stored state.

Deletion is two-phase: deleting an object that still carries finalizers only
stamps ``deletion_timestamp``; the object disappears once its last finalizer
is removed through ``update``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional, TypeVar

from pydantic import BaseModel

from swarmplane.errors import AlreadyExistsError, ConflictError, NotFoundError
from swarmplane.models import utcnow

logger = logging.getLogger("swarmplane.store")

T = TypeVar("T", bound=BaseModel)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


@dataclass
class WatchEvent:
    type: str
    kind: str
    name: str
    obj: Any


class Watch:
    """Ordered stream of events for one object kind."""

    def __init__(self, store: "InMemoryStore", kind: str):
        self._store = store
        self.kind = kind
        self._queue: asyncio.Queue[Optional[WatchEvent]] = asyncio.Queue()

    def _push(self, event: Optional[WatchEvent]) -> None:
        self._queue.put_nowait(event)

    def pending(self) -> int:
        return self._queue.qsize()

    async def next(self) -> Optional[WatchEvent]:
        return await self._queue.get()

    def close(self) -> None:
        self._store._unwatch(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[WatchEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[WatchEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


def _merge(target: dict, patch: dict) -> dict:
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = value
    return target


class InMemoryStore:
    """Versioned object store with finalizers and watch streams."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._objects: dict[str, dict[str, BaseModel]] = {}
        self._watches: dict[str, list[Watch]] = {}
        self._revision = 0
        self.write_count = 0

    # ── reads ────────────────────────────────────────────────────────────

    async def get(self, kind: type[T], name: str) -> T:
        obj = self._objects.get(kind.KIND, {}).get(name)
        if obj is None:
            raise NotFoundError(f"{kind.KIND} {name!r} not found")
        return obj.model_copy(deep=True)

    async def list(
        self,
        kind: type[T],
        owner: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> list[T]:
        result = []
        for name in sorted(self._objects.get(kind.KIND, {})):
            obj = self._objects[kind.KIND][name]
            if owner is not None and obj.metadata.owner != owner:
                continue
            if labels and any(obj.metadata.labels.get(k) != v for k, v in labels.items()):
                continue
            result.append(obj.model_copy(deep=True))
        return result

    # ── writes ───────────────────────────────────────────────────────────

    async def create(self, obj: T) -> T:
        bucket = self._objects.setdefault(obj.KIND, {})
        name = obj.metadata.name
        if name in bucket:
            raise AlreadyExistsError(f"{obj.KIND} {name!r} already exists")
        stored = obj.model_copy(deep=True)
        stored.metadata.resource_version = self._next_revision()
        stored.metadata.generation = 1
        stored.metadata.creation_timestamp = self._clock()
        stored.metadata.deletion_timestamp = None
        bucket[name] = stored
        self._emit(ADDED, stored)
        return stored.model_copy(deep=True)

    async def update(self, obj: T) -> T:
        """Replace metadata and spec; the stored status is preserved."""
        current = self._current(obj)
        stored = obj.model_copy(deep=True)
        stored.status = current.status.model_copy(deep=True)
        stored.metadata.creation_timestamp = current.metadata.creation_timestamp
        stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
        stored.metadata.generation = current.metadata.generation
        if stored.spec != current.spec:
            stored.metadata.generation += 1
        return self._commit(stored)

    async def update_status(self, obj: T) -> T:
        """Replace only the status of the stored object."""
        current = self._current(obj)
        stored = current.model_copy(deep=True)
        stored.status = obj.status.model_copy(deep=True)
        return self._commit(stored)

    async def patch(self, kind: type[T], name: str, changes: dict) -> T:
        """Merge-patch ``spec``/``metadata`` fields without a version check.

        ``None`` values remove keys, nested dicts merge recursively.
        """
        current = await self.get(kind, name)
        data = current.model_dump(mode="python", by_alias=True)
        merged = _merge(data, {k: v for k, v in changes.items() if k in ("spec", "metadata")})
        patched = kind.model_validate(merged)
        patched.metadata.resource_version = current.metadata.resource_version
        return await self.update(patched)

    async def delete(self, kind: type[T], name: str) -> None:
        bucket = self._objects.get(kind.KIND, {})
        current = bucket.get(name)
        if current is None:
            raise NotFoundError(f"{kind.KIND} {name!r} not found")
        if not current.metadata.finalizers:
            self._remove(current)
            return
        if current.metadata.deletion_timestamp is not None:
            return
        stored = current.model_copy(deep=True)
        stored.metadata.deletion_timestamp = self._clock()
        self._commit(stored)

    # ── watch ────────────────────────────────────────────────────────────

    def watch(self, kind: type[BaseModel]) -> Watch:
        watch = Watch(self, kind.KIND)
        self._watches.setdefault(kind.KIND, []).append(watch)
        return watch

    def _unwatch(self, watch: Watch) -> None:
        watches = self._watches.get(watch.kind, [])
        if watch in watches:
            watches.remove(watch)

    # ── internals ────────────────────────────────────────────────────────

    def _next_revision(self) -> int:
        self._revision += 1
        self.write_count += 1
        return self._revision

    def _current(self, obj: BaseModel) -> BaseModel:
        current = self._objects.get(obj.KIND, {}).get(obj.metadata.name)
        if current is None:
            raise NotFoundError(f"{obj.KIND} {obj.metadata.name!r} not found")
        if current.metadata.resource_version != obj.metadata.resource_version:
            raise ConflictError(
                f"{obj.KIND} {obj.metadata.name!r}: stale resource version "
                f"{obj.metadata.resource_version} (current {current.metadata.resource_version})"
            )
        return current

    def _commit(self, stored: BaseModel) -> BaseModel:
        if stored.metadata.deletion_timestamp is not None and not stored.metadata.finalizers:
            self._remove(stored)
            return stored.model_copy(deep=True)
        stored.metadata.resource_version = self._next_revision()
        self._objects[stored.KIND][stored.metadata.name] = stored
        self._emit(MODIFIED, stored)
        return stored.model_copy(deep=True)

    def _remove(self, obj: BaseModel) -> None:
        self._objects[obj.KIND].pop(obj.metadata.name, None)
        self._next_revision()
        logger.debug(f"Removed {obj.KIND} {obj.metadata.name}")
        self._emit(DELETED, obj)

    def _emit(self, event_type: str, obj: BaseModel) -> None:
        for watch in self._watches.get(obj.KIND, []):
            watch._push(WatchEvent(event_type, obj.KIND, obj.metadata.name, obj.model_copy(deep=True)))
