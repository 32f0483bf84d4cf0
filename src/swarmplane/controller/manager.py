"""
Swarmplane Operator
===================

Wires the state store, the external collaborators and the three reconcilers
into running control loops.

    store watch --> WorkQueue --> N workers --> reconciler --> requeue decision

- Cluster, Agent and Task each get their own queue and controller.
- Agent events also enqueue the owning cluster, and tasks waiting for
  capacity in that cluster once an agent becomes ready.
- Work released by a failed agent enqueues the affected task.
- Every object is re-enqueued every ``controller.resync_seconds``.

``run_once`` and ``settle`` reconcile every stored object directly, without
queues or workers, for deterministic tests and one-shot tooling.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from swarmplane.agents import AgentReconciler
from swarmplane.audit import EventRecorder
from swarmplane.autoscaler import Autoscaler, ClusterStateMetricSource, MetricGatherer, MetricSource
from swarmplane.checkpoint import FileCheckpointStore
from swarmplane.cluster import ClusterReconciler
from swarmplane.config import Settings
from swarmplane.controller.queue import WorkQueue
from swarmplane.controller.reconciler import ReconcileResult, Reconciler
from swarmplane.interfaces import InMemoryAgentRuntime, InMemorySecretStore, NoopConsensus
from swarmplane.models import ACTIVE_AGENT_PHASES, Agent, Cluster, Task, TaskPhase, utcnow
from swarmplane.observability import MetricsCollector
from swarmplane.scheduler import ReleaseQueue, TaskReconciler
from swarmplane.store import DELETED, InMemoryStore, WatchEvent

logger = logging.getLogger("swarmplane.controller")


class Controller:
    """Feeds keys from one work queue to a reconciler."""

    def __init__(self, name: str, reconciler: Reconciler, queue: WorkQueue, workers: int = 2):
        self.name = name
        self.reconciler = reconciler
        self.queue = queue
        self.workers = workers

    async def process_next(self) -> bool:
        """Reconcile one key; returns False once the queue has shut down."""
        key = await self.queue.get()
        if key is None:
            return False
        try:
            result = await self.reconciler.reconcile(key)
        finally:
            self.queue.done(key)
        self._apply(key, result)
        return True

    def _apply(self, key: str, result: ReconcileResult) -> None:
        if result.error is not None:
            delay = self.queue.add_rate_limited(key)
            logger.warning(f"{self.name} {key}: {result.error}; retrying in {delay:.1f}s")
            return
        self.queue.forget(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)

    async def _worker(self, index: int) -> None:
        logger.debug(f"{self.name} worker {index} started")
        while await self.process_next():
            pass
        logger.debug(f"{self.name} worker {index} stopped")

    async def run(self) -> None:
        await asyncio.gather(*(self._worker(i) for i in range(self.workers)))


class Operator:
    def __init__(
        self,
        store: Optional[InMemoryStore] = None,
        runtime=None,
        checkpoints=None,
        secrets=None,
        consensus=None,
        metric_sources: Optional[list[MetricSource]] = None,
        settings: Optional[Settings] = None,
        events: Optional[EventRecorder] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or Settings()
        self.clock = clock
        self.store = store or InMemoryStore(clock)
        self.runtime = runtime or InMemoryAgentRuntime()
        self.checkpoints = checkpoints or FileCheckpointStore(self.settings.checkpoint.checkpoint_dir)
        self.secrets = secrets or InMemorySecretStore()
        self.consensus = consensus or NoopConsensus()
        self.events = events or EventRecorder(self.settings.logging.events_file, clock)
        self.metrics = metrics or MetricsCollector()
        self.release_queue = ReleaseQueue()

        scaling = self.settings.autoscaling
        gatherer = MetricGatherer(
            [ClusterStateMetricSource(self.store), *(metric_sources or [])],
            timeout=scaling.metric_timeout_seconds,
            failure_threshold=scaling.breaker_failure_threshold,
            reset_timeout=scaling.breaker_reset_seconds,
        )
        self.clusters = ClusterReconciler(
            self.store,
            secrets=self.secrets,
            gatherer=gatherer,
            autoscaler=Autoscaler(scaling.stabilization_window_seconds, scaling.quantize_scale_up),
            settings=self.settings,
            events=self.events,
            metrics=self.metrics,
            clock=clock,
        )
        self.agents = AgentReconciler(
            self.store,
            self.runtime,
            self.release_queue,
            settings=self.settings,
            consensus=self.consensus,
            events=self.events,
            metrics=self.metrics,
            clock=clock,
        )
        self.tasks = TaskReconciler(
            self.store,
            self.runtime,
            self.checkpoints,
            self.release_queue,
            settings=self.settings,
            events=self.events,
            metrics=self.metrics,
            clock=clock,
        )

        controller = self.settings.controller
        self.controllers: dict[str, Controller] = {}
        for reconciler in (self.clusters, self.agents, self.tasks):
            kind = reconciler.kind.KIND
            queue = WorkQueue(kind, controller.requeue_base_seconds, controller.requeue_max_seconds)
            self.controllers[kind] = Controller(kind, reconciler, queue, controller.workers)
        self.release_queue.subscribe(self.controllers[Task.KIND].queue.add)

        self._watches = []
        self._running: list[asyncio.Task] = []
        self._stopped = asyncio.Event()

    def queue(self, kind: type) -> WorkQueue:
        return self.controllers[kind.KIND].queue

    # ── event routing ────────────────────────────────────────────────────

    async def _route(self, event: WatchEvent) -> None:
        self.controllers[event.kind].queue.add(event.name)
        if event.kind != Agent.KIND:
            return
        cluster = event.obj.metadata.owner
        if cluster:
            self.controllers[Cluster.KIND].queue.add(cluster)
        if event.type != DELETED and event.obj.status.phase in ACTIVE_AGENT_PHASES:
            for task in await self.store.list(Task):
                if task.spec.cluster == cluster and task.status.phase == TaskPhase.SCHEDULED:
                    self.controllers[Task.KIND].queue.add(task.metadata.name)

    async def _pump(self, kind: type) -> None:
        watch = self.store.watch(kind)
        self._watches.append(watch)
        async for event in watch:
            await self._route(event)

    async def _resync(self) -> None:
        interval = self.settings.controller.resync_seconds
        while not self._stopped.is_set():
            await self.enqueue_all()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def enqueue_all(self) -> None:
        for kind in (Cluster, Agent, Task):
            for obj in await self.store.list(kind):
                self.controllers[kind.KIND].queue.add(obj.metadata.name)

    # ── lifecycle ────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Run every control loop until ``stop`` is called."""
        logger.info("Starting swarmplane operator")
        self._running = [
            asyncio.create_task(self._pump(kind), name=f"watch-{kind.KIND}")
            for kind in (Cluster, Agent, Task)
        ]
        self._running.append(asyncio.create_task(self._resync(), name="resync"))
        self._running.extend(
            asyncio.create_task(c.run(), name=f"controller-{name}")
            for name, c in self.controllers.items()
        )
        try:
            await self._stopped.wait()
        finally:
            await self._shutdown()

    def stop(self) -> None:
        self._stopped.set()

    async def _shutdown(self) -> None:
        for watch in self._watches:
            watch.close()
        for controller in self.controllers.values():
            controller.queue.shutdown()
        await asyncio.gather(*self._running, return_exceptions=True)
        self._watches.clear()
        self._running.clear()
        self.events.close()
        logger.info("Swarmplane operator stopped")

    # ── direct reconciliation ────────────────────────────────────────────

    async def run_once(self) -> dict[str, ReconcileResult]:
        """Reconcile every stored cluster, agent and task once, in that order."""
        results = {}
        for reconciler in (self.clusters, self.agents, self.tasks):
            kind = reconciler.kind
            for obj in await self.store.list(kind):
                results[f"{kind.KIND}/{obj.metadata.name}"] = await reconciler.reconcile(obj.metadata.name)
        return results

    async def settle(self, max_rounds: int = 25) -> int:
        """Call ``run_once`` until a round performs no writes; returns the rounds used."""
        for round_ in range(1, max_rounds + 1):
            writes = self.store.write_count
            await self.run_once()
            if self.store.write_count == writes and not self.release_queue.pending():
                return round_
        logger.warning(f"Store still changing after {max_rounds} rounds")
        return max_rounds
