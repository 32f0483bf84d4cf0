"""
Agent Lifecycle
===============

State machine for one agent, driven by its reconciler:

    (created) -> Pending -> Initializing -> Ready <-> Busy
    Initializing | Ready | Busy --heartbeat timeout--> Failed
    Failed --cool-down, attempts left--> Initializing
    any --deletion--> Terminating -> (removed)

- Pending waits for the cluster to compute the agent's peer list and to
  be Initializing, Running or Scaling. Heartbeat monitoring of later phases
  does not depend on the cluster phase.
- Initializing configures peer connectivity (and joins the hive-mind group
  when enabled) and waits for a heartbeat newer than its entry time.
- Ready and Busy follow the assignment ledger: Busy while any subtask is
  assigned.
- An agent is Failed once ``now - last heartbeat >= timeout_multiple x
  interval``. Entering Failed empties the ledger and pushes every entry to
  the release queue in the same pass.
- Recovery re-enters Initializing after the cool-down, at most
  ``recovery.max_attempts`` times; afterwards the agent carries a
  RecoveryExhausted condition and the cluster replaces it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from swarmplane.audit import EventRecorder
from swarmplane.conditions import (
    DEGRADED,
    find_condition,
    mark_failed,
    mark_progressing,
    mark_ready,
    set_condition,
)
from swarmplane.config import Settings
from swarmplane.controller.reconciler import ReconcileResult, Reconciler
from swarmplane.errors import AgentLivenessError, NotFoundError, SwarmError
from swarmplane.models import (
    Agent,
    AgentPhase,
    Cluster,
    ClusterPhase,
    PeerStatus,
    SubtaskRef,
    utcnow,
)
from swarmplane.safeguards import bounded_call
from swarmplane.scheduler.queue import ReleaseQueue

logger = logging.getLogger("swarmplane.agent")

AGENT_FINALIZER = "swarmplane.io/release-assignments"
RECOVERY_EXHAUSTED = "RecoveryExhausted"

_CLUSTER_LIVE = frozenset({ClusterPhase.INITIALIZING, ClusterPhase.RUNNING, ClusterPhase.SCALING})
_WAIT_SECONDS = 5.0


def recovery_exhausted(agent: Agent) -> bool:
    condition = find_condition(agent.status.conditions, DEGRADED)
    return (
        agent.status.phase == AgentPhase.FAILED
        and condition is not None
        and condition.status
        and condition.reason == RECOVERY_EXHAUSTED
    )


def heartbeat_age(agent: Agent, now: datetime) -> Optional[float]:
    """Seconds since the last heartbeat (or phase entry if none was seen)."""
    reference = agent.status.last_heartbeat
    if agent.status.phase == AgentPhase.INITIALIZING and agent.status.phase_since is not None:
        if reference is None or reference < agent.status.phase_since:
            reference = agent.status.phase_since
    if reference is None:
        reference = agent.status.phase_since
    if reference is None:
        return None
    return (now - reference).total_seconds()


class AgentReconciler(Reconciler):
    kind = Agent

    def __init__(
        self,
        store,
        runtime,
        release_queue: ReleaseQueue,
        settings: Optional[Settings] = None,
        consensus=None,
        events: Optional[EventRecorder] = None,
        metrics=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(store, clock, metrics)
        self.runtime = runtime
        self.release_queue = release_queue
        self.settings = settings or Settings()
        self.consensus = consensus
        self.events = events
        self._transitions: dict[str, list[tuple[Optional[AgentPhase], AgentPhase, str, str]]] = {}

    @property
    def heartbeat_timeout(self) -> float:
        return self.settings.heartbeat.timeout_seconds

    async def _reconcile(self, name: str) -> ReconcileResult:
        agent = await self.store.get(Agent, name)
        self._transitions.pop(name, None)
        if agent.metadata.deletion_timestamp is not None:
            return await self._finalize(agent)
        agent = await self.ensure_finalizer(agent, AGENT_FINALIZER)

        before = agent.status.model_copy(deep=True)
        now = self.clock()
        released: list[SubtaskRef] = []

        try:
            cluster = await self.store.get(Cluster, agent.spec.cluster)
        except NotFoundError:
            cluster = None

        if cluster is None:
            missing = NotFoundError(f"cluster {agent.spec.cluster} not found", reason="ClusterNotFound")
            released = self._fail(agent, missing, now)
            result = ReconcileResult.done()
        elif agent.status.phase is None:
            self._set_phase(agent, AgentPhase.PENDING, "Created", "agent registered", now)
            mark_progressing(agent.status.conditions, "Created", "waiting for peer assignment", now)
            result = ReconcileResult.requeue(0)
        else:
            result, released = await self._step(agent, cluster, now)

        agent = await self.write_status(agent, before)
        if released:
            self.release_queue.release(agent.metadata.name, released, agent.status.message)
        await self._emit(agent)
        return result

    async def _step(self, agent: Agent, cluster: Cluster, now: datetime) -> tuple[ReconcileResult, list[SubtaskRef]]:
        phase = agent.status.phase

        if phase == AgentPhase.PENDING:
            if agent.spec.peers is None or cluster.status.phase not in _CLUSTER_LIVE:
                return ReconcileResult.requeue(_WAIT_SECONDS), []
            self._set_phase(agent, AgentPhase.INITIALIZING, "PeersAssigned",
                            f"{len(agent.spec.peers)} peers assigned", now)
            return ReconcileResult.requeue(0), []

        if phase == AgentPhase.INITIALIZING:
            return await self._initialize(agent, cluster, now)

        if phase in (AgentPhase.READY, AgentPhase.BUSY):
            return await self._monitor(agent, now)

        if phase == AgentPhase.FAILED:
            return self._recover(agent, now)

        return ReconcileResult.done(), []

    async def _initialize(self, agent: Agent, cluster: Cluster, now: datetime) -> tuple[ReconcileResult, list[SubtaskRef]]:
        self._sync_peers(agent)
        if cluster.spec.hive_mind and self.consensus is not None:
            await bounded_call(
                lambda: self.consensus.join(cluster.metadata.name, agent.metadata.name, agent.spec.peers or []),
                self.settings.controller.external_timeout_seconds,
                f"consensus join {agent.metadata.name}",
            )

        heartbeat = await self._observe_heartbeat(agent)
        if heartbeat is not None and agent.status.phase_since is not None and heartbeat >= agent.status.phase_since:
            target = AgentPhase.BUSY if agent.status.assigned_subtasks else AgentPhase.READY
            self._set_phase(agent, target, "Initialized", "peers configured and heartbeat received", now)
            mark_ready(agent.status.conditions, "Initialized", "agent is accepting work", now)
            return ReconcileResult.requeue(self.settings.heartbeat.interval_seconds), []

        age = heartbeat_age(agent, now)
        if age is not None and age >= self.heartbeat_timeout:
            return ReconcileResult.requeue(0), self._fail(
                agent, AgentLivenessError(f"no heartbeat within {self.heartbeat_timeout:.0f}s of initializing"), now
            )
        remaining = self.heartbeat_timeout - (age or 0.0)
        return ReconcileResult.requeue(min(_WAIT_SECONDS, remaining)), []

    async def _monitor(self, agent: Agent, now: datetime) -> tuple[ReconcileResult, list[SubtaskRef]]:
        self._sync_peers(agent)
        await self._observe_heartbeat(agent)

        age = heartbeat_age(agent, now)
        if age is not None and age >= self.heartbeat_timeout:
            return ReconcileResult.requeue(0), self._fail(
                agent, AgentLivenessError(f"last heartbeat {age:.0f}s ago"), now
            )

        if agent.status.assigned_subtasks:
            self._set_phase(agent, AgentPhase.BUSY, "WorkAssigned",
                            f"{len(agent.status.assigned_subtasks)} subtasks assigned", now)
        else:
            self._set_phase(agent, AgentPhase.READY, "Idle", "no subtasks assigned", now)

        remaining = self.heartbeat_timeout - (age or 0.0)
        return ReconcileResult.requeue(min(self.settings.heartbeat.interval_seconds, remaining)), []

    def _recover(self, agent: Agent, now: datetime) -> tuple[ReconcileResult, list[SubtaskRef]]:
        released = []
        if agent.status.assigned_subtasks:
            released = self._fail(agent, AgentLivenessError(agent.status.message), now)

        recovery = self.settings.recovery
        if agent.status.recovery_attempts >= recovery.max_attempts:
            set_condition(
                agent.status.conditions, DEGRADED, True, RECOVERY_EXHAUSTED,
                f"gave up after {agent.status.recovery_attempts} recovery attempts", now,
            )
            return ReconcileResult.done(), released

        failed_at = agent.status.failed_at or now
        elapsed = (now - failed_at).total_seconds()
        if elapsed < recovery.cooldown_seconds:
            return ReconcileResult.requeue(recovery.cooldown_seconds - elapsed), released

        agent.status.recovery_attempts += 1
        self._set_phase(
            agent, AgentPhase.INITIALIZING, "Recovering",
            f"recovery attempt {agent.status.recovery_attempts}/{recovery.max_attempts}", now,
        )
        mark_progressing(agent.status.conditions, "Recovering", agent.status.message, now)
        return ReconcileResult.requeue(0), released

    async def _finalize(self, agent: Agent) -> ReconcileResult:
        self._transitions.pop(agent.metadata.name, None)
        before = agent.status.model_copy(deep=True)
        now = self.clock()
        released = list(agent.status.assigned_subtasks)
        agent.status.assigned_subtasks = []
        self._set_phase(agent, AgentPhase.TERMINATING, "Deleted", "agent is being removed", now)

        agent = await self.write_status(agent, before)
        if released:
            self.release_queue.release(agent.metadata.name, released, "agent terminated")
        if self.consensus is not None:
            await bounded_call(
                lambda: self.consensus.leave(agent.spec.cluster, agent.metadata.name),
                self.settings.controller.external_timeout_seconds,
                f"consensus leave {agent.metadata.name}",
            )
        await self._emit(agent)
        await self.remove_finalizer(agent, AGENT_FINALIZER)
        return ReconcileResult.done()

    # ── helpers ──────────────────────────────────────────────────────────

    async def _observe_heartbeat(self, agent: Agent) -> Optional[datetime]:
        heartbeat = await bounded_call(
            lambda: self.runtime.last_heartbeat(agent.metadata.name),
            self.settings.controller.external_timeout_seconds,
            f"heartbeat read {agent.metadata.name}",
        )
        if heartbeat is not None and (agent.status.last_heartbeat is None or heartbeat > agent.status.last_heartbeat):
            agent.status.last_heartbeat = heartbeat
        return agent.status.last_heartbeat

    def _sync_peers(self, agent: Agent) -> None:
        desired = {peer: PeerStatus(configured=True) for peer in agent.spec.peers or []}
        if agent.status.peer_status != desired:
            agent.status.peer_status = desired

    def _fail(self, agent: Agent, error: SwarmError, now: datetime) -> list[SubtaskRef]:
        """Mark the agent Failed and empty its ledger; returns the released entries."""
        released = list(agent.status.assigned_subtasks)
        agent.status.assigned_subtasks = []
        agent.status.counters.failed_tasks += len(released)
        if agent.status.phase != AgentPhase.FAILED:
            agent.status.failed_at = now
            self._set_phase(agent, AgentPhase.FAILED, error.reason, error.message, now)
            mark_failed(agent.status.conditions, error.reason, error.message, now)
        return released

    def _set_phase(self, agent: Agent, phase: AgentPhase, reason: str, message: str, now: datetime) -> None:
        previous = agent.status.phase
        if previous == phase:
            return
        agent.status.phase = phase
        agent.status.phase_since = now
        agent.status.message = message
        self._transitions.setdefault(agent.metadata.name, []).append((previous, phase, reason, message))

    async def _emit(self, agent: Agent) -> None:
        for previous, phase, reason, message in self._transitions.pop(agent.metadata.name, []):
            source = previous.value if previous else "None"
            log = logger.warning if phase == AgentPhase.FAILED else logger.info
            log(f"Agent {agent.metadata.name}: {source} -> {phase.value} ({reason}) {message}")
            if self.events is not None:
                if phase == AgentPhase.FAILED:
                    self.events.warning(agent, reason, message)
                else:
                    self.events.normal(agent, reason, message)
            if self.metrics is not None:
                await self.metrics.increment(
                    "agent_phase_transitions_total",
                    cluster=agent.spec.cluster,
                    **{"from": source, "to": phase.value},
                )
