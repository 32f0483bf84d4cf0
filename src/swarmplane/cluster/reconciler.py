"""
Cluster Reconciler
==================

Keeps a cluster's owned agents converged to its desired population.

Pass order:

1. validate the spec; an invalid spec fails the cluster until it changes
2. Pending computes the initial population and moves to Initializing
3. check that every referenced secret exists
4. replace agents that exhausted their recovery attempts
5. scale down surplus agents (idle before busy, newest first)
6. create missing agents and recompute every peer list
7. aggregate status and conditions
8. Initializing -> Running once every desired agent is ready; Running asks
   the autoscaler for a new population; Scaling -> Running once it exists

Deletion marks the cluster Terminating, deletes every owned agent and only
drops its finalizer once none remain.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from swarmplane.agents import AGENT_FINALIZER, recovery_exhausted
from swarmplane.audit import EventRecorder
from swarmplane.autoscaler import (
    DOWN,
    UP,
    Autoscaler,
    ClusterStateMetricSource,
    MetricGatherer,
)
from swarmplane.conditions import (
    clear_degraded,
    mark_degraded,
    mark_failed,
    mark_progressing,
    mark_ready,
)
from swarmplane.config import Settings
from swarmplane.controller.reconciler import ReconcileResult, Reconciler
from swarmplane.errors import InvalidConfiguration
from swarmplane.models import (
    ACTIVE_AGENT_PHASES,
    Agent,
    AgentPhase,
    AgentSpec,
    AgentType,
    Cluster,
    ClusterPhase,
    ClusterSpec,
    CognitivePattern,
    ObjectMeta,
    TaskStatistics,
    Topology,
    utcnow,
)
from swarmplane.safeguards import bounded_call
from swarmplane.topology import (
    STRATEGY_RATIOS,
    compute_population,
    default_ratios,
    distribute_by_ratios,
    peer_map,
    validate_ratios,
    validate_topology,
)

logger = logging.getLogger("swarmplane.cluster")

CLUSTER_FINALIZER = "swarmplane.io/release-agents"
LABEL_CLUSTER = "swarmplane.io/cluster"
LABEL_AGENT_TYPE = "swarmplane.io/agent-type"

BASE_PORT = 8080
MAX_AGENTS_LIMIT = 100
DEFAULT_PATTERNS = [
    CognitivePattern.ADAPTIVE,
    CognitivePattern.SYSTEMS,
    CognitivePattern.CONVERGENT,
    CognitivePattern.DIVERGENT,
]

_WAIT_SECONDS = 5.0

# Scale-down preference: lower rank goes first.
_REMOVAL_RANK = {
    AgentPhase.FAILED: 0,
    None: 1,
    AgentPhase.PENDING: 1,
    AgentPhase.INITIALIZING: 2,
    AgentPhase.READY: 3,
    AgentPhase.BUSY: 4,
}


def validate_cluster_spec(spec: ClusterSpec) -> None:
    """Raise InvalidConfiguration for a spec that can never converge."""
    if spec.min_agents < 1:
        raise InvalidConfiguration(f"min_agents must be at least 1, got {spec.min_agents}")
    if spec.max_agents < spec.min_agents:
        raise InvalidConfiguration(
            f"max_agents ({spec.max_agents}) is below min_agents ({spec.min_agents})"
        )
    if spec.max_agents > MAX_AGENTS_LIMIT:
        raise InvalidConfiguration(f"max_agents may not exceed {MAX_AGENTS_LIMIT}, got {spec.max_agents}")
    if spec.strategy not in STRATEGY_RATIOS:
        raise InvalidConfiguration(
            f"unknown strategy {spec.strategy!r}, expected one of {', '.join(sorted(STRATEGY_RATIOS))}"
        )
    validate_ratios(spec.autoscaling.topology_ratios)
    for target in spec.autoscaling.metrics:
        if target.target <= 0:
            raise InvalidConfiguration(f"metric {target.name} needs a positive target, got {target.target:g}")


def agent_name(cluster: str, agent_type: AgentType, ordinal: int) -> str:
    return f"{cluster}-{agent_type.value}-{ordinal}"


def cluster_ratios(spec: ClusterSpec) -> dict[AgentType, float]:
    return dict(spec.autoscaling.topology_ratios) or default_ratios(spec.topology, spec.strategy)


def count_by_type(agents: list[Agent]) -> dict[AgentType, int]:
    counts: dict[AgentType, int] = {}
    for agent in agents:
        counts[agent.spec.type] = counts.get(agent.spec.type, 0) + 1
    return counts


class ClusterReconciler(Reconciler):
    kind = Cluster

    def __init__(
        self,
        store,
        secrets=None,
        gatherer: Optional[MetricGatherer] = None,
        autoscaler: Optional[Autoscaler] = None,
        settings: Optional[Settings] = None,
        events: Optional[EventRecorder] = None,
        metrics=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(store, clock, metrics)
        self.settings = settings or Settings()
        self.secrets = secrets
        scaling = self.settings.autoscaling
        self.gatherer = gatherer or MetricGatherer(
            [ClusterStateMetricSource(store)],
            timeout=scaling.metric_timeout_seconds,
            failure_threshold=scaling.breaker_failure_threshold,
            reset_timeout=scaling.breaker_reset_seconds,
        )
        self.autoscaler = autoscaler or Autoscaler(
            stabilization_window_seconds=scaling.stabilization_window_seconds,
            quantize_scale_up=scaling.quantize_scale_up,
        )
        self.events = events
        self._notes: dict[str, list[tuple[str, str, str, Optional[ClusterPhase]]]] = {}

    async def _reconcile(self, name: str) -> ReconcileResult:
        cluster = await self.store.get(Cluster, name)
        self._notes.pop(name, None)
        if cluster.metadata.deletion_timestamp is not None:
            return await self._finalize(cluster)
        cluster = await self.ensure_finalizer(cluster, CLUSTER_FINALIZER)

        before = cluster.status.model_copy(deep=True)
        status = cluster.status
        now = self.clock()
        status.observed_generation = cluster.metadata.generation

        try:
            validate_cluster_spec(cluster.spec)
        except InvalidConfiguration as e:
            self._set_phase(cluster, ClusterPhase.FAILED, e.reason, str(e), now)
            status.message = str(e)
            mark_failed(status.conditions, e.reason, str(e), now)
            await self._persist(cluster, before)
            return ReconcileResult.done()

        if status.phase is None or status.phase == ClusterPhase.FAILED:
            self._set_phase(cluster, ClusterPhase.PENDING, "Accepted", "configuration accepted", now)
            mark_progressing(status.conditions, "Accepted", "computing agent population", now)
            clear_degraded(status.conditions, now)
            await self._persist(cluster, before)
            return ReconcileResult.requeue(0)

        if status.phase == ClusterPhase.PENDING:
            spec = cluster.spec
            if sum(status.desired_population.values()) > 0:
                # a cluster leaving Failed keeps the population it had already converged to
                self._clamp_population(cluster)
            else:
                status.desired_population = compute_population(
                    spec.topology, spec.min_agents, spec.max_agents, cluster_ratios(spec), spec.strategy,
                )
            total = sum(status.desired_population.values())
            self._set_phase(cluster, ClusterPhase.INITIALIZING, "Initializing",
                            f"creating {total} agents in a {spec.topology.value} topology", now)
            await self._persist(cluster, before)
            return ReconcileResult.requeue(0)

        mounts = await self._secret_mounts(cluster, now)
        if mounts is None:
            await self._persist(cluster, before)
            return ReconcileResult.requeue(self.settings.controller.resync_seconds)

        self._clamp_population(cluster)
        agents = await self._converge(cluster, mounts, now)
        self._aggregate(cluster, agents, now)
        result = await self._advance(cluster, agents, now)

        await self._persist(cluster, before)
        return result

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Children
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _secret_mounts(self, cluster: Cluster, now: datetime) -> Optional[list[dict[str, str]]]:
        """Mount references for the template's secrets, or None if one is missing."""
        names = cluster.spec.agent_template.secrets
        if not names:
            return []
        if self.secrets is None:
            missing = list(names)
        else:
            timeout = self.settings.controller.external_timeout_seconds
            missing = []
            mounts = []
            for secret in names:
                if not await bounded_call(lambda: self.secrets.exists(secret), timeout, f"secret lookup {secret}"):
                    missing.append(secret)
                    continue
                mounts.append(await bounded_call(lambda: self.secrets.mount_spec(secret), timeout, f"secret mount {secret}"))
        if missing:
            message = f"secrets not found: {', '.join(missing)}"
            mark_degraded(cluster.status.conditions, "SecretNotFound", message, now)
            cluster.status.message = message
            logger.warning(f"Cluster {cluster.metadata.name}: {message}")
            return None
        return mounts

    def _clamp_population(self, cluster: Cluster) -> None:
        """Keep the desired population inside the current bounds and ratio types."""
        spec = cluster.spec
        desired = cluster.status.desired_population
        ratios = cluster_ratios(spec)
        total = sum(desired.values())
        clamped = max(spec.min_agents, min(spec.max_agents, total))
        stray = any(n > 0 and ratios.get(t, 0) <= 0 for t, n in desired.items())
        if clamped != total or stray:
            cluster.status.desired_population = distribute_by_ratios(clamped, ratios)

    async def _converge(self, cluster: Cluster, mounts: list[dict[str, str]], now: datetime) -> list[Agent]:
        """Delete surplus agents, create missing ones, refresh peers; returns the live agents."""
        name = cluster.metadata.name
        spec = cluster.spec
        owned = await self.store.list(Agent, owner=name)
        live = [a for a in owned if a.metadata.deletion_timestamp is None]

        for agent in [a for a in live if recovery_exhausted(a)]:
            await self.store.delete(Agent, agent.metadata.name)
            live.remove(agent)
            self._note(cluster, "Warning", "AgentReplaced",
                       f"replacing {agent.metadata.name} after exhausted recovery")

        for agent in self._scale_down_victims(cluster, live):
            await self.store.delete(Agent, agent.metadata.name)
            live.remove(agent)
            self._note(cluster, "Normal", "AgentRemoved", f"removed {agent.metadata.name}")

        taken = {a.spec.index for a in owned}
        counts = count_by_type(live)
        fresh: list[Agent] = []
        for agent_type, wanted in cluster.status.desired_population.items():
            for _ in range(max(0, wanted - counts.get(agent_type, 0))):
                index = next(i for i in range(len(taken) + 1) if i not in taken)
                taken.add(index)
                fresh.append(self._build_agent(cluster, agent_type, index, mounts))

        peers = peer_map(spec.topology, live + fresh)
        broadcast = spec.topology == Topology.MESH
        current = []
        for agent in live:
            wanted = peers[agent.metadata.name]
            if agent.spec.peers != wanted or agent.spec.broadcast_enabled != broadcast:
                agent = await self.store.patch(
                    Agent, agent.metadata.name,
                    {"spec": {"peers": wanted, "broadcast_enabled": broadcast}},
                )
            current.append(agent)
        for agent in fresh:
            agent.spec.peers = peers[agent.metadata.name]
            current.append(await self.store.create(agent))
            self._note(cluster, "Normal", "AgentCreated",
                       f"created {agent.metadata.name} ({agent.spec.type.value})")
        return sorted(current, key=lambda a: a.metadata.name)

    def _scale_down_victims(self, cluster: Cluster, live: list[Agent]) -> list[Agent]:
        """Surplus agents per type; busy agents go only to get back under max_agents."""
        desired = cluster.status.desired_population
        victims: list[Agent] = []
        deferred: list[Agent] = []
        for agent_type, count in sorted(count_by_type(live).items(), key=lambda kv: kv[0].value):
            surplus = count - desired.get(agent_type, 0)
            if surplus <= 0:
                continue
            candidates = sorted(
                (a for a in live if a.spec.type == agent_type),
                key=lambda a: (_REMOVAL_RANK.get(a.status.phase, 1), -a.spec.index),
            )
            idle = [a for a in candidates if not a.status.assigned_subtasks]
            busy = [a for a in candidates if a.status.assigned_subtasks]
            victims.extend(idle[:surplus])
            deferred.extend(busy[:max(0, surplus - len(idle))])

        overflow = len(live) - len(victims) - cluster.spec.max_agents
        if overflow > 0:
            deferred.sort(key=lambda a: (len(a.status.assigned_subtasks), -a.spec.index))
            victims.extend(deferred[:overflow])
        return victims

    def _build_agent(self, cluster: Cluster, agent_type: AgentType, index: int, mounts: list[dict[str, str]]) -> Agent:
        template = cluster.spec.agent_template
        patterns = template.cognitive_patterns or DEFAULT_PATTERNS
        name = agent_name(cluster.metadata.name, agent_type, index)
        return Agent(
            metadata=ObjectMeta(
                name=name,
                owner=cluster.metadata.name,
                labels={LABEL_CLUSTER: cluster.metadata.name, LABEL_AGENT_TYPE: agent_type.value},
                finalizers=[AGENT_FINALIZER],
            ),
            spec=AgentSpec(
                cluster=cluster.metadata.name,
                type=agent_type,
                index=index,
                cognitive_pattern=patterns[index % len(patterns)],
                capabilities=list(template.capabilities),
                max_concurrent_tasks=(
                    template.max_concurrent_tasks or self.settings.scheduler.default_max_concurrent_tasks
                ),
                port=BASE_PORT + index,
                secret_mounts=[dict(m) for m in mounts],
                broadcast_enabled=cluster.spec.topology == Topology.MESH,
            ),
        )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Status and phase
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def _aggregate(self, cluster: Cluster, agents: list[Agent], now: datetime) -> None:
        status = cluster.status
        spec = cluster.spec
        ready = [a for a in agents if a.status.phase in ACTIVE_AGENT_PHASES]
        status.agents = [a.metadata.name for a in agents]
        status.active_agents = len(agents)
        status.ready_agents = len(ready)

        completed = sum(a.status.counters.completed_tasks for a in agents)
        failed = sum(a.status.counters.failed_tasks for a in agents)
        in_flight = sum(len(a.status.assigned_subtasks) for a in agents)
        status.task_stats = TaskStatistics(
            total=completed + failed + in_flight,
            completed=completed,
            failed=failed,
            in_flight=in_flight,
        )

        configured = sum(1 for a in agents if a.status.peer_status or not a.spec.peers)
        status.topology_status = {
            "topology": spec.topology.value,
            "agents": str(len(agents)),
            "coordinators": str(sum(1 for a in agents if a.spec.type == AgentType.COORDINATOR)),
            "peers_configured": f"{configured}/{len(agents)}",
        }

        problems = []
        if status.phase in (ClusterPhase.RUNNING, ClusterPhase.SCALING) and len(ready) < spec.min_agents:
            problems.append(("InsufficientAgents", f"{len(ready)} ready agents, minimum is {spec.min_agents}"))
        shape = validate_topology(spec.topology, len(agents))
        if shape is not None:
            problems.append(("TopologyUnderpopulated", shape))
        if problems:
            mark_degraded(status.conditions, problems[0][0], "; ".join(m for _, m in problems), now)
        else:
            clear_degraded(status.conditions, now)

    def _converged(self, cluster: Cluster, agents: list[Agent]) -> bool:
        desired = {t: n for t, n in cluster.status.desired_population.items() if n > 0}
        actual = count_by_type([a for a in agents if a.status.phase in ACTIVE_AGENT_PHASES])
        return actual == desired and len(agents) == sum(desired.values())

    async def _advance(self, cluster: Cluster, agents: list[Agent], now: datetime) -> ReconcileResult:
        status = cluster.status
        total = sum(status.desired_population.values())

        if status.phase == ClusterPhase.INITIALIZING:
            if not self._converged(cluster, agents):
                status.message = f"{status.ready_agents}/{total} agents ready"
                return ReconcileResult.requeue(_WAIT_SECONDS)
            self._set_phase(cluster, ClusterPhase.RUNNING, "AgentsReady", f"{total} agents ready", now)
            mark_ready(status.conditions, "AgentsReady", f"{total} agents ready", now)

        elif status.phase == ClusterPhase.SCALING:
            if not self._converged(cluster, agents):
                status.message = f"scaling: {status.ready_agents}/{total} agents ready"
                return ReconcileResult.requeue(_WAIT_SECONDS)
            self._set_phase(cluster, ClusterPhase.RUNNING, "ScalingComplete", f"{total} agents ready", now)
            mark_ready(status.conditions, "ScalingComplete", f"{total} agents ready", now)

        if status.phase == ClusterPhase.RUNNING:
            if not self._converged(cluster, agents):
                status.message = f"{status.ready_agents}/{total} agents ready"
                return ReconcileResult.requeue(_WAIT_SECONDS)
            return await self._autoscale(cluster, agents, now)
        return ReconcileResult.requeue(_WAIT_SECONDS)

    async def _autoscale(self, cluster: Cluster, agents: list[Agent], now: datetime) -> ReconcileResult:
        policy = cluster.spec.autoscaling
        if not policy.enabled or not policy.metrics:
            return ReconcileResult.done()

        name = cluster.metadata.name
        readings = await self.gatherer.gather(policy.metrics, {"cluster": name})
        decision = self.autoscaler.evaluate(
            current=count_by_type(agents),
            readings=readings,
            ratios=cluster_ratios(cluster.spec),
            min_agents=cluster.spec.min_agents,
            max_agents=cluster.spec.max_agents,
            now=now,
            last_scale_time=cluster.status.last_scale_time,
            stabilization_window_seconds=policy.stabilization_window_seconds,
        )
        if self.metrics is not None:
            for reading in readings:
                if reading.available:
                    await self.metrics.record("autoscaling_metric_pressure", reading.pressure,
                                              cluster=name, metric=reading.name)

        if not decision.should_apply:
            if decision.suppressed:
                logger.info(f"Cluster {name}: {decision.reason}")
            return ReconcileResult.requeue(self.settings.controller.resync_seconds)

        cluster.status.desired_population = decision.desired_population
        cluster.status.last_scale_time = now
        reason = {UP: "ScalingUp", DOWN: "ScalingDown"}.get(decision.direction, "Rebalancing")
        self._set_phase(cluster, ClusterPhase.SCALING, reason, decision.reason, now)
        mark_progressing(cluster.status.conditions, reason, decision.reason, now)
        if self.metrics is not None:
            await self.metrics.increment("autoscaling_events_total", cluster=name, direction=decision.direction)
            await self.metrics.record("autoscaling_desired_agents", decision.desired_total, cluster=name)
        return ReconcileResult.requeue(0)

    async def _finalize(self, cluster: Cluster) -> ReconcileResult:
        before = cluster.status.model_copy(deep=True)
        now = self.clock()
        self._set_phase(cluster, ClusterPhase.TERMINATING, "Deleting", "removing owned agents", now)

        remaining = await self.store.list(Agent, owner=cluster.metadata.name)
        for agent in remaining:
            if agent.metadata.deletion_timestamp is None:
                await self.store.delete(Agent, agent.metadata.name)
        remaining = await self.store.list(Agent, owner=cluster.metadata.name)
        cluster.status.agents = [a.metadata.name for a in remaining]
        cluster.status.active_agents = len(remaining)
        cluster.status.ready_agents = 0

        cluster = await self._persist(cluster, before)
        if remaining:
            return ReconcileResult.requeue(_WAIT_SECONDS)
        await self.remove_finalizer(cluster, CLUSTER_FINALIZER)
        return ReconcileResult.done()

    # ── helpers ──────────────────────────────────────────────────────────

    def _set_phase(self, cluster: Cluster, phase: ClusterPhase, reason: str, message: str, now: datetime) -> None:
        previous = cluster.status.phase
        if previous == phase:
            return
        cluster.status.phase = phase
        cluster.status.message = message
        kind = "Warning" if phase == ClusterPhase.FAILED else "Normal"
        self._notes.setdefault(cluster.metadata.name, []).append((kind, reason, message, phase))
        logger.info(f"Cluster {cluster.metadata.name}: {previous.value if previous else 'None'} -> {phase.value} ({reason})")

    def _note(self, cluster: Cluster, kind: str, reason: str, message: str) -> None:
        self._notes.setdefault(cluster.metadata.name, []).append((kind, reason, message, None))

    async def _persist(self, cluster: Cluster, before) -> Cluster:
        cluster = await self.write_status(cluster, before)
        for kind, reason, message, phase in self._notes.pop(cluster.metadata.name, []):
            if self.events is not None:
                if kind == "Warning":
                    self.events.warning(cluster, reason, message)
                else:
                    self.events.normal(cluster, reason, message)
            if self.metrics is not None and phase is not None:
                await self.metrics.increment("cluster_phase_transitions_total", cluster=cluster.metadata.name,
                                             to=phase.value)
        return cluster
