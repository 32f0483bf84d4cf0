"""
Autoscaler metric sources.

A metric source answers ``query(name, selector) -> float | None``. None
means the source does not know the metric. Sources are tried in order and
the first known value wins. A source that raises or times out counts as
unavailable for that reading, and its circuit breaker opens after repeated
failures so later readings skip it until the breaker resets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from swarmplane.errors import TransientInfraError
from swarmplane.models import ACTIVE_AGENT_PHASES, Agent, MetricTarget, SubtaskPhase, Task
from swarmplane.safeguards import CircuitBreaker, CircuitBreakerOpen, bounded_call

logger = logging.getLogger("swarmplane.autoscaler.metrics")

UTILIZATION = "agent_utilization"
QUEUED_SUBTASKS = "queued_subtasks_per_agent"


@dataclass
class MetricReading:
    name: str
    value: Optional[float]
    target: float

    @property
    def available(self) -> bool:
        return self.value is not None and self.target > 0

    @property
    def pressure(self) -> Optional[float]:
        if not self.available:
            return None
        return self.value / self.target


class MetricSource(Protocol):
    async def query(self, name: str, selector: dict[str, str]) -> Optional[float]: ...


class StaticMetricSource:
    """Fixed values, keyed by metric name."""

    def __init__(self, values: Optional[dict[str, float]] = None):
        self.values = dict(values or {})

    def set(self, name: str, value: float) -> None:
        self.values[name] = value

    def remove(self, name: str) -> None:
        self.values.pop(name, None)

    async def query(self, name: str, selector: dict[str, str]) -> Optional[float]:
        return self.values.get(name)


class PrometheusMetricSource:
    """Instant queries against a Prometheus-compatible HTTP API."""

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @staticmethod
    def build_query(name: str, selector: dict[str, str]) -> str:
        if not selector:
            return name
        labels = ",".join(f'{k}="{v}"' for k, v in sorted(selector.items()))
        return f"{name}{{{labels}}}"

    async def query(self, name: str, selector: dict[str, str]) -> Optional[float]:
        try:
            response = await self._client.get(
                f"{self.base_url}/api/v1/query",
                params={"query": self.build_query(name, selector)},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise TransientInfraError(f"metric query {name} failed: {e}") from e

        if body.get("status") != "success":
            raise TransientInfraError(f"metric query {name} returned {body.get('status')}")
        results = body.get("data", {}).get("result", [])
        if not results:
            return None
        try:
            return float(results[0]["value"][1])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise TransientInfraError(f"metric query {name}: malformed sample: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


class ClusterStateMetricSource:
    """Built-in metrics derived from stored agents and tasks.

    ``agent_utilization``: percentage of active agent capacity in use.
    ``queued_subtasks_per_agent``: ready-but-unassigned subtasks per active agent.
    Both need ``selector["cluster"]``.
    """

    def __init__(self, store):
        self.store = store

    async def query(self, name: str, selector: dict[str, str]) -> Optional[float]:
        cluster = selector.get("cluster")
        if cluster is None or name not in (UTILIZATION, QUEUED_SUBTASKS):
            return None
        agents = [
            a for a in await self.store.list(Agent, owner=cluster)
            if a.status.phase in ACTIVE_AGENT_PHASES and a.metadata.deletion_timestamp is None
        ]
        if name == UTILIZATION:
            capacity = sum(a.spec.max_concurrent_tasks for a in agents)
            if capacity == 0:
                return None
            assigned = sum(len(a.status.assigned_subtasks) for a in agents)
            return 100.0 * assigned / capacity

        queued = 0
        for task in await self.store.list(Task):
            if task.spec.cluster != cluster:
                continue
            queued += sum(1 for s in task.status.subtasks.values() if s.phase == SubtaskPhase.READY)
        return queued / max(1, len(agents))


class MetricGatherer:
    """Reads every metric target through the configured sources."""

    def __init__(
        self,
        sources: list[MetricSource],
        timeout: float = 5.0,
        failure_threshold: int = 3,
        reset_timeout: float = 60.0,
    ):
        self.sources = list(sources)
        self.timeout = timeout
        self._breakers = [
            CircuitBreaker(failure_threshold, reset_timeout, name=type(source).__name__)
            for source in self.sources
        ]

    def breaker(self, source: MetricSource) -> CircuitBreaker:
        return self._breakers[self.sources.index(source)]

    async def _read(self, target: MetricTarget, selector: dict[str, str]) -> Optional[float]:
        merged = {**selector, **target.selector}
        for source, breaker in zip(self.sources, self._breakers):
            try:
                breaker.check()
                value = await bounded_call(
                    lambda: source.query(target.name, merged),
                    self.timeout,
                    f"metric {target.name}",
                )
            except CircuitBreakerOpen as e:
                logger.warning(f"Skipping metric source for {target.name}: {e}")
                continue
            except TransientInfraError as e:
                breaker.record_failure()
                logger.warning(f"Metric source failed for {target.name}: {e}")
                continue
            breaker.record_success()
            if value is not None:
                return value
        return None

    async def gather(self, targets: list[MetricTarget], selector: dict[str, str]) -> list[MetricReading]:
        readings = []
        for target in targets:
            value = await self._read(target, selector)
            if value is None:
                logger.warning(f"Metric {target.name} unavailable, skipping")
            readings.append(MetricReading(name=target.name, value=value, target=target.target))
        return readings


async def gather_readings(
    targets: list[MetricTarget],
    sources: list[MetricSource],
    selector: dict[str, str],
    timeout: float = 5.0,
) -> list[MetricReading]:
    """One-shot gather without persistent breaker state."""
    return await MetricGatherer(sources, timeout=timeout).gather(targets, selector)
