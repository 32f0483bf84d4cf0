"""Shared fixtures for the swarmplane test suite.

Puts ``src/`` on sys.path so ``import swarmplane`` works without an
editable install, and provides a controllable clock plus factories for
stored objects.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

_src = str(Path(__file__).resolve().parent.parent / "src")
if _src not in sys.path:
    sys.path.insert(0, _src)

from swarmplane.agents import AGENT_FINALIZER  # noqa: E402
from swarmplane.audit import EventRecorder  # noqa: E402
from swarmplane.checkpoint import InMemoryCheckpointStore  # noqa: E402
from swarmplane.config import Settings  # noqa: E402
from swarmplane.interfaces import InMemoryAgentRuntime  # noqa: E402
from swarmplane.models import (  # noqa: E402
    Agent,
    AgentPhase,
    AgentSpec,
    AgentType,
    Cluster,
    ClusterPhase,
    ClusterSpec,
    Dependency,
    ObjectMeta,
    SubtaskRef,
    SubtaskSpec,
    Task,
    TaskSpec,
)
from swarmplane.scheduler import ReleaseQueue, TaskReconciler  # noqa: E402
from swarmplane.store import InMemoryStore  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock)


@pytest.fixture
def runtime():
    return InMemoryAgentRuntime()


@pytest.fixture
def release_queue():
    return ReleaseQueue()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def events(clock):
    return EventRecorder(clock=clock)


@pytest.fixture
def checkpoints():
    return InMemoryCheckpointStore()


@pytest.fixture
def scheduler(store, runtime, checkpoints, release_queue, settings, events, clock):
    return TaskReconciler(
        store, runtime, checkpoints, release_queue,
        settings=settings, events=events, clock=clock,
    )


@pytest.fixture
def add_cluster(store):
    """Store a cluster, optionally forcing its phase."""

    async def _add(name="demo", phase=ClusterPhase.RUNNING, **spec_fields):
        cluster = await store.create(Cluster(metadata=ObjectMeta(name=name), spec=ClusterSpec(**spec_fields)))
        if phase is not None:
            cluster.status.phase = phase
            cluster = await store.update_status(cluster)
        return cluster

    return _add


@pytest.fixture
def add_agent(store, clock):
    """Store an agent that has already reached ``phase``."""

    async def _add(
        name,
        cluster="demo",
        type=AgentType.CODER,
        phase=AgentPhase.READY,
        capabilities=(),
        max_concurrent_tasks=10,
        index=0,
        assigned=(),
        peers=(),
    ):
        agent = await store.create(Agent(
            metadata=ObjectMeta(name=name, owner=cluster, finalizers=[AGENT_FINALIZER]),
            spec=AgentSpec(
                cluster=cluster,
                type=type,
                index=index,
                capabilities=list(capabilities),
                max_concurrent_tasks=max_concurrent_tasks,
                peers=list(peers) if peers is not None else None,
            ),
        ))
        if phase is not None:
            agent.status.phase = phase
            agent.status.phase_since = clock()
            agent.status.last_heartbeat = clock()
            agent.status.assigned_subtasks = [
                ref if isinstance(ref, SubtaskRef) else SubtaskRef(task=ref[0], subtask=ref[1], attempt=ref[2])
                for ref in assigned
            ]
            agent = await store.update_status(agent)
        return agent

    return _add


@pytest.fixture
def add_task(store):
    """Store a task; subtasks may be names, dependencies (from, to) pairs."""

    async def _add(name="build", subtasks=("a",), dependencies=(), cluster="demo", **spec_fields):
        task = Task(
            metadata=ObjectMeta(name=name),
            spec=TaskSpec(
                cluster=cluster,
                subtasks=[s if isinstance(s, SubtaskSpec) else SubtaskSpec(name=s) for s in subtasks],
                dependencies=[
                    d if isinstance(d, Dependency) else Dependency(from_=d[0], to=d[1])
                    for d in dependencies
                ],
                **spec_fields,
            ),
        )
        return await store.create(task)

    return _add
