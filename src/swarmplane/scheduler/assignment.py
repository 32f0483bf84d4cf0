"""
Agent selection and assignment-ledger updates.

The ledger (``Agent.status.assigned_subtasks``) is the only state written
by more than one reconciler. Every change is a read-modify-write against the
agent's current resource version, retried in place on conflict.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from swarmplane.errors import CapacityError, NotFoundError
from swarmplane.models import ACTIVE_AGENT_PHASES, Agent, AgentType, SubtaskRef
from swarmplane.safeguards import retry_on_conflict

logger = logging.getLogger("swarmplane.scheduler.assignment")


def qualifies(
    agent: Agent,
    required_capabilities: Iterable[str],
    preferred_types: Iterable[AgentType] = (),
) -> bool:
    """Capability superset and, when types are given, type membership."""
    if agent.metadata.deletion_timestamp is not None:
        return False
    if agent.status.phase not in ACTIVE_AGENT_PHASES:
        return False
    if not set(required_capabilities) <= set(agent.spec.capabilities):
        return False
    preferred = set(preferred_types)
    return not preferred or agent.spec.type in preferred


def select_agent(
    agents: list[Agent],
    required_capabilities: Iterable[str],
    preferred_types: Iterable[AgentType] = (),
) -> Optional[Agent]:
    """Least-loaded qualifying agent with spare capacity; ties broken by name."""
    required = list(required_capabilities)
    preferred = list(preferred_types)
    candidates = [
        a for a in agents
        if qualifies(a, required, preferred) and a.has_capacity
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda a: (a.load, a.metadata.name))


def find_claim(agents: list[Agent], ref: SubtaskRef) -> Optional[Agent]:
    """The agent whose ledger already holds ``ref``, if any."""
    for agent in agents:
        if ref in agent.status.assigned_subtasks:
            return agent
    return None


async def claim_slot(store, agent_name: str, ref: SubtaskRef, attempts: int = 5) -> Agent:
    """Add ``ref`` to an agent's ledger.

    Idempotent: an existing entry is returned unchanged.

    Raises:
        CapacityError: The agent is gone, not active, or full.
        ConflictError: Conflicts persisted past ``attempts``.
    """

    async def _claim() -> Agent:
        try:
            agent = await store.get(Agent, agent_name)
        except NotFoundError:
            raise CapacityError(f"agent {agent_name} no longer exists")
        if ref in agent.status.assigned_subtasks:
            return agent
        if agent.status.phase not in ACTIVE_AGENT_PHASES or agent.metadata.deletion_timestamp:
            raise CapacityError(f"agent {agent_name} is {agent.status.phase}")
        if not agent.has_capacity:
            raise CapacityError(f"agent {agent_name} is at capacity")
        agent.status.assigned_subtasks.append(ref)
        return await store.update_status(agent)

    return await retry_on_conflict(_claim, attempts=attempts)


async def release_slot(
    store,
    agent_name: str,
    ref: SubtaskRef,
    succeeded: Optional[bool] = None,
    attempts: int = 5,
) -> Optional[Agent]:
    """Remove ``ref`` from an agent's ledger and update its counters.

    Counters only move when the entry is actually removed, so repeating a
    release never double-counts. Returns None when nothing changed.
    """

    async def _release() -> Optional[Agent]:
        try:
            agent = await store.get(Agent, agent_name)
        except NotFoundError:
            return None
        if ref not in agent.status.assigned_subtasks:
            return None
        agent.status.assigned_subtasks.remove(ref)
        if succeeded is True:
            agent.status.counters.completed_tasks += 1
        elif succeeded is False:
            agent.status.counters.failed_tasks += 1
        return await store.update_status(agent)

    return await retry_on_conflict(_release, attempts=attempts)
