"""
Swarmplane Topology Manager
===========================

Pure functions that decide how many agents of each type a cluster runs and
who talks to whom.

Population: the total is distributed across agent types by percentage
ratios. Each type first receives the floor of its share; the remainder is
handed out one agent at a time in ratio priority order (dict insertion
order), so every type ends within one agent of its exact share.

Peers: agents are placed on positions 0..n-1 and the topology's graph over
those positions decides the peer lists.

- mesh: every other agent
- ring: previous and next position (one peer when n == 2)
- star: position 0 is the hub
- hierarchical: the first ``c`` positions are coordinators; every other
  position hangs off coordinator ``(i - c) % c`` and coordinators also
  peer with each other
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import networkx as nx

from swarmplane.errors import InvalidConfiguration
from swarmplane.models import Agent, AgentType, Topology

logger = logging.getLogger("swarmplane.topology")

_EPSILON = 1e-9

STRATEGY_RATIOS: dict[str, dict[AgentType, float]] = {
    "balanced": {
        AgentType.COORDINATOR: 20.0,
        AgentType.CODER: 80.0,
    },
    "specialized": {
        AgentType.COORDINATOR: 20.0,
        AgentType.RESEARCHER: 20.0,
        AgentType.CODER: 20.0,
        AgentType.ANALYST: 20.0,
        AgentType.TESTER: 20.0,
    },
}

# Hierarchies get one coordinator per three workers.
HIERARCHICAL_RATIOS: dict[AgentType, float] = {
    AgentType.COORDINATOR: 25.0,
    AgentType.CODER: 75.0,
}

OPTIMAL_AGENT_COUNTS: dict[Topology, int] = {
    Topology.MESH: 5,
    Topology.HIERARCHICAL: 7,
    Topology.RING: 6,
    Topology.STAR: 5,
}

MINIMUM_AGENT_COUNTS: dict[Topology, int] = {
    Topology.MESH: 1,
    Topology.HIERARCHICAL: 2,
    Topology.RING: 3,
    Topology.STAR: 2,
}


def default_ratios(topology: Topology, strategy: str = "balanced") -> dict[AgentType, float]:
    if strategy == "specialized":
        return dict(STRATEGY_RATIOS["specialized"])
    if topology == Topology.HIERARCHICAL:
        return dict(HIERARCHICAL_RATIOS)
    return dict(STRATEGY_RATIOS["balanced"])


def validate_ratios(ratios: dict[AgentType, float], tolerance: float = 1.0) -> None:
    """Raise InvalidConfiguration unless ratios are non-negative and sum to 100 ± tolerance."""
    if not ratios:
        return
    negative = [t.value for t, r in ratios.items() if r < 0]
    if negative:
        raise InvalidConfiguration(f"negative topology ratio for {', '.join(negative)}")
    total = sum(ratios.values())
    if abs(total - 100.0) > tolerance:
        raise InvalidConfiguration(f"topology ratios sum to {total:g}%, expected 100% ±{tolerance:g}")


def distribute_by_ratios(total: int, ratios: dict[AgentType, float]) -> dict[AgentType, int]:
    """Split ``total`` agents across types proportional to ``ratios``."""
    counts = {agent_type: 0 for agent_type in ratios}
    weight = sum(r for r in ratios.values() if r > 0)
    if total <= 0 or weight <= 0:
        return counts

    for agent_type, ratio in ratios.items():
        if ratio > 0:
            counts[agent_type] = int(math.floor(total * ratio / weight + _EPSILON))

    remainder = total - sum(counts.values())
    for agent_type, ratio in ratios.items():
        if remainder <= 0:
            break
        if ratio > 0:
            counts[agent_type] += 1
            remainder -= 1
    return counts


def compute_population(
    topology: Topology,
    min_agents: int,
    max_agents: int,
    ratios: Optional[dict[AgentType, float]] = None,
    strategy: str = "balanced",
) -> dict[AgentType, int]:
    """Initial per-type agent counts for a cluster."""
    if max_agents < 1:
        raise InvalidConfiguration(f"max_agents must be at least 1, got {max_agents}")
    total = max(1, min(min_agents, max_agents))
    return distribute_by_ratios(total, ratios or default_ratios(topology, strategy))


# ── Peer graphs ──────────────────────────────────────────────────────────────


def build_topology_graph(topology: Topology, total: int, coordinators: int = 1) -> nx.Graph:
    """Undirected communication graph over positions ``0..total-1``."""
    if total <= 0:
        return nx.Graph()
    if total == 1:
        G = nx.Graph()
        G.add_node(0)
        return G

    if topology == Topology.MESH:
        return nx.complete_graph(total)
    if topology == Topology.RING:
        return nx.cycle_graph(total)
    if topology == Topology.STAR:
        return nx.star_graph(total - 1)

    c = max(1, min(coordinators, total))
    G = nx.complete_graph(c)
    G.add_nodes_from(range(c, total))
    for i in range(c, total):
        G.add_edge(i, (i - c) % c)
    return G


def compute_peers(topology: Topology, index: int, total: int, coordinators: int = 1) -> list[int]:
    """Positions that the agent at ``index`` communicates with."""
    if not 0 <= index < total:
        raise ValueError(f"index {index} out of range for {total} agents")
    G = build_topology_graph(topology, total, coordinators)
    return sorted(n for n in G.neighbors(index) if n != index)


def order_agents(topology: Topology, agents: list[Agent]) -> list[Agent]:
    """Position agents: coordinators first for star and hierarchical, then by ordinal."""
    if topology in (Topology.STAR, Topology.HIERARCHICAL):
        return sorted(
            agents,
            key=lambda a: (a.spec.type != AgentType.COORDINATOR, a.spec.index, a.metadata.name),
        )
    return sorted(agents, key=lambda a: (a.spec.index, a.metadata.name))


def peer_map(topology: Topology, agents: list[Agent]) -> dict[str, list[str]]:
    """Peer names for every agent in ``agents``."""
    ordered = order_agents(topology, agents)
    total = len(ordered)
    coordinators = sum(1 for a in ordered if a.spec.type == AgentType.COORDINATOR)
    G = build_topology_graph(topology, total, max(1, coordinators))
    names = [a.metadata.name for a in ordered]
    return {
        names[i]: [names[j] for j in sorted(G.neighbors(i)) if j != i]
        for i in range(total)
    }


def validate_topology(topology: Topology, count: int) -> Optional[str]:
    """Describe why ``count`` agents cannot form ``topology``, or None if they can."""
    minimum = MINIMUM_AGENT_COUNTS[topology]
    if count < minimum:
        return f"{topology.value} topology requires at least {minimum} agents, have {count}"
    return None


def optimal_agent_count(topology: Topology) -> int:
    return OPTIMAL_AGENT_COUNTS.get(topology, 5)
