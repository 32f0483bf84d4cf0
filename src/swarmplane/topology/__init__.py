"""Swarmplane topology: population sizing and peer graphs."""

from swarmplane.topology.manager import (
    HIERARCHICAL_RATIOS,
    STRATEGY_RATIOS,
    build_topology_graph,
    compute_peers,
    compute_population,
    default_ratios,
    distribute_by_ratios,
    optimal_agent_count,
    order_agents,
    peer_map,
    validate_ratios,
    validate_topology,
)

__all__ = [
    "HIERARCHICAL_RATIOS",
    "STRATEGY_RATIOS",
    "build_topology_graph",
    "compute_peers",
    "compute_population",
    "default_ratios",
    "distribute_by_ratios",
    "optimal_agent_count",
    "order_agents",
    "peer_map",
    "validate_ratios",
    "validate_topology",
]
