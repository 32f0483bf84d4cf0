"""
Task DAG Construction
=====================

Dependency graph building, validation, ordering and readiness checks for
the subtasks of one task.
"""

import logging
from enum import Enum
from typing import Iterable

import networkx as nx

from swarmplane.errors import InvalidDependencyGraph
from swarmplane.models import Dependency, DependencyKind, SubtaskPhase, SubtaskSpec, SubtaskStatus
from swarmplane.scheduler.expressions import evaluate_condition, parse_condition

logger = logging.getLogger("swarmplane.scheduler.dag")

_DEAD_UPSTREAM = frozenset({SubtaskPhase.FAILED, SubtaskPhase.SKIPPED, SubtaskPhase.CANCELLED})


class Readiness(str, Enum):
    READY = "ready"
    WAITING = "waiting"
    BLOCKED = "blocked"   # can never run; the subtask is skipped


def build_dag(subtasks: list[SubtaskSpec], dependencies: list[Dependency]) -> nx.DiGraph:
    """Build the dependency graph for one task.

    Edge (from, to) means ``to`` depends on ``from``. Each edge carries the
    list of Dependency records between the pair under ``deps``.

    Raises:
        InvalidDependencyGraph: duplicate subtask names, references to
            unknown subtasks, malformed conditions, or a cycle.
    """
    G = nx.DiGraph()
    for position, subtask in enumerate(subtasks):
        if G.has_node(subtask.name):
            raise InvalidDependencyGraph(f"duplicate subtask name {subtask.name!r}")
        G.add_node(subtask.name, position=position)

    for dep in dependencies:
        for end in (dep.from_, dep.to):
            if not G.has_node(end):
                raise InvalidDependencyGraph(
                    f"dependency {dep.from_} -> {dep.to} references unknown subtask {end!r}"
                )
        if dep.kind == DependencyKind.CONDITIONAL:
            if not dep.condition.strip():
                raise InvalidDependencyGraph(
                    f"conditional dependency {dep.from_} -> {dep.to} has no condition"
                )
            parse_condition(dep.condition)
        if G.has_edge(dep.from_, dep.to):
            G[dep.from_][dep.to]["deps"].append(dep)
        else:
            G.add_edge(dep.from_, dep.to, deps=[dep])

    if not nx.is_directed_acyclic_graph(G):
        cycle = nx.find_cycle(G)
        path = " -> ".join([u for u, _ in cycle] + [cycle[0][0]])
        raise InvalidDependencyGraph(f"dependency cycle: {path}")

    return G


def topological_order(G: nx.DiGraph) -> list[str]:
    """Topological order with declaration order as the tiebreak."""
    return list(nx.lexicographical_topological_sort(G, key=lambda n: G.nodes[n]["position"]))


def dependency_readiness(G: nx.DiGraph, name: str, statuses: dict[str, SubtaskStatus]) -> Readiness:
    """Classify whether every dependency of ``name`` is satisfied.

    completion: upstream Completed
    data: upstream Completed and its artifact is available
    conditional: upstream Completed and the condition holds on its result
    """
    waiting = False
    for upstream, _, data in G.in_edges(name, data=True):
        status = statuses[upstream]
        if status.phase in _DEAD_UPSTREAM:
            return Readiness.BLOCKED
        if status.phase != SubtaskPhase.COMPLETED:
            waiting = True
            continue
        for dep in data["deps"]:
            if dep.kind == DependencyKind.DATA and not status.artifact_available:
                waiting = True
            elif dep.kind == DependencyKind.CONDITIONAL and not evaluate_condition(dep.condition, status.result):
                logger.info(f"Condition {dep.condition!r} on {upstream} is false, skipping {name}")
                return Readiness.BLOCKED
    return Readiness.WAITING if waiting else Readiness.READY


def downstream_of(G: nx.DiGraph, names: Iterable[str]) -> set[str]:
    """All transitive dependents of ``names``."""
    result: set[str] = set()
    for name in names:
        result |= nx.descendants(G, name)
    return result

