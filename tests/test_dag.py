"""Tests for dependency graphs, condition expressions and retry backoff."""

from datetime import timedelta

import pytest

from swarmplane.errors import InvalidDependencyGraph
from swarmplane.models import (
    Dependency,
    DependencyKind,
    RetryPolicy,
    SubtaskPhase,
    SubtaskSpec,
    SubtaskStatus,
)
from swarmplane.scheduler import (
    Readiness,
    backoff_delay,
    build_dag,
    dependency_readiness,
    downstream_of,
    evaluate_condition,
    next_attempt_time,
    parse_condition,
    retry_schedule,
    topological_order,
)


def specs(*names):
    return [SubtaskSpec(name=n) for n in names]


def dep(src, dst, kind=DependencyKind.COMPLETION, condition=""):
    return Dependency(from_=src, to=dst, kind=kind, condition=condition)


def statuses(**phases):
    return {name: SubtaskStatus(name=name, phase=phase) for name, phase in phases.items()}


# ── Graph construction ───────────────────────────────────────────────────────


class TestBuildDag:
    def test_edges_carry_dependencies(self):
        G = build_dag(specs("a", "b"), [dep("a", "b"), dep("a", "b", DependencyKind.DATA)])
        assert list(G.edges) == [("a", "b")]
        assert len(G["a"]["b"]["deps"]) == 2

    def test_cycle_rejected(self):
        with pytest.raises(InvalidDependencyGraph, match="cycle"):
            build_dag(specs("a", "b", "c"), [dep("a", "b"), dep("b", "c"), dep("c", "a")])

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(InvalidDependencyGraph, match="cycle"):
            build_dag(specs("a"), [dep("a", "a")])

    def test_unknown_subtask_rejected(self):
        with pytest.raises(InvalidDependencyGraph, match="ghost"):
            build_dag(specs("a"), [dep("ghost", "a")])

    def test_duplicate_name_rejected(self):
        with pytest.raises(InvalidDependencyGraph, match="duplicate"):
            build_dag(specs("a", "a"), [])

    def test_conditional_needs_parseable_condition(self):
        with pytest.raises(InvalidDependencyGraph, match="no condition"):
            build_dag(specs("a", "b"), [dep("a", "b", DependencyKind.CONDITIONAL)])
        with pytest.raises(InvalidDependencyGraph, match="unparseable"):
            build_dag(specs("a", "b"), [dep("a", "b", DependencyKind.CONDITIONAL, "score >=")])

    def test_topological_order_keeps_declaration_order(self):
        G = build_dag(specs("d", "c", "b", "a"), [dep("c", "a"), dep("d", "a")])
        assert topological_order(G) == ["d", "c", "b", "a"]

        G = build_dag(specs("a", "b", "c"), [dep("c", "a")])
        assert topological_order(G) == ["b", "c", "a"]

    def test_downstream(self):
        G = build_dag(specs("a", "b", "c", "d"), [dep("a", "b"), dep("b", "c")])
        assert downstream_of(G, ["a"]) == {"b", "c"}
        assert downstream_of(G, ["d"]) == set()


# ── Readiness ────────────────────────────────────────────────────────────────


class TestReadiness:
    def test_roots_are_ready(self):
        G = build_dag(specs("a"), [])
        assert dependency_readiness(G, "a", statuses(a=SubtaskPhase.PENDING)) == Readiness.READY

    def test_completion_dependency(self):
        G = build_dag(specs("a", "b"), [dep("a", "b")])
        state = statuses(a=SubtaskPhase.RUNNING, b=SubtaskPhase.PENDING)
        assert dependency_readiness(G, "b", state) == Readiness.WAITING
        state["a"].phase = SubtaskPhase.COMPLETED
        assert dependency_readiness(G, "b", state) == Readiness.READY

    def test_dead_upstream_blocks(self):
        G = build_dag(specs("a", "b"), [dep("a", "b")])
        for phase in (SubtaskPhase.FAILED, SubtaskPhase.SKIPPED, SubtaskPhase.CANCELLED):
            state = statuses(a=phase, b=SubtaskPhase.PENDING)
            assert dependency_readiness(G, "b", state) == Readiness.BLOCKED

    def test_data_dependency_needs_artifact(self):
        G = build_dag(specs("a", "b"), [dep("a", "b", DependencyKind.DATA)])
        state = statuses(a=SubtaskPhase.COMPLETED, b=SubtaskPhase.PENDING)
        assert dependency_readiness(G, "b", state) == Readiness.WAITING
        state["a"].artifact_available = True
        assert dependency_readiness(G, "b", state) == Readiness.READY

    def test_conditional_dependency(self):
        G = build_dag(specs("a", "b"), [dep("a", "b", DependencyKind.CONDITIONAL, "score >= 0.8")])
        state = statuses(a=SubtaskPhase.COMPLETED, b=SubtaskPhase.PENDING)
        state["a"].result = {"score": 0.5}
        assert dependency_readiness(G, "b", state) == Readiness.BLOCKED
        state["a"].result = {"score": 0.9}
        assert dependency_readiness(G, "b", state) == Readiness.READY


# ── Condition expressions ────────────────────────────────────────────────────


class TestConditions:
    def test_parse(self):
        parsed = parse_condition("status == 'passed'")
        assert (parsed.key, parsed.op, parsed.literal) == ("status", "==", "passed")
        assert parse_condition("not flaky").negate

    def test_not_with_comparison_rejected(self):
        with pytest.raises(InvalidDependencyGraph):
            parse_condition("not score > 1")

    @pytest.mark.parametrize(
        "expression, result, expected",
        [
            ("passed", {"passed": True}, True),
            ("not passed", {"passed": True}, False),
            ("score >= 0.8", {"score": 0.8}, True),
            ("score > 0.8", {"score": "0.9"}, True),
            ("score > 0.8", {"score": "high"}, False),
            ("metrics.coverage < 50", {"metrics": {"coverage": 42}}, True),
            ("status == passed", {"status": "passed"}, True),
            ("status != null", {"status": None}, False),
            ("missing == 1", {}, False),
            ("count > 1", {"count": [1, 2]}, False),
        ],
    )
    def test_evaluate(self, expression, result, expected):
        assert evaluate_condition(expression, result) is expected


# ── Backoff ──────────────────────────────────────────────────────────────────


class TestBackoff:
    def test_exponential_schedule(self):
        policy = RetryPolicy()
        assert retry_schedule(policy) == [60.0, 120.0, 240.0]
        assert backoff_delay(RetryPolicy(backoff_seconds=5, backoff_multiplier=3), 2) == 45.0

    def test_next_attempt_time(self, clock):
        policy = RetryPolicy(max_retries=2, backoff_seconds=10)
        assert next_attempt_time(policy, 0, clock()) == clock() + timedelta(seconds=10)
        assert next_attempt_time(policy, 1, clock()) == clock() + timedelta(seconds=20)
        assert next_attempt_time(policy, 2, clock()) is None

    def test_zero_retries(self, clock):
        policy = RetryPolicy(max_retries=0)
        assert retry_schedule(policy) == []
        assert next_attempt_time(policy, 0, clock()) is None
