"""Tests for scaling decisions and metric sources."""

import asyncio

import httpx
import pytest

from swarmplane.autoscaler import (
    DOWN,
    NONE,
    QUEUED_SUBTASKS,
    REBALANCE,
    UP,
    UTILIZATION,
    Autoscaler,
    ClusterStateMetricSource,
    MetricGatherer,
    MetricReading,
    PrometheusMetricSource,
    StaticMetricSource,
    compute_desired_total,
    compute_scale_factor,
    gather_readings,
)
from swarmplane.autoscaler.scaler import round_half_up
from swarmplane.errors import TransientInfraError
from swarmplane.models import (
    AgentPhase,
    AgentType,
    MetricTarget,
    SubtaskPhase,
    SubtaskStatus,
    Task,
)
from swarmplane.safeguards import CircuitBreaker

C = AgentType.COORDINATOR
W = AgentType.CODER
RATIOS = {C: 20.0, W: 80.0}


def reading(value, target=70.0, name="cpu"):
    return MetricReading(name=name, value=value, target=target)


# ── Scale factor ─────────────────────────────────────────────────────────────


class TestScaleFactor:
    def test_largest_pressure_wins(self):
        assert compute_scale_factor([reading(35), reading(140)]) == 2.0

    def test_unavailable_readings_ignored(self):
        assert compute_scale_factor([reading(None), reading(35)]) == 0.5
        assert compute_scale_factor([reading(None)]) is None
        assert compute_scale_factor([reading(50, target=0)]) is None

    def test_quantize_only_above_one(self):
        assert compute_scale_factor([reading(84)], quantize_scale_up=True) == 2.0
        assert compute_scale_factor([reading(84)]) == pytest.approx(1.2)
        assert compute_scale_factor([reading(35)], quantize_scale_up=True) == 0.5

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(1.5) == 2
        assert round_half_up(2.49) == 2

    def test_desired_total_clamped(self):
        assert compute_desired_total(3, 0.5, 1, 10) == 2
        assert compute_desired_total(4, 3.0, 1, 10) == 10
        assert compute_desired_total(2, 0.1, 2, 10) == 2


# ── Decisions ────────────────────────────────────────────────────────────────


class TestAutoscaler:
    def test_scale_up_applies_immediately(self, clock):
        scaler = Autoscaler()
        decision = scaler.evaluate(
            {C: 1, W: 1}, [reading(140)], RATIOS, 1, 10,
            now=clock(), last_scale_time=clock(),
        )
        assert decision.direction == UP
        assert decision.desired_total == 4
        assert decision.desired_population == {C: 1, W: 3}
        assert decision.should_apply

    def test_scale_down_suppressed_inside_window(self, clock):
        scaler = Autoscaler(stabilization_window_seconds=300)
        last = clock()
        clock.advance(299)
        decision = scaler.evaluate({C: 1, W: 3}, [reading(35)], RATIOS, 1, 10, now=clock(), last_scale_time=last)
        assert decision.direction == DOWN
        assert decision.suppressed
        assert not decision.should_apply
        assert "suppressed" in decision.reason

        clock.advance(1)
        decision = scaler.evaluate({C: 1, W: 3}, [reading(35)], RATIOS, 1, 10, now=clock(), last_scale_time=last)
        assert decision.should_apply
        assert decision.desired_population == {C: 1, W: 1}

    def test_window_override(self, clock):
        scaler = Autoscaler(stabilization_window_seconds=300)
        last = clock()
        clock.advance(60)
        decision = scaler.evaluate(
            {C: 1, W: 3}, [reading(35)], RATIOS, 1, 10,
            now=clock(), last_scale_time=last, stabilization_window_seconds=30,
        )
        assert decision.should_apply

    def test_first_scale_down_not_suppressed(self, clock):
        decision = Autoscaler().evaluate({C: 1, W: 3}, [reading(35)], RATIOS, 1, 10, now=clock())
        assert decision.should_apply

    def test_rebalance_at_same_total(self, clock):
        decision = Autoscaler().evaluate({W: 3}, [reading(70)], RATIOS, 1, 10, now=clock())
        assert decision.direction == REBALANCE
        assert decision.desired_population == {C: 1, W: 2}

    def test_steady_state(self, clock):
        decision = Autoscaler().evaluate({C: 1, W: 2}, [reading(70)], RATIOS, 1, 10, now=clock())
        assert decision.direction == NONE
        assert not decision.should_apply

    def test_no_metrics_keeps_population(self, clock):
        decision = Autoscaler().evaluate({C: 1, W: 2}, [reading(None)], RATIOS, 1, 10, now=clock())
        assert decision.direction == NONE
        assert decision.reason == "NoMetricsAvailable"
        assert decision.desired_population == {C: 1, W: 2}


# ── Metric sources ───────────────────────────────────────────────────────────


class FailingSource:
    def __init__(self):
        self.calls = 0

    async def query(self, name, selector):
        self.calls += 1
        raise TransientInfraError("down")


class SlowSource:
    async def query(self, name, selector):
        await asyncio.sleep(10)


class TestMetricGatherer:
    @pytest.mark.asyncio
    async def test_first_known_value_wins(self):
        first = StaticMetricSource({"cpu": 40})
        second = StaticMetricSource({"cpu": 90, "mem": 10})
        readings = await gather_readings(
            [MetricTarget(name="cpu", target=70), MetricTarget(name="mem", target=50)],
            [first, second],
            {"cluster": "demo"},
        )
        assert [(r.name, r.value) for r in readings] == [("cpu", 40), ("mem", 10)]

    @pytest.mark.asyncio
    async def test_unknown_metric_unavailable(self):
        readings = await gather_readings([MetricTarget(name="gpu", target=50)], [StaticMetricSource()], {})
        assert not readings[0].available

    @pytest.mark.asyncio
    async def test_failing_source_falls_through_and_trips_breaker(self):
        failing = FailingSource()
        backup = StaticMetricSource({"cpu": 50})
        gatherer = MetricGatherer([failing, backup], failure_threshold=2)
        target = [MetricTarget(name="cpu", target=70)]

        for _ in range(3):
            readings = await gatherer.gather(target, {})
            assert readings[0].value == 50

        assert failing.calls == 2
        assert gatherer.breaker(failing).state == CircuitBreaker.OPEN

    @pytest.mark.asyncio
    async def test_slow_source_times_out(self):
        gatherer = MetricGatherer([SlowSource()], timeout=0.01)
        readings = await gatherer.gather([MetricTarget(name="cpu", target=70)], {})
        assert readings[0].value is None


class TestPrometheusMetricSource:
    def test_build_query(self):
        assert PrometheusMetricSource.build_query("up", {}) == "up"
        assert (
            PrometheusMetricSource.build_query("cpu", {"pod": "a", "cluster": "demo"})
            == 'cpu{cluster="demo",pod="a"}'
        )

    @pytest.mark.asyncio
    async def test_query_parses_first_sample(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "status": "success",
                "data": {"resultType": "vector", "result": [{"metric": {}, "value": [1700000000, "72.5"]}]},
            })

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        source = PrometheusMetricSource("http://prom:9090/", client=client)
        assert await source.query("cpu", {"cluster": "demo"}) == 72.5
        assert seen[0].url.path == "/api/v1/query"
        assert seen[0].url.params["query"] == 'cpu{cluster="demo"}'
        await source.aclose()

    @pytest.mark.asyncio
    async def test_empty_result_is_unknown(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"status": "success", "data": {"result": []}})
        ))
        source = PrometheusMetricSource("http://prom:9090", client=client)
        assert await source.query("cpu", {}) is None
        await source.aclose()

    @pytest.mark.asyncio
    async def test_http_error_is_transient(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        source = PrometheusMetricSource("http://prom:9090", client=client)
        with pytest.raises(TransientInfraError):
            await source.query("cpu", {})
        await source.aclose()


class TestClusterStateMetricSource:
    @pytest.mark.asyncio
    async def test_utilization_and_queue(self, store, add_agent, add_task):
        await add_agent("demo-coder-0", index=0, max_concurrent_tasks=2, assigned=[("build", "a", 1)])
        await add_agent("demo-coder-1", index=1, max_concurrent_tasks=2)
        await add_agent("demo-coder-2", index=2, phase=AgentPhase.FAILED)
        task = await add_task(subtasks=("a", "b", "c"))
        task.status.subtasks = {
            "a": SubtaskStatus(name="a", phase=SubtaskPhase.RUNNING),
            "b": SubtaskStatus(name="b", phase=SubtaskPhase.READY),
            "c": SubtaskStatus(name="c", phase=SubtaskPhase.READY),
        }
        await store.update_status(task)

        source = ClusterStateMetricSource(store)
        assert await source.query(UTILIZATION, {"cluster": "demo"}) == 25.0
        assert await source.query(QUEUED_SUBTASKS, {"cluster": "demo"}) == 1.0
        assert await source.query(UTILIZATION, {}) is None
        assert await source.query("cpu", {"cluster": "demo"}) is None
        assert (await store.get(Task, "build")).status.subtasks["b"].phase == SubtaskPhase.READY

    @pytest.mark.asyncio
    async def test_no_active_agents(self, store):
        source = ClusterStateMetricSource(store)
        assert await source.query(UTILIZATION, {"cluster": "demo"}) is None
        assert await source.query(QUEUED_SUBTASKS, {"cluster": "demo"}) == 0.0
