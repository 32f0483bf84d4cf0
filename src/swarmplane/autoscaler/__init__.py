"""Swarmplane autoscaler: metric sources and scaling decisions."""

from swarmplane.autoscaler.metrics import (
    QUEUED_SUBTASKS,
    UTILIZATION,
    ClusterStateMetricSource,
    MetricGatherer,
    MetricReading,
    MetricSource,
    PrometheusMetricSource,
    StaticMetricSource,
    gather_readings,
)
from swarmplane.autoscaler.scaler import (
    DOWN,
    NONE,
    REBALANCE,
    UP,
    Autoscaler,
    ScalingDecision,
    compute_desired_total,
    compute_scale_factor,
)
from swarmplane.topology import distribute_by_ratios

__all__ = [
    "DOWN",
    "NONE",
    "REBALANCE",
    "UP",
    "QUEUED_SUBTASKS",
    "UTILIZATION",
    "Autoscaler",
    "ClusterStateMetricSource",
    "MetricGatherer",
    "MetricReading",
    "MetricSource",
    "PrometheusMetricSource",
    "ScalingDecision",
    "StaticMetricSource",
    "compute_desired_total",
    "compute_scale_factor",
    "distribute_by_ratios",
    "gather_readings",
]
