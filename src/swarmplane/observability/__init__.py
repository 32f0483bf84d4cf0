"""Swarmplane observability: in-process operator metrics."""

from swarmplane.observability.metrics import MetricPoint, MetricsCollector

__all__ = ["MetricPoint", "MetricsCollector"]
