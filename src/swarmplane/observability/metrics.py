"""
Control-Plane Metrics Collection
================================

In-process collector for operator metrics, with statistical aggregation
and Prometheus text export. This is not a metrics backend; a scraper or
exporter reads ``render_prometheus()``.

Recorded metric names:
- reconcile_duration_seconds{kind, outcome}
- agent_phase_transitions_total{cluster, from, to}
- autoscaling_events_total{cluster, direction}
- autoscaling_desired_agents{cluster}
- task_phase_transitions_total{to}
- task_queue_depth{task}
- subtask_retries_total{task}

Usage:
    collector = MetricsCollector()
    await collector.record("reconcile_duration_seconds", 0.012, kind="Task", outcome="success")
    stats = await collector.get_stats("reconcile_duration_seconds", kind="Task")
    print(f"p95: {stats['p95']:.3f}s")
"""

from __future__ import annotations

import asyncio
import logging
import statistics
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("swarmplane.observability.metrics")


@dataclass
class MetricPoint:
    """
    A single metric observation.

    Attributes:
        name: Metric name (e.g., "reconcile_duration_seconds")
        value: Numeric value
        timestamp: Unix timestamp when metric was recorded
        labels: Key-value pairs for filtering (e.g., {"kind": "Agent"})
    """

    name: str
    value: float
    timestamp: float
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """
    Collects and aggregates operator metrics.

    Usage:
        collector = MetricsCollector(retention_hours=24)
        await collector.record("task_queue_depth", 3, task="build")
        latest = await collector.latest("task_queue_depth", task="build")
    """

    def __init__(self, retention_hours: float = 24.0, clock: Callable[[], float] = time.time):
        self._metrics: List[MetricPoint] = []
        self._lock = asyncio.Lock()
        self._retention_seconds = retention_hours * 3600
        self._clock = clock

    async def record(self, name: str, value: float, **labels: Any):
        async with self._lock:
            self._metrics.append(
                MetricPoint(
                    name=name,
                    value=float(value),
                    timestamp=self._clock(),
                    labels={k: str(v) for k, v in labels.items()},
                )
            )

    async def increment(self, name: str, **labels: Any):
        """Record a counter observation of 1."""
        await self.record(name, 1.0, **labels)

    def _matching(self, name: str, filter_labels: Dict[str, Any]) -> List[MetricPoint]:
        wanted = {k: str(v) for k, v in filter_labels.items()}
        return [
            m for m in self._metrics
            if m.name == name and all(m.labels.get(k) == v for k, v in wanted.items())
        ]

    async def get_stats(self, name: str, **filter_labels: Any) -> Dict[str, Any]:
        """
        Get statistics for a metric.

        Returns:
            Dict with count, sum, min, max, mean, median, p50, p95, p99,
            or an empty dict when nothing matches.
        """
        async with self._lock:
            values = [m.value for m in self._matching(name, filter_labels)]

        if not values:
            return {}

        return {
            "count": len(values),
            "sum": sum(values),
            "min": min(values),
            "max": max(values),
            "mean": statistics.mean(values),
            "median": statistics.median(values),
            "p50": self._percentile(values, 0.50),
            "p95": self._percentile(values, 0.95),
            "p99": self._percentile(values, 0.99),
        }

    async def count(self, name: str, **filter_labels: Any) -> int:
        async with self._lock:
            return len(self._matching(name, filter_labels))

    async def latest(self, name: str, **filter_labels: Any) -> Optional[float]:
        async with self._lock:
            matching = self._matching(name, filter_labels)
        return matching[-1].value if matching else None

    async def get_all_metrics(self) -> List[MetricPoint]:
        async with self._lock:
            return list(self._metrics)

    async def cleanup_old_metrics(self) -> int:
        """Remove metrics older than the retention period; returns the count removed."""
        cutoff_time = self._clock() - self._retention_seconds

        async with self._lock:
            original_count = len(self._metrics)
            self._metrics = [m for m in self._metrics if m.timestamp >= cutoff_time]
            removed = original_count - len(self._metrics)

        if removed > 0:
            logger.info(f"Cleaned up {removed} old metrics")
        return removed

    async def render_prometheus(self) -> str:
        """
        Render metrics in Prometheus text format.

        Counters (names ending in ``_total``) are summed per label set;
        everything else is exported as a gauge holding the latest value.
        """
        async with self._lock:
            by_name: Dict[str, Dict[tuple, MetricPoint | float]] = {}
            for m in self._metrics:
                series = by_name.setdefault(m.name, {})
                key = tuple(sorted(m.labels.items()))
                if m.name.endswith("_total"):
                    series[key] = float(series.get(key, 0.0)) + m.value
                else:
                    series[key] = m.value

        lines = []
        for name, series in sorted(by_name.items()):
            kind = "counter" if name.endswith("_total") else "gauge"
            lines.append(f"# TYPE {name} {kind}")
            for labels, value in sorted(series.items()):
                if labels:
                    label_str = ",".join(f'{k}="{v}"' for k, v in labels)
                    lines.append(f"{name}{{{label_str}}} {value}")
                else:
                    lines.append(f"{name} {value}")
            lines.append("")
        return "\n".join(lines)

    async def export_prometheus(self, output_path: Path):
        text = await self.render_prometheus()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(text, encoding="utf-8")
        logger.info(f"Exported metrics to {output_path}")

    async def clear(self):
        """Clear all metrics (useful for testing)."""
        async with self._lock:
            count = len(self._metrics)
            self._metrics.clear()
        logger.info(f"Cleared {count} metrics")

    def _percentile(self, values: List[float], p: float) -> float:
        if not values:
            return 0.0
        sorted_values = sorted(values)
        index = min(int(len(sorted_values) * p), len(sorted_values) - 1)
        return sorted_values[index]
