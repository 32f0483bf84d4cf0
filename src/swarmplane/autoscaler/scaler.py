"""
Swarmplane Autoscaler
=====================

Turns metric readings into a desired agent population.

1. pressure = observed / target for every available reading
2. scale factor = the largest pressure
3. desired total = clamp(round(current total x factor), min, max)
4. the desired total is split across agent types by topology ratios
5. growth applies at once; shrinking waits for the stabilization window
   since the last scale event
6. with no readings at all the current population is kept

With ``quantize_scale_up`` a factor above 1 is rounded up to the next whole
number, so scale-up happens in whole multiples of the current population.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from swarmplane.autoscaler.metrics import MetricReading
from swarmplane.models import AgentType
from swarmplane.topology import distribute_by_ratios

logger = logging.getLogger("swarmplane.autoscaler")

UP = "up"
DOWN = "down"
REBALANCE = "rebalance"
NONE = "none"


@dataclass
class ScalingDecision:
    current_total: int
    desired_total: int
    desired_population: dict[AgentType, int]
    direction: str = NONE
    scale_factor: Optional[float] = None
    suppressed: bool = False
    reason: str = ""
    readings: list[MetricReading] = field(default_factory=list)

    @property
    def should_apply(self) -> bool:
        return self.direction != NONE and not self.suppressed


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_scale_factor(readings: list[MetricReading], quantize_scale_up: bool = False) -> Optional[float]:
    """Largest pressure among available readings, or None if there are none."""
    pressures = [r.pressure for r in readings if r.available]
    if not pressures:
        return None
    factor = max(pressures)
    if quantize_scale_up and factor > 1.0:
        factor = float(math.ceil(factor))
    return factor


def compute_desired_total(current_total: int, scale_factor: float, min_agents: int, max_agents: int) -> int:
    desired = round_half_up(current_total * scale_factor)
    return max(min_agents, min(max_agents, desired))


class Autoscaler:
    def __init__(self, stabilization_window_seconds: float = 300.0, quantize_scale_up: bool = True):
        self.stabilization_window_seconds = stabilization_window_seconds
        self.quantize_scale_up = quantize_scale_up

    def evaluate(
        self,
        current: dict[AgentType, int],
        readings: list[MetricReading],
        ratios: dict[AgentType, float],
        min_agents: int,
        max_agents: int,
        now: datetime,
        last_scale_time: Optional[datetime] = None,
        stabilization_window_seconds: Optional[float] = None,
    ) -> ScalingDecision:
        current_total = sum(current.values())
        factor = compute_scale_factor(readings, self.quantize_scale_up)
        if factor is None:
            logger.warning("No metrics available, retaining current population")
            return ScalingDecision(
                current_total=current_total,
                desired_total=current_total,
                desired_population=dict(current),
                reason="NoMetricsAvailable",
                readings=readings,
            )

        desired_total = compute_desired_total(current_total, factor, min_agents, max_agents)
        desired_population = distribute_by_ratios(desired_total, ratios)
        decision = ScalingDecision(
            current_total=current_total,
            desired_total=desired_total,
            desired_population=desired_population,
            scale_factor=factor,
            readings=readings,
        )

        if desired_total > current_total:
            decision.direction = UP
            decision.reason = f"scale factor {factor:.2f}: {current_total} -> {desired_total} agents"
        elif desired_total < current_total:
            decision.direction = DOWN
            decision.reason = f"scale factor {factor:.2f}: {current_total} -> {desired_total} agents"
            window = self.stabilization_window_seconds
            if stabilization_window_seconds is not None:
                window = stabilization_window_seconds
            if last_scale_time is not None:
                elapsed = (now - last_scale_time).total_seconds()
                if elapsed < window:
                    decision.suppressed = True
                    decision.reason = (
                        f"scale-down to {desired_total} suppressed: "
                        f"{elapsed:.0f}s since last scale, window {window:.0f}s"
                    )
        elif any(current.get(t, 0) != n for t, n in desired_population.items()):
            decision.direction = REBALANCE
            decision.reason = "rebalancing agent types to topology ratios"
        return decision
