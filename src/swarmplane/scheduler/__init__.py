"""Swarmplane task scheduling: dependency graphs, retries, assignment, release."""

from swarmplane.scheduler.assignment import (
    claim_slot,
    find_claim,
    qualifies,
    release_slot,
    select_agent,
)
from swarmplane.scheduler.backoff import backoff_delay, next_attempt_time, retry_schedule
from swarmplane.scheduler.dag import (
    Readiness,
    build_dag,
    dependency_readiness,
    downstream_of,
    topological_order,
)
from swarmplane.scheduler.expressions import evaluate_condition, parse_condition
from swarmplane.scheduler.queue import ReleasedSubtask, ReleaseQueue
from swarmplane.scheduler.reconciler import TASK_FINALIZER, TaskReconciler

__all__ = [
    "Readiness",
    "ReleaseQueue",
    "ReleasedSubtask",
    "TASK_FINALIZER",
    "TaskReconciler",
    "backoff_delay",
    "build_dag",
    "claim_slot",
    "dependency_readiness",
    "downstream_of",
    "evaluate_condition",
    "find_claim",
    "next_attempt_time",
    "parse_condition",
    "qualifies",
    "release_slot",
    "retry_schedule",
    "select_agent",
    "topological_order",
]
