"""Swarmplane controller runtime: work queues and the reconciler contract.

The operator wiring lives in ``swarmplane.controller.manager``.
"""

from swarmplane.controller.queue import WorkQueue
from swarmplane.controller.reconciler import ReconcileResult, Reconciler, earliest

__all__ = [
    "ReconcileResult",
    "Reconciler",
    "WorkQueue",
    "earliest",
]
