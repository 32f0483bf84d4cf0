"""Swarmplane agents: lifecycle state machine and its reconciler."""

from swarmplane.agents.lifecycle import (
    AGENT_FINALIZER,
    RECOVERY_EXHAUSTED,
    AgentReconciler,
    heartbeat_age,
    recovery_exhausted,
)

__all__ = [
    "AGENT_FINALIZER",
    "RECOVERY_EXHAUSTED",
    "AgentReconciler",
    "heartbeat_age",
    "recovery_exhausted",
]
