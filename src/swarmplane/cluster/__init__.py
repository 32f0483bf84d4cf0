"""Swarmplane cluster reconciliation."""

from swarmplane.cluster.reconciler import (
    CLUSTER_FINALIZER,
    LABEL_AGENT_TYPE,
    LABEL_CLUSTER,
    ClusterReconciler,
    agent_name,
    validate_cluster_spec,
)

__all__ = [
    "CLUSTER_FINALIZER",
    "LABEL_AGENT_TYPE",
    "LABEL_CLUSTER",
    "ClusterReconciler",
    "agent_name",
    "validate_cluster_spec",
]
