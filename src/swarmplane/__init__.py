"""
Swarmplane: Control Plane for Agent Swarms
==========================================

Level-triggered reconciliation loops that keep pools of cooperating agents
converged to their declared topology and run dependency-ordered tasks on
them.

Core modules:
- models: Pydantic v2 objects (Cluster, Agent, Task) with spec/status/metadata
- config: YAML configuration loader with defaults, typed settings
- errors: Error taxonomy deciding retry versus terminal failure
- conditions: Status condition helpers
- store: Versioned in-memory state store with finalizers and watches
- checkpoint: Atomic per-step task checkpoints
- audit: Operator event stream (memory + JSONL)

Sub-packages:
- topology: Population sizing and peer graphs
- autoscaler: Metric sources and scaling decisions
- scheduler: Task DAGs, retries, agent assignment, release queue
- agents: Agent lifecycle state machine
- cluster: Cluster reconciler
- controller: Work queues, reconciler contract, operator wiring
- interfaces: Agent runtime, secrets and consensus collaborators
- safeguards: Bounded calls, conflict retry, circuit breaker
- observability: In-process metrics with Prometheus export
"""

from swarmplane.models import (
    Agent,
    AgentPhase,
    AgentType,
    Cluster,
    ClusterPhase,
    Dependency,
    FailurePolicy,
    SubtaskPhase,
    Task,
    TaskPhase,
    Topology,
)
from swarmplane.config import Settings, configure_logging, load_config, load_settings
from swarmplane.errors import (
    CapacityError,
    ConflictError,
    ExternalTimeout,
    InvalidDependencyGraph,
    RetryExhausted,
    SwarmError,
    TransientInfraError,
    ValidationError,
)
from swarmplane.store import InMemoryStore
from swarmplane.checkpoint import FileCheckpointStore, InMemoryCheckpointStore
from swarmplane.audit import EventRecorder
from swarmplane.agents import AgentReconciler
from swarmplane.cluster import ClusterReconciler
from swarmplane.scheduler import ReleaseQueue, TaskReconciler
from swarmplane.controller import ReconcileResult, WorkQueue
from swarmplane.controller.manager import Controller, Operator
from swarmplane.observability import MetricsCollector

__all__ = [
    # Models
    "Agent",
    "AgentPhase",
    "AgentType",
    "Cluster",
    "ClusterPhase",
    "Dependency",
    "FailurePolicy",
    "SubtaskPhase",
    "Task",
    "TaskPhase",
    "Topology",
    # Config
    "Settings",
    "configure_logging",
    "load_config",
    "load_settings",
    # Errors
    "CapacityError",
    "ConflictError",
    "ExternalTimeout",
    "InvalidDependencyGraph",
    "RetryExhausted",
    "SwarmError",
    "TransientInfraError",
    "ValidationError",
    # Runtime
    "AgentReconciler",
    "ClusterReconciler",
    "Controller",
    "EventRecorder",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "InMemoryStore",
    "MetricsCollector",
    "Operator",
    "ReconcileResult",
    "ReleaseQueue",
    "TaskReconciler",
    "WorkQueue",
]
