"""
Swarmplane Data Models
======================

Pydantic v2 objects held in the declarative state store. Every object kind
(Cluster, Agent, Task) is split into a user-owned ``spec`` and a
reconciler-owned ``status`` and carries versioned ``metadata``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ─────────────────────────────────────────────────────────────


class Topology(str, Enum):
    MESH = "mesh"
    HIERARCHICAL = "hierarchical"
    RING = "ring"
    STAR = "star"


class AgentType(str, Enum):
    RESEARCHER = "researcher"
    CODER = "coder"
    ANALYST = "analyst"
    OPTIMIZER = "optimizer"
    COORDINATOR = "coordinator"
    ARCHITECT = "architect"
    TESTER = "tester"
    REVIEWER = "reviewer"
    DOCUMENTER = "documenter"
    MONITOR = "monitor"
    SPECIALIST = "specialist"


class CognitivePattern(str, Enum):
    CONVERGENT = "convergent"
    DIVERGENT = "divergent"
    LATERAL = "lateral"
    SYSTEMS = "systems"
    CRITICAL = "critical"
    ADAPTIVE = "adaptive"


class ClusterPhase(str, Enum):
    PENDING = "Pending"
    INITIALIZING = "Initializing"
    RUNNING = "Running"
    SCALING = "Scaling"
    TERMINATING = "Terminating"
    FAILED = "Failed"


class AgentPhase(str, Enum):
    PENDING = "Pending"
    INITIALIZING = "Initializing"
    READY = "Ready"
    BUSY = "Busy"
    TERMINATING = "Terminating"
    FAILED = "Failed"


class TaskPhase(str, Enum):
    PENDING = "Pending"
    SCHEDULED = "Scheduled"
    RUNNING = "Running"
    RESUMING = "Resuming"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class SubtaskPhase(str, Enum):
    PENDING = "Pending"
    READY = "Ready"          # dependencies satisfied, waiting for an agent
    RUNNING = "Running"
    RETRYING = "Retrying"    # waiting out its backoff delay
    COMPLETED = "Completed"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"


class DependencyKind(str, Enum):
    COMPLETION = "completion"
    DATA = "data"
    CONDITIONAL = "conditional"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskStrategy(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    ADAPTIVE = "adaptive"
    BALANCED = "balanced"


class FailurePolicy(str, Enum):
    FAIL_FAST = "fail_fast"
    CONTINUE_INDEPENDENT = "continue_independent"
    PARTIAL_SUCCESS = "partial_success"


class MetricKind(str, Enum):
    RESOURCE = "resource"
    CUSTOM = "custom"


ACTIVE_AGENT_PHASES = frozenset({AgentPhase.READY, AgentPhase.BUSY})
TERMINAL_TASK_PHASES = frozenset({TaskPhase.COMPLETED, TaskPhase.FAILED, TaskPhase.CANCELLED})
TERMINAL_SUBTASK_PHASES = frozenset({
    SubtaskPhase.COMPLETED,
    SubtaskPhase.FAILED,
    SubtaskPhase.SKIPPED,
    SubtaskPhase.CANCELLED,
})


# ── Shared ───────────────────────────────────────────────────────────────────


class Condition(BaseModel):
    """Observation recorded on an object's status."""
    type: str
    status: bool
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utcnow)


class ObjectMeta(BaseModel):
    name: str
    uid: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    resource_version: int = 0
    generation: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    owner: Optional[str] = None              # name of the owning Cluster
    finalizers: list[str] = Field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None


# ── Cluster ──────────────────────────────────────────────────────────────────


class AgentTemplate(BaseModel):
    capabilities: list[str] = Field(default_factory=list)
    cognitive_patterns: list[CognitivePattern] = Field(default_factory=list)
    max_concurrent_tasks: Optional[int] = None   # None -> scheduler default
    secrets: list[str] = Field(default_factory=list)
    resources: dict[str, str] = Field(default_factory=dict)


class MetricTarget(BaseModel):
    name: str
    kind: MetricKind = MetricKind.RESOURCE
    target: float
    selector: dict[str, str] = Field(default_factory=dict)


class AutoscalingPolicy(BaseModel):
    enabled: bool = False
    metrics: list[MetricTarget] = Field(default_factory=list)
    # Percentages; insertion order is the remainder priority.
    topology_ratios: dict[AgentType, float] = Field(default_factory=dict)
    stabilization_window_seconds: Optional[float] = None


class ClusterSpec(BaseModel):
    topology: Topology = Topology.MESH
    min_agents: int = 1
    max_agents: int = 5
    strategy: str = "balanced"
    agent_template: AgentTemplate = Field(default_factory=AgentTemplate)
    autoscaling: AutoscalingPolicy = Field(default_factory=AutoscalingPolicy)
    hive_mind: bool = False


class TaskStatistics(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    in_flight: int = 0


class ClusterStatus(BaseModel):
    phase: Optional[ClusterPhase] = None
    active_agents: int = 0
    ready_agents: int = 0
    agents: list[str] = Field(default_factory=list)
    desired_population: dict[AgentType, int] = Field(default_factory=dict)
    last_scale_time: Optional[datetime] = None
    topology_status: dict[str, str] = Field(default_factory=dict)
    task_stats: TaskStatistics = Field(default_factory=TaskStatistics)
    conditions: list[Condition] = Field(default_factory=list)
    observed_generation: int = 0
    message: str = ""


class Cluster(BaseModel):
    KIND: ClassVar[str] = "Cluster"

    metadata: ObjectMeta
    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


# ── Agent ────────────────────────────────────────────────────────────────────


class SubtaskRef(BaseModel):
    """One entry of an agent's assignment ledger."""
    model_config = ConfigDict(frozen=True)

    task: str
    subtask: str
    attempt: int = 0


class PeerStatus(BaseModel):
    configured: bool = False


class AgentSpec(BaseModel):
    cluster: str
    type: AgentType
    index: int = 0
    cognitive_pattern: CognitivePattern = CognitivePattern.ADAPTIVE
    capabilities: list[str] = Field(default_factory=list)
    max_concurrent_tasks: int = 10
    peers: Optional[list[str]] = None       # None until the cluster computes them
    port: int = 8080
    secret_mounts: list[dict[str, str]] = Field(default_factory=list)
    broadcast_enabled: bool = False


class AgentCounters(BaseModel):
    completed_tasks: int = 0
    failed_tasks: int = 0

    @property
    def success_rate(self) -> float:
        total = self.completed_tasks + self.failed_tasks
        return self.completed_tasks / max(1, total)


class AgentStatus(BaseModel):
    phase: Optional[AgentPhase] = None
    phase_since: Optional[datetime] = None
    assigned_subtasks: list[SubtaskRef] = Field(default_factory=list)
    last_heartbeat: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    recovery_attempts: int = 0
    peer_status: dict[str, PeerStatus] = Field(default_factory=dict)
    counters: AgentCounters = Field(default_factory=AgentCounters)
    conditions: list[Condition] = Field(default_factory=list)
    message: str = ""


class Agent(BaseModel):
    KIND: ClassVar[str] = "Agent"

    metadata: ObjectMeta
    spec: AgentSpec
    status: AgentStatus = Field(default_factory=AgentStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def load(self) -> float:
        if self.spec.max_concurrent_tasks <= 0:
            return float("inf")
        return len(self.status.assigned_subtasks) / self.spec.max_concurrent_tasks

    @property
    def has_capacity(self) -> bool:
        return len(self.status.assigned_subtasks) < self.spec.max_concurrent_tasks


# ── Task ─────────────────────────────────────────────────────────────────────


class RetryPolicy(BaseModel):
    max_retries: int = 3
    backoff_seconds: float = 60.0
    backoff_multiplier: float = 2.0


class SubtaskSpec(BaseModel):
    name: str
    type: str = ""
    description: str = ""
    required_capabilities: list[str] = Field(default_factory=list)
    preferred_agent_types: list[AgentType] = Field(default_factory=list)
    estimated_duration_seconds: Optional[float] = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class Dependency(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    to: str
    kind: DependencyKind = DependencyKind.COMPLETION
    condition: str = ""


class TaskSpec(BaseModel):
    cluster: str
    description: str = ""
    type: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    strategy: TaskStrategy = TaskStrategy.PARALLEL
    timeout_seconds: Optional[float] = None
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    resume: bool = False
    subtasks: list[SubtaskSpec] = Field(default_factory=list)
    dependencies: list[Dependency] = Field(default_factory=list)
    required_capabilities: list[str] = Field(default_factory=list)
    preferred_agent_types: list[AgentType] = Field(default_factory=list)
    failure_policy: Optional[FailurePolicy] = None   # None -> scheduler default
    cancel: bool = False
    parameters: dict[str, Any] = Field(default_factory=dict)


class SubtaskStatus(BaseModel):
    name: str
    phase: SubtaskPhase = SubtaskPhase.PENDING
    assigned_agent: Optional[str] = None
    attempt: int = 0
    retry_count: int = 0
    next_attempt_at: Optional[datetime] = None
    dispatched: bool = False
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    result: dict[str, Any] = Field(default_factory=dict)
    artifact_available: bool = False
    error: str = ""


class AssignedAgent(BaseModel):
    name: str
    type: Optional[AgentType] = None
    subtasks: list[str] = Field(default_factory=list)


class TaskResult(BaseModel):
    success: bool
    summary: str = ""
    execution_seconds: float = 0.0
    agents_used: int = 0
    subtasks_completed: int = 0
    subtasks_failed: int = 0
    subtasks_skipped: int = 0


class TaskStatus(BaseModel):
    phase: Optional[TaskPhase] = None
    reason: str = ""
    message: str = ""
    progress: int = 0
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    subtasks: dict[str, SubtaskStatus] = Field(default_factory=dict)
    assigned_agents: list[AssignedAgent] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    retry_count: int = 0
    checkpoint_step: int = 0
    resume_count: int = 0
    result: Optional[TaskResult] = None


class Task(BaseModel):
    KIND: ClassVar[str] = "Task"

    metadata: ObjectMeta
    spec: TaskSpec
    status: TaskStatus = Field(default_factory=TaskStatus)

    @property
    def name(self) -> str:
        return self.metadata.name
