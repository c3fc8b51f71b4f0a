"""Controller records for workers, clusters, tasks and metrics."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

HealthStatus = Literal["healthy", "degraded", "failing", "circuit-open"]
CircuitState = Literal["closed", "open", "half_open"]
WorkerStatus = Literal["idle", "busy", "maintenance", "error", "offline"]
TaskStatus = Literal["queued", "assigned", "processing", "completed", "failed", "cancelled"]
RoutingStrategy = Literal["round-robin", "least-connections", "performance-based"]
FeedbackType = Literal["human", "automated", "system"]


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a fresh record id."""
    return str(uuid.uuid4())


@dataclass
class PerformanceRecord:
    """Rolling performance statistics for one worker."""

    worker_id: str
    success_rate: float = 1.0
    avg_latency_ms: float = 0.0
    avg_cost: float = 0.0
    total_requests: int = 0
    error_count: int = 0
    last_updated: datetime = field(default_factory=utc_now)
    circuit_open: bool = False
    health_status: HealthStatus = "healthy"


@dataclass(frozen=True)
class PerformanceSnapshot:
    """Immutable copy of a PerformanceRecord."""

    worker_id: str
    success_rate: float
    avg_latency_ms: float
    avg_cost: float
    total_requests: int
    error_count: int
    last_updated: datetime
    circuit_open: bool
    health_status: HealthStatus

    @classmethod
    def of(cls, record: PerformanceRecord) -> PerformanceSnapshot:
        return cls(**asdict(record))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CircuitBreakerState:
    """Failure isolation state for one worker."""

    worker_id: str
    state: CircuitState = "closed"
    failure_count: int = 0
    last_failure: float | None = None
    opened_at: float | None = None
    trial_requests: int = 0


@dataclass
class WorkerResources:
    """Resource usage snapshot reported for a worker."""

    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    tokens_used: int = 0
    token_quota: int = 100000


@dataclass
class WorkerRecord:
    """Represents a worker owned by a cluster."""

    worker_id: str
    name: str
    cluster_id: str
    capability: str = "general"
    model: str = "default"
    status: WorkerStatus = "idle"
    current_load: int = 0
    max_concurrency: int = 5
    tools: list[str] = field(default_factory=list)
    resources: WorkerResources = field(default_factory=WorkerResources)
    created_at: datetime = field(default_factory=utc_now)
    last_active: datetime = field(default_factory=utc_now)

    @property
    def has_headroom(self) -> bool:
        return self.current_load < self.max_concurrency

    @property
    def accepts_work(self) -> bool:
        """Idle, or busy with spare concurrency."""
        return self.status in ("idle", "busy") and self.has_headroom

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ClusterMetrics:
    """Aggregated cluster statistics; rates are fractions in [0, 1]."""

    total_requests: int = 0
    active_requests: int = 0
    average_latency_ms: float = 0.0
    throughput: float = 0.0
    error_rate: float = 0.0
    utilization: float = 0.0


@dataclass
class ClusterRecord:
    """A named pool of workers sharing routing and scaling policy."""

    cluster_id: str
    name: str
    purpose: str = ""
    capability: str = "general"
    region: str = "us-east-1"
    strategy: RoutingStrategy = "performance-based"
    min_workers: int = 3
    max_workers: int = 10
    scale_up_threshold: float = 0.8
    scale_down_threshold: float = 0.24
    autoscaling: bool = True
    workers: dict[str, WorkerRecord] = field(default_factory=dict)
    weights: dict[str, float] = field(default_factory=dict)
    connections: dict[str, int] = field(default_factory=dict)
    round_robin_index: int = 0
    metrics: ClusterMetrics = field(default_factory=ClusterMetrics)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def size(self) -> int:
        return len(self.workers)

    def summary(self) -> dict[str, Any]:
        """Return a JSON-friendly view without the owned worker objects."""
        return {
            "cluster_id": self.cluster_id,
            "name": self.name,
            "purpose": self.purpose,
            "capability": self.capability,
            "region": self.region,
            "strategy": self.strategy,
            "min_workers": self.min_workers,
            "max_workers": self.max_workers,
            "size": self.size,
            "metrics": asdict(self.metrics),
            "workers": [w.to_dict() for w in self.workers.values()],
        }


@dataclass
class TaskRequirements:
    """Routing and retry requirements for a task."""

    priority: int = 1
    timeout_ms: int = 300000
    max_retries: int = 3
    capability: str | None = None
    model: str | None = None
    min_quality: float | None = None
    budget: float | None = None


@dataclass
class TaskAssignment:
    cluster_id: str | None = None
    worker_id: str | None = None
    assigned_at: datetime | None = None
    trial: bool = False


@dataclass
class TaskResult:
    output: Any
    latency_ms: float
    cost: float = 0.0
    tokens: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskError:
    code: str
    message: str
    retry_count: int = 0


@dataclass
class TaskRecord:
    """A unit of work moving through the scheduler."""

    task_id: str
    task_type: str
    payload: Any = None
    context: dict[str, Any] = field(default_factory=dict)
    requirements: TaskRequirements = field(default_factory=TaskRequirements)
    requested_cluster: str | None = None
    assignment: TaskAssignment = field(default_factory=TaskAssignment)
    status: TaskStatus = "queued"
    result: TaskResult | None = None
    error: TaskError | None = None
    retry_count: int = 0
    not_before: float | None = None
    scheduling_misses: int = 0
    submitted_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RoutingDecision:
    """Weight assigned to a candidate worker and why."""

    worker_id: str
    weight: float
    reason: str
