"""Pydantic models for the Agent Farm API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class TaskRequirementsIn(BaseModel):
    """Requirements supplied with a task; unset fields take configured defaults."""

    priority: int | None = Field(default=None, description="Higher runs first")
    timeout_ms: int | None = Field(default=None, description="Per-attempt timeout")
    max_retries: int | None = Field(default=None, description="Retries before failing")
    capability: str | None = Field(default=None, description="Required worker capability")
    model: str | None = Field(default=None, description="Required worker model")
    min_quality: float | None = Field(default=None, description="Minimum worker success rate")
    budget: float | None = Field(default=None, description="Maximum average cost per task")


class TaskSubmitRequest(BaseModel):
    """Request body for task submission."""

    task_type: str = Field(description="Kind of work, e.g. code, analysis, review")
    payload: Any = Field(default=None, description="Input handed to the execution adapter")
    context: dict[str, Any] = Field(default_factory=dict)
    requirements: TaskRequirementsIn = Field(default_factory=TaskRequirementsIn)
    cluster_id: str | None = Field(default=None, description="Pin the task to a cluster")


class TaskView(BaseModel):
    """Task information in responses."""

    task_id: str
    task_type: str
    status: str
    priority: int
    cluster_id: str | None = None
    worker_id: str | None = None
    assigned_at: datetime | None = None
    retry_count: int = 0
    scheduling_misses: int = 0
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    submitted_at: datetime
    completed_at: datetime | None = None


class FeedbackRequest(BaseModel):
    """Request body for quality feedback."""

    worker_id: str
    score: float = Field(ge=0, le=1, description="Quality rating in [0, 1]")
    feedback_type: Literal["human", "automated", "system"] = "human"
    metadata: dict[str, Any] = Field(default_factory=dict)


class ClusterCreateRequest(BaseModel):
    """Request body for cluster creation."""

    name: str
    purpose: str = ""
    capability: str = "general"
    region: str = "us-east-1"
    strategy: Literal["round-robin", "least-connections", "performance-based"] = (
        "performance-based"
    )
    min_workers: int | None = Field(default=None, ge=0)
    max_workers: int | None = Field(default=None, ge=1)
    scale_up_threshold: float | None = Field(default=None, gt=0, le=1)
    scale_down_threshold: float | None = Field(default=None, ge=0, lt=1)
    autoscaling: bool = True

    @model_validator(mode="after")
    def _check_bounds(self) -> ClusterCreateRequest:
        if (
            self.min_workers is not None
            and self.max_workers is not None
            and self.min_workers > self.max_workers
        ):
            raise ValueError("min_workers must not exceed max_workers")
        if (
            self.scale_up_threshold is not None
            and self.scale_down_threshold is not None
            and self.scale_down_threshold >= self.scale_up_threshold
        ):
            raise ValueError("scale_down_threshold must be below scale_up_threshold")
        return self


class WorkerAddRequest(BaseModel):
    """Request body for adding a worker to a cluster."""

    capability: str | None = None
    model: str | None = None
    max_concurrency: int | None = Field(default=None, ge=1)
    tools: list[str] | None = None


class MetricsView(BaseModel):
    """Performance metrics for one worker."""

    worker_id: str
    success_rate: float
    avg_latency_ms: float
    avg_cost: float
    total_requests: int
    error_count: int
    last_updated: datetime
    circuit_open: bool
    health_status: str
    circuit_state: str
    failure_count: int


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response."""

    error: ErrorDetail
