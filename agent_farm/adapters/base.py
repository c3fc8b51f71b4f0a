"""Base execution adapter interface."""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from agent_farm.controller.models import TaskRecord, WorkerRecord
from agent_farm.exceptions import ExecutionError


class ExecutionResult(BaseModel):
    """Outcome of one task attempt on one worker."""

    success: bool = Field(default=True)
    output: Any = Field(default=None)
    latency_ms: float | None = Field(default=None, ge=0)
    cost: float = Field(default=0.0, ge=0)
    tokens: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    error_code: str | None = Field(default=None)
    error_message: str | None = Field(default=None)


class ExecutionAdapter(ABC):
    """Base class for the component that actually performs work."""

    name: str = "base"

    @abstractmethod
    async def execute(self, worker: WorkerRecord, task: TaskRecord) -> ExecutionResult:
        """Run a task on a worker.

        Raises:
            ExecutionError: the attempt was rejected or failed
        """
        raise NotImplementedError

    async def health_check(self, worker: WorkerRecord) -> bool:
        """Probe a worker. Adapters without a probe report healthy."""
        return True

    async def close(self) -> None:
        """Release adapter resources."""

    async def invoke(self, worker: WorkerRecord, task: TaskRecord) -> ExecutionResult:
        """Run ``execute`` under the task timeout and fill in measured latency.

        A timeout surfaces as an ordinary ExecutionError with code TIMEOUT.
        """
        timeout = task.requirements.timeout_ms / 1000
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(self.execute(worker, task), timeout=timeout)
        except asyncio.TimeoutError:
            raise ExecutionError(
                f"Task {task.task_id} timed out after {task.requirements.timeout_ms}ms",
                code="TIMEOUT",
                status_code=504,
            ) from None

        if not result.success:
            raise ExecutionError(
                result.error_message or "Adapter reported failure",
                code=result.error_code or "EXECUTION_ERROR",
            )
        if result.latency_ms is None:
            result.latency_ms = (time.monotonic() - started) * 1000
        return result
