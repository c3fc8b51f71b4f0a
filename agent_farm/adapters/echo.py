"""Deterministic local adapter for development and tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog

from agent_farm.adapters.base import ExecutionAdapter, ExecutionResult
from agent_farm.controller.models import TaskRecord, WorkerRecord
from agent_farm.exceptions import ExecutionError

logger = structlog.get_logger()


class EchoAdapter(ExecutionAdapter):
    """Echoes the task payload back as output.

    Tokens are estimated at four characters each and priced at
    ``cost_per_token``. Workers in ``failing_workers`` reject every task and
    fail their health probe.
    """

    name = "echo"

    def __init__(
        self,
        cost_per_token: float = 0.000002,
        delay: float = 0.0,
        failing_workers: set[str] | None = None,
    ) -> None:
        self.cost_per_token = cost_per_token
        self.delay = delay
        self.failing_workers: set[str] = set(failing_workers or ())
        self.calls: list[tuple[str, str]] = []

    async def execute(self, worker: WorkerRecord, task: TaskRecord) -> ExecutionResult:
        self.calls.append((worker.worker_id, task.task_id))
        if self.delay:
            await asyncio.sleep(self.delay)

        if worker.worker_id in self.failing_workers:
            raise ExecutionError(f"Worker {worker.name} rejected task {task.task_id}")

        text = _as_text(task.payload)
        output = text or f"{task.task_type} output"
        tokens = len(text) // 4 + len(output) // 4
        logger.debug("echo_executed", worker_id=worker.worker_id, task_id=task.task_id)
        return ExecutionResult(
            success=True,
            output=output,
            cost=tokens * self.cost_per_token,
            tokens=tokens,
            metadata={
                "backend": self.name,
                "model": worker.model,
                "capability": worker.capability,
            },
        )

    async def health_check(self, worker: WorkerRecord) -> bool:
        return worker.worker_id not in self.failing_workers


def _as_text(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, sort_keys=True, default=str)
