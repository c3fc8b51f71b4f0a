"""HTTP execution adapter."""

from __future__ import annotations

import httpx
import structlog

from agent_farm.adapters.base import ExecutionAdapter, ExecutionResult
from agent_farm.controller.models import TaskRecord, WorkerRecord
from agent_farm.exceptions import ExecutionError

logger = structlog.get_logger()


class HttpExecutionAdapter(ExecutionAdapter):
    """Forwards tasks to an execution backend over HTTP."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
        )

    async def execute(self, worker: WorkerRecord, task: TaskRecord) -> ExecutionResult:
        payload = {
            "task_id": task.task_id,
            "task_type": task.task_type,
            "payload": task.payload,
            "context": task.context,
            "worker": {
                "worker_id": worker.worker_id,
                "name": worker.name,
                "model": worker.model,
                "capability": worker.capability,
                "tools": worker.tools,
            },
        }
        try:
            response = await self._client.post(
                "/execute",
                json=payload,
                headers=self._get_headers(),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "backend_error",
                worker_id=worker.worker_id,
                status_code=e.response.status_code,
                error=str(e),
            )
            raise ExecutionError(
                f"Backend returned {e.response.status_code}",
                code="BACKEND_ERROR",
                status_code=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            logger.error("backend_timeout", worker_id=worker.worker_id)
            raise ExecutionError("Backend timeout", code="TIMEOUT", status_code=504) from e
        except httpx.HTTPError as e:
            logger.error("backend_unreachable", worker_id=worker.worker_id, error=str(e))
            raise ExecutionError(f"Backend unreachable: {e}", code="BACKEND_UNREACHABLE") from e

        return ExecutionResult.model_validate(response.json())

    async def health_check(self, worker: WorkerRecord) -> bool:
        try:
            response = await self._client.get(
                "/health",
                params={"worker_id": worker.worker_id},
                timeout=5.0,
            )
            return response.status_code == 200
        except Exception as e:
            logger.debug("worker_probe_failed", worker_id=worker.worker_id, error=str(e))
            return False

    async def close(self) -> None:
        await self._client.aclose()

    def _get_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers
