"""FastAPI server for Agent Farm."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from agent_farm.adapters import ExecutionAdapter, build_adapter
from agent_farm.config import Settings, settings
from agent_farm.controller.farm import AgentFarm
from agent_farm.controller.models import TaskRecord
from agent_farm.controller.pool import ClusterConfig, WorkerSpec
from agent_farm.exceptions import FarmError
from agent_farm.models import (
    ClusterCreateRequest,
    ErrorDetail,
    ErrorResponse,
    FeedbackRequest,
    MetricsView,
    TaskSubmitRequest,
    TaskView,
    WorkerAddRequest,
)

logger = structlog.get_logger()
security = HTTPBearer(auto_error=False)


def task_view(task: TaskRecord) -> TaskView:
    data = task.to_dict()
    return TaskView(
        task_id=task.task_id,
        task_type=task.task_type,
        status=task.status,
        priority=task.requirements.priority,
        cluster_id=task.assignment.cluster_id,
        worker_id=task.assignment.worker_id,
        assigned_at=task.assignment.assigned_at,
        retry_count=task.retry_count,
        scheduling_misses=task.scheduling_misses,
        result=data["result"],
        error=data["error"],
        submitted_at=task.submitted_at,
        completed_at=task.completed_at,
    )


def get_farm(request: Request) -> AgentFarm:
    return request.app.state.farm


def create_app(
    app_settings: Settings | None = None,
    adapter: ExecutionAdapter | None = None,
) -> FastAPI:
    """Build the application around a freshly constructed farm."""
    app_settings = app_settings or settings

    async def verify_token(
        credentials: HTTPAuthorizationCredentials | None = Security(security),
    ) -> str | None:
        """Verify API token if authentication is enabled."""
        if app_settings.api_key is None:
            return None

        if credentials is None:
            raise HTTPException(status_code=401, detail="Missing authentication token")

        if credentials.credentials != app_settings.api_key:
            raise HTTPException(status_code=401, detail="Invalid authentication token")

        return credentials.credentials

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan."""
        structlog.configure(
            wrapper_class=structlog.make_filtering_bound_logger(app_settings.log_level),
        )
        logger.info("farm_server_starting", host=app_settings.host, port=app_settings.port)

        farm = AgentFarm(app_settings, adapter or build_adapter(app_settings))
        app.state.farm = farm
        await farm.start()

        yield

        logger.info("farm_server_shutting_down")
        await farm.stop()

    app = FastAPI(
        title="Agent Farm",
        description="Task scheduling across worker clusters",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add request ID to each request."""
        request_id = str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(FarmError)
    async def farm_error_handler(request: Request, exc: FarmError):
        logger.warning("farm_error", code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=ErrorDetail(code=exc.code, message=exc.message)
            ).model_dump(),
        )

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/status")
    async def farm_status(
        farm: AgentFarm = Depends(get_farm),
        token: str | None = Security(verify_token),
    ) -> dict[str, Any]:
        """Farm status and aggregate metrics."""
        return farm.status()

    @app.post("/v1/tasks", response_model=TaskView, status_code=202)
    async def submit_task(
        body: TaskSubmitRequest,
        farm: AgentFarm = Depends(get_farm),
        token: str | None = Security(verify_token),
    ) -> TaskView:
        """Queue a task for scheduling."""
        try:
            task = farm.submit_task(body)
        except FarmError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        return task_view(task)

    @app.get("/v1/tasks/{task_id}", response_model=TaskView)
    async def get_task(
        task_id: str,
        farm: AgentFarm = Depends(get_farm),
        token: str | None = Security(verify_token),
    ) -> TaskView:
        try:
            return task_view(farm.get_task(task_id))
        except FarmError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @app.delete("/v1/tasks/{task_id}", response_model=TaskView)
    async def cancel_task(
        task_id: str,
        farm: AgentFarm = Depends(get_farm),
        token: str | None = Security(verify_token),
    ) -> TaskView:
        """Cancel a task that has not been assigned yet."""
        try:
            cancelled = farm.cancel_task(task_id)
            task = farm.get_task(task_id)
        except FarmError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        if not cancelled:
            raise HTTPException(
                status_code=409,
                detail=f"Task {task_id} is {task.status} and cannot be cancelled",
            )
        return task_view(task)

    @app.post("/v1/feedback", response_model=MetricsView)
    async def submit_feedback(
        body: FeedbackRequest,
        farm: AgentFarm = Depends(get_farm),
        token: str | None = Security(verify_token),
    ) -> MetricsView:
        """Blend a quality score into a worker's metrics."""
        try:
            farm.submit_quality_feedback(
                body.worker_id, body.score, body.feedback_type, body.metadata
            )
        except FarmError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        return _metrics_view(farm, body.worker_id)

    @app.get("/v1/clusters")
    async def list_clusters(
        farm: AgentFarm = Depends(get_farm),
        token: str | None = Security(verify_token),
    ) -> dict[str, Any]:
        clusters = [c.summary() for c in farm.pool.list_clusters()]
        return {"clusters": clusters, "total": len(clusters)}

    @app.post("/v1/clusters", status_code=201)
    async def create_cluster(
        body: ClusterCreateRequest,
        farm: AgentFarm = Depends(get_farm),
        token: str | None = Security(verify_token),
    ) -> dict[str, Any]:
        try:
            cluster = farm.create_cluster(ClusterConfig(**body.model_dump()))
        except FarmError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        return cluster.summary()

    @app.post("/v1/clusters/{cluster_id}/workers", status_code=201)
    async def add_worker(
        cluster_id: str,
        body: WorkerAddRequest,
        farm: AgentFarm = Depends(get_farm),
        token: str | None = Security(verify_token),
    ) -> dict[str, Any]:
        try:
            cluster = farm.pool.get_cluster(cluster_id)
            spec = WorkerSpec(
                capability=body.capability or cluster.capability,
                model=body.model,
                max_concurrency=body.max_concurrency,
                tools=body.tools,
            )
            worker = farm.pool.add_worker(cluster_id, spec)
        except FarmError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        return worker.to_dict()

    @app.delete("/v1/clusters/{cluster_id}/workers/{worker_id}")
    async def remove_worker(
        cluster_id: str,
        worker_id: str,
        farm: AgentFarm = Depends(get_farm),
        token: str | None = Security(verify_token),
    ) -> dict[str, str]:
        try:
            farm.pool.remove_worker(cluster_id, worker_id)
        except FarmError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        return {"status": "removed", "worker_id": worker_id}

    @app.get("/v1/workers/{worker_id}/metrics", response_model=MetricsView)
    async def worker_metrics(
        worker_id: str,
        farm: AgentFarm = Depends(get_farm),
        token: str | None = Security(verify_token),
    ) -> MetricsView:
        try:
            return _metrics_view(farm, worker_id)
        except FarmError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return app


def _metrics_view(farm: AgentFarm, worker_id: str) -> MetricsView:
    snapshot = farm.metrics.get_metrics(worker_id)
    return MetricsView(
        **snapshot.to_dict(),
        circuit_state=farm.breaker.state_of(worker_id),
        failure_count=farm.breaker.failure_count(worker_id),
    )


app = create_app()


def main() -> None:
    """Run the server."""
    import uvicorn

    uvicorn.run(
        "agent_farm.server:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
