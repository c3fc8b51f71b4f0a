"""Priority task scheduler with retries and backoff."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from typing import Any, Callable

import structlog

from agent_farm.adapters.base import ExecutionAdapter, ExecutionResult
from agent_farm.config import RetryPolicy, Settings
from agent_farm.controller.circuit_breaker import CircuitBreaker
from agent_farm.controller.metrics import MetricsStore
from agent_farm.controller.models import (
    TaskAssignment,
    TaskError,
    TaskRecord,
    TaskRequirements,
    TaskResult,
    WorkerRecord,
    new_id,
    utc_now,
)
from agent_farm.controller.pool import PoolManager, TaskProfile
from agent_farm.events import (
    TASK_ASSIGNED,
    TASK_CANCELLED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_RETRY_SCHEDULED,
    TASK_SUBMITTED,
    EventBus,
)
from agent_farm.exceptions import (
    ClusterNotFoundError,
    ExecutionError,
    TaskFailedError,
    TaskNotFoundError,
    ValidationError,
    WorkerNotFoundError,
)
from agent_farm.models import TaskSubmitRequest

logger = structlog.get_logger()


class TaskScheduler:
    """Owns the pending queue and drives tasks through their lifecycle.

    queued -> assigned -> processing -> completed | failed, with failed
    attempts re-queued after a backoff delay while retries remain. Queued
    tasks can be cancelled before assignment.

    When no worker is available the task goes back to the head of the queue
    so it keeps its place for the next tick. A high-priority task that can
    never be placed therefore stays ahead of lower-priority ones with the same
    cluster, which can starve them; ``scheduling_misses`` on the task and the
    ``no_worker_available`` stat expose that delay.
    """

    def __init__(
        self,
        pool: PoolManager,
        metrics: MetricsStore,
        breaker: CircuitBreaker,
        adapter: ExecutionAdapter,
        retry_policy: RetryPolicy | None = None,
        max_concurrent_tasks: int = 1000,
        max_dispatch_per_tick: int = 10,
        task_timeout_ms: int = 300000,
        default_priority: int = 1,
        history_limit: int = 1000,
        history_trim: int = 500,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pool = pool
        self._metrics = metrics
        self._breaker = breaker
        self._adapter = adapter
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrent_tasks = max_concurrent_tasks
        self.max_dispatch_per_tick = max_dispatch_per_tick
        self.task_timeout_ms = task_timeout_ms
        self.default_priority = default_priority
        self.history_limit = history_limit
        self.history_trim = history_trim
        self._events = events
        self._clock = clock

        self._tasks: dict[str, TaskRecord] = {}
        self._queue: list[TaskRecord] = []
        self._delayed: list[TaskRecord] = []
        self._active: dict[str, TaskRecord] = {}
        self._history: list[TaskRecord] = []
        self._running: set[asyncio.Task[None]] = set()
        self._stats: Counter[str] = Counter()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        pool: PoolManager,
        metrics: MetricsStore,
        breaker: CircuitBreaker,
        adapter: ExecutionAdapter,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> TaskScheduler:
        return cls(
            pool=pool,
            metrics=metrics,
            breaker=breaker,
            adapter=adapter,
            retry_policy=settings.retry_policy,
            max_concurrent_tasks=settings.max_concurrent_tasks,
            max_dispatch_per_tick=settings.max_dispatch_per_tick,
            task_timeout_ms=settings.task_timeout_ms,
            default_priority=settings.default_priority,
            history_limit=settings.history_limit,
            history_trim=settings.history_trim,
            events=events,
            clock=clock,
        )

    # -- submission ------------------------------------------------------

    def submit(self, request: TaskSubmitRequest) -> TaskRecord:
        """Validate a request, apply requirement defaults and enqueue it.

        Raises:
            ValidationError: the request is malformed; nothing is enqueued
        """
        req = request.requirements
        if not request.task_type or not request.task_type.strip():
            raise ValidationError("task_type must not be empty")
        if req.timeout_ms is not None and req.timeout_ms <= 0:
            raise ValidationError("timeout_ms must be positive")
        if req.max_retries is not None and req.max_retries < 0:
            raise ValidationError("max_retries must not be negative")
        if req.min_quality is not None and not 0.0 <= req.min_quality <= 1.0:
            raise ValidationError("min_quality must be within [0, 1]")
        if req.budget is not None and req.budget <= 0:
            raise ValidationError("budget must be positive")
        if request.cluster_id is not None and not self._pool.has_cluster(request.cluster_id):
            raise ValidationError(f"Unknown cluster: {request.cluster_id}")

        task = TaskRecord(
            task_id=new_id(),
            task_type=request.task_type.strip(),
            payload=request.payload,
            context=dict(request.context),
            requirements=TaskRequirements(
                priority=self.default_priority if req.priority is None else req.priority,
                timeout_ms=req.timeout_ms or self.task_timeout_ms,
                max_retries=(
                    self.retry_policy.max_retries if req.max_retries is None else req.max_retries
                ),
                capability=req.capability,
                model=req.model,
                min_quality=req.min_quality,
                budget=req.budget,
            ),
            requested_cluster=request.cluster_id,
        )
        self._tasks[task.task_id] = task
        self._queue.append(task)
        self._stats["submitted"] += 1

        logger.info(
            "task_submitted",
            task_id=task.task_id,
            task_type=task.task_type,
            priority=task.requirements.priority,
        )
        self._publish(TASK_SUBMITTED, task)
        return task

    def cancel(self, task_id: str) -> bool:
        """Cancel a task that has not been assigned yet."""
        task = self.get_task(task_id)
        if task.status != "queued":
            return False

        if task in self._queue:
            self._queue.remove(task)
        elif task in self._delayed:
            self._delayed.remove(task)
        task.status = "cancelled"
        task.not_before = None
        self._stats["cancelled"] += 1
        self._finish(task)

        logger.info("task_cancelled", task_id=task_id)
        self._publish(TASK_CANCELLED, task)
        return True

    # -- dispatch --------------------------------------------------------

    async def tick(self) -> list[TaskRecord]:
        """Assign as many queued tasks as capacity allows; never waits on execution."""
        self._release_due_retries()

        # list.sort is stable, so equal priorities keep queue order
        self._queue.sort(key=lambda t: t.requirements.priority, reverse=True)

        capacity = min(
            self.max_concurrent_tasks - len(self._active),
            self.max_dispatch_per_tick,
        )
        if capacity <= 0 or not self._queue:
            return []

        batch = self._queue[:capacity]
        del self._queue[:capacity]

        dispatched: list[TaskRecord] = []
        unplaced: list[TaskRecord] = []
        for task in batch:
            try:
                placed = self.assign(task)
            except Exception as e:
                logger.error("task_assignment_failed", task_id=task.task_id, error=str(e))
                self._fail_terminally(task, "ASSIGNMENT_ERROR", str(e))
                continue
            if placed:
                dispatched.append(task)
            elif task.status == "queued":
                unplaced.append(task)

        self._queue[:0] = unplaced
        return dispatched

    def assign(self, task: TaskRecord) -> bool:
        """Place one task on a worker and start executing it.

        Returns False when the task was not dispatched: either no worker was
        available (the task stays queued) or its cluster or worker vanished
        (the task fails without consuming a retry).
        """
        try:
            cluster_id = task.requested_cluster
            if cluster_id is None:
                cluster = self._pool.select_cluster(
                    TaskProfile(
                        capability=task.requirements.capability,
                        model=task.requirements.model,
                    )
                )
                cluster_id = cluster.cluster_id if cluster else None
            worker = (
                self._pool.select_worker_in_cluster(cluster_id, task)
                if cluster_id is not None
                else None
            )
        except (ClusterNotFoundError, WorkerNotFoundError) as e:
            logger.error("task_target_missing", task_id=task.task_id, error=e.message)
            self._fail_terminally(task, e.code, e.message)
            return False

        if worker is None:
            task.scheduling_misses += 1
            self._stats["no_worker_available"] += 1
            logger.debug(
                "no_worker_available",
                task_id=task.task_id,
                misses=task.scheduling_misses,
            )
            return False

        task.assignment = TaskAssignment(
            cluster_id=cluster_id,
            worker_id=worker.worker_id,
            assigned_at=utc_now(),
        )
        task.status = "assigned"
        self._active[task.task_id] = task
        self._pool.acquire(worker.worker_id)
        task.assignment.trial = self._breaker.acquire_trial(worker.worker_id)
        self._stats["dispatched"] += 1

        logger.info(
            "task_assigned",
            task_id=task.task_id,
            cluster_id=cluster_id,
            worker_id=worker.worker_id,
        )
        self._publish(TASK_ASSIGNED, task, worker_id=worker.worker_id)

        job = asyncio.create_task(self.execute(task, worker))
        self._running.add(job)
        job.add_done_callback(self._running.discard)
        return True

    async def execute(self, task: TaskRecord, worker: WorkerRecord) -> None:
        """Run one attempt through the adapter and fold the outcome back in."""
        task.status = "processing"
        started = self._clock()
        try:
            try:
                result = await self._adapter.invoke(worker, task)
            except ExecutionError as e:
                self._on_failure(task, worker, e.code, e.message, started)
            except Exception as e:
                logger.error("adapter_crashed", task_id=task.task_id, error=str(e))
                self._on_failure(task, worker, ExecutionError.code, str(e), started)
            else:
                self._on_success(task, worker, result)
        finally:
            self._active.pop(task.task_id, None)
            self._pool.release(worker.worker_id)

    def _on_success(self, task: TaskRecord, worker: WorkerRecord, result: ExecutionResult) -> None:
        latency_ms = result.latency_ms or 0.0
        metrics: dict[str, Any] = {}
        if worker.worker_id in self._metrics:
            metrics = self._metrics.track_execution(
                worker.worker_id, True, latency_ms, result.cost
            ).to_dict()
            self._breaker.record_success(worker.worker_id, trial=task.assignment.trial)
            self._pool.record_usage(worker.worker_id, result.tokens)

        task.result = TaskResult(
            output=result.output,
            latency_ms=latency_ms,
            cost=result.cost,
            tokens=result.tokens,
            metadata=result.metadata,
        )
        task.error = None
        task.status = "completed"
        self._stats["completed"] += 1
        self._finish(task)

        logger.info(
            "task_completed",
            task_id=task.task_id,
            worker_id=worker.worker_id,
            latency_ms=latency_ms,
        )
        self._publish(TASK_COMPLETED, task, worker_id=worker.worker_id, metrics=metrics)

    def _on_failure(
        self,
        task: TaskRecord,
        worker: WorkerRecord,
        code: str,
        message: str,
        started: float,
    ) -> None:
        duration_ms = (self._clock() - started) * 1000
        if worker.worker_id in self._metrics:
            self._metrics.track_execution(worker.worker_id, False, duration_ms, 0.0)
            self._breaker.record_failure(worker.worker_id)

        delay_ms = self.retry_policy.delay_ms(task.retry_count)
        retryable = task.retry_count < task.requirements.max_retries
        task.retry_count += 1

        logger.warning(
            "task_attempt_failed",
            task_id=task.task_id,
            worker_id=worker.worker_id,
            code=code,
            error=message,
            retry_count=task.retry_count,
        )

        if not retryable:
            self._fail_terminally(task, TaskFailedError.code, message)
            return

        task.error = TaskError(code=code, message=message, retry_count=task.retry_count)
        task.status = "queued"
        task.assignment = TaskAssignment()
        task.not_before = self._clock() + delay_ms / 1000
        self._delayed.append(task)
        self._stats["retries_scheduled"] += 1
        self._publish(TASK_RETRY_SCHEDULED, task, delay_ms=delay_ms)

    def _fail_terminally(self, task: TaskRecord, code: str, message: str) -> None:
        task.error = TaskError(code=code, message=message, retry_count=task.retry_count)
        task.status = "failed"
        self._stats["failed"] += 1
        self._finish(task)
        logger.error(
            "task_failed",
            task_id=task.task_id,
            code=code,
            error=message,
            retry_count=task.retry_count,
        )
        self._publish(TASK_FAILED, task)

    def _release_due_retries(self) -> None:
        now = self._clock()
        due = [t for t in self._delayed if t.not_before is not None and t.not_before <= now]
        if not due:
            return
        due.sort(key=lambda t: t.not_before or 0.0)
        for task in due:
            self._delayed.remove(task)
            task.not_before = None
        self._queue.extend(due)

    def _finish(self, task: TaskRecord) -> None:
        task.completed_at = utc_now()
        self._history.append(task)
        if len(self._history) > self.history_limit:
            evicted = self._history[: len(self._history) - self.history_trim]
            self._history = self._history[-self.history_trim :]
            for old in evicted:
                self._tasks.pop(old.task_id, None)

    def _publish(self, name: str, task: TaskRecord, **data: Any) -> None:
        if self._events:
            self._events.publish(
                name,
                task.task_id,
                status=task.status,
                task_type=task.task_type,
                retry_count=task.retry_count,
                **data,
            )

    # -- inspection ------------------------------------------------------

    def get_task(self, task_id: str) -> TaskRecord:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_queue(self) -> list[TaskRecord]:
        """Tasks waiting for dispatch, including retries still in backoff."""
        return [*self._queue, *self._delayed]

    def pending_retries(self) -> list[TaskRecord]:
        return list(self._delayed)

    def history(self) -> list[TaskRecord]:
        return list(self._history)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def stats(self) -> dict[str, int]:
        return {
            "queued": len(self._queue) + len(self._delayed),
            "active": len(self._active),
            "history": len(self._history),
            "submitted": self._stats["submitted"],
            "dispatched": self._stats["dispatched"],
            "completed": self._stats["completed"],
            "failed": self._stats["failed"],
            "cancelled": self._stats["cancelled"],
            "no_worker_available": self._stats["no_worker_available"],
            "retries_scheduled": self._stats["retries_scheduled"],
        }

    def success_rate(self) -> float:
        """Share of finished (completed or failed) tasks that completed."""
        done = [t for t in self._history if t.status in ("completed", "failed")]
        if not done:
            return 1.0
        return sum(1 for t in done if t.status == "completed") / len(done)

    async def drain(self) -> None:
        """Wait for every in-flight execution to finish."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def cancel_running(self) -> None:
        """Cancel in-flight executions on shutdown."""
        for job in list(self._running):
            job.cancel()
        await asyncio.gather(*list(self._running), return_exceptions=True)

        # Jobs cancelled before their first step never reach their finally block.
        for task in list(self._active.values()):
            if task.assignment.worker_id is not None:
                self._pool.release(task.assignment.worker_id, completed=False)
        self._active.clear()
