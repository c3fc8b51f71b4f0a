"""Health checker for workers."""

from __future__ import annotations

import structlog

from agent_farm.adapters.base import ExecutionAdapter
from agent_farm.controller.circuit_breaker import CircuitBreaker
from agent_farm.controller.metrics import MetricsStore
from agent_farm.controller.pool import PoolManager
from agent_farm.events import WORKER_RECOVERED, WORKER_UNHEALTHY, EventBus
from agent_farm.exceptions import WorkerNotFoundError

logger = structlog.get_logger()


class HealthMonitor:
    """Probes workers through the adapter and runs breaker cooldown checks."""

    def __init__(
        self,
        pool: PoolManager,
        adapter: ExecutionAdapter,
        breaker: CircuitBreaker,
        metrics: MetricsStore,
        probe_failures_threshold: int = 3,
        events: EventBus | None = None,
    ) -> None:
        self._pool = pool
        self._adapter = adapter
        self._breaker = breaker
        self._metrics = metrics
        self._probe_failures_threshold = probe_failures_threshold
        self._probe_failures: dict[str, int] = {}
        self._events = events

    async def tick(self) -> None:
        """Check all workers, then re-check open circuits. Never raises."""
        try:
            await self._check_workers()
        except Exception as e:
            logger.error("health_check_error", error=str(e))
        self._breaker.tick()

    async def _check_workers(self) -> None:
        workers = self._pool.all_workers()
        known = {w.worker_id for w in workers}
        for worker_id in [w for w in self._probe_failures if w not in known]:
            del self._probe_failures[worker_id]

        for worker in workers:
            if worker.status in ("maintenance", "offline"):
                continue
            try:
                healthy = await self._adapter.health_check(worker)
            except Exception as e:
                logger.debug("worker_probe_failed", worker_id=worker.worker_id, error=str(e))
                healthy = False

            try:
                if healthy:
                    self._handle_healthy(worker.worker_id)
                else:
                    self._handle_unhealthy(worker.worker_id)
            except WorkerNotFoundError:
                # Removed while its probe was in flight.
                self._probe_failures.pop(worker.worker_id, None)
                continue

    def _handle_healthy(self, worker_id: str) -> None:
        self._probe_failures.pop(worker_id, None)
        worker = self._pool.get_worker(worker_id)
        if worker.status != "error":
            return

        self._pool.set_worker_status(worker_id, "busy" if worker.current_load else "idle")
        logger.info("worker_recovered", worker_id=worker_id)
        if self._events:
            self._events.publish(
                WORKER_RECOVERED,
                worker_id,
                cluster_id=worker.cluster_id,
                metrics=self._metrics.get_metrics(worker_id).to_dict(),
            )

    def _handle_unhealthy(self, worker_id: str) -> None:
        failures = self._probe_failures.get(worker_id, 0) + 1
        self._probe_failures[worker_id] = failures
        worker = self._pool.get_worker(worker_id)

        if failures < self._probe_failures_threshold or worker.status == "error":
            logger.warning("worker_probe_failed", worker_id=worker_id, failures=failures)
            return

        self._pool.set_worker_status(worker_id, "error")
        logger.warning("worker_marked_unhealthy", worker_id=worker_id, failures=failures)
        if self._events:
            self._events.publish(
                WORKER_UNHEALTHY,
                worker_id,
                cluster_id=worker.cluster_id,
                failures=failures,
                metrics=self._metrics.get_metrics(worker_id).to_dict(),
            )
