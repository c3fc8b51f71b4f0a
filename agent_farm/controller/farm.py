"""Agent farm service wiring the scheduling components together."""

from __future__ import annotations

import random
import time
from typing import Any, Callable

import structlog

from agent_farm.adapters.base import ExecutionAdapter
from agent_farm.config import Settings
from agent_farm.controller.autoscaler import Autoscaler
from agent_farm.controller.circuit_breaker import CircuitBreaker
from agent_farm.controller.clock import TickDriver
from agent_farm.controller.health import HealthMonitor
from agent_farm.controller.metrics import MetricsStore
from agent_farm.controller.models import ClusterRecord, PerformanceSnapshot, TaskRecord
from agent_farm.controller.pool import ClusterConfig, PoolManager
from agent_farm.controller.router import RoutingEngine
from agent_farm.controller.scheduler import TaskScheduler
from agent_farm.events import EventBus
from agent_farm.models import TaskSubmitRequest

logger = structlog.get_logger()


class AgentFarm:
    """Explicitly constructed farm service.

    Configuration and the execution adapter are passed in; nothing is read
    from module state. ``start`` registers the periodic updates on one
    TickDriver and ``stop`` tears them down.
    """

    def __init__(
        self,
        settings: Settings,
        adapter: ExecutionAdapter,
        events: EventBus | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.adapter = adapter
        self.events = events or EventBus()
        self.metrics = MetricsStore(
            thresholds=settings.quality_thresholds,
            feedback_alpha=settings.feedback_alpha,
            events=self.events,
        )
        self.breaker = CircuitBreaker(
            config=settings.circuit_breaker,
            metrics=self.metrics,
            events=self.events,
            clock=clock,
        )
        self.router = RoutingEngine(self.metrics, self.breaker, rng=rng)
        self.pool = PoolManager(
            self.metrics,
            self.breaker,
            self.router,
            scaling=settings.scaling,
            events=self.events,
        )
        self.scheduler = TaskScheduler.from_settings(
            settings,
            pool=self.pool,
            metrics=self.metrics,
            breaker=self.breaker,
            adapter=adapter,
            events=self.events,
            clock=clock,
        )
        self.autoscaler = Autoscaler(self.pool, events=self.events)
        self.health = HealthMonitor(
            self.pool,
            adapter,
            self.breaker,
            self.metrics,
            probe_failures_threshold=settings.probe_failures_threshold,
            events=self.events,
        )
        self.driver = TickDriver(clock=clock)

    async def start(self) -> None:
        """Bootstrap the default cluster and start the periodic updates."""
        if self.settings.default_cluster and not self.pool.list_clusters():
            self.create_cluster(
                ClusterConfig(
                    name="default",
                    purpose="General purpose agents",
                    region=self.settings.default_cluster_region,
                )
            )

        s = self.settings
        self.driver.register("scheduler", s.scheduler_interval, self.scheduler.tick)
        self.driver.register("health", s.health_check_interval, self.health.tick)
        self.driver.register(
            "metrics",
            s.metrics_interval,
            lambda: self.pool.collect_metrics(s.metrics_interval),
        )
        if s.scaling.enabled:
            self.driver.register("autoscaler", s.autoscale_interval, self.autoscaler.tick)

        await self.driver.start()
        logger.info("agent_farm_started", clusters=len(self.pool.list_clusters()))

    async def stop(self) -> None:
        await self.driver.stop()
        await self.scheduler.cancel_running()
        await self.adapter.close()
        logger.info("agent_farm_stopped")

    def create_cluster(self, config: ClusterConfig) -> ClusterRecord:
        return self.pool.create_cluster(config)

    def submit_task(self, request: TaskSubmitRequest) -> TaskRecord:
        return self.scheduler.submit(request)

    def cancel_task(self, task_id: str) -> bool:
        return self.scheduler.cancel(task_id)

    def get_task(self, task_id: str) -> TaskRecord:
        return self.scheduler.get_task(task_id)

    def submit_quality_feedback(
        self,
        worker_id: str,
        score: float,
        feedback_type: str,
        metadata: dict[str, Any] | None = None,
    ) -> PerformanceSnapshot:
        return self.metrics.submit_quality_feedback(
            worker_id, score, feedback_type, metadata  # type: ignore[arg-type]
        )

    def status(self) -> dict[str, Any]:
        """Summary of clusters, tasks and performance."""
        clusters = self.pool.list_clusters()
        count = len(clusters)
        stats = self.scheduler.stats()
        return {
            "clusters": self.pool.status(),
            "tasks": stats,
            "performance": {
                "average_latency_ms": (
                    sum(c.metrics.average_latency_ms for c in clusters) / count if count else 0.0
                ),
                "throughput": sum(c.metrics.throughput for c in clusters),
                "error_rate": (
                    sum(c.metrics.error_rate for c in clusters) / count if count else 0.0
                ),
                "success_rate": self.scheduler.success_rate(),
            },
            "workers": self.metrics.feedback_stats(),
        }
