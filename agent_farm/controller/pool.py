"""Cluster and worker pool management."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any

import structlog

from agent_farm.config import ScalingConfig
from agent_farm.controller.circuit_breaker import CircuitBreaker
from agent_farm.controller.metrics import MetricsStore
from agent_farm.controller.models import (
    ClusterRecord,
    RoutingStrategy,
    TaskRecord,
    WorkerRecord,
    WorkerResources,
    WorkerStatus,
    new_id,
    utc_now,
)
from agent_farm.controller.router import RoutingConstraints, RoutingEngine
from agent_farm.events import (
    CIRCUIT_OPENED,
    CLUSTER_CREATED,
    WORKER_REGISTERED,
    WORKER_REMOVED,
    EventBus,
    FarmEvent,
)
from agent_farm.exceptions import (
    CapacityError,
    ClusterNotFoundError,
    ValidationError,
    WorkerBusyError,
    WorkerNotFoundError,
)

logger = structlog.get_logger()

CLUSTER_IDLE_WEIGHT = 0.4
CLUSTER_LATENCY_WEIGHT = 0.2
CLUSTER_UTILIZATION_WEIGHT = 0.2
CLUSTER_ERROR_WEIGHT = 0.2

# Worker defaults keyed by capability; unknown capabilities use "general".
CAPABILITY_DEFAULTS: dict[str, dict[str, Any]] = {
    "general": {
        "max_concurrency": 5,
        "model": "claude-3-sonnet",
        "tools": ["web_search", "calculator", "text_analyzer"],
        "token_quota": 100000,
    },
    "code": {
        "max_concurrency": 4,
        "model": "claude-3-sonnet",
        "tools": ["code_analyzer", "syntax_checker", "documentation_generator"],
        "token_quota": 200000,
    },
    "frontend": {
        "max_concurrency": 4,
        "model": "claude-3-sonnet",
        "tools": ["code_analyzer", "syntax_checker"],
        "token_quota": 150000,
    },
    "backend": {
        "max_concurrency": 4,
        "model": "claude-3-sonnet",
        "tools": ["code_analyzer", "syntax_checker"],
        "token_quota": 150000,
    },
    "data": {
        "max_concurrency": 3,
        "model": "claude-3-opus",
        "tools": ["statistical_analyzer", "data_visualizer", "pattern_detector"],
        "token_quota": 150000,
    },
    "creative": {
        "max_concurrency": 5,
        "model": "claude-3-haiku",
        "tools": ["content_generator", "style_analyzer", "idea_generator"],
        "token_quota": 100000,
    },
}


@dataclass
class ClusterConfig:
    """Parameters for creating a cluster; unset bounds come from ScalingConfig."""

    name: str
    purpose: str = ""
    capability: str = "general"
    region: str = "us-east-1"
    strategy: RoutingStrategy = "performance-based"
    min_workers: int | None = None
    max_workers: int | None = None
    scale_up_threshold: float | None = None
    scale_down_threshold: float | None = None
    autoscaling: bool = True


@dataclass
class WorkerSpec:
    """Parameters for adding a worker; unset fields come from CAPABILITY_DEFAULTS."""

    capability: str = "general"
    model: str | None = None
    max_concurrency: int | None = None
    tools: list[str] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskProfile:
    """What cluster selection needs to know about a task."""

    capability: str | None = None
    model: str | None = None


class PoolManager:
    """Owns clusters and their workers.

    Every worker belongs to exactly one cluster; all mutation of worker
    status, load and connection counts goes through this class.
    """

    def __init__(
        self,
        metrics: MetricsStore,
        breaker: CircuitBreaker,
        router: RoutingEngine,
        scaling: ScalingConfig | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._metrics = metrics
        self._breaker = breaker
        self._router = router
        self.scaling = scaling or ScalingConfig()
        self._events = events
        self._clusters: dict[str, ClusterRecord] = {}
        self._worker_index: dict[str, str] = {}
        self._completed_since_collect: dict[str, int] = {}
        if events:
            events.subscribe(CIRCUIT_OPENED, self._on_circuit_opened)

    def _on_circuit_opened(self, event: FarmEvent) -> None:
        cluster_id = self._worker_index.get(event.entity_id)
        if cluster_id is not None:
            self._clusters[cluster_id].weights[event.entity_id] = 0.0

    # -- lookups ---------------------------------------------------------

    def get_cluster(self, cluster_id: str) -> ClusterRecord:
        cluster = self._clusters.get(cluster_id)
        if cluster is None:
            raise ClusterNotFoundError(cluster_id)
        return cluster

    def has_cluster(self, cluster_id: str) -> bool:
        return cluster_id in self._clusters

    def list_clusters(self) -> list[ClusterRecord]:
        return list(self._clusters.values())

    def find_cluster_of(self, worker_id: str) -> str:
        cluster_id = self._worker_index.get(worker_id)
        if cluster_id is None:
            raise WorkerNotFoundError(worker_id)
        return cluster_id

    def get_worker(self, worker_id: str) -> WorkerRecord:
        cluster = self.get_cluster(self.find_cluster_of(worker_id))
        return cluster.workers[worker_id]

    def all_workers(self) -> list[WorkerRecord]:
        return [w for c in self._clusters.values() for w in c.workers.values()]

    # -- lifecycle -------------------------------------------------------

    def create_cluster(self, config: ClusterConfig) -> ClusterRecord:
        """Register a cluster, then populate it with its minimum workers."""
        s = self.scaling
        cluster = ClusterRecord(
            cluster_id=new_id(),
            name=config.name,
            purpose=config.purpose,
            capability=config.capability,
            region=config.region,
            strategy=config.strategy,
            min_workers=s.min_workers if config.min_workers is None else config.min_workers,
            max_workers=s.max_workers if config.max_workers is None else config.max_workers,
            scale_up_threshold=(
                s.scale_up_threshold
                if config.scale_up_threshold is None
                else config.scale_up_threshold
            ),
            scale_down_threshold=(
                s.scale_down_threshold
                if config.scale_down_threshold is None
                else config.scale_down_threshold
            ),
            autoscaling=config.autoscaling,
        )
        if cluster.min_workers > cluster.max_workers:
            raise CapacityError(
                f"Cluster {config.name}: min_workers {cluster.min_workers} "
                f"exceeds max_workers {cluster.max_workers}"
            )
        if cluster.scale_down_threshold >= cluster.scale_up_threshold:
            raise ValidationError(
                f"Cluster {config.name}: scale_down_threshold {cluster.scale_down_threshold} "
                f"must be below scale_up_threshold {cluster.scale_up_threshold}"
            )

        # Workers reference their cluster, so it must be registered first.
        self._clusters[cluster.cluster_id] = cluster
        self._completed_since_collect[cluster.cluster_id] = 0

        for _ in range(cluster.min_workers):
            self.add_worker(cluster.cluster_id, WorkerSpec(capability=config.capability))

        logger.info(
            "cluster_created",
            cluster_id=cluster.cluster_id,
            name=cluster.name,
            workers=cluster.size,
        )
        if self._events:
            self._events.publish(CLUSTER_CREATED, cluster.cluster_id, cluster=cluster.summary())
        return cluster

    def add_worker(self, cluster_id: str, spec: WorkerSpec | None = None) -> WorkerRecord:
        """Create a worker in a cluster with capability-derived defaults."""
        cluster = self.get_cluster(cluster_id)
        spec = spec or WorkerSpec(capability=cluster.capability)
        if cluster.size >= cluster.max_workers:
            raise CapacityError(
                f"Cluster {cluster.name} already has {cluster.max_workers} workers"
            )

        defaults = CAPABILITY_DEFAULTS.get(spec.capability, CAPABILITY_DEFAULTS["general"])
        worker = WorkerRecord(
            worker_id=new_id(),
            name=f"worker-{spec.capability}-{secrets.token_hex(3)}",
            cluster_id=cluster_id,
            capability=spec.capability,
            model=spec.model or defaults["model"],
            max_concurrency=spec.max_concurrency or defaults["max_concurrency"],
            tools=list(spec.tools if spec.tools is not None else defaults["tools"]),
            resources=WorkerResources(token_quota=defaults["token_quota"]),
        )

        cluster.workers[worker.worker_id] = worker
        cluster.weights[worker.worker_id] = 1.0
        cluster.connections[worker.worker_id] = 0
        self._worker_index[worker.worker_id] = cluster_id
        self._metrics.register(worker.worker_id)

        logger.info(
            "worker_registered",
            cluster_id=cluster_id,
            worker_id=worker.worker_id,
            capability=worker.capability,
        )
        if self._events:
            self._events.publish(
                WORKER_REGISTERED,
                worker.worker_id,
                cluster_id=cluster_id,
                worker=worker.to_dict(),
                metrics=self._metrics.get_metrics(worker.worker_id).to_dict(),
            )
        return worker

    def remove_worker(self, cluster_id: str, worker_id: str) -> WorkerRecord:
        """Remove an idle worker and drop its metrics and breaker state."""
        cluster = self.get_cluster(cluster_id)
        worker = cluster.workers.get(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        if worker.status == "busy" or worker.current_load > 0:
            raise WorkerBusyError(worker_id)
        if cluster.size <= cluster.min_workers:
            raise CapacityError(
                f"Cluster {cluster.name} cannot drop below {cluster.min_workers} workers"
            )

        del cluster.workers[worker_id]
        cluster.weights.pop(worker_id, None)
        cluster.connections.pop(worker_id, None)
        self._worker_index.pop(worker_id, None)
        metrics = self._metrics.get_metrics(worker_id).to_dict() if worker_id in self._metrics else {}
        self._metrics.unregister(worker_id)
        self._breaker.remove(worker_id)

        logger.info("worker_removed", cluster_id=cluster_id, worker_id=worker_id)
        if self._events:
            self._events.publish(WORKER_REMOVED, worker_id, cluster_id=cluster_id, metrics=metrics)
        return worker

    def remove_cluster(self, cluster_id: str) -> None:
        """Remove a cluster whose workers are all idle."""
        cluster = self.get_cluster(cluster_id)
        busy = [w.worker_id for w in cluster.workers.values() if w.current_load > 0]
        if busy:
            raise WorkerBusyError(busy[0])
        for worker_id in list(cluster.workers):
            self._worker_index.pop(worker_id, None)
            self._metrics.unregister(worker_id)
            self._breaker.remove(worker_id)
        del self._clusters[cluster_id]
        self._completed_since_collect.pop(cluster_id, None)
        logger.info("cluster_removed", cluster_id=cluster_id)

    def set_worker_status(self, worker_id: str, status: WorkerStatus) -> WorkerRecord:
        """Set an operator or health status on a worker."""
        worker = self.get_worker(worker_id)
        worker.status = status
        logger.info("worker_status_changed", worker_id=worker_id, status=status)
        return worker

    # -- selection -------------------------------------------------------

    def cluster_score(self, cluster: ClusterRecord) -> float:
        """Suitability of a cluster for new work, in [0, 1]."""
        if cluster.size == 0:
            return 0.0
        idle = sum(1 for w in cluster.workers.values() if w.status == "idle")
        latency_factor = 1 - min(
            cluster.metrics.average_latency_ms / self._router.max_latency_ms, 1.0
        )
        return (
            CLUSTER_IDLE_WEIGHT * idle / cluster.size
            + CLUSTER_LATENCY_WEIGHT * latency_factor
            + CLUSTER_UTILIZATION_WEIGHT * (1 - self.utilization(cluster.cluster_id))
            + CLUSTER_ERROR_WEIGHT * (1 - cluster.metrics.error_rate)
        )

    def select_cluster(self, profile: TaskProfile | None = None) -> ClusterRecord | None:
        """Pick the best-scoring cluster; ties go to the earliest registered."""
        clusters = list(self._clusters.values())
        if profile is not None:
            matching = [
                c for c in clusters
                if any(self._matches(w, profile.capability, profile.model) for w in c.workers.values())
            ]
            clusters = matching or clusters

        best: ClusterRecord | None = None
        best_score = -1.0
        for cluster in clusters:
            score = self.cluster_score(cluster)
            if score > best_score:
                best, best_score = cluster, score
        return best

    def select_worker_in_cluster(
        self,
        cluster_id: str,
        task: TaskRecord,
    ) -> WorkerRecord | None:
        """Choose a worker for a task using the cluster's routing strategy."""
        cluster = self.get_cluster(cluster_id)
        req = task.requirements
        candidates = [
            w.worker_id
            for w in cluster.workers.values()
            if w.accepts_work and self._matches(w, req.capability, req.model)
        ]
        if not candidates:
            return None

        constraints = RoutingConstraints(min_quality=req.min_quality, budget=req.budget)
        for decision in self._router.calculate_weights(candidates, constraints):
            cluster.weights[decision.worker_id] = decision.weight

        decision = self._router.select_by_strategy(
            candidates,
            cluster.strategy,
            connections=cluster.connections,
            rr_index=cluster.round_robin_index,
            constraints=constraints,
        )
        if decision is None:
            return None
        if cluster.strategy == "round-robin":
            cluster.round_robin_index += 1

        logger.debug(
            "worker_selected",
            cluster_id=cluster_id,
            worker_id=decision.worker_id,
            weight=decision.weight,
            reason=decision.reason,
        )
        return cluster.workers[decision.worker_id]

    @staticmethod
    def _matches(worker: WorkerRecord, capability: str | None, model: str | None) -> bool:
        if capability and worker.capability != capability:
            return False
        if model and worker.model != model:
            return False
        return True

    # -- load accounting -------------------------------------------------

    def acquire(self, worker_id: str) -> WorkerRecord:
        """Count one in-flight task against a worker."""
        cluster = self.get_cluster(self.find_cluster_of(worker_id))
        worker = cluster.workers[worker_id]
        if not worker.has_headroom:
            raise CapacityError(f"Worker {worker_id} is at max concurrency")
        worker.current_load += 1
        worker.status = "busy"
        worker.last_active = utc_now()
        cluster.connections[worker_id] = cluster.connections.get(worker_id, 0) + 1
        return worker

    def release(self, worker_id: str, completed: bool = True) -> None:
        """Release one in-flight task from a worker, if it still exists."""
        cluster_id = self._worker_index.get(worker_id)
        if cluster_id is None:
            return
        cluster = self._clusters[cluster_id]
        worker = cluster.workers[worker_id]
        worker.current_load = max(0, worker.current_load - 1)
        if worker.current_load == 0 and worker.status == "busy":
            worker.status = "idle"
        worker.last_active = utc_now()
        cluster.connections[worker_id] = max(0, cluster.connections.get(worker_id, 0) - 1)
        if completed:
            self._completed_since_collect[cluster_id] += 1

    def record_usage(self, worker_id: str, tokens: int | None) -> None:
        if not tokens:
            return
        cluster_id = self._worker_index.get(worker_id)
        if cluster_id is not None:
            self._clusters[cluster_id].workers[worker_id].resources.tokens_used += tokens

    # -- metrics ---------------------------------------------------------

    def utilization(self, cluster_id: str) -> float:
        """Fraction of the cluster's total concurrency currently in use."""
        cluster = self.get_cluster(cluster_id)
        capacity = sum(w.max_concurrency for w in cluster.workers.values())
        if capacity == 0:
            return 0.0
        return sum(w.current_load for w in cluster.workers.values()) / capacity

    def collect_metrics(self, interval_seconds: float = 10.0) -> None:
        """Recompute aggregate metrics and routing weights for every cluster."""
        for cluster in self._clusters.values():
            workers = list(cluster.workers.values())
            snapshots = [self._metrics.get_metrics(w.worker_id) for w in workers]
            m = cluster.metrics
            m.total_requests = sum(s.total_requests for s in snapshots)
            m.active_requests = sum(w.current_load for w in workers)
            if snapshots:
                m.average_latency_ms = sum(s.avg_latency_ms for s in snapshots) / len(snapshots)
                m.error_rate = 1 - sum(s.success_rate for s in snapshots) / len(snapshots)
            else:
                m.average_latency_ms = 0.0
                m.error_rate = 0.0
            m.utilization = self.utilization(cluster.cluster_id)
            completed = self._completed_since_collect.get(cluster.cluster_id, 0)
            m.throughput = completed / interval_seconds if interval_seconds > 0 else 0.0
            self._completed_since_collect[cluster.cluster_id] = 0

            if workers:
                for decision in self._router.calculate_weights([w.worker_id for w in workers]):
                    cluster.weights[decision.worker_id] = decision.weight

    def status(self) -> dict[str, Any]:
        clusters = self.list_clusters()
        workers = self.all_workers()
        count = len(clusters)
        return {
            "total": count,
            "healthy": sum(1 for c in clusters if c.metrics.error_rate < 0.05),
            "total_workers": len(workers),
            "active_workers": sum(1 for w in workers if w.status != "offline"),
            "average_utilization": (
                sum(self.utilization(c.cluster_id) for c in clusters) / count if count else 0.0
            ),
        }
