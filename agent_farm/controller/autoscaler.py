"""Utilization-driven cluster autoscaler."""

from __future__ import annotations

from typing import Literal

import structlog

from agent_farm.controller.models import ClusterRecord
from agent_farm.controller.pool import PoolManager, WorkerSpec
from agent_farm.events import CLUSTER_SCALED_DOWN, CLUSTER_SCALED_UP, EventBus

logger = structlog.get_logger()

ScalingAction = Literal["up", "down", "none"]


class Autoscaler:
    """Adds or removes one worker per cluster per tick.

    Scale-up and scale-down use separate thresholds so a cluster hovering
    near one of them does not flap.
    """

    def __init__(self, pool: PoolManager, events: EventBus | None = None) -> None:
        self._pool = pool
        self._events = events

    def tick(self) -> dict[str, ScalingAction]:
        """Evaluate every autoscaling cluster. Never raises."""
        actions: dict[str, ScalingAction] = {}
        for cluster in self._pool.list_clusters():
            if not cluster.autoscaling:
                continue
            try:
                actions[cluster.cluster_id] = self.evaluate(cluster)
            except Exception as e:
                logger.error("autoscale_failed", cluster_id=cluster.cluster_id, error=str(e))
        return actions

    def evaluate(self, cluster: ClusterRecord) -> ScalingAction:
        utilization = self._pool.utilization(cluster.cluster_id)
        size = cluster.size

        if utilization > cluster.scale_up_threshold and size < cluster.max_workers:
            self._pool.add_worker(cluster.cluster_id, WorkerSpec(capability=cluster.capability))
            logger.info(
                "cluster_scaled_up",
                cluster_id=cluster.cluster_id,
                utilization=utilization,
                new_size=cluster.size,
            )
            self._publish(CLUSTER_SCALED_UP, cluster, utilization)
            return "up"

        if utilization < cluster.scale_down_threshold and size > cluster.min_workers:
            idle = [w for w in cluster.workers.values() if w.status == "idle" and w.current_load == 0]
            if not idle:
                return "none"
            victim = min(idle, key=lambda w: w.current_load)
            self._pool.remove_worker(cluster.cluster_id, victim.worker_id)
            logger.info(
                "cluster_scaled_down",
                cluster_id=cluster.cluster_id,
                utilization=utilization,
                removed_worker=victim.worker_id,
                new_size=cluster.size,
            )
            self._publish(CLUSTER_SCALED_DOWN, cluster, utilization, removed=victim.worker_id)
            return "down"

        return "none"

    def _publish(
        self,
        name: str,
        cluster: ClusterRecord,
        utilization: float,
        **data: object,
    ) -> None:
        if self._events:
            self._events.publish(
                name,
                cluster.cluster_id,
                new_size=cluster.size,
                utilization=utilization,
                metrics=cluster.summary()["metrics"],
                **data,
            )
