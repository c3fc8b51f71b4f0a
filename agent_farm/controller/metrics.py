"""Rolling per-worker performance metrics."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from agent_farm.config import QualityThresholds
from agent_farm.controller.models import (
    FeedbackType,
    HealthStatus,
    PerformanceRecord,
    PerformanceSnapshot,
    utc_now,
)
from agent_farm.events import QUALITY_FEEDBACK, EventBus
from agent_farm.exceptions import ValidationError, WorkerNotFoundError

logger = structlog.get_logger()

FEEDBACK_WEIGHTS: dict[str, float] = {
    "human": 1.0,
    "automated": 0.7,
    "system": 0.5,
}


class MetricsStore:
    """Owns one PerformanceRecord per registered worker."""

    def __init__(
        self,
        thresholds: QualityThresholds | None = None,
        feedback_alpha: float = 0.1,
        events: EventBus | None = None,
    ) -> None:
        self.thresholds = thresholds or QualityThresholds()
        self.feedback_alpha = feedback_alpha
        self._events = events
        self._records: dict[str, PerformanceRecord] = {}

    def register(self, worker_id: str) -> None:
        """Create a fresh record for a worker if it has none."""
        if worker_id not in self._records:
            self._records[worker_id] = PerformanceRecord(worker_id=worker_id)

    def unregister(self, worker_id: str) -> None:
        self._records.pop(worker_id, None)

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._records

    def _get(self, worker_id: str) -> PerformanceRecord:
        record = self._records.get(worker_id)
        if record is None:
            raise WorkerNotFoundError(worker_id)
        return record

    def track_execution(
        self,
        worker_id: str,
        success: bool,
        duration_ms: float,
        cost: float = 0.0,
    ) -> PerformanceSnapshot:
        """Fold one execution outcome into the worker's rolling averages."""
        record = self._get(worker_id)
        n = record.total_requests
        total = n + 1

        successes = record.success_rate * n + (1 if success else 0)
        record.success_rate = _clamp(successes / total)
        record.avg_latency_ms = (record.avg_latency_ms * n + duration_ms) / total
        record.avg_cost = (record.avg_cost * n + cost) / total
        record.total_requests = total
        if not success:
            record.error_count += 1
        record.last_updated = utc_now()
        self._update_health(record)

        logger.debug(
            "metrics_updated",
            worker_id=worker_id,
            success_rate=record.success_rate,
            avg_latency_ms=record.avg_latency_ms,
            health_status=record.health_status,
        )
        return PerformanceSnapshot.of(record)

    def submit_quality_feedback(
        self,
        worker_id: str,
        score: float,
        feedback_type: FeedbackType,
        metadata: Mapping[str, Any] | None = None,
    ) -> PerformanceSnapshot:
        """Blend an external quality score into the worker's success rate.

        Uses an exponential moving average so a single human review moves the
        rate immediately instead of waiting for execution volume.
        """
        if not 0.0 <= score <= 1.0:
            raise ValidationError(f"Quality score must be within [0, 1], got {score}")
        if feedback_type not in FEEDBACK_WEIGHTS:
            raise ValidationError(f"Unknown feedback type: {feedback_type}")

        record = self._get(worker_id)
        feedback_weight = FEEDBACK_WEIGHTS[feedback_type]
        alpha = self.feedback_alpha
        record.success_rate = _clamp(
            (1 - alpha) * record.success_rate + alpha * score * feedback_weight
        )
        record.last_updated = utc_now()
        self._update_health(record)

        snapshot = PerformanceSnapshot.of(record)
        logger.info(
            "quality_feedback_recorded",
            worker_id=worker_id,
            score=score,
            feedback_type=feedback_type,
            success_rate=record.success_rate,
        )
        if self._events:
            self._events.publish(
                QUALITY_FEEDBACK,
                worker_id,
                score=score,
                feedback_type=feedback_type,
                feedback_weight=feedback_weight,
                metadata=dict(metadata or {}),
                metrics=snapshot.to_dict(),
            )
        return snapshot

    def submit_batch_feedback(self, items: Iterable[Mapping[str, Any]]) -> list[PerformanceSnapshot]:
        """Apply feedback items in order; each needs worker_id, score and feedback_type."""
        return [
            self.submit_quality_feedback(
                item["worker_id"],
                item["score"],
                item["feedback_type"],
                item.get("metadata"),
            )
            for item in items
        ]

    def set_circuit_open(self, worker_id: str, is_open: bool) -> None:
        """Flag the worker's circuit state. Called by the circuit breaker only."""
        record = self._records.get(worker_id)
        if record is None:
            return
        record.circuit_open = is_open
        self._update_health(record)

    def get_metrics(self, worker_id: str) -> PerformanceSnapshot:
        return PerformanceSnapshot.of(self._get(worker_id))

    def all_metrics(self) -> list[PerformanceSnapshot]:
        return [PerformanceSnapshot.of(r) for r in self._records.values()]

    def health_of(self, worker_id: str) -> HealthStatus | None:
        record = self._records.get(worker_id)
        return record.health_status if record else None

    def feedback_stats(self) -> dict[str, Any]:
        """Aggregate health counts and averages across all workers."""
        records = list(self._records.values())
        count = len(records)

        def mean(values: list[float]) -> float:
            return sum(values) / count if count else 0.0

        return {
            "total_workers": count,
            "healthy": sum(1 for r in records if r.health_status == "healthy"),
            "degraded": sum(1 for r in records if r.health_status == "degraded"),
            "failing": sum(1 for r in records if r.health_status == "failing"),
            "circuit_open": sum(1 for r in records if r.circuit_open),
            "avg_success_rate": mean([r.success_rate for r in records]),
            "avg_latency_ms": mean([r.avg_latency_ms for r in records]),
            "avg_cost": mean([r.avg_cost for r in records]),
        }

    def reset(self, worker_id: str) -> None:
        """Restore a worker's record to its initial values."""
        self._get(worker_id)
        self._records[worker_id] = PerformanceRecord(worker_id=worker_id)

    def _update_health(self, record: PerformanceRecord) -> None:
        t = self.thresholds
        if record.circuit_open:
            record.health_status = "circuit-open"
        elif (
            record.success_rate < t.min_success_rate
            or record.avg_latency_ms > t.max_latency_ms
        ):
            record.health_status = "failing"
        elif record.success_rate < t.degraded_success_rate:
            record.health_status = "degraded"
        else:
            record.health_status = "healthy"


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
