"""Weighted worker selection."""

from __future__ import annotations

import random
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import structlog

from agent_farm.controller.circuit_breaker import CircuitBreaker
from agent_farm.controller.metrics import MetricsStore
from agent_farm.controller.models import RoutingDecision, RoutingStrategy

logger = structlog.get_logger()

SUCCESS_WEIGHT = 0.7
LATENCY_WEIGHT = 0.2
COST_WEIGHT = 0.1


@dataclass(frozen=True)
class RoutingConstraints:
    """Hard filters applied before weighting."""

    min_quality: float | None = None
    budget: float | None = None


class RoutingEngine:
    """Scores candidate workers from their metrics and breaker state.

    The engine holds no routing state of its own; the random source is
    injected so selection is reproducible under a fixed seed.
    """

    def __init__(
        self,
        metrics: MetricsStore,
        breaker: CircuitBreaker,
        rng: random.Random | None = None,
        max_latency_ms: float | None = None,
    ) -> None:
        self._metrics = metrics
        self._breaker = breaker
        self._rng = rng or random.Random()
        self.max_latency_ms = max_latency_ms or metrics.thresholds.max_latency_ms

    def calculate_weights(
        self,
        candidates: Sequence[str],
        constraints: RoutingConstraints | None = None,
    ) -> list[RoutingDecision]:
        """Return one decision per candidate, highest weight first."""
        constraints = constraints or RoutingConstraints()
        decisions = [self._weigh(worker_id, constraints) for worker_id in candidates]
        decisions.sort(key=lambda d: d.weight, reverse=True)
        return decisions

    def _weigh(self, worker_id: str, constraints: RoutingConstraints) -> RoutingDecision:
        if not self._breaker.allow_request(worker_id):
            return RoutingDecision(worker_id, 0.0, "Circuit breaker open - worker unavailable")

        m = self._metrics.get_metrics(worker_id)

        if constraints.min_quality is not None and m.success_rate < constraints.min_quality:
            return RoutingDecision(
                worker_id,
                0.0,
                f"Quality {m.success_rate:.1%} below required {constraints.min_quality:.1%}",
            )

        if constraints.budget is not None and m.avg_cost > constraints.budget:
            return RoutingDecision(
                worker_id,
                0.0,
                f"Avg cost ${m.avg_cost:.4f} exceeds budget ${constraints.budget:.4f}",
            )

        latency_factor = 1 - min(m.avg_latency_ms / self.max_latency_ms, 1.0)
        if constraints.budget:
            cost_factor = 1 - m.avg_cost / constraints.budget
        else:
            cost_factor = 1.0

        weight = (
            SUCCESS_WEIGHT * m.success_rate
            + LATENCY_WEIGHT * latency_factor
            + COST_WEIGHT * cost_factor
        )
        return RoutingDecision(
            worker_id,
            max(0.0, min(1.0, weight)),
            f"{m.success_rate:.1%} success, {m.avg_latency_ms:.0f}ms latency, "
            f"${m.avg_cost:.4f} avg cost",
        )

    def select_unit(
        self,
        candidates: Sequence[str],
        constraints: RoutingConstraints | None = None,
    ) -> RoutingDecision | None:
        """Weighted random draw over nonzero-weight candidates.

        Returns None when no candidate has a positive weight.
        """
        available = [d for d in self.calculate_weights(candidates, constraints) if d.weight > 0]
        if not available:
            logger.debug("no_worker_matches_constraints", candidates=len(candidates))
            return None

        total = sum(d.weight for d in available)
        remaining = self._rng.random() * total
        for decision in available:
            remaining -= decision.weight
            if remaining <= 0:
                return decision

        # Float rounding can leave a sliver of weight undrawn
        return available[0]

    def select_by_strategy(
        self,
        candidates: Sequence[str],
        strategy: RoutingStrategy,
        connections: Mapping[str, int] | None = None,
        rr_index: int = 0,
        constraints: RoutingConstraints | None = None,
    ) -> RoutingDecision | None:
        """Pick among routable candidates using a cluster load-balancing strategy.

        Candidates with zero weight are never returned by any strategy.
        """
        if strategy == "performance-based":
            return self.select_unit(candidates, constraints)

        weights = {d.worker_id: d for d in self.calculate_weights(candidates, constraints)}
        routable = [w for w in candidates if weights[w].weight > 0]
        if not routable:
            return None

        if strategy == "round-robin":
            return weights[routable[rr_index % len(routable)]]

        if strategy == "least-connections":
            connections = connections or {}
            best = min(routable, key=lambda w: connections.get(w, 0))
            return weights[best]

        raise ValueError(f"Unknown routing strategy: {strategy}")
