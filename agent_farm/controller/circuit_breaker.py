"""Circuit breaker implementation."""

from __future__ import annotations

import time
from typing import Callable

import structlog

from agent_farm.config import CircuitBreakerConfig
from agent_farm.controller.metrics import MetricsStore
from agent_farm.controller.models import CircuitBreakerState, CircuitState
from agent_farm.events import CIRCUIT_CLOSED, CIRCUIT_OPENED, EventBus

logger = structlog.get_logger()


class CircuitBreaker:
    """Per-worker circuit breakers for fault tolerance.

    closed -> open once ``failure_threshold`` failures accumulate;
    open -> half_open after ``cooldown_ms`` when the failure count is not
    above the threshold; half_open -> closed on a trial success, or back to
    open on a trial failure.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        metrics: MetricsStore | None = None,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._metrics = metrics
        self._events = events
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}

    @property
    def cooldown_seconds(self) -> float:
        return self.config.cooldown_ms / 1000

    def _get(self, worker_id: str) -> CircuitBreakerState:
        """Get or create breaker state for a worker."""
        if worker_id not in self._states:
            self._states[worker_id] = CircuitBreakerState(worker_id=worker_id)
        return self._states[worker_id]

    def state_of(self, worker_id: str) -> CircuitState:
        return self._get(worker_id).state

    def failure_count(self, worker_id: str) -> int:
        return self._get(worker_id).failure_count

    def snapshot(self, worker_id: str) -> CircuitBreakerState:
        s = self._get(worker_id)
        return CircuitBreakerState(
            worker_id=s.worker_id,
            state=s.state,
            failure_count=s.failure_count,
            last_failure=s.last_failure,
            opened_at=s.opened_at,
            trial_requests=s.trial_requests,
        )

    def is_open(self, worker_id: str) -> bool:
        return self._get(worker_id).state == "open"

    def record_success(self, worker_id: str, trial: bool = False) -> None:
        """Record a successful operation.

        Only a dispatch that consumed a half-open trial slot can close the
        circuit; a success from work started before the circuit opened just
        lowers the failure count.
        """
        s = self._get(worker_id)
        s.failure_count = max(0, s.failure_count - 1)

        if s.state == "half_open" and trial:
            self._transition_to(s, "closed")
            logger.info("circuit_breaker_closed", worker_id=worker_id)
            if self._metrics:
                self._metrics.set_circuit_open(worker_id, False)
            if self._events:
                self._events.publish(CIRCUIT_CLOSED, worker_id, **self._event_data(worker_id))

    def record_failure(self, worker_id: str) -> None:
        """Record a failed operation."""
        s = self._get(worker_id)
        s.failure_count += 1
        s.last_failure = self._clock()

        if s.state == "half_open":
            self._open(s)
            logger.warning("circuit_breaker_reopened", worker_id=worker_id)
        elif s.state == "closed" and s.failure_count >= self.config.failure_threshold:
            self._open(s)
            logger.warning(
                "circuit_breaker_opened",
                worker_id=worker_id,
                failure_count=s.failure_count,
                threshold=self.config.failure_threshold,
            )

    def attempt_half_open(self, worker_id: str) -> CircuitState:
        """Move an open breaker to half_open once its cooldown has elapsed."""
        s = self._get(worker_id)
        if s.state != "open" or s.opened_at is None:
            return s.state
        if self._clock() - s.opened_at < self.cooldown_seconds:
            return s.state

        # Failures seen while open extend the open window by one cooldown.
        if s.failure_count > self.config.failure_threshold:
            s.opened_at = self._clock()
            s.failure_count = self.config.failure_threshold
            logger.warning(
                "circuit_breaker_remains_open",
                worker_id=worker_id,
                failure_count=s.failure_count,
            )
            return s.state

        self._transition_to(s, "half_open")
        logger.info("circuit_breaker_half_open", worker_id=worker_id)
        return s.state

    def tick(self) -> None:
        """Re-check every open breaker. Never raises."""
        for worker_id, s in list(self._states.items()):
            if s.state != "open":
                continue
            try:
                self.attempt_half_open(worker_id)
            except Exception as e:
                logger.error("circuit_breaker_check_failed", worker_id=worker_id, error=str(e))

    def allow_request(self, worker_id: str) -> bool:
        """Check if the circuit allows a dispatch to the worker."""
        s = self._get(worker_id)
        if s.state == "closed":
            return True
        if s.state == "open":
            return False
        return s.trial_requests < self.config.half_open_max_trials

    def acquire_trial(self, worker_id: str) -> bool:
        """Consume one half-open trial slot; returns whether one was taken."""
        s = self._get(worker_id)
        if s.state != "half_open":
            return False
        s.trial_requests += 1
        return True

    def reset(self, worker_id: str) -> None:
        """Reset a worker's breaker to closed state."""
        s = self._get(worker_id)
        self._transition_to(s, "closed")
        if self._metrics:
            self._metrics.set_circuit_open(worker_id, False)

    def remove(self, worker_id: str) -> None:
        self._states.pop(worker_id, None)

    def _open(self, s: CircuitBreakerState) -> None:
        self._transition_to(s, "open")
        s.opened_at = self._clock()
        s.failure_count = min(s.failure_count, self.config.failure_threshold)
        if self._metrics:
            self._metrics.set_circuit_open(s.worker_id, True)
        if self._events:
            self._events.publish(CIRCUIT_OPENED, s.worker_id, **self._event_data(s.worker_id))

    def _transition_to(self, s: CircuitBreakerState, new_state: CircuitState) -> None:
        """Transition to a new state."""
        s.state = new_state
        s.trial_requests = 0
        if new_state == "closed":
            s.failure_count = 0
            s.last_failure = None
            s.opened_at = None

    def _event_data(self, worker_id: str) -> dict[str, object]:
        s = self._get(worker_id)
        data: dict[str, object] = {"failure_count": s.failure_count, "state": s.state}
        if self._metrics and worker_id in self._metrics:
            data["metrics"] = self._metrics.get_metrics(worker_id).to_dict()
        return data
