"""Test fixtures and utilities."""

from __future__ import annotations

import random
from typing import Any, Callable

import pytest

from agent_farm.adapters.echo import EchoAdapter
from agent_farm.config import CircuitBreakerConfig, RetryPolicy
from agent_farm.controller.circuit_breaker import CircuitBreaker
from agent_farm.controller.metrics import MetricsStore
from agent_farm.controller.pool import ClusterConfig, PoolManager
from agent_farm.controller.router import RoutingEngine
from agent_farm.controller.scheduler import TaskScheduler
from agent_farm.events import EventBus
from agent_farm.models import TaskRequirementsIn, TaskSubmitRequest


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture
def rng() -> random.Random:
    """Create a seeded random source."""
    return random.Random(42)


@pytest.fixture
def events() -> EventBus:
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def metrics(events: EventBus) -> MetricsStore:
    """Create a metrics store with default thresholds."""
    return MetricsStore(events=events)


@pytest.fixture
def breaker(metrics: MetricsStore, events: EventBus, clock: FakeClock) -> CircuitBreaker:
    """Create a circuit breaker with threshold 5 and a 60 s cooldown."""
    return CircuitBreaker(
        config=CircuitBreakerConfig(failure_threshold=5, cooldown_ms=60000, half_open_max_trials=3),
        metrics=metrics,
        events=events,
        clock=clock,
    )


@pytest.fixture
def router(metrics: MetricsStore, breaker: CircuitBreaker, rng: random.Random) -> RoutingEngine:
    """Create a routing engine with a seeded random source."""
    return RoutingEngine(metrics, breaker, rng=rng)


@pytest.fixture
def pool(
    metrics: MetricsStore,
    breaker: CircuitBreaker,
    router: RoutingEngine,
    events: EventBus,
) -> PoolManager:
    """Create an empty pool manager."""
    return PoolManager(metrics, breaker, router, events=events)


@pytest.fixture
def adapter() -> EchoAdapter:
    """Create an echo adapter."""
    return EchoAdapter()


@pytest.fixture
def scheduler(
    pool: PoolManager,
    metrics: MetricsStore,
    breaker: CircuitBreaker,
    adapter: EchoAdapter,
    events: EventBus,
    clock: FakeClock,
) -> TaskScheduler:
    """Create a scheduler over the shared pool."""
    return TaskScheduler(
        pool,
        metrics,
        breaker,
        adapter,
        retry_policy=RetryPolicy(max_retries=3, backoff_multiplier=2.0, base_delay_ms=1000),
        events=events,
        clock=clock,
    )


@pytest.fixture
def make_cluster(pool: PoolManager) -> Callable[..., Any]:
    """Factory for clusters with small defaults."""

    def _make(name: str = "test", min_workers: int = 1, max_workers: int = 5, **kwargs: Any):
        return pool.create_cluster(
            ClusterConfig(name=name, min_workers=min_workers, max_workers=max_workers, **kwargs)
        )

    return _make


@pytest.fixture
def make_request() -> Callable[..., TaskSubmitRequest]:
    """Factory for task submission requests."""

    def _make(
        task_type: str = "code",
        payload: Any = "print('hello')",
        cluster_id: str | None = None,
        **requirements: Any,
    ) -> TaskSubmitRequest:
        return TaskSubmitRequest(
            task_type=task_type,
            payload=payload,
            cluster_id=cluster_id,
            requirements=TaskRequirementsIn(**requirements),
        )

    return _make
