"""Tests for RoutingEngine."""

import random

import pytest

from agent_farm.controller.router import RoutingConstraints, RoutingEngine


@pytest.fixture
def workers(metrics):
    """Register three workers with distinct histories."""
    for worker_id in ("fast", "slow", "flaky"):
        metrics.register(worker_id)
    for _ in range(10):
        metrics.track_execution("fast", True, 100.0, cost=0.01)
        metrics.track_execution("slow", True, 8000.0, cost=0.01)
    for success in (True, False) * 5:
        metrics.track_execution("flaky", success, 100.0, cost=0.05)
    return ["fast", "slow", "flaky"]


def test_weights_sorted_descending(router, workers):
    """Test decisions come back highest weight first."""
    decisions = router.calculate_weights(workers)
    assert [d.worker_id for d in decisions] == ["fast", "slow", "flaky"]
    assert decisions[0].weight == pytest.approx(0.7 + 0.2 * 0.99 + 0.1)


def test_weight_formula_with_budget(router, metrics):
    """Test the cost factor uses the budget when one is given."""
    metrics.register("w")
    metrics.track_execution("w", True, 5000.0, cost=0.02)

    [decision] = router.calculate_weights(["w"], RoutingConstraints(budget=0.04))

    assert decision.weight == pytest.approx(0.7 * 1.0 + 0.2 * 0.5 + 0.1 * 0.5)


def test_open_circuit_has_zero_weight(router, workers, breaker):
    """Test an open circuit forces weight 0."""
    for _ in range(5):
        breaker.record_failure("fast")

    weights = {d.worker_id: d for d in router.calculate_weights(workers)}
    assert weights["fast"].weight == 0.0
    assert "Circuit breaker open" in weights["fast"].reason


def test_min_quality_filter(router, workers):
    weights = {
        d.worker_id: d.weight
        for d in router.calculate_weights(workers, RoutingConstraints(min_quality=0.9))
    }
    assert weights["flaky"] == 0.0
    assert weights["fast"] > 0


def test_budget_filter(router, workers):
    weights = {
        d.worker_id: d.weight
        for d in router.calculate_weights(workers, RoutingConstraints(budget=0.02))
    }
    assert weights["flaky"] == 0.0
    assert weights["slow"] > 0


def test_select_unit_never_returns_zero_weight(metrics, breaker, workers):
    """Test zero-weight candidates are never drawn."""
    for _ in range(5):
        breaker.record_failure("fast")
    engine = RoutingEngine(metrics, breaker, rng=random.Random(1))

    for _ in range(200):
        decision = engine.select_unit(workers)
        assert decision is not None
        assert decision.worker_id != "fast"
        assert decision.weight > 0


def test_select_unit_none_when_all_zero(router, workers, breaker):
    """Test selection reports none instead of raising."""
    for worker_id in workers:
        for _ in range(5):
            breaker.record_failure(worker_id)

    assert router.select_unit(workers) is None
    assert router.select_unit([]) is None


def test_select_unit_is_reproducible(metrics, breaker, workers):
    """Test a fixed seed gives the same sequence of picks."""
    first = RoutingEngine(metrics, breaker, rng=random.Random(99))
    second = RoutingEngine(metrics, breaker, rng=random.Random(99))

    picks_a = [first.select_unit(workers).worker_id for _ in range(20)]
    picks_b = [second.select_unit(workers).worker_id for _ in range(20)]
    assert picks_a == picks_b


def test_select_unit_favors_higher_weight(router, workers):
    picks = [router.select_unit(workers).worker_id for _ in range(1000)]
    assert picks.count("fast") > picks.count("flaky")


def test_round_robin(router, workers):
    """Test round-robin walks the routable candidates in order."""
    picks = [
        router.select_by_strategy(workers, "round-robin", rr_index=i).worker_id
        for i in range(4)
    ]
    assert picks == ["fast", "slow", "flaky", "fast"]


def test_round_robin_skips_zero_weight(router, workers, breaker):
    for _ in range(5):
        breaker.record_failure("slow")
    picks = [
        router.select_by_strategy(workers, "round-robin", rr_index=i).worker_id
        for i in range(2)
    ]
    assert picks == ["fast", "flaky"]


def test_least_connections(router, workers):
    """Test least-connections picks the emptiest worker, ties by order."""
    decision = router.select_by_strategy(
        workers, "least-connections", connections={"fast": 3, "slow": 1, "flaky": 1}
    )
    assert decision.worker_id == "slow"


def test_strategy_none_when_all_zero(router, workers, breaker):
    for worker_id in workers:
        for _ in range(5):
            breaker.record_failure(worker_id)
    assert router.select_by_strategy(workers, "least-connections") is None
    assert router.select_by_strategy(workers, "round-robin") is None


def test_unknown_strategy(router, workers):
    with pytest.raises(ValueError):
        router.select_by_strategy(workers, "random")
