"""Tests for CircuitBreaker."""

import pytest

from agent_farm.controller.circuit_breaker import CircuitBreaker
from agent_farm.events import CIRCUIT_CLOSED, CIRCUIT_OPENED

WORKER = "worker-1"


@pytest.fixture
def circuit_breaker(breaker, metrics):
    """Breaker for a registered worker."""
    metrics.register(WORKER)
    return breaker


def trip(circuit_breaker, times=5):
    for _ in range(times):
        circuit_breaker.record_failure(WORKER)


def test_initial_state(circuit_breaker):
    """Test initial state is closed."""
    assert circuit_breaker.state_of(WORKER) == "closed"
    assert circuit_breaker.allow_request(WORKER) is True


def test_record_success_decrements_failure_count(circuit_breaker):
    """Test that success decrements the failure count."""
    circuit_breaker.record_failure(WORKER)
    circuit_breaker.record_failure(WORKER)
    assert circuit_breaker.failure_count(WORKER) == 2

    circuit_breaker.record_success(WORKER)
    assert circuit_breaker.failure_count(WORKER) == 1
    circuit_breaker.record_success(WORKER)
    circuit_breaker.record_success(WORKER)
    assert circuit_breaker.failure_count(WORKER) == 0


def test_circuit_opens_at_threshold(circuit_breaker, metrics, events):
    """Test that circuit opens exactly when the threshold is reached."""
    trip(circuit_breaker, 4)
    assert circuit_breaker.state_of(WORKER) == "closed"

    circuit_breaker.record_failure(WORKER)
    assert circuit_breaker.state_of(WORKER) == "open"
    assert circuit_breaker.allow_request(WORKER) is False
    assert metrics.get_metrics(WORKER).circuit_open is True
    assert metrics.health_of(WORKER) == "circuit-open"

    [event] = events.recent(CIRCUIT_OPENED)
    assert event.entity_id == WORKER
    assert event.data["failure_count"] == 5
    assert "metrics" in event.data


def test_interleaved_successes_keep_circuit_closed(circuit_breaker):
    for _ in range(10):
        circuit_breaker.record_failure(WORKER)
        circuit_breaker.record_success(WORKER)
    assert circuit_breaker.state_of(WORKER) == "closed"


def test_stays_open_during_cooldown(circuit_breaker, clock):
    trip(circuit_breaker)
    clock.advance(59.9)

    assert circuit_breaker.attempt_half_open(WORKER) == "open"


def test_half_open_after_cooldown(circuit_breaker, clock):
    """Test that circuit transitions to half_open after the cooldown."""
    trip(circuit_breaker)
    clock.advance(60)

    assert circuit_breaker.attempt_half_open(WORKER) == "half_open"
    assert circuit_breaker.allow_request(WORKER) is True


def test_failures_while_open_extend_cooldown(circuit_breaker, clock):
    """Test failures recorded while open push the half-open check back."""
    trip(circuit_breaker)
    circuit_breaker.record_failure(WORKER)
    clock.advance(60)

    assert circuit_breaker.attempt_half_open(WORKER) == "open"
    assert circuit_breaker.failure_count(WORKER) == 5

    clock.advance(60)
    assert circuit_breaker.attempt_half_open(WORKER) == "half_open"


def test_half_open_trial_budget(circuit_breaker, clock):
    """Test half_open admits at most half_open_max_trials dispatches."""
    trip(circuit_breaker)
    clock.advance(60)
    circuit_breaker.attempt_half_open(WORKER)

    for _ in range(3):
        assert circuit_breaker.allow_request(WORKER) is True
        circuit_breaker.acquire_trial(WORKER)
    assert circuit_breaker.allow_request(WORKER) is False


def test_circuit_closes_on_trial_success(circuit_breaker, clock, metrics, events):
    """Test that circuit closes on success in half_open state."""
    trip(circuit_breaker)
    clock.advance(60)
    circuit_breaker.attempt_half_open(WORKER)
    assert circuit_breaker.acquire_trial(WORKER) is True

    circuit_breaker.record_success(WORKER, trial=True)

    assert circuit_breaker.state_of(WORKER) == "closed"
    assert circuit_breaker.failure_count(WORKER) == 0
    assert metrics.get_metrics(WORKER).circuit_open is False
    assert len(events.recent(CIRCUIT_CLOSED)) == 1


def test_non_trial_success_keeps_half_open(circuit_breaker, clock, events):
    """Test a success that did not take a trial slot leaves half_open alone."""
    trip(circuit_breaker)
    clock.advance(60)
    circuit_breaker.attempt_half_open(WORKER)

    circuit_breaker.record_success(WORKER)

    assert circuit_breaker.state_of(WORKER) == "half_open"
    assert circuit_breaker.failure_count(WORKER) == 4
    assert events.recent(CIRCUIT_CLOSED) == []


def test_acquire_trial_only_in_half_open(circuit_breaker):
    assert circuit_breaker.acquire_trial(WORKER) is False
    trip(circuit_breaker)
    assert circuit_breaker.acquire_trial(WORKER) is False


def test_circuit_reopens_on_trial_failure(circuit_breaker, clock, events):
    """Test that circuit reopens on failure in half_open state."""
    trip(circuit_breaker)
    clock.advance(60)
    circuit_breaker.attempt_half_open(WORKER)

    circuit_breaker.record_failure(WORKER)

    assert circuit_breaker.state_of(WORKER) == "open"
    assert len(events.recent(CIRCUIT_OPENED)) == 2

    # A fresh cooldown applies and recovery is still possible.
    clock.advance(60)
    assert circuit_breaker.attempt_half_open(WORKER) == "half_open"


def test_success_while_open_does_not_close(circuit_breaker, clock):
    """Test only a half-open trial can close the circuit."""
    trip(circuit_breaker)
    circuit_breaker.record_success(WORKER)

    assert circuit_breaker.state_of(WORKER) == "open"
    assert circuit_breaker.failure_count(WORKER) == 4


def test_tick_moves_expired_breakers(circuit_breaker, clock, metrics):
    metrics.register("worker-2")
    trip(circuit_breaker)
    for _ in range(5):
        circuit_breaker.record_failure("worker-2")
    clock.advance(30)
    circuit_breaker.record_failure("worker-2")
    clock.advance(30)

    circuit_breaker.tick()

    assert circuit_breaker.state_of(WORKER) == "half_open"
    assert circuit_breaker.state_of("worker-2") == "open"


def test_tick_logs_and_continues(circuit_breaker, clock, monkeypatch):
    """Test a failing per-worker check never escapes tick."""
    trip(circuit_breaker)
    clock.advance(60)

    def boom(worker_id):
        raise RuntimeError("clock went away")

    monkeypatch.setattr(circuit_breaker, "attempt_half_open", boom)
    circuit_breaker.tick()


def test_reset(circuit_breaker, metrics):
    trip(circuit_breaker)
    circuit_breaker.reset(WORKER)

    assert circuit_breaker.state_of(WORKER) == "closed"
    assert metrics.get_metrics(WORKER).circuit_open is False


def test_standalone_breaker_without_metrics(clock):
    """Test the breaker works without a metrics store or event bus."""
    breaker = CircuitBreaker(clock=clock)
    for _ in range(5):
        breaker.record_failure("solo")
    assert breaker.is_open("solo")
    breaker.remove("solo")
    assert breaker.state_of("solo") == "closed"
