"""Tests for the Agent Farm server."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from agent_farm.adapters.echo import EchoAdapter
from agent_farm.config import ScalingConfig, Settings
from agent_farm.exceptions import CapacityError
from agent_farm.server import create_app


def make_settings(**overrides) -> Settings:
    values = {
        "scaling": ScalingConfig(min_workers=2, max_workers=3),
        "scheduler_interval": 3600.0,
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def client() -> Iterator[TestClient]:
    """Create test client with a started farm."""
    app = create_app(make_settings(), EchoAdapter())
    with TestClient(app) as test_client:
        yield test_client


def default_cluster(client: TestClient) -> dict:
    return client.get("/v1/clusters").json()["clusters"][0]


def test_health_check(client: TestClient) -> None:
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    assert "X-Request-ID" in response.headers


def test_status(client: TestClient) -> None:
    """Test status reports the bootstrapped default cluster."""
    response = client.get("/status")
    assert response.status_code == 200
    data = response.json()
    assert data["clusters"]["total"] == 1
    assert data["clusters"]["total_workers"] == 2
    assert data["performance"]["success_rate"] == 1.0


def test_submit_get_and_cancel_task(client: TestClient) -> None:
    """Test the task lifecycle endpoints."""
    response = client.post(
        "/v1/tasks",
        json={"task_type": "code", "payload": "x", "requirements": {"priority": 5}},
    )
    assert response.status_code == 202
    task = response.json()
    assert task["status"] == "queued"
    assert task["priority"] == 5

    response = client.get(f"/v1/tasks/{task['task_id']}")
    assert response.status_code == 200
    assert response.json()["task_id"] == task["task_id"]

    response = client.delete(f"/v1/tasks/{task['task_id']}")
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    response = client.delete(f"/v1/tasks/{task['task_id']}")
    assert response.status_code == 409


def test_submit_validation(client: TestClient) -> None:
    """Test malformed tasks are rejected."""
    assert client.post("/v1/tasks", json={}).status_code == 422
    assert client.post("/v1/tasks", json={"task_type": " "}).status_code == 400
    response = client.post("/v1/tasks", json={"task_type": "code", "cluster_id": "nope"})
    assert response.status_code == 400


def test_unknown_task(client: TestClient) -> None:
    assert client.get("/v1/tasks/missing").status_code == 404


def test_create_cluster_and_workers(client: TestClient) -> None:
    """Test cluster creation and worker management."""
    response = client.post(
        "/v1/clusters",
        json={"name": "coders", "capability": "code", "min_workers": 1, "max_workers": 2},
    )
    assert response.status_code == 201
    cluster = response.json()
    assert cluster["size"] == 1
    cluster_id = cluster["cluster_id"]

    response = client.post(f"/v1/clusters/{cluster_id}/workers", json={"max_concurrency": 2})
    assert response.status_code == 201
    worker = response.json()
    assert worker["capability"] == "code"
    assert worker["max_concurrency"] == 2

    response = client.post(f"/v1/clusters/{cluster_id}/workers", json={})
    assert response.status_code == 409

    response = client.delete(f"/v1/clusters/{cluster_id}/workers/{worker['worker_id']}")
    assert response.status_code == 200
    assert client.get("/v1/clusters").json()["total"] == 2

    last = cluster["workers"][0]["worker_id"]
    response = client.delete(f"/v1/clusters/{cluster_id}/workers/{last}")
    assert response.status_code == 409


def test_create_cluster_rejects_inverted_thresholds(client: TestClient) -> None:
    """Test scale thresholds must leave a gap between scale-down and scale-up."""
    response = client.post(
        "/v1/clusters",
        json={"name": "flappy", "scale_up_threshold": 0.3, "scale_down_threshold": 0.5},
    )
    assert response.status_code == 422

    # Only scale-up given; the configured scale-down default is above it.
    response = client.post("/v1/clusters", json={"name": "flappy", "scale_up_threshold": 0.1})
    assert response.status_code == 400
    assert client.get("/v1/clusters").json()["total"] == 1


def test_unhandled_farm_error_body() -> None:
    """Test a FarmError escaping a route is rendered as an error body."""
    app = create_app(make_settings(), EchoAdapter())

    async def broken() -> None:
        raise CapacityError("farm is full")

    app.add_api_route("/broken", broken)
    with TestClient(app) as test_client:
        response = test_client.get("/broken")

    assert response.status_code == 409
    assert response.json() == {"error": {"code": "CAPACITY_EXCEEDED", "message": "farm is full"}}


def test_add_worker_unknown_cluster(client: TestClient) -> None:
    assert client.post("/v1/clusters/missing/workers", json={}).status_code == 404


def test_feedback_and_metrics(client: TestClient) -> None:
    """Test feedback updates the worker metrics view."""
    worker_id = default_cluster(client)["workers"][0]["worker_id"]

    response = client.post(
        "/v1/feedback",
        json={"worker_id": worker_id, "score": 0.0, "feedback_type": "human"},
    )
    assert response.status_code == 200
    assert response.json()["success_rate"] == pytest.approx(0.9)

    response = client.get(f"/v1/workers/{worker_id}/metrics")
    assert response.status_code == 200
    data = response.json()
    assert data["circuit_state"] == "closed"
    assert data["health_status"] == "healthy"


def test_feedback_validation(client: TestClient) -> None:
    worker_id = default_cluster(client)["workers"][0]["worker_id"]
    response = client.post("/v1/feedback", json={"worker_id": worker_id, "score": 1.5})
    assert response.status_code == 422
    response = client.post("/v1/feedback", json={"worker_id": "missing", "score": 0.5})
    assert response.status_code == 404


def test_unknown_worker_metrics(client: TestClient) -> None:
    assert client.get("/v1/workers/missing/metrics").status_code == 404


def test_api_key_required() -> None:
    """Test bearer authentication when an API key is configured."""
    app = create_app(make_settings(api_key="secret"), EchoAdapter())
    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        assert client.get("/status").status_code == 401
        response = client.get("/status", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401
        response = client.get("/status", headers={"Authorization": "Bearer secret"})
        assert response.status_code == 200
