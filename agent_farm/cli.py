"""CLI entry points for Agent Farm."""

from __future__ import annotations

import json

import httpx
import typer
import uvicorn

from agent_farm.config import settings

app = typer.Typer(name="agent-farm", help="Agent Farm - task scheduling across worker clusters")


def _headers() -> dict[str, str]:
    if settings.api_key:
        return {"Authorization": f"Bearer {settings.api_key}"}
    return {}


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to bind to"),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level"),
) -> None:
    """Start the farm server."""
    host = host or settings.host
    port = port or settings.port
    log_level = log_level or settings.log_level.lower()

    typer.echo(f"Starting agent farm on {host}:{port} with {settings.adapter} adapter")
    uvicorn.run(
        "agent_farm.server:app",
        host=host,
        port=port,
        log_level=log_level,
        reload=False,
    )


@app.command()
def status(
    server_url: str | None = typer.Option(None, "--server-url", "-s", help="Farm server URL"),
) -> None:
    """Print farm status from a running server."""
    url = (server_url or settings.server_url).rstrip("/")
    try:
        response = httpx.get(f"{url}/status", headers=_headers(), timeout=10.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        typer.echo(f"Error: could not fetch status from {url}: {e}")
        raise typer.Exit(1)

    typer.echo(json.dumps(response.json(), indent=2))


@app.command()
def submit(
    task_type: str = typer.Argument(..., help="Kind of work, e.g. code or analysis"),
    payload: str = typer.Option("", "--payload", help="Task input text"),
    priority: int | None = typer.Option(None, "--priority", help="Higher runs first"),
    capability: str | None = typer.Option(None, "--capability", help="Required capability"),
    cluster_id: str | None = typer.Option(None, "--cluster", help="Pin to a cluster"),
    server_url: str | None = typer.Option(None, "--server-url", "-s", help="Farm server URL"),
) -> None:
    """Submit a task to a running server."""
    url = (server_url or settings.server_url).rstrip("/")
    requirements = {
        key: value
        for key, value in {"priority": priority, "capability": capability}.items()
        if value is not None
    }
    body = {
        "task_type": task_type,
        "payload": payload,
        "requirements": requirements,
        "cluster_id": cluster_id,
    }
    try:
        response = httpx.post(f"{url}/v1/tasks", json=body, headers=_headers(), timeout=10.0)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        typer.echo(f"Error: task rejected ({e.response.status_code}): {e.response.text}")
        raise typer.Exit(1)
    except httpx.HTTPError as e:
        typer.echo(f"Error: could not reach {url}: {e}")
        raise typer.Exit(1)

    task = response.json()
    typer.echo(f"Submitted task {task['task_id']} ({task['status']})")


if __name__ == "__main__":
    app()
