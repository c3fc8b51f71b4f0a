"""Execution adapters and factory."""

from __future__ import annotations

from agent_farm.adapters.base import ExecutionAdapter, ExecutionResult
from agent_farm.adapters.echo import EchoAdapter
from agent_farm.adapters.http import HttpExecutionAdapter
from agent_farm.config import Settings
from agent_farm.exceptions import ConfigurationError


def build_adapter(settings: Settings) -> ExecutionAdapter:
    """Create the execution adapter named in the settings."""
    if settings.adapter == "echo":
        return EchoAdapter(cost_per_token=settings.echo_cost_per_token)
    if settings.adapter == "http":
        return HttpExecutionAdapter(
            base_url=settings.worker_base_url,
            timeout=settings.task_timeout_ms / 1000,
            api_key=settings.api_key,
        )
    raise ConfigurationError(f"Unknown execution adapter: {settings.adapter}")


__all__ = [
    "EchoAdapter",
    "ExecutionAdapter",
    "ExecutionResult",
    "HttpExecutionAdapter",
    "build_adapter",
]
