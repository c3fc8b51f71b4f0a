"""Agent Farm configuration."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetryPolicy(BaseModel):
    """Retry and backoff policy for failed task attempts."""

    max_retries: int = Field(default=3, ge=0, description="Retries before a task fails")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Delay growth factor")
    base_delay_ms: int = Field(default=1000, ge=0, description="Delay before the first retry")

    def delay_ms(self, retry_count: int) -> float:
        """Return the backoff delay for the given number of prior failures."""
        return self.base_delay_ms * self.backoff_multiplier**retry_count


class ScalingConfig(BaseModel):
    """Default scaling bounds applied to new clusters."""

    enabled: bool = Field(default=True, description="Run the autoscaler")
    min_workers: int = Field(default=3, ge=0)
    max_workers: int = Field(default=10, ge=1)
    scale_up_threshold: float = Field(default=0.8, gt=0, le=1)
    scale_down_threshold: float = Field(default=0.24, ge=0, lt=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> ScalingConfig:
        if self.min_workers > self.max_workers:
            raise ValueError("min_workers must not exceed max_workers")
        if self.scale_down_threshold >= self.scale_up_threshold:
            raise ValueError("scale_down_threshold must be below scale_up_threshold")
        return self


class CircuitBreakerConfig(BaseModel):
    """Per-worker circuit breaker settings."""

    failure_threshold: int = Field(default=5, ge=1)
    cooldown_ms: int = Field(default=60000, ge=0)
    half_open_max_trials: int = Field(default=3, ge=1)


class QualityThresholds(BaseModel):
    """Thresholds that derive a worker's health status."""

    min_success_rate: float = Field(default=0.80, ge=0, le=1)
    degraded_success_rate: float = Field(default=0.90, ge=0, le=1)
    max_latency_ms: float = Field(default=10000, gt=0)

    @model_validator(mode="after")
    def _check_order(self) -> QualityThresholds:
        if self.min_success_rate > self.degraded_success_rate:
            raise ValueError("min_success_rate must not exceed degraded_success_rate")
        return self


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FARM_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    api_key: str | None = Field(default=None, description="API key for authentication")

    # Scheduling
    max_concurrent_tasks: int = Field(default=1000, ge=1, description="In-flight task cap")
    max_dispatch_per_tick: int = Field(default=10, ge=1, description="Tasks assigned per tick")
    task_timeout_ms: int = Field(default=300000, gt=0, description="Default task timeout")
    default_priority: int = Field(default=1, description="Priority for tasks that omit one")
    history_limit: int = Field(default=1000, ge=1, description="Terminal tasks kept")
    history_trim: int = Field(default=500, ge=1, description="Terminal tasks kept after trim")

    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    quality_thresholds: QualityThresholds = Field(default_factory=QualityThresholds)

    # Quality feedback
    feedback_alpha: float = Field(default=0.1, gt=0, le=1, description="Feedback learning rate")

    # Tick intervals in seconds
    scheduler_interval: float = Field(default=1.0, gt=0)
    health_check_interval: float = Field(default=30.0, gt=0)
    metrics_interval: float = Field(default=10.0, gt=0)
    autoscale_interval: float = Field(default=60.0, gt=0)
    probe_failures_threshold: int = Field(default=3, ge=1)

    # Bootstrap
    default_cluster: bool = Field(default=True, description="Create a default cluster on start")
    default_cluster_region: str = Field(default="us-east-1")

    # Execution adapter
    adapter: Literal["echo", "http"] = Field(default="echo", description="Execution adapter")
    worker_base_url: str = Field(
        default="http://localhost:8001",
        description="Base URL of the HTTP execution backend",
    )
    echo_cost_per_token: float = Field(default=0.000002, ge=0)

    # Client settings for the CLI
    server_url: str = Field(default="http://localhost:8000", description="Farm server URL")

    @model_validator(mode="after")
    def _check_history(self) -> Settings:
        if self.history_trim > self.history_limit:
            raise ValueError("history_trim must not exceed history_limit")
        return self


# Global settings instance
settings = Settings()
