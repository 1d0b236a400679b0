from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_EVENT_WAIT_TIMEOUT_HOURS,
    DEFAULT_MAX_BLOCK_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_SERIES_SCAN_LIMIT,
    DEFAULT_STEP_BUDGET,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    DEFAULT_WAITING_BATCH_LIMIT,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Signal transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Graph execution and retry policy."""

    step_budget: int = Field(default=DEFAULT_STEP_BUDGET, gt=0)
    max_block_attempts: int = Field(default=DEFAULT_MAX_BLOCK_ATTEMPTS, gt=0)
    retry_base_delay_seconds: float = Field(
        default=DEFAULT_RETRY_BASE_DELAY_SECONDS, ge=0
    )
    retry_jitter_seconds: float = Field(default=0.0, ge=0)
    event_wait_timeout_hours: Optional[float] = DEFAULT_EVENT_WAIT_TIMEOUT_HOURS
    event_timeout_action: Literal["fail", "resume"] = "fail"
    runtime_enabled: bool = True


class SchedulerConfig(BaseModel):
    """Backstop sweep settings."""

    interval_seconds: float = Field(default=DEFAULT_SWEEP_INTERVAL_SECONDS, gt=0)
    series_limit: int = DEFAULT_SERIES_SCAN_LIMIT
    waiting_limit_per_series: int = DEFAULT_WAITING_BATCH_LIMIT


class SeriesflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    engine: EngineConfig = Field(default_factory=EngineConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    transport: TransportConfig = TransportConfig()
    actions: Dict[str, str] = Field(
        default_factory=dict,
        description="Action name to 'module:attribute' import path",
    )


def load_config(path: Optional[str] = None) -> SeriesflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SERIESFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SERIESFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SeriesflowConfig(**data)
    else:
        config = SeriesflowConfig()

    env_db_url = os.getenv("SERIESFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if os.getenv("SERIESFLOW_RUNTIME_ENABLED", "").strip().lower() == "false":
        config.engine.runtime_enabled = False
    return config
