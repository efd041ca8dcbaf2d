from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .contracts import RetryPolicy


class DispatcherConfig(BaseModel):
    """Settings for the outbox dispatcher loop."""

    batch_size: int = Field(default=10, ge=1)
    poll_interval: float = Field(default=5.0, gt=0)
    max_idle_interval: float = Field(default=30.0, gt=0)
    lease_seconds: float = Field(default=30, gt=0)
    capacity_threshold: int = Field(default=1000, ge=1)
    retry: RetryPolicy = RetryPolicy()

    @model_validator(mode="after")
    def _check_intervals(self) -> "DispatcherConfig":
        if self.max_idle_interval < self.poll_interval:
            raise ValueError("max_idle_interval must be >= poll_interval")
        return self


class RunnerConfig(BaseModel):
    """Settings for workflow run execution."""

    action_timeout: float = Field(default=30.0, gt=0)
    lease_seconds: float = Field(default=60, gt=0)
    emit_lifecycle_events: bool = True

    @model_validator(mode="after")
    def _check_timeout(self) -> "RunnerConfig":
        if self.action_timeout >= self.lease_seconds:
            raise ValueError("action_timeout must be shorter than lease_seconds")
        return self


class SchedulerConfig(BaseModel):
    """Settings for the loop that resumes due runs."""

    poll_interval: float = Field(default=5.0, gt=0)
    batch_size: int = Field(default=10, ge=1)


class CrossflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    dispatcher: DispatcherConfig = DispatcherConfig()
    runner: RunnerConfig = RunnerConfig()
    scheduler: SchedulerConfig = SchedulerConfig()


def load_config(path: Optional[str] = None) -> CrossflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CROSSFLOW_CONFIG env
            variable or 'crossflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("CROSSFLOW_CONFIG", "crossflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CrossflowConfig(**data)
    else:
        config = CrossflowConfig()

    env_db_url = os.getenv("CROSSFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
