from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_CAP,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_LEASE_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PRIORITY,
    DEFAULT_SCHEDULER_INTERVAL,
    DEFAULT_STEP_CONCURRENCY,
    DEFAULT_UNIQUE_PERIOD,
    DEFAULT_WORKER_CONCURRENCY,
)


class BackoffConfig(BaseModel):
    """Exponential backoff applied between job attempts."""

    base: float = DEFAULT_BACKOFF_BASE
    cap: float = DEFAULT_BACKOFF_CAP
    jitter: float = DEFAULT_BACKOFF_JITTER


class QueueConfig(BaseModel):
    """Job queue defaults."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    priority: int = DEFAULT_PRIORITY
    unique_period: float = DEFAULT_UNIQUE_PERIOD
    lease_timeout: Optional[float] = DEFAULT_LEASE_TIMEOUT
    backoff: BackoffConfig = BackoffConfig()


class WorkerConfig(BaseModel):
    """Worker pool settings."""

    concurrency: int = DEFAULT_WORKER_CONCURRENCY
    poll_interval: float = DEFAULT_POLL_INTERVAL


class ExecutorConfig(BaseModel):
    """Per-run execution settings."""

    max_concurrency: int = DEFAULT_STEP_CONCURRENCY
    step_backoff: BackoffConfig = BackoffConfig(base=0.5, cap=30.0, jitter=0.1)


class CronEntry(BaseModel):
    """One row of the declarative crontab."""

    expression: str
    queue: str
    args: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    max_attempts: Optional[int] = None


class SchedulerConfig(BaseModel):
    """Cron scheduler settings."""

    interval: float = DEFAULT_SCHEDULER_INTERVAL
    crontab: List[CronEntry] = Field(default_factory=list)


class SagaflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    queue: QueueConfig = QueueConfig()
    worker: WorkerConfig = WorkerConfig()
    executor: ExecutorConfig = ExecutorConfig()
    scheduler: SchedulerConfig = SchedulerConfig()


def load_config(path: Optional[str] = None) -> SagaflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SAGAFLOW_CONFIG env
            variable or 'sagaflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("SAGAFLOW_CONFIG", "sagaflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SagaflowConfig(**data)
    else:
        config = SagaflowConfig()

    env_db_url = os.getenv("SAGAFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
