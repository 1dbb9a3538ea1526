"""Persistence layer for sagaflow jobs."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SagaflowConfig, load_config
from .inmemory import InMemoryJobRepository
from .models import ACTIVE_STATES, TERMINAL_STATES, Job, JobState
from .repository import JobRepository
from .sqlite import SQLiteJobRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresJobRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresJobRepository = None  # type: ignore


def get_job_repository(
    database_url: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> JobRepository:
    """Factory function to obtain a job repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``SAGAFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SAGAFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryJobRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteJobRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresJobRepository is None:
            raise RuntimeError("Postgres support not available")
        return PostgresJobRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ACTIVE_STATES",
    "TERMINAL_STATES",
    "Job",
    "JobState",
    "JobRepository",
    "InMemoryJobRepository",
    "SQLiteJobRepository",
    "PostgresJobRepository",
    "get_job_repository",
]
