"""Repository abstraction for job persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from .models import Job, JobState


class JobRepository(Protocol):
    """Protocol for job storage backends.

    ``claim`` and ``request_cancel`` must be atomic with respect to each
    other and to concurrent callers of the same backend.
    """

    async def insert(
        self, job: Job, unique_since: datetime | None = None
    ) -> tuple[Job, bool]:
        """Store ``job`` unless an active job with its unique key exists.

        Returns the stored (or already existing) job and whether a row was
        inserted.
        """

    async def claim(self, queue: str, now: datetime) -> Job | None:
        """Promote due scheduled jobs and lease the next available one."""

    async def rescue(
        self, before: datetime, now: datetime, queue: str | None = None
    ) -> int:
        """Release executing jobs leased before ``before``.

        A rescued job with attempts left becomes available again; one that
        used its last attempt is discarded. Returns the number of jobs moved.
        """

    async def get(self, job_id: str) -> Job | None:
        """Retrieve a job by id."""

    async def update(self, job: Job) -> None:
        """Persist state changes of ``job`` (``cancel_requested`` excluded)."""

    async def request_cancel(self, job_id: str, now: datetime) -> Job | None:
        """Cancel a waiting job or flag an executing one."""

    async def list_jobs(
        self, queue: str | None = None, state: JobState | None = None
    ) -> list[Job]:
        """Return jobs ordered by insertion time."""

    async def delete_terminal(self, before: datetime) -> int:
        """Delete finished jobs whose last transition is older than ``before``."""
