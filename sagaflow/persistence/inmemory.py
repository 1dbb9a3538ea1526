"""In-memory implementation of the job repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict

from ..constants import LEASE_EXPIRED_ERROR
from .models import Job, JobState
from .repository import JobRepository

_UPDATE_EXCLUDE = {"id", "queue", "args", "unique_key", "inserted_at", "cancel_requested"}


def _finished_at(job: Job) -> datetime | None:
    return job.completed_at or job.discarded_at or job.cancelled_at


class InMemoryJobRepository(JobRepository):
    """Store jobs in local memory.

    Useful for tests or when no database is configured. Jobs are not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def insert(
        self, job: Job, unique_since: datetime | None = None
    ) -> tuple[Job, bool]:
        async with self._lock:
            if job.unique_key is not None:
                for existing in self._jobs.values():
                    if (
                        existing.unique_key == job.unique_key
                        and existing.is_active
                        and (unique_since is None or existing.inserted_at >= unique_since)
                    ):
                        return existing.model_copy(deep=True), False
            self._jobs[job.id] = job.model_copy(deep=True)
            return job, True

    async def claim(self, queue: str, now: datetime) -> Job | None:
        async with self._lock:
            for job in self._jobs.values():
                if (
                    job.queue == queue
                    and job.state == JobState.SCHEDULED
                    and job.scheduled_at <= now
                ):
                    job.state = JobState.AVAILABLE
            candidates = [
                job
                for job in self._jobs.values()
                if job.queue == queue
                and job.state == JobState.AVAILABLE
                and job.scheduled_at <= now
            ]
            if not candidates:
                return None
            job = min(
                candidates, key=lambda j: (j.priority, j.scheduled_at, j.inserted_at, j.id)
            )
            job.state = JobState.EXECUTING
            job.attempt += 1
            job.attempted_at = now
            job.cancel_requested = False
            return job.model_copy(deep=True)

    async def rescue(
        self, before: datetime, now: datetime, queue: str | None = None
    ) -> int:
        async with self._lock:
            rescued = 0
            for job in self._jobs.values():
                if (
                    job.state != JobState.EXECUTING
                    or (queue is not None and job.queue != queue)
                    or job.attempted_at is None
                    or job.attempted_at >= before
                ):
                    continue
                job.last_error = LEASE_EXPIRED_ERROR
                job.errors.append(
                    {"attempt": job.attempt, "at": now.isoformat(), "error": LEASE_EXPIRED_ERROR}
                )
                if job.attempts_left > 0:
                    job.state = JobState.AVAILABLE
                else:
                    job.state = JobState.DISCARDED
                    job.discarded_at = now
                rescued += 1
            return rescued

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def update(self, job: Job) -> None:
        async with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                return
            incoming = job.model_copy(deep=True)
            for field in Job.model_fields:
                if field not in _UPDATE_EXCLUDE:
                    setattr(stored, field, getattr(incoming, field))

    async def request_cancel(self, job_id: str, now: datetime) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.state == JobState.EXECUTING:
                job.cancel_requested = True
            elif job.state in (JobState.AVAILABLE, JobState.SCHEDULED):
                job.state = JobState.CANCELLED
                job.cancelled_at = now
            return job.model_copy(deep=True)

    async def list_jobs(
        self, queue: str | None = None, state: JobState | None = None
    ) -> list[Job]:
        jobs = [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if (queue is None or job.queue == queue) and (state is None or job.state == state)
        ]
        return sorted(jobs, key=lambda j: (j.inserted_at, j.id))

    async def delete_terminal(self, before: datetime) -> int:
        async with self._lock:
            doomed = [
                job.id
                for job in self._jobs.values()
                if job.is_terminal
                and _finished_at(job) is not None
                and _finished_at(job) < before
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)
