"""Durable job queue service built on a :class:`JobRepository`."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .config import QueueConfig
from .errors import JobNotFoundError
from .persistence import Job, JobRepository, JobState
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FailOutcome(str, Enum):
    """What happened to a job after a failed attempt."""

    RETRY = "retry"
    DISCARD = "discard"


def _validate_args(args: Any) -> Dict[str, Any]:
    if not isinstance(args, Mapping):
        raise ValueError(f"Job args must be a mapping, got {type(args).__name__}")
    try:
        encoded = json.loads(json.dumps(args, allow_nan=False))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Job args are not JSON serialisable: {exc}") from exc
    if encoded != args:
        raise ValueError("Job args must use string keys and JSON-native values only")
    return encoded


def _describe(error: Union[BaseException, str, None]) -> str:
    if error is None:
        return "unknown error"
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)


class JobQueue:
    """Enqueue, lease and settle jobs.

    All state transitions go through the repository so that several workers
    and processes can share one queue table.
    """

    def __init__(
        self,
        repository: JobRepository,
        config: Optional[QueueConfig] = None,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.repository = repository
        self.config = config or QueueConfig()
        self._clock = clock or utcnow
        backoff = self.config.backoff
        self.retry_policy = retry_policy or RetryPolicy(
            base=backoff.base, cap=backoff.cap, jitter=backoff.jitter
        )

    def now(self) -> datetime:
        return self._clock()

    async def _require(self, job_id: str) -> Job:
        job = await self.repository.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _record_error(self, job: Job, error: Union[BaseException, str, None], now: datetime) -> None:
        message = _describe(error)
        job.last_error = message
        job.errors.append(
            {"attempt": job.attempt, "at": now.isoformat(), "error": message}
        )

    # ------------------------------------------------------------------
    # Producer API
    async def enqueue(
        self,
        queue: str,
        args: Mapping[str, Any],
        *,
        priority: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
        schedule_in: Optional[float] = None,
        max_attempts: Optional[int] = None,
        unique_key: Optional[str] = None,
        unique_period: Optional[float] = None,
    ) -> Job:
        """Insert a job, or return the active duplicate sharing ``unique_key``.

        ``unique_period`` is the window in seconds during which a duplicate
        is detected; ``math.inf`` makes the key unique for as long as a job
        with it is active.
        """
        if scheduled_at is not None and schedule_in is not None:
            raise ValueError("Pass either scheduled_at or schedule_in, not both")
        max_attempts = self.config.max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        now = self.now()
        if schedule_in is not None:
            scheduled_at = now + timedelta(seconds=schedule_in)
        scheduled_at = scheduled_at or now
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)

        job = Job(
            queue=queue,
            state=JobState.SCHEDULED if scheduled_at > now else JobState.AVAILABLE,
            args=_validate_args(args),
            max_attempts=max_attempts,
            priority=self.config.priority if priority is None else priority,
            unique_key=unique_key,
            scheduled_at=scheduled_at,
            inserted_at=now,
        )

        unique_since = None
        if unique_key is not None:
            period = self.config.unique_period if unique_period is None else unique_period
            if not math.isinf(period):
                unique_since = now - timedelta(seconds=period)

        stored, inserted = await self.repository.insert(job, unique_since)
        if inserted:
            logger.info(
                f"Enqueued job {stored.id} on '{queue}' state={stored.state.value} "
                f"priority={stored.priority}"
            )
        else:
            logger.info(
                f"Job with unique key '{unique_key}' already active as {stored.id}; skipped"
            )
        return stored

    # ------------------------------------------------------------------
    # Consumer API
    async def lease(self, queue: str) -> Optional[Job]:
        """Claim the next due job on ``queue`` or return ``None``.

        Jobs whose lease outlived ``config.lease_timeout`` are rescued first,
        so work held by a crashed worker is handed out again.
        """
        if self.config.lease_timeout is not None:
            await self.rescue(queue)
        job = await self.repository.claim(queue, self.now())
        if job is not None:
            logger.info(
                f"Leased job {job.id} on '{queue}' attempt {job.attempt}/{job.max_attempts}"
            )
        return job

    async def complete(self, job_id: str) -> Job:
        job = await self._require(job_id)
        job.state = JobState.COMPLETED
        job.completed_at = self.now()
        await self.repository.update(job)
        logger.info(f"Job {job_id} completed")
        return job

    async def fail(
        self,
        job_id: str,
        error: Union[BaseException, str, None],
        retry_policy: Optional[RetryPolicy] = None,
    ) -> FailOutcome:
        """Record a failed attempt and retry with backoff or discard.

        ``retry_policy`` overrides the queue's backoff for this job.
        """
        job = await self._require(job_id)
        now = self.now()
        self._record_error(job, error, now)
        if job.attempts_left > 0:
            delay = (retry_policy or self.retry_policy).backoff(job.attempt)
            job.state = JobState.SCHEDULED
            job.scheduled_at = now + timedelta(seconds=delay)
            await self.repository.update(job)
            logger.warning(
                f"Job {job_id} attempt {job.attempt}/{job.max_attempts} failed "
                f"({job.last_error}); retrying in {delay:.2f}s"
            )
            return FailOutcome.RETRY

        job.state = JobState.DISCARDED
        job.discarded_at = now
        await self.repository.update(job)
        logger.error(
            f"Job {job_id} discarded after {job.attempt} attempt(s): {job.last_error}"
        )
        return FailOutcome.DISCARD

    async def discard(self, job_id: str, reason: Union[BaseException, str, None] = None) -> Job:
        """Discard a job without further retries."""
        job = await self._require(job_id)
        now = self.now()
        self._record_error(job, reason, now)
        job.state = JobState.DISCARDED
        job.discarded_at = now
        await self.repository.update(job)
        logger.error(f"Job {job_id} discarded: {job.last_error}")
        return job

    async def snooze(self, job_id: str, seconds: float) -> Job:
        """Re-schedule a job after ``seconds`` without consuming an attempt."""
        if seconds < 0:
            raise ValueError("snooze seconds must not be negative")
        job = await self._require(job_id)
        now = self.now()
        job.attempt = max(job.attempt - 1, 0)
        job.scheduled_at = now + timedelta(seconds=seconds)
        job.state = JobState.SCHEDULED if seconds > 0 else JobState.AVAILABLE
        await self.repository.update(job)
        logger.warning(f"Job {job_id} snoozed for {seconds}s")
        return job

    async def cancel(self, job_id: str) -> Job:
        """Cancel a waiting job, or ask an executing one to stop."""
        job = await self.repository.request_cancel(job_id, self.now())
        if job is None:
            raise JobNotFoundError(job_id)
        if job.state == JobState.EXECUTING:
            logger.warning(f"Cancellation requested for executing job {job_id}")
        elif job.state == JobState.CANCELLED:
            logger.warning(f"Job {job_id} cancelled")
        return job

    async def mark_cancelled(self, job_id: str, reason: Union[BaseException, str, None] = None) -> Job:
        """Finish an executing job as cancelled."""
        job = await self._require(job_id)
        now = self.now()
        if reason is not None:
            self._record_error(job, reason, now)
        job.state = JobState.CANCELLED
        job.cancelled_at = now
        await self.repository.update(job)
        logger.warning(f"Job {job_id} cancelled during execution")
        return job

    async def is_cancel_requested(self, job_id: str) -> bool:
        job = await self.repository.get(job_id)
        return job is not None and (job.cancel_requested or job.state == JobState.CANCELLED)

    # ------------------------------------------------------------------
    # Inspection and maintenance
    async def get(self, job_id: str) -> Job:
        return await self._require(job_id)

    async def list_jobs(
        self, queue: Optional[str] = None, state: Optional[JobState] = None
    ) -> List[Job]:
        return await self.repository.list_jobs(queue=queue, state=state)

    async def retry(self, job_id: str) -> Job:
        """Make a finished job available again.

        Jobs that already used all their attempts get one more.
        """
        job = await self._require(job_id)
        if not job.is_terminal:
            return job
        job.state = JobState.AVAILABLE
        job.scheduled_at = self.now()
        job.completed_at = None
        job.discarded_at = None
        job.cancelled_at = None
        if job.attempt >= job.max_attempts:
            job.max_attempts = job.attempt + 1
        await self.repository.update(job)
        logger.info(f"Job {job_id} made available for retry")
        return job

    async def rescue(
        self,
        queue: Optional[str] = None,
        older_than: Union[timedelta, float, None] = None,
    ) -> int:
        """Release executing jobs leased longer than ``older_than`` ago.

        Defaults to ``config.lease_timeout``. Rescued jobs with attempts left
        become available; the others are discarded.
        """
        if older_than is None:
            older_than = self.config.lease_timeout
            if older_than is None:
                return 0
        if not isinstance(older_than, timedelta):
            older_than = timedelta(seconds=older_than)
        now = self.now()
        rescued = await self.repository.rescue(now - older_than, now, queue)
        if rescued:
            logger.warning(f"Rescued {rescued} job(s) with an expired lease")
        return rescued

    async def prune(self, older_than: Union[timedelta, float]) -> int:
        """Delete finished jobs older than ``older_than`` (seconds or timedelta)."""
        if not isinstance(older_than, timedelta):
            older_than = timedelta(seconds=older_than)
        removed = await self.repository.delete_terminal(self.now() - older_than)
        if removed:
            logger.info(f"Pruned {removed} finished job(s)")
        return removed
