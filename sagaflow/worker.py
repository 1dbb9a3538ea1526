"""Queue worker: leases jobs and runs the workflows they describe."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Optional, Set, Union

from .config import SagaflowConfig
from .constants import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_QUEUE,
    DEFAULT_WORKER_CONCURRENCY,
    JOB_ARGS_ACTOR_KEY,
    JOB_ARGS_INPUTS_KEY,
    JOB_ARGS_WORKFLOW_KEY,
)
from .errors import (
    ActorDeserializationError,
    CancellationError,
    CompensationError,
    PermanentError,
    SnoozeSignal,
    TransientError,
    WorkflowError,
)
from .execute import WorkflowExecutor, WorkflowResult
from .persistence import Job
from .queue import FailOutcome, JobQueue
from .registry import REGISTRY, WorkflowRegistry
from .run import RunContext
from .security.context import ActorContext
from .utils.retry import RetryDecision, RetryPolicy, classify
from .workflow import Workflow

logger = logging.getLogger(__name__)

DiscardHook = Callable[[Job, BaseException], Union[None, Awaitable[None]]]


def _root_cause(error: WorkflowError) -> WorkflowError:
    while isinstance(error, CompensationError):
        error = error.original
    return error


class Worker:
    """Runs jobs from one queue, up to ``concurrency`` at a time.

    Every leased job ends in exactly one recorded outcome: completed,
    retried, snoozed, discarded or cancelled. ``on_discard(job, error)`` is
    called whenever a job is discarded, which makes it the place for
    final-attempt cleanup. A workflow's ``timeout`` bounds each run and its
    ``backoff`` schedules the job's retries.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        queue_name: str = DEFAULT_QUEUE,
        registry: Optional[WorkflowRegistry] = None,
        executor: Optional[WorkflowExecutor] = None,
        concurrency: int = DEFAULT_WORKER_CONCURRENCY,
        on_discard: Optional[DiscardHook] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = job_queue
        self.queue_name = queue_name
        self._registry = registry if registry is not None else REGISTRY
        self._executor = executor or WorkflowExecutor()
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._on_discard = on_discard
        self._stopping = False

    @classmethod
    def from_config(
        cls,
        job_queue: JobQueue,
        config: SagaflowConfig,
        queue_name: str = DEFAULT_QUEUE,
        registry: Optional[WorkflowRegistry] = None,
        on_discard: Optional[DiscardHook] = None,
    ) -> "Worker":
        return cls(
            job_queue,
            queue_name=queue_name,
            registry=registry,
            executor=WorkflowExecutor.from_config(config.executor),
            concurrency=config.worker.concurrency,
            on_discard=on_discard,
            poll_interval=config.worker.poll_interval,
        )

    # ------------------------------------------------------------------
    # Polling loop
    async def start(self, lifespan: Optional[float] = None) -> None:
        """Poll the queue and process jobs until stopped.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs
                until :meth:`stop` is called. In-flight jobs are awaited
                before returning.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        slots = asyncio.Semaphore(self.concurrency)
        tasks: Set[asyncio.Task] = set()

        def _done(task: asyncio.Task) -> None:
            tasks.discard(task)
            slots.release()

        self._stopping = False
        logger.info(
            f"Worker started on '{self.queue_name}' with concurrency {self.concurrency}"
        )
        try:
            while not self._stopping:
                remaining = None
                if lifespan is not None:
                    remaining = lifespan - (loop.time() - start_time)
                    if remaining <= 0:
                        break
                await slots.acquire()
                try:
                    job = await self._queue.lease(self.queue_name)
                except Exception as exc:
                    slots.release()
                    logger.error(f"Leasing from '{self.queue_name}' failed: {exc!r}")
                    job = None
                else:
                    if job is not None:
                        task = asyncio.create_task(self._process(job))
                        tasks.add(task)
                        task.add_done_callback(_done)
                        continue
                    slots.release()
                delay = self.poll_interval
                if remaining is not None:
                    delay = min(delay, remaining)
                await asyncio.sleep(delay)
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Worker on '{self.queue_name}' stopped")

    def stop(self) -> None:
        """Ask :meth:`start` to stop polling after the current iteration."""
        self._stopping = True

    async def process_next(self) -> Optional[Job]:
        """Lease and process one job; return its final state or ``None``."""
        job = await self._queue.lease(self.queue_name)
        if job is None:
            return None
        await self._process(job)
        return await self._queue.get(job.id)

    async def drain(self, max_jobs: Optional[int] = None) -> int:
        """Process jobs one by one until none is due; return how many ran."""
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if await self.process_next() is None:
                break
            processed += 1
        return processed

    # ------------------------------------------------------------------
    # Job handling
    async def _process(self, job: Job) -> None:
        try:
            await self._perform(job)
        except Exception as exc:
            logger.error(f"Job {job.id} crashed the worker: {exc!r}")
            try:
                await self._record_failure(
                    job, TransientError(f"{type(exc).__name__}: {exc}")
                )
            except Exception as record_exc:
                # the job stays executing until its lease expires and is rescued
                logger.error(f"Could not record failure of job {job.id}: {record_exc!r}")

    async def _perform(self, job: Job) -> None:
        args = job.args
        name = args.get(JOB_ARGS_WORKFLOW_KEY)
        workflow = self._registry.get(name) if isinstance(name, str) else None
        if workflow is None:
            await self._discard(job, PermanentError(f"unknown workflow: {name!r}"))
            return

        try:
            actor = ActorContext.from_job_args(args.get(JOB_ARGS_ACTOR_KEY))
        except ActorDeserializationError as exc:
            await self._discard(job, exc)
            return

        inputs = args.get(JOB_ARGS_INPUTS_KEY, {})
        if not isinstance(inputs, Mapping):
            await self._discard(job, PermanentError("job inputs must be an object"))
            return

        context = RunContext(
            actor=actor,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            job_id=job.id,
        )
        logger.info(
            f"Job {job.id} running workflow '{workflow.name}' for actor={actor.id} "
            f"tenant={actor.tenant_id} attempt {job.attempt}/{job.max_attempts}"
        )
        result = await self._executor.execute(
            workflow,
            inputs,
            context,
            should_cancel=lambda: self._queue.is_cancel_requested(job.id),
            timeout=workflow.timeout,
        )
        await self._settle(job, result, workflow)

    async def _settle(self, job: Job, result: WorkflowResult, workflow: Workflow) -> None:
        if result.ok:
            await self._queue.complete(job.id)
            return
        assert result.error is not None
        await self._record_failure(job, result.error, workflow.backoff)

    async def _record_failure(
        self, job: Job, error: WorkflowError, backoff: Optional[RetryPolicy] = None
    ) -> None:
        cause = _root_cause(error)
        decision = classify(error)
        if isinstance(cause, CancellationError):
            await self._queue.mark_cancelled(job.id, error)
        elif decision is RetryDecision.SNOOZE and isinstance(cause, SnoozeSignal):
            await self._queue.snooze(job.id, cause.seconds)
        elif decision is RetryDecision.PERMANENT:
            await self._discard(job, error)
        else:
            outcome = await self._queue.fail(job.id, error, retry_policy=backoff)
            if outcome is FailOutcome.DISCARD:
                await self._notify_discard(job, error)

    async def _discard(self, job: Job, error: BaseException) -> None:
        await self._queue.discard(job.id, error)
        await self._notify_discard(job, error)

    async def _notify_discard(self, job: Job, error: BaseException) -> None:
        if self._on_discard is None:
            return
        try:
            outcome: Any = self._on_discard(job, error)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.error(f"on_discard hook failed for job {job.id}: {exc!r}")
