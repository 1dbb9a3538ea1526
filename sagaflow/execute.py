"""Workflow execution engine for sagaflow."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .compensation import CompensationCoordinator
from .config import ExecutorConfig
from .constants import DEFAULT_STEP_CONCURRENCY
from .contracts import Step, StepDefinition
from .errors import (
    CancellationError,
    PermanentError,
    TransientError,
    WorkflowError,
)
from .run import CompletedStep, RunContext, WorkflowRun
from .utils.retry import RetryDecision, RetryPolicy, classify
from .workflow import Workflow

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], Union[bool, Awaitable[bool]]]
Sleep = Callable[[float], Awaitable[Any]]


class WorkflowResult(BaseModel):
    """Explicit outcome of a workflow execution.

    ``ok`` tells success from failure; on failure ``error`` carries the
    (possibly compensation-wrapped) error and ``compensated`` lists the steps
    whose compensation was invoked, in invocation order.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    workflow: str
    ok: bool
    value: Any = None
    error: Optional[WorkflowError] = None
    results: Dict[str, Any] = Field(default_factory=dict)
    completed: List[str] = Field(default_factory=list)
    compensated: List[str] = Field(default_factory=list)
    completed_steps: List[CompletedStep] = Field(default_factory=list)

    @property
    def failed(self) -> bool:
        return not self.ok


class WorkflowExecutor:
    """Walks a workflow's ready sets, running independent steps concurrently.

    On the first failure no new step is started, in-flight steps of the
    current ready set are awaited and every completed step is handed to the
    :class:`~sagaflow.compensation.CompensationCoordinator`.
    """

    def __init__(
        self,
        max_concurrency: int = DEFAULT_STEP_CONCURRENCY,
        retry_policy: Optional[RetryPolicy] = None,
        coordinator: Optional[CompensationCoordinator] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._max_concurrency = max_concurrency
        self._retry_policy = retry_policy or RetryPolicy(base=0.5, cap=30.0, jitter=0.1)
        self._coordinator = coordinator or CompensationCoordinator()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: ExecutorConfig, **kwargs: Any) -> "WorkflowExecutor":
        backoff = config.step_backoff
        return cls(
            max_concurrency=config.max_concurrency,
            retry_policy=RetryPolicy(base=backoff.base, cap=backoff.cap, jitter=backoff.jitter),
            **kwargs,
        )

    async def execute(
        self,
        workflow: Workflow,
        inputs: Mapping[str, Any],
        context: RunContext,
        should_cancel: Optional[CancelCheck] = None,
        timeout: Optional[float] = None,
    ) -> WorkflowResult:
        """Run ``workflow`` with ``inputs`` as ``context.actor``.

        ``should_cancel`` defaults to the check carried by ``context``, so
        nested runs observe their parent's cancellation. ``timeout`` bounds the
        forward phase in seconds; steps still running when it expires are
        cancelled and the completed ones are compensated. Never raises for
        step failures; inspect the returned result instead.
        """
        if should_cancel is None:
            should_cancel = context.should_cancel
        context = context.for_workflow(workflow.name).model_copy(
            update={"should_cancel": should_cancel, "executor": self}
        )
        if timeout is not None:
            context = context.with_deadline(_utcnow() + timedelta(seconds=timeout))
        run = WorkflowRun.start(workflow.name, list(workflow.plan.order))

        missing = [name for name in workflow.inputs if name not in inputs]
        if missing:
            error = PermanentError(f"missing inputs: {', '.join(missing)}")
            logger.error(f"Workflow '{workflow.name}' rejected: {error}")
            return WorkflowResult(workflow=workflow.name, ok=False, error=error)

        logger.info(
            f"Starting workflow '{workflow.name}' for actor={context.actor.id} "
            f"tenant={context.actor.tenant_id} attempt={context.attempt}"
        )
        forward = self._forward(workflow, inputs, context, run, should_cancel)
        if timeout is None:
            await forward
        else:
            try:
                await asyncio.wait_for(forward, timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Workflow '{workflow.name}' timed out after {timeout}s")
                for name in list(run.running):
                    run.mark_skipped(name)
                run.mark_failed(None, TransientError(f"workflow timed out after {timeout}s"))

        if not run.failed:
            value = run.result_of(workflow.return_step)
            logger.info(f"Workflow '{workflow.name}' completed")
            return WorkflowResult(
                workflow=workflow.name,
                ok=True,
                value=value,
                results=run.results(),
                completed=[step.name for step in run.completed],
                completed_steps=list(run.completed),
            )

        failure = run.failure
        assert failure is not None
        for name in list(run.pending):
            run.mark_skipped(name)
        report = await self._coordinator.compensate(run.completed, context, failure)
        error = report.wrap(failure)
        if classify(error) is RetryDecision.PERMANENT and not isinstance(failure, CancellationError):
            logger.error(f"Workflow '{workflow.name}' failed: {error}")
        else:
            logger.warning(f"Workflow '{workflow.name}' stopped: {error}")
        return WorkflowResult(
            workflow=workflow.name,
            ok=False,
            error=error,
            results=run.results(),
            completed=[step.name for step in run.completed],
            compensated=report.compensated,
            completed_steps=list(run.completed),
        )

    async def _forward(
        self,
        workflow: Workflow,
        inputs: Mapping[str, Any],
        context: RunContext,
        run: WorkflowRun,
        should_cancel: Optional[CancelCheck],
    ) -> None:
        semaphore = asyncio.Semaphore(self._max_concurrency)
        for layer in workflow.plan.layers:
            if should_cancel is not None and await _check(should_cancel):
                logger.warning(f"Workflow '{workflow.name}' cancelled before {list(layer)}")
                run.mark_failed(None, CancellationError("cancelled"))
                return
            await asyncio.gather(
                *(
                    self._run_step(workflow.step(name), inputs, context, run, semaphore)
                    for name in layer
                )
            )
            if run.failed:
                return

    async def _run_step(
        self,
        definition: StepDefinition,
        inputs: Mapping[str, Any],
        context: RunContext,
        run: WorkflowRun,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            if run.failed:
                run.mark_skipped(definition.name)
                return
            run.mark_started(definition.name)
            try:
                arguments = run.arguments_for(definition, inputs)
                value = await self._invoke_with_retries(definition, arguments, context)
            except WorkflowError as exc:
                logger.warning(f"Step '{definition.name}' failed: {exc!r}")
                run.mark_failed(definition.name, exc.with_step(definition.name))
                return
            run.mark_complete(definition, value, arguments)

    async def _invoke_with_retries(
        self, definition: StepDefinition, arguments: Dict[str, Any], context: RunContext
    ) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._invoke(definition, arguments, context)
            except WorkflowError as exc:
                if classify(exc) is RetryDecision.TRANSIENT and attempt <= definition.max_retries:
                    delay = self._retry_policy.backoff(attempt)
                    logger.warning(
                        f"Step '{definition.name}' transient failure ({exc}); "
                        f"retry {attempt}/{definition.max_retries} in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                    continue
                raise

    async def _invoke(
        self, definition: StepDefinition, arguments: Dict[str, Any], context: RunContext
    ) -> Any:
        """Run the step once, translating every failure into a ``WorkflowError``."""
        if definition.timeout is None:
            return await self._translate(definition, definition.step.run(arguments, context))
        context = context.with_deadline(_utcnow() + timedelta(seconds=definition.timeout))
        try:
            return await asyncio.wait_for(
                self._translate(definition, definition.step.run(arguments, context)),
                definition.timeout,
            )
        except asyncio.TimeoutError as exc:
            message = f"timed out after {definition.timeout}s"
            if definition.idempotent:
                raise TransientError(message, step=definition.name) from exc
            raise PermanentError(message, step=definition.name) from exc

    async def _translate(self, definition: StepDefinition, pending: Awaitable[Any]) -> Any:
        try:
            return await pending
        except WorkflowError:
            raise
        except Exception as exc:
            error_cls = (
                PermanentError
                if classify(exc) is RetryDecision.PERMANENT
                else TransientError
            )
            raise error_cls(f"{type(exc).__name__}: {exc}", step=definition.name) from exc


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _check(should_cancel: CancelCheck) -> bool:
    try:
        value = should_cancel()
        if inspect.isawaitable(value):
            value = await value
    except Exception as exc:
        # an unreachable cancel flag must not abort a run mid-way
        logger.warning(f"Cancellation check failed, continuing: {exc!r}")
        return False
    return bool(value)


class SubWorkflowStep(Step):
    """Runs a nested workflow with the caller's run context.

    The nested run reuses the same actor. Its result is the nested
    :class:`WorkflowResult`; reference ``result("step", "value")`` to read the
    nested final value. A failed nested run has already been rolled back, and
    the error propagates to the parent. When the parent later fails, this
    step's compensation replays the nested completed steps in reverse.
    """

    def __init__(self, workflow: Workflow, executor: Optional[WorkflowExecutor] = None) -> None:
        self.workflow = workflow
        self._executor = executor
        self._coordinator = CompensationCoordinator()

    async def run(self, arguments: Dict[str, Any], context: RunContext) -> WorkflowResult:
        executor = self._executor or context.executor or WorkflowExecutor()
        outcome = await executor.execute(self.workflow, arguments, context)
        if outcome.error is not None:
            raise outcome.error
        return outcome

    async def compensate(
        self, result: WorkflowResult, arguments: Dict[str, Any], context: RunContext
    ) -> None:
        report = await self._coordinator.compensate(
            result.completed_steps, context.for_workflow(self.workflow.name)
        )
        if not report.ok:
            raise report.wrap(
                CancellationError(f"parent of '{self.workflow.name}' rolled back")
            )
