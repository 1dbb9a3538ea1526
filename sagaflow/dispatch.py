"""Workflow dispatcher for sagaflow."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Union

from .constants import (
    DEFAULT_QUEUE,
    JOB_ARGS_ACTOR_KEY,
    JOB_ARGS_INPUTS_KEY,
    JOB_ARGS_WORKFLOW_KEY,
)
from .execute import WorkflowExecutor, WorkflowResult
from .persistence import Job
from .queue import JobQueue
from .registry import REGISTRY, WorkflowRegistry
from .run import RunContext
from .security.context import ActorContext
from .workflow import Workflow

logger = logging.getLogger(__name__)


def build_job_args(
    workflow: str, inputs: Mapping[str, Any], actor: ActorContext
) -> Dict[str, Any]:
    """Serialise a workflow invocation into string-keyed job args."""
    return {
        JOB_ARGS_WORKFLOW_KEY: workflow,
        JOB_ARGS_INPUTS_KEY: dict(inputs),
        JOB_ARGS_ACTOR_KEY: actor.to_job_args(),
    }


class WorkflowDispatcher:
    """Service responsible for starting workflows, now or through the queue."""

    def __init__(
        self,
        job_queue: Optional[JobQueue] = None,
        registry: Optional[WorkflowRegistry] = None,
        executor: Optional[WorkflowExecutor] = None,
    ) -> None:
        self._queue = job_queue
        self._registry = registry if registry is not None else REGISTRY
        self._executor = executor or WorkflowExecutor()

    def _resolve(self, workflow: Union[str, Workflow]) -> Workflow:
        if isinstance(workflow, Workflow):
            if self._registry.get(workflow.name) is not workflow:
                self._registry.register(workflow)
            return workflow
        found = self._registry.get(workflow)
        if found is None:
            raise KeyError(f"Unknown workflow: {workflow}")
        return found

    async def dispatch(
        self,
        workflow: Union[str, Workflow],
        inputs: Mapping[str, Any],
        actor: ActorContext,
        queue: str = DEFAULT_QUEUE,
        **enqueue_options: Any,
    ) -> Job:
        """Enqueue ``workflow`` to be run by a worker as ``actor``.

        Args:
            workflow: Registered workflow name, or a workflow to register.
            inputs: Workflow inputs; must be JSON serialisable.
            actor: Identity the workflow runs as.
            queue: Target queue name.
            **enqueue_options: Forwarded to :meth:`JobQueue.enqueue`.
        """
        if self._queue is None:
            raise RuntimeError("WorkflowDispatcher has no job queue to dispatch to")
        compiled = self._resolve(workflow)
        missing = [name for name in compiled.inputs if name not in inputs]
        if missing:
            raise ValueError(
                f"Workflow '{compiled.name}' is missing inputs: {', '.join(missing)}"
            )
        job = await self._queue.enqueue(
            queue, build_job_args(compiled.name, inputs, actor), **enqueue_options
        )
        logger.info(
            f"Dispatched workflow '{compiled.name}' as job {job.id} on '{queue}' "
            f"for actor={actor.id} tenant={actor.tenant_id}"
        )
        return job

    async def run(
        self,
        workflow: Union[str, Workflow],
        inputs: Mapping[str, Any],
        actor: ActorContext,
    ) -> WorkflowResult:
        """Execute ``workflow`` in the current task and return its result."""
        compiled = self._resolve(workflow)
        return await self._executor.execute(
            compiled, inputs, RunContext(actor=actor), timeout=compiled.timeout
        )
