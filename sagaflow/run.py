"""Runtime records for a single workflow execution."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from .contracts import InputRef, ResultRef, StepDefinition, ValueRef
from .errors import PermanentError, WorkflowError
from .security.context import ActorContext


class RunContext(BaseModel):
    """Context handed to every step, compensation and nested workflow.

    Holds the actor plus run metadata. The actor is never replaced while a
    run is in progress: nested workflows receive a copy that differs only in
    the ``workflow`` name and possibly an earlier ``deadline``.
    ``should_cancel`` and ``executor`` are set by the running executor so
    nested workflows observe the same cancellation flag and run on the same
    executor.
    """

    model_config = ConfigDict(frozen=True)

    actor: ActorContext
    attempt: int = 1
    max_attempts: Optional[int] = None
    job_id: Optional[str] = None
    workflow: Optional[str] = None
    deadline: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    should_cancel: Optional[Callable[[], Any]] = Field(default=None, exclude=True, repr=False)
    executor: Optional[Any] = Field(default=None, exclude=True, repr=False)

    def for_workflow(self, name: str) -> "RunContext":
        return self.model_copy(update={"workflow": name})

    def with_deadline(self, deadline: datetime) -> "RunContext":
        """Copy with ``deadline``, keeping an earlier deadline already set."""
        if self.deadline is not None and self.deadline <= deadline:
            return self
        return self.model_copy(update={"deadline": deadline})

    @property
    def is_final_attempt(self) -> bool:
        return self.max_attempts is not None and self.attempt >= self.max_attempts

    def time_remaining(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds left before ``deadline``, or ``None`` without a deadline."""
        if self.deadline is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (self.deadline - now).total_seconds()


class CompletedStep(BaseModel):
    """A step that finished successfully, kept for compensation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    value: Any = None
    arguments: Dict[str, Any] = Field(default_factory=dict)
    definition: StepDefinition


def _dig(value: Any, path: tuple, step: str) -> Any:
    for key in path:
        if isinstance(value, Mapping):
            if key not in value:
                raise PermanentError(f"result of '{step}' has no key '{key}'")
            value = value[key]
        elif hasattr(value, key):
            value = getattr(value, key)
        else:
            raise PermanentError(f"result of '{step}' has no attribute '{key}'")
    return value


class WorkflowRun(BaseModel):
    """Ephemeral state of one execution: completed, pending and failure.

    Created when execution starts and discarded when it ends; never persisted.
    ``completed`` is kept in completion order.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    workflow: str
    completed: List[CompletedStep] = Field(default_factory=list)
    pending: Set[str] = Field(default_factory=set)
    running: Set[str] = Field(default_factory=set)
    failure: Optional[WorkflowError] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def start(cls, workflow: str, steps: List[str]) -> "WorkflowRun":
        return cls(workflow=workflow, pending=set(steps))

    @property
    def failed(self) -> bool:
        return self.failure is not None

    def results(self) -> Dict[str, Any]:
        return {step.name: step.value for step in self.completed}

    def result_of(self, name: Optional[str]) -> Any:
        if name is None:
            return None
        for step in self.completed:
            if step.name == name:
                return step.value
        return None

    def arguments_for(
        self, definition: StepDefinition, inputs: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Build the argument bag of ``definition`` from inputs and results."""
        results = self.results()
        arguments: Dict[str, Any] = {}
        for name, source in definition.arguments.items():
            if isinstance(source, InputRef):
                arguments[name] = inputs[source.name]
            elif isinstance(source, ResultRef):
                arguments[name] = _dig(results[source.step], source.path, source.step)
            elif isinstance(source, ValueRef):
                arguments[name] = source.value
        return arguments

    def mark_started(self, name: str) -> None:
        self.pending.discard(name)
        self.running.add(name)

    def mark_complete(
        self, definition: StepDefinition, value: Any, arguments: Dict[str, Any]
    ) -> None:
        self.running.discard(definition.name)
        self.completed.append(
            CompletedStep(
                name=definition.name,
                value=value,
                arguments=arguments,
                definition=definition,
            )
        )

    def mark_failed(self, name: Optional[str], error: WorkflowError) -> None:
        """Record ``error``; only the first failure of a run is kept."""
        if name is not None:
            self.running.discard(name)
        if self.failure is None:
            self.failure = error

    def mark_skipped(self, name: str) -> None:
        self.pending.discard(name)
        self.running.discard(name)
