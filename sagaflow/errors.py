"""Error taxonomy for sagaflow workflows and jobs."""

from __future__ import annotations

from typing import Any, List, Optional, Tuple


class SagaflowError(Exception):
    """Base class for all sagaflow errors."""


class DefinitionError(SagaflowError):
    """Raised when a workflow definition is structurally invalid.

    Only ever raised while a workflow is being built, never while it runs.
    """


class WorkflowError(SagaflowError):
    """Base class for failures observed while a workflow runs.

    Steps raise subclasses of this error to tell the executor how the failure
    should be treated. ``reason`` carries the business reason surfaced to the
    caller and ``step`` is filled in by the executor when it is not set.
    """

    def __init__(
        self,
        reason: Any = None,
        *,
        step: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        self.reason = reason
        self.step = step
        self.details = details or {}
        super().__init__(self._format())

    def _format(self) -> str:
        prefix = f"[{self.step}] " if self.step else ""
        return f"{prefix}{self.reason}"

    def with_step(self, step: str) -> "WorkflowError":
        """Attach ``step`` if no step was recorded yet and return ``self``."""
        if self.step is None:
            self.step = step
            self.args = (self._format(),)
        return self


class PermanentError(WorkflowError):
    """Failure that must not be retried (authorization, not found, validation)."""


class TransientError(WorkflowError):
    """Failure that may succeed on a later attempt (network, timeout, contention)."""


class SnoozeSignal(WorkflowError):
    """Ask for the whole job to be re-run after ``seconds``.

    A snooze does not count as a failed attempt.
    """

    def __init__(self, seconds: float, reason: Any = "snoozed", **kwargs: Any) -> None:
        self.seconds = float(seconds)
        super().__init__(reason, **kwargs)


class CancellationError(WorkflowError):
    """Cooperative cancellation observed between ready sets."""


class CompensationError(WorkflowError):
    """One or more compensations failed while rolling back ``original``.

    ``failures`` holds ``(step_name, exception)`` pairs in the order the
    compensations were attempted.
    """

    def __init__(
        self,
        original: WorkflowError,
        failures: List[Tuple[str, BaseException]],
    ) -> None:
        self.original = original
        self.failures = list(failures)
        failed = ", ".join(name for name, _ in self.failures)
        super().__init__(
            f"compensation failed for {failed} while handling: {original}",
            step=original.step,
        )


class ActorDeserializationError(SagaflowError, ValueError):
    """Serialized actor data could not be turned into an ``ActorContext``."""


class JobNotFoundError(SagaflowError, KeyError):
    """No job exists with the requested identifier."""

    def __str__(self) -> str:
        return f"Job not found: {self.args[0] if self.args else ''}"
