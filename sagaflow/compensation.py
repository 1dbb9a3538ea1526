"""Compensation coordinator: rolls back completed steps after a failure."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import CompensationError, WorkflowError
from .run import CompletedStep, RunContext

logger = logging.getLogger(__name__)


class CompensationReport(BaseModel):
    """Outcome of one rollback pass."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    compensated: List[str] = Field(default_factory=list)
    failures: List[Tuple[str, BaseException]] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def wrap(self, error: WorkflowError) -> WorkflowError:
        """Return ``error`` or, if any compensation failed, a wrapping error."""
        if self.ok:
            return error
        return CompensationError(original=error, failures=self.failures)


class CompensationCoordinator:
    """Invokes compensations in reverse completion order, one at a time.

    Rollback is best-effort: a failing compensation is logged and recorded,
    and the remaining compensations still run.
    """

    async def compensate(
        self,
        completed: Sequence[CompletedStep],
        context: RunContext,
        error: Optional[WorkflowError] = None,
    ) -> CompensationReport:
        report = CompensationReport()
        if not completed:
            return report

        logger.info(
            f"Compensating {len(completed)} step(s) of workflow '{context.workflow}' "
            f"for actor={context.actor.id} after: {error}"
        )
        for entry in reversed(completed):
            try:
                await entry.definition.step.compensate(
                    entry.value, entry.arguments, context
                )
            except Exception as exc:
                logger.error(
                    f"Compensation of step '{entry.name}' in workflow "
                    f"'{context.workflow}' failed: {exc!r}"
                )
                report.failures.append((entry.name, exc))
            else:
                logger.debug(f"Compensated step '{entry.name}'")
            report.compensated.append(entry.name)
        return report
