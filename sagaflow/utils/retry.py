from __future__ import annotations

import random
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..constants import DEFAULT_BACKOFF_BASE, DEFAULT_BACKOFF_CAP, DEFAULT_BACKOFF_JITTER
from ..errors import (
    ActorDeserializationError,
    CancellationError,
    CompensationError,
    DefinitionError,
    PermanentError,
    SnoozeSignal,
)


class RetryDecision(str, Enum):
    """How a failure should be handled."""

    PERMANENT = "permanent"
    TRANSIENT = "transient"
    SNOOZE = "snooze"


def classify(error: Optional[BaseException]) -> RetryDecision:
    """Classify ``error`` into a retry decision.

    Pure function of the error value. Declared errors map directly;
    compensation failures take the class of the error that caused the
    rollback. Undeclared exceptions are treated as transient.
    """
    if isinstance(error, CompensationError):
        return classify(error.original)
    if isinstance(error, SnoozeSignal):
        return RetryDecision.SNOOZE
    if isinstance(
        error,
        (PermanentError, CancellationError, DefinitionError, ActorDeserializationError),
    ):
        return RetryDecision.PERMANENT
    return RetryDecision.TRANSIENT


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE,
    cap: float = DEFAULT_BACKOFF_CAP,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff ``base * 2**(attempt-1)`` bounded by ``cap``.

    ``jitter`` is a fraction of the delay added at random on top.
    """
    delay = min(cap, base * (2 ** max(attempt - 1, 0)))
    if jitter:
        delay += random.uniform(0, jitter * delay)
    return delay


class RetryPolicy(BaseModel):
    """Backoff parameters plus retry decisions for a failed attempt."""

    base: float = Field(default=DEFAULT_BACKOFF_BASE, ge=0)
    cap: float = Field(default=DEFAULT_BACKOFF_CAP, ge=0)
    jitter: float = Field(default=DEFAULT_BACKOFF_JITTER, ge=0)

    def backoff(self, attempt: int) -> float:
        return compute_backoff(attempt, base=self.base, cap=self.cap, jitter=self.jitter)

    def should_retry(
        self, error: Optional[BaseException], attempt: int, max_attempts: int
    ) -> bool:
        """``True`` if ``error`` is transient and attempts remain."""
        return classify(error) is RetryDecision.TRANSIENT and attempt < max_attempts

