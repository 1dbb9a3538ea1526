"""Data models for persisted jobs."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..constants import DEFAULT_MAX_ATTEMPTS, DEFAULT_PRIORITY, DEFAULT_QUEUE


class JobState(str, Enum):
    """Lifecycle states of a job."""

    AVAILABLE = "available"
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    CANCELLED = "cancelled"


ACTIVE_STATES = frozenset({JobState.AVAILABLE, JobState.SCHEDULED, JobState.EXECUTING})
TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.DISCARDED, JobState.CANCELLED})


class Job(BaseModel):
    """A unit of queued work.

    ``attempt`` counts leases; it is incremented when the job is claimed and
    decremented again when the attempt ends in a snooze. ``errors`` keeps one
    entry per failed attempt.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    queue: str = DEFAULT_QUEUE
    state: JobState = JobState.AVAILABLE
    args: dict[str, Any] = Field(default_factory=dict)
    attempt: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    priority: int = DEFAULT_PRIORITY
    unique_key: Optional[str] = None
    scheduled_at: datetime
    inserted_at: datetime
    attempted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    discarded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_requested: bool = False
    last_error: Optional[str] = None
    errors: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempt, 0)
