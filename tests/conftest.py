from datetime import datetime, timedelta, timezone

import pytest

from sagaflow.config import BackoffConfig, QueueConfig
from sagaflow.persistence import InMemoryJobRepository
from sagaflow.queue import JobQueue
from sagaflow.run import RunContext
from sagaflow.security import ActorContext, Role


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def editor():
    return ActorContext(id="user-1", tenant_id="acme", role=Role.EDITOR)


@pytest.fixture
def viewer():
    return ActorContext(id="user-2", tenant_id="acme", role=Role.VIEWER)


@pytest.fixture
def context(editor):
    return RunContext(actor=editor)


@pytest.fixture
def job_queue(clock):
    config = QueueConfig(max_attempts=3, backoff=BackoffConfig(base=10.0, cap=600.0, jitter=0.0))
    return JobQueue(InMemoryJobRepository(), config=config, clock=clock)


@pytest.fixture
def sleeps():
    """Records requested delays instead of sleeping."""
    delays = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    _sleep.delays = delays
    return _sleep
