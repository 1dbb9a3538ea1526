"""Cron scheduler that enqueues recurring jobs."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from croniter import croniter

from .config import CronEntry, SchedulerConfig
from .constants import DEFAULT_SCHEDULER_INTERVAL
from .persistence import Job
from .queue import JobQueue

logger = logging.getLogger(__name__)


def slot_key(entry: CronEntry, slot: datetime) -> str:
    """Unique key of one firing of ``entry``."""
    return f"cron:{entry.queue}:{entry.expression}:{slot.isoformat()}"


class CronScheduler:
    """Enqueue jobs for crontab entries whose fire time has passed.

    Each firing is enqueued with a unique key per ``(queue, expression,
    slot)``, so several schedulers sharing a repository insert it once.
    Missed slots are not back-filled: a tick enqueues at most the latest due
    slot of each entry.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        entries: Iterable[CronEntry],
        interval: float = DEFAULT_SCHEDULER_INTERVAL,
    ) -> None:
        self._queue = job_queue
        self.entries: List[CronEntry] = list(entries)
        for entry in self.entries:
            if not croniter.is_valid(entry.expression):
                raise ValueError(f"Invalid cron expression: {entry.expression!r}")
        self.interval = interval
        self._last_tick: Optional[datetime] = None

    @classmethod
    def from_config(cls, job_queue: JobQueue, config: SchedulerConfig) -> "CronScheduler":
        return cls(job_queue, config.crontab, interval=config.interval)

    def _due_slot(self, entry: CronEntry, since: datetime, now: datetime) -> Optional[datetime]:
        it = croniter(entry.expression, since)
        due = None
        slot = it.get_next(datetime)
        while slot <= now:
            due = slot
            slot = it.get_next(datetime)
        return due

    async def tick(self, now: Optional[datetime] = None) -> List[Job]:
        """Enqueue every entry that fired since the previous tick."""
        now = now or self._queue.now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        since = self._last_tick or now - timedelta(seconds=self.interval)
        self._last_tick = now

        enqueued: List[Job] = []
        for entry in self.entries:
            slot = self._due_slot(entry, since, now)
            if slot is None:
                continue
            job = await self._queue.enqueue(
                entry.queue,
                entry.args,
                priority=entry.priority,
                max_attempts=entry.max_attempts,
                unique_key=slot_key(entry, slot),
                unique_period=math.inf,
            )
            logger.info(f"Cron '{entry.expression}' fired for slot {slot.isoformat()}: job {job.id}")
            enqueued.append(job)
        return enqueued

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Tick every ``interval`` seconds.

        Args:
            lifespan: Maximum time in seconds to keep running. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            try:
                await self.tick()
            except Exception as exc:
                logger.error(f"Cron tick failed: {exc!r}")
            delay = self.interval
            if lifespan is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                delay = min(delay, remaining)
            await asyncio.sleep(delay)

