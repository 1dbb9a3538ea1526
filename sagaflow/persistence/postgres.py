"""PostgreSQL implementation of the job repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg

from ..constants import LEASE_EXPIRED_ERROR
from .models import Job, JobState
from .repository import JobRepository

_SELECT = """
    SELECT id, queue, state, args, attempt, max_attempts, priority, unique_key,
           scheduled_at, inserted_at, attempted_at, completed_at, discarded_at,
           cancelled_at, cancel_requested, last_error, errors
    FROM sagaflow_jobs
"""


def _record_to_job(record: asyncpg.Record) -> Job:
    return Job(
        id=record["id"],
        queue=record["queue"],
        state=JobState(record["state"]),
        args=json.loads(record["args"]),
        attempt=record["attempt"],
        max_attempts=record["max_attempts"],
        priority=record["priority"],
        unique_key=record["unique_key"],
        scheduled_at=record["scheduled_at"],
        inserted_at=record["inserted_at"],
        attempted_at=record["attempted_at"],
        completed_at=record["completed_at"],
        discarded_at=record["discarded_at"],
        cancelled_at=record["cancelled_at"],
        cancel_requested=record["cancel_requested"],
        last_error=record["last_error"],
        errors=json.loads(record["errors"]) if record["errors"] else [],
    )


class PostgresJobRepository(JobRepository):
    """Persist jobs using PostgreSQL.

    Leases use ``FOR UPDATE SKIP LOCKED`` so any number of workers can poll
    the same queue without handing out a job twice.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sagaflow_jobs (
                id TEXT PRIMARY KEY,
                queue TEXT NOT NULL,
                state TEXT NOT NULL,
                args JSONB NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL,
                priority INTEGER NOT NULL DEFAULT 0,
                unique_key TEXT,
                scheduled_at TIMESTAMPTZ NOT NULL,
                inserted_at TIMESTAMPTZ NOT NULL,
                attempted_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                discarded_at TIMESTAMPTZ,
                cancelled_at TIMESTAMPTZ,
                cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                last_error TEXT,
                errors JSONB NOT NULL DEFAULT '[]'::jsonb
            )
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS sagaflow_jobs_fetch_idx
            ON sagaflow_jobs (queue, state, priority, scheduled_at)
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS sagaflow_jobs_unique_idx ON sagaflow_jobs (unique_key)"
        )

    # ------------------------------------------------------------------
    async def insert(
        self, job: Job, unique_since: datetime | None = None
    ) -> tuple[Job, bool]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if job.unique_key is not None:
                    # serialise inserts sharing a unique key
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))", job.unique_key
                    )
                    existing = await conn.fetchrow(
                        _SELECT
                        + """
                        WHERE unique_key = $1
                          AND state IN ('available', 'scheduled', 'executing')
                          AND ($2::timestamptz IS NULL OR inserted_at >= $2)
                        ORDER BY inserted_at
                        LIMIT 1
                        """,
                        job.unique_key,
                        unique_since,
                    )
                    if existing is not None:
                        return _record_to_job(existing), False
                await conn.execute(
                    """
                    INSERT INTO sagaflow_jobs (
                        id, queue, state, args, attempt, max_attempts, priority, unique_key,
                        scheduled_at, inserted_at, attempted_at, completed_at, discarded_at,
                        cancelled_at, cancel_requested, last_error, errors
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                    """,
                    job.id,
                    job.queue,
                    job.state.value,
                    json.dumps(job.args),
                    job.attempt,
                    job.max_attempts,
                    job.priority,
                    job.unique_key,
                    job.scheduled_at,
                    job.inserted_at,
                    job.attempted_at,
                    job.completed_at,
                    job.discarded_at,
                    job.cancelled_at,
                    job.cancel_requested,
                    job.last_error,
                    json.dumps(job.errors),
                )
        finally:
            await conn.close()
        return job, True

    async def claim(self, queue: str, now: datetime) -> Job | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE sagaflow_jobs SET state = 'available'
                    WHERE queue = $1 AND state = 'scheduled' AND scheduled_at <= $2
                    """,
                    queue,
                    now,
                )
                record = await conn.fetchrow(
                    """
                    UPDATE sagaflow_jobs
                    SET state = 'executing', attempt = attempt + 1, attempted_at = $2,
                        cancel_requested = FALSE
                    WHERE id = (
                        SELECT id FROM sagaflow_jobs
                        WHERE queue = $1 AND state = 'available' AND scheduled_at <= $2
                        ORDER BY priority, scheduled_at, inserted_at, id
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING id, queue, state, args, attempt, max_attempts, priority,
                              unique_key, scheduled_at, inserted_at, attempted_at,
                              completed_at, discarded_at, cancelled_at, cancel_requested,
                              last_error, errors
                    """,
                    queue,
                    now,
                )
        finally:
            await conn.close()
        return _record_to_job(record) if record else None

    async def rescue(
        self, before: datetime, now: datetime, queue: str | None = None
    ) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE sagaflow_jobs
                SET state = CASE WHEN attempt < max_attempts THEN 'available' ELSE 'discarded' END,
                    discarded_at = CASE WHEN attempt < max_attempts THEN discarded_at ELSE $2 END,
                    last_error = $4,
                    errors = errors || jsonb_build_array(
                        jsonb_build_object('attempt', attempt, 'at', $3::text, 'error', $4::text)
                    )
                WHERE state = 'executing' AND attempted_at < $1
                  AND ($5::text IS NULL OR queue = $5)
                """,
                before,
                now,
                now.isoformat(),
                LEASE_EXPIRED_ERROR,
                queue,
            )
        finally:
            await conn.close()
        return int(status.split()[-1])

    async def get(self, job_id: str) -> Job | None:
        conn = await self._connect()
        try:
            record = await conn.fetchrow(_SELECT + " WHERE id = $1", job_id)
        finally:
            await conn.close()
        return _record_to_job(record) if record else None

    async def update(self, job: Job) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE sagaflow_jobs
                SET state = $2, attempt = $3, max_attempts = $4, priority = $5,
                    scheduled_at = $6, attempted_at = $7, completed_at = $8,
                    discarded_at = $9, cancelled_at = $10, last_error = $11, errors = $12
                WHERE id = $1
                """,
                job.id,
                job.state.value,
                job.attempt,
                job.max_attempts,
                job.priority,
                job.scheduled_at,
                job.attempted_at,
                job.completed_at,
                job.discarded_at,
                job.cancelled_at,
                job.last_error,
                json.dumps(job.errors),
            )
        finally:
            await conn.close()

    async def request_cancel(self, job_id: str, now: datetime) -> Job | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                record = await conn.fetchrow(
                    _SELECT + " WHERE id = $1 FOR UPDATE", job_id
                )
                if record is None:
                    return None
                state = record["state"]
                if state == JobState.EXECUTING.value:
                    await conn.execute(
                        "UPDATE sagaflow_jobs SET cancel_requested = TRUE WHERE id = $1",
                        job_id,
                    )
                elif state in (JobState.AVAILABLE.value, JobState.SCHEDULED.value):
                    await conn.execute(
                        """
                        UPDATE sagaflow_jobs SET state = 'cancelled', cancelled_at = $2
                        WHERE id = $1
                        """,
                        job_id,
                        now,
                    )
                record = await conn.fetchrow(_SELECT + " WHERE id = $1", job_id)
        finally:
            await conn.close()
        return _record_to_job(record)

    async def list_jobs(
        self, queue: str | None = None, state: JobState | None = None
    ) -> list[Job]:
        conn = await self._connect()
        try:
            records = await conn.fetch(
                _SELECT
                + """
                WHERE ($1::text IS NULL OR queue = $1)
                  AND ($2::text IS NULL OR state = $2)
                ORDER BY inserted_at, id
                """,
                queue,
                JobState(state).value if state is not None else None,
            )
        finally:
            await conn.close()
        return [_record_to_job(r) for r in records]

    async def delete_terminal(self, before: datetime) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                DELETE FROM sagaflow_jobs
                WHERE state IN ('completed', 'discarded', 'cancelled')
                  AND COALESCE(completed_at, discarded_at, cancelled_at) < $1
                """,
                before,
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(status.split()[-1])
