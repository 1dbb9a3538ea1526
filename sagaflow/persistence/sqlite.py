"""SQLite implementation of the job repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ..constants import LEASE_EXPIRED_ERROR
from .models import Job, JobState
from .repository import JobRepository

COLUMNS = (
    "id",
    "queue",
    "state",
    "args",
    "attempt",
    "max_attempts",
    "priority",
    "unique_key",
    "scheduled_at",
    "inserted_at",
    "attempted_at",
    "completed_at",
    "discarded_at",
    "cancelled_at",
    "cancel_requested",
    "last_error",
    "errors",
)
_SELECT = f"SELECT {', '.join(COLUMNS)} FROM jobs"
_ACTIVE = ("available", "scheduled", "executing")


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        queue=row["queue"],
        state=JobState(row["state"]),
        args=json.loads(row["args"]),
        attempt=row["attempt"],
        max_attempts=row["max_attempts"],
        priority=row["priority"],
        unique_key=row["unique_key"],
        scheduled_at=_dt(row["scheduled_at"]),
        inserted_at=_dt(row["inserted_at"]),
        attempted_at=_dt(row["attempted_at"]),
        completed_at=_dt(row["completed_at"]),
        discarded_at=_dt(row["discarded_at"]),
        cancelled_at=_dt(row["cancelled_at"]),
        cancel_requested=bool(row["cancel_requested"]),
        last_error=row["last_error"],
        errors=json.loads(row["errors"]) if row["errors"] else [],
    )


class SQLiteJobRepository(JobRepository):
    """Persist jobs using SQLite.

    Claims run inside ``BEGIN IMMEDIATE`` so that two processes sharing the
    database file can never lease the same job.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=30.0
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                queue TEXT NOT NULL,
                state TEXT NOT NULL,
                args TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL,
                priority INTEGER NOT NULL DEFAULT 0,
                unique_key TEXT,
                scheduled_at TEXT NOT NULL,
                inserted_at TEXT NOT NULL,
                attempted_at TEXT,
                completed_at TEXT,
                discarded_at TEXT,
                cancelled_at TEXT,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                errors TEXT NOT NULL DEFAULT '[]'
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS jobs_fetch_idx ON jobs (queue, state, priority, scheduled_at)"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS jobs_unique_idx ON jobs (unique_key)")

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                result = fn(cur, *args)
            except Exception:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")
            return result

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert(
        self, cur: sqlite3.Cursor, job: Job, unique_since: datetime | None
    ) -> tuple[Job, bool]:
        if job.unique_key is not None:
            query = f"{_SELECT} WHERE unique_key = ? AND state IN (?, ?, ?)"
            params: list[Any] = [job.unique_key, *_ACTIVE]
            if unique_since is not None:
                query += " AND inserted_at >= ?"
                params.append(_ts(unique_since))
            cur.execute(query + " ORDER BY inserted_at LIMIT 1", params)
            row = cur.fetchone()
            if row is not None:
                return _row_to_job(row), False
        cur.execute(
            f"INSERT INTO jobs ({', '.join(COLUMNS)}) VALUES ({', '.join('?' * len(COLUMNS))})",
            (
                job.id,
                job.queue,
                job.state.value,
                json.dumps(job.args),
                job.attempt,
                job.max_attempts,
                job.priority,
                job.unique_key,
                _ts(job.scheduled_at),
                _ts(job.inserted_at),
                _ts(job.attempted_at),
                _ts(job.completed_at),
                _ts(job.discarded_at),
                _ts(job.cancelled_at),
                int(job.cancel_requested),
                job.last_error,
                json.dumps(job.errors),
            ),
        )
        return job, True

    def _claim(self, cur: sqlite3.Cursor, queue: str, now: datetime) -> Job | None:
        stamp = _ts(now)
        cur.execute(
            "UPDATE jobs SET state = 'available' WHERE queue = ? AND state = 'scheduled' AND scheduled_at <= ?",
            (queue, stamp),
        )
        cur.execute(
            """
            SELECT id FROM jobs
            WHERE queue = ? AND state = 'available' AND scheduled_at <= ?
            ORDER BY priority, scheduled_at, inserted_at, id
            LIMIT 1
            """,
            (queue, stamp),
        )
        row = cur.fetchone()
        if row is None:
            return None
        cur.execute(
            """
            UPDATE jobs
            SET state = 'executing', attempt = attempt + 1, attempted_at = ?, cancel_requested = 0
            WHERE id = ?
            """,
            (stamp, row["id"]),
        )
        cur.execute(f"{_SELECT} WHERE id = ?", (row["id"],))
        return _row_to_job(cur.fetchone())

    def _rescue(
        self, cur: sqlite3.Cursor, before: datetime, now: datetime, queue: str | None
    ) -> int:
        query = f"{_SELECT} WHERE state = 'executing' AND attempted_at < ?"
        params: list[Any] = [_ts(before)]
        if queue is not None:
            query += " AND queue = ?"
            params.append(queue)
        cur.execute(query, params)
        stale = [_row_to_job(row) for row in cur.fetchall()]
        stamp = _ts(now)
        for job in stale:
            job.errors.append(
                {"attempt": job.attempt, "at": now.isoformat(), "error": LEASE_EXPIRED_ERROR}
            )
            if job.attempts_left > 0:
                state, discarded_at = JobState.AVAILABLE.value, None
            else:
                state, discarded_at = JobState.DISCARDED.value, stamp
            cur.execute(
                """
                UPDATE jobs SET state = ?, discarded_at = ?, last_error = ?, errors = ?
                WHERE id = ?
                """,
                (state, discarded_at, LEASE_EXPIRED_ERROR, json.dumps(job.errors), job.id),
            )
        return len(stale)

    def _request_cancel(self, cur: sqlite3.Cursor, job_id: str, now: datetime) -> Job | None:
        cur.execute(
            "UPDATE jobs SET cancel_requested = 1 WHERE id = ? AND state = 'executing'",
            (job_id,),
        )
        cur.execute(
            """
            UPDATE jobs SET state = 'cancelled', cancelled_at = ?
            WHERE id = ? AND state IN ('available', 'scheduled')
            """,
            (_ts(now), job_id),
        )
        cur.execute(f"{_SELECT} WHERE id = ?", (job_id,))
        row = cur.fetchone()
        return _row_to_job(row) if row else None

    def _update(self, cur: sqlite3.Cursor, job: Job) -> None:
        cur.execute(
            """
            UPDATE jobs
            SET state = ?, attempt = ?, max_attempts = ?, priority = ?, scheduled_at = ?,
                attempted_at = ?, completed_at = ?, discarded_at = ?, cancelled_at = ?,
                last_error = ?, errors = ?
            WHERE id = ?
            """,
            (
                job.state.value,
                job.attempt,
                job.max_attempts,
                job.priority,
                _ts(job.scheduled_at),
                _ts(job.attempted_at),
                _ts(job.completed_at),
                _ts(job.discarded_at),
                _ts(job.cancelled_at),
                job.last_error,
                json.dumps(job.errors),
                job.id,
            ),
        )

    def _delete_terminal(self, cur: sqlite3.Cursor, before: datetime) -> int:
        cur.execute(
            """
            DELETE FROM jobs
            WHERE state IN ('completed', 'discarded', 'cancelled')
              AND COALESCE(completed_at, discarded_at, cancelled_at) < ?
            """,
            (_ts(before),),
        )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Repository API
    async def insert(
        self, job: Job, unique_since: datetime | None = None
    ) -> tuple[Job, bool]:
        return await asyncio.to_thread(self._transaction, self._insert, job, unique_since)

    async def claim(self, queue: str, now: datetime) -> Job | None:
        return await asyncio.to_thread(self._transaction, self._claim, queue, now)

    async def rescue(
        self, before: datetime, now: datetime, queue: str | None = None
    ) -> int:
        return await asyncio.to_thread(self._transaction, self._rescue, before, now, queue)

    async def get(self, job_id: str) -> Job | None:
        row = await asyncio.to_thread(self._fetchone, f"{_SELECT} WHERE id = ?", job_id)
        return _row_to_job(row) if row else None

    async def update(self, job: Job) -> None:
        await asyncio.to_thread(self._transaction, self._update, job)

    async def request_cancel(self, job_id: str, now: datetime) -> Job | None:
        return await asyncio.to_thread(self._transaction, self._request_cancel, job_id, now)

    async def list_jobs(
        self, queue: str | None = None, state: JobState | None = None
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if queue is not None:
            clauses.append("queue = ?")
            params.append(queue)
        if state is not None:
            clauses.append("state = ?")
            params.append(JobState(state).value)
        query = _SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        rows = await asyncio.to_thread(
            self._fetchall, query + " ORDER BY inserted_at, id", *params
        )
        return [_row_to_job(row) for row in rows]

    async def delete_terminal(self, before: datetime) -> int:
        return await asyncio.to_thread(self._transaction, self._delete_terminal, before)

    def close(self) -> None:
        self._conn.close()
