"""Embedded SQLite job store."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from typing import Any

from hotspot_relay.domain.models import Job
from hotspot_relay.errors import StoreUnavailableError
from hotspot_relay.jobs.store import DEFAULT_LOCK_TTL_MS, JobStore
from hotspot_relay.storage.sqlite import SqliteDatabase

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    origin_event_id TEXT,
    run_at INTEGER NOT NULL,
    payload TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS job_locks (
    job_id TEXT PRIMARY KEY,
    holder_id TEXT NOT NULL,
    expires_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS processed_events (
    event_id TEXT PRIMARY KEY,
    processed_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_run_at ON jobs(run_at);
CREATE INDEX IF NOT EXISTS idx_processed_events_processed_at ON processed_events(processed_at);
"""


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["job_id"],
        type=row["type"],
        run_at=int(row["run_at"]),
        payload=json.loads(row["payload"]),
        attempts=int(row["attempts"]),
        origin_event_id=row["origin_event_id"],
        created_at=int(row["created_at"]),
    )


class SqliteJobStore(JobStore):
    """Jobs, locks and processed ids in one WAL database.

    Lock acquisition is a single upsert that only overwrites an expired row,
    so concurrent processes sharing the file race safely on SQLite's write lock.
    """

    backend = "sqlite"

    def __init__(self, db: SqliteDatabase, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._db = db
        self._db.ensure_schema(_SCHEMA)

    async def _read(self, query: str, params: tuple = ()) -> list[sqlite3.Row] | None:
        try:
            return await asyncio.to_thread(self._db.fetch_all, query, params)
        except sqlite3.Error as exc:
            logger.error("sqlite job store read failed: %s", exc)
            return None

    async def _write(self, query: str, params: tuple = ()) -> int:
        try:
            return await asyncio.to_thread(self._db.execute, query, params)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"sqlite job store write failed: {exc}") from exc

    async def add_job(self, job: Job) -> bool:
        created_at = job.created_at or self._clock()
        inserted = await self._write(
            """
            INSERT INTO jobs (job_id, type, origin_event_id, run_at, payload, attempts, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_id) DO NOTHING
            """,
            (
                job.id,
                job.type,
                job.origin_event_id,
                int(job.run_at),
                json.dumps(job.payload, sort_keys=True),
                int(job.attempts),
                created_at,
            ),
        )
        if not inserted:
            logger.info("job already scheduled id=%s", job.id)
        return inserted == 1

    async def get_job(self, job_id: str) -> Job | None:
        rows = await self._read("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
        return _row_to_job(rows[0]) if rows else None

    async def get_due_jobs(self, now: int) -> list[Job]:
        rows = await self._read(
            "SELECT * FROM jobs WHERE run_at <= ? ORDER BY run_at, job_id LIMIT ?",
            (int(now), self.batch_size),
        )
        return [_row_to_job(row) for row in rows or []]

    async def list_jobs(self) -> list[Job]:
        rows = await self._read("SELECT * FROM jobs ORDER BY run_at, job_id")
        return [_row_to_job(row) for row in rows or []]

    async def acquire_lock(self, job_id: str, ttl_ms: int = DEFAULT_LOCK_TTL_MS) -> bool:
        now = self._clock()
        try:
            claimed = await asyncio.to_thread(
                self._db.execute,
                """
                INSERT INTO job_locks (job_id, holder_id, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE
                SET holder_id = excluded.holder_id, expires_at = excluded.expires_at
                WHERE job_locks.expires_at <= ?
                """,
                (job_id, self.holder_id, now + ttl_ms, now),
            )
        except sqlite3.Error as exc:
            logger.error("sqlite job store lock failed job=%s: %s", job_id, exc)
            return False
        return claimed == 1

    async def release_lock(self, job_id: str) -> None:
        try:
            await asyncio.to_thread(
                self._db.execute,
                "DELETE FROM job_locks WHERE job_id = ? AND holder_id = ?",
                (job_id, self.holder_id),
            )
        except sqlite3.Error as exc:
            logger.warning("sqlite job store release failed job=%s: %s", job_id, exc)

    async def increment_attempts(self, job_id: str) -> int:
        def _increment(conn: sqlite3.Connection) -> int:
            conn.execute("UPDATE jobs SET attempts = attempts + 1 WHERE job_id = ?", (job_id,))
            row = conn.execute("SELECT attempts FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
            return int(row["attempts"]) if row else 0

        try:
            return await asyncio.to_thread(self._db.transaction, _increment)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"sqlite job store write failed: {exc}") from exc

    async def reschedule_job(self, job_id: str, run_at: int) -> None:
        await self._write("UPDATE jobs SET run_at = ? WHERE job_id = ?", (int(run_at), job_id))

    async def mark_processed(self, job_id: str) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
            conn.execute(
                "DELETE FROM job_locks WHERE job_id = ? AND holder_id = ?",
                (job_id, self.holder_id),
            )

        try:
            await asyncio.to_thread(self._db.transaction, _delete)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"sqlite job store write failed: {exc}") from exc

    async def is_event_processed(self, event_id: str) -> bool:
        cutoff = self._processed_cutoff()
        rows = await self._read(
            "SELECT processed_at FROM processed_events WHERE event_id = ? AND processed_at > ?",
            (event_id, cutoff if cutoff is not None else -1),
        )
        return bool(rows)

    async def mark_event_processed(self, event_id: str) -> None:
        now = self._clock()
        cutoff = self._processed_cutoff()

        def _mark(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO processed_events (event_id, processed_at) VALUES (?, ?)
                ON CONFLICT(event_id) DO UPDATE SET processed_at = excluded.processed_at
                WHERE processed_events.processed_at <= ?
                """,
                (event_id, now, cutoff if cutoff is not None else -1),
            )
            if cutoff is not None:
                conn.execute("DELETE FROM processed_events WHERE processed_at <= ?", (cutoff,))

        try:
            await asyncio.to_thread(self._db.transaction, _mark)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"sqlite job store write failed: {exc}") from exc

    async def count_processed_events(self) -> int:
        cutoff = self._processed_cutoff()
        rows = await self._read(
            "SELECT COUNT(*) AS n FROM processed_events WHERE processed_at > ?",
            (cutoff if cutoff is not None else -1,),
        )
        return int(rows[0]["n"]) if rows else 0

    async def ping(self) -> bool:
        return await self._read("SELECT 1") is not None
