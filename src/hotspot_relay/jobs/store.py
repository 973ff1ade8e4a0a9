"""Backend-agnostic job store contract.

Every backend shares the same semantics:

* ``add_job`` is a durable insert; an existing job with the same id is kept.
* ``get_due_jobs`` returns at most ``batch_size`` jobs with ``run_at <= now``
  ordered by ``run_at``.
* ``acquire_lock`` is an atomic set-if-absent with a TTL, safe across
  processes; ``release_lock`` only drops a lock held by this store instance.
* ``mark_processed`` deletes the job; jobs are never archived.
* The processed-event set backs event dedup and is pruned by an optional TTL.

Read paths log and return an empty/false result when the backend is
unavailable. Write paths raise ``StoreUnavailableError``.
"""

from __future__ import annotations

import abc
import uuid
from dataclasses import dataclass

from hotspot_relay.domain.models import Job
from hotspot_relay.utils.time import Clock, now_ms

DEFAULT_BATCH_SIZE = 50
DEFAULT_LOCK_TTL_MS = 30_000


@dataclass(frozen=True)
class JobStats:
    total: int = 0
    due: int = 0
    pending: int = 0
    oldest_due_age_ms: int = 0


def compute_stats(jobs: list[Job], now: int) -> JobStats:
    due = [job for job in jobs if job.run_at <= now]
    oldest = min((job.run_at for job in due), default=now)
    return JobStats(
        total=len(jobs),
        due=len(due),
        pending=len(jobs) - len(due),
        oldest_due_age_ms=max(0, now - oldest),
    )


class JobStore(abc.ABC):
    """Durable, lockable, schedulable job queue with an event dedup set."""

    backend = "abstract"

    def __init__(
        self,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        processed_ttl_seconds: int = 0,
        holder_id: str | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.batch_size = batch_size
        self.processed_ttl_seconds = processed_ttl_seconds
        self.holder_id = holder_id or uuid.uuid4().hex
        self._clock = clock

    @abc.abstractmethod
    async def add_job(self, job: Job) -> bool:
        """Insert ``job``; returns False when a job with the same id already exists."""

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> Job | None: ...

    @abc.abstractmethod
    async def get_due_jobs(self, now: int) -> list[Job]: ...

    @abc.abstractmethod
    async def list_jobs(self) -> list[Job]: ...

    @abc.abstractmethod
    async def acquire_lock(self, job_id: str, ttl_ms: int = DEFAULT_LOCK_TTL_MS) -> bool: ...

    @abc.abstractmethod
    async def release_lock(self, job_id: str) -> None: ...

    @abc.abstractmethod
    async def increment_attempts(self, job_id: str) -> int: ...

    @abc.abstractmethod
    async def reschedule_job(self, job_id: str, run_at: int) -> None: ...

    @abc.abstractmethod
    async def mark_processed(self, job_id: str) -> None: ...

    @abc.abstractmethod
    async def is_event_processed(self, event_id: str) -> bool: ...

    @abc.abstractmethod
    async def mark_event_processed(self, event_id: str) -> None: ...

    @abc.abstractmethod
    async def count_processed_events(self) -> int: ...

    async def stats(self, now: int) -> JobStats:
        return compute_stats(await self.list_jobs(), now)

    @abc.abstractmethod
    async def ping(self) -> bool:
        """Readiness check; never raises."""

    async def close(self) -> None:
        return None

    def _processed_cutoff(self) -> int | None:
        """Epoch ms before which processed ids are expired, or None when kept forever."""
        if self.processed_ttl_seconds <= 0:
            return None
        return self._clock() - self.processed_ttl_seconds * 1000
