"""JSON-file job store for single-host deployments."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from hotspot_relay.domain.models import Job
from hotspot_relay.errors import StoreUnavailableError
from hotspot_relay.jobs.store import DEFAULT_LOCK_TTL_MS, JobStore

logger = logging.getLogger(__name__)


def _atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, separators=(",", ":"), sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    with path.open("r", encoding="utf-8") as handle:
        text = handle.read()
    if not text.strip():
        return default
    return json.loads(text)


class FileJobStore(JobStore):
    """Jobs and processed ids live in JSON documents replaced atomically.

    Locks are individual files created with ``O_EXCL`` so they are atomic
    across processes sharing the directory. Mutations of the job document are
    serialised within the process only, so one host should run one writer.
    """

    backend = "file"

    def __init__(self, directory: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._dir = Path(directory)
        self._jobs_path = self._dir / "jobs.json"
        self._processed_path = self._dir / "processed_events.json"
        self._locks_dir = self._dir / "locks"
        self._mutex = asyncio.Lock()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._locks_dir.mkdir(parents=True, exist_ok=True)

    # -- sync helpers (run in worker threads) ---------------------------------

    def _load_jobs(self) -> dict[str, dict[str, Any]]:
        data = _read_json(self._jobs_path, {})
        if not isinstance(data, dict):
            raise ValueError(f"{self._jobs_path} does not hold a JSON object")
        return data

    def _load_processed(self) -> dict[str, int]:
        data = _read_json(self._processed_path, {})
        if not isinstance(data, dict):
            raise ValueError(f"{self._processed_path} does not hold a JSON object")
        return {str(key): int(value) for key, value in data.items()}

    def _lock_path(self, job_id: str) -> Path:
        digest = hashlib.sha256(job_id.encode("utf-8")).hexdigest()[:32]
        return self._locks_dir / f"{digest}.lock"

    def _try_acquire(self, job_id: str, ttl_ms: int) -> bool:
        path = self._lock_path(job_id)
        for _ in range(2):
            now = self._clock()
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if not self._lock_expired(path, now):
                    return False
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(
                    {"jobId": job_id, "holder": self.holder_id, "expiresAt": now + ttl_ms},
                    handle,
                )
            return True
        return False

    def _lock_expired(self, path: Path, now: int) -> bool:
        try:
            data = _read_json(path, {})
        except (OSError, ValueError):
            # half-written lock file: treat as expired once it is older than a second
            try:
                return now - int(path.stat().st_mtime * 1000) > 1000
            except FileNotFoundError:
                return True
        return int(data.get("expiresAt") or 0) <= now

    def _release(self, job_id: str) -> None:
        path = self._lock_path(job_id)
        try:
            data = _read_json(path, {})
        except FileNotFoundError:
            return
        if data.get("holder") != self.holder_id:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    # -- reads ----------------------------------------------------------------

    async def _read_jobs(self) -> list[Job] | None:
        try:
            raw = await asyncio.to_thread(self._load_jobs)
        except (OSError, ValueError) as exc:
            logger.error("file job store read failed path=%s: %s", self._jobs_path, exc)
            return None
        jobs: list[Job] = []
        for job_id, data in raw.items():
            try:
                jobs.append(Job.from_dict({**data, "id": job_id}))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("skipping malformed job id=%s: %s", job_id, exc)
        return jobs

    async def get_job(self, job_id: str) -> Job | None:
        jobs = await self._read_jobs() or []
        return next((job for job in jobs if job.id == job_id), None)

    async def list_jobs(self) -> list[Job]:
        jobs = await self._read_jobs() or []
        return sorted(jobs, key=lambda job: (job.run_at, job.id))

    async def get_due_jobs(self, now: int) -> list[Job]:
        jobs = await self.list_jobs()
        return [job for job in jobs if job.run_at <= now][: self.batch_size]

    async def is_event_processed(self, event_id: str) -> bool:
        try:
            processed = await asyncio.to_thread(self._load_processed)
        except (OSError, ValueError) as exc:
            logger.error("file job store read failed path=%s: %s", self._processed_path, exc)
            return False
        processed_at = processed.get(event_id)
        if processed_at is None:
            return False
        cutoff = self._processed_cutoff()
        return cutoff is None or processed_at > cutoff

    async def count_processed_events(self) -> int:
        try:
            processed = await asyncio.to_thread(self._load_processed)
        except (OSError, ValueError) as exc:
            logger.error("file job store read failed path=%s: %s", self._processed_path, exc)
            return 0
        cutoff = self._processed_cutoff()
        if cutoff is None:
            return len(processed)
        return sum(1 for value in processed.values() if value > cutoff)

    async def acquire_lock(self, job_id: str, ttl_ms: int = DEFAULT_LOCK_TTL_MS) -> bool:
        try:
            return await asyncio.to_thread(self._try_acquire, job_id, ttl_ms)
        except OSError as exc:
            logger.error("file job store lock failed job=%s: %s", job_id, exc)
            return False

    async def ping(self) -> bool:
        return os.access(self._dir, os.W_OK)

    # -- writes ---------------------------------------------------------------

    async def _mutate_jobs(self, mutate) -> Any:
        async with self._mutex:
            try:
                jobs = await asyncio.to_thread(self._load_jobs)
                result = mutate(jobs)
                await asyncio.to_thread(_atomic_write_json, self._jobs_path, jobs)
            except (OSError, ValueError) as exc:
                raise StoreUnavailableError(f"file job store write failed: {exc}") from exc
            return result

    async def add_job(self, job: Job) -> bool:
        def _add(jobs: dict[str, dict[str, Any]]) -> bool:
            if job.id in jobs:
                return False
            data = job.to_dict()
            if not data["createdAt"]:
                data["createdAt"] = self._clock()
            jobs[job.id] = data
            return True

        added = await self._mutate_jobs(_add)
        if not added:
            logger.info("job already scheduled id=%s", job.id)
        return added

    async def increment_attempts(self, job_id: str) -> int:
        def _inc(jobs: dict[str, dict[str, Any]]) -> int:
            data = jobs.get(job_id)
            if data is None:
                return 0
            data["attempts"] = int(data.get("attempts") or 0) + 1
            return data["attempts"]

        return await self._mutate_jobs(_inc)

    async def reschedule_job(self, job_id: str, run_at: int) -> None:
        def _reschedule(jobs: dict[str, dict[str, Any]]) -> None:
            if job_id in jobs:
                jobs[job_id]["runAt"] = int(run_at)

        await self._mutate_jobs(_reschedule)

    async def mark_processed(self, job_id: str) -> None:
        await self._mutate_jobs(lambda jobs: jobs.pop(job_id, None))

    async def release_lock(self, job_id: str) -> None:
        try:
            await asyncio.to_thread(self._release, job_id)
        except (OSError, ValueError) as exc:
            # the lock expires on its own
            logger.warning("file job store release failed job=%s: %s", job_id, exc)

    async def mark_event_processed(self, event_id: str) -> None:
        async with self._mutex:
            try:
                processed = await asyncio.to_thread(self._load_processed)
                cutoff = self._processed_cutoff()
                existing = processed.get(event_id)
                if existing is not None and (cutoff is None or existing > cutoff):
                    return
                processed[event_id] = self._clock()
                if cutoff is not None:
                    processed = {key: value for key, value in processed.items() if value > cutoff}
                await asyncio.to_thread(_atomic_write_json, self._processed_path, processed)
            except (OSError, ValueError) as exc:
                raise StoreUnavailableError(f"file job store write failed: {exc}") from exc
