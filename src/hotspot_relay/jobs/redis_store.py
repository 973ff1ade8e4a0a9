"""Shared Redis job store for multi-instance deployments."""

from __future__ import annotations

import json
import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from hotspot_relay.domain.models import Job
from hotspot_relay.errors import StoreUnavailableError
from hotspot_relay.jobs.store import DEFAULT_LOCK_TTL_MS, JobStore

logger = logging.getLogger(__name__)

# Delete the lock only while it still belongs to the caller.
_RELEASE_LOCK_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# A job exists once its hash carries a type; a bare hash left by an older
# partial write is replaced.
_ADD_JOB_LUA = """
if redis.call('HEXISTS', KEYS[1], 'type') == 1 then
    return 0
end
redis.call('DEL', KEYS[1])
for i = 3, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
redis.call('ZADD', KEYS[2], ARGV[1], ARGV[2])
return 1
"""

_INCREMENT_ATTEMPTS_LUA = """
if redis.call('HEXISTS', KEYS[1], 'type') == 0 then
    return 0
end
return redis.call('HINCRBY', KEYS[1], 'attempts', 1)
"""

_RESCHEDULE_LUA = """
if redis.call('HEXISTS', KEYS[1], 'type') == 0 then
    return 0
end
redis.call('HSET', KEYS[1], 'runAt', ARGV[1])
redis.call('ZADD', KEYS[2], 'XX', ARGV[1], ARGV[2])
return 1
"""


def _job_to_hash(job: Job, created_at: int) -> dict[str, str]:
    return {
        "id": job.id,
        "type": job.type,
        "originEventId": job.origin_event_id or "",
        "runAt": str(int(job.run_at)),
        "payload": json.dumps(job.payload, sort_keys=True),
        "attempts": str(int(job.attempts)),
        "createdAt": str(int(created_at)),
    }


def _hash_to_job(data: dict[str, str]) -> Job:
    return Job(
        id=data["id"],
        type=data["type"],
        run_at=int(data.get("runAt") or 0),
        payload=json.loads(data.get("payload") or "{}"),
        attempts=int(data.get("attempts") or 0),
        origin_event_id=data.get("originEventId") or None,
        created_at=int(data.get("createdAt") or 0),
    )


class RedisJobStore(JobStore):
    """Keys under ``<namespace>:``.

    * ``jobs``: sorted set of job ids scored by run time
    * ``job:<id>``: hash holding the job fields
    * ``lock:<id>``: holder id, set with ``NX PX``
    * ``processed_events``: sorted set of event ids scored by processing time
    """

    backend = "redis"

    def __init__(self, client: Redis, namespace: str = "relay", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._redis = client
        self._ns = namespace
        self._release_script = client.register_script(_RELEASE_LOCK_LUA)
        self._add_script = client.register_script(_ADD_JOB_LUA)
        self._increment_script = client.register_script(_INCREMENT_ATTEMPTS_LUA)
        self._reschedule_script = client.register_script(_RESCHEDULE_LUA)

    @classmethod
    def from_url(cls, url: str, *, timeout_seconds: float = 5.0, **kwargs: Any) -> RedisJobStore:
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client, **kwargs)

    @property
    def _jobs_key(self) -> str:
        return f"{self._ns}:jobs"

    @property
    def _processed_key(self) -> str:
        return f"{self._ns}:processed_events"

    def _job_key(self, job_id: str) -> str:
        return f"{self._ns}:job:{job_id}"

    def _lock_key(self, job_id: str) -> str:
        return f"{self._ns}:lock:{job_id}"

    async def _load(self, job_ids: list[str]) -> list[Job]:
        if not job_ids:
            return []
        async with self._redis.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hgetall(self._job_key(job_id))
            rows = await pipe.execute()
        jobs: list[Job] = []
        for job_id, data in zip(job_ids, rows):
            if not data or "type" not in data:
                logger.warning("job index references missing hash id=%s", job_id)
                continue
            try:
                jobs.append(_hash_to_job(data))
            except (KeyError, ValueError) as exc:
                logger.warning("skipping malformed job id=%s: %s", job_id, exc)
        return jobs

    async def add_job(self, job: Job) -> bool:
        created_at = job.created_at or self._clock()
        fields: list[str] = []
        for name, value in _job_to_hash(job, created_at).items():
            fields += [name, value]
        try:
            added = await self._add_script(
                keys=[self._job_key(job.id), self._jobs_key],
                args=[int(job.run_at), job.id, *fields],
            )
        except RedisError as exc:
            raise StoreUnavailableError(f"redis job store write failed: {exc}") from exc
        if not added:
            logger.info("job already scheduled id=%s", job.id)
            return False
        return True

    async def get_job(self, job_id: str) -> Job | None:
        try:
            jobs = await self._load([job_id])
        except RedisError as exc:
            logger.error("redis job store read failed: %s", exc)
            return None
        return jobs[0] if jobs else None

    async def get_due_jobs(self, now: int) -> list[Job]:
        try:
            job_ids = await self._redis.zrangebyscore(
                self._jobs_key, "-inf", int(now), start=0, num=self.batch_size
            )
            return await self._load(list(job_ids))
        except RedisError as exc:
            logger.error("redis job store read failed: %s", exc)
            return []

    async def list_jobs(self) -> list[Job]:
        try:
            job_ids = await self._redis.zrange(self._jobs_key, 0, -1)
            return await self._load(list(job_ids))
        except RedisError as exc:
            logger.error("redis job store read failed: %s", exc)
            return []

    async def acquire_lock(self, job_id: str, ttl_ms: int = DEFAULT_LOCK_TTL_MS) -> bool:
        try:
            acquired = await self._redis.set(
                self._lock_key(job_id), self.holder_id, nx=True, px=int(ttl_ms)
            )
        except RedisError as exc:
            logger.error("redis job store lock failed job=%s: %s", job_id, exc)
            return False
        return bool(acquired)

    async def release_lock(self, job_id: str) -> None:
        try:
            await self._release_script(keys=[self._lock_key(job_id)], args=[self.holder_id])
        except RedisError as exc:
            logger.warning("redis job store release failed job=%s: %s", job_id, exc)

    async def increment_attempts(self, job_id: str) -> int:
        try:
            return int(await self._increment_script(keys=[self._job_key(job_id)]))
        except RedisError as exc:
            raise StoreUnavailableError(f"redis job store write failed: {exc}") from exc

    async def reschedule_job(self, job_id: str, run_at: int) -> None:
        try:
            await self._reschedule_script(
                keys=[self._job_key(job_id), self._jobs_key], args=[int(run_at), job_id]
            )
        except RedisError as exc:
            raise StoreUnavailableError(f"redis job store write failed: {exc}") from exc

    async def mark_processed(self, job_id: str) -> None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._jobs_key, job_id)
                pipe.delete(self._job_key(job_id))
                await pipe.execute()
        except RedisError as exc:
            raise StoreUnavailableError(f"redis job store write failed: {exc}") from exc

    async def is_event_processed(self, event_id: str) -> bool:
        try:
            score = await self._redis.zscore(self._processed_key, event_id)
        except RedisError as exc:
            logger.error("redis job store read failed: %s", exc)
            return False
        if score is None:
            return False
        cutoff = self._processed_cutoff()
        return cutoff is None or score > cutoff

    async def mark_event_processed(self, event_id: str) -> None:
        cutoff = self._processed_cutoff()
        try:
            score = await self._redis.zscore(self._processed_key, event_id)
            if score is not None and (cutoff is None or score > cutoff):
                return
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zadd(self._processed_key, {event_id: self._clock()})
                if cutoff is not None:
                    pipe.zremrangebyscore(self._processed_key, "-inf", cutoff)
                await pipe.execute()
        except RedisError as exc:
            raise StoreUnavailableError(f"redis job store write failed: {exc}") from exc

    async def count_processed_events(self) -> int:
        cutoff = self._processed_cutoff()
        try:
            if cutoff is None:
                return int(await self._redis.zcard(self._processed_key))
            return int(await self._redis.zcount(self._processed_key, f"({cutoff}", "+inf"))
        except RedisError as exc:
            logger.error("redis job store read failed: %s", exc)
            return 0

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as exc:
            logger.warning("redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._redis.aclose()
