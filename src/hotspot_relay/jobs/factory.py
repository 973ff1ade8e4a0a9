"""Select the job store backend once at startup."""

from __future__ import annotations

import logging
from pathlib import Path

from hotspot_relay.config import Settings
from hotspot_relay.errors import ConfigurationError
from hotspot_relay.jobs.file_store import FileJobStore
from hotspot_relay.jobs.redis_store import RedisJobStore
from hotspot_relay.jobs.sqlite_store import SqliteJobStore
from hotspot_relay.jobs.store import JobStore
from hotspot_relay.storage.sqlite import SqliteDatabase
from hotspot_relay.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)


def create_job_store(
    settings: Settings,
    *,
    db: SqliteDatabase | None = None,
    clock: Clock = now_ms,
) -> JobStore:
    store_settings = settings.store
    common = {
        "batch_size": settings.jobs.batch_size,
        "processed_ttl_seconds": store_settings.processed_ttl_seconds,
        "clock": clock,
    }
    backend = store_settings.backend
    if backend == "file":
        store: JobStore = FileJobStore(str(Path(store_settings.data_dir) / "jobs"), **common)
    elif backend == "sqlite":
        if db is None:
            db = SqliteDatabase(store_settings.sqlite_path, wal=store_settings.sqlite_wal)
        store = SqliteJobStore(db, **common)
    elif backend == "redis":
        store = RedisJobStore.from_url(
            store_settings.redis_url,
            namespace=store_settings.namespace,
            timeout_seconds=store_settings.operation_timeout_seconds,
            **common,
        )
    else:
        raise ConfigurationError(f"unsupported job store backend: {backend}")
    logger.info("job store backend=%s holder=%s", store.backend, store.holder_id)
    return store
