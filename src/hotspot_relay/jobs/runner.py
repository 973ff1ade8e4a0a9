"""Executes due jobs with per-job locks and exponential backoff."""

from __future__ import annotations

import logging
import random

from hotspot_relay.actions.handler import ActionHandler, ActionKind, ActionRequest
from hotspot_relay.domain.models import Event, Job, JobType
from hotspot_relay.engine.state_machine import (
    RETRYABLE_REASONS,
    TERMINAL_REASONS,
    StateMachine,
)
from hotspot_relay.errors import RelayError, StoreUnavailableError
from hotspot_relay.jobs.store import DEFAULT_LOCK_TTL_MS, JobStore
from hotspot_relay.metrics import RelayMetrics
from hotspot_relay.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)


class JobExecutionError(RelayError):
    code = "job_failed"


def backoff_delay_ms(
    attempts: int,
    base_ms: int,
    jitter_cap_ms: int,
    rng: random.Random | None = None,
) -> int:
    """``base * 2^(attempts-1)`` plus jitter below ``min(jitter_cap, backoff)``."""
    backoff = base_ms * 2 ** max(0, attempts - 1)
    jitter_span = min(jitter_cap_ms, backoff)
    jitter = (rng or random).randrange(jitter_span) if jitter_span > 0 else 0
    return backoff + jitter


class JobRunner:
    def __init__(
        self,
        store: JobStore,
        handler: ActionHandler,
        state_machine: StateMachine,
        metrics: RelayMetrics,
        *,
        max_attempts: int = 5,
        backoff_base_ms: int = 30_000,
        backoff_jitter_cap_ms: int = 5_000,
        lock_ttl_ms: int = DEFAULT_LOCK_TTL_MS,
        clock: Clock = now_ms,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._handler = handler
        self._state_machine = state_machine
        self._metrics = metrics
        self._max_attempts = max_attempts
        self._backoff_base_ms = backoff_base_ms
        self._jitter_cap_ms = backoff_jitter_cap_ms
        self._lock_ttl_ms = lock_ttl_ms
        self._clock = clock
        self._rng = rng

    async def run_once(self, now: int | None = None) -> int:
        """Run every due job this instance can lock; returns how many ran."""
        due = await self._store.get_due_jobs(self._clock() if now is None else now)
        executed = 0
        for job in due:
            try:
                locked = await self._store.acquire_lock(job.id, self._lock_ttl_ms)
            except StoreUnavailableError as exc:
                logger.error("lock acquire failed job=%s: %s", job.id, exc.message)
                continue
            if not locked:
                logger.debug("job locked elsewhere, skipping job=%s", job.id)
                continue
            try:
                await self._run_job(job)
                executed += 1
            finally:
                try:
                    await self._store.release_lock(job.id)
                except StoreUnavailableError as exc:
                    logger.warning("lock release failed job=%s: %s", job.id, exc.message)
        return executed

    async def _run_job(self, job: Job) -> None:
        logger.info("executing job=%s type=%s attempts=%d", job.id, job.type, job.attempts)
        try:
            completed = await self._execute(job)
        except RelayError as exc:
            logger.warning("job failed job=%s type=%s: %s", job.id, job.type, exc.message)
            await self._handle_failure(job)
            return
        except Exception:
            logger.exception("job crashed job=%s type=%s", job.id, job.type)
            await self._handle_failure(job)
            return
        try:
            await self._store.mark_processed(job.id)
        except StoreUnavailableError as exc:
            logger.error("job done but not removed job=%s: %s", job.id, exc.message)
        self._metrics.observe_job(job.type, "success" if completed else "dropped")

    async def _execute(self, job: Job) -> bool:
        """Run ``job``; False means it was dropped without running."""
        if job.type == JobType.REVOKE_TRIAL.value:
            payload = {
                key: job.payload[key]
                for key in ("routerId", "ip", "mac", "pedidoId")
                if job.payload.get(key)
            }
            result = await self._handler.execute_action(
                ActionRequest(
                    action=ActionKind.REVOKE_SESSION.value,
                    payload=payload,
                    source="job",
                    trace_id=job.id,
                )
            )
            if not result.ok and result.code in TERMINAL_REASONS:
                logger.warning("dropping job rejected by action job=%s: %s", job.id, result.error)
                return False
            if not result.ok:
                raise JobExecutionError(result.error or "revoke failed", code=result.code)
            return True

        if job.type == JobType.RETRY_EVENT.value:
            event = Event.from_dict(job.payload.get("event") or {})
            outcome = await self._state_machine.process_event(event, is_retry=True)
            if not outcome.ok and outcome.reason in RETRYABLE_REASONS:
                raise JobExecutionError(
                    outcome.error or outcome.reason or "replay failed", code=outcome.reason
                )
            return True

        logger.warning("dropping job with unknown type job=%s type=%s", job.id, job.type)
        return False

    async def _handle_failure(self, job: Job) -> None:
        try:
            attempts = await self._store.increment_attempts(job.id)
            if attempts >= self._max_attempts:
                logger.warning("job gave up job=%s after %d attempts", job.id, attempts)
                await self._store.mark_processed(job.id)
                self._metrics.observe_job(job.type, "giveup")
                return
            delay = backoff_delay_ms(
                attempts, self._backoff_base_ms, self._jitter_cap_ms, self._rng
            )
            await self._store.reschedule_job(job.id, self._clock() + delay)
        except StoreUnavailableError as exc:
            logger.error("could not record job failure job=%s: %s", job.id, exc.message)
            return
        logger.info("job rescheduled job=%s attempts=%d delay_ms=%d", job.id, attempts, delay)
        self._metrics.observe_job(job.type, "retry")
