"""Event validation and dispatch.

An event is handled at most once: every dispatch outcome marks the event id
processed, except outcomes that upstream redelivery should retry
(``circuit_open``, ``peer_offline`` and ``store_unavailable``).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

from hotspot_relay.actions.handler import ActionHandler, ActionKind, ActionRequest
from hotspot_relay.circuit_breaker import CircuitBreaker
from hotspot_relay.domain.models import Event, EventType, Job, JobType, PeerStatus
from hotspot_relay.domain.routers import RouterDirectory
from hotspot_relay.drivers.wireguard import OverlayDriver
from hotspot_relay.errors import DriverError, StoreUnavailableError, ValidationFailure
from hotspot_relay.jobs.store import JobStore
from hotspot_relay.metrics import RelayMetrics
from hotspot_relay.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)

_MAC_RE = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){5}$")

RETRYABLE_REASONS = frozenset(
    {"circuit_open", "peer_offline", "store_unavailable", "driver_error", "action_failed"}
)
# Action outcomes that no retry can fix.
TERMINAL_REASONS = frozenset({"validation", "action_not_allowed"})


@dataclass(frozen=True)
class EventOutcome:
    ok: bool
    reason: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": self.ok}
        if self.reason:
            body["reason"] = self.reason
        if self.error:
            body["error"] = self.error
        return body


def normalize_mac(value: str) -> str:
    return value.strip().upper()


def is_valid_mac(value: Any) -> bool:
    return isinstance(value, str) and bool(_MAC_RE.match(normalize_mac(value)))


def _require_string(payload: Mapping[str, Any], name: str) -> str:
    value = payload.get(name)
    if value is None or value == "":
        raise ValidationFailure(f"{name} required")
    if not isinstance(value, str):
        raise ValidationFailure(f"{name} must be string")
    return value


def validate_event(event: Event, routers: RouterDirectory) -> dict[str, Any]:
    """Return the payload with its MAC normalised.

    Raises ``ValidationFailure`` when ``event`` cannot be dispatched.
    """
    if not event.event_id:
        raise ValidationFailure("missing eventId")
    if not event.type:
        raise ValidationFailure("missing type")
    payload = event.payload
    router_id = payload.get("routerId")
    if router_id:
        routers.get(str(router_id))

    event_type = event.event_type
    if event_type in (EventType.TRIAL_REQUESTED, EventType.RELEASE_REQUESTED):
        for name in ("pedidoId", "routerId", "ip", "mac"):
            _require_string(payload, name)
        if not is_valid_mac(payload["mac"]):
            raise ValidationFailure(f"invalid mac for {event_type.value}")
        minutes = payload.get("trialMinutes")
        if minutes is not None and (
            isinstance(minutes, bool) or not isinstance(minutes, (int, float)) or minutes <= 0
        ):
            raise ValidationFailure("trialMinutes must be a positive number")
    elif event_type is EventType.REVOKE_REQUESTED:
        _require_string(payload, "routerId")
        if not payload.get("ip") and not payload.get("mac"):
            raise ValidationFailure("ip or mac required for revoke")
        if payload.get("ip"):
            _require_string(payload, "ip")
        if payload.get("mac") and not is_valid_mac(payload.get("mac")):
            raise ValidationFailure("invalid mac for revoke")

    normalized = dict(payload)
    if isinstance(payload.get("mac"), str) and payload["mac"]:
        normalized["mac"] = normalize_mac(payload["mac"])
    return normalized


class StateMachine:
    def __init__(
        self,
        store: JobStore,
        handler: ActionHandler,
        routers: RouterDirectory,
        breaker: CircuitBreaker,
        metrics: RelayMetrics,
        *,
        overlay: OverlayDriver | None = None,
        trial_minutes: int = 5,
        retry_delay_ms: int = 30_000,
        offline_max_age_seconds: int = 0,
        handshake_online_seconds: int = 120,
        clock: Clock = now_ms,
    ) -> None:
        self._store = store
        self._handler = handler
        self._routers = routers
        self._breaker = breaker
        self._metrics = metrics
        self._overlay = overlay
        self._trial_minutes = trial_minutes
        self._retry_delay_ms = retry_delay_ms
        self._offline_max_age = offline_max_age_seconds
        self._online_window = handshake_online_seconds
        self._clock = clock

    async def process_event(self, event: Event, *, is_retry: bool = False) -> EventOutcome:
        """Validate ``event``, run its action and schedule follow-up jobs.

        ``is_retry`` marks a replay from a ``RETRY_EVENT`` job: the dedup
        check is skipped and no further retry job is scheduled.
        """
        outcome = await self._process(event, is_retry=is_retry)
        self._metrics.observe_event(event.type, "ok" if outcome.ok else outcome.reason or "failed")
        return outcome

    async def _process(self, event: Event, *, is_retry: bool) -> EventOutcome:
        event_id = event.event_id
        if event_id and not is_retry and await self._store.is_event_processed(event_id):
            logger.info("event already processed event=%s", event_id)
            return EventOutcome(ok=True, reason="duplicate")

        try:
            payload = validate_event(event, self._routers)
        except ValidationFailure as exc:
            logger.warning("event rejected event=%s type=%s: %s", event_id, event.type, exc.message)
            if event_id:
                await self._mark_processed(event_id)
            return EventOutcome(ok=False, reason="validation", error=exc.message)

        event_type = event.event_type
        if event_type is None:
            logger.warning("unknown event type event=%s type=%s", event_id, event.type)
            await self._mark_processed(event_id)
            return EventOutcome(ok=False, reason="unknown_type")

        router_id = str(payload["routerId"])
        if not self._breaker.allow_request(router_id):
            logger.warning("circuit open, event deferred event=%s router=%s", event_id, router_id)
            return EventOutcome(ok=False, reason="circuit_open")

        if event_type is not EventType.REVOKE_REQUESTED and await self._peer_offline(
            event, router_id
        ):
            return EventOutcome(ok=False, reason="peer_offline")

        if event_type is EventType.TRIAL_REQUESTED:
            try:
                await self._schedule_trial_revoke(event, payload)
            except StoreUnavailableError as exc:
                logger.error("trial revoke job not persisted event=%s: %s", event_id, exc.message)
                return EventOutcome(ok=False, reason="store_unavailable", error=exc.message)

        if event_type is EventType.REVOKE_REQUESTED:
            action = ActionKind.REVOKE_SESSION
            action_payload = {
                key: payload[key] for key in ("routerId", "ip", "mac") if payload.get(key)
            }
        else:
            action = ActionKind.AUTHORIZE_BY_SESSION
            action_payload = {key: payload[key] for key in ("routerId", "pedidoId", "ip", "mac")}

        result = await self._handler.execute_action(
            ActionRequest(
                action=action.value,
                payload=action_payload,
                source="event",
                trace_id=event_id,
            )
        )
        if result.ok:
            await self._mark_processed(event_id)
            logger.info("event handled event=%s type=%s", event_id, event_type.value)
            return EventOutcome(ok=True)

        reason = result.code or "action_failed"
        if reason in TERMINAL_REASONS:
            logger.warning("event rejected by action event=%s: %s", event_id, result.error)
            if event_type is EventType.TRIAL_REQUESTED:
                await self._drop_job(f"trial-{event_id}")
            await self._mark_processed(event_id)
            return EventOutcome(ok=False, reason=reason, error=result.error)
        if is_retry:
            return EventOutcome(ok=False, reason=reason, error=result.error)
        try:
            await self._schedule_retry(event)
        except StoreUnavailableError as exc:
            logger.error("retry job not persisted event=%s: %s", event_id, exc.message)
            return EventOutcome(ok=False, reason="store_unavailable", error=result.error)
        await self._mark_processed(event_id)
        return EventOutcome(ok=False, reason=reason, error=result.error)

    async def _peer_offline(self, event: Event, router_id: str) -> bool:
        if self._offline_max_age <= 0 or self._overlay is None:
            return False
        router = self._routers.find(router_id)
        peer_key = event.payload.get("peerPublicKey")
        if not peer_key and router is not None:
            peer_key = router.tunnel_peer_key
        if not peer_key:
            return False
        try:
            peers = await self._overlay.list_peers()
        except DriverError as exc:
            logger.debug("offline pre-check skipped router=%s: %s", router_id, exc.message)
            return False
        now_s = self._clock() // 1000
        for peer in peers:
            if peer.peer_key != peer_key:
                continue
            age = peer.handshake_age(now_s)
            status = peer.status(now_s, self._online_window)
            if status is PeerStatus.OFFLINE and age is not None and age > self._offline_max_age:
                logger.warning(
                    "router tunnel offline, event deferred event=%s router=%s age=%ds",
                    event.event_id,
                    router_id,
                    age,
                )
                return True
        return False

    async def _schedule_trial_revoke(self, event: Event, payload: Mapping[str, Any]) -> None:
        now = self._clock()
        minutes = payload.get("trialMinutes") or self._trial_minutes
        job = Job(
            id=f"trial-{event.event_id}",
            type=JobType.REVOKE_TRIAL.value,
            run_at=now + int(minutes * 60_000),
            payload={
                "routerId": payload["routerId"],
                "ip": payload["ip"],
                "mac": payload["mac"],
                "pedidoId": payload["pedidoId"],
            },
            origin_event_id=event.event_id,
            created_at=now,
        )
        if await self._store.add_job(job):
            logger.info("trial revoke scheduled event=%s run_at=%d", event.event_id, job.run_at)

    async def _schedule_retry(self, event: Event) -> None:
        now = self._clock()
        job = Job(
            id=f"retry-{event.event_id}",
            type=JobType.RETRY_EVENT.value,
            run_at=now + self._retry_delay_ms,
            payload={"event": event.to_dict()},
            origin_event_id=event.event_id,
            created_at=now,
        )
        if await self._store.add_job(job):
            logger.info("event retry scheduled event=%s run_at=%d", event.event_id, job.run_at)

    async def _drop_job(self, job_id: str) -> None:
        try:
            await self._store.mark_processed(job_id)
        except StoreUnavailableError as exc:
            logger.error("could not drop job=%s: %s", job_id, exc.message)

    async def _mark_processed(self, event_id: str | None) -> None:
        if not event_id:
            return
        try:
            await self._store.mark_event_processed(event_id)
        except StoreUnavailableError as exc:
            logger.error("could not mark event processed event=%s: %s", event_id, exc.message)
