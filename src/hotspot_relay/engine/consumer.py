"""Upstream event intake: fetchers, signed acknowledgements and the poll loop."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Protocol

import httpx

from hotspot_relay.domain.models import Event
from hotspot_relay.engine.state_machine import EventOutcome, StateMachine
from hotspot_relay.jobs.store import JobStore
from hotspot_relay.metrics import RelayMetrics
from hotspot_relay.utils.signing import sign_body, sign_request, verify_signature
from hotspot_relay.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)

BACKEND_SIGNATURE_HEADER = "x-backend-hmac"
RELAY_SIGNATURE_HEADER = "x-relay-hmac"
RELAY_TIMESTAMP_HEADER = "x-relay-ts"


class EventFetcher(Protocol):
    async def fetch(self) -> list[Any]: ...

    async def aclose(self) -> None: ...


class FileQueueFetcher:
    """Drains a local JSON array file; the file is reset to ``[]`` after each read."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _drain(self) -> list[Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning("event queue unreadable path=%s: %s", self.path, exc)
            return []
        try:
            events = json.loads(raw or "[]")
        except json.JSONDecodeError as exc:
            logger.warning("event queue is not valid JSON path=%s: %s", self.path, exc.msg)
            return []
        if not isinstance(events, list):
            logger.warning("event queue must hold a JSON array path=%s", self.path)
            return []
        if events:
            self.path.write_text("[]", encoding="utf-8")
        return events

    async def fetch(self) -> list[Any]:
        return await asyncio.to_thread(self._drain)

    async def aclose(self) -> None:
        return None


class HttpEventFetcher:
    """Polls the backend events URL and rejects unsigned or mis-signed bodies."""

    def __init__(
        self,
        url: str,
        *,
        secret: str | None,
        require_signature: bool = False,
        timeout_seconds: float = 5.0,
        metrics: RelayMetrics | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._url = url
        self._secret = secret
        self._require_signature = require_signature or bool(secret)
        self._metrics = metrics
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._clock = clock

    def _reject(self, reason: str) -> list[Any]:
        logger.error("backend events rejected: %s", reason)
        if self._metrics is not None:
            self._metrics.signature_rejections.labels(source="poll").inc()
        return []

    async def fetch(self) -> list[Any]:
        timestamp = str(self._clock())
        headers = {RELAY_TIMESTAMP_HEADER: timestamp}
        if self._secret:
            headers[RELAY_SIGNATURE_HEADER] = sign_request(self._secret, timestamp)
        try:
            response = await self._client.get(self._url, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("backend events fetch failed: %s", exc)
            return []
        if response.status_code >= 400:
            logger.error("backend events returned status=%d", response.status_code)
            return []

        body = response.content
        if self._require_signature:
            signature = response.headers.get(BACKEND_SIGNATURE_HEADER)
            if not signature:
                return self._reject(f"missing {BACKEND_SIGNATURE_HEADER} header")
            if not self._secret:
                return self._reject("signature required but BACKEND_HMAC_SECRET is not set")
            if not verify_signature(self._secret, body, signature):
                return self._reject("signature mismatch")

        try:
            events = json.loads(body or b"[]")
        except json.JSONDecodeError as exc:
            logger.error("backend events body is not valid JSON: %s", exc.msg)
            return []
        return events if isinstance(events, list) else []

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class Acknowledger:
    """Best-effort signed POST of ``{eventId, ok, payload}`` to the backend."""

    def __init__(
        self,
        url: str | None,
        *,
        secret: str | None,
        retries: int = 2,
        retry_delay_ms: int = 500,
        timeout_seconds: float = 5.0,
        metrics: RelayMetrics | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._url = url
        self._secret = secret
        self._retries = retries
        self._retry_delay = retry_delay_ms / 1000
        self._metrics = metrics
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def _count(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.acks.labels(outcome=outcome).inc()

    async def send(self, event_id: str, ok: bool, payload: dict[str, Any]) -> bool:
        if not self._url:
            return False
        body = json.dumps({"eventId": event_id, "ok": ok, "payload": payload}).encode("utf-8")
        headers = {
            "content-type": "application/json",
            RELAY_TIMESTAMP_HEADER: str(self._clock()),
        }
        if self._secret:
            headers[RELAY_SIGNATURE_HEADER] = sign_body(self._secret, body)

        for attempt in range(self._retries + 1):
            try:
                response = await self._client.post(self._url, content=body, headers=headers)
                if response.status_code < 500:
                    self._count("sent")
                    return True
                logger.warning(
                    "ack rejected event=%s attempt=%d status=%d",
                    event_id,
                    attempt,
                    response.status_code,
                )
            except httpx.HTTPError as exc:
                logger.warning("ack failed event=%s attempt=%d: %s", event_id, attempt, exc)
            self._count("error")
            if attempt < self._retries:
                await asyncio.sleep(self._retry_delay)
        self._count("failed")
        return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _has_event_shape(item: Any) -> bool:
    return (
        isinstance(item, dict)
        and isinstance(item.get("eventId"), str)
        and bool(item["eventId"])
        and isinstance(item.get("type"), str)
        and bool(item["type"])
    )


class EventConsumer:
    def __init__(
        self,
        fetcher: EventFetcher,
        state_machine: StateMachine,
        store: JobStore,
        metrics: RelayMetrics,
        acknowledger: Acknowledger | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._state_machine = state_machine
        self._store = store
        self._metrics = metrics
        self._acknowledger = acknowledger

    async def poll_once(self) -> int:
        """Fetch one batch and handle it; returns the number of events dispatched."""
        results = await self.handle_events(await self._fetcher.fetch())
        return sum(1 for result in results if result.get("reason") != "duplicate")

    async def handle_events(self, items: Iterable[Any]) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for item in items:
            if not _has_event_shape(item):
                logger.warning("dropping malformed event: %.200r", item)
                self._metrics.observe_event(None, "malformed")
                results.append({"eventId": None, "ok": False, "reason": "validation"})
                continue
            event = Event.from_dict(item)
            result = {"eventId": event.event_id, **(await self._handle(event))}
            results.append(result)
        return results

    async def _handle(self, event: Event) -> dict[str, Any]:
        if not event.event_id:
            return {"ok": False, "reason": "validation"}
        if await self._store.is_event_processed(event.event_id):
            logger.info("skipping processed event=%s", event.event_id)
            return EventOutcome(ok=True, reason="duplicate").to_dict()
        try:
            outcome = await self._state_machine.process_event(event)
        except Exception:
            logger.exception("event processing crashed event=%s", event.event_id)
            self._metrics.observe_event(event.type, "error")
            return {"ok": False, "reason": "internal_error"}
        if self._acknowledger is not None and self._acknowledger.enabled:
            await self._acknowledger.send(event.event_id, outcome.ok, outcome.to_dict())
        return outcome.to_dict()

    async def aclose(self) -> None:
        await self._fetcher.aclose()
        if self._acknowledger is not None:
            await self._acknowledger.aclose()
