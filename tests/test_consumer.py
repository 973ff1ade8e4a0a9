"""Tests for event fetchers, acknowledgements and the consumer."""

from __future__ import annotations

import json

import httpx
import pytest
from conftest import trial_event

from hotspot_relay.engine.consumer import (
    Acknowledger,
    EventConsumer,
    FileQueueFetcher,
    HttpEventFetcher,
)
from hotspot_relay.domain.models import Event
from hotspot_relay.metrics import RelayMetrics
from hotspot_relay.utils.signing import sign_body, sign_request

SECRET = "backend-secret"
EVENTS_URL = "https://backend.test/relay/events"
ACK_URL = "https://backend.test/relay/ack"


def _events_client(body: bytes, headers: dict[str, str], seen: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=body, headers=headers)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _rejections(metrics: RelayMetrics, source: str) -> float:
    value = metrics.registry.get_sample_value(
        "relay_signature_rejections_total", {"source": source}
    )
    return value or 0.0


@pytest.mark.asyncio
async def test_http_fetcher_accepts_signed_body(clock) -> None:
    body = json.dumps([trial_event("e1")]).encode()
    seen: list[httpx.Request] = []
    client = _events_client(body, {"x-backend-hmac": sign_body(SECRET, body)}, seen)
    fetcher = HttpEventFetcher(EVENTS_URL, secret=SECRET, client=client, clock=clock)

    events = await fetcher.fetch()

    assert [event["eventId"] for event in events] == ["e1"]
    request = seen[0]
    assert request.headers["x-relay-ts"] == str(clock.now)
    assert request.headers["x-relay-hmac"] == sign_request(SECRET, str(clock.now))
    await client.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("signature", [None, "deadbeef"])
async def test_http_fetcher_fails_closed_on_bad_signature(signature, clock) -> None:
    body = json.dumps([trial_event("e1")]).encode()
    headers = {"x-backend-hmac": signature} if signature else {}
    metrics = RelayMetrics()
    client = _events_client(body, headers, [])
    fetcher = HttpEventFetcher(
        EVENTS_URL, secret=SECRET, client=client, metrics=metrics, clock=clock
    )

    assert await fetcher.fetch() == []
    assert _rejections(metrics, "poll") == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_http_fetcher_requires_secret_when_signature_required(clock) -> None:
    body = b"[]"
    client = _events_client(body, {"x-backend-hmac": "abc"}, [])
    fetcher = HttpEventFetcher(
        EVENTS_URL, secret=None, require_signature=True, client=client, clock=clock
    )

    assert await fetcher.fetch() == []
    await client.aclose()


@pytest.mark.asyncio
async def test_http_fetcher_ignores_non_list_and_errors(clock) -> None:
    client = _events_client(b'{"events": []}', {}, [])
    fetcher = HttpEventFetcher(EVENTS_URL, secret=None, client=client, clock=clock)
    assert await fetcher.fetch() == []
    await client.aclose()

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(broken))
    fetcher = HttpEventFetcher(EVENTS_URL, secret=None, client=client, clock=clock)
    assert await fetcher.fetch() == []
    await client.aclose()


@pytest.mark.asyncio
async def test_file_queue_is_drained(tmp_path) -> None:
    queue = tmp_path / "queue.json"
    queue.write_text(json.dumps([trial_event("e1"), trial_event("e2")]), encoding="utf-8")
    fetcher = FileQueueFetcher(queue)

    assert len(await fetcher.fetch()) == 2
    assert json.loads(queue.read_text(encoding="utf-8")) == []
    assert await fetcher.fetch() == []
    assert await FileQueueFetcher(tmp_path / "missing.json").fetch() == []


@pytest.mark.asyncio
async def test_ack_is_signed_over_body(clock) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    metrics = RelayMetrics()
    ack = Acknowledger(ACK_URL, secret=SECRET, metrics=metrics, client=client, clock=clock)

    assert await ack.send("e1", True, {"ok": True}) is True

    request = seen[0]
    assert json.loads(request.content) == {"eventId": "e1", "ok": True, "payload": {"ok": True}}
    assert request.headers["x-relay-hmac"] == sign_body(SECRET, request.content)
    assert metrics.registry.get_sample_value("relay_backend_acks_total", {"outcome": "sent"}) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_ack_retries_server_errors_then_gives_up(clock) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    metrics = RelayMetrics()
    ack = Acknowledger(
        ACK_URL, secret=None, retries=2, retry_delay_ms=0, metrics=metrics, client=client
    )

    assert await ack.send("e1", False, {}) is False
    assert len(calls) == 3
    assert metrics.registry.get_sample_value("relay_backend_acks_total", {"outcome": "error"}) == 3
    assert metrics.registry.get_sample_value("relay_backend_acks_total", {"outcome": "failed"}) == 1
    await client.aclose()


class ListFetcher:
    def __init__(self, batches: list[list]) -> None:
        self.batches = batches

    async def fetch(self) -> list:
        return self.batches.pop(0) if self.batches else []

    async def aclose(self) -> None:
        return None


@pytest.mark.asyncio
async def test_consumer_dispatches_acks_and_skips_duplicates(make_engine, clock) -> None:
    engine = make_engine()
    acked: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        acked.append(json.loads(request.content))
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    ack = Acknowledger(ACK_URL, secret=SECRET, client=client, clock=clock)
    fetcher = ListFetcher([[trial_event("e1"), {"type": "TRIAL_REQUESTED"}], [trial_event("e1")]])
    consumer = EventConsumer(fetcher, engine.state_machine, engine.store, engine.metrics, ack)

    assert await consumer.poll_once() == 2
    assert [body["eventId"] for body in acked] == ["e1"]
    assert acked[0]["ok"] is True

    assert await consumer.poll_once() == 0
    assert len(acked) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_handle_events_reports_per_event_results(make_engine) -> None:
    engine = make_engine()
    consumer = EventConsumer(ListFetcher([]), engine.state_machine, engine.store, engine.metrics)

    results = await consumer.handle_events(["junk", trial_event("e1", mac="bad")])

    assert results == [
        {"eventId": None, "ok": False, "reason": "validation"},
        {
            "eventId": "e1",
            "ok": False,
            "reason": "validation",
            "error": "invalid mac for TRIAL_REQUESTED",
        },
    ]


@pytest.mark.asyncio
async def test_event_without_id_is_rejected_before_dispatch(make_engine) -> None:
    engine = make_engine()
    consumer = EventConsumer(ListFetcher([]), engine.state_machine, engine.store, engine.metrics)

    result = await consumer._handle(Event(event_id=None, type="TRIAL_REQUESTED"))

    assert result == {"ok": False, "reason": "validation"}
    assert engine.driver.calls == 0
    assert await engine.store.list_jobs() == []
