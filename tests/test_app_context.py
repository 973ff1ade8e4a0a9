from __future__ import annotations

from unittest.mock import patch

import pytest

from hotspot_relay.app import _build_loops, build_app_context, get_app_context
from hotspot_relay.config import ConsumerSettings, NetworkSettings, ReconcilerSettings
from hotspot_relay.drivers.router import DryRunRouterDriver, RouterOSDriver
from hotspot_relay.drivers.wireguard import DryRunOverlayDriver, WireGuardDriver
from hotspot_relay.engine.consumer import FileQueueFetcher, HttpEventFetcher
from hotspot_relay.jobs.sqlite_store import SqliteJobStore


@pytest.fixture
def clean_context():
    get_app_context.cache_clear()
    yield
    get_app_context.cache_clear()


def test_dry_run_context_wiring(app_context) -> None:
    assert isinstance(app_context.job_store, SqliteJobStore)
    assert isinstance(app_context.router_driver, DryRunRouterDriver)
    assert isinstance(app_context.overlay, DryRunOverlayDriver)
    assert isinstance(app_context.consumer._fetcher, FileQueueFetcher)
    assert app_context.consumer._acknowledger is None
    assert app_context.routers.get("r1").host == "10.8.0.2"


@pytest.mark.asyncio
async def test_live_context_wiring(settings, clock) -> None:
    live = settings.model_copy(
        update={
            "network": NetworkSettings(dry_run=False),
            "consumer": ConsumerSettings(
                events_url="https://backend.example/events",
                ack_url="https://backend.example/ack",
            ),
        }
    )

    ctx = build_app_context(live, clock=clock)
    try:
        assert isinstance(ctx.router_driver, RouterOSDriver)
        assert isinstance(ctx.overlay, WireGuardDriver)
        assert isinstance(ctx.consumer._fetcher, HttpEventFetcher)
        assert ctx.consumer._acknowledger is not None
    finally:
        await ctx.aclose()


def test_overlay_key_resolver_reads_registry(app_context) -> None:
    app_context.registry.register_device(
        device_id="dev-1",
        public_key="AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=",
        allowed_addresses=("10.8.0.10/32",),
        meta={},
    )

    assert app_context.overlay.key_resolver("dev-1") == (
        "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
    )
    assert app_context.overlay.key_resolver("missing") is None


def test_loops(app_context, settings, clock) -> None:
    assert [loop.name for loop in _build_loops(app_context)] == [
        "job-runner",
        "event-consumer",
        "reconciler",
    ]

    disabled = settings.model_copy(update={"reconciler": ReconcilerSettings(interval_ms=0)})
    ctx = build_app_context(disabled, clock=clock)
    try:
        assert [loop.name for loop in _build_loops(ctx)] == ["job-runner", "event-consumer"]
    finally:
        ctx.db.close()


@pytest.mark.asyncio
async def test_start_and_close_loops(app_context) -> None:
    app_context.start_loops()
    assert all(loop.running for loop in app_context.loops)

    await app_context.aclose()

    assert not any(loop.running for loop in app_context.loops)


@patch("hotspot_relay.app.load_settings")
def test_get_app_context_is_cached(mock_load_settings, settings, clean_context) -> None:
    mock_load_settings.return_value = settings

    first = get_app_context()
    try:
        assert get_app_context() is first
        mock_load_settings.assert_called_once()
    finally:
        first.db.close()
