"""Tests for the peer reconciler."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from conftest import PEER_KEY_A, PEER_KEY_B

from hotspot_relay.domain.models import ActualPeerState
from hotspot_relay.drivers.wireguard import DryRunOverlayDriver
from hotspot_relay.engine.reconciler import Reconciler
from hotspot_relay.errors import DriverError
from hotspot_relay.metrics import RelayMetrics
from hotspot_relay.registry.bindings import PeerBindingStore
from hotspot_relay.registry.devices import DeviceRegistry


@pytest.fixture
def registry(db) -> DeviceRegistry:
    return DeviceRegistry(db)


@pytest.fixture
def bindings(db) -> PeerBindingStore:
    return PeerBindingStore(db)


@pytest.fixture
def overlay(registry) -> DryRunOverlayDriver:
    def resolve(device_id: str):
        device = registry.get_device(device_id)
        return device.public_key if device else None

    return DryRunOverlayDriver(resolve)


def _reconciler(registry, bindings, overlay, clock, **kwargs) -> Reconciler:
    return Reconciler(registry, bindings, overlay, RelayMetrics(), clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_adds_missing_peer_and_creates_binding(registry, bindings, overlay, clock) -> None:
    registry.register_device(
        device_id="dev-1",
        public_key=PEER_KEY_A,
        allowed_addresses=["10.8.0.10/32"],
        meta={"routerAddress": "10.8.0.10"},
    )

    report = await _reconciler(registry, bindings, overlay, clock).reconcile_once()

    assert (report.added, report.updated, report.bindings_created) == (1, 0, 1)
    assert PEER_KEY_A in overlay.peers
    binding = bindings.get_binding(PEER_KEY_A)
    assert binding is not None and binding.device_id == "dev-1"


@pytest.mark.asyncio
async def test_address_order_does_not_trigger_update(registry, bindings, overlay, clock) -> None:
    registry.register_device(
        device_id="dev-1", public_key=PEER_KEY_A, allowed_addresses=["10.8.0.11/32", "10.8.0.10/32"]
    )
    overlay.peers[PEER_KEY_A] = ActualPeerState(
        peer_key=PEER_KEY_A, allowed_addresses=["10.8.0.10/32", "10.8.0.11/32"]
    )

    report = await _reconciler(registry, bindings, overlay, clock).reconcile_once()

    assert (report.added, report.updated) == (0, 0)


@pytest.mark.asyncio
async def test_mismatched_addresses_are_updated(registry, bindings, overlay, clock) -> None:
    registry.register_device(
        device_id="dev-1", public_key=PEER_KEY_A, allowed_addresses=["10.8.0.10/32"]
    )
    overlay.peers[PEER_KEY_A] = ActualPeerState(
        peer_key=PEER_KEY_A, allowed_addresses=["10.8.0.99/32"]
    )

    report = await _reconciler(registry, bindings, overlay, clock).reconcile_once()

    assert report.updated == 1
    assert overlay.peers[PEER_KEY_A].allowed_addresses == ["10.8.0.10/32"]


@pytest.mark.asyncio
async def test_extra_peers_are_only_reported_by_default(registry, bindings, overlay, clock) -> None:
    overlay.peers[PEER_KEY_B] = ActualPeerState(peer_key=PEER_KEY_B, allowed_addresses=[])
    bindings.bind_peer(PEER_KEY_B, "old-device", None)

    report = await _reconciler(registry, bindings, overlay, clock).reconcile_once()

    assert (report.extra, report.removed) == (1, 0)
    assert PEER_KEY_B in overlay.peers


@pytest.mark.asyncio
async def test_removal_only_touches_known_peers(registry, bindings, overlay, clock) -> None:
    stranger = "AgICAgICAgICAgICAgICAgICAgICAgICAgICAgICAgI="
    registry.register_device(device_id="dev-2", public_key=PEER_KEY_B)
    registry.remove_device("dev-2")
    overlay.peers[PEER_KEY_B] = ActualPeerState(peer_key=PEER_KEY_B, allowed_addresses=[])
    overlay.peers[stranger] = ActualPeerState(peer_key=stranger, allowed_addresses=[])

    report = await _reconciler(
        registry, bindings, overlay, clock, remove_extra_peers=True
    ).reconcile_once()

    assert (report.removed, report.extra) == (1, 1)
    assert list(overlay.peers) == [stranger]


@pytest.mark.asyncio
async def test_offline_and_unbound_peers_are_counted(registry, bindings, overlay, clock) -> None:
    registry.register_device(
        device_id="dev-1", public_key=PEER_KEY_A, allowed_addresses=["10.8.0.10/32"]
    )
    overlay.peers[PEER_KEY_A] = ActualPeerState(
        peer_key=PEER_KEY_A,
        allowed_addresses=["10.8.0.10/32"],
        latest_handshake=clock.now // 1000 - 600,
    )
    metrics = RelayMetrics()
    reconciler = Reconciler(registry, bindings, overlay, metrics, clock=clock)

    report = await reconciler.reconcile_once()

    assert (report.offline, report.missing_binding) == (1, 1)
    assert metrics.registry.get_sample_value("relay_reconcile_total", {"result": "offline"}) == 1


@pytest.mark.asyncio
async def test_unreachable_overlay_aborts_pass(registry, bindings, overlay, clock) -> None:
    registry.register_device(
        device_id="dev-1", public_key=PEER_KEY_A, allowed_addresses=["10.8.0.10/32"]
    )
    overlay.list_peers = AsyncMock(side_effect=DriverError("wg show timed out"))
    overlay.add_or_update_peer = AsyncMock()

    report = await _reconciler(registry, bindings, overlay, clock).reconcile_once()

    assert report.ok is False
    assert report.errors == 1
    overlay.add_or_update_peer.assert_not_called()
