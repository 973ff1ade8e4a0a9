"""Tests for device provisioning through the overlay."""

from __future__ import annotations

import pytest
from conftest import PEER_KEY_A, PEER_KEY_B

from hotspot_relay.circuit_breaker import CircuitBreaker
from hotspot_relay.drivers.wireguard import DryRunOverlayDriver
from hotspot_relay.engine.provisioning import DeviceManager
from hotspot_relay.errors import NotFoundError, ValidationFailure
from hotspot_relay.registry.bindings import PeerBindingStore
from hotspot_relay.registry.devices import DeviceRegistry


@pytest.fixture
def manager(db, clock) -> DeviceManager:
    registry = DeviceRegistry(db)

    def resolve(device_id: str):
        device = registry.get_device(device_id)
        return device.public_key if device else None

    return DeviceManager(
        registry,
        PeerBindingStore(db),
        DryRunOverlayDriver(resolve),
        breaker=CircuitBreaker(clock=clock),
        clock=clock,
    )


PAYLOAD = {
    "deviceId": "dev-1",
    "publicKey": PEER_KEY_A,
    "allowedIps": ["10.8.0.10/32"],
    "routerAddress": "10.8.0.10",
    "routerId": "r1",
}


@pytest.mark.asyncio
async def test_provision_registers_peers_and_binds(manager) -> None:
    device = await manager.provision_device(PAYLOAD)

    assert device.status == "provisioned"
    assert device.meta["routerAddress"] == "10.8.0.10"
    assert "provisionedAt" in device.meta
    report = await manager.health_check("dev-1")
    assert report["hasPeer"] is True
    assert report["binding"]["deviceId"] == "dev-1"
    assert report["circuit"] == {"failures": 0, "state": "CLOSED", "openedAt": None}
    assert report["peer"]["status"] == "NEVER_CONNECTED"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"publicKey": "short"}, {"allowedIps": []}, {"publicKey": None}],
)
async def test_provision_validates_input(manager, overrides) -> None:
    with pytest.raises(ValidationFailure):
        await manager.provision_device({**PAYLOAD, **overrides})


@pytest.mark.asyncio
async def test_provision_rejects_key_change(manager) -> None:
    await manager.provision_device(PAYLOAD)

    with pytest.raises(ValidationFailure, match="different publicKey"):
        await manager.provision_device({**PAYLOAD, "publicKey": PEER_KEY_B})


@pytest.mark.asyncio
async def test_deprovision_removes_peer_and_binding(manager) -> None:
    await manager.provision_device(PAYLOAD)

    device = await manager.deprovision_device("dev-1")

    assert device.status == "deprovisioned"
    report = await manager.health_check("dev-1")
    assert report["hasPeer"] is False
    assert report["binding"] is None


@pytest.mark.asyncio
async def test_sync_restores_missing_peer(manager) -> None:
    await manager.provision_device(PAYLOAD)
    await manager._overlay.remove_peer_by_key(PEER_KEY_A)

    device = await manager.sync_device("dev-1")

    assert device.status == "provisioned"
    assert "syncedAt" in device.meta
    assert (await manager.health_check("dev-1"))["hasPeer"] is True


@pytest.mark.asyncio
async def test_sync_refuses_deprovisioned_device(manager) -> None:
    await manager.provision_device(PAYLOAD)
    await manager.deprovision_device("dev-1")

    with pytest.raises(ValidationFailure):
        await manager.sync_device("dev-1")


@pytest.mark.asyncio
async def test_unknown_device_is_not_found(manager) -> None:
    with pytest.raises(NotFoundError):
        await manager.health_check("ghost")
    with pytest.raises(NotFoundError):
        await manager.deprovision_device("ghost")
    with pytest.raises(NotFoundError):
        await manager.sync_device("ghost")
