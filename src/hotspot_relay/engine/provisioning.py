"""Device lifecycle: register, attach to the overlay, detach, resync, inspect."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from hotspot_relay.circuit_breaker import CircuitBreaker
from hotspot_relay.domain.models import DeviceRecord, DeviceStatus, normalize_addresses
from hotspot_relay.drivers.wireguard import OverlayDriver, PeerSpec, validate_public_key
from hotspot_relay.errors import NotFoundError, ValidationFailure
from hotspot_relay.registry.bindings import PeerBindingStore
from hotspot_relay.registry.devices import DeviceRegistry
from hotspot_relay.utils.time import Clock, now_ms, utc_now_iso

logger = logging.getLogger(__name__)


class DeviceManager:
    def __init__(
        self,
        registry: DeviceRegistry,
        bindings: PeerBindingStore,
        overlay: OverlayDriver,
        *,
        breaker: CircuitBreaker | None = None,
        handshake_online_seconds: int = 120,
        clock: Clock = now_ms,
    ) -> None:
        self._registry = registry
        self._bindings = bindings
        self._overlay = overlay
        self._breaker = breaker
        self._online_window = handshake_online_seconds
        self._clock = clock

    def _require(self, device_id: str) -> DeviceRecord:
        device = self._registry.get_device(device_id)
        if device is None:
            raise NotFoundError(f"device not found: {device_id}", meta={"deviceId": device_id})
        return device

    async def provision_device(self, payload: Mapping[str, Any]) -> DeviceRecord:
        """Register the device, ensure its peer, bind it and mark it provisioned."""
        public_key = payload.get("publicKey")
        addresses = normalize_addresses(
            payload.get("allowedAddresses") or payload.get("allowedIps")
        )
        if not isinstance(public_key, str) or not validate_public_key(public_key):
            raise ValidationFailure("publicKey must be a base64 WireGuard key")
        if not addresses:
            raise ValidationFailure("allowedAddresses required")
        meta = dict(payload.get("meta") or {})
        for key in ("routerAddress", "routerId", "endpoint", "tunnelAddress"):
            if payload.get(key):
                meta[key] = payload[key]

        device = self._registry.register_device(
            device_id=payload.get("deviceId") or None,
            public_key=public_key,
            allowed_addresses=addresses,
            meta=meta,
        )
        if device.public_key != public_key:
            raise ValidationFailure(
                "device is registered with a different publicKey",
                meta={"deviceId": device.device_id},
            )
        await self._overlay.add_or_update_peer(PeerSpec.from_device(device))
        if device.router_address:
            self._bindings.bind_peer(public_key, device.device_id, device.router_address)
        updated = self._registry.update_status(
            device.device_id, DeviceStatus.PROVISIONED, {"provisionedAt": utc_now_iso()}
        )
        logger.info("device provisioned device=%s", device.device_id)
        return updated or device

    async def deprovision_device(self, device_id: str) -> DeviceRecord:
        device = self._require(device_id)
        removed = await self._overlay.remove_peer(device_id)
        if device.public_key:
            self._bindings.unbind_peer(device.public_key)
        self._registry.remove_device(device_id)
        logger.info("device deprovisioned device=%s peer_removed=%s", device_id, removed)
        return self._require(device_id)

    async def sync_device(self, device_id: str) -> DeviceRecord:
        device = self._require(device_id)
        if not device.is_desired:
            raise ValidationFailure(
                "device has no active peer configuration", meta={"deviceId": device_id}
            )
        await self._overlay.add_or_update_peer(PeerSpec.from_device(device))
        if device.router_address and device.public_key:
            self._bindings.bind_peer(device.public_key, device_id, device.router_address)
        updated = self._registry.update_status(
            device_id, DeviceStatus.PROVISIONED, {"syncedAt": utc_now_iso()}
        )
        logger.info("device synced device=%s", device_id)
        return updated or device

    async def health_check(self, device_id: str) -> dict[str, Any]:
        device = self._require(device_id)
        now_s = self._clock() // 1000
        peer_state = None
        if device.public_key:
            for peer in await self._overlay.list_peers():
                if peer.peer_key == device.public_key:
                    peer_state = peer.to_dict(now_s, self._online_window)
                    break
        binding = self._bindings.get_binding(device.public_key) if device.public_key else None
        router_id = device.meta.get("routerId")
        circuit = None
        if self._breaker is not None and router_id:
            circuit = self._breaker.state_of(str(router_id)).to_dict()
        return {
            "device": device.to_dict(),
            "hasPeer": peer_state is not None,
            "peer": peer_state,
            "binding": binding.to_dict() if binding else None,
            "circuit": circuit,
        }

