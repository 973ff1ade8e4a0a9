"""WireGuard overlay peer driver backed by the ``wg`` tool."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol

from hotspot_relay.domain.models import ActualPeerState, DeviceRecord, normalize_addresses
from hotspot_relay.errors import DriverError, ValidationFailure

logger = logging.getLogger(__name__)

KeyResolver = Callable[[str], "str | None"]

_NONE = "(none)"


@dataclass(frozen=True)
class PeerSpec:
    device_id: str
    public_key: str
    allowed_addresses: tuple[str, ...]
    endpoint: str | None = None
    keepalive: int | None = None

    @classmethod
    def from_device(cls, device: DeviceRecord) -> PeerSpec:
        if not device.public_key:
            raise ValidationFailure("device has no public key", meta={"deviceId": device.device_id})
        endpoint = device.meta.get("endpoint")
        return cls(
            device_id=device.device_id,
            public_key=device.public_key,
            allowed_addresses=normalize_addresses(device.allowed_addresses),
            endpoint=str(endpoint) if endpoint else None,
        )


class OverlayDriver(Protocol):
    async def add_or_update_peer(self, spec: PeerSpec) -> None: ...

    async def remove_peer(self, device_id: str) -> bool: ...

    async def remove_peer_by_key(self, public_key: str) -> bool: ...

    async def list_peers(self) -> list[ActualPeerState]: ...


def validate_public_key(key: str | None) -> bool:
    """A WireGuard public key is 32 bytes, base64 encoded."""
    if not key:
        return False
    try:
        return len(base64.b64decode(key, validate=True)) == 32
    except (binascii.Error, ValueError):
        return False


def _check_spec(spec: PeerSpec) -> None:
    if not validate_public_key(spec.public_key):
        raise ValidationFailure("invalid WireGuard public key", meta={"deviceId": spec.device_id})
    if not spec.allowed_addresses:
        raise ValidationFailure("allowed addresses are required", meta={"deviceId": spec.device_id})


def parse_dump(text: str) -> list[ActualPeerState]:
    """Parse ``wg show <iface> dump`` peer lines; the interface line is skipped."""
    peers: list[ActualPeerState] = []
    for line in text.splitlines():
        parts = line.strip().split("\t")
        if len(parts) < 8:
            continue
        public_key, _psk, endpoint, allowed, handshake, rx, tx = parts[:7]
        try:
            peers.append(
                ActualPeerState(
                    peer_key=public_key,
                    allowed_addresses=list(
                        normalize_addresses(None if allowed == _NONE else allowed)
                    ),
                    endpoint=None if endpoint == _NONE else endpoint,
                    latest_handshake=int(handshake or 0),
                    rx_bytes=int(rx or 0),
                    tx_bytes=int(tx or 0),
                )
            )
        except ValueError:
            logger.warning("skipping unparsable wg dump line for peer %s", public_key[:8])
    return peers


class WireGuardDriver:
    def __init__(
        self,
        interface: str,
        key_resolver: KeyResolver,
        *,
        wg_binary: str = "wg",
        timeout_seconds: float = 5.0,
        default_keepalive: int | None = 25,
    ) -> None:
        self._interface = interface
        self._resolve_key = key_resolver
        self._wg = wg_binary
        self._timeout = timeout_seconds
        self._keepalive = default_keepalive

    async def _run(self, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._wg,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DriverError(f"cannot run {self._wg}: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise DriverError(f"{self._wg} {args[0]} timed out after {self._timeout}s") from exc
        if proc.returncode != 0:
            message = stderr.decode("utf-8", "replace").strip() or f"exit code {proc.returncode}"
            raise DriverError(f"{self._wg} {args[0]} failed: {message}")
        return stdout.decode("utf-8", "replace")

    async def add_or_update_peer(self, spec: PeerSpec) -> None:
        _check_spec(spec)
        args = [
            "set",
            self._interface,
            "peer",
            spec.public_key,
            "allowed-ips",
            ",".join(spec.allowed_addresses),
        ]
        if spec.endpoint:
            args += ["endpoint", spec.endpoint]
        keepalive = spec.keepalive if spec.keepalive is not None else self._keepalive
        if keepalive:
            args += ["persistent-keepalive", str(keepalive)]
        await self._run(*args)
        logger.info("wireguard peer set device=%s", spec.device_id)

    async def remove_peer(self, device_id: str) -> bool:
        public_key = self._resolve_key(device_id)
        if not public_key:
            logger.warning("wireguard remove skipped, no key for device=%s", device_id)
            return False
        return await self.remove_peer_by_key(public_key)

    async def remove_peer_by_key(self, public_key: str) -> bool:
        await self._run("set", self._interface, "peer", public_key, "remove")
        logger.info("wireguard peer removed key=%s...", public_key[:8])
        return True

    async def list_peers(self) -> list[ActualPeerState]:
        return parse_dump(await self._run("show", self._interface, "dump"))


@dataclass
class DryRunOverlayDriver:
    """In-memory peer table with the same contract, for dry-run mode and tests."""

    key_resolver: KeyResolver
    peers: dict[str, ActualPeerState] = field(default_factory=dict)

    async def add_or_update_peer(self, spec: PeerSpec) -> None:
        _check_spec(spec)
        logger.info(
            "[dry-run] wg set peer device=%s allowed=%s",
            spec.device_id,
            ",".join(spec.allowed_addresses),
        )
        current = self.peers.get(spec.public_key)
        self.peers[spec.public_key] = ActualPeerState(
            peer_key=spec.public_key,
            allowed_addresses=list(normalize_addresses(spec.allowed_addresses)),
            endpoint=spec.endpoint or (current.endpoint if current else None),
            latest_handshake=current.latest_handshake if current else 0,
            rx_bytes=current.rx_bytes if current else 0,
            tx_bytes=current.tx_bytes if current else 0,
        )

    async def remove_peer(self, device_id: str) -> bool:
        public_key = self.key_resolver(device_id)
        if not public_key:
            return False
        return await self.remove_peer_by_key(public_key)

    async def remove_peer_by_key(self, public_key: str) -> bool:
        logger.info("[dry-run] wg remove peer key=%s...", public_key[:8])
        return self.peers.pop(public_key, None) is not None

    async def list_peers(self) -> list[ActualPeerState]:
        return list(self.peers.values())
