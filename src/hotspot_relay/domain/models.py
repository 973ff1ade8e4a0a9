"""Domain records shared by the event path, the job store and the reconciler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping


class EventType(str, Enum):
    TRIAL_REQUESTED = "TRIAL_REQUESTED"
    RELEASE_REQUESTED = "RELEASE_REQUESTED"
    REVOKE_REQUESTED = "REVOKE_REQUESTED"


class JobType(str, Enum):
    REVOKE_TRIAL = "REVOKE_TRIAL"
    RETRY_EVENT = "RETRY_EVENT"


class DeviceStatus(str, Enum):
    REGISTERED = "registered"
    PROVISIONED = "provisioned"
    DEPROVISIONED = "deprovisioned"


class PeerStatus(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    NEVER_CONNECTED = "NEVER_CONNECTED"


@dataclass(frozen=True)
class Event:
    """An upstream instruction. ``type`` keeps the raw string so unknown types survive parsing."""

    event_id: str | None
    type: str | None
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: int | None = None

    @property
    def event_type(self) -> EventType | None:
        try:
            return EventType(self.type)
        except ValueError:
            return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        payload = data.get("payload")
        timestamp = data.get("timestamp")
        event_id = data.get("eventId")
        event_type = data.get("type")
        return cls(
            event_id=str(event_id) if event_id not in (None, "") else None,
            type=str(event_type) if event_type not in (None, "") else None,
            payload=dict(payload) if isinstance(payload, Mapping) else {},
            timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "type": self.type,
            "payload": dict(self.payload),
            "timestamp": self.timestamp,
        }


@dataclass
class Job:
    id: str
    type: str
    run_at: int
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    origin_event_id: str | None = None
    created_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "originEventId": self.origin_event_id,
            "runAt": self.run_at,
            "payload": self.payload,
            "attempts": self.attempts,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Job:
        payload = data.get("payload")
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            run_at=int(data.get("runAt") or 0),
            payload=dict(payload) if isinstance(payload, Mapping) else {},
            attempts=int(data.get("attempts") or 0),
            origin_event_id=data.get("originEventId"),
            created_at=int(data.get("createdAt") or 0),
        )


@dataclass
class DeviceRecord:
    device_id: str
    public_key: str | None
    allowed_addresses: list[str]
    meta: dict[str, Any]
    status: str
    created_at: str
    updated_at: str

    @property
    def router_address(self) -> str | None:
        value = self.meta.get("routerAddress")
        return str(value) if value else None

    @property
    def is_desired(self) -> bool:
        return (
            self.status != DeviceStatus.DEPROVISIONED.value
            and bool(self.public_key)
            and bool(self.allowed_addresses)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "publicKey": self.public_key,
            "allowedAddresses": list(self.allowed_addresses),
            "meta": dict(self.meta),
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class PeerBinding:
    peer_key: str
    device_id: str
    router_address: str | None
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "peerKey": self.peer_key,
            "deviceId": self.device_id,
            "routerAddress": self.router_address,
            "createdAt": self.created_at,
        }


@dataclass
class ActualPeerState:
    """Live peer as reported by the overlay tool. Never persisted."""

    peer_key: str
    allowed_addresses: list[str]
    endpoint: str | None = None
    latest_handshake: int = 0
    rx_bytes: int = 0
    tx_bytes: int = 0

    def handshake_age(self, now_seconds: int) -> int | None:
        if self.latest_handshake <= 0:
            return None
        return max(0, now_seconds - self.latest_handshake)

    def status(self, now_seconds: int, online_window_seconds: int) -> PeerStatus:
        age = self.handshake_age(now_seconds)
        if age is None:
            return PeerStatus.NEVER_CONNECTED
        if age <= online_window_seconds:
            return PeerStatus.ONLINE
        return PeerStatus.OFFLINE

    def to_dict(self, now_seconds: int, online_window_seconds: int) -> dict[str, Any]:
        return {
            "publicKey": self.peer_key,
            "allowedAddresses": list(self.allowed_addresses),
            "endpoint": self.endpoint,
            "lastHandshakeEpoch": self.latest_handshake,
            "lastHandshakeAge": self.handshake_age(now_seconds),
            "rx": self.rx_bytes,
            "tx": self.tx_bytes,
            "status": self.status(now_seconds, online_window_seconds).value,
        }


def normalize_addresses(addresses: Iterable[str] | str | None) -> tuple[str, ...]:
    """Order-insensitive canonical form of an allowed-address set."""
    if addresses is None:
        return ()
    if isinstance(addresses, str):
        addresses = addresses.split(",")
    return tuple(sorted({item.strip() for item in addresses if item and item.strip()}))
