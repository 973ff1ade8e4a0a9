"""Converges live overlay peers onto the device registry."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass

from hotspot_relay.domain.models import ActualPeerState, PeerStatus, normalize_addresses
from hotspot_relay.drivers.wireguard import OverlayDriver, PeerSpec
from hotspot_relay.errors import DriverError, RelayError, StoreUnavailableError
from hotspot_relay.metrics import RelayMetrics
from hotspot_relay.registry.bindings import PeerBindingStore
from hotspot_relay.registry.devices import DeviceRegistry
from hotspot_relay.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    ok: bool = True
    desired: int = 0
    actual: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0
    extra: int = 0
    missing_binding: int = 0
    bindings_created: int = 0
    offline: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class Reconciler:
    """One pass compares desired peers (registry) with actual peers (overlay).

    Missing or mismatched peers are (re)applied. Extra peers are only
    reported unless ``remove_extra_peers`` is set, and even then a peer is
    removed only when it maps to a device the registry knows.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        bindings: PeerBindingStore,
        overlay: OverlayDriver,
        metrics: RelayMetrics,
        *,
        remove_extra_peers: bool = False,
        handshake_online_seconds: int = 120,
        clock: Clock = now_ms,
    ) -> None:
        self._registry = registry
        self._bindings = bindings
        self._overlay = overlay
        self._metrics = metrics
        self._remove_extra = remove_extra_peers
        self._online_window = handshake_online_seconds
        self._clock = clock

    async def reconcile_once(self) -> ReconcileReport:
        report = ReconcileReport()
        desired = {device.public_key: device for device in self._registry.desired_devices()}
        report.desired = len(desired)

        try:
            bindings = self._bindings.bindings_by_key()
        except sqlite3.Error as exc:
            logger.error("reconcile could not read bindings: %s", exc)
            report.errors += 1
            bindings = {}

        try:
            peers = await self._overlay.list_peers()
        except DriverError as exc:
            logger.error("reconcile aborted, cannot list peers: %s", exc.message)
            report.ok = False
            report.errors += 1
            self._record(report)
            return report
        actual = {peer.peer_key: peer for peer in peers}
        report.actual = len(actual)

        self._inspect_actual(actual, bindings, report)

        for key, device in desired.items():
            if key not in bindings and device.router_address:
                try:
                    self._bindings.bind_peer(key, device.device_id, device.router_address)
                    report.bindings_created += 1
                except StoreUnavailableError as exc:
                    logger.error("binding create failed device=%s: %s", device.device_id, exc)
                    report.errors += 1

            peer = actual.get(key)
            wanted = normalize_addresses(device.allowed_addresses)
            if peer is not None and normalize_addresses(peer.allowed_addresses) == wanted:
                continue
            try:
                await self._overlay.add_or_update_peer(PeerSpec.from_device(device))
            except RelayError as exc:
                logger.error("peer sync failed device=%s: %s", device.device_id, exc.message)
                report.errors += 1
                continue
            if peer is None:
                report.added += 1
                logger.info("peer added device=%s", device.device_id)
            else:
                report.updated += 1
                logger.info("peer updated device=%s allowed=%s", device.device_id, ",".join(wanted))

        for key, peer in actual.items():
            if key in desired:
                continue
            await self._handle_extra(peer, bindings, report)

        self._record(report)
        logger.info(
            "reconcile done desired=%d actual=%d added=%d updated=%d removed=%d extra=%d errors=%d",
            report.desired,
            report.actual,
            report.added,
            report.updated,
            report.removed,
            report.extra,
            report.errors,
        )
        return report

    def _inspect_actual(
        self,
        actual: dict[str, ActualPeerState],
        bindings: dict,
        report: ReconcileReport,
    ) -> None:
        now_s = self._clock() // 1000
        for key, peer in actual.items():
            if peer.status(now_s, self._online_window) is PeerStatus.OFFLINE:
                report.offline += 1
                logger.warning(
                    "peer offline key=%s... endpoint=%s age=%ss",
                    key[:8],
                    peer.endpoint,
                    peer.handshake_age(now_s),
                )
            if key not in bindings:
                report.missing_binding += 1
                logger.warning("peer has no binding key=%s...", key[:8])

    async def _handle_extra(
        self, peer: ActualPeerState, bindings: dict, report: ReconcileReport
    ) -> None:
        key = peer.peer_key
        binding = bindings.get(key)
        known = binding is not None or self._registry.get_by_public_key(key) is not None
        if not self._remove_extra or not known:
            report.extra += 1
            logger.warning(
                "extra peer detected key=%s... endpoint=%s known_device=%s",
                key[:8],
                peer.endpoint,
                known,
            )
            return
        try:
            await self._overlay.remove_peer_by_key(key)
        except DriverError as exc:
            logger.error("extra peer removal failed key=%s...: %s", key[:8], exc.message)
            report.errors += 1
            return
        report.removed += 1
        logger.info("extra peer removed key=%s...", key[:8])

    def _record(self, report: ReconcileReport) -> None:
        for result in (
            "added",
            "updated",
            "removed",
            "extra",
            "missing_binding",
            "bindings_created",
            "offline",
            "errors",
        ):
            self._metrics.observe_reconcile(result, getattr(report, result))

