"""Application context assembly."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache

from hotspot_relay.actions.handler import ActionHandler
from hotspot_relay.actions.operations import NetworkOperations
from hotspot_relay.audit.db import AuditStore
from hotspot_relay.audit.recorder import AuditRecorder
from hotspot_relay.circuit_breaker import CircuitBreaker
from hotspot_relay.config import Settings, load_settings
from hotspot_relay.domain.routers import RouterDirectory
from hotspot_relay.drivers.router import DryRunRouterDriver, RouterDriver, RouterOSDriver
from hotspot_relay.drivers.wireguard import DryRunOverlayDriver, OverlayDriver, WireGuardDriver
from hotspot_relay.engine.consumer import (
    Acknowledger,
    EventConsumer,
    EventFetcher,
    FileQueueFetcher,
    HttpEventFetcher,
)
from hotspot_relay.engine.periodic import PeriodicTask
from hotspot_relay.engine.provisioning import DeviceManager
from hotspot_relay.engine.reconciler import Reconciler
from hotspot_relay.engine.state_machine import StateMachine
from hotspot_relay.jobs.factory import create_job_store
from hotspot_relay.jobs.runner import JobRunner
from hotspot_relay.jobs.store import JobStore
from hotspot_relay.metrics import RelayMetrics
from hotspot_relay.registry.bindings import PeerBindingStore
from hotspot_relay.registry.devices import DeviceRegistry
from hotspot_relay.storage.sqlite import SqliteDatabase
from hotspot_relay.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Application-wide dependency container.

    Every collaborator is built once here and injected; nothing below holds
    module-level state, so tests can build as many contexts as they need.
    """

    settings: Settings
    db: SqliteDatabase
    job_store: JobStore
    registry: DeviceRegistry
    bindings: PeerBindingStore
    routers: RouterDirectory
    breaker: CircuitBreaker
    metrics: RelayMetrics
    audit: AuditRecorder
    router_driver: RouterDriver
    overlay: OverlayDriver
    handler: ActionHandler
    state_machine: StateMachine
    runner: JobRunner
    consumer: EventConsumer
    reconciler: Reconciler
    devices: DeviceManager
    clock: Clock = now_ms
    loops: list[PeriodicTask] = field(default_factory=list)

    def start_loops(self) -> None:
        if not self.loops:
            self.loops = _build_loops(self)
        for loop in self.loops:
            loop.start()

    async def aclose(self) -> None:
        for loop in self.loops:
            await loop.stop()
        await self.consumer.aclose()
        await self.job_store.close()
        self.db.close()


def _build_loops(ctx: AppContext) -> list[PeriodicTask]:
    settings = ctx.settings
    loops = [
        PeriodicTask("job-runner", ctx.runner.run_once, settings.jobs.tick_ms),
        PeriodicTask(
            "event-consumer", ctx.consumer.poll_once, settings.consumer.poll_ms or 3_000
        ),
    ]
    if settings.reconciler.interval_ms > 0:
        loops.append(
            PeriodicTask(
                "reconciler", ctx.reconciler.reconcile_once, settings.reconciler.interval_ms
            )
        )
    else:
        logger.info("reconciler disabled")
    return loops


def _secret(value) -> str | None:
    return value.get_secret_value() if value is not None else None


def build_app_context(
    settings: Settings,
    *,
    router_driver: RouterDriver | None = None,
    overlay: OverlayDriver | None = None,
    fetcher: EventFetcher | None = None,
    acknowledger: Acknowledger | None = None,
    clock: Clock = now_ms,
) -> AppContext:
    """Wire every collaborator from ``settings``; drivers and I/O can be injected."""
    db = SqliteDatabase(settings.store.sqlite_path, wal=settings.store.sqlite_wal)
    job_store = create_job_store(settings, db=db, clock=clock)
    registry = DeviceRegistry(db)
    bindings = PeerBindingStore(db)
    routers = RouterDirectory(settings.routers)
    breaker = CircuitBreaker(
        failure_threshold=settings.circuit.failure_threshold,
        recovery_ms=settings.circuit.recovery_ms,
        clock=clock,
    )
    metrics = RelayMetrics()
    audit = AuditRecorder(
        AuditStore(db) if settings.audit.persist else None, enabled=settings.audit.enabled
    )

    def resolve_key(device_id: str) -> str | None:
        device = registry.get_device(device_id)
        return device.public_key if device else None

    dry_run = settings.network.dry_run
    if router_driver is None:
        router_driver = (
            DryRunRouterDriver()
            if dry_run
            else RouterOSDriver(timeout_seconds=settings.network.command_timeout_seconds)
        )
    if overlay is None:
        overlay = (
            DryRunOverlayDriver(resolve_key)
            if dry_run
            else WireGuardDriver(
                settings.overlay.interface,
                resolve_key,
                wg_binary=settings.overlay.wg_binary,
                timeout_seconds=settings.overlay.command_timeout_seconds,
                default_keepalive=settings.overlay.persistent_keepalive,
            )
        )
    if dry_run:
        logger.warning("dry-run mode: router and overlay commands are only logged")

    operations = NetworkOperations(
        routers, router_driver, address_list=settings.network.address_list
    )
    handler = ActionHandler(routers, operations, breaker, metrics, audit)
    state_machine = StateMachine(
        job_store,
        handler,
        routers,
        breaker,
        metrics,
        overlay=overlay,
        trial_minutes=settings.jobs.trial_minutes,
        retry_delay_ms=settings.jobs.retry_delay_ms,
        offline_max_age_seconds=settings.network.offline_max_age_seconds,
        handshake_online_seconds=settings.reconciler.handshake_online_seconds,
        clock=clock,
    )
    runner = JobRunner(
        job_store,
        handler,
        state_machine,
        metrics,
        max_attempts=settings.jobs.max_attempts,
        backoff_base_ms=settings.jobs.backoff_base_ms,
        backoff_jitter_cap_ms=settings.jobs.backoff_jitter_cap_ms,
        lock_ttl_ms=settings.store.lock_ttl_ms,
        clock=clock,
    )

    consumer_settings = settings.consumer
    hmac_secret = _secret(consumer_settings.hmac_secret)
    if fetcher is None:
        if consumer_settings.events_url:
            fetcher = HttpEventFetcher(
                consumer_settings.events_url,
                secret=hmac_secret,
                require_signature=consumer_settings.require_hmac,
                timeout_seconds=consumer_settings.request_timeout_seconds,
                metrics=metrics,
                clock=clock,
            )
        else:
            fetcher = FileQueueFetcher(consumer_settings.queue_file)
    if acknowledger is None and consumer_settings.ack_url:
        acknowledger = Acknowledger(
            consumer_settings.ack_url,
            secret=hmac_secret,
            retries=consumer_settings.ack_retries,
            retry_delay_ms=consumer_settings.ack_retry_delay_ms,
            timeout_seconds=consumer_settings.request_timeout_seconds,
            metrics=metrics,
            clock=clock,
        )
    consumer = EventConsumer(fetcher, state_machine, job_store, metrics, acknowledger)

    reconciler = Reconciler(
        registry,
        bindings,
        overlay,
        metrics,
        remove_extra_peers=settings.reconciler.remove_extra_peers,
        handshake_online_seconds=settings.reconciler.handshake_online_seconds,
        clock=clock,
    )
    devices = DeviceManager(
        registry,
        bindings,
        overlay,
        breaker=breaker,
        handshake_online_seconds=settings.reconciler.handshake_online_seconds,
        clock=clock,
    )
    return AppContext(
        settings=settings,
        db=db,
        job_store=job_store,
        registry=registry,
        bindings=bindings,
        routers=routers,
        breaker=breaker,
        metrics=metrics,
        audit=audit,
        router_driver=router_driver,
        overlay=overlay,
        handler=handler,
        state_machine=state_machine,
        runner=runner,
        consumer=consumer,
        reconciler=reconciler,
        devices=devices,
        clock=clock,
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Get or create the process-wide application context."""
    return build_app_context(load_settings())
