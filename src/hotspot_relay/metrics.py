"""Prometheus metrics for the relay.

Each ``RelayMetrics`` owns its own ``CollectorRegistry`` so independent
instances (and tests) never collide on metric names.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

if TYPE_CHECKING:
    from hotspot_relay.circuit_breaker import CircuitBreaker
    from hotspot_relay.jobs.store import JobStore

logger = logging.getLogger(__name__)

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


def _label(value: str | None) -> str:
    return value or "unknown"


class RelayMetrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.action_success = Counter(
            "relay_action_success",
            "Successful actions by action kind and router.",
            ["action", "router"],
            registry=self.registry,
        )
        self.action_fail = Counter(
            "relay_action_fail",
            "Failed actions by action kind and router.",
            ["action", "router"],
            registry=self.registry,
        )
        self.action_latency_ms = Counter(
            "relay_action_latency_ms",
            "Cumulative action latency in milliseconds.",
            ["action", "router", "outcome"],
            registry=self.registry,
        )
        self.events = Counter(
            "relay_events",
            "Events handled by the state machine by type and outcome.",
            ["type", "outcome"],
            registry=self.registry,
        )
        self.jobs = Counter(
            "relay_jobs_executed",
            "Job executions by type and outcome (success, retry, giveup, dropped).",
            ["type", "outcome"],
            registry=self.registry,
        )
        self.reconcile = Counter(
            "relay_reconcile",
            "Reconciler results per pass (added, updated, removed, extra, offline, errors, ...).",
            ["result"],
            registry=self.registry,
        )
        self.acks = Counter(
            "relay_backend_acks",
            "Acknowledgements sent upstream by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.signature_rejections = Counter(
            "relay_signature_rejections",
            "Inbound payloads dropped because the HMAC signature did not verify.",
            ["source"],
            registry=self.registry,
        )

        self.jobs_scheduled = Gauge(
            "relay_jobs_scheduled", "Jobs currently in the store.", registry=self.registry
        )
        self.jobs_due = Gauge(
            "relay_jobs_due", "Jobs whose run time has passed.", registry=self.registry
        )
        self.jobs_pending = Gauge(
            "relay_jobs_pending", "Jobs scheduled in the future.", registry=self.registry
        )
        self.oldest_job_age_seconds = Gauge(
            "relay_jobs_oldest_due_age_seconds",
            "Age of the oldest overdue job.",
            registry=self.registry,
        )
        self.processed_events = Gauge(
            "relay_processed_events", "Event ids in the dedup set.", registry=self.registry
        )
        self.circuit_open = Gauge(
            "relay_circuit_open",
            "1 while the router circuit is open.",
            ["router"],
            registry=self.registry,
        )
        self.circuit_failures = Gauge(
            "relay_circuit_failures",
            "Consecutive failures recorded for the router.",
            ["router"],
            registry=self.registry,
        )

    def observe_action(
        self, action: str, router_id: str | None, ok: bool, latency_ms: float
    ) -> None:
        router = _label(router_id)
        if ok:
            self.action_success.labels(action=action, router=router).inc()
        else:
            self.action_fail.labels(action=action, router=router).inc()
        self.action_latency_ms.labels(
            action=action, router=router, outcome="success" if ok else "fail"
        ).inc(max(latency_ms, 0.0))

    def observe_event(self, event_type: str | None, outcome: str) -> None:
        self.events.labels(type=_label(event_type), outcome=outcome).inc()

    def observe_job(self, job_type: str, outcome: str) -> None:
        self.jobs.labels(type=job_type, outcome=outcome).inc()

    def observe_reconcile(self, result: str, count: int = 1) -> None:
        if count > 0:
            self.reconcile.labels(result=result).inc(count)

    async def refresh(
        self,
        store: JobStore | None,
        now: int,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        """Update gauges from the store and breaker right before a scrape."""
        if store is not None:
            stats = await store.stats(now)
            self.jobs_scheduled.set(stats.total)
            self.jobs_due.set(stats.due)
            self.jobs_pending.set(stats.pending)
            self.oldest_job_age_seconds.set(stats.oldest_due_age_ms / 1000)
            self.processed_events.set(await store.count_processed_events())
        if breaker is not None:
            for router_id, state in breaker.snapshot().items():
                is_open = state.state.value == "OPEN"
                self.circuit_open.labels(router=router_id).set(1 if is_open else 0)
                self.circuit_failures.labels(router=router_id).set(state.failures)

    def render(self) -> bytes:
        return generate_latest(self.registry)
