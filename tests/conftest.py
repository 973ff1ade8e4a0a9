from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import SecretStr

from hotspot_relay.actions.handler import ActionHandler
from hotspot_relay.actions.operations import NetworkOperations
from hotspot_relay.app import AppContext, build_app_context
from hotspot_relay.audit.db import AuditStore
from hotspot_relay.audit.recorder import AuditRecorder
from hotspot_relay.circuit_breaker import CircuitBreaker
from hotspot_relay.config import (
    ConsumerSettings,
    NetworkSettings,
    SecuritySettings,
    ServerSettings,
    Settings,
    StoreSettings,
    _load_settings_cached,
)
from hotspot_relay.domain.routers import RouterConfig, RouterDirectory
from hotspot_relay.drivers.router import CommandBatchResult, CommandError, DryRunRouterDriver
from hotspot_relay.engine.state_machine import StateMachine
from hotspot_relay.jobs.runner import JobRunner
from hotspot_relay.jobs.sqlite_store import SqliteJobStore
from hotspot_relay.metrics import RelayMetrics
from hotspot_relay.storage.sqlite import SqliteDatabase

RELAY_TOKEN = "test-relay-token"
ROUTER_ID = "r1"

# 32 zero bytes and 32 0x01 bytes, base64 encoded.
PEER_KEY_A = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
PEER_KEY_B = "AQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQE="


def pytest_sessionstart(session: pytest.Session) -> None:
    # Keep a developer .env from leaking into the test run.
    os.environ.setdefault("RELAY_BACKGROUND_LOOPS", "false")


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def router() -> RouterConfig:
    return RouterConfig(id=ROUTER_ID, host="10.8.0.2")


@pytest.fixture
def routers(router: RouterConfig) -> RouterDirectory:
    return RouterDirectory([router])


@pytest.fixture
def db(tmp_path: Path):
    database = SqliteDatabase(str(tmp_path / "relay.sqlite"))
    yield database
    database.close()


@pytest.fixture
def settings(tmp_path: Path, router: RouterConfig) -> Settings:
    return Settings(
        server=ServerSettings(enable_background_loops=False),
        store=StoreSettings(
            backend="sqlite",
            data_dir=str(tmp_path),
            sqlite_path=str(tmp_path / "relay.sqlite"),
        ),
        consumer=ConsumerSettings(queue_file=str(tmp_path / "events_queue.json")),
        network=NetworkSettings(dry_run=True),
        security=SecuritySettings(relay_token=SecretStr(RELAY_TOKEN)),
        routers=[router],
    )


@pytest.fixture
def app_context(settings: Settings, clock: FakeClock):
    ctx: AppContext = build_app_context(settings, clock=clock)
    yield ctx
    ctx.db.close()


@pytest.fixture
def clean_settings():
    _load_settings_cached.cache_clear()
    yield
    _load_settings_cached.cache_clear()


class FlakyRouterDriver:
    """Dry-run driver that rejects the next ``failures`` batches."""

    def __init__(self, failures: int = 0) -> None:
        self.inner = DryRunRouterDriver()
        self.failures = failures
        self.calls = 0

    async def run_commands(self, router, commands):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            return CommandBatchResult(
                ok=False, errors=[CommandError(cmd=commands[0].describe(), message="no route")]
            )
        return await self.inner.run_commands(router, commands)


class Engine:
    """Event path wired over a SQLite job store and an in-memory router."""

    def __init__(self, db, routers, clock, driver=None, **state_machine_kwargs) -> None:
        self.clock = clock
        self.driver = driver or FlakyRouterDriver()
        self.store = SqliteJobStore(db, clock=clock)
        self.breaker = CircuitBreaker(failure_threshold=3, recovery_ms=60_000, clock=clock)
        self.metrics = RelayMetrics()
        self.audit_store = AuditStore(db)
        self.handler = ActionHandler(
            routers,
            NetworkOperations(routers, self.driver),
            self.breaker,
            self.metrics,
            AuditRecorder(self.audit_store),
        )
        self.state_machine = StateMachine(
            self.store,
            self.handler,
            routers,
            self.breaker,
            self.metrics,
            clock=clock,
            **state_machine_kwargs,
        )
        self.runner = JobRunner(
            self.store,
            self.handler,
            self.state_machine,
            self.metrics,
            max_attempts=3,
            backoff_base_ms=1_000,
            backoff_jitter_cap_ms=0,
            clock=clock,
        )

    def sample(self, name: str, labels: dict[str, str]) -> float:
        return self.metrics.registry.get_sample_value(name, labels) or 0.0


@pytest.fixture
def make_engine(db, routers, clock):
    def _make(driver=None, **kwargs) -> Engine:
        return Engine(db, routers, clock, driver, **kwargs)

    return _make


def trial_event(event_id: str = "e1", **payload) -> dict:
    body = {
        "routerId": ROUTER_ID,
        "pedidoId": "p1",
        "ip": "10.5.50.12",
        "mac": "aa:bb:cc:dd:ee:ff",
    }
    body.update(payload)
    return {"eventId": event_id, "type": "TRIAL_REQUESTED", "payload": body}
