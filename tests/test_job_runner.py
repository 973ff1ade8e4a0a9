"""Tests for the job runner."""

from __future__ import annotations

import random

import pytest
from conftest import ROUTER_ID, FlakyRouterDriver, trial_event

from hotspot_relay.domain.models import Event, Job
from hotspot_relay.drivers.commands import ADDRESS_LIST_PATH, IP_BINDING_PATH
from hotspot_relay.jobs.runner import backoff_delay_ms


def test_backoff_doubles_per_attempt() -> None:
    assert backoff_delay_ms(1, 1_000, 0) == 1_000
    assert backoff_delay_ms(2, 1_000, 0) == 2_000
    assert backoff_delay_ms(4, 1_000, 0) == 8_000


def test_backoff_jitter_is_capped() -> None:
    rng = random.Random(7)
    for attempts in range(1, 6):
        delay = backoff_delay_ms(attempts, 100, 50, rng)
        base = 100 * 2 ** (attempts - 1)
        assert base <= delay < base + 50


@pytest.mark.asyncio
async def test_trial_revoke_runs_when_due(make_engine, clock) -> None:
    engine = make_engine()
    await engine.state_machine.process_event(Event.from_dict(trial_event("e1")))

    assert await engine.runner.run_once() == 0

    clock.advance(5 * 60_000)
    assert await engine.runner.run_once() == 1

    assert await engine.store.get_job("trial-e1") is None
    assert engine.driver.inner.entries(ROUTER_ID, ADDRESS_LIST_PATH) == []
    labels = {"type": "REVOKE_TRIAL", "outcome": "success"}
    assert engine.sample("relay_jobs_executed_total", labels) == 1
    trail = engine.audit_store.list_by_trace("trial-e1")
    assert [record.phase for record in trail] == ["ATTEMPT", "SUCCESS"]
    assert trail[0].source == "job"


@pytest.mark.asyncio
async def test_trial_revoke_keeps_grants_of_other_sessions(make_engine, clock) -> None:
    engine = make_engine()
    await engine.state_machine.process_event(Event.from_dict(trial_event("e1")))
    paid = trial_event("e2", pedidoId="p2")
    paid["type"] = "RELEASE_REQUESTED"
    await engine.state_machine.process_event(Event.from_dict(paid))

    clock.advance(5 * 60_000)
    await engine.runner.run_once()

    entries = engine.driver.inner.entries(ROUTER_ID, ADDRESS_LIST_PATH)
    assert entries == [{"list": "paid_clients", "address": "10.5.50.12", "comment": "pedido:p2"}]


@pytest.mark.asyncio
async def test_failed_job_backs_off_then_gives_up(make_engine, clock) -> None:
    engine = make_engine(driver=FlakyRouterDriver(failures=10))
    await engine.store.add_job(
        Job(
            id="trial-x",
            type="REVOKE_TRIAL",
            run_at=clock.now,
            payload={"routerId": ROUTER_ID, "ip": "10.5.50.12", "pedidoId": "p1"},
        )
    )

    await engine.runner.run_once()
    job = await engine.store.get_job("trial-x")
    assert job is not None
    assert job.attempts == 1
    assert job.run_at == clock.now + 1_000

    clock.advance(1_000)
    await engine.runner.run_once()
    job = await engine.store.get_job("trial-x")
    assert job is not None and job.run_at == clock.now + 2_000

    clock.advance(2_000)
    await engine.runner.run_once()
    assert await engine.store.get_job("trial-x") is None
    labels = {"type": "REVOKE_TRIAL", "outcome": "retry"}
    assert engine.sample("relay_jobs_executed_total", labels) == 2
    labels["outcome"] = "giveup"
    assert engine.sample("relay_jobs_executed_total", labels) == 1


@pytest.mark.asyncio
async def test_retry_event_replays_and_succeeds(make_engine, clock) -> None:
    engine = make_engine(driver=FlakyRouterDriver(failures=1))
    data = trial_event("e3")
    data["type"] = "RELEASE_REQUESTED"
    await engine.state_machine.process_event(Event.from_dict(data))

    clock.advance(30_000)
    assert await engine.runner.run_once() == 1

    assert await engine.store.get_job("retry-e3") is None
    assert engine.driver.inner.entries(ROUTER_ID, ADDRESS_LIST_PATH) != []


@pytest.mark.asyncio
async def test_locked_job_is_skipped(make_engine, clock) -> None:
    engine = make_engine()
    await engine.store.add_job(Job(id="j1", type="REVOKE_TRIAL", run_at=clock.now))
    other_holder = engine.store.holder_id + "-other"
    await engine.store._write(
        "INSERT INTO job_locks (job_id, holder_id, expires_at) VALUES (?, ?, ?)",
        ("j1", other_holder, clock.now + 60_000),
    )

    assert await engine.runner.run_once() == 0
    assert await engine.store.get_job("j1") is not None


@pytest.mark.asyncio
async def test_unknown_job_type_is_dropped(make_engine, clock) -> None:
    engine = make_engine()
    await engine.store.add_job(Job(id="odd", type="SEND_EMAIL", run_at=clock.now))

    assert await engine.runner.run_once() == 1

    assert await engine.store.get_job("odd") is None
    labels = {"type": "SEND_EMAIL", "outcome": "dropped"}
    assert engine.sample("relay_jobs_executed_total", labels) == 1


@pytest.mark.asyncio
async def test_trial_revoke_is_idempotent(make_engine, clock) -> None:
    engine = make_engine()
    await engine.state_machine.process_event(Event.from_dict(trial_event("e1")))
    job = await engine.store.get_job("trial-e1")
    assert job is not None

    clock.advance(5 * 60_000)
    assert await engine.runner.run_once() == 1
    assert await engine.store.add_job(job) is True
    assert await engine.runner.run_once() == 1

    assert engine.driver.inner.entries(ROUTER_ID, ADDRESS_LIST_PATH) == []
    assert engine.driver.inner.entries(ROUTER_ID, IP_BINDING_PATH) == []
    labels = {"type": "REVOKE_TRIAL", "outcome": "success"}
    assert engine.sample("relay_jobs_executed_total", labels) == 2


@pytest.mark.asyncio
async def test_revoke_job_with_invalid_payload_is_dropped(make_engine, clock) -> None:
    engine = make_engine()
    await engine.store.add_job(
        Job(
            id="trial-bad",
            type="REVOKE_TRIAL",
            run_at=clock.now,
            payload={"routerId": ROUTER_ID, "mac": "not-a-mac", "pedidoId": "p1"},
        )
    )

    assert await engine.runner.run_once() == 1

    assert await engine.store.get_job("trial-bad") is None
    labels = {"type": "REVOKE_TRIAL", "outcome": "dropped"}
    assert engine.sample("relay_jobs_executed_total", labels) == 1
    labels["outcome"] = "retry"
    assert engine.sample("relay_jobs_executed_total", labels) == 0
