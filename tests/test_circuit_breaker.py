"""Tests for the per-router circuit breaker."""

from __future__ import annotations

import pytest

from hotspot_relay.circuit_breaker import CircuitBreaker, CircuitStatus


def test_opens_after_threshold(clock) -> None:
    breaker = CircuitBreaker(failure_threshold=3, recovery_ms=60_000, clock=clock)

    breaker.record_failure("r1")
    breaker.record_failure("r1")
    assert breaker.allow_request("r1") is True

    state = breaker.record_failure("r1")
    assert state.state is CircuitStatus.OPEN
    assert state.opened_at == clock.now
    assert breaker.allow_request("r1") is False


def test_routers_are_independent(clock) -> None:
    breaker = CircuitBreaker(failure_threshold=1, clock=clock)
    breaker.record_failure("r1")

    assert breaker.allow_request("r1") is False
    assert breaker.allow_request("r2") is True


def test_half_open_after_recovery_then_closes_on_success(clock) -> None:
    breaker = CircuitBreaker(failure_threshold=1, recovery_ms=10_000, clock=clock)
    breaker.record_failure("r1")

    clock.advance(9_999)
    assert breaker.allow_request("r1") is False

    clock.advance(1)
    assert breaker.allow_request("r1") is True
    assert breaker.state_of("r1").state is CircuitStatus.HALF

    breaker.record_success("r1")
    state = breaker.state_of("r1")
    assert state.state is CircuitStatus.CLOSED
    assert state.failures == 0
    assert state.opened_at is None


def test_half_open_failure_reopens(clock) -> None:
    breaker = CircuitBreaker(failure_threshold=3, recovery_ms=1_000, clock=clock)
    for _ in range(3):
        breaker.record_failure("r1")
    clock.advance(1_000)
    assert breaker.allow_request("r1") is True

    state = breaker.record_failure("r1")
    assert state.state is CircuitStatus.OPEN
    assert state.opened_at == clock.now


def test_success_resets_failure_count(clock) -> None:
    breaker = CircuitBreaker(failure_threshold=2, clock=clock)
    breaker.record_failure("r1")
    breaker.record_success("r1")
    breaker.record_failure("r1")

    assert breaker.allow_request("r1") is True
    assert breaker.state_of("r1").failures == 1


def test_snapshot_returns_copies(clock) -> None:
    breaker = CircuitBreaker(failure_threshold=5, clock=clock)
    breaker.record_failure("r1")

    snapshot = breaker.snapshot()
    snapshot["r1"].failures = 99

    assert breaker.state_of("r1").failures == 1
    assert snapshot["r1"].to_dict() == {"failures": 99, "state": "CLOSED", "openedAt": None}


def test_rejects_invalid_threshold() -> None:
    with pytest.raises(ValueError):
        CircuitBreaker(failure_threshold=0)
