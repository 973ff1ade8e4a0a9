"""Per-router circuit breaker."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum

from hotspot_relay.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)


class CircuitStatus(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF = "HALF"


@dataclass
class CircuitState:
    failures: int = 0
    state: CircuitStatus = CircuitStatus.CLOSED
    opened_at: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {"failures": self.failures, "state": self.state.value, "openedAt": self.opened_at}


class CircuitBreaker:
    """Tracks consecutive failures per router and gates new attempts.

    State lives in memory and is lost on restart. The instance is injected
    into the state machine and the action handler so tests get fresh state.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_ms: int = 60_000,
        clock: Clock = now_ms,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._threshold = failure_threshold
        self._recovery_ms = recovery_ms
        self._clock = clock
        self._states: dict[str, CircuitState] = {}
        self._lock = threading.Lock()

    def _state(self, router_id: str) -> CircuitState:
        state = self._states.get(router_id)
        if state is None:
            state = CircuitState()
            self._states[router_id] = state
        return state

    def allow_request(self, router_id: str) -> bool:
        with self._lock:
            state = self._state(router_id)
            if state.state is not CircuitStatus.OPEN:
                return True
            opened_at = state.opened_at or 0
            if self._clock() - opened_at >= self._recovery_ms:
                state.state = CircuitStatus.HALF
                state.failures = 0
                logger.info("circuit half-open router=%s", router_id)
                return True
            return False

    def record_failure(self, router_id: str) -> CircuitState:
        with self._lock:
            state = self._state(router_id)
            state.failures += 1
            if state.state is CircuitStatus.HALF or state.failures >= self._threshold:
                if state.state is not CircuitStatus.OPEN:
                    logger.warning(
                        "circuit opened router=%s failures=%d", router_id, state.failures
                    )
                state.state = CircuitStatus.OPEN
                state.opened_at = self._clock()
            return CircuitState(state.failures, state.state, state.opened_at)

    def record_success(self, router_id: str) -> None:
        with self._lock:
            state = self._state(router_id)
            if state.state is not CircuitStatus.CLOSED:
                logger.info("circuit closed router=%s", router_id)
            state.failures = 0
            state.state = CircuitStatus.CLOSED
            state.opened_at = None

    def state_of(self, router_id: str) -> CircuitState:
        with self._lock:
            state = self._state(router_id)
            return CircuitState(state.failures, state.state, state.opened_at)

    def snapshot(self) -> dict[str, CircuitState]:
        with self._lock:
            return {
                router_id: CircuitState(state.failures, state.state, state.opened_at)
                for router_id, state in self._states.items()
            }
