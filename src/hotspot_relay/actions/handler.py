"""Allowlisted action dispatcher with audit, metrics and breaker reporting."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from hotspot_relay.actions.operations import NetworkOperations
from hotspot_relay.actions.schemas import GRANT_SCHEMA, REVOKE_SCHEMA
from hotspot_relay.audit.recorder import AuditRecorder
from hotspot_relay.circuit_breaker import CircuitBreaker
from hotspot_relay.domain.routers import RouterDirectory
from hotspot_relay.errors import (
    ActionNotAllowedError,
    CircuitOpenError,
    DriverError,
    RelayError,
    ValidationFailure,
)
from hotspot_relay.metrics import RelayMetrics
from hotspot_relay.utils.jsonschema import validate_payload

logger = logging.getLogger(__name__)


class ActionKind(str, Enum):
    AUTHORIZE_BY_SESSION = "AUTHORIZE_BY_SESSION"
    RESYNC_DEVICE = "RESYNC_DEVICE"
    REVOKE_SESSION = "REVOKE_SESSION"


_SCHEMAS: dict[ActionKind, dict[str, object]] = {
    ActionKind.AUTHORIZE_BY_SESSION: GRANT_SCHEMA,
    ActionKind.RESYNC_DEVICE: GRANT_SCHEMA,
    ActionKind.REVOKE_SESSION: REVOKE_SCHEMA,
}


@dataclass
class ActionRequest:
    action: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    source: str = "http"
    trace_id: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], source: str = "http") -> ActionRequest:
        payload = data.get("payload")
        trace_id = data.get("traceId")
        return cls(
            action=str(data.get("action") or ""),
            payload=dict(payload) if isinstance(payload, Mapping) else {},
            source=source,
            trace_id=str(trace_id) if trace_id else None,
        )


@dataclass
class ActionResult:
    ok: bool
    action: str
    trace_id: str
    result: dict[str, Any] | None = None
    error: str | None = None
    code: str | None = None
    status: int = 200

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": self.ok, "action": self.action, "traceId": self.trace_id}
        if self.ok:
            body["result"] = self.result
        else:
            body["error"] = self.error
            body["code"] = self.code
        return body


def _new_trace_id() -> str:
    return uuid.uuid4().hex[:12]


class ActionHandler:
    """Runs one allowlisted action.

    Every call that names an allowed action writes an audit ``attempt`` and
    exactly one ``success`` or ``fail``. Errors come back as a failed
    ``ActionResult``; only unexpected exceptions propagate.
    """

    def __init__(
        self,
        routers: RouterDirectory,
        operations: NetworkOperations,
        breaker: CircuitBreaker,
        metrics: RelayMetrics,
        audit: AuditRecorder,
    ) -> None:
        self._routers = routers
        self._breaker = breaker
        self._metrics = metrics
        self._audit = audit
        self._dispatch: dict[ActionKind, Callable[[Mapping[str, Any]], Awaitable[dict]]] = {
            ActionKind.AUTHORIZE_BY_SESSION: operations.authorize_by_session,
            ActionKind.RESYNC_DEVICE: operations.resync_device,
            ActionKind.REVOKE_SESSION: operations.revoke_session,
        }

    async def execute_action(self, request: ActionRequest) -> ActionResult:
        trace_id = request.trace_id or _new_trace_id()
        payload = dict(request.payload)
        router_id = payload.get("routerId") if isinstance(payload.get("routerId"), str) else None

        try:
            kind = ActionKind(request.action)
        except ValueError:
            error = ActionNotAllowedError(f"action not allowed: {request.action or '<missing>'}")
            logger.warning("rejected action=%r source=%s", request.action, request.source)
            self._audit.fail(
                trace_id=trace_id,
                action=request.action,
                source=request.source,
                router_id=router_id,
                payload=payload,
                error_code=error.code,
                message=error.message,
            )
            return ActionResult(
                ok=False,
                action=request.action,
                trace_id=trace_id,
                error=error.message,
                code=error.code,
                status=error.status,
            )

        audit_fields = {
            "trace_id": trace_id,
            "action": kind.value,
            "source": request.source,
            "router_id": router_id,
            "payload": payload,
        }
        self._audit.attempt(**audit_fields)
        started = time.perf_counter()
        try:
            router_id = self._validate(kind, payload)
            if not self._breaker.allow_request(router_id):
                raise CircuitOpenError(f"circuit open for router {router_id}")
            result = await self._dispatch[kind](payload)
        except RelayError as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            if isinstance(exc, DriverError) and router_id:
                self._breaker.record_failure(router_id)
            self._metrics.observe_action(kind.value, router_id, False, duration_ms)
            self._audit.fail(
                **audit_fields,
                error_code=exc.code,
                message=exc.message,
                duration_ms=duration_ms,
            )
            logger.warning(
                "action failed action=%s router=%s trace=%s code=%s: %s",
                kind.value,
                router_id,
                trace_id,
                exc.code,
                exc.message,
            )
            return ActionResult(
                ok=False,
                action=kind.value,
                trace_id=trace_id,
                error=exc.message,
                code=exc.code,
                status=exc.status,
            )
        except Exception:
            duration_ms = int((time.perf_counter() - started) * 1000)
            self._metrics.observe_action(kind.value, router_id, False, duration_ms)
            self._audit.fail(
                **audit_fields,
                error_code="internal_error",
                message="unexpected error",
                duration_ms=duration_ms,
            )
            raise

        duration_ms = int((time.perf_counter() - started) * 1000)
        if router_id:
            self._breaker.record_success(router_id)
        self._metrics.observe_action(kind.value, router_id, True, duration_ms)
        self._audit.success(**audit_fields, duration_ms=duration_ms)
        logger.info(
            "action ok action=%s router=%s trace=%s duration_ms=%d",
            kind.value,
            router_id,
            trace_id,
            duration_ms,
        )
        return ActionResult(ok=True, action=kind.value, trace_id=trace_id, result=result)

    def _validate(self, kind: ActionKind, payload: dict[str, Any]) -> str:
        errors = validate_payload(_SCHEMAS[kind], payload)
        if errors:
            raise ValidationFailure("; ".join(errors), meta={"action": kind.value})
        router_id = str(payload["routerId"])
        self._routers.get(router_id)
        return router_id
