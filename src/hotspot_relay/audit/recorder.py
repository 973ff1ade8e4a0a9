"""Attempt/success/fail audit records for every action execution."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Any, Mapping

from hotspot_relay.audit.db import AuditStore
from hotspot_relay.audit.models import AuditPhase, AuditRecord
from hotspot_relay.utils.masking import redact_sensitive_fields, sanitize_log_value
from hotspot_relay.utils.time import utc_now_iso

audit_logger = logging.getLogger("hotspot_relay.audit")

_MAX_MESSAGE_LENGTH = 500


def _payload_json(payload: Mapping[str, Any] | None) -> str:
    redacted = redact_sensitive_fields(dict(payload or {}))
    return json.dumps(redacted, sort_keys=True, default=str)


class AuditRecorder:
    """Writes one JSON line per audit record and optionally persists it.

    Records are redacted before they leave this class.
    """

    def __init__(self, store: AuditStore | None = None, enabled: bool = True) -> None:
        self._store = store
        self._enabled = enabled

    def attempt(
        self,
        *,
        trace_id: str,
        action: str,
        source: str | None,
        router_id: str | None,
        payload: Mapping[str, Any] | None,
    ) -> AuditRecord:
        return self._emit(
            AuditPhase.ATTEMPT,
            trace_id=trace_id,
            action=action,
            source=source,
            router_id=router_id,
            payload=payload,
        )

    def success(
        self,
        *,
        trace_id: str,
        action: str,
        source: str | None,
        router_id: str | None,
        payload: Mapping[str, Any] | None,
        duration_ms: int,
    ) -> AuditRecord:
        return self._emit(
            AuditPhase.SUCCESS,
            trace_id=trace_id,
            action=action,
            source=source,
            router_id=router_id,
            payload=payload,
            outcome="ok",
            duration_ms=duration_ms,
        )

    def fail(
        self,
        *,
        trace_id: str,
        action: str,
        source: str | None,
        router_id: str | None,
        payload: Mapping[str, Any] | None,
        error_code: str,
        message: str,
        duration_ms: int | None = None,
    ) -> AuditRecord:
        return self._emit(
            AuditPhase.FAIL,
            trace_id=trace_id,
            action=action,
            source=source,
            router_id=router_id,
            payload=payload,
            outcome=sanitize_log_value(message)[:_MAX_MESSAGE_LENGTH],
            error_code=error_code,
            duration_ms=duration_ms,
        )

    def _emit(
        self,
        phase: AuditPhase,
        *,
        trace_id: str,
        action: str,
        source: str | None,
        router_id: str | None,
        payload: Mapping[str, Any] | None,
        outcome: str | None = None,
        error_code: str | None = None,
        duration_ms: int | None = None,
    ) -> AuditRecord:
        record = AuditRecord(
            audit_id=uuid.uuid4().hex,
            trace_id=trace_id,
            phase=phase.value,
            action=sanitize_log_value(action),
            source=source,
            router_id=router_id,
            payload=_payload_json(payload),
            outcome=outcome,
            error_code=error_code,
            duration_ms=duration_ms,
            created_at=utc_now_iso(),
        )
        if not self._enabled:
            return record
        audit_logger.info(json.dumps(record.to_dict(), default=str))
        if self._store is not None:
            try:
                self._store.add(record)
            except sqlite3.Error as exc:
                audit_logger.warning("audit persistence failed trace=%s: %s", trace_id, exc)
        return record
