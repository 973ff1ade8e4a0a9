from __future__ import annotations

import json
import logging
import sqlite3
from unittest.mock import MagicMock

from hotspot_relay.audit.db import AuditStore
from hotspot_relay.audit.models import AuditPhase
from hotspot_relay.audit.recorder import AuditRecorder


def _attempt(recorder: AuditRecorder, trace_id: str = "t1", **payload):
    return recorder.attempt(
        trace_id=trace_id,
        action="AUTHORIZE_BY_SESSION",
        source="api",
        router_id="r1",
        payload={"ip": "10.5.50.12", **payload},
    )


def test_attempt_redacts_payload(db) -> None:
    recorder = AuditRecorder(AuditStore(db))

    record = _attempt(recorder, password="hunter2")

    assert record.phase == AuditPhase.ATTEMPT.value
    assert json.loads(record.payload) == {"ip": "10.5.50.12", "password": "***"}


def test_records_persist_by_trace(db) -> None:
    store = AuditStore(db)
    recorder = AuditRecorder(store)

    _attempt(recorder)
    recorder.fail(
        trace_id="t1",
        action="AUTHORIZE_BY_SESSION",
        source="api",
        router_id="r1",
        payload={},
        error_code="driver_error",
        message="no route\nto host",
        duration_ms=40,
    )
    _attempt(recorder, trace_id="t2")

    records = store.list_by_trace("t1")
    assert [record.phase for record in records] == ["ATTEMPT", "FAIL"]
    assert records[1].error_code == "driver_error"
    assert records[1].outcome == "no route_to host"
    assert len(store.recent(limit=10)) == 3


def test_success_record(db) -> None:
    store = AuditStore(db)
    recorder = AuditRecorder(store)

    record = recorder.success(
        trace_id="t1",
        action="REVOKE_SESSION",
        source="job",
        router_id="r1",
        payload={"mac": "AA:BB:CC:DD:EE:FF"},
        duration_ms=12,
    )

    assert record.outcome == "ok"
    assert store.recent()[0].duration_ms == 12


def test_disabled_recorder_does_not_log_or_persist(caplog) -> None:
    store = MagicMock()
    recorder = AuditRecorder(store, enabled=False)

    with caplog.at_level(logging.INFO, logger="hotspot_relay.audit"):
        _attempt(recorder)

    store.add.assert_not_called()
    assert caplog.records == []


def test_persistence_failure_is_logged(caplog) -> None:
    store = MagicMock()
    store.add.side_effect = sqlite3.OperationalError("disk I/O error")
    recorder = AuditRecorder(store)

    with caplog.at_level(logging.INFO, logger="hotspot_relay.audit"):
        record = _attempt(recorder)

    assert record.trace_id == "t1"
    assert "audit persistence failed" in caplog.text
