"""SQLite persistence for audit records."""

from __future__ import annotations

from hotspot_relay.audit.models import AuditRecord
from hotspot_relay.storage.sqlite import SqliteDatabase

_SCHEMA = """
CREATE TABLE IF NOT EXISTS audit_actions (
    audit_id TEXT PRIMARY KEY,
    trace_id TEXT NOT NULL,
    phase TEXT NOT NULL,
    action TEXT NOT NULL,
    source TEXT,
    router_id TEXT,
    payload TEXT NOT NULL,
    outcome TEXT,
    error_code TEXT,
    duration_ms INTEGER,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_actions_trace_id ON audit_actions(trace_id);
CREATE INDEX IF NOT EXISTS idx_audit_actions_created_at ON audit_actions(created_at);
"""


class AuditStore:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db
        self._db.ensure_schema(_SCHEMA)

    def add(self, record: AuditRecord) -> None:
        self._db.execute(
            """
            INSERT INTO audit_actions (
                audit_id, trace_id, phase, action, source, router_id,
                payload, outcome, error_code, duration_ms, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.audit_id,
                record.trace_id,
                record.phase,
                record.action,
                record.source,
                record.router_id,
                record.payload,
                record.outcome,
                record.error_code,
                record.duration_ms,
                record.created_at,
            ),
        )

    def list_by_trace(self, trace_id: str) -> list[AuditRecord]:
        rows = self._db.fetch_all(
            "SELECT * FROM audit_actions WHERE trace_id = ? ORDER BY created_at, rowid",
            (trace_id,),
        )
        return [AuditRecord(**dict(row)) for row in rows]

    def recent(self, limit: int = 100) -> list[AuditRecord]:
        rows = self._db.fetch_all(
            "SELECT * FROM audit_actions ORDER BY rowid DESC LIMIT ?",
            (limit,),
        )
        return [AuditRecord(**dict(row)) for row in rows]
