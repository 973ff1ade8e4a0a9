"""Data models for action audit records."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum


class AuditPhase(str, Enum):
    ATTEMPT = "ATTEMPT"
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"


@dataclass
class AuditRecord:
    audit_id: str
    trace_id: str
    phase: str
    action: str
    source: str | None
    router_id: str | None
    payload: str
    outcome: str | None
    error_code: str | None
    duration_ms: int | None
    created_at: str

    def to_dict(self) -> dict[str, object]:
        return asdict(self)
