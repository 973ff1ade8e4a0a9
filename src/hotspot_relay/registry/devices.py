"""Durable device registry: the source of desired peer state."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Any, Iterable, Mapping

from hotspot_relay.domain.models import DeviceRecord, DeviceStatus, normalize_addresses
from hotspot_relay.errors import StoreUnavailableError
from hotspot_relay.storage.sqlite import SqliteDatabase
from hotspot_relay.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS devices (
    device_id TEXT PRIMARY KEY,
    public_key TEXT UNIQUE,
    allowed_addresses TEXT NOT NULL,
    meta TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_devices_status ON devices(status);
"""


def _row_to_device(row: sqlite3.Row) -> DeviceRecord:
    return DeviceRecord(
        device_id=row["device_id"],
        public_key=row["public_key"],
        allowed_addresses=json.loads(row["allowed_addresses"]),
        meta=json.loads(row["meta"]),
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class DeviceRegistry:
    """DeviceRecord by device id. Removal only flips the status so the record stays for audit."""

    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db
        self._db.ensure_schema(_SCHEMA)

    def register_device(
        self,
        *,
        device_id: str | None = None,
        public_key: str | None = None,
        allowed_addresses: Iterable[str] | str | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> DeviceRecord:
        """Create a device or idempotently update the one matching the id or key."""
        addresses = list(normalize_addresses(allowed_addresses)) if allowed_addresses else None
        now = utc_now_iso()
        try:
            existing = self._find(device_id, public_key)
            if existing is not None:
                existing.public_key = existing.public_key or public_key
                if addresses:
                    existing.allowed_addresses = addresses
                existing.meta = {**existing.meta, **dict(meta or {})}
                if existing.status == DeviceStatus.DEPROVISIONED.value:
                    existing.status = DeviceStatus.REGISTERED.value
                existing.updated_at = now
                self._save(existing)
                return existing

            record = DeviceRecord(
                device_id=device_id or uuid.uuid4().hex,
                public_key=public_key,
                allowed_addresses=addresses or [],
                meta=dict(meta or {}),
                status=DeviceStatus.REGISTERED.value,
                created_at=now,
                updated_at=now,
            )
            self._db.execute(
                """
                INSERT INTO devices (
                    device_id, public_key, allowed_addresses, meta, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.device_id,
                    record.public_key,
                    json.dumps(record.allowed_addresses),
                    json.dumps(record.meta, sort_keys=True),
                    record.status,
                    record.created_at,
                    record.updated_at,
                ),
            )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"device registry write failed: {exc}") from exc
        logger.info("device registered device=%s", record.device_id)
        return record

    def _find(self, device_id: str | None, public_key: str | None) -> DeviceRecord | None:
        if device_id:
            row = self._db.fetch_one("SELECT * FROM devices WHERE device_id = ?", (device_id,))
            if row is not None:
                return _row_to_device(row)
        if public_key:
            row = self._db.fetch_one("SELECT * FROM devices WHERE public_key = ?", (public_key,))
            if row is not None:
                return _row_to_device(row)
        return None

    def _save(self, record: DeviceRecord) -> None:
        self._db.execute(
            """
            UPDATE devices
            SET public_key = ?, allowed_addresses = ?, meta = ?, status = ?, updated_at = ?
            WHERE device_id = ?
            """,
            (
                record.public_key,
                json.dumps(record.allowed_addresses),
                json.dumps(record.meta, sort_keys=True),
                record.status,
                record.updated_at,
                record.device_id,
            ),
        )

    def get_device(self, device_id: str) -> DeviceRecord | None:
        row = self._db.fetch_one("SELECT * FROM devices WHERE device_id = ?", (device_id,))
        return _row_to_device(row) if row else None

    def get_by_public_key(self, public_key: str) -> DeviceRecord | None:
        row = self._db.fetch_one("SELECT * FROM devices WHERE public_key = ?", (public_key,))
        return _row_to_device(row) if row else None

    def list_devices(self, status: str | None = None) -> list[DeviceRecord]:
        if status:
            rows = self._db.fetch_all(
                "SELECT * FROM devices WHERE status = ? ORDER BY created_at, device_id", (status,)
            )
        else:
            rows = self._db.fetch_all("SELECT * FROM devices ORDER BY created_at, device_id")
        return [_row_to_device(row) for row in rows]

    def desired_devices(self) -> list[DeviceRecord]:
        return [device for device in self.list_devices() if device.is_desired]

    def update_status(
        self,
        device_id: str,
        status: DeviceStatus | str,
        meta: Mapping[str, Any] | None = None,
    ) -> DeviceRecord | None:
        record = self.get_device(device_id)
        if record is None:
            return None
        record.status = DeviceStatus(status).value
        if meta:
            record.meta = {**record.meta, **dict(meta)}
        record.updated_at = utc_now_iso()
        try:
            self._save(record)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"device registry write failed: {exc}") from exc
        logger.info("device status updated device=%s status=%s", device_id, record.status)
        return record

    def remove_device(self, device_id: str) -> bool:
        """Mark the device deprovisioned; returns False when it was never registered."""
        return self.update_status(device_id, DeviceStatus.DEPROVISIONED) is not None
