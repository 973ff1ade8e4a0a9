"""Peer key to device/router bindings."""

from __future__ import annotations

import logging
import sqlite3

from hotspot_relay.domain.models import PeerBinding
from hotspot_relay.errors import StoreUnavailableError, ValidationFailure
from hotspot_relay.storage.sqlite import SqliteDatabase
from hotspot_relay.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS peer_bindings (
    peer_key TEXT PRIMARY KEY,
    device_id TEXT NOT NULL,
    router_address TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_peer_bindings_device_id ON peer_bindings(device_id);
"""


def _row_to_binding(row: sqlite3.Row) -> PeerBinding:
    return PeerBinding(
        peer_key=row["peer_key"],
        device_id=row["device_id"],
        router_address=row["router_address"],
        created_at=row["created_at"],
    )


class PeerBindingStore:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db
        self._db.ensure_schema(_SCHEMA)

    def bind_peer(
        self, peer_key: str, device_id: str, router_address: str | None
    ) -> PeerBinding:
        """Create or repoint a binding; ``created_at`` survives updates."""
        if not peer_key or not device_id:
            raise ValidationFailure("peer key and device id are required")
        try:
            self._db.execute(
                """
                INSERT INTO peer_bindings (peer_key, device_id, router_address, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(peer_key) DO UPDATE
                SET device_id = excluded.device_id, router_address = excluded.router_address
                """,
                (peer_key, device_id, router_address, utc_now_iso()),
            )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"peer binding write failed: {exc}") from exc
        binding = self.get_binding(peer_key)
        if binding is None:
            raise StoreUnavailableError(f"peer binding not readable after write: {peer_key[:8]}...")
        logger.info("peer bound device=%s router=%s", device_id, router_address)
        return binding

    def unbind_peer(self, peer_key: str) -> bool:
        try:
            removed = self._db.execute("DELETE FROM peer_bindings WHERE peer_key = ?", (peer_key,))
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"peer binding write failed: {exc}") from exc
        return removed > 0

    def get_binding(self, peer_key: str) -> PeerBinding | None:
        row = self._db.fetch_one("SELECT * FROM peer_bindings WHERE peer_key = ?", (peer_key,))
        return _row_to_binding(row) if row else None

    def list_bindings(self) -> list[PeerBinding]:
        rows = self._db.fetch_all("SELECT * FROM peer_bindings ORDER BY created_at, peer_key")
        return [_row_to_binding(row) for row in rows]

    def bindings_by_key(self) -> dict[str, PeerBinding]:
        return {binding.peer_key: binding for binding in self.list_bindings()}
