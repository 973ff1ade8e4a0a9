"""Payload schemas for each allowlisted action."""

from __future__ import annotations

MAC_PATTERN = "^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$"

_NON_EMPTY = {"type": "string", "minLength": 1}

GRANT_SCHEMA: dict[str, object] = {
    "type": "object",
    "required": ["routerId", "pedidoId", "ip", "mac"],
    "properties": {
        "routerId": _NON_EMPTY,
        "pedidoId": _NON_EMPTY,
        "ip": _NON_EMPTY,
        "mac": {"type": "string", "pattern": MAC_PATTERN},
    },
}

REVOKE_SCHEMA: dict[str, object] = {
    "type": "object",
    "required": ["routerId"],
    "properties": {
        "routerId": _NON_EMPTY,
        "ip": _NON_EMPTY,
        "mac": {"type": "string", "pattern": MAC_PATTERN},
        "pedidoId": _NON_EMPTY,
    },
    "anyOf": [{"required": ["ip"]}, {"required": ["mac"]}],
}
