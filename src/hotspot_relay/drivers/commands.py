"""Structured router commands with "ensure"/"remove if present" semantics."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

ADDRESS_LIST_PATH = "/ip/firewall/address-list"
IP_BINDING_PATH = "/ip/hotspot/ip-binding"
HOTSPOT_HOST_PATH = "/ip/hotspot/host"
HOTSPOT_ACTIVE_PATH = "/ip/hotspot/active"

SESSION_TAG_PREFIX = "pedido:"


class CommandOp(str, Enum):
    ENSURE = "ensure"
    REMOVE = "remove"


@dataclass(frozen=True)
class RouterCommand:
    """One idempotent operation on a router menu.

    ``ENSURE`` makes an entry matching ``match`` carry ``attrs``, updating the
    first existing match in place or adding one. ``REMOVE`` deletes every
    entry matching ``match`` except those also matching ``keep``; no match is
    success.
    """

    path: str
    op: CommandOp
    match: tuple[tuple[str, str], ...]
    attrs: tuple[tuple[str, str], ...] = ()
    keep: tuple[tuple[str, str], ...] = ()

    def matches(self, entry: dict[str, Any]) -> bool:
        if not all(str(entry.get(key, "")).upper() == value.upper() for key, value in self.match):
            return False
        if self.keep and all(
            str(entry.get(key, "")).upper() == value.upper() for key, value in self.keep
        ):
            return False
        return True

    def describe(self) -> str:
        parts = [f"{key}={value}" for key, value in self.match + self.attrs]
        parts.extend(f"!{key}={value}" for key, value in self.keep)
        return f"{self.path} {self.op.value} " + " ".join(parts)


def session_tag(session_id: str) -> str:
    return f"{SESSION_TAG_PREFIX}{session_id}"


def grant_commands(address_list: str, ip: str, mac: str, session_id: str) -> list[RouterCommand]:
    """Allow ``ip``/``mac`` through the hotspot and kick its stale login state."""
    tag = session_tag(session_id)
    return [
        RouterCommand(
            ADDRESS_LIST_PATH,
            CommandOp.ENSURE,
            match=(("list", address_list), ("address", ip)),
            attrs=(("comment", tag),),
        ),
        RouterCommand(
            IP_BINDING_PATH,
            CommandOp.ENSURE,
            match=(("mac-address", mac), ("type", "bypassed")),
            attrs=(("address", ip), ("comment", tag)),
        ),
        RouterCommand(HOTSPOT_HOST_PATH, CommandOp.REMOVE, match=(("mac-address", mac),)),
        RouterCommand(HOTSPOT_ACTIVE_PATH, CommandOp.REMOVE, match=(("mac-address", mac),)),
    ]


def revoke_commands(
    address_list: str,
    ip: str | None,
    mac: str | None,
    session_id: str | None = None,
) -> list[RouterCommand]:
    """Remove access for ``ip`` and/or ``mac``.

    With ``session_id`` only entries tagged for that session are removed, so
    an expiring trial never strips a later paid grant for the same client.
    """
    tag_match: tuple[tuple[str, str], ...] = (
        (("comment", session_tag(session_id)),) if session_id else ()
    )
    commands: list[RouterCommand] = []
    if ip:
        commands.append(
            RouterCommand(
                ADDRESS_LIST_PATH,
                CommandOp.REMOVE,
                match=(("list", address_list), ("address", ip)) + tag_match,
            )
        )
    if mac:
        commands.append(
            RouterCommand(
                IP_BINDING_PATH, CommandOp.REMOVE, match=(("mac-address", mac),) + tag_match
            )
        )
        mac_match = (("mac-address", mac),)
        commands.append(RouterCommand(HOTSPOT_ACTIVE_PATH, CommandOp.REMOVE, match=mac_match))
        commands.append(RouterCommand(HOTSPOT_HOST_PATH, CommandOp.REMOVE, match=mac_match))
    return commands


def stale_session_commands(
    address_list: str, ip: str, mac: str, session_id: str
) -> list[RouterCommand]:
    """Drop entries tagged for ``session_id`` that point at another ip or mac."""
    tag = (("comment", session_tag(session_id)),)
    return [
        RouterCommand(
            ADDRESS_LIST_PATH,
            CommandOp.REMOVE,
            match=(("list", address_list),) + tag,
            keep=(("address", ip),),
        ),
        RouterCommand(
            IP_BINDING_PATH,
            CommandOp.REMOVE,
            match=tag,
            keep=(("mac-address", mac), ("address", ip)),
        ),
    ]
