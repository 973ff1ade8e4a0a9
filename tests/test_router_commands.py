from __future__ import annotations

from hotspot_relay.drivers.commands import (
    ADDRESS_LIST_PATH,
    HOTSPOT_ACTIVE_PATH,
    HOTSPOT_HOST_PATH,
    IP_BINDING_PATH,
    CommandOp,
    RouterCommand,
    grant_commands,
    revoke_commands,
    stale_session_commands,
)
from hotspot_relay.drivers.router import apply_to_entries

MAC = "AA:BB:CC:DD:EE:FF"


def test_grant_commands_shape() -> None:
    commands = grant_commands("paid_clients", "10.5.50.12", MAC, "p1")

    assert [(command.path, command.op) for command in commands] == [
        (ADDRESS_LIST_PATH, CommandOp.ENSURE),
        (IP_BINDING_PATH, CommandOp.ENSURE),
        (HOTSPOT_HOST_PATH, CommandOp.REMOVE),
        (HOTSPOT_ACTIVE_PATH, CommandOp.REMOVE),
    ]
    assert dict(commands[0].attrs) == {"comment": "pedido:p1"}
    assert dict(commands[1].match) == {"mac-address": MAC, "type": "bypassed"}


def test_revoke_commands_with_session_only_match_tagged_entries() -> None:
    commands = revoke_commands("paid_clients", "10.5.50.12", MAC, session_id="p1")

    tagged = [command for command in commands if ("comment", "pedido:p1") in command.match]
    assert {command.path for command in tagged} == {ADDRESS_LIST_PATH, IP_BINDING_PATH}
    assert len(commands) == 4


def test_revoke_commands_ip_only() -> None:
    commands = revoke_commands("paid_clients", "10.5.50.12", None)

    assert len(commands) == 1
    assert commands[0].path == ADDRESS_LIST_PATH


def test_ensure_updates_first_match_in_place() -> None:
    entries = [{"list": "paid_clients", "address": "10.5.50.12", "comment": "old"}]
    command = grant_commands("paid_clients", "10.5.50.12", MAC, "p1")[0]

    result = apply_to_entries(entries, command)

    assert result == [{"list": "paid_clients", "address": "10.5.50.12", "comment": "pedido:p1"}]


def test_ensure_adds_missing_entry() -> None:
    command = grant_commands("paid_clients", "10.5.50.12", MAC, "p1")[1]

    result = apply_to_entries([], command)

    assert result == [
        {"mac-address": MAC, "type": "bypassed", "address": "10.5.50.12", "comment": "pedido:p1"}
    ]


def test_remove_matches_case_insensitively() -> None:
    entries = [{"mac-address": MAC.lower()}, {"mac-address": "11:22:33:44:55:66"}]
    command = RouterCommand(HOTSPOT_HOST_PATH, CommandOp.REMOVE, match=(("mac-address", MAC),))

    assert apply_to_entries(entries, command) == [{"mac-address": "11:22:33:44:55:66"}]


def test_stale_session_keeps_current_client() -> None:
    entries = [
        {"list": "paid_clients", "address": "10.5.50.12", "comment": "pedido:p1"},
        {"list": "paid_clients", "address": "10.5.50.99", "comment": "pedido:p1"},
        {"list": "paid_clients", "address": "10.5.50.50", "comment": "pedido:p2"},
    ]
    command = stale_session_commands("paid_clients", "10.5.50.12", MAC, "p1")[0]

    result = apply_to_entries(entries, command)

    assert [entry["address"] for entry in result] == ["10.5.50.12", "10.5.50.50"]


def test_describe() -> None:
    command = stale_session_commands("paid_clients", "10.5.50.12", MAC, "p1")[0]

    assert command.describe() == (
        "/ip/firewall/address-list remove list=paid_clients comment=pedido:p1 "
        "!address=10.5.50.12"
    )
