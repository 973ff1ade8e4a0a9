"""Network-side operations behind the action allowlist.

Each operation is a single command batch with ensure / remove-if-present
semantics, so running it twice leaves the router in the same state.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from hotspot_relay.domain.routers import RouterDirectory
from hotspot_relay.drivers.commands import grant_commands, revoke_commands, stale_session_commands
from hotspot_relay.drivers.router import CommandBatchResult, RouterDriver
from hotspot_relay.errors import DriverError

logger = logging.getLogger(__name__)


class NetworkOperations:
    def __init__(
        self,
        routers: RouterDirectory,
        driver: RouterDriver,
        *,
        address_list: str = "paid_clients",
    ) -> None:
        self._routers = routers
        self._driver = driver
        self._address_list = address_list

    async def _run(self, router_id: str, commands: list) -> dict[str, Any]:
        router = self._routers.get(router_id)
        result: CommandBatchResult = await self._driver.run_commands(router, commands)
        if not result.ok:
            first = result.errors[0].message if result.errors else "unknown error"
            raise DriverError(
                f"router {router_id} rejected {len(result.errors)} command(s): {first}",
                meta={"routerId": router_id, "errors": [e.to_dict() for e in result.errors]},
            )
        return result.to_dict()

    async def authorize_by_session(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        mac = str(payload["mac"]).upper()
        commands = grant_commands(self._address_list, payload["ip"], mac, payload["pedidoId"])
        return await self._run(payload["routerId"], commands)

    async def resync_device(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Drop stale entries of the session, then grant its current ip/mac."""
        mac = str(payload["mac"]).upper()
        commands = stale_session_commands(
            self._address_list, payload["ip"], mac, payload["pedidoId"]
        ) + grant_commands(self._address_list, payload["ip"], mac, payload["pedidoId"])
        return await self._run(payload["routerId"], commands)

    async def revoke_session(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        mac = payload.get("mac")
        commands = revoke_commands(
            self._address_list,
            payload.get("ip"),
            str(mac).upper() if mac else None,
            payload.get("pedidoId"),
        )
        return await self._run(payload["routerId"], commands)
