"""Router drivers: RouterOS API over the overlay tunnel, or dry-run."""

from __future__ import annotations

import asyncio
import functools
import logging
import ssl
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import librouteros
from librouteros.exceptions import LibRouterosError

from hotspot_relay.domain.routers import RouterConfig
from hotspot_relay.drivers.commands import CommandOp, RouterCommand

logger = logging.getLogger(__name__)


@dataclass
class CommandError:
    cmd: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"cmd": self.cmd, "message": self.message}


@dataclass
class CommandBatchResult:
    ok: bool
    errors: list[CommandError] = field(default_factory=list)
    applied: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "errors": [error.to_dict() for error in self.errors],
            "applied": self.applied,
            "dryRun": self.dry_run,
        }


class RouterDriver(Protocol):
    async def run_commands(
        self, router: RouterConfig, commands: Sequence[RouterCommand]
    ) -> CommandBatchResult: ...


def apply_to_entries(
    entries: list[dict[str, Any]], command: RouterCommand
) -> list[dict[str, Any]]:
    """Apply ``command`` to an in-memory menu table and return the resulting table."""
    if command.op is CommandOp.REMOVE:
        return [entry for entry in entries if not command.matches(entry)]
    for entry in entries:
        if command.matches(entry):
            entry.update(dict(command.attrs))
            return entries
    return entries + [dict(command.match + command.attrs)]


class RouterOSDriver:
    """Runs command batches through the RouterOS API with ``librouteros``.

    The blocking client runs in a worker thread; the whole batch is bounded
    by ``timeout_seconds``. A failing command is reported and the batch
    continues, so one bad entry does not hide the rest.
    """

    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self._timeout = timeout_seconds

    def _connect(self, router: RouterConfig):
        kwargs: dict[str, Any] = {
            "host": router.host,
            "username": router.username,
            "password": router.password.get_secret_value(),
            "port": router.port,
            "timeout": router.timeout_seconds or self._timeout,
        }
        if router.use_tls:
            context = ssl.create_default_context()
            kwargs["ssl_wrapper"] = functools.partial(
                context.wrap_socket, server_hostname=router.host
            )
        return librouteros.connect(**kwargs)

    def _apply(self, api: Any, command: RouterCommand) -> None:
        path = api.path(*command.path.strip("/").split("/"))
        entries = list(path)
        if command.op is CommandOp.REMOVE:
            ids = [entry[".id"] for entry in entries if command.matches(entry)]
            if ids:
                path.remove(*ids)
            return
        for entry in entries:
            if command.matches(entry):
                changes = {
                    key: value
                    for key, value in command.attrs
                    if str(entry.get(key, "")) != value
                }
                if changes:
                    path.update(**{".id": entry[".id"], **changes})
                return
        path.add(**dict(command.match + command.attrs))

    def _run_sync(
        self, router: RouterConfig, commands: Sequence[RouterCommand]
    ) -> CommandBatchResult:
        try:
            api = self._connect(router)
        except (LibRouterosError, OSError) as exc:
            return CommandBatchResult(
                ok=False, errors=[CommandError(cmd=f"connect {router.host}", message=str(exc))]
            )
        errors: list[CommandError] = []
        applied = 0
        try:
            for command in commands:
                try:
                    self._apply(api, command)
                    applied += 1
                except (LibRouterosError, OSError, KeyError) as exc:
                    errors.append(CommandError(cmd=command.describe(), message=str(exc)))
        finally:
            api.close()
        return CommandBatchResult(ok=not errors, errors=errors, applied=applied)

    async def run_commands(
        self, router: RouterConfig, commands: Sequence[RouterCommand]
    ) -> CommandBatchResult:
        timeout = (router.timeout_seconds or self._timeout) * max(1, len(commands))
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._run_sync, router, list(commands)), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.error("router batch timed out router=%s after %.1fs", router.id, timeout)
            return CommandBatchResult(
                ok=False,
                errors=[CommandError(cmd="batch", message=f"timed out after {timeout:.1f}s")],
            )
        for error in result.errors:
            logger.warning(
                "router command failed router=%s cmd=%s: %s", router.id, error.cmd, error.message
            )
        return result


class DryRunRouterDriver:
    """Logs intended batches and simulates router tables in memory."""

    def __init__(self) -> None:
        self.batches: list[tuple[str, list[RouterCommand]]] = []
        self.tables: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self._lock = threading.Lock()

    async def run_commands(
        self, router: RouterConfig, commands: Sequence[RouterCommand]
    ) -> CommandBatchResult:
        with self._lock:
            self.batches.append((router.id, list(commands)))
            for command in commands:
                logger.info("[dry-run] router=%s %s", router.id, command.describe())
                key = (router.id, command.path)
                self.tables[key] = apply_to_entries(self.tables.get(key, []), command)
        return CommandBatchResult(ok=True, applied=len(commands), dry_run=True)

    def entries(self, router_id: str, path: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(entry) for entry in self.tables.get((router_id, path), [])]
