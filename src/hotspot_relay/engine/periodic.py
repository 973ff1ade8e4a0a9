"""Fixed-interval background loops."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``step`` every ``interval_ms`` until stopped.

    A failing step is logged and the loop carries on with the next tick.
    """

    def __init__(self, name: str, step: Callable[[], Awaitable[object]], interval_ms: int) -> None:
        self.name = name
        self._step = step
        self._interval = interval_ms / 1000
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=f"relay-{self.name}")
        logger.info("%s loop started interval=%.1fs", self.name, self._interval)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("%s loop stopped", self.name)

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self._step()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s tick failed", self.name)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
