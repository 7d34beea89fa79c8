"""Cancellable fixed-interval activities."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

_logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``fn`` every ``interval`` seconds until stopped.

    A failing run is logged with its traceback and the schedule continues;
    only cancellation ends the loop.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Awaitable[object]],
        *,
        run_immediately: bool = False,
    ) -> None:
        self.name = name
        self._interval = interval
        self._fn = fn
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self.runs = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"ledgermirror-{self.name}")
        _logger.debug("Periodic task %s started interval=%ss", self.name, self._interval)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        _logger.debug("Periodic task %s stopped", self.name)

    async def run_once(self) -> None:
        self.runs += 1
        try:
            await self._fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            _logger.exception("Periodic task %s failed", self.name)

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval)
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)
