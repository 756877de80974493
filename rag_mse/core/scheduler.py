"""Periodic background loops for the worker process."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from rag_mse.core.structured_logging import build_log_context

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class PeriodicTask:
    """
    Run an async callback every ``interval_seconds``.

    A tick that is still running when the next one is due is not started
    twice; the overlapping tick is skipped. Exceptions from the callback are
    logged and the loop continues. ``sleep`` is injectable so tests can drive
    the loop without real waiting.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        sleep: Sleep = asyncio.sleep,
    ):
        self.name = name
        self.callback = callback
        self.interval_seconds = interval_seconds
        self._sleep = sleep
        self._tick_running = False
        self._stopped = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> bool:
        """Run the callback once. Returns False if a tick was already running."""
        if self._tick_running:
            logger.debug("Skipping overlapping tick", extra=build_log_context(task=self.name))
            return False
        self._tick_running = True
        try:
            await self.callback()
        except Exception:
            logger.exception("Periodic task tick failed", extra=build_log_context(task=self.name))
        finally:
            self._tick_running = False
        return True

    async def run(self, max_ticks: int | None = None) -> None:
        """Loop until stop() is called (or ``max_ticks`` ticks have run)."""
        ticks = 0
        while not self._stopped:
            await self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            await self._sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self.is_running:
            return self._task  # type: ignore[return-value]
        self._stopped = False
        logger.info(
            "Periodic task starting",
            extra=build_log_context(task=self.name, interval_seconds=self.interval_seconds),
        )
        self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Periodic task stopped", extra=build_log_context(task=self.name))
