"""Periodic sweep of finished and stuck conversion jobs."""

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class StaleJobReaper:
    """Runs ``sweep`` every ``interval`` seconds on an owned task."""

    def __init__(self, sweep: Callable[[], object], interval: float = 300.0) -> None:
        self._sweep = sweep
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="conversion-reaper")
        logger.info("Stale job reaper started (interval=%.0fs)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stale job reaper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self._sweep()
            except Exception:
                logger.exception("Stale job sweep failed")
