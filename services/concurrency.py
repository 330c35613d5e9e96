"""FIFO-fair bounded concurrency for conversions."""

import asyncio
import logging
from collections import deque
from itertools import count

logger = logging.getLogger(__name__)


class SlotToken:
    """Proof of a held slot. Releasing it more than once has no effect."""

    _ids = count(1)

    def __init__(self) -> None:
        self.id = next(self._ids)
        self.released = False

    def __repr__(self) -> str:
        return f"SlotToken(id={self.id}, released={self.released})"


class ConcurrencyLimiter:
    """
    Counting limiter with strict FIFO handoff.

    Unlike ``asyncio.Semaphore``, a released slot is handed directly to the
    oldest live waiter, so ``running`` never exceeds ``max_concurrent`` and a
    late arrival can never overtake a queued job.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._running = 0
        self._waiters: deque[asyncio.Future[SlotToken]] = deque()

    @property
    def running(self) -> int:
        return self._running

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def is_saturated(self) -> bool:
        return self._running >= self.max_concurrent

    async def acquire(self) -> SlotToken:
        """Wait for a slot and return its token."""
        if self._running < self.max_concurrent and not self.waiting:
            self._running += 1
            return SlotToken()

        waiter: asyncio.Future[SlotToken] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just as we were cancelled
                self.release(waiter.result())
            raise

    def release(self, token: SlotToken) -> None:
        """Return a slot, handing it to the next waiter if there is one."""
        if token.released:
            return
        token.released = True

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(SlotToken())
                return

        self._running -= 1
        logger.debug("Slot released (%d/%d running)", self._running, self.max_concurrent)
