"""Global task budget shared by every execution in a process."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class TaskSlots:
    """Bounded pool of task attempt slots.

    Waiters are served in arrival order (``asyncio.Semaphore`` keeps a FIFO
    queue of waiters), so no execution can starve another.
    """

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("TaskSlots limit must be positive")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0
        self._peak = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def peak(self) -> int:
        """Highest number of slots held at the same time."""
        return self._peak

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)

    def release(self) -> None:
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()
