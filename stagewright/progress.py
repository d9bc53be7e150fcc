"""Non-blocking progress reporting from executors."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from pydantic import BaseModel, Field


class ProgressUpdate(BaseModel):
    task_id: str
    progress: int = Field(ge=0, le=100)
    message: Optional[str] = None


class ProgressChannel:
    """Bounded channel an executor uses to report task progress.

    ``report`` never blocks: when the buffer is full the oldest pending update
    is dropped, since only the latest value matters.
    """

    def __init__(self, task_id: str, maxsize: int) -> None:
        self.task_id = task_id
        self._queue: asyncio.Queue[Optional[ProgressUpdate]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def report(self, progress: int, message: Optional[str] = None) -> None:
        if self._closed:
            return
        update = ProgressUpdate(
            task_id=self.task_id, progress=max(0, min(100, int(progress))), message=message
        )
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(update)

    def close(self) -> None:
        """Stop accepting reports and wake the consumer."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(None)

    async def updates(self) -> AsyncIterator[ProgressUpdate]:
        while True:
            update = await self._queue.get()
            if update is None:
                return
            yield update
