"""Base interface for agent executors."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Awaitable, Dict, Set

from ..contracts import ExecutionRequest, ExecutorResult
from ..progress import ProgressChannel

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"


class AgentExecutor(metaclass=abc.ABCMeta):
    """Abstract collaborator that performs an agent's work for one task attempt."""

    supports_cancel: bool = False

    def __init__(self) -> None:
        self._inflight: Dict[str, asyncio.Task] = {}
        self._cancelled: Set[str] = set()

    async def connect(self) -> None:
        """Open connections to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connections to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def execute(
        self, request: ExecutionRequest, progress: ProgressChannel
    ) -> ExecutorResult:
        """Run one attempt of a task and return its result.

        Raising is equivalent to returning ``ExecutorResult(success=False)``.
        """
        raise NotImplementedError

    async def cancel(self, handle: str) -> None:
        """Best-effort cancellation of the attempt identified by ``handle``."""
        inflight = self._inflight.get(handle)
        if inflight is None or inflight.done():
            return
        logger.debug(f"Cancelling executor handle {handle}")
        self._cancelled.add(handle)
        inflight.cancel()

    async def _run_tracked(
        self, handle: str, work: Awaitable[ExecutorResult]
    ) -> ExecutorResult:
        """Run ``work`` so that ``cancel(handle)`` can interrupt it."""
        inner = asyncio.ensure_future(work)
        self._inflight[handle] = inner
        try:
            return await inner
        except asyncio.CancelledError:
            if handle in self._cancelled and inner.cancelled():
                return ExecutorResult(success=False, error=CANCELLED_ERROR)
            raise
        finally:
            self._inflight.pop(handle, None)
            self._cancelled.discard(handle)
