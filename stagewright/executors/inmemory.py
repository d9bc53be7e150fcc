"""In-process executor driven by scripted handlers."""

from __future__ import annotations

import inspect
from typing import Any, Callable, Dict, List, Optional

from ..contracts import ExecutionRequest, ExecutorResult
from ..errors import ExecutorUnavailable
from ..progress import ProgressChannel
from .base import AgentExecutor

Handler = Callable[[ExecutionRequest, ProgressChannel], Any]


def echo_handler(request: ExecutionRequest, progress: ProgressChannel) -> Dict[str, Any]:
    """Return the task input unchanged."""
    progress.report(100)
    return {
        "agent_id": request.agent_id,
        "task_id": request.task_id,
        "echo": request.input.get("task", {}),
    }


class InMemoryExecutor(AgentExecutor):
    """Execute tasks with local callables keyed by agent id.

    Handlers may be sync or async, and may return an ``ExecutorResult`` or any
    raw value (treated as a successful output). Useful for tests or when no
    model backend is configured.
    """

    def __init__(
        self,
        handlers: Optional[Dict[str, Handler]] = None,
        default: Optional[Handler] = echo_handler,
        cancellable: bool = True,
    ) -> None:
        super().__init__()
        self._handlers: Dict[str, Handler] = dict(handlers or {})
        self._default = default
        self.cancellable = cancellable
        self.calls: List[ExecutionRequest] = []
        self.cancel_requests: List[str] = []

    @property
    def supports_cancel(self) -> bool:  # type: ignore[override]
        return self.cancellable

    def register(self, agent_id: str, handler: Handler) -> None:
        self._handlers[agent_id] = handler

    def calls_for(self, task_id: str) -> List[ExecutionRequest]:
        return [call for call in self.calls if call.task_id == task_id]

    async def execute(
        self, request: ExecutionRequest, progress: ProgressChannel
    ) -> ExecutorResult:
        handler = self._handlers.get(request.agent_id, self._default)
        if handler is None:
            raise ExecutorUnavailable(f"No handler registered for agent '{request.agent_id}'")
        self.calls.append(request)
        return await self._run_tracked(request.handle, self._invoke(handler, request, progress))

    async def cancel(self, handle: str) -> None:
        self.cancel_requests.append(handle)
        if not self.cancellable:
            return
        await super().cancel(handle)

    async def _invoke(
        self, handler: Handler, request: ExecutionRequest, progress: ProgressChannel
    ) -> ExecutorResult:
        result = handler(request, progress)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, ExecutorResult):
            return result
        return ExecutorResult(success=True, output=result)
