"""Single-writer owner of one execution record."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

from .constants import DEFAULT_OBSERVER_BUFFER
from .contracts import ExecutorResult, TaskType, WorkflowDefinition, coerce_output
from .errors import ErrorKind, InvalidStateTransition
from .models import (
    ControlAction,
    ControlResult,
    ErrorInfo,
    ExecutionEvent,
    ExecutionRecord,
    ExecutionStatus,
    IntermediateResult,
    StageStatus,
    TaskStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.PLANNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.PLANNING: frozenset(
        {ExecutionStatus.CONFIRMED, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.CONFIRMED: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.PAUSED,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.PAUSED: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}

# Statuses each operator action may be issued from.
_ACTION_SOURCES: Dict[ControlAction, FrozenSet[ExecutionStatus]] = {
    ControlAction.PAUSE: frozenset({ExecutionStatus.RUNNING}),
    ControlAction.RESUME: frozenset({ExecutionStatus.PAUSED}),
    ControlAction.CANCEL: frozenset(
        s for s in ExecutionStatus if not s.is_terminal
    ),
}

_ACTION_TARGETS: Dict[ControlAction, ExecutionStatus] = {
    ControlAction.PAUSE: ExecutionStatus.PAUSED,
    ControlAction.RESUME: ExecutionStatus.RUNNING,
    ControlAction.CANCEL: ExecutionStatus.CANCELLED,
}


class TaskStart(str, Enum):
    """Answer of the state machine to a request to start a task attempt."""

    STARTED = "started"
    # Execution is paused or not yet running; wait and ask again.
    DEFERRED = "deferred"
    # Execution is terminal; the attempt must not run.
    DISCARDED = "discarded"


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    return target in TRANSITIONS[current]


class ExecutionStateMachine:
    """Apply scheduler events and operator commands to an ``ExecutionRecord``.

    Every mutation happens under one ``asyncio.Lock`` owned by this execution,
    so events for the same execution are applied strictly one at a time. Once
    the record is terminal, later task events are discarded without touching
    the record.
    """

    def __init__(
        self,
        record: ExecutionRecord,
        workflow: WorkflowDefinition,
        store: Any,
        observer_buffer: int = DEFAULT_OBSERVER_BUFFER,
        on_terminal: Optional[Callable[[ExecutionRecord], None]] = None,
    ) -> None:
        self.record = record
        self.workflow = workflow
        self._store = store
        self._lock = asyncio.Lock()
        self._observer_buffer = observer_buffer
        self._observers: List[asyncio.Queue] = []
        self._control_listeners: List[Callable[[], None]] = []
        self._on_terminal = on_terminal
        self._handles: Set[str] = set()
        self._runnable = asyncio.Event()
        self.finished = asyncio.Event()
        self._started_at: Optional[float] = None
        self._paused_since: Optional[float] = None
        self._paused_total = 0.0

    # ------------------------------------------------------------------
    # Introspection

    @property
    def execution_id(self) -> str:
        return self.record.id

    @property
    def status(self) -> ExecutionStatus:
        return self.record.status

    @property
    def inflight_handles(self) -> Set[str]:
        return set(self._handles)

    def active_elapsed_ms(self) -> float:
        """Milliseconds spent running since the first start, pauses excluded."""
        if self._started_at is None:
            return 0.0
        now = time.monotonic()
        paused = self._paused_total
        if self._paused_since is not None:
            paused += now - self._paused_since
        return (now - self._started_at - paused) * 1000

    async def wait_until_runnable(self) -> bool:
        """Block while paused. Returns ``False`` once the execution is terminal."""
        while True:
            await self._runnable.wait()
            if self.record.status == ExecutionStatus.RUNNING:
                return True
            if self.record.status.is_terminal:
                return False

    def track_handle(self, handle: str) -> None:
        self._handles.add(handle)

    def untrack_handle(self, handle: str) -> None:
        self._handles.discard(handle)

    # ------------------------------------------------------------------
    # Observers

    def subscribe(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        """Return a queue receiving ``ExecutionEvent``s, closed with ``None``."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self._observer_buffer)
        if self.finished.is_set():
            queue.put_nowait(None)
        else:
            self._observers.append(queue)
        return queue

    def add_control_listener(self, listener: Callable[[], None]) -> None:
        self._control_listeners.append(listener)

    def remove_control_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._control_listeners:
            self._control_listeners.remove(listener)

    def _publish(self, event: str, **fields: Any) -> None:
        if not self._observers:
            return
        message = ExecutionEvent(execution_id=self.record.id, event=event, **fields)
        for queue in self._observers:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.debug(f"Observer queue full for {self.record.id}, dropping {event}")

    def _close_observers(self) -> None:
        for queue in self._observers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)
        self._observers.clear()

    def _publish_progress(self, task_id: Optional[str] = None, message: Optional[str] = None) -> None:
        self._publish(
            "progress",
            task_id=task_id,
            progress=self.record.progress().percentage,
            status=self.record.status.value,
            message=message,
        )

    # ------------------------------------------------------------------
    # Status transitions

    async def persist(self) -> None:
        await self._store.save_execution(self.record)

    def _apply_transition(
        self,
        target: ExecutionStatus,
        reason: Optional[str] = None,
        action: Optional[str] = None,
    ) -> ExecutionStatus:
        previous = self.record.status
        if not can_transition(previous, target):
            raise InvalidStateTransition(previous, target, action=action)

        now = time.monotonic()
        if previous == ExecutionStatus.PAUSED and self._paused_since is not None:
            self._paused_total += now - self._paused_since
            self._paused_since = None
        if target == ExecutionStatus.PAUSED:
            self._paused_since = now
            self._runnable.clear()
        elif target == ExecutionStatus.RUNNING:
            if self._started_at is None:
                self._started_at = now
            self._runnable.set()
        elif target.is_terminal:
            self._runnable.set()

        self.record.status = target
        self.record.scratchpad.trace(
            "execution.status",
            previous=previous.value,
            status=target.value,
            reason=reason,
        )
        logger.info(
            f"Execution {self.record.id}: {previous.value} -> {target.value}"
            + (f" ({reason})" if reason else "")
        )
        if self.workflow.configuration.notifications:
            self._publish("status", status=target.value, message=reason)
        for listener in list(self._control_listeners):
            listener()
        return previous

    async def transition(
        self,
        target: ExecutionStatus,
        reason: Optional[str] = None,
        persist: bool = True,
    ) -> ExecutionStatus:
        """Move to ``target`` and return the previous status."""
        async with self._lock:
            previous = self._apply_transition(target, reason)
            if persist:
                await self.persist()
            return previous

    async def control(self, action: ControlAction, reason: Optional[str] = None) -> ControlResult:
        """Apply an operator ``pause``, ``resume`` or ``cancel``."""
        async with self._lock:
            previous = self.record.status
            target = _ACTION_TARGETS[action]
            if previous not in _ACTION_SOURCES[action]:
                raise InvalidStateTransition(previous, target, action=action.value)

            if action == ControlAction.CANCEL:
                self._cancel_outstanding(reason)
            self._apply_transition(target, reason, action=action.value)
            if action == ControlAction.CANCEL:
                self._stamp_completion()
            await self.persist()
            if action == ControlAction.CANCEL:
                self._finish()
            return ControlResult(
                execution_id=self.record.id,
                action=action,
                previous_status=previous,
                new_status=target,
                reason=reason,
            )

    def _cancel_outstanding(self, reason: Optional[str]) -> None:
        now = utcnow()
        for task in self.record.tasks:
            if not task.status.is_terminal:
                task.status = TaskStatus.CANCELLED
                task.end_time = now
        for stage in self.record.stages:
            if not stage.status.is_terminal:
                stage.status = StageStatus.CANCELLED
                stage.completed_at = now
                stage.reason = reason
        self.record.scratchpad.trace(
            "execution.cancelled",
            reason=reason,
            inflight=sorted(self._handles),
        )

    async def abort(self, error: ErrorInfo) -> None:
        """Fail a running or paused execution after an internal error."""
        async with self._lock:
            if self.record.status.is_terminal:
                return
            self.record.error_details = error
            if self.record.status == ExecutionStatus.PAUSED:
                self._apply_transition(ExecutionStatus.RUNNING, "aborting")
            self._apply_transition(ExecutionStatus.FAILED, error.message)
            self._stamp_completion()
            await self.persist()
            self._finish()

    # ------------------------------------------------------------------
    # Task events

    def _accepting(self, event: str, task_id: str) -> bool:
        if self.record.status.is_terminal:
            logger.debug(
                f"Discarding {event} for task {task_id} of {self.record.status.value} execution {self.record.id}"
            )
            return False
        return True

    async def task_started(self, task_id: str, attempt: int) -> TaskStart:
        """Mark an attempt as running, if the execution is still running.

        The status is read under the lock, so a pause applied while the
        caller waited for it defers the attempt instead of starting it.
        """
        async with self._lock:
            if not self._accepting("start", task_id):
                return TaskStart.DISCARDED
            if self.record.status != ExecutionStatus.RUNNING:
                logger.debug(
                    f"Deferring task {task_id}: execution {self.record.id} is {self.record.status.value}"
                )
                return TaskStart.DEFERRED
            task = self.record.task(task_id)
            task.status = TaskStatus.RUNNING
            task.attempts = attempt
            if task.start_time is None:
                task.start_time = utcnow()
            self.record.scratchpad.trace("task.started", task_id=task_id, attempt=attempt)
            self._publish("task.started", task_id=task_id)
            return TaskStart.STARTED

    async def task_progress(
        self, task_id: str, progress: int, message: Optional[str] = None
    ) -> bool:
        async with self._lock:
            if not self._accepting("progress", task_id):
                return False
            task = self.record.task(task_id)
            if task.status.is_terminal:
                return False
            task.progress = progress
            self._publish("task.progress", task_id=task_id, progress=progress, message=message)
            return True

    async def task_retrying(self, task_id: str, error: ErrorInfo, delay_ms: float) -> bool:
        async with self._lock:
            if not self._accepting("retry", task_id):
                return False
            task = self.record.task(task_id)
            task.status = TaskStatus.RETRYING
            task.error = error
            task.retry_count += 1
            self.record.scratchpad.trace(
                "task.retrying",
                task_id=task_id,
                retry_count=task.retry_count,
                delay_ms=delay_ms,
                error=error.message,
                kind=error.kind.value,
            )
            return True

    async def task_succeeded(self, task_id: str, result: ExecutorResult) -> bool:
        async with self._lock:
            if not self._accepting("result", task_id):
                return False
            task = self.record.task(task_id)
            output = coerce_output(result.output)
            task.status = TaskStatus.COMPLETED
            task.progress = 100
            task.result = output
            task.error = None
            task.end_time = utcnow()
            task.tokens_used += result.tokens_used

            scratchpad = self.record.scratchpad
            scratchpad.agent_outputs[task.agent_id] = output
            scratchpad.intermediate_results.append(
                IntermediateResult(task_id=task_id, agent_id=task.agent_id, result=output)
            )
            if self.workflow.configuration.shared_context:
                scratchpad.shared_context[task_id] = output.model_dump(mode="json")
            self.record.metadata.tokens_used += result.tokens_used
            self.record.metadata.cost += result.cost
            scratchpad.trace(
                "task.completed",
                task_id=task_id,
                agent_id=task.agent_id,
                attempts=task.attempts,
                tokens_used=result.tokens_used,
                tools_used=list(result.tools_used),
            )
            self._publish_progress(task_id)
            await self.persist()
            return True

    async def task_failed(
        self, task_id: str, error: ErrorInfo, count_retry: bool = False
    ) -> bool:
        """Fail a task terminally.

        ``count_retry`` bumps ``retry_count`` for a final timed-out attempt,
        matching what ``task_retrying`` does for the retried ones.
        """
        async with self._lock:
            if not self._accepting("failure", task_id):
                return False
            task = self.record.task(task_id)
            task.status = TaskStatus.FAILED
            task.error = error
            if count_retry:
                task.retry_count += 1
            task.end_time = utcnow()
            self.record.scratchpad.trace(
                "task.failed",
                task_id=task_id,
                kind=error.kind.value,
                error=error.message,
                attempts=task.attempts,
            )
            self._publish_progress(task_id, message=error.message)
            await self.persist()
            return True

    async def task_skipped(self, task_id: str, reason: str) -> bool:
        async with self._lock:
            if not self._accepting("skip", task_id):
                return False
            self._skip_task(task_id, reason)
            await self.persist()
            return True

    def _skip_task(self, task_id: str, reason: str) -> None:
        task = self.record.task(task_id)
        if task.status.is_terminal:
            return
        task.status = TaskStatus.SKIPPED
        task.end_time = utcnow()
        self.record.scratchpad.trace("task.skipped", task_id=task_id, reason=reason)

    # ------------------------------------------------------------------
    # Stage events

    async def stage_changed(
        self,
        stage_id: str,
        status: StageStatus,
        reason: Optional[str] = None,
        error: Optional[ErrorInfo] = None,
    ) -> bool:
        async with self._lock:
            if self.record.status.is_terminal:
                return False
            stage = self.record.stage(stage_id)
            stage.status = status
            if status == StageStatus.RUNNING:
                stage.started_at = utcnow()
            if reason:
                stage.reason = reason
            if error:
                stage.error = error
            if status == StageStatus.SKIPPED:
                for task in self.record.tasks:
                    if task.stage_id == stage_id:
                        self._skip_task(task.id, reason or f"stage '{stage_id}' skipped")
            self.record.scratchpad.trace(
                f"stage.{status.value}", stage_id=stage_id, reason=reason
            )
            if status.is_terminal:
                stage.completed_at = utcnow()
                logger.info(f"Execution {self.record.id}: stage {stage_id} {status.value}")
                self._publish("stage", status=status.value, message=stage_id)
                await self.persist()
            return True

    # ------------------------------------------------------------------
    # Finalization

    async def finalize(self) -> bool:
        """Settle a running execution whose stages are all terminal.

        Returns ``False`` when the execution is not running (paused executions
        are settled after resume).
        """
        async with self._lock:
            if self.record.status != ExecutionStatus.RUNNING:
                return False
            unfinished = [s.id for s in self.record.stages if not s.status.is_terminal]
            if unfinished:
                raise RuntimeError(f"Stages still active: {unfinished}")

            required = {s.id for s in self.workflow.execution_flow.stages if s.required}
            blocking = [
                s
                for s in self.record.stages
                if s.id in required and s.status != StageStatus.SUCCEEDED
            ]
            if blocking:
                if self.record.error_details is None:
                    self.record.error_details = self._first_unrecoverable_error(blocking)
                target = ExecutionStatus.FAILED
                reason = f"required stage '{blocking[0].id}' {blocking[0].status.value}"
            else:
                target = ExecutionStatus.COMPLETED
                reason = None

            self.record.output = self._final_output()
            self._apply_transition(target, reason)
            self._stamp_completion()
            await self.persist()
            self._finish()
            return True

    def _first_unrecoverable_error(self, blocking) -> ErrorInfo:
        blocking_ids = {s.id for s in blocking}
        failed = [
            t
            for t in self.record.tasks
            if t.status == TaskStatus.FAILED and t.stage_id in blocking_ids and t.error
        ]
        if failed:
            first = min(failed, key=lambda t: t.end_time or utcnow())
            return first.error.model_copy(deep=True)
        for stage in blocking:
            if stage.error:
                return stage.error.model_copy(deep=True)
        stage = blocking[0]
        return ErrorInfo(
            kind=ErrorKind.TASK_EXECUTION_FAILED,
            message=f"Required stage '{stage.id}' was {stage.status.value}",
            details={"stage_id": stage.id, "reason": stage.reason},
        )

    def _final_output(self) -> Any:
        flow = self.workflow.execution_flow
        synthesis = [
            task.id
            for _, task in flow.iter_tasks()
            if task.task_type == TaskType.SYNTHESIS
        ]
        for task_id in reversed(synthesis):
            state = self.record.task(task_id)
            if state.result is not None:
                return state.result.model_dump(mode="json")
        return {
            t.id: t.result.model_dump(mode="json")
            for t in self.record.tasks
            if t.result is not None
        }

    def _stamp_completion(self) -> None:
        metadata = self.record.metadata
        metadata.completed_at = utcnow()
        delta = metadata.completed_at - metadata.started_at
        metadata.total_duration_ms = int(delta.total_seconds() * 1000)

    def _finish(self) -> None:
        self._close_observers()
        self.finished.set()
        if self._on_terminal is not None:
            self._on_terminal(self.record)
