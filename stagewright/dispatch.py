"""Task dispatch with retry, backoff and layered timeouts."""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from .config import SchedulerConfig
from .contracts import ExecutionRequest, ExecutorResult, Stage, TaskDefinition, TaskType
from .errors import (
    ErrorKind,
    StagewrightError,
    TaskExecutionFailed,
    TaskTimeout,
)
from .executors.base import AgentExecutor
from .machine import ExecutionStateMachine, TaskStart
from .models import ErrorInfo, TaskStatus
from .progress import ProgressChannel
from .utils.concurrency import TaskSlots
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

TASK_LIMIT = "task"
STAGE_LIMIT = "stage"
EXECUTION_LIMIT = "execution"


class Deadline:
    """Time budget measured on the execution's active clock.

    Time spent paused does not count against the budget.
    """

    def __init__(self, machine: ExecutionStateMachine, budget_ms: int, label: str) -> None:
        self._machine = machine
        self.budget_ms = budget_ms
        self.label = label
        self._started = machine.active_elapsed_ms()

    def remaining_ms(self) -> float:
        return self.budget_ms - (self._machine.active_elapsed_ms() - self._started)


class AbandonedAttempts:
    """Executor calls left running after their attempt timed out.

    The dispatcher stops waiting at the deadline; whatever these calls return
    later is dropped. Holding a reference keeps them alive until they settle.
    """

    def __init__(self) -> None:
        self._pending: Set[asyncio.Future] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def adopt(self, work: asyncio.Future, handle: str) -> None:
        work.cancel()
        if work.done():
            return
        self._pending.add(work)
        work.add_done_callback(lambda fut: self._settled(fut, handle))

    def _settled(self, work: asyncio.Future, handle: str) -> None:
        self._pending.discard(work)
        if work.cancelled():
            return
        exc = work.exception()
        if exc is not None:
            logger.debug(f"Abandoned attempt {handle} raised {type(exc).__name__}: {exc}")
        else:
            logger.debug(f"Discarding late result of abandoned attempt {handle}")

    async def aclose(self) -> None:
        pending = list(self._pending)
        for work in pending:
            work.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class TaskOutcome(BaseModel):
    """Terminal outcome of dispatching one task."""

    task_id: str
    status: TaskStatus
    attempts: int = 0
    error: Optional[ErrorInfo] = None
    discarded: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def failed(self) -> bool:
        return self.status == TaskStatus.FAILED


class TaskDispatcher:
    """Hand tasks of one execution to the agent executor."""

    def __init__(
        self,
        machine: ExecutionStateMachine,
        executor: AgentExecutor,
        slots: TaskSlots,
        config: Optional[SchedulerConfig] = None,
        abandoned: Optional[AbandonedAttempts] = None,
    ) -> None:
        self._machine = machine
        self._executor = executor
        self._slots = slots
        self._config = config or SchedulerConfig()
        self.abandoned = abandoned if abandoned is not None else AbandonedAttempts()

    async def dispatch(
        self,
        task: TaskDefinition,
        stage: Stage,
        stage_deadline: Deadline,
        execution_deadline: Deadline,
    ) -> TaskOutcome:
        """Run ``task`` to a terminal outcome, retrying under the stage policy."""
        policy = stage.retry_policy
        auto_retry = self._machine.workflow.configuration.auto_retry
        max_retries = policy.max_retries if auto_retry else 0
        max_backoff = (
            policy.max_backoff_ms
            if policy.max_backoff_ms is not None
            else self._config.max_backoff_ms
        )
        state = self._machine.record.task(task.id)

        while True:
            attempt = state.retry_count + 1
            if not await self._start(task, attempt):
                return self._discarded(task, attempt - 1)
            try:
                result, error, retryable = await self._attempt(
                    task, attempt, stage_deadline, execution_deadline
                )
            finally:
                self._slots.release()

            if result is not None:
                if await self._machine.task_succeeded(task.id, result):
                    logger.debug(f"Task {task.id} completed on attempt {attempt}")
                    return TaskOutcome(task_id=task.id, status=TaskStatus.COMPLETED, attempts=attempt)
                return self._discarded(task, attempt)

            if retryable and state.retry_count < max_retries:
                delay = compute_backoff(
                    state.retry_count,
                    policy.backoff_ms,
                    max_backoff,
                    self._config.backoff_jitter_ms,
                )
                logger.warning(
                    f"Task {task.id} attempt {attempt} failed ({error.message}); retrying in {delay:.0f}ms"
                )
                if not await self._machine.task_retrying(task.id, error, delay):
                    return self._discarded(task, attempt)
                await asyncio.sleep(delay / 1000)
                continue

            final = self._terminal_error(task, error, attempt)
            logger.error(f"Task {task.id} failed after {attempt} attempt(s): {error.message}")
            timed_out = error.kind == ErrorKind.TIMEOUT
            if not await self._machine.task_failed(task.id, final, count_retry=timed_out):
                return self._discarded(task, attempt)
            return TaskOutcome(
                task_id=task.id, status=TaskStatus.FAILED, attempts=attempt, error=final
            )

    # ------------------------------------------------------------------

    async def _start(self, task: TaskDefinition, attempt: int) -> bool:
        """Take a slot and mark the attempt running.

        Returns ``False`` once the execution is terminal. A pause that lands
        between taking the slot and starting gives the slot back and waits.
        """
        while True:
            if not await self._machine.wait_until_runnable():
                return False
            await self._slots.acquire()
            try:
                started = await self._machine.task_started(task.id, attempt)
            except BaseException:
                self._slots.release()
                raise
            if started == TaskStart.STARTED:
                return True
            self._slots.release()
            if started == TaskStart.DISCARDED:
                return False

    def _discarded(self, task: TaskDefinition, attempts: int) -> TaskOutcome:
        return TaskOutcome(
            task_id=task.id, status=TaskStatus.CANCELLED, attempts=attempts, discarded=True
        )

    def _build_input(self, task: TaskDefinition) -> Dict[str, Any]:
        record = self._machine.record
        dependencies: Dict[str, Any] = {}
        for dep_id in task.dependencies:
            dep = record.task(dep_id)
            if dep.result is not None:
                dependencies[dep_id] = dep.result.model_dump(mode="json")
        payload: Dict[str, Any] = {
            "task": copy.deepcopy(task.inputs),
            "workflow_input": copy.deepcopy(record.input),
            "dependencies": dependencies,
        }
        if task.task_type == TaskType.SYNTHESIS:
            payload["intermediate_results"] = [
                item.model_dump(mode="json") for item in record.scratchpad.intermediate_results
            ]
        return payload

    def _effective_timeout(
        self,
        task: TaskDefinition,
        attempt_started: float,
        stage_deadline: Deadline,
        execution_deadline: Deadline,
    ) -> Tuple[float, str]:
        limits: List[Tuple[float, str]] = []
        if task.timeout_ms is not None:
            elapsed = (asyncio.get_running_loop().time() - attempt_started) * 1000
            limits.append((task.timeout_ms - elapsed, TASK_LIMIT))
        limits.append((stage_deadline.remaining_ms(), STAGE_LIMIT))
        limits.append((execution_deadline.remaining_ms(), EXECUTION_LIMIT))
        return min(limits, key=lambda item: item[0])

    async def _attempt(
        self,
        task: TaskDefinition,
        attempt: int,
        stage_deadline: Deadline,
        execution_deadline: Deadline,
    ) -> Tuple[Optional[ExecutorResult], Optional[ErrorInfo], bool]:
        """Run one attempt.

        Returns ``(result, None, False)`` on success, otherwise
        ``(None, error, retryable)``.
        """
        machine = self._machine
        attempt_started = asyncio.get_running_loop().time()
        limit_ms, limit = self._effective_timeout(
            task, attempt_started, stage_deadline, execution_deadline
        )
        if limit_ms <= 0:
            error = TaskTimeout(
                f"Task '{task.id}' was not run: {limit} deadline elapsed",
                details={"limit": limit},
            ).to_error_info()
            return None, error, False

        handle = f"{machine.execution_id}:{task.id}:{attempt}"
        channel = ProgressChannel(task.id, self._config.progress_buffer)
        shared = (
            copy.deepcopy(machine.record.scratchpad.shared_context)
            if machine.workflow.configuration.shared_context
            else {}
        )
        request = ExecutionRequest(
            handle=handle,
            execution_id=machine.execution_id,
            task_id=task.id,
            agent_id=task.agent_id,
            task_type=task.task_type,
            input=self._build_input(task),
            shared_context=shared,
            timeout_ms=int(limit_ms),
        )

        machine.track_handle(handle)
        drain = asyncio.ensure_future(self._drain(channel))
        work = asyncio.ensure_future(self._executor.execute(request, channel))
        try:
            result = await self._await_result(
                work, handle, task, attempt_started, stage_deadline, execution_deadline
            )
        except asyncio.CancelledError:
            self.abandoned.adopt(work, handle)
            raise
        except TaskTimeout as exc:
            logger.warning(f"Task {task.id} attempt {attempt}: {exc.message}")
            return None, exc.to_error_info(), exc.details.get("limit") == TASK_LIMIT
        except StagewrightError as exc:
            return None, exc.to_error_info(), True
        except Exception as exc:
            logger.warning(f"Task {task.id} attempt {attempt} raised {type(exc).__name__}: {exc}")
            error = ErrorInfo(
                kind=ErrorKind.TASK_EXECUTION_FAILED,
                message=str(exc) or type(exc).__name__,
                details={"exception": type(exc).__name__},
            )
            return None, error, True
        finally:
            machine.untrack_handle(handle)
            channel.close()
            await drain

        if result.success:
            return result, None, False
        error = ErrorInfo(
            kind=ErrorKind.TASK_EXECUTION_FAILED,
            message=result.error or "executor reported failure",
        )
        return None, error, True

    async def _await_result(
        self,
        work: asyncio.Future,
        handle: str,
        task: TaskDefinition,
        attempt_started: float,
        stage_deadline: Deadline,
        execution_deadline: Deadline,
    ) -> ExecutorResult:
        """Wait for ``work`` until the tightest deadline.

        On timeout the call is abandoned rather than awaited, so an executor
        that ignores cancellation cannot hold the slot past the deadline.
        """
        while True:
            limit_ms, limit = self._effective_timeout(
                task, attempt_started, stage_deadline, execution_deadline
            )
            if limit_ms <= 0:
                break
            done, _ = await asyncio.wait({work}, timeout=limit_ms / 1000)
            if done:
                return work.result()
            if limit == TASK_LIMIT:
                break
            # Deadlines are re-read since a pause may have extended them.

        self.abandoned.adopt(work, handle)
        raise TaskTimeout(
            f"Task '{task.id}' exceeded its {limit} timeout",
            details={"limit": limit},
        )

    async def _drain(self, channel: ProgressChannel) -> None:
        async for update in channel.updates():
            await self._machine.task_progress(update.task_id, update.progress, update.message)

    def _terminal_error(self, task: TaskDefinition, error: ErrorInfo, attempts: int) -> ErrorInfo:
        details = {"attempts": attempts, "cause": error.kind.value}
        if isinstance(error.details, dict):
            details.update(error.details)
        if error.kind == ErrorKind.TIMEOUT:
            return TaskTimeout(error.message, details=details).to_error_info()
        return TaskExecutionFailed(
            f"Task '{task.id}' failed after {attempts} attempt(s): {error.message}",
            details=details,
        ).to_error_info()
