"""Start, confirm and steer workflow executions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from .config import StagewrightConfig
from .contracts import WorkflowDefinition
from .dispatch import AbandonedAttempts, TaskDispatcher
from .errors import ErrorKind, InvalidStateTransition, NotFound, ValidationError
from .executors.base import AgentExecutor
from .graph import build_plan, validate_workflow
from .machine import ExecutionStateMachine
from .models import (
    ControlAction,
    ControlResult,
    ErrorInfo,
    ExecutionRecord,
    ExecutionStatus,
)
from .registry import ActiveExecution, ExecutionRegistry
from .scheduler import StageScheduler
from .utils.concurrency import TaskSlots

logger = logging.getLogger(__name__)


class Orchestrator:
    """Own the lifecycle of executions in one process.

    All executions started by the same orchestrator share one ``TaskSlots``
    budget, so the number of in-flight task attempts never exceeds
    ``config.scheduler.max_parallel_tasks``.
    """

    def __init__(
        self,
        store: Any,
        executor: AgentExecutor,
        registry: Optional[ExecutionRegistry] = None,
        config: Optional[StagewrightConfig] = None,
        slots: Optional[TaskSlots] = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.registry = registry if registry is not None else ExecutionRegistry()
        self.config = config or StagewrightConfig()
        self.slots = slots or TaskSlots(self.config.scheduler.max_parallel_tasks)
        self.abandoned = AbandonedAttempts()

    # ------------------------------------------------------------------
    # Starting

    async def start(self, workflow: WorkflowDefinition, input: Any = None) -> ExecutionRecord:
        """Validate ``workflow`` and start a new execution of it.

        Nothing is persisted or registered unless the dependency graph is valid
        and every referenced agent exists in the store. The returned record is
        the live instance owned by the execution's state machine.
        """
        graph = validate_workflow(workflow, self.config.dependency_conditions)
        record = ExecutionRecord.for_workflow(workflow, input, build_plan(workflow, graph))
        machine = ExecutionStateMachine(
            record,
            workflow,
            self.store,
            observer_buffer=self.config.scheduler.observer_buffer,
            on_terminal=self._on_terminal,
        )
        await machine.transition(ExecutionStatus.PLANNING, "validating agents", persist=False)
        await self._check_agents(workflow)

        await machine.persist()
        entry = ActiveExecution(machine, workflow, graph)
        self.registry.register(entry)
        logger.info(
            f"Execution {record.id} of workflow {workflow.id} planned: "
            f"{record.plan.total_stages} stages, {record.plan.total_tasks} tasks"
        )

        if workflow.configuration.require_confirmation:
            return record
        await self._launch(entry, "started")
        return record

    async def _check_agents(self, workflow: WorkflowDefinition) -> None:
        referenced: List[str] = list(workflow.agent_ids)
        for _, task in workflow.execution_flow.iter_tasks():
            if task.agent_id not in referenced:
                referenced.append(task.agent_id)

        missing = []
        for agent_id in referenced:
            if await self.store.load_agent(agent_id) is None:
                missing.append(agent_id)
        if missing:
            raise ValidationError(
                f"Unknown agent(s): {', '.join(missing)}",
                issues=[f"Agent '{agent_id}' does not exist" for agent_id in missing],
                details={"missing_agents": missing},
            )

    async def confirm(self, execution_id: str) -> ExecutionRecord:
        """Release an execution waiting for plan confirmation."""
        entry = await self._require_active(execution_id, ExecutionStatus.CONFIRMED, "confirm")
        if entry.machine.status != ExecutionStatus.PLANNING:
            raise InvalidStateTransition(
                entry.machine.status, ExecutionStatus.CONFIRMED, action="confirm"
            )
        await self._launch(entry, "plan confirmed")
        return entry.record

    async def _launch(self, entry: ActiveExecution, reason: str) -> None:
        machine = entry.machine
        await machine.transition(ExecutionStatus.CONFIRMED, reason)
        await machine.transition(ExecutionStatus.RUNNING)
        dispatcher = TaskDispatcher(
            machine, self.executor, self.slots, self.config.scheduler, self.abandoned
        )
        scheduler = StageScheduler(machine, entry.graph, dispatcher)
        entry.scheduler = scheduler
        entry.driver = asyncio.create_task(
            self._drive(machine, scheduler), name=f"execution:{entry.execution_id}"
        )

    async def _drive(self, machine: ExecutionStateMachine, scheduler: StageScheduler) -> None:
        try:
            await scheduler.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"Scheduler for execution {machine.execution_id} failed")
            await machine.abort(
                ErrorInfo(
                    kind=ErrorKind.TASK_EXECUTION_FAILED,
                    message=f"Scheduler failed: {exc}",
                    details={"exception": type(exc).__name__},
                )
            )

    def _on_terminal(self, record: ExecutionRecord) -> None:
        self.registry.remove(record.id)
        logger.info(f"Execution {record.id} finished with status {record.status.value}")

    # ------------------------------------------------------------------
    # Operator commands

    async def _require_active(
        self, execution_id: str, target: ExecutionStatus, action: str
    ) -> ActiveExecution:
        entry = self.registry.get(execution_id)
        if entry is not None:
            return entry
        record = await self.store.load_execution(execution_id)
        if record is None:
            raise NotFound(f"Execution '{execution_id}' not found")
        raise InvalidStateTransition(record.status, target, action=action)

    async def control(
        self, execution_id: str, action: ControlAction, reason: Optional[str] = None
    ) -> ControlResult:
        entry = await self._require_active(
            execution_id, _TARGETS[action], action.value
        )
        handles = entry.machine.inflight_handles
        result = await entry.machine.control(action, reason)
        if action == ControlAction.CANCEL:
            await self._signal_cancel(execution_id, handles | entry.machine.inflight_handles)
        return result

    async def pause(self, execution_id: str, reason: Optional[str] = None) -> ControlResult:
        return await self.control(execution_id, ControlAction.PAUSE, reason)

    async def resume(self, execution_id: str, reason: Optional[str] = None) -> ControlResult:
        return await self.control(execution_id, ControlAction.RESUME, reason)

    async def cancel(self, execution_id: str, reason: Optional[str] = None) -> ControlResult:
        return await self.control(execution_id, ControlAction.CANCEL, reason)

    async def _signal_cancel(self, execution_id: str, handles) -> None:
        if not handles or not self.executor.supports_cancel:
            return
        for handle in sorted(handles):
            try:
                await self.executor.cancel(handle)
            except Exception as exc:
                logger.warning(
                    f"Executor refused cancellation of {handle} for {execution_id}: {exc}"
                )

    # ------------------------------------------------------------------
    # Queries

    async def get_record(self, execution_id: str) -> ExecutionRecord:
        """Return the live record if active, else the stored one."""
        entry = self.registry.get(execution_id)
        if entry is not None:
            return entry.record
        record = await self.store.load_execution(execution_id)
        if record is None:
            raise NotFound(f"Execution '{execution_id}' not found")
        return record

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionRecord:
        """Wait until the execution is terminal and return its record."""
        entry = self.registry.get(execution_id)
        if entry is None:
            return await self.get_record(execution_id)
        await asyncio.wait_for(entry.machine.finished.wait(), timeout)
        return entry.record

    def subscribe(self, execution_id: str, maxsize: Optional[int] = None) -> asyncio.Queue:
        entry = self.registry.get(execution_id)
        if entry is None:
            raise NotFound(f"Execution '{execution_id}' is not active")
        return entry.machine.subscribe(maxsize)

    async def aclose(self) -> None:
        """Stop the schedulers of every active execution and any abandoned attempts."""
        tasks: List[asyncio.Task] = []
        for entry in self.registry.list():
            if entry.driver is not None:
                tasks.append(entry.driver)
            if entry.scheduler is not None:
                tasks.extend(entry.scheduler.runners)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.abandoned.aclose()


_TARGETS = {
    ControlAction.PAUSE: ExecutionStatus.PAUSED,
    ControlAction.RESUME: ExecutionStatus.RUNNING,
    ControlAction.CANCEL: ExecutionStatus.CANCELLED,
}
