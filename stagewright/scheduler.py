"""Event-driven stage scheduler for one execution."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set, Tuple

from .contracts import Stage, StageType
from .dispatch import EXECUTION_LIMIT, STAGE_LIMIT, Deadline, TaskDispatcher, TaskOutcome
from .errors import ErrorKind
from .graph import ConditionKind, DependencyGraph
from .machine import ExecutionStateMachine
from .models import ErrorInfo, ExecutionStatus, StageStatus

logger = logging.getLogger(__name__)

_STAGE_EVENT = "stage"
_CONTROL_EVENT = "control"


def condition_holds(condition: ConditionKind, outcome: StageStatus) -> bool:
    if condition == ConditionKind.SUCCESS:
        return outcome == StageStatus.SUCCEEDED
    if condition == ConditionKind.FAILURE:
        return outcome == StageStatus.FAILED
    return outcome.is_terminal


class StageScheduler:
    """Drive the stages of one execution through the dependency graph.

    The scheduler sleeps on an internal event queue fed by finished stage
    runners and by status changes of the execution. Each wake-up promotes
    waiting stages, launches ready ones while the execution is running and
    finalizes once every stage is terminal.
    """

    def __init__(
        self,
        machine: ExecutionStateMachine,
        graph: DependencyGraph,
        dispatcher: TaskDispatcher,
    ) -> None:
        self._machine = machine
        self._graph = graph
        self._dispatcher = dispatcher
        self._workflow = machine.workflow
        self._events: asyncio.Queue[Tuple[str, Optional[str]]] = asyncio.Queue()
        self._runners: Set[asyncio.Task] = set()
        self._order: List[str] = [sid for layer in graph.layers for sid in layer]
        self._execution_deadline: Optional[Deadline] = None

    @property
    def runners(self) -> Set[asyncio.Task]:
        return set(self._runners)

    def _on_control(self) -> None:
        self._events.put_nowait((_CONTROL_EVENT, None))

    async def run(self) -> None:
        machine = self._machine
        self._execution_deadline = Deadline(
            machine,
            self._workflow.configuration.max_execution_time_ms,
            EXECUTION_LIMIT,
        )
        machine.add_control_listener(self._on_control)
        try:
            while not machine.status.is_terminal:
                await self._promote()
                if machine.status == ExecutionStatus.RUNNING:
                    await self._launch_ready()
                if self._all_terminal() and machine.status == ExecutionStatus.RUNNING:
                    if await machine.finalize():
                        break
                kind, stage_id = await self._events.get()
                logger.debug(f"Scheduler {machine.execution_id} woke on {kind} {stage_id or ''}")
        finally:
            machine.remove_control_listener(self._on_control)

    def _all_terminal(self) -> bool:
        return all(state.status.is_terminal for state in self._machine.record.stages)

    async def _promote(self) -> None:
        """Move waiting stages to ready or skipped until nothing changes."""
        record = self._machine.record
        changed = True
        while changed:
            changed = False
            for stage_id in self._order:
                if record.stage(stage_id).status != StageStatus.WAITING:
                    continue
                verdict, reason = self._readiness(stage_id)
                if verdict == StageStatus.WAITING:
                    continue
                await self._machine.stage_changed(stage_id, verdict, reason=reason)
                if record.status.is_terminal:
                    return
                changed = True

    def _readiness(self, stage_id: str) -> Tuple[StageStatus, Optional[str]]:
        record = self._machine.record
        blocked: Optional[str] = None
        for edge in self._graph.predecessors(stage_id):
            outcome = record.stage(edge.from_stage).status
            if not outcome.is_terminal:
                return StageStatus.WAITING, None
            if blocked is None and not condition_holds(edge.condition, outcome):
                blocked = (
                    f"dependency '{edge.from_stage}' {outcome.value}, "
                    f"condition '{edge.condition.value}' not met"
                )
        if blocked:
            return StageStatus.SKIPPED, blocked
        return StageStatus.READY, None

    async def _launch_ready(self) -> None:
        record = self._machine.record
        for stage_id in self._order:
            if self._machine.status != ExecutionStatus.RUNNING:
                return
            if record.stage(stage_id).status != StageStatus.READY:
                continue
            stage = self._workflow.execution_flow.stage(stage_id)
            if not await self._machine.stage_changed(stage_id, StageStatus.RUNNING):
                return
            runner = asyncio.create_task(
                self._run_stage(stage), name=f"stage:{record.id}:{stage_id}"
            )
            self._runners.add(runner)
            runner.add_done_callback(self._runners.discard)

    async def _run_stage(self, stage: Stage) -> None:
        try:
            deadline = Deadline(self._machine, stage.timeout_ms, STAGE_LIMIT)
            if stage.type == StageType.PARALLEL:
                outcomes = await self._run_parallel(stage, deadline)
            else:
                outcomes = await self._run_sequential(stage, deadline)
            await self._complete_stage(stage, outcomes)
        except Exception as exc:
            logger.exception(f"Stage {stage.id} of {self._machine.execution_id} crashed")
            await self._machine.stage_changed(
                stage.id,
                StageStatus.FAILED,
                reason=f"internal error: {exc}",
                error=ErrorInfo(
                    kind=ErrorKind.TASK_EXECUTION_FAILED,
                    message=str(exc) or type(exc).__name__,
                    details={"stage_id": stage.id, "exception": type(exc).__name__},
                ),
            )
        finally:
            self._events.put_nowait((_STAGE_EVENT, stage.id))

    async def _run_parallel(self, stage: Stage, deadline: Deadline) -> List[TaskOutcome]:
        results = await asyncio.gather(
            *(
                self._dispatcher.dispatch(task, stage, deadline, self._execution_deadline)
                for task in stage.tasks
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _run_sequential(self, stage: Stage, deadline: Deadline) -> List[TaskOutcome]:
        outcomes: List[TaskOutcome] = []
        tolerate = stage.retry_policy.tolerate_failure
        for index, task in enumerate(stage.tasks):
            outcome = await self._dispatcher.dispatch(
                task, stage, deadline, self._execution_deadline
            )
            outcomes.append(outcome)
            if outcome.discarded:
                break
            if outcome.failed and not tolerate:
                for rest in stage.tasks[index + 1:]:
                    await self._machine.task_skipped(
                        rest.id, f"previous task '{task.id}' failed"
                    )
                break
        return outcomes

    async def _complete_stage(self, stage: Stage, outcomes: List[TaskOutcome]) -> None:
        if any(outcome.discarded for outcome in outcomes):
            return
        failures = [o for o in outcomes if o.failed]
        if failures and not stage.retry_policy.tolerate_failure:
            first = self._earliest_failure(failures)
            await self._machine.stage_changed(
                stage.id,
                StageStatus.FAILED,
                reason=f"task '{first.task_id}' failed",
                error=first.error,
            )
            return
        reason = None
        if failures:
            reason = f"tolerated failure of {', '.join(o.task_id for o in failures)}"
        await self._machine.stage_changed(stage.id, StageStatus.SUCCEEDED, reason=reason)

    def _earliest_failure(self, failures: List[TaskOutcome]) -> TaskOutcome:
        record = self._machine.record

        def ended(outcome: TaskOutcome):
            return record.task(outcome.task_id).end_time

        stamped = [o for o in failures if ended(o) is not None]
        if not stamped:
            return failures[0]
        return min(stamped, key=ended)
