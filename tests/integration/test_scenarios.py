"""End-to-end scenarios driven through the orchestrator."""

import asyncio

import pytest

from stagewright import (
    ControlAction,
    CyclicDependency,
    ErrorKind,
    ExecutionRecord,
    ExecutionStatus,
    InvalidStateTransition,
    Orchestrator,
    StagewrightConfig,
    StageStatus,
    TaskStatus,
    ValidationError,
)
from stagewright.config import SchedulerConfig
from stagewright.dispatch import STAGE_LIMIT, Deadline, TaskDispatcher
from stagewright.executors import InMemoryExecutor, echo_handler
from stagewright.machine import ExecutionStateMachine
from stagewright.persistence import InMemoryExecutionStore
from stagewright.utils.concurrency import TaskSlots


def by_task(**handlers):
    """Route requests to per-task handlers, echoing for the rest."""

    async def route(request, progress):
        handler = handlers.get(request.task_id, echo_handler)
        result = handler(request, progress)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    return route


def failing(request, progress):
    raise RuntimeError(f"{request.task_id} exploded")


async def hang(request, progress):
    await asyncio.Event().wait()


def ignores_cancel(released):
    """Handler that ignores cancellation until ``released`` is set."""

    async def handler(request, progress):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            await released.wait()
            return "late"

    return handler


class GatedStore(InMemoryExecutionStore):
    """Store whose next save blocks until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.hold = False
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def save_execution(self, record):
        if self.hold:
            self.hold = False
            self.entered.set()
            await self.release.wait()
        await super().save_execution(record)


async def run(orchestrator, workflow, input=None, timeout=5.0):
    record = await orchestrator.start(workflow, input)
    return await orchestrator.wait(record.id, timeout)


@pytest.mark.asyncio
async def test_parallel_tasks_run_concurrently(orchestrator, executor, wf):
    arrived = []
    both = asyncio.Event()

    async def meet(request, progress):
        arrived.append(request.task_id)
        if len(arrived) == 2:
            both.set()
        await asyncio.wait_for(both.wait(), 1.0)
        return f"{request.task_id} met"

    executor.register("worker", meet)
    workflow = wf.workflow(
        [wf.stage("fanout", wf.task("left"), wf.task("right"), type="parallel")]
    )
    record = await run(orchestrator, workflow)

    assert record.status == ExecutionStatus.COMPLETED
    assert sorted(arrived) == ["left", "right"]
    assert record.output == {
        "left": {"kind": "text", "text": "left met"},
        "right": {"kind": "text", "text": "right met"},
    }


@pytest.mark.asyncio
async def test_exhausted_retries_fail_and_skip_dependents(orchestrator, executor, wf):
    executor.register("worker", failing)
    workflow = wf.workflow(
        [
            wf.stage("a", wf.task("t1"), max_retries=2),
            wf.stage("b", wf.task("t2", agent="writer")),
        ],
        [("a", "b")],
    )
    record = await run(orchestrator, workflow)

    assert record.status == ExecutionStatus.FAILED
    assert len(executor.calls_for("t1")) == 3
    assert executor.calls_for("t2") == []
    t1 = record.task("t1")
    assert t1.status == TaskStatus.FAILED
    assert t1.retry_count == 2
    assert t1.error.kind == ErrorKind.TASK_EXECUTION_FAILED
    assert t1.error.details["attempts"] == 3
    assert record.stage("a").status == StageStatus.FAILED
    assert record.stage("b").status == StageStatus.SKIPPED
    assert record.task("t2").status == TaskStatus.SKIPPED
    assert record.error_details.kind == ErrorKind.TASK_EXECUTION_FAILED
    assert "t1 exploded" in record.error_details.message


@pytest.mark.asyncio
async def test_auto_retry_disabled_runs_once(orchestrator, executor, wf):
    executor.register("worker", failing)
    workflow = wf.workflow([wf.stage("a", wf.task("t1"), max_retries=3)], auto_retry=False)
    record = await run(orchestrator, workflow)

    assert record.status == ExecutionStatus.FAILED
    assert len(executor.calls_for("t1")) == 1
    assert record.task("t1").retry_count == 0


@pytest.mark.asyncio
async def test_flaky_task_recovers_on_retry(orchestrator, executor, wf):
    attempts = []

    def flaky(request, progress):
        attempts.append(request.handle)
        if len(attempts) < 3:
            raise ConnectionError("reset")
        return "steady"

    executor.register("worker", flaky)
    workflow = wf.workflow([wf.stage("a", wf.task("t1"), max_retries=2)])
    record = await run(orchestrator, workflow)

    assert record.status == ExecutionStatus.COMPLETED
    assert attempts[-1].endswith(":t1:3")
    assert record.task("t1").retry_count == 2
    assert record.task("t1").error is None
    retries = [e for e in record.scratchpad.execution_trace if e.event == "task.retrying"]
    assert [e.details["retry_count"] for e in retries] == [1, 2]


@pytest.mark.asyncio
async def test_task_timeout_in_sequential_stage(orchestrator, executor, wf):
    executor.register("worker", by_task(t2=hang))
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1"), wf.task("t2", timeout_ms=50), max_retries=1)]
    )
    record = await run(orchestrator, workflow)

    assert record.status == ExecutionStatus.FAILED
    assert len(executor.calls_for("t2")) == 2
    t2 = record.task("t2")
    assert t2.status == TaskStatus.FAILED
    assert t2.error.kind == ErrorKind.TIMEOUT
    assert t2.error.details["limit"] == "task"
    assert t2.retry_count == 2
    assert record.task("t1").status == TaskStatus.COMPLETED
    assert record.task("t1").result.data["echo"] == {}
    assert record.error_details.kind == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_sequential_failure_skips_remaining_tasks(orchestrator, executor, wf):
    executor.register("worker", by_task(t1=failing))
    workflow = wf.workflow([wf.stage("a", wf.task("t1"), wf.task("t2"))])
    record = await run(orchestrator, workflow)

    assert record.task("t2").status == TaskStatus.SKIPPED
    assert executor.calls_for("t2") == []
    skipped = [e for e in record.scratchpad.execution_trace if e.event == "task.skipped"]
    assert skipped[0].details["reason"] == "previous task 't1' failed"


@pytest.mark.asyncio
async def test_stage_deadline_is_terminal(orchestrator, executor, wf):
    executor.register("worker", hang)
    workflow = wf.workflow([wf.stage("a", wf.task("t1"), timeout_ms=50, max_retries=3)])
    record = await run(orchestrator, workflow)

    assert record.status == ExecutionStatus.FAILED
    assert len(executor.calls_for("t1")) == 1
    assert record.task("t1").error.kind == ErrorKind.TIMEOUT
    assert record.task("t1").error.details["limit"] == "stage"
    assert record.task("t1").retry_count == 1


@pytest.mark.asyncio
async def test_execution_deadline_bounds_every_task(orchestrator, executor, wf):
    executor.register("worker", hang)
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1"), max_retries=3)], max_execution_time_ms=60
    )
    record = await run(orchestrator, workflow)

    assert record.status == ExecutionStatus.FAILED
    assert record.task("t1").error.details["limit"] == "execution"
    assert len(executor.calls_for("t1")) == 1


@pytest.mark.asyncio
async def test_task_timeout_fires_while_executor_ignores_cancel(store, config, wf):
    released = asyncio.Event()
    executor = InMemoryExecutor({"worker": ignores_cancel(released)})
    orchestrator = Orchestrator(store, executor, config=config)
    workflow = wf.workflow([wf.stage("a", wf.task("t1", timeout_ms=50))])

    record = await run(orchestrator, workflow, timeout=1.0)

    assert record.status == ExecutionStatus.FAILED
    t1 = record.task("t1")
    assert t1.error.kind == ErrorKind.TIMEOUT
    assert t1.error.details["limit"] == "task"
    assert t1.retry_count == 1
    assert orchestrator.slots.in_use == 0
    assert len(orchestrator.abandoned) == 1

    released.set()
    await wf.until(lambda: len(orchestrator.abandoned) == 0)
    assert record.task("t1").result is None
    assert record.status == ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_stage_deadline_frees_slot_held_by_stubborn_executor(store, wf):
    released = asyncio.Event()
    executor = InMemoryExecutor({"planner": ignores_cancel(released)})
    config = StagewrightConfig(scheduler=SchedulerConfig(max_parallel_tasks=1))
    orchestrator = Orchestrator(store, executor, config=config)
    slow = wf.workflow(
        [wf.stage("a", wf.task("t1", agent="planner"), timeout_ms=50)], workflow_id="slow"
    )
    quick = wf.workflow([wf.stage("a", wf.task("t2"))], workflow_id="quick")

    slow_record = await orchestrator.start(slow)
    quick_record = await orchestrator.start(quick)

    assert (await orchestrator.wait(slow_record.id, 1.0)).status == ExecutionStatus.FAILED
    assert (await orchestrator.wait(quick_record.id, 1.0)).status == ExecutionStatus.COMPLETED
    assert slow_record.task("t1").error.details["limit"] == "stage"
    assert slow_record.task("t1").retry_count == 1
    assert orchestrator.slots.in_use == 0

    released.set()
    await wf.until(lambda: len(orchestrator.abandoned) == 0)
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_pause_queued_behind_event_defers_next_start(wf):
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1"), wf.task("t2"), type="parallel")]
    )
    store = GatedStore()
    machine = ExecutionStateMachine(ExecutionRecord.for_workflow(workflow), workflow, store)
    for status in (ExecutionStatus.PLANNING, ExecutionStatus.CONFIRMED, ExecutionStatus.RUNNING):
        await machine.transition(status)
    executor = InMemoryExecutor()
    slots = TaskSlots(2)
    dispatcher = TaskDispatcher(machine, executor, slots)
    stage = workflow.execution_flow.stages[0]
    t1, t2 = stage.tasks
    deadline = Deadline(machine, 5_000, STAGE_LIMIT)

    # t1's completion holds the machine lock while its record is persisted.
    store.hold = True
    first = asyncio.create_task(dispatcher.dispatch(t1, stage, deadline, deadline))
    await asyncio.wait_for(store.entered.wait(), 1.0)
    pause = asyncio.create_task(machine.control(ControlAction.PAUSE, "maintenance"))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(dispatcher.dispatch(t2, stage, deadline, deadline))
    await asyncio.sleep(0.01)
    assert machine.status == ExecutionStatus.RUNNING

    store.release.set()
    assert (await asyncio.wait_for(pause, 1.0)).new_status == ExecutionStatus.PAUSED
    assert (await asyncio.wait_for(first, 1.0)).succeeded
    await asyncio.sleep(0.02)

    assert executor.calls_for("t2") == []
    assert machine.record.task("t2").status == TaskStatus.PENDING
    assert slots.in_use == 0
    assert not second.done()

    await machine.control(ControlAction.RESUME)
    outcome = await asyncio.wait_for(second, 1.0)
    assert outcome.succeeded
    assert len(executor.calls_for("t2")) == 1


@pytest.mark.asyncio
async def test_pause_holds_new_work_until_resume(orchestrator, executor, wf, scratchpad_snapshot):
    gate = asyncio.Event()

    async def gated(request, progress):
        await gate.wait()
        return "measured"

    executor.register("worker", by_task(t1=gated))
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1")), wf.stage("b", wf.task("t2"))], [("a", "b")]
    )
    record = await orchestrator.start(workflow)
    await wf.until(lambda: executor.calls_for("t1"))

    paused = await orchestrator.pause(record.id, "maintenance")
    assert paused.previous_status == ExecutionStatus.RUNNING
    assert paused.new_status == ExecutionStatus.PAUSED

    gate.set()
    await wf.until(lambda: record.stage("a").status == StageStatus.SUCCEEDED)
    await asyncio.sleep(0.02)
    assert record.status == ExecutionStatus.PAUSED
    assert executor.calls_for("t2") == []
    frozen = scratchpad_snapshot(record)
    await asyncio.sleep(0.02)
    assert scratchpad_snapshot(record) == frozen

    await orchestrator.resume(record.id)
    final = await orchestrator.wait(record.id, 5.0)
    assert final.status == ExecutionStatus.COMPLETED
    assert len(executor.calls_for("t2")) == 1


@pytest.mark.asyncio
async def test_cancel_discards_late_results(store, config, wf, scratchpad_snapshot):
    gate = asyncio.Event()
    returned = asyncio.Event()

    async def stubborn(request, progress):
        await gate.wait()
        returned.set()
        return "too late"

    executor = InMemoryExecutor({"worker": stubborn}, cancellable=False)
    orchestrator = Orchestrator(store, executor, config=config)
    workflow = wf.workflow([wf.stage("a", wf.task("t1"), wf.task("t2"), type="parallel")])
    record = await orchestrator.start(workflow)
    await wf.until(lambda: len(executor.calls) == 2)

    before = scratchpad_snapshot(record)
    result = await orchestrator.cancel(record.id, "operator stop")
    assert result.new_status == ExecutionStatus.CANCELLED
    assert executor.cancel_requests == []

    gate.set()
    await asyncio.wait_for(returned.wait(), 1.0)
    await asyncio.sleep(0.02)

    assert record.status == ExecutionStatus.CANCELLED
    assert scratchpad_snapshot(record) == before
    assert {t.status for t in record.tasks} == {TaskStatus.CANCELLED}
    stored = await store.load_execution(record.id)
    assert stored.status == ExecutionStatus.CANCELLED
    assert record.id not in orchestrator.registry

    with pytest.raises(InvalidStateTransition):
        await orchestrator.cancel(record.id)
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_cancel_signals_cancellable_executor(orchestrator, executor, wf):
    executor.register("worker", hang)
    workflow = wf.workflow([wf.stage("a", wf.task("t1"))])
    record = await orchestrator.start(workflow)
    await wf.until(lambda: executor.calls_for("t1"))

    await orchestrator.cancel(record.id)
    await wf.until(lambda: executor.cancel_requests)
    assert executor.cancel_requests == [f"{record.id}:t1:1"]
    assert record.task("t1").status == TaskStatus.CANCELLED
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_tolerated_failure_completes_stage(orchestrator, executor, wf):
    executor.register("worker", by_task(t1=failing))
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1"), wf.task("t2"), tolerate_failure=True)]
    )
    record = await run(orchestrator, workflow)

    assert record.status == ExecutionStatus.COMPLETED
    assert record.task("t1").status == TaskStatus.FAILED
    assert record.task("t2").status == TaskStatus.COMPLETED
    assert record.stage("a").status == StageStatus.SUCCEEDED
    assert record.stage("a").reason == "tolerated failure of t1"


@pytest.mark.asyncio
async def test_conditional_branches(orchestrator, executor, wf):
    executor.register("worker", by_task(sensor=failing))
    workflow = wf.workflow(
        [
            wf.stage("check", wf.task("sensor"), required=False),
            wf.stage("recover", wf.task("fix")),
            wf.stage("celebrate", wf.task("party"), required=False),
            wf.stage("cleanup", wf.task("sweep")),
        ],
        [
            ("check", "recover", "on-failure"),
            ("check", "celebrate", "on-success"),
            ("check", "cleanup", "always"),
        ],
    )
    record = await run(orchestrator, workflow)

    assert record.status == ExecutionStatus.COMPLETED
    assert record.stage("check").status == StageStatus.FAILED
    assert record.stage("recover").status == StageStatus.SUCCEEDED
    assert record.stage("celebrate").status == StageStatus.SKIPPED
    assert record.stage("cleanup").status == StageStatus.SUCCEEDED
    assert "condition 'success' not met" in record.stage("celebrate").reason


@pytest.mark.asyncio
async def test_skips_cascade_unless_condition_is_always(orchestrator, executor, wf):
    executor.register("worker", by_task(t1=failing))
    workflow = wf.workflow(
        [
            wf.stage("a", wf.task("t1")),
            wf.stage("b", wf.task("t2")),
            wf.stage("c", wf.task("t3")),
            wf.stage("d", wf.task("t4")),
        ],
        [("a", "b"), ("b", "c"), ("b", "d", "always")],
    )
    record = await run(orchestrator, workflow)

    assert record.stage("b").status == StageStatus.SKIPPED
    assert record.stage("c").status == StageStatus.SKIPPED
    assert record.task("t3").status == TaskStatus.SKIPPED
    assert record.stage("d").status == StageStatus.SUCCEEDED
    assert record.status == ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_confirmation_gate(orchestrator, executor, wf):
    workflow = wf.workflow([wf.stage("a", wf.task("t1"))], require_confirmation=True)
    record = await orchestrator.start(workflow, {"n": 1})

    assert record.status == ExecutionStatus.PLANNING
    await asyncio.sleep(0.01)
    assert executor.calls == []

    await orchestrator.confirm(record.id)
    final = await orchestrator.wait(record.id, 5.0)
    assert final.status == ExecutionStatus.COMPLETED
    with pytest.raises(InvalidStateTransition):
        await orchestrator.confirm(record.id)


@pytest.mark.asyncio
async def test_missing_agent_is_rejected_before_persisting(orchestrator, store, wf):
    workflow = wf.workflow([wf.stage("a", wf.task("t1", agent="ghost"))])
    with pytest.raises(ValidationError) as exc:
        await orchestrator.start(workflow)
    assert exc.value.details == {"missing_agents": ["ghost"]}
    assert await store.list_executions() == []
    assert len(orchestrator.registry) == 0


@pytest.mark.asyncio
async def test_cyclic_workflow_is_rejected(orchestrator, store, wf):
    workflow = wf.workflow(
        [wf.stage("a", wf.task("t1")), wf.stage("b", wf.task("t2"))],
        [("a", "b"), ("b", "a")],
    )
    with pytest.raises(CyclicDependency):
        await orchestrator.start(workflow)
    assert await store.list_executions() == []


@pytest.mark.asyncio
async def test_global_task_limit_is_respected(store, executor, wf):
    config = StagewrightConfig(scheduler=SchedulerConfig(max_parallel_tasks=2))
    orchestrator = Orchestrator(store, executor, config=config)

    async def nap(request, progress):
        await asyncio.sleep(0.02)
        return request.task_id

    executor.register("worker", nap)
    first = wf.workflow(
        [wf.stage("a", *[wf.task(f"x{i}") for i in range(4)], type="parallel")],
        workflow_id="first",
    )
    second = wf.workflow(
        [wf.stage("a", *[wf.task(f"y{i}") for i in range(4)], type="parallel")],
        workflow_id="second",
    )
    records = [await orchestrator.start(first), await orchestrator.start(second)]
    for record in records:
        assert (await orchestrator.wait(record.id, 5.0)).status == ExecutionStatus.COMPLETED
    assert orchestrator.slots.peak == 2
    assert orchestrator.slots.in_use == 0


@pytest.mark.asyncio
async def test_task_input_carries_dependencies_and_context(orchestrator, executor, wf):
    executor.register("planner", lambda request, progress: "alpha")
    workflow = wf.workflow(
        [
            wf.stage(
                "a",
                wf.task("t1", agent="planner"),
                wf.task("t2", dependencies=["t1"], inputs={"prompt": "go"}),
            )
        ]
    )
    await run(orchestrator, workflow, input={"region": "fjord"})

    request = executor.calls_for("t2")[0]
    assert request.input["dependencies"] == {"t1": {"kind": "text", "text": "alpha"}}
    assert request.input["workflow_input"] == {"region": "fjord"}
    assert request.input["task"] == {"prompt": "go"}
    assert request.shared_context == {"t1": {"kind": "text", "text": "alpha"}}


@pytest.mark.asyncio
async def test_synthesis_result_becomes_output(orchestrator, executor, wf):
    def summarize(request, progress):
        return {"count": len(request.input["intermediate_results"])}

    executor.register("writer", summarize)
    workflow = wf.workflow(
        [
            wf.stage("gather", wf.task("g1"), wf.task("g2"), type="parallel"),
            wf.stage("report", wf.task("final", agent="writer", task_type="synthesis")),
        ],
        [("gather", "report")],
    )
    record = await run(orchestrator, workflow)

    assert record.status == ExecutionStatus.COMPLETED
    assert record.output == {"kind": "structured", "data": {"count": 2}}
    assert set(record.scratchpad.agent_outputs) == {"worker", "writer"}


@pytest.mark.asyncio
async def test_observers_see_progress_and_status(orchestrator, wf):
    workflow = wf.workflow([wf.stage("a", wf.task("t1"), wf.task("t2"))], notifications=True)
    record = await orchestrator.start(workflow)
    queue = orchestrator.subscribe(record.id)

    events = []
    while True:
        event = await asyncio.wait_for(queue.get(), 5.0)
        if event is None:
            break
        events.append(event)

    kinds = [e.event for e in events]
    assert "task.started" in kinds
    assert "task.progress" in kinds
    progress = [e.progress for e in events if e.event == "progress"]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    assert events[-1].event == "status"
    assert events[-1].status == "completed"
