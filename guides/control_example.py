"""Example showing pause, resume and cancel of a running execution."""

import asyncio

from stagewright import (
    AgentConfig,
    InMemoryExecutor,
    Orchestrator,
    Stage,
    StageDependency,
    TaskDefinition,
    WorkflowDefinition,
)
from stagewright.contracts import ExecutionFlow
from stagewright.persistence import InMemoryExecutionStore


async def slow_step(request, progress):
    for pct in (25, 50, 75, 100):
        await asyncio.sleep(0.2)
        progress.report(pct, f"{request.task_id} at {pct}%")
    return f"{request.task_id} done"


def build_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="batch",
        name="Nightly batch",
        agent_ids=["worker"],
        main_agent_id="worker",
        execution_flow=ExecutionFlow(
            stages=[
                Stage(id="extract", tasks=[TaskDefinition(id="pull", agent_id="worker")]),
                Stage(id="load", tasks=[TaskDefinition(id="push", agent_id="worker")]),
            ],
            dependencies=[StageDependency(from_stage="extract", to_stage="load")],
        ),
    )


async def main():
    store = InMemoryExecutionStore()
    await store.save_agent(AgentConfig(id="worker", name="Worker"))
    orchestrator = Orchestrator(store, InMemoryExecutor({"worker": slow_step}))

    record = await orchestrator.start(build_workflow())
    events = orchestrator.subscribe(record.id)

    await asyncio.sleep(0.3)
    print(await orchestrator.pause(record.id, "maintenance window"))
    await asyncio.sleep(0.5)
    print(await orchestrator.resume(record.id))
    await asyncio.sleep(0.3)
    print(await orchestrator.cancel(record.id, "operator stop"))

    while True:
        event = await events.get()
        if event is None:
            break
        print(f"{event.event}: task={event.task_id} progress={event.progress} {event.message or ''}")
    print(f"Final status: {record.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
