"""Simple example showing a staged workflow run with scripted agents."""

import asyncio

from stagewright import (
    AgentConfig,
    ExecutionController,
    InMemoryExecutor,
    Orchestrator,
    RetryPolicy,
    Stage,
    StageDependency,
    TaskDefinition,
    WorkflowDefinition,
    get_store,
)
from stagewright.contracts import ExecutionFlow


def plan(request, progress):
    progress.report(50, "drafting plan")
    return {"kind": "plan", "steps": ["search", "summarize"], "success_criteria": ["sources cited"]}


async def research(request, progress):
    await asyncio.sleep(0.1)
    return f"notes on {request.input['task']['topic']}"


def write(request, progress):
    notes = [
        item["result"]["text"]
        for item in request.input["intermediate_results"]
        if item["result"]["kind"] == "text"
    ]
    return "Report:\n" + "\n".join(notes)


async def main():
    """Basic staged workflow example."""
    store = get_store("memory://")
    for agent_id in ("planner", "researcher", "writer"):
        await store.save_agent(AgentConfig(id=agent_id, name=agent_id.title()))

    workflow = WorkflowDefinition(
        id="research",
        name="Research report",
        agent_ids=["planner", "researcher", "writer"],
        main_agent_id="planner",
        execution_flow=ExecutionFlow(
            stages=[
                Stage(id="plan", tasks=[TaskDefinition(id="outline", agent_id="planner", task_type="main_planning")]),
                Stage(
                    id="search",
                    type="parallel",
                    retry_policy=RetryPolicy(max_retries=2, backoff_ms=200),
                    tasks=[
                        TaskDefinition(id="rust", agent_id="researcher", inputs={"topic": "rust"}),
                        TaskDefinition(id="python", agent_id="researcher", inputs={"topic": "python"}),
                    ],
                ),
                Stage(id="report", tasks=[TaskDefinition(id="final", agent_id="writer", task_type="synthesis")]),
            ],
            dependencies=[
                StageDependency(from_stage="plan", to_stage="search"),
                StageDependency(from_stage="search", to_stage="report"),
            ],
        ),
    )
    await store.save_workflow(workflow)

    executor = InMemoryExecutor({"planner": plan, "researcher": research, "writer": write})
    controller = ExecutionController(Orchestrator(store, executor))

    started = await controller.start("research", {"audience": "engineers"})
    print(f"Execution started: {started.execution_id}")

    report = await controller.wait(started.execution_id, timeout=10)
    print(f"Status: {report.status.value} ({report.progress.percentage}%)")
    for layer in report.plan.layers:
        print(f"  layer {layer.level}: {', '.join(layer.stages)}")
    final = report.task_results[-1].result
    print(final.text if final is not None else "no output")


if __name__ == "__main__":
    asyncio.run(main())
