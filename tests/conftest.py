"""Shared fixtures for stagewright tests."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from stagewright import (
    AgentConfig,
    InMemoryExecutor,
    Orchestrator,
    RetryPolicy,
    Stage,
    StageDependency,
    StagewrightConfig,
    TaskDefinition,
    WorkflowConfiguration,
    WorkflowDefinition,
)
from stagewright.config import SchedulerConfig
from stagewright.contracts import ExecutionFlow
from stagewright.persistence import InMemoryExecutionStore

AGENT_IDS = ["planner", "worker", "writer"]


class WorkflowFactory:
    """Terse builders for workflow definitions used across tests."""

    @staticmethod
    def task(task_id: str, agent: str = "worker", **fields: Any) -> TaskDefinition:
        return TaskDefinition(id=task_id, agent_id=agent, **fields)

    @staticmethod
    def stage(
        stage_id: str,
        *tasks: TaskDefinition,
        type: str = "sequential",
        timeout_ms: int = 5_000,
        max_retries: int = 0,
        backoff_ms: int = 1,
        tolerate_failure: bool = False,
        required: bool = True,
    ) -> Stage:
        return Stage(
            id=stage_id,
            name=stage_id.title(),
            type=type,
            tasks=list(tasks),
            timeout_ms=timeout_ms,
            retry_policy=RetryPolicy(
                max_retries=max_retries,
                backoff_ms=backoff_ms,
                tolerate_failure=tolerate_failure,
            ),
            required=required,
        )

    @staticmethod
    def workflow(
        stages: List[Stage],
        dependencies: Optional[List[tuple]] = None,
        workflow_id: str = "wf",
        **configuration: Any,
    ) -> WorkflowDefinition:
        agent_ids: List[str] = []
        for stage in stages:
            for task in stage.tasks:
                if task.agent_id not in agent_ids:
                    agent_ids.append(task.agent_id)
        deps = [
            StageDependency(from_stage=d[0], to_stage=d[1], condition=d[2] if len(d) > 2 else None)
            for d in dependencies or []
        ]
        return WorkflowDefinition(
            id=workflow_id,
            name=f"Workflow {workflow_id}",
            agent_ids=agent_ids or ["planner"],
            main_agent_id=(agent_ids or ["planner"])[0],
            execution_flow=ExecutionFlow(stages=stages, dependencies=deps),
            configuration=WorkflowConfiguration(**configuration),
        )

    @staticmethod
    async def until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
        """Poll ``predicate`` until it returns true or ``timeout`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(interval)


@pytest.fixture
def wf() -> WorkflowFactory:
    return WorkflowFactory()


@pytest.fixture
def config() -> StagewrightConfig:
    return StagewrightConfig(scheduler=SchedulerConfig(max_parallel_tasks=8, max_backoff_ms=50))


@pytest.fixture
def store() -> InMemoryExecutionStore:
    store = InMemoryExecutionStore()
    for agent_id in AGENT_IDS:
        asyncio.run(store.save_agent(AgentConfig(id=agent_id, name=agent_id.title())))
    return store


@pytest.fixture
def executor() -> InMemoryExecutor:
    return InMemoryExecutor()


@pytest.fixture
def orchestrator(store, executor, config) -> Orchestrator:
    return Orchestrator(store, executor, config=config)


def snapshot(record) -> Dict[str, Any]:
    """Scratchpad dump without the trace."""
    return record.scratchpad.model_dump(mode="json", exclude={"execution_trace"})


@pytest.fixture
def scratchpad_snapshot():
    return snapshot
