"""Executor that runs tasks on pydantic-ai agents."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable

from pydantic_ai import Agent

from ..contracts import AgentConfig, ExecutionRequest, ExecutorResult, TaskType
from ..errors import ExecutorUnavailable
from ..progress import ProgressChannel
from .base import AgentExecutor

logger = logging.getLogger(__name__)


def _dumps(value: Any) -> str:
    return json.dumps(value, indent=2, default=str, sort_keys=True)


def build_prompt(request: ExecutionRequest) -> str:
    """Render the contextual prompt for one task attempt.

    The prompt carries the task inputs, the workflow input, the results of the
    task's dependencies and, when present, the shared context published by
    earlier tasks.
    """
    payload = request.input
    sections = [f"You are executing a {request.task_type.value} task ({request.task_id})."]

    task_inputs = payload.get("task") or {}
    instruction = task_inputs.get("prompt") or task_inputs.get("instruction")
    if instruction:
        sections.append(f"Instruction:\n{instruction}")
    if task_inputs:
        sections.append(f"Task inputs:\n{_dumps(task_inputs)}")
    if payload.get("workflow_input") is not None:
        sections.append(f"Workflow input:\n{_dumps(payload['workflow_input'])}")
    if payload.get("dependencies"):
        sections.append(f"Results of prerequisite tasks:\n{_dumps(payload['dependencies'])}")
    if request.task_type == TaskType.SYNTHESIS and payload.get("intermediate_results"):
        sections.append(
            "Combine the following intermediate results into a final answer:\n"
            f"{_dumps(payload['intermediate_results'])}"
        )
    if request.shared_context:
        sections.append(f"Shared context:\n{_dumps(request.shared_context)}")
    return "\n\n".join(sections)


class PydanticAIExecutor(AgentExecutor):
    """Run each task on the pydantic-ai ``Agent`` registered for its agent id."""

    supports_cancel = True

    def __init__(self, agents: Dict[str, Agent]) -> None:
        super().__init__()
        self._agents = dict(agents)

    @classmethod
    def from_agent_configs(
        cls, configs: Iterable[AgentConfig], default_model: str
    ) -> "PydanticAIExecutor":
        agents: Dict[str, Agent] = {}
        for config in configs:
            agents[config.id] = Agent(
                config.model or default_model,
                system_prompt=config.system_prompt or (),
                name=config.name,
                defer_model_check=True,
            )
        return cls(agents)

    async def execute(
        self, request: ExecutionRequest, progress: ProgressChannel
    ) -> ExecutorResult:
        agent = self._agents.get(request.agent_id)
        if agent is None:
            raise ExecutorUnavailable(f"No pydantic-ai agent configured for '{request.agent_id}'")
        return await self._run_tracked(request.handle, self._run(agent, request, progress))

    async def _run(
        self, agent: Agent, request: ExecutionRequest, progress: ProgressChannel
    ) -> ExecutorResult:
        progress.report(0, "started")
        result = await agent.run(build_prompt(request))
        usage = result.usage()
        tokens = getattr(usage, "total_tokens", None) or 0
        logger.info(
            f"Agent {request.agent_id} finished task {request.task_id} using {tokens} tokens"
        )
        progress.report(100, "finished")
        return ExecutorResult(success=True, output=result.output, tokens_used=tokens)
