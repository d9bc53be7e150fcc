"""In-memory implementation of the execution store."""

from __future__ import annotations

from typing import Dict, List, Optional

from ..contracts import AgentConfig, WorkflowDefinition
from ..models import ExecutionRecord
from .repository import ExecutionStore


class InMemoryExecutionStore(ExecutionStore):
    """Keep definitions and execution snapshots in local memory.

    Useful for tests or when no database is configured. Snapshots are deep
    copies, so later mutation of a live record does not leak into the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._agents: Dict[str, AgentConfig] = {}
        self._executions: Dict[str, ExecutionRecord] = {}
        self.save_count = 0

    # ------------------------------------------------------------------
    async def load_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def list_workflows(self) -> List[WorkflowDefinition]:
        return [w.model_copy(deep=True) for w in self._workflows.values()]

    async def delete_workflow(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    # ------------------------------------------------------------------
    async def load_agent(self, agent_id: str) -> Optional[AgentConfig]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def save_agent(self, agent: AgentConfig) -> None:
        self._agents[agent.id] = agent.model_copy(deep=True)

    async def list_agents(self) -> List[AgentConfig]:
        return [a.model_copy(deep=True) for a in self._agents.values()]

    async def delete_agent(self, agent_id: str) -> bool:
        return self._agents.pop(agent_id, None) is not None

    # ------------------------------------------------------------------
    async def save_execution(self, record: ExecutionRecord) -> None:
        self._executions[record.id] = record.model_copy(deep=True)
        self.save_count += 1

    async def load_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        record = self._executions.get(execution_id)
        return record.model_copy(deep=True) if record else None

    async def list_executions(self) -> List[ExecutionRecord]:
        return [r.model_copy(deep=True) for r in self._executions.values()]

    async def list_active_executions(self) -> List[ExecutionRecord]:
        return [
            r.model_copy(deep=True)
            for r in self._executions.values()
            if not r.status.is_terminal
        ]

    async def delete_execution(self, execution_id: str) -> bool:
        return self._executions.pop(execution_id, None) is not None
