"""Store abstraction for workflows, agents and execution records."""

from __future__ import annotations

from typing import List, Optional, Protocol

from ..contracts import AgentConfig, WorkflowDefinition
from ..models import ExecutionRecord


class ExecutionStore(Protocol):
    """Protocol for durable storage backends."""

    async def load_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        """Retrieve a workflow definition by id."""

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """Create or replace a workflow definition."""

    async def list_workflows(self) -> List[WorkflowDefinition]:
        """Return all stored workflow definitions."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow definition; return whether it existed."""

    async def load_agent(self, agent_id: str) -> Optional[AgentConfig]:
        """Retrieve an agent configuration by id."""

    async def save_agent(self, agent: AgentConfig) -> None:
        """Create or replace an agent configuration."""

    async def list_agents(self) -> List[AgentConfig]:
        """Return all stored agent configurations."""

    async def delete_agent(self, agent_id: str) -> bool:
        """Delete an agent configuration; return whether it existed."""

    async def save_execution(self, record: ExecutionRecord) -> None:
        """Persist a snapshot of an execution record."""

    async def load_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        """Retrieve the latest snapshot of an execution."""

    async def list_executions(self) -> List[ExecutionRecord]:
        """Return every stored execution, active or archived."""

    async def list_active_executions(self) -> List[ExecutionRecord]:
        """Return executions whose last snapshot is non-terminal."""

    async def delete_execution(self, execution_id: str) -> bool:
        """Delete an execution record; return whether it existed."""
