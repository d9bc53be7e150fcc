"""PostgreSQL implementation of the execution store."""

from __future__ import annotations

from typing import List, Optional

import asyncpg

from ..contracts import AgentConfig, WorkflowDefinition
from ..models import TERMINAL_STATUSES, ExecutionRecord
from .repository import ExecutionStore

_TERMINAL = sorted(s.value for s in TERMINAL_STATUSES)


class PostgresExecutionStore(ExecutionStore):
    """Persist definitions and executions using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                data JSONB NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def _fetch_data(self, query: str, *args) -> List[str]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *args)
        finally:
            await conn.close()
        return [r["data"] for r in rows]

    async def _execute(self, query: str, *args) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *args)
        finally:
            await conn.close()

    @staticmethod
    def _deleted(status: str) -> bool:
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return not status.endswith(" 0")

    # ------------------------------------------------------------------
    async def load_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        rows = await self._fetch_data("SELECT data FROM workflows WHERE id = $1", workflow_id)
        return WorkflowDefinition.model_validate_json(rows[0]) if rows else None

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await self._execute(
            """
            INSERT INTO workflows (id, data) VALUES ($1, $2)
            ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data
            """,
            workflow.id,
            workflow.model_dump_json(),
        )

    async def list_workflows(self) -> List[WorkflowDefinition]:
        rows = await self._fetch_data("SELECT data FROM workflows ORDER BY id")
        return [WorkflowDefinition.model_validate_json(r) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> bool:
        return self._deleted(await self._execute("DELETE FROM workflows WHERE id = $1", workflow_id))

    async def load_agent(self, agent_id: str) -> Optional[AgentConfig]:
        rows = await self._fetch_data("SELECT data FROM agents WHERE id = $1", agent_id)
        return AgentConfig.model_validate_json(rows[0]) if rows else None

    async def save_agent(self, agent: AgentConfig) -> None:
        await self._execute(
            """
            INSERT INTO agents (id, data) VALUES ($1, $2)
            ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data
            """,
            agent.id,
            agent.model_dump_json(),
        )

    async def list_agents(self) -> List[AgentConfig]:
        rows = await self._fetch_data("SELECT data FROM agents ORDER BY id")
        return [AgentConfig.model_validate_json(r) for r in rows]

    async def delete_agent(self, agent_id: str) -> bool:
        return self._deleted(await self._execute("DELETE FROM agents WHERE id = $1", agent_id))

    async def save_execution(self, record: ExecutionRecord) -> None:
        await self._execute(
            """
            INSERT INTO executions (id, workflow_id, status, started_at, completed_at, data)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE SET
                status = EXCLUDED.status,
                completed_at = EXCLUDED.completed_at,
                data = EXCLUDED.data
            """,
            record.id,
            record.workflow_id,
            record.status.value,
            record.metadata.started_at,
            record.metadata.completed_at,
            record.model_dump_json(),
        )

    async def load_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        rows = await self._fetch_data("SELECT data FROM executions WHERE id = $1", execution_id)
        return ExecutionRecord.model_validate_json(rows[0]) if rows else None

    async def list_executions(self) -> List[ExecutionRecord]:
        rows = await self._fetch_data("SELECT data FROM executions ORDER BY started_at")
        return [ExecutionRecord.model_validate_json(r) for r in rows]

    async def list_active_executions(self) -> List[ExecutionRecord]:
        rows = await self._fetch_data(
            "SELECT data FROM executions WHERE NOT (status = ANY($1::text[])) ORDER BY started_at",
            _TERMINAL,
        )
        return [ExecutionRecord.model_validate_json(r) for r in rows]

    async def delete_execution(self, execution_id: str) -> bool:
        return self._deleted(await self._execute("DELETE FROM executions WHERE id = $1", execution_id))
