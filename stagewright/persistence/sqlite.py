"""SQLite implementation of the execution store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, List, Optional

from ..contracts import AgentConfig, WorkflowDefinition
from ..models import TERMINAL_STATUSES, ExecutionRecord
from .repository import ExecutionStore

_TERMINAL = tuple(sorted(s.value for s in TERMINAL_STATUSES))


class SQLiteExecutionStore(ExecutionStore):
    """Persist definitions and executions using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions (status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Store API
    async def load_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflows WHERE id = ?", workflow_id
        )
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflows (id, data) VALUES (?, ?)",
            workflow.id,
            workflow.model_dump_json(),
        )

    async def list_workflows(self) -> List[WorkflowDefinition]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT data FROM workflows ORDER BY id")
        return [WorkflowDefinition.model_validate_json(r["data"]) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id
        )
        return count > 0

    async def load_agent(self, agent_id: str) -> Optional[AgentConfig]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM agents WHERE id = ?", agent_id
        )
        return AgentConfig.model_validate_json(row["data"]) if row else None

    async def save_agent(self, agent: AgentConfig) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO agents (id, data) VALUES (?, ?)",
            agent.id,
            agent.model_dump_json(),
        )

    async def list_agents(self) -> List[AgentConfig]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT data FROM agents ORDER BY id")
        return [AgentConfig.model_validate_json(r["data"]) for r in rows]

    async def delete_agent(self, agent_id: str) -> bool:
        count = await asyncio.to_thread(self._execute, "DELETE FROM agents WHERE id = ?", agent_id)
        return count > 0

    async def save_execution(self, record: ExecutionRecord) -> None:
        metadata = record.metadata
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO executions
                (id, workflow_id, status, started_at, completed_at, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            record.id,
            record.workflow_id,
            record.status.value,
            metadata.started_at.isoformat(),
            metadata.completed_at.isoformat() if metadata.completed_at else None,
            record.model_dump_json(),
        )

    async def load_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM executions WHERE id = ?", execution_id
        )
        return ExecutionRecord.model_validate_json(row["data"]) if row else None

    async def list_executions(self) -> List[ExecutionRecord]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT data FROM executions ORDER BY started_at"
        )
        return [ExecutionRecord.model_validate_json(r["data"]) for r in rows]

    async def list_active_executions(self) -> List[ExecutionRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM executions WHERE status NOT IN (?, ?, ?) ORDER BY started_at",
            *_TERMINAL,
        )
        return [ExecutionRecord.model_validate_json(r["data"]) for r in rows]

    async def delete_execution(self, execution_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM executions WHERE id = ?", execution_id
        )
        return count > 0
