"""JSON-file implementation of the execution store."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel

from ..contracts import AgentConfig, WorkflowDefinition
from ..models import ExecutionRecord
from .repository import ExecutionStore

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

CURRENT_DIR = "current"


def archive_period(record: ExecutionRecord) -> str:
    """Return the ``YYYY-MM`` period a record is archived under."""
    stamp = record.metadata.completed_at or record.metadata.started_at
    return stamp.strftime("%Y-%m")


class FileSystemExecutionStore(ExecutionStore):
    """Persist definitions and executions as JSON documents under ``root``.

    Layout::

        workflows/<id>.json
        agents/<id>.json
        executions/<YYYY-MM>/<id>.json   archive, by completion period
        executions/current/<id>.json     index of non-terminal executions
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        for sub in ("workflows", "agents", "executions/" + CURRENT_DIR):
            (self.root / sub).mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Helper methods
    @staticmethod
    def _write(path: Path, model: BaseModel) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(model.model_dump_json(indent=2))
        os.replace(tmp, path)

    @staticmethod
    def _read(path: Path, model_type: Type[ModelT]) -> Optional[ModelT]:
        if not path.exists():
            return None
        return model_type.model_validate_json(path.read_text())

    @staticmethod
    def _unlink(path: Path) -> bool:
        if not path.exists():
            return False
        path.unlink()
        return True

    def _read_all(self, directory: Path, model_type: Type[ModelT]) -> List[ModelT]:
        return [self._read(p, model_type) for p in sorted(directory.glob("*.json"))]

    @property
    def _executions(self) -> Path:
        return self.root / "executions"

    def _archive_copies(self, execution_id: str) -> List[Path]:
        return [
            p
            for p in self._executions.glob(f"*/{execution_id}.json")
            if p.parent.name != CURRENT_DIR
        ]

    def _save_execution(self, record: ExecutionRecord) -> None:
        target = self._executions / archive_period(record) / f"{record.id}.json"
        for stale in self._archive_copies(record.id):
            if stale != target:
                logger.debug(f"Moving execution {record.id} out of archive {stale.parent.name}")
                stale.unlink()
        self._write(target, record)
        current = self._executions / CURRENT_DIR / f"{record.id}.json"
        if record.status.is_terminal:
            self._unlink(current)
        else:
            self._write(current, record)

    def _load_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        current = self._read(self._executions / CURRENT_DIR / f"{execution_id}.json", ExecutionRecord)
        if current is not None:
            return current
        for path in self._archive_copies(execution_id):
            return self._read(path, ExecutionRecord)
        return None

    def _list_executions(self) -> List[ExecutionRecord]:
        records = [
            self._read(path, ExecutionRecord)
            for path in sorted(self._executions.glob("*/*.json"))
            if path.parent.name != CURRENT_DIR
        ]
        return sorted(records, key=lambda r: r.metadata.started_at)

    def _delete_execution(self, execution_id: str) -> bool:
        removed = self._unlink(self._executions / CURRENT_DIR / f"{execution_id}.json")
        for path in self._archive_copies(execution_id):
            path.unlink()
            removed = True
        return removed

    # ------------------------------------------------------------------
    # Store API
    async def load_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return await asyncio.to_thread(
            self._read, self.root / "workflows" / f"{workflow_id}.json", WorkflowDefinition
        )

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._write, self.root / "workflows" / f"{workflow.id}.json", workflow
        )

    async def list_workflows(self) -> List[WorkflowDefinition]:
        return await asyncio.to_thread(self._read_all, self.root / "workflows", WorkflowDefinition)

    async def delete_workflow(self, workflow_id: str) -> bool:
        return await asyncio.to_thread(
            self._unlink, self.root / "workflows" / f"{workflow_id}.json"
        )

    async def load_agent(self, agent_id: str) -> Optional[AgentConfig]:
        return await asyncio.to_thread(
            self._read, self.root / "agents" / f"{agent_id}.json", AgentConfig
        )

    async def save_agent(self, agent: AgentConfig) -> None:
        await asyncio.to_thread(self._write, self.root / "agents" / f"{agent.id}.json", agent)

    async def list_agents(self) -> List[AgentConfig]:
        return await asyncio.to_thread(self._read_all, self.root / "agents", AgentConfig)

    async def delete_agent(self, agent_id: str) -> bool:
        return await asyncio.to_thread(self._unlink, self.root / "agents" / f"{agent_id}.json")

    async def save_execution(self, record: ExecutionRecord) -> None:
        snapshot = record.model_copy(deep=True)
        await asyncio.to_thread(self._save_execution, snapshot)

    async def load_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return await asyncio.to_thread(self._load_execution, execution_id)

    async def list_executions(self) -> List[ExecutionRecord]:
        return await asyncio.to_thread(self._list_executions)

    async def list_active_executions(self) -> List[ExecutionRecord]:
        return await asyncio.to_thread(
            self._read_all, self._executions / CURRENT_DIR, ExecutionRecord
        )

    async def delete_execution(self, execution_id: str) -> bool:
        return await asyncio.to_thread(self._delete_execution, execution_id)
