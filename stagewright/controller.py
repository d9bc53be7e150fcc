"""Operator-facing facade over the orchestrator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Union

from .errors import NotFound, ValidationError
from .models import ControlAction, ControlResult, StartResult, StatusReport
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class ExecutionController:
    """Start, query and steer executions by id.

    Queries never mutate state: ``get_status`` builds a detached
    ``StatusReport`` from the live record, or from the store once the
    execution has left the active registry.
    """

    def __init__(self, orchestrator: Orchestrator) -> None:
        self._orchestrator = orchestrator
        self._store = orchestrator.store
        self._registry = orchestrator.registry

    async def start(self, workflow_id: str, input: Any = None) -> StartResult:
        workflow = await self._store.load_workflow(workflow_id)
        if workflow is None:
            raise NotFound(f"Workflow '{workflow_id}' not found")
        record = await self._orchestrator.start(workflow, input)
        return StartResult(execution_id=record.id, status=record.status)

    async def get_status(self, execution_id: str) -> StatusReport:
        record = await self._orchestrator.get_record(execution_id)
        return StatusReport.from_record(record)

    async def control(
        self,
        execution_id: str,
        action: Union[ControlAction, str],
        reason: Optional[str] = None,
    ) -> ControlResult:
        try:
            action = ControlAction(action)
        except ValueError:
            raise ValidationError(
                f"Unknown control action '{action}'",
                details={"allowed": [a.value for a in ControlAction]},
            ) from None
        logger.info(f"Control {action.value} requested for execution {execution_id}")
        return await self._orchestrator.control(execution_id, action, reason)

    async def confirm(self, execution_id: str) -> StartResult:
        record = await self._orchestrator.confirm(execution_id)
        return StartResult(execution_id=record.id, status=record.status)

    def list_active(self) -> List[StatusReport]:
        return [StatusReport.from_record(entry.record) for entry in self._registry.list()]

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> StatusReport:
        record = await self._orchestrator.wait(execution_id, timeout)
        return StatusReport.from_record(record)

    def subscribe(self, execution_id: str, maxsize: Optional[int] = None) -> asyncio.Queue:
        return self._orchestrator.subscribe(execution_id, maxsize)
