"""Index of executions that are still active in this process."""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, List, Optional

from .contracts import WorkflowDefinition
from .graph import DependencyGraph
from .machine import ExecutionStateMachine
from .models import ExecutionRecord


class ActiveExecution:
    """Live handles of one non-terminal execution."""

    def __init__(
        self,
        machine: ExecutionStateMachine,
        workflow: WorkflowDefinition,
        graph: DependencyGraph,
    ) -> None:
        self.machine = machine
        self.workflow = workflow
        self.graph = graph
        self.driver: Optional[asyncio.Task] = None
        self.scheduler: Optional[Any] = None

    @property
    def execution_id(self) -> str:
        return self.machine.execution_id

    @property
    def record(self) -> ExecutionRecord:
        return self.machine.record


class ExecutionRegistry:
    """Thread-safe map of execution id to ``ActiveExecution``.

    Built once by the caller and handed to the orchestrator and controller;
    entries are removed as soon as their execution reaches a terminal status.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, ActiveExecution] = {}
        self._lock = threading.RLock()

    def register(self, entry: ActiveExecution) -> None:
        with self._lock:
            if entry.execution_id in self._entries:
                raise ValueError(f"Execution {entry.execution_id} already registered")
            self._entries[entry.execution_id] = entry

    def get(self, execution_id: str) -> Optional[ActiveExecution]:
        with self._lock:
            return self._entries.get(execution_id)

    def remove(self, execution_id: str) -> Optional[ActiveExecution]:
        with self._lock:
            return self._entries.pop(execution_id, None)

    def list(self) -> List[ActiveExecution]:
        with self._lock:
            return list(self._entries.values())

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
