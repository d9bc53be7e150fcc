"""Runtime execution records persisted by stagewright."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .contracts import TaskOutput, WorkflowDefinition
from .errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    CONFIRMED = "confirmed"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.SKIPPED,
            TaskStatus.CANCELLED,
        )


class StageStatus(str, Enum):
    WAITING = "waiting"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            StageStatus.SUCCEEDED,
            StageStatus.FAILED,
            StageStatus.SKIPPED,
            StageStatus.CANCELLED,
        )


class ErrorInfo(BaseModel):
    kind: ErrorKind
    message: str
    details: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


class TraceEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    event: str
    details: Dict[str, Any] = Field(default_factory=dict)


class IntermediateResult(BaseModel):
    task_id: str
    agent_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    result: TaskOutput


class Scratchpad(BaseModel):
    """Working memory of one execution."""

    data: Dict[str, Any] = Field(default_factory=dict)
    agent_outputs: Dict[str, TaskOutput] = Field(default_factory=dict)
    shared_context: Dict[str, Any] = Field(default_factory=dict)
    intermediate_results: List[IntermediateResult] = Field(default_factory=list)
    execution_trace: List[TraceEntry] = Field(default_factory=list)

    def trace(self, event: str, **details: Any) -> TraceEntry:
        """Append an entry to the execution trace."""
        entry = TraceEntry(event=event, details=details)
        self.execution_trace.append(entry)
        return entry


class TaskState(BaseModel):
    id: str
    agent_id: str
    stage_id: str
    status: TaskStatus = TaskStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    result: Optional[TaskOutput] = None
    error: Optional[ErrorInfo] = None
    retry_count: int = 0
    attempts: int = 0
    tokens_used: int = 0


class StageState(BaseModel):
    id: str
    status: StageStatus = StageStatus.WAITING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reason: Optional[str] = None
    error: Optional[ErrorInfo] = None


class PlanLayer(BaseModel):
    level: int
    stages: List[str]
    can_run_in_parallel: bool
    estimated_duration_ms: int


class ExecutionPlan(BaseModel):
    """Static schedule derived from the dependency graph."""

    layers: List[PlanLayer] = Field(default_factory=list)
    critical_path: List[str] = Field(default_factory=list)
    total_stages: int = 0
    total_tasks: int = 0
    estimated_duration_ms: int = 0
    warnings: List[str] = Field(default_factory=list)


class ExecutionMetadata(BaseModel):
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[int] = None
    tokens_used: int = 0
    cost: float = 0.0


class ExecutionProgress(BaseModel):
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    percentage: int


class ExecutionRecord(BaseModel):
    """Mutable runtime instance of one workflow run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: Any = None
    output: Any = None
    scratchpad: Scratchpad = Field(default_factory=Scratchpad)
    tasks: List[TaskState] = Field(default_factory=list)
    stages: List[StageState] = Field(default_factory=list)
    plan: Optional[ExecutionPlan] = None
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)
    error_details: Optional[ErrorInfo] = None

    @classmethod
    def for_workflow(
        cls,
        workflow: WorkflowDefinition,
        input: Any = None,
        plan: Optional[ExecutionPlan] = None,
    ) -> "ExecutionRecord":
        """Create a pending record with one state entry per stage and task."""
        flow = workflow.execution_flow
        return cls(
            workflow_id=workflow.id,
            input=input,
            plan=plan,
            stages=[StageState(id=stage.id) for stage in flow.stages],
            tasks=[
                TaskState(id=task.id, agent_id=task.agent_id, stage_id=stage.id)
                for stage, task in flow.iter_tasks()
            ],
        )

    @property
    def total_tasks(self) -> int:
        return len(self.tasks)

    def task(self, task_id: str) -> TaskState:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise KeyError(task_id)

    def stage(self, stage_id: str) -> StageState:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        raise KeyError(stage_id)

    def progress(self) -> ExecutionProgress:
        completed = sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETED)
        failed = sum(1 for t in self.tasks if t.status == TaskStatus.FAILED)
        total = self.total_tasks
        percentage = round(completed / total * 100) if total else 0
        return ExecutionProgress(
            total_tasks=total,
            completed_tasks=completed,
            failed_tasks=failed,
            percentage=percentage,
        )


class TaskResultView(BaseModel):
    task_id: str
    agent_id: str
    stage_id: str
    status: TaskStatus
    progress: int
    retry_count: int
    result: Optional[TaskOutput] = None
    error: Optional[ErrorInfo] = None

    @property
    def success(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def skipped(self) -> bool:
        return self.status == TaskStatus.SKIPPED


class StatusReport(BaseModel):
    execution_id: str
    workflow_id: str
    status: ExecutionStatus
    progress: ExecutionProgress
    plan: Optional[ExecutionPlan] = None
    task_results: List[TaskResultView] = Field(default_factory=list)
    error_details: Optional[ErrorInfo] = None

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "StatusReport":
        return cls(
            execution_id=record.id,
            workflow_id=record.workflow_id,
            status=record.status,
            progress=record.progress(),
            plan=record.plan.model_copy(deep=True) if record.plan else None,
            task_results=[
                TaskResultView(
                    task_id=t.id,
                    agent_id=t.agent_id,
                    stage_id=t.stage_id,
                    status=t.status,
                    progress=t.progress,
                    retry_count=t.retry_count,
                    result=t.result.model_copy(deep=True) if t.result else None,
                    error=t.error.model_copy(deep=True) if t.error else None,
                )
                for t in record.tasks
            ],
            error_details=(
                record.error_details.model_copy(deep=True)
                if record.error_details
                else None
            ),
        )


class ControlAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


class ControlResult(BaseModel):
    execution_id: str
    action: ControlAction
    previous_status: ExecutionStatus
    new_status: ExecutionStatus
    reason: Optional[str] = None


class StartResult(BaseModel):
    execution_id: str
    status: ExecutionStatus


class ExecutionEvent(BaseModel):
    """Notification pushed to live observers of an execution."""

    execution_id: str
    event: str
    task_id: Optional[str] = None
    progress: Optional[int] = None
    status: Optional[str] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
