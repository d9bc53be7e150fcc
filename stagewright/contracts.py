"""Workflow definition and executor contracts for stagewright."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from .constants import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_MAX_EXECUTION_TIME_MS,
    DEFAULT_STAGE_TIMEOUT_MS,
)

logger = logging.getLogger(__name__)


class StageType(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class TaskType(str, Enum):
    PLANNING = "planning"
    EXECUTION = "execution"
    SYNTHESIS = "synthesis"


_TASK_TYPE_ALIASES = {
    "main_planning": TaskType.PLANNING,
    "sub_execution": TaskType.EXECUTION,
}


class RetryPolicy(BaseModel):
    """Per-task retry behaviour declared on a stage."""

    max_retries: int = Field(default=0, ge=0)
    backoff_ms: int = Field(default=DEFAULT_BACKOFF_MS, ge=0)
    max_backoff_ms: Optional[int] = Field(default=None, ge=0)
    tolerate_failure: bool = False


class TaskDefinition(BaseModel):
    """The smallest unit of work, bound to one agent."""

    id: str
    agent_id: str
    task_type: TaskType = TaskType.EXECUTION
    inputs: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    timeout_ms: Optional[int] = Field(default=None, gt=0)

    @field_validator("task_type", mode="before")
    @classmethod
    def _accept_aliases(cls, v: Any) -> Any:
        if isinstance(v, str) and v in _TASK_TYPE_ALIASES:
            return _TASK_TYPE_ALIASES[v]
        return v


class Stage(BaseModel):
    """A scheduling unit of tasks run in parallel or in declared order."""

    id: str
    name: str = ""
    type: StageType = StageType.SEQUENTIAL
    tasks: List[TaskDefinition] = Field(default_factory=list)
    timeout_ms: int = Field(default=DEFAULT_STAGE_TIMEOUT_MS, gt=0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    required: bool = True


class StageDependency(BaseModel):
    from_stage: str
    to_stage: str
    condition: Optional[str] = None


class ExecutionFlow(BaseModel):
    stages: List[Stage] = Field(default_factory=list)
    dependencies: List[StageDependency] = Field(default_factory=list)

    def stage(self, stage_id: str) -> Optional[Stage]:
        return next((s for s in self.stages if s.id == stage_id), None)

    def iter_tasks(self):
        """Yield ``(stage, task)`` pairs in declaration order."""
        for stage in self.stages:
            for task in stage.tasks:
                yield stage, task


class WorkflowConfiguration(BaseModel):
    max_execution_time_ms: int = Field(default=DEFAULT_MAX_EXECUTION_TIME_MS, gt=0)
    auto_retry: bool = True
    notifications: bool = False
    require_confirmation: bool = False
    shared_context: bool = True


class WorkflowDefinition(BaseModel):
    """Static description of a multi-agent workflow."""

    id: str
    name: str
    description: str = ""
    agent_ids: List[str] = Field(default_factory=list)
    main_agent_id: str
    execution_flow: ExecutionFlow = Field(default_factory=ExecutionFlow)
    configuration: WorkflowConfiguration = Field(default_factory=WorkflowConfiguration)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def total_tasks(self) -> int:
        return sum(len(stage.tasks) for stage in self.execution_flow.stages)


class AgentConfig(BaseModel):
    """Stored configuration of an agent that can be bound to tasks."""

    id: str
    name: str
    description: str = ""
    role: str = "specialist"
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    tools: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Task results


class TextOutput(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class StructuredOutput(BaseModel):
    kind: Literal["structured"] = "structured"
    data: Dict[str, Any] = Field(default_factory=dict)


class PlanOutput(BaseModel):
    """Output of a planning task: ordered steps and acceptance criteria."""

    kind: Literal["plan"] = "plan"
    steps: List[str] = Field(default_factory=list)
    success_criteria: List[str] = Field(default_factory=list)


class OpaqueOutput(BaseModel):
    """Fallback for values that match no known shape."""

    kind: Literal["opaque"] = "opaque"
    value: Any = None


TaskOutput = Annotated[
    Union[TextOutput, StructuredOutput, PlanOutput, OpaqueOutput],
    Field(discriminator="kind"),
]

_OUTPUT_ADAPTER: TypeAdapter = TypeAdapter(TaskOutput)
_OUTPUT_TYPES = (TextOutput, StructuredOutput, PlanOutput, OpaqueOutput)


def coerce_output(value: Any) -> Union[TextOutput, StructuredOutput, PlanOutput, OpaqueOutput]:
    """Map a raw executor output onto the ``TaskOutput`` union."""
    if isinstance(value, _OUTPUT_TYPES):
        return value
    if isinstance(value, str):
        return TextOutput(text=value)
    if isinstance(value, BaseModel):
        return StructuredOutput(data=value.model_dump(mode="json"))
    if isinstance(value, dict):
        if "kind" in value:
            try:
                return _OUTPUT_ADAPTER.validate_python(value)
            except PydanticValidationError:
                logger.debug(f"Output with kind={value.get('kind')!r} did not validate")
        if all(isinstance(k, str) for k in value):
            return StructuredOutput(data=value)
    return OpaqueOutput(value=value)


# ---------------------------------------------------------------------------
# Executor contract


class ExecutionRequest(BaseModel):
    """Everything an agent executor receives for one task attempt."""

    handle: str
    execution_id: str
    task_id: str
    agent_id: str
    task_type: TaskType = TaskType.EXECUTION
    input: Dict[str, Any] = Field(default_factory=dict)
    shared_context: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = None


class ExecutorResult(BaseModel):
    success: bool
    output: Any = None
    tokens_used: int = 0
    tools_used: List[str] = Field(default_factory=list)
    cost: float = 0.0
    error: Optional[str] = None
