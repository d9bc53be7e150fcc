"""stagewright: stage-based execution core for multi-agent workflows."""

from .config import StagewrightConfig, load_config
from .contracts import (
    AgentConfig,
    ExecutionFlow,
    RetryPolicy,
    Stage,
    StageDependency,
    StageType,
    TaskDefinition,
    TaskType,
    WorkflowConfiguration,
    WorkflowDefinition,
)
from .controller import ExecutionController
from .errors import (
    CyclicDependency,
    ErrorKind,
    ExecutorUnavailable,
    InvalidDependency,
    InvalidStateTransition,
    NotFound,
    StagewrightError,
    TaskExecutionFailed,
    TaskTimeout,
    ValidationError,
)
from .executors import AgentExecutor, InMemoryExecutor, get_executor
from .graph import DependencyGraph, build_plan, validate, validate_workflow
from .models import (
    ControlAction,
    ExecutionRecord,
    ExecutionStatus,
    StageStatus,
    StatusReport,
    TaskStatus,
)
from .orchestrator import Orchestrator
from .persistence import get_store
from .registry import ExecutionRegistry

__version__ = "0.1.0"
__all__ = [
    "AgentConfig",
    "AgentExecutor",
    "ControlAction",
    "CyclicDependency",
    "DependencyGraph",
    "ErrorKind",
    "ExecutionController",
    "ExecutionFlow",
    "ExecutionRecord",
    "ExecutionRegistry",
    "ExecutionStatus",
    "ExecutorUnavailable",
    "InMemoryExecutor",
    "InvalidDependency",
    "InvalidStateTransition",
    "NotFound",
    "Orchestrator",
    "RetryPolicy",
    "Stage",
    "StageDependency",
    "StageStatus",
    "StageType",
    "StagewrightConfig",
    "StagewrightError",
    "StatusReport",
    "TaskDefinition",
    "TaskExecutionFailed",
    "TaskStatus",
    "TaskTimeout",
    "TaskType",
    "ValidationError",
    "WorkflowConfiguration",
    "WorkflowDefinition",
    "build_plan",
    "get_executor",
    "get_store",
    "load_config",
    "validate",
    "validate_workflow",
]
