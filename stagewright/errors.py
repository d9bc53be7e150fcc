"""Error kinds raised by the stagewright execution core."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional


class ErrorKind(str, Enum):
    """Closed set of error categories reported on tasks and executions."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    CYCLIC_DEPENDENCY = "CYCLIC_DEPENDENCY"
    INVALID_DEPENDENCY = "INVALID_DEPENDENCY"
    TIMEOUT = "TIMEOUT"
    TASK_EXECUTION_FAILED = "TASK_EXECUTION_FAILED"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    EXECUTOR_UNAVAILABLE = "EXECUTOR_UNAVAILABLE"


class StagewrightError(Exception):
    """Base class for all errors raised by stagewright."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_error_info(self):
        """Return the persisted ``ErrorInfo`` form of this error."""
        from .models import ErrorInfo

        return ErrorInfo(
            kind=self.kind,
            message=self.message,
            details=self.details,
            timestamp=datetime.now(timezone.utc),
        )


class ValidationError(StagewrightError):
    """A workflow definition or request failed validation.

    ``issues`` holds every problem found, not only the first one, so callers
    can report them together.
    """

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(
        self, message: str, issues: Optional[List[str]] = None, details: Any = None
    ) -> None:
        super().__init__(message, details=details)
        self.issues = issues or [message]


class InvalidDependency(ValidationError):
    """A dependency names an unknown stage/task or an unsupported condition."""

    kind = ErrorKind.INVALID_DEPENDENCY


class CyclicDependency(ValidationError):
    """The stage dependency graph contains a cycle."""

    kind = ErrorKind.CYCLIC_DEPENDENCY

    def __init__(self, cycle: List[str]) -> None:
        path = " -> ".join(cycle)
        super().__init__(f"Cyclic dependency detected: {path}", details={"cycle": cycle})
        self.cycle = cycle


class TaskTimeout(StagewrightError):
    """A task attempt exceeded its effective timeout."""

    kind = ErrorKind.TIMEOUT


class TaskExecutionFailed(StagewrightError):
    """A task failed terminally after exhausting its retry policy."""

    kind = ErrorKind.TASK_EXECUTION_FAILED


class ExecutorUnavailable(StagewrightError):
    """The agent executor could not be reached or has no such agent."""

    kind = ErrorKind.EXECUTOR_UNAVAILABLE


class InvalidStateTransition(StagewrightError):
    """An operator command is not allowed from the current status."""

    kind = ErrorKind.INVALID_STATE_TRANSITION

    def __init__(self, current: Any, target: Any, action: Optional[str] = None) -> None:
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        label = action or f"transition to '{target_value}'"
        super().__init__(
            f"Cannot {label} from status '{current_value}'",
            details={"current": current_value, "target": target_value},
        )
        self.current = current
        self.target = target


class NotFound(StagewrightError):
    """A workflow, agent or execution id is unknown."""

    kind = ErrorKind.NOT_FOUND


__all__ = [
    "ErrorKind",
    "StagewrightError",
    "ValidationError",
    "InvalidDependency",
    "CyclicDependency",
    "TaskTimeout",
    "TaskExecutionFailed",
    "ExecutorUnavailable",
    "InvalidStateTransition",
    "NotFound",
]
