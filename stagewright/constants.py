"""Default values shared across stagewright components."""

DEFAULT_MAX_PARALLEL_TASKS = 8
DEFAULT_STAGE_TIMEOUT_MS = 300_000
DEFAULT_MAX_EXECUTION_TIME_MS = 3_600_000
DEFAULT_BACKOFF_MS = 1_000
DEFAULT_MAX_BACKOFF_MS = 60_000
DEFAULT_PROGRESS_BUFFER = 32
DEFAULT_OBSERVER_BUFFER = 256

# Dependency condition vocabulary accepted out of the box. Values are
# ``ConditionKind`` names; deployments may extend or replace the mapping.
DEFAULT_DEPENDENCY_CONDITIONS = {
    "on-success": "success",
    "success": "success",
    "on-failure": "failure",
    "failure": "failure",
    "always": "always",
    "completion": "always",
}

# Plan warning thresholds.
PLAN_MAX_SERIAL_LEVELS = 5
PLAN_MAX_PARALLEL_STAGES = 5
PLAN_DOMINANT_LEVEL_SHARE = 0.5
