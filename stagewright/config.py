from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .constants import (
    DEFAULT_DEPENDENCY_CONDITIONS,
    DEFAULT_MAX_BACKOFF_MS,
    DEFAULT_MAX_PARALLEL_TASKS,
    DEFAULT_OBSERVER_BUFFER,
    DEFAULT_PROGRESS_BUFFER,
)
from .graph import ConditionKind


class StoreConfig(BaseModel):
    """Durable store settings.

    ``database_url`` selects the backend by scheme: ``memory://``,
    ``file://<dir>``, ``sqlite:///<path>`` or ``postgresql://...``.
    """

    database_url: Optional[str] = None


class SchedulerConfig(BaseModel):
    """Concurrency and retry settings shared by every execution."""

    max_parallel_tasks: int = Field(default=DEFAULT_MAX_PARALLEL_TASKS, gt=0)
    max_backoff_ms: int = Field(default=DEFAULT_MAX_BACKOFF_MS, ge=0)
    backoff_jitter_ms: int = Field(default=0, ge=0)
    progress_buffer: int = Field(default=DEFAULT_PROGRESS_BUFFER, gt=0)
    observer_buffer: int = Field(default=DEFAULT_OBSERVER_BUFFER, gt=0)


class ExecutorConfig(BaseModel):
    """Agent executor backend."""

    backend: Literal["echo", "pydantic_ai"] = "echo"
    default_model: str = "openai:gpt-4o"


class StagewrightConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreConfig = StoreConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    executor: ExecutorConfig = ExecutorConfig()
    dependency_conditions: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_DEPENDENCY_CONDITIONS)
    )
    log_level: str = "INFO"

    @field_validator("dependency_conditions")
    @classmethod
    def _known_condition_kinds(cls, value: Dict[str, str]) -> Dict[str, str]:
        kinds = {kind.value for kind in ConditionKind}
        unknown = sorted(f"{key}: {target}" for key, target in value.items() if target not in kinds)
        if unknown:
            raise ValueError(
                f"dependency_conditions must map to one of {sorted(kinds)}; got {unknown}"
            )
        return {key.strip().lower(): target for key, target in value.items()}


def load_config(path: Optional[str] = None) -> StagewrightConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STAGEWRIGHT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STAGEWRIGHT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StagewrightConfig(**data)
    else:
        config = StagewrightConfig()

    env_db_url = os.getenv("STAGEWRIGHT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.store.database_url = env_db_url
    return config
