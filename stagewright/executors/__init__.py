"""Executor factory and initialization."""

from __future__ import annotations

import os
from typing import Iterable, Optional

from ..config import StagewrightConfig, load_config
from ..contracts import AgentConfig
from .base import AgentExecutor
from .inmemory import InMemoryExecutor, echo_handler


def get_executor(
    backend: Optional[str] = None,
    config: Optional[StagewrightConfig] = None,
    agents: Optional[Iterable[AgentConfig]] = None,
) -> AgentExecutor:
    """Factory function to get the configured agent executor."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("STAGEWRIGHT_EXECUTOR")
        or config.executor.backend
    ).lower()

    if backend == "echo":
        return InMemoryExecutor()
    elif backend == "pydantic_ai":
        from .agent import PydanticAIExecutor

        return PydanticAIExecutor.from_agent_configs(
            agents or [], default_model=config.executor.default_model
        )
    else:
        raise ValueError(f"Unsupported executor backend: {backend}")


__all__ = ["AgentExecutor", "InMemoryExecutor", "echo_handler", "get_executor"]
