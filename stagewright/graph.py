"""Stage dependency graph validation and topological layering."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_DEPENDENCY_CONDITIONS,
    PLAN_DOMINANT_LEVEL_SHARE,
    PLAN_MAX_PARALLEL_STAGES,
    PLAN_MAX_SERIAL_LEVELS,
)
from .contracts import ExecutionFlow, StageType, WorkflowDefinition
from .errors import CyclicDependency, InvalidDependency, ValidationError
from .models import ExecutionPlan, PlanLayer

logger = logging.getLogger(__name__)


class ConditionKind(str, Enum):
    """What a predecessor's outcome must be for a dependent stage to run."""

    SUCCESS = "success"
    FAILURE = "failure"
    ALWAYS = "always"


class ResolvedDependency(BaseModel):
    from_stage: str
    to_stage: str
    condition: ConditionKind = ConditionKind.SUCCESS
    raw_condition: Optional[str] = None


class DependencyGraph(BaseModel):
    """Validated, acyclic stage graph with its topological layers."""

    stage_ids: List[str] = Field(default_factory=list)
    edges: List[ResolvedDependency] = Field(default_factory=list)
    layers: List[List[str]] = Field(default_factory=list)

    def predecessors(self, stage_id: str) -> List[ResolvedDependency]:
        return [e for e in self.edges if e.to_stage == stage_id]


def resolve_condition(
    condition: Optional[str], conditions: Optional[Mapping[str, str]] = None
) -> ConditionKind:
    """Map a declared condition string onto a ``ConditionKind``.

    ``None`` or an empty string means the predecessor must succeed. Anything
    not present in ``conditions`` raises ``InvalidDependency``.
    """
    if condition is None or not condition.strip():
        return ConditionKind.SUCCESS
    allowed = DEFAULT_DEPENDENCY_CONDITIONS if conditions is None else conditions
    key = condition.strip().lower()
    if key not in allowed:
        raise InvalidDependency(
            f"Unsupported dependency condition '{condition}'",
            details={"condition": condition, "allowed": sorted(allowed)},
        )
    try:
        return ConditionKind(allowed[key])
    except ValueError:
        raise InvalidDependency(
            f"Dependency condition '{condition}' maps to unknown kind '{allowed[key]}'",
            details={"condition": condition, "kind": allowed[key]},
        ) from None


def _find_cycle(stage_ids: List[str], adjacency: Dict[str, List[str]]) -> Optional[List[str]]:
    white, gray, black = 0, 1, 2
    colour = {sid: white for sid in stage_ids}
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        colour[node] = gray
        path.append(node)
        for nxt in adjacency.get(node, []):
            if colour[nxt] == gray:
                return path[path.index(nxt):] + [nxt]
            if colour[nxt] == white:
                found = visit(nxt)
                if found:
                    return found
        path.pop()
        colour[node] = black
        return None

    for sid in stage_ids:
        if colour[sid] == white:
            cycle = visit(sid)
            if cycle:
                return cycle
    return None


def _layers(stage_ids: List[str], edges: List[ResolvedDependency]) -> List[List[str]]:
    in_degree = {sid: 0 for sid in stage_ids}
    for edge in edges:
        in_degree[edge.to_stage] += 1

    layers: List[List[str]] = []
    remaining = list(stage_ids)
    while remaining:
        layer = [sid for sid in remaining if in_degree[sid] == 0]
        layers.append(layer)
        remaining = [sid for sid in remaining if sid not in layer]
        for edge in edges:
            if edge.from_stage in layer:
                in_degree[edge.to_stage] -= 1
    return layers


def validate(
    flow: ExecutionFlow, conditions: Optional[Mapping[str, str]] = None
) -> DependencyGraph:
    """Validate ``flow``'s stage dependencies and return its layering.

    Raises:
        InvalidDependency: A dependency names an unknown stage or condition.
        CyclicDependency: The dependency graph contains a cycle.
    """
    stage_ids = [stage.id for stage in flow.stages]
    known = set(stage_ids)

    edges: List[ResolvedDependency] = []
    adjacency: Dict[str, List[str]] = {sid: [] for sid in stage_ids}
    for dep in flow.dependencies:
        for ref in (dep.from_stage, dep.to_stage):
            if ref not in known:
                raise InvalidDependency(
                    f"Dependency {dep.from_stage} -> {dep.to_stage} references unknown stage '{ref}'",
                    details={"from_stage": dep.from_stage, "to_stage": dep.to_stage},
                )
        edges.append(
            ResolvedDependency(
                from_stage=dep.from_stage,
                to_stage=dep.to_stage,
                condition=resolve_condition(dep.condition, conditions),
                raw_condition=dep.condition,
            )
        )
        adjacency[dep.from_stage].append(dep.to_stage)

    cycle = _find_cycle(stage_ids, adjacency)
    if cycle:
        raise CyclicDependency(cycle)

    return DependencyGraph(
        stage_ids=stage_ids, edges=edges, layers=_layers(stage_ids, edges)
    )


def validate_workflow(
    workflow: WorkflowDefinition, conditions: Optional[Mapping[str, str]] = None
) -> DependencyGraph:
    """Run structural checks on ``workflow`` and validate its stage graph."""
    issues: List[str] = []
    flow = workflow.execution_flow

    if not workflow.agent_ids:
        issues.append("Workflow has no participating agents")
    if workflow.main_agent_id not in workflow.agent_ids:
        issues.append(
            f"Main agent '{workflow.main_agent_id}' is not one of the workflow agents"
        )
    if not flow.stages:
        issues.append("Workflow has no execution stages")

    seen_stages: set[str] = set()
    seen_tasks: set[str] = set()
    for stage in flow.stages:
        if stage.id in seen_stages:
            issues.append(f"Duplicate stage id '{stage.id}'")
        seen_stages.add(stage.id)
        for task in stage.tasks:
            if task.id in seen_tasks:
                issues.append(f"Duplicate task id '{task.id}'")
            seen_tasks.add(task.id)
            if task.agent_id not in workflow.agent_ids:
                issues.append(
                    f"Task '{task.id}' uses agent '{task.agent_id}' which is not part of the workflow"
                )

    if issues:
        raise ValidationError(
            f"Workflow '{workflow.id}' is invalid: {issues[0]}", issues=issues
        )

    for stage in flow.stages:
        order = {task.id: index for index, task in enumerate(stage.tasks)}
        for index, task in enumerate(stage.tasks):
            for dep_id in task.dependencies:
                if dep_id not in order:
                    raise InvalidDependency(
                        f"Task '{task.id}' depends on '{dep_id}' which is not in stage '{stage.id}'",
                        details={"stage": stage.id, "task": task.id, "dependency": dep_id},
                    )
                if stage.type == StageType.SEQUENTIAL and order[dep_id] >= index:
                    raise InvalidDependency(
                        f"Task '{task.id}' in sequential stage '{stage.id}' depends on later task '{dep_id}'",
                        details={"stage": stage.id, "task": task.id, "dependency": dep_id},
                    )

    graph = validate(flow, conditions)
    logger.debug(f"Workflow {workflow.id} validated with layers {graph.layers}")
    return graph


def critical_path(workflow: WorkflowDefinition, graph: DependencyGraph) -> List[str]:
    """Longest chain of stages weighted by stage timeouts."""
    timeouts = {s.id: s.timeout_ms for s in workflow.execution_flow.stages}
    distance: Dict[str, int] = {}
    previous: Dict[str, Optional[str]] = {}
    for layer in graph.layers:
        for sid in layer:
            best, best_pred = 0, None
            for edge in graph.predecessors(sid):
                if distance[edge.from_stage] > best:
                    best, best_pred = distance[edge.from_stage], edge.from_stage
            distance[sid] = best + timeouts[sid]
            previous[sid] = best_pred

    if not distance:
        return []
    current: Optional[str] = max(graph.stage_ids, key=lambda sid: distance[sid])
    path: List[str] = []
    while current is not None:
        path.insert(0, current)
        current = previous[current]
    return path


def build_plan(workflow: WorkflowDefinition, graph: DependencyGraph) -> ExecutionPlan:
    """Summarize the static schedule of ``workflow``."""
    stages = {s.id: s for s in workflow.execution_flow.stages}
    layers = [
        PlanLayer(
            level=index,
            stages=list(layer),
            can_run_in_parallel=len(layer) > 1,
            estimated_duration_ms=max((stages[sid].timeout_ms for sid in layer), default=0),
        )
        for index, layer in enumerate(graph.layers)
    ]
    return ExecutionPlan(
        layers=layers,
        critical_path=critical_path(workflow, graph),
        total_stages=len(stages),
        total_tasks=workflow.total_tasks,
        estimated_duration_ms=sum(layer.estimated_duration_ms for layer in layers),
        warnings=plan_warnings(graph, layers),
    )


def plan_warnings(graph: DependencyGraph, layers: List[PlanLayer]) -> List[str]:
    """Flag plan shapes that schedule poorly. Warnings never block a start."""
    warnings: List[str] = []

    serial = [layer for layer in layers if not layer.can_run_in_parallel]
    if len(serial) > PLAN_MAX_SERIAL_LEVELS:
        warnings.append(
            f"Plan has {len(serial)} serial levels; consider running more stages in parallel"
        )

    widest = max(layers, key=lambda layer: len(layer.stages), default=None)
    if widest is not None and len(widest.stages) > PLAN_MAX_PARALLEL_STAGES:
        warnings.append(
            f"Level {widest.level} runs {len(widest.stages)} stages in parallel, "
            "which may contend for task slots"
        )

    total = sum(layer.estimated_duration_ms for layer in layers)
    if len(layers) > 1:
        longest = max(layers, key=lambda layer: layer.estimated_duration_ms)
        if longest.estimated_duration_ms > total * PLAN_DOMINANT_LEVEL_SHARE:
            warnings.append(
                f"Level {longest.level} accounts for most of the estimated duration; "
                "consider splitting its stages"
            )

    if len(graph.stage_ids) > 1:
        connected = {e.from_stage for e in graph.edges} | {e.to_stage for e in graph.edges}
        isolated = [sid for sid in graph.stage_ids if sid not in connected]
        if isolated:
            warnings.append(f"Stages without dependencies: {', '.join(isolated)}")

    for warning in warnings:
        logger.debug(f"Plan warning: {warning}")
    return warnings


__all__ = [
    "ConditionKind",
    "ResolvedDependency",
    "DependencyGraph",
    "resolve_condition",
    "validate",
    "validate_workflow",
    "critical_path",
    "build_plan",
    "plan_warnings",
]
