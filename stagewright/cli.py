"""Command line interface for stagewright workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from pydantic import ValidationError as PydanticValidationError

from stagewright import (
    AgentConfig,
    ExecutionController,
    ExecutionStatus,
    Orchestrator,
    StagewrightError,
    WorkflowDefinition,
    get_executor,
    get_store,
    load_config,
    validate_workflow,
)
from stagewright.graph import build_plan

app = typer.Typer(help="CLI for stagewright workflows")

# Command groups
agent_app = typer.Typer(help="Commands for managing agents")
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for running and inspecting executions")

app.add_typer(agent_app, name="agent")
app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, help="Logging level (defaults to log_level from config)"
    ),
) -> None:
    """stagewright CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_document(path: Path) -> Any:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        return yaml.safe_load(f)


def _parse_model(model_type, path: Path):
    data = _load_document(path)
    try:
        return model_type.model_validate(data)
    except PydanticValidationError as exc:
        typer.secho(f"Invalid {model_type.__name__} in {path}:", fg=typer.colors.RED)
        typer.echo(str(exc))
        raise typer.Exit(code=1)


def _check_workflow(workflow: WorkflowDefinition) -> None:
    config = load_config()
    try:
        graph = validate_workflow(workflow, config.dependency_conditions)
    except StagewrightError as exc:
        typer.secho(f"{exc.kind.value}: {exc.message}", fg=typer.colors.RED)
        for issue in getattr(exc, "issues", [])[1:]:
            typer.echo(f"  - {issue}")
        raise typer.Exit(code=1)
    plan = build_plan(workflow, graph)
    typer.echo(f"Workflow {workflow.id} is valid")
    for layer in plan.layers:
        typer.echo(f"  layer {layer.level}: {', '.join(layer.stages)}")
    typer.echo(f"  critical path: {' -> '.join(plan.critical_path)}")
    for warning in plan.warnings:
        typer.secho(f"  warning: {warning}", fg=typer.colors.YELLOW)


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Validate a workflow definition file without storing it.

    Checks structure, agent membership, intra-stage dependencies and the
    stage dependency graph, then prints the topological layers.

    Example:
        stagewright workflow validate ./workflows/research.yaml
        # Output: Workflow research is valid
        #           layer 0: plan
        #           layer 1: search, summarize
    """
    _check_workflow(_parse_model(WorkflowDefinition, path))


@workflow_app.command("register")
def workflow_register(path: Path) -> None:
    """Validate a workflow definition file and save it to the store."""
    workflow = _parse_model(WorkflowDefinition, path)
    _check_workflow(workflow)
    store = get_store()
    asyncio.run(store.save_workflow(workflow))
    typer.echo(f"Registered workflow {workflow.id}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List stored workflow definitions."""
    store = get_store()
    workflows = asyncio.run(store.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{len(wf.execution_flow.stages)} stages")


@agent_app.command("register")
def agent_register(path: Path) -> None:
    """Save an agent configuration file to the store."""
    agent = _parse_model(AgentConfig, path)
    store = get_store()
    asyncio.run(store.save_agent(agent))
    typer.echo(f"Registered agent {agent.id}")


@agent_app.command("list")
def agent_list() -> None:
    """List stored agent configurations."""
    store = get_store()
    agents = asyncio.run(store.list_agents())
    if not agents:
        typer.echo("No agents found")
        return
    for agent in agents:
        typer.echo(f"{agent.id}\t{agent.role}\t{agent.model or '-'}")


async def _run_execution(
    workflow_id: str, payload: Any, executor_backend: Optional[str], timeout: Optional[float]
):
    config = load_config()
    store = get_store()
    agents = await store.list_agents()
    executor = get_executor(executor_backend, config=config, agents=agents)
    await executor.connect()
    orchestrator = Orchestrator(store, executor, config=config)
    controller = ExecutionController(orchestrator)
    try:
        started = await controller.start(workflow_id, payload)
        typer.echo(f"Execution {started.execution_id}: {started.status.value}")
        if started.status == ExecutionStatus.PLANNING:
            await controller.confirm(started.execution_id)
        report = await controller.wait(started.execution_id, timeout)
        record = await orchestrator.get_record(started.execution_id)
        return report, record
    finally:
        await orchestrator.aclose()
        await executor.disconnect()


@execution_app.command("run")
def execution_run(
    workflow_id: str,
    input: Optional[str] = typer.Option(None, help="JSON input for the execution"),
    executor: Optional[str] = typer.Option(None, help="Executor backend (echo or pydantic_ai)"),
    timeout: Optional[float] = typer.Option(None, help="Seconds to wait for completion"),
) -> None:
    """
    Run a stored workflow to completion and print the outcome.

    Example:
        stagewright execution run research --input '{"topic": "rust"}'
        # Output: Execution 3f2c...: running
        #         Status: completed (3/3 tasks)
    """
    payload = json.loads(input) if input else None
    try:
        report, record = asyncio.run(_run_execution(workflow_id, payload, executor, timeout))
    except StagewrightError as exc:
        typer.secho(f"{exc.kind.value}: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except asyncio.TimeoutError:
        typer.secho("Timed out waiting for the execution", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    progress = report.progress
    colour = typer.colors.GREEN if report.status == ExecutionStatus.COMPLETED else typer.colors.RED
    typer.secho(
        f"Status: {report.status.value} ({progress.completed_tasks}/{progress.total_tasks} tasks)",
        fg=colour,
    )
    if report.error_details:
        typer.echo(f"Error: {report.error_details.kind.value}: {report.error_details.message}")
    if record.output is not None:
        typer.echo(f"Output: {json.dumps(record.output, default=str)}")
    if report.status != ExecutionStatus.COMPLETED:
        raise typer.Exit(code=1)


@execution_app.command("list")
def execution_list(
    active: bool = typer.Option(False, "--active", help="Only show non-terminal executions"),
) -> None:
    """List stored executions with their status."""
    store = get_store()
    records = asyncio.run(
        store.list_active_executions() if active else store.list_executions()
    )
    if not records:
        typer.echo("No executions found")
        return
    for record in records:
        typer.echo(f"{record.id}\t{record.workflow_id}\t{record.status.value}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show status, progress and per-task results of one execution."""
    store = get_store()
    record = asyncio.run(store.load_execution(execution_id))
    if record is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    progress = record.progress()
    typer.echo(f"Execution {record.id}: {record.status.value}")
    typer.echo(
        f"Workflow: {record.workflow_id}  Progress: {progress.percentage}% "
        f"({progress.completed_tasks} completed, {progress.failed_tasks} failed, "
        f"{progress.total_tasks} total)"
    )
    for stage in record.stages:
        typer.echo(f"[{stage.id}] {stage.status.value}" + (f" - {stage.reason}" if stage.reason else ""))
        for task in record.tasks:
            if task.stage_id != stage.id:
                continue
            line = f"  - {task.id} ({task.agent_id}): {task.status.value}"
            if task.retry_count:
                line += f", {task.retry_count} retries"
            if task.error:
                line += f" [{task.error.kind.value}: {task.error.message}]"
            typer.echo(line)
    if record.error_details:
        typer.echo(f"Error: {record.error_details.kind.value}: {record.error_details.message}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
