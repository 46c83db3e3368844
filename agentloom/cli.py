"""Command line interface for agentloom workers and workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from .contracts import Agent, Team, WorkflowDefinition
from .errors import AgentloomError
from .scheduler import cleanup_stale_executions, process_scheduled_workflows
from .services import build_services

app = typer.Typer(help="CLI for agentloom workflows")

worker_app = typer.Typer(help="Commands for running background workers")
workflow_app = typer.Typer(help="Commands for managing workflows")
scheduler_app = typer.Typer(help="Commands for scheduled jobs")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Python logging level"),
) -> None:
    """agentloom CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@worker_app.command("run")
def worker_run(lifespan: Optional[float] = None) -> None:
    """
    Run a worker that claims queued agent and workflow executions.

    Args:
        lifespan: Worker timeout in seconds (default: run indefinitely)

    Example:
        agentloom worker run --lifespan 300
    """
    services = build_services()
    typer.echo("Starting worker")

    async def _run() -> None:
        await services.transport.connect()
        try:
            await services.worker.start(lifespan=lifespan)
        finally:
            await services.transport.disconnect()

    asyncio.run(_run())


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """
    Validate a YAML file and persist the agents, teams and workflows it declares.

    The file holds ``agents``, ``teams`` and ``workflows`` lists, or a single
    workflow mapping at the top level.

    Example:
        agentloom workflow load lead_followup.yaml
    """
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    document = yaml.safe_load(path.read_text()) or {}
    if "steps" in document:
        document = {"workflows": [document]}

    try:
        agents = [Agent.model_validate(a) for a in document.get("agents", [])]
        teams = [Team.model_validate(t) for t in document.get("teams", [])]
        workflows = [
            WorkflowDefinition.model_validate(w) for w in document.get("workflows", [])
        ]
        for workflow in workflows:
            workflow.validate_graph()
    except (ValidationError, AgentloomError) as e:
        typer.secho(f"Invalid workflow file: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    services = build_services()

    async def _save() -> None:
        for agent in agents:
            await services.repository.save_agent(agent)
        for team in teams:
            await services.repository.save_team(team)
        for workflow in workflows:
            await services.repository.save_workflow(workflow)

    asyncio.run(_save())
    for workflow in workflows:
        typer.echo(f"{workflow.id}\t{workflow.name}\t{len(workflow.steps)} steps")


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    input_json: str = typer.Option("{}", "--input", help="Trigger input as JSON"),
    workspace: str = typer.Option("default", "--workspace"),
    wait: bool = typer.Option(
        False, "--wait", help="Run in this process instead of queueing for a worker"
    ),
) -> None:
    """
    Submit a workflow execution and print its id.

    Example:
        agentloom workflow run lead-followup --input '{"leadName": "Acme"}'
    """
    try:
        trigger_input = json.loads(input_json)
    except json.JSONDecodeError as e:
        typer.secho(f"--input is not valid JSON: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    services = build_services()

    async def _run() -> str:
        if wait:
            execution = await services.engine.execute(workflow_id, trigger_input, workspace)
            return f"{execution.id}\t{execution.status.value}"
        await services.transport.connect()
        try:
            receipt = await services.dispatcher.submit_workflow(
                workflow_id, trigger_input, workspace
            )
        finally:
            await services.transport.disconnect()
        return receipt["executionId"]

    try:
        typer.echo(asyncio.run(_run()))
    except AgentloomError as e:
        typer.secho(f"{e.kind}: {e.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@workflow_app.command("show")
def workflow_show(execution_id: str) -> None:
    """
    Show status and step results of a workflow execution.

    Example:
        agentloom workflow show 0b6c...
    """
    services = build_services()
    execution = asyncio.run(services.repository.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)

    typer.echo(f"Execution {execution.id}: {execution.status.value.upper()}")
    typer.echo(f"Current step: {execution.current_step_id}")
    for step_id, result in execution.step_results.items():
        label = "SKIPPED" if result.skipped else result.status.value.upper()
        line = f"- {step_id}: {label}"
        if result.error:
            line += f" ({result.error})"
        typer.echo(line)
    if execution.error:
        typer.echo(f"Error [{execution.error.kind}]: {execution.error.message}")


@scheduler_app.command("tick")
def scheduler_tick() -> None:
    """Submit due scheduled workflows and fail stale executions, once."""
    services = build_services()

    async def _tick() -> tuple[list[str], int]:
        await services.transport.connect()
        try:
            submitted = await process_scheduled_workflows(services.dispatcher)
        finally:
            await services.transport.disconnect()
        cleaned = await cleanup_stale_executions(services.repository)
        return submitted, cleaned

    submitted, cleaned = asyncio.run(_tick())
    typer.echo(f"Submitted {len(submitted)} scheduled run(s), cleaned {cleaned} stale execution(s)")


if __name__ == "__main__":
    app()
