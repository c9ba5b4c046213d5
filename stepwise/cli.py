"""Command line interface for managing and running stepwise workflows."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
import yaml

from stepwise import TriggerManager, WorkflowEngine, get_repository
from stepwise.config import configure_logging, load_config
from stepwise.contracts import ExecutionStatus, TriggerType, Workflow
from stepwise.errors import StepwiseError

app = typer.Typer(help="CLI for stepwise workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
execution_app = typer.Typer(help="Commands for inspecting and controlling runs")
trigger_app = typer.Typer(help="Commands for managing triggers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(trigger_app, name="trigger")


def _engine() -> WorkflowEngine:
    config = load_config()
    return WorkflowEngine.from_config(config, repository=get_repository())


def _parse_json(value: Optional[str], option: str) -> dict:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"{option} is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _fail(exc: Exception) -> None:
    typer.secho(str(exc), fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.callback()
def main() -> None:
    """stepwise CLI entry point."""
    configure_logging()


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """
    Store a workflow definition from a YAML or JSON file.

    Step configs are validated against their step type before anything is
    saved, so a bad definition never reaches the repository.

    Example:
        stepwise workflow load ./workflows/sync_orders.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    data = yaml.safe_load(path.read_text()) or {}
    try:
        workflow = Workflow.model_validate(data)
    except (StepwiseError, ValueError) as exc:
        _fail(exc)

    asyncio.run(get_repository().save_workflow(workflow))
    typer.echo(f"Loaded workflow {workflow.id} with {len(workflow.steps)} steps")


@workflow_app.command("list")
def workflow_list() -> None:
    """List stored workflows with their active flag and step count."""
    workflows = asyncio.run(get_repository().list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "active" if wf.is_active else "inactive"
        typer.echo(f"{wf.id}\t{wf.name}\t{state}\t{len(wf.steps)} steps")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow and its steps in execution order."""
    wf = asyncio.run(get_repository().get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.name} ({'active' if wf.is_active else 'inactive'})")
    for step in wf.ordered_steps():
        typer.echo(f"  {step.order}. {step.id} [{step.type.value}] {step.name}")


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    data: Optional[str] = typer.Option(None, help="JSON object passed as trigger data"),
) -> None:
    """
    Execute a workflow and wait for it to finish.

    Example:
        stepwise workflow run sync-orders --data '{"since": "2024-01-01"}'
    """
    trigger_data = _parse_json(data, "--data")

    async def _run() -> tuple[str, ExecutionStatus, Optional[str]]:
        engine = _engine()
        execution_id = await engine.execute_workflow(workflow_id, trigger_data, "manual")
        await engine.wait_for_execution(execution_id)
        execution = await engine.get_execution(execution_id)
        return execution_id, execution.status, execution.error

    try:
        execution_id, status, error = asyncio.run(_run())
    except StepwiseError as exc:
        _fail(exc)

    typer.echo(f"Execution ID: {execution_id}")
    typer.echo(f"Status: {status.value}")
    if error:
        typer.echo(f"Error: {error}")
    if status != ExecutionStatus.SUCCESS:
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Executions


@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = typer.Option(None, "--workflow", help="Filter by workflow"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """List runs with their status and trigger source."""
    executions = asyncio.run(
        get_repository().list_executions(workflow_id=workflow_id, status=status)
    )
    if not executions:
        typer.echo("No executions found")
        return
    for e in executions:
        typer.echo(f"{e.id}\t{e.workflow_id}\t{e.status.value}\t{e.triggered_by or '-'}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show run status, results and the state of every step."""
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(f"Workflow: {execution.workflow_id}")
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    if execution.step_results:
        typer.echo(f"Results: {json.dumps(execution.step_results, default=str)}")
    for step in asyncio.run(repo.list_step_executions(execution_id)):
        typer.echo(
            f"- {step.step_id}: {step.status.value} "
            f"(attempt {step.attempt_number}/{step.max_attempts})"
        )


@execution_app.command("logs")
def execution_logs(
    execution_id: str,
    step: Optional[str] = typer.Option(None, help="Only show logs for this step id"),
) -> None:
    """Print step logs of a run."""
    entries = asyncio.run(_engine().get_execution_logs(execution_id, step))
    if not entries:
        typer.echo("No logs found")
        return
    for entry in entries:
        if isinstance(entry, dict):
            typer.echo(f"[{entry['step_id']}] {entry['status']}")
            if entry["logs"]:
                typer.echo(f"  {entry['logs']}")
            if entry["error"]:
                typer.echo(f"  error: {entry['error']}")
        else:
            typer.echo(entry)


@execution_app.command("cancel")
def execution_cancel(
    execution_id: str,
    reason: Optional[str] = typer.Option(None, help="Reason stored on the run"),
) -> None:
    """Request cancellation; the run stops before its next step."""
    try:
        cancelled = asyncio.run(_engine().cancel_execution(execution_id, reason))
    except StepwiseError as exc:
        _fail(exc)
    if cancelled:
        typer.echo(f"Execution {execution_id} cancelled")
    else:
        typer.echo(f"Execution {execution_id} already finished")


@execution_app.command("reconcile")
def execution_reconcile(
    stale_after: Optional[float] = typer.Option(
        None, help="Only fail runs started more than this many seconds ago"
    ),
) -> None:
    """Mark runs left RUNNING by a crashed process as FAILED."""
    config = load_config()
    stale_after = stale_after if stale_after is not None else config.engine.stale_after_seconds
    reconciled = asyncio.run(_engine().reconcile_stale_executions(stale_after))
    typer.echo(f"Reconciled {len(reconciled)} executions")
    for execution_id in reconciled:
        typer.echo(f"- {execution_id}")


# ----------------------------------------------------------------------
# Triggers


@trigger_app.command("create")
def trigger_create(
    workflow_id: str,
    trigger_type: TriggerType,
    config: str = typer.Option(..., help="JSON trigger configuration"),
    name: Optional[str] = typer.Option(None, help="Display name"),
) -> None:
    """
    Create a trigger after validating its configuration.

    Example:
        stepwise trigger create sync-orders SCHEDULE --config '{"cronExpression": "*/5 * * * *"}'
    """
    trigger_config = _parse_json(config, "--config")

    async def _create() -> str:
        manager = TriggerManager.from_config(_engine())
        return await manager.create_trigger(workflow_id, trigger_type, trigger_config, name)

    try:
        trigger_id = asyncio.run(_create())
    except StepwiseError as exc:
        _fail(exc)
    typer.echo(f"Created trigger {trigger_id}")


@trigger_app.command("list")
def trigger_list() -> None:
    """List stored triggers."""
    triggers = asyncio.run(get_repository().list_triggers())
    if not triggers:
        typer.echo("No triggers found")
        return
    for t in triggers:
        state = "active" if t.is_active else "inactive"
        typer.echo(f"{t.id}\t{t.type.value}\t{t.workflow_id}\t{state}\t{json.dumps(t.config)}")


@trigger_app.command("delete")
def trigger_delete(trigger_id: str) -> None:
    """Delete a trigger."""

    async def _delete() -> None:
        manager = TriggerManager.from_config(_engine())
        await manager.delete_trigger(trigger_id)

    try:
        asyncio.run(_delete())
    except StepwiseError as exc:
        _fail(exc)
    typer.echo(f"Deleted trigger {trigger_id}")


# ----------------------------------------------------------------------
# Long-running process


@app.command("serve")
def serve(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run the schedule loop for all active triggers.

    Stale RUNNING executions from a previous process are failed first.
    """
    config = load_config()

    async def _serve() -> None:
        engine = _engine()
        await engine.reconcile_stale_executions(config.engine.stale_after_seconds)
        manager = TriggerManager.from_config(engine, config)
        count = await manager.initialize()
        typer.echo(f"Serving {count} triggers")
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await manager.shutdown()
            await engine.drain()

    asyncio.run(_serve())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
