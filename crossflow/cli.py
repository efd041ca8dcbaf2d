"""Command line interface for crossflow workers and operators."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from crossflow.admin import AdminService
from crossflow.cli_utils.app_loader import load_app
from crossflow.config import load_config
from crossflow.errors import CrossflowError, NotFoundError
from crossflow.persistence import get_repository
from crossflow.workflows.models import RunStatus

app = typer.Typer(help="CLI for crossflow outbox and workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
outbox_app = typer.Typer(help="Commands for inspecting the outbox")
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
run_app = typer.Typer(help="Commands for inspecting workflow runs")

app.add_typer(worker_app, name="worker")
app.add_typer(outbox_app, name="outbox")
app.add_typer(workflow_app, name="workflow")
app.add_typer(run_app, name="run")


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to a crossflow YAML configuration file"
    ),
) -> None:
    """Crossflow CLI entry point."""
    cfg = load_config(str(config) if config else None)
    logging.basicConfig(
        level=cfg.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config:
        get_repository(config=cfg)


def _admin() -> AdminService:
    return AdminService(get_repository())


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


# ----------------------------------------------------------------------
@worker_app.command("run")
def worker_run(
    app_path: str = typer.Option(..., "--app", help="Application as module:attribute"),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until interrupted)"
    ),
    base_path: Optional[Path] = typer.Option(
        None, help="Directory added to the import path (default: current dir)"
    ),
) -> None:
    """
    Run the outbox dispatcher and run scheduler for an application.

    Example:
        crossflow worker run --app myservice.events:flow
        crossflow worker run --app myservice.events:create_app --lifespan 60
    """
    try:
        flow = load_app(app_path, base_path)
    except (ImportError, ValueError, TypeError) as exc:
        _fail(f"Cannot load application {app_path}: {exc}")
    typer.echo(f"Starting worker for: {app_path}")
    asyncio.run(flow.run_worker(lifespan=lifespan))


# ----------------------------------------------------------------------
@outbox_app.command("list")
def outbox_list(
    dead_letter: bool = typer.Option(
        False, "--dead-letter", help="Only show dead-lettered records"
    ),
    limit: int = 100,
) -> None:
    """
    List outbox records in creation order.

    Example:
        crossflow outbox list --dead-letter
        # Output: 3f2a...    acme    contract.signed    dead_letter    attempts=5
    """
    records = asyncio.run(
        _admin().list_records(dead_lettered=True if dead_letter else None, limit=limit)
    )
    if not records:
        typer.echo("No outbox records found")
        return
    for record in records:
        typer.echo(
            f"{record.id}\t{record.tenant_id}\t{record.event_type}\t"
            f"{record.status.value}\tattempts={record.delivery_attempts}"
        )


@outbox_app.command("show")
def outbox_show(record_id: str) -> None:
    """Show one outbox record with its envelope and delivery state."""
    try:
        record = asyncio.run(_admin().get_record(record_id))
    except NotFoundError:
        _fail("Outbox record not found")
    typer.echo(f"Record {record.id}: {record.status.value}")
    typer.echo(f"Event: {record.event_type} (tenant {record.tenant_id})")
    typer.echo(f"Correlation: {record.envelope.correlation_id}")
    typer.echo(f"Attempts: {record.delivery_attempts}")
    if record.completed_handlers:
        typer.echo(f"Completed handlers: {', '.join(record.completed_handlers)}")
    if record.last_error:
        typer.echo(f"Last error: {record.last_error}")
    typer.echo(f"Payload: {json.dumps(record.envelope.payload, sort_keys=True)}")


@outbox_app.command("replay")
def outbox_replay(record_id: str) -> None:
    """Return a dead-lettered record to the backlog."""
    try:
        record = asyncio.run(_admin().replay(record_id))
    except NotFoundError:
        _fail("Outbox record not found")
    except ValueError as exc:
        _fail(str(exc))
    typer.echo(f"Replayed {record.id}; status {record.status.value}")


@outbox_app.command("backlog")
def outbox_backlog() -> None:
    """Print the number of records not yet processed or dead-lettered."""
    typer.echo(str(asyncio.run(_admin().backlog())))


# ----------------------------------------------------------------------
@workflow_app.command("list")
def workflow_list(name: Optional[str] = None) -> None:
    """
    List published workflow definitions.

    Example:
        crossflow workflow list
        # Output: activate-engagement:v1    contract.signed    enabled
    """
    definitions = asyncio.run(_admin().list_definitions(name=name))
    if not definitions:
        typer.echo("No workflow definitions found")
        return
    for definition in definitions:
        state = "enabled" if definition.enabled else "disabled"
        typer.echo(f"{definition.id}\t{definition.trigger_event_type}\t{state}")


@workflow_app.command("publish")
def workflow_publish(
    path: Path,
    respect_gitignore: bool = typer.Option(
        True, help="Skip files and directories specified in .gitignore files"
    ),
) -> None:
    """
    Publish workflow definitions from a YAML file or directory.

    Example:
        crossflow workflow publish ./workflows
    """
    search_path = path.expanduser().resolve()
    if not search_path.exists():
        _fail("Specified path does not exist")
    try:
        published = asyncio.run(
            _admin().publish(search_path, respect_gitignore=respect_gitignore)
        )
    except CrossflowError as exc:
        _fail(str(exc))
    if not published:
        typer.echo("No workflow definitions found")
        return
    for definition in published:
        typer.echo(f"Published {definition.id}")


@workflow_app.command("enable")
def workflow_enable(definition_id: str) -> None:
    """Enable a workflow definition; new events match it immediately."""
    try:
        definition = asyncio.run(_admin().enable(definition_id))
    except NotFoundError:
        _fail("Workflow definition not found")
    typer.echo(f"Enabled {definition.id}")


@workflow_app.command("disable")
def workflow_disable(definition_id: str) -> None:
    """Disable a workflow definition; runs in flight are left alone."""
    try:
        definition = asyncio.run(_admin().disable(definition_id))
    except NotFoundError:
        _fail("Workflow definition not found")
    typer.echo(f"Disabled {definition.id}")


# ----------------------------------------------------------------------
@run_app.command("list")
def run_list(
    status: Optional[RunStatus] = typer.Option(None, help="Filter by run status"),
    dead_letter: bool = typer.Option(
        False, "--dead-letter", help="Only show dead-lettered runs"
    ),
    limit: int = 100,
) -> None:
    """
    List workflow runs.

    Example:
        crossflow run list --status failed --dead-letter
    """
    runs = asyncio.run(
        _admin().list_runs(
            status=status, dead_lettered=True if dead_letter else None, limit=limit
        )
    )
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow_definition_id}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show a run and its step history."""
    try:
        history = asyncio.run(_admin().run_history(run_id))
    except NotFoundError:
        _fail("Run not found")
    run = history.run
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Definition: {run.workflow_definition_id}")
    typer.echo(f"Trigger event: {run.trigger_event_id}")
    if run.error:
        typer.echo(f"Error: {run.error}")
    for step in history.steps:
        typer.echo(
            f"- action {step.action_index}: {step.status.value} "
            f"(attempt {step.attempt_count}, key {step.idempotency_key})"
            + (f" error: {step.error}" if step.error else "")
        )


@run_app.command("cancel")
def run_cancel(run_id: str) -> None:
    """Request cancellation of a run at its next step boundary."""
    try:
        run = asyncio.run(_admin().cancel_run(run_id))
    except NotFoundError:
        _fail("Run not found")
    except ValueError as exc:
        _fail(str(exc))
    typer.echo(f"Cancellation requested for {run.id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
