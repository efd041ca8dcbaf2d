import asyncio
import uuid
from pathlib import Path

from typer.testing import CliRunner

import crossflow.persistence as persistence
from crossflow.cli import app
from crossflow.outbox import OutboxWriter
from crossflow.persistence import InMemoryRepository
from crossflow.workflows.models import RunStatus, WorkflowRun

WORKFLOW_YAML = """
name: activate-engagement
trigger: contract.signed
actions:
  - type: create-entity
    target_domain: projects
    entity: project
"""


def _setup_repo() -> InMemoryRepository:
    repo = InMemoryRepository()
    persistence._repository_instance = repo
    return repo


async def _dead_letter(repo: InMemoryRepository) -> str:
    async with repo.transaction() as tx:
        event = await OutboxWriter().append(tx, "acme", "contract.signed", {"id": "c-1"})
    now = event.occurred_at
    await repo.claim_outbox_batch("t", now, 30, 10)
    await repo.record_delivery_failure(event.id, "t", "consumer exploded", now, None, True)
    return event.id


def test_outbox_commands():
    repo = _setup_repo()
    record_id = asyncio.run(_dead_letter(repo))
    runner = CliRunner()

    result = runner.invoke(app, ["outbox", "list", "--dead-letter"])
    assert result.exit_code == 0, result.stdout
    assert record_id in result.stdout
    assert "dead_letter" in result.stdout

    result = runner.invoke(app, ["outbox", "show", record_id])
    assert result.exit_code == 0, result.stdout
    assert "consumer exploded" in result.stdout

    result = runner.invoke(app, ["outbox", "replay", record_id])
    assert result.exit_code == 0, result.stdout
    assert f"Replayed {record_id}" in result.stdout

    result = runner.invoke(app, ["outbox", "backlog"])
    assert result.stdout.strip() == "1"

    result = runner.invoke(app, ["outbox", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Outbox record not found" in result.stdout


def test_workflow_commands(tmp_path: Path):
    _setup_repo()
    (tmp_path / "activate.yaml").write_text(WORKFLOW_YAML)
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "publish", str(tmp_path)])
    assert result.exit_code == 0, result.stdout
    assert "Published activate-engagement:v1" in result.stdout

    result = runner.invoke(app, ["workflow", "disable", "activate-engagement:v1"])
    assert result.exit_code == 0, result.stdout

    result = runner.invoke(app, ["workflow", "list"])
    assert "activate-engagement:v1\tcontract.signed\tdisabled" in result.stdout

    result = runner.invoke(app, ["workflow", "enable", "missing:v1"])
    assert result.exit_code == 1
    assert "Workflow definition not found" in result.stdout

    result = runner.invoke(app, ["workflow", "publish", str(tmp_path / "nope")])
    assert result.exit_code == 1


def test_run_commands():
    repo = _setup_repo()
    run, _ = asyncio.run(
        repo.create_run(
            WorkflowRun(
                workflow_definition_id="activate-engagement:v1",
                tenant_id="acme",
                trigger_event_id=str(uuid.uuid4()),
            )
        )
    )
    runner = CliRunner()

    result = runner.invoke(app, ["run", "list", "--status", RunStatus.PENDING.value])
    assert result.exit_code == 0, result.stdout
    assert run.id in result.stdout

    result = runner.invoke(app, ["run", "cancel", run.id])
    assert result.exit_code == 0, result.stdout
    assert asyncio.run(repo.get_run(run.id)).cancel_requested

    result = runner.invoke(app, ["run", "show", run.id])
    assert f"Run {run.id}: pending" in result.stdout

    result = runner.invoke(app, ["run", "list", "--dead-letter"])
    assert "No runs found" in result.stdout

    result = runner.invoke(app, ["run", "show", "missing"])
    assert result.exit_code == 1
    assert "Run not found" in result.stdout


def test_worker_run_loads_application(tmp_path: Path):
    module = f"cf_app_{uuid.uuid4().hex[:8]}"
    (tmp_path / f"{module}.py").write_text(
        "from crossflow import Crossflow\n"
        "from crossflow.persistence import InMemoryRepository\n"
        "from crossflow.registry import OperationRegistry\n"
        "flow = Crossflow(repository=InMemoryRepository(), operations=OperationRegistry())\n"
    )
    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "worker",
            "run",
            "--app",
            f"{module}:flow",
            "--lifespan",
            "0.2",
            "--base-path",
            str(tmp_path),
        ],
    )
    assert result.exit_code == 0, result.stdout
    assert f"Starting worker for: {module}:flow" in result.stdout

    result = runner.invoke(app, ["worker", "run", "--app", "no_such_module_xyz:flow"])
    assert result.exit_code == 1
