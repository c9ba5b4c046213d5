import asyncio
import json

import pytest
from typer.testing import CliRunner

import stepwise.persistence as persistence
from stepwise.cli import app
from stepwise.contracts import ExecutionStatus, Step, Workflow
from stepwise.persistence import InMemoryWorkflowRepository
from stepwise.persistence.models import utcnow

runner = CliRunner()

WORKFLOW_YAML = """
id: sync-orders
name: Sync orders
steps:
  - id: echo
    name: Echo
    type: CUSTOM
    order: 2
    config:
      inputs:
        source: cli
  - id: check
    name: Check
    type: CONDITIONAL
    order: 1
    config:
      condition:
        field: nothing
        operator: exists
"""


@pytest.fixture(autouse=True)
def _setup_repo(tmp_path, monkeypatch) -> InMemoryWorkflowRepository:
    monkeypatch.setenv("STEPWISE_CONFIG", str(tmp_path / "absent.yaml"))
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    yield repo
    persistence._repository_instance = None


def _store_workflow(repo) -> None:
    asyncio.run(
        repo.save_workflow(
            Workflow(
                id="wf",
                name="Echo flow",
                steps=[Step(id="s1", name="Echo", type="CUSTOM", order=1)],
            )
        )
    )


def test_workflow_load_list_and_show(tmp_path, _setup_repo):
    path = tmp_path / "sync.yaml"
    path.write_text(WORKFLOW_YAML)

    result = runner.invoke(app, ["workflow", "load", str(path)])
    assert result.exit_code == 0, result.output
    assert "Loaded workflow sync-orders with 2 steps" in result.output

    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.output
    assert "sync-orders\tSync orders\tactive\t2 steps" in result.output

    result = runner.invoke(app, ["workflow", "show", "sync-orders"])
    assert result.exit_code == 0, result.output
    first = result.output.index("1. check [CONDITIONAL] Check")
    second = result.output.index("2. echo [CUSTOM] Echo")
    assert first < second

    result = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Workflow not found" in result.output


def test_workflow_load_rejects_bad_step_config(tmp_path, _setup_repo):
    path = tmp_path / "bad.yaml"
    path.write_text(
        "id: bad\nname: Bad\nsteps:\n  - {id: s1, name: Call, type: API_CALL, order: 1}\n"
    )
    result = runner.invoke(app, ["workflow", "load", str(path)])
    assert result.exit_code == 1
    assert asyncio.run(_setup_repo.list_workflows()) == []


def test_workflow_run_and_inspect_execution(_setup_repo):
    _store_workflow(_setup_repo)

    result = runner.invoke(app, ["workflow", "run", "wf", "--data", '{"order": 1}'])
    assert result.exit_code == 0, result.output
    assert "Status: SUCCESS" in result.output

    [execution] = asyncio.run(_setup_repo.list_executions())
    assert execution.triggered_by == "manual"
    assert execution.trigger_data == {"order": 1}

    result = runner.invoke(app, ["execution", "list", "--status", "SUCCESS"])
    assert f"{execution.id}\twf\tSUCCESS\tmanual" in result.output

    result = runner.invoke(app, ["execution", "show", execution.id])
    assert result.exit_code == 0, result.output
    assert f"Execution {execution.id}: SUCCESS" in result.output
    assert "- s1: SUCCESS (attempt 1/3)" in result.output

    result = runner.invoke(app, ["execution", "logs", execution.id])
    assert "[s1] SUCCESS" in result.output
    assert "Custom step executed" in result.output

    result = runner.invoke(app, ["execution", "cancel", execution.id])
    assert result.exit_code == 0
    assert "already finished" in result.output


def test_workflow_run_errors():
    result = runner.invoke(app, ["workflow", "run", "nope"])
    assert result.exit_code == 1
    assert "Workflow not found: nope" in result.output

    result = runner.invoke(app, ["workflow", "run", "nope", "--data", "[1, 2]"])
    assert result.exit_code == 1
    assert "--data must be a JSON object" in result.output


def test_execution_show_and_cancel_missing():
    result = runner.invoke(app, ["execution", "show", "missing"])
    assert result.exit_code == 1
    assert "Execution not found" in result.output

    result = runner.invoke(app, ["execution", "cancel", "missing"])
    assert result.exit_code == 1


def test_execution_cancel_and_reconcile(_setup_repo):
    running = asyncio.run(
        _setup_repo.create_execution("wf", ExecutionStatus.RUNNING, utcnow())
    )
    orphan = asyncio.run(
        _setup_repo.create_execution("wf", ExecutionStatus.RUNNING, utcnow())
    )

    result = runner.invoke(app, ["execution", "cancel", running, "--reason", "maintenance"])
    assert result.exit_code == 0, result.output
    assert f"Execution {running} cancelled" in result.output
    cancelled = asyncio.run(_setup_repo.get_execution(running))
    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.error == "maintenance"

    result = runner.invoke(app, ["execution", "reconcile"])
    assert result.exit_code == 0, result.output
    assert "Reconciled 1 executions" in result.output
    assert orphan in result.output
    assert asyncio.run(_setup_repo.get_execution(orphan)).status == ExecutionStatus.FAILED


def test_trigger_create_list_delete(_setup_repo):
    _store_workflow(_setup_repo)
    config = json.dumps({"cronExpression": "*/5 * * * *"})

    result = runner.invoke(
        app, ["trigger", "create", "wf", "SCHEDULE", "--config", config, "--name", "five"]
    )
    assert result.exit_code == 0, result.output
    [trigger] = asyncio.run(_setup_repo.list_triggers())
    assert trigger.name == "five"
    assert f"Created trigger {trigger.id}" in result.output

    result = runner.invoke(app, ["trigger", "list"])
    assert f"{trigger.id}\tSCHEDULE\twf\tactive" in result.output

    result = runner.invoke(app, ["trigger", "delete", trigger.id])
    assert result.exit_code == 0, result.output
    assert asyncio.run(_setup_repo.list_triggers()) == []

    result = runner.invoke(app, ["trigger", "delete", trigger.id])
    assert result.exit_code == 1
    assert "Trigger not found" in result.output


def test_trigger_create_rejects_invalid_cron(_setup_repo):
    _store_workflow(_setup_repo)
    result = runner.invoke(
        app,
        ["trigger", "create", "wf", "SCHEDULE", "--config", '{"cronExpression": "nope"}'],
    )
    assert result.exit_code == 1
    assert "Invalid cron expression" in result.output
    assert asyncio.run(_setup_repo.list_triggers()) == []


def test_serve_runs_for_lifespan(_setup_repo):
    result = runner.invoke(app, ["serve", "--lifespan", "0"])
    assert result.exit_code == 0, result.output
    assert "Serving 0 triggers" in result.output
