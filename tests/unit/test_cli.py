import asyncio
import textwrap

from typer.testing import CliRunner

import batchstep.persistence as persistence
from batchstep.cli import app
from batchstep.models import JobDefinition, JobStatus
from batchstep.persistence import InMemoryWorkChunkRepository
from batchstep.service import WorkChunkService

runner = CliRunner()


def _setup_repo() -> InMemoryWorkChunkRepository:
    repo = InMemoryWorkChunkRepository()
    persistence._repository_instance = repo
    return repo


def _start(repo, definition: JobDefinition) -> str:
    return asyncio.run(WorkChunkService(repo).start_job(definition))


def _write_job_module(tmp_path, monkeypatch, name="cli_jobs") -> str:
    (tmp_path / f"{name}.py").write_text(
        textwrap.dedent(
            """
            from batchstep import JobDefinition, StepOutcome, register_job_definition


            async def only(details):
                return StepOutcome.completed()


            register_job_definition(
                JobDefinition.from_step_ids("cli-job", ["only"], gated_execution=True),
                {"only": only},
            )
            """
        )
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    return name


def test_instance_list_and_show():
    repo = _setup_repo()
    definition = JobDefinition.from_step_ids("report", ["collect", "render"])
    instance_id = _start(repo, definition)

    result = runner.invoke(app, ["instance", "list"])
    assert result.exit_code == 0, result.stdout
    assert instance_id in result.stdout
    assert "report" in result.stdout
    assert "QUEUED" in result.stdout

    result = runner.invoke(app, ["instance", "show", instance_id])
    assert result.exit_code == 0, result.stdout
    assert f"Job instance {instance_id}: QUEUED" in result.stdout
    assert "collect #0" in result.stdout
    assert "READY" in result.stdout


def test_instance_list_empty_and_show_missing():
    _setup_repo()

    result = runner.invoke(app, ["instance", "list"])
    assert result.exit_code == 0
    assert "No job instances found" in result.stdout

    result = runner.invoke(app, ["instance", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Job instance not found" in result.stdout


def test_instance_cancel():
    repo = _setup_repo()
    instance_id = _start(repo, JobDefinition.from_step_ids("report", ["collect"]))

    result = runner.invoke(app, ["instance", "cancel", instance_id])
    assert result.exit_code == 0
    assert "cancelled" in result.stdout
    assert asyncio.run(repo.get_job_instance(instance_id)).status == JobStatus.CANCELLED

    result = runner.invoke(app, ["instance", "cancel", instance_id])
    assert "is not active" in result.stdout

    result = runner.invoke(app, ["instance", "cancel", "missing-id"])
    assert result.exit_code == 1


def test_maintenance_pass_dispatches_ready_chunks(tmp_path, monkeypatch):
    repo = _setup_repo()
    module = _write_job_module(tmp_path, monkeypatch)
    instance_id = _start(repo, JobDefinition.from_step_ids("cli-job", ["only"], gated_execution=True))

    result = runner.invoke(app, ["--log-level", "debug", "maintenance", "pass", "--module", module])

    assert result.exit_code == 0, result.stdout
    assert "processed=1" in result.stdout
    assert "dispatched=1" in result.stdout
    instance = asyncio.run(repo.get_job_instance(instance_id))
    assert instance.status == JobStatus.IN_PROGRESS


def test_maintenance_pass_rejects_unknown_module():
    _setup_repo()
    result = runner.invoke(app, ["maintenance", "pass", "--module", "no_such_module_xyz"])
    assert result.exit_code == 1
    assert "Cannot import" in result.stdout


def test_worker_run_requires_registered_definition():
    _setup_repo()
    result = runner.invoke(app, ["worker", "run", "not-registered"])
    assert result.exit_code == 1
    assert "not registered" in result.stdout
    assert "Registered definitions: none" in result.stdout


def test_worker_run_lists_known_definitions(tmp_path, monkeypatch):
    _setup_repo()
    module = _write_job_module(tmp_path, monkeypatch, name="cli_listed_jobs")

    result = runner.invoke(app, ["worker", "run", "typo-job", "--module", module])

    assert result.exit_code == 1
    assert "Registered definitions: cli-job" in result.stdout


def test_worker_run_with_lifespan(tmp_path, monkeypatch):
    _setup_repo()
    module = _write_job_module(tmp_path, monkeypatch, name="cli_worker_jobs")

    result = runner.invoke(
        app, ["worker", "run", "cli-job", "--module", module, "--lifespan", "0.1"]
    )

    assert result.exit_code == 0, result.stdout
    assert "Starting worker for: cli-job" in result.stdout
