import pytest

from batchstep.dispatch import WorkChunkDispatcher
from batchstep.execute import WorkChunkExecutor
from batchstep.maintenance import MaintenanceRunner
from batchstep.models import JobDefinition, JobStatus, WorkChunkStatus as S
from batchstep.persistence import SQLiteWorkChunkRepository
from batchstep.registry import JobDefinitionRegistry, StepOutcome
from batchstep.service import WorkChunkService
from batchstep.transports.inmemory import InMemoryTransport


async def _extract(details):
    return StepOutcome.completed(outputs=["rows-1", "rows-2"])


async def _load(details):
    return StepOutcome.completed(records_processed=1)


def _components(repo, transport, registry):
    service = WorkChunkService(repo, registry=registry)
    dispatcher = WorkChunkDispatcher(repo, transport)
    return (
        MaintenanceRunner(service, dispatcher, registry),
        WorkChunkExecutor(transport, service, registry, "etl", dispatcher=dispatcher),
        service,
    )


@pytest.mark.asyncio
async def test_job_resumes_after_restart_and_ignores_duplicates(tmp_path):
    transport = InMemoryTransport()
    registry = JobDefinitionRegistry()
    definition = JobDefinition.from_step_ids("etl", ["extract", "load"], gated_execution=True)
    registry.register(definition, {"extract": _extract, "load": _load})
    repo_path = tmp_path / "jobs.db"

    repo = SQLiteWorkChunkRepository(repo_path)
    runner, executor, service = _components(repo, transport, registry)
    instance_id = await service.start_job(definition)
    await runner.run_maintenance_pass()

    raw = transport._queues[executor.topic].popleft()
    msg = raw[1]
    dup = msg.model_copy(deep=True)
    await executor.handle_message(msg)
    assert await executor.handle_message(dup) is None
    repo.close()

    repo = SQLiteWorkChunkRepository(repo_path)
    runner, executor, service = _components(repo, transport, registry)
    chunks = await repo.fetch_work_chunks(instance_id, step_id="load")
    assert [c.status for c in chunks] == [S.GATE_WAITING, S.GATE_WAITING]

    await runner.run_maintenance_pass()
    while transport._queues[executor.topic]:
        raw = transport._queues[executor.topic].popleft()
        await executor.handle_message(raw[1])
    await runner.run_maintenance_pass()

    instance = await repo.get_job_instance(instance_id)
    assert instance.status == JobStatus.COMPLETED
    assert instance.current_gated_step_id == "load"
    repo.close()
