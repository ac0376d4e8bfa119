"""Tests for the work chunk executor."""

from datetime import timedelta

import pytest

from batchstep.contracts import ChunkReadyMessage, chunk_topic
from batchstep.errors import JobStepFailedError, StorageUnavailableError
from batchstep.execute import WorkChunkExecutor
from batchstep.models import JobDefinition, WorkChunkStatus as S
from batchstep.registry import StepOutcome
from support import JobStateFixture


def _message(plan, definition_id="gated-job") -> ChunkReadyMessage:
    return ChunkReadyMessage(
        chunk_id=plan.chunk_id,
        instance_id="ignored",
        definition_id=definition_id,
        step_id=plan.step_id,
    )


def _executor(transport, service, registry, dispatcher=None, definition_id="gated-job"):
    return WorkChunkExecutor(
        transport, service, registry, definition_id, dispatcher=dispatcher
    )


@pytest.mark.asyncio
async def test_completed_outputs_become_gated_chunks(
    transport, service, repository, registry, gated_definition
):
    seen = {}

    async def split(details):
        seen["data"] = details.json_data()
        seen["parameters"] = details.parameters
        return StepOutcome.completed(outputs=[{"part": 1}, {"part": 2}], records_processed=2)

    registry.register(gated_definition, {"1": split})
    fixture = JobStateFixture(repository, gated_definition)
    [plan] = await fixture.setup("1|QUEUED,1|COMPLETED")

    outcome = await _executor(transport, service, registry).handle_message(_message(plan))

    assert outcome.kind == "completed"
    assert seen["data"] == {"step": "1"}
    await fixture.verify()
    children = await repository.fetch_work_chunks(fixture.instance_id, step_id="2")
    assert [c.status for c in children] == [S.GATE_WAITING, S.GATE_WAITING]
    assert [c.data for c in children] == ['{"part": 1}', '{"part": 2}']
    parent = await repository.get_work_chunk(plan.chunk_id)
    assert parent.records_processed == 2


@pytest.mark.asyncio
async def test_ungated_outputs_are_dispatched_immediately(
    transport, service, repository, registry, dispatcher, ungated_definition
):
    async def split(details):
        return StepOutcome.completed(outputs=["a"])

    registry.register(ungated_definition, {"1": split})
    fixture = JobStateFixture(repository, ungated_definition)
    [plan] = await fixture.setup("1|QUEUED,1|COMPLETED")
    executor = _executor(
        transport, service, registry, dispatcher=dispatcher, definition_id="ungated-job"
    )

    await executor.handle_message(_message(plan, "ungated-job"))

    [child] = await repository.fetch_work_chunks(fixture.instance_id, step_id="2")
    assert child.status == S.QUEUED
    [message] = transport.pending(chunk_topic("ungated-job"))
    assert message.chunk_id == child.id


@pytest.mark.asyncio
async def test_last_step_outputs_are_discarded(
    transport, service, repository, registry, gated_definition
):
    async def finish(details):
        return StepOutcome.completed(outputs=["extra"])

    registry.register(gated_definition, {"3": finish})
    fixture = JobStateFixture(repository, gated_definition, current_gated_step_id="3")
    [plan] = await fixture.setup("3|QUEUED,3|COMPLETED")

    await _executor(transport, service, registry).handle_message(_message(plan))

    assert len(await repository.fetch_work_chunks(fixture.instance_id)) == 1
    await fixture.verify()


@pytest.mark.asyncio
async def test_poll_outcomes(transport, service, repository, registry, gated_definition, clock):
    outcomes = iter([StepOutcome.poll(delay=30), StepOutcome.poll()])

    async def wait_for_export(details):
        return next(outcomes)

    registry.register(gated_definition, {"1": wait_for_export})
    fixture = JobStateFixture(repository, gated_definition)
    first, second = await fixture.setup(
        """
        1|QUEUED,1|POLL_WAITING
        1|QUEUED,1|POLL_WAITING
        """
    )
    executor = _executor(transport, service, registry)

    await executor.handle_message(_message(first))
    await executor.handle_message(_message(second))

    await fixture.verify()
    delayed = await repository.get_work_chunk(first.chunk_id)
    assert delayed.next_poll_time == clock() + timedelta(seconds=30)
    assert delayed.poll_attempts == 1
    backed_off = await repository.get_work_chunk(second.chunk_id)
    assert clock() < backed_off.next_poll_time <= clock() + timedelta(seconds=2.5)


@pytest.mark.asyncio
async def test_worker_exceptions_map_to_statuses(
    transport, service, repository, registry, gated_definition
):
    async def flaky(details):
        raise TimeoutError("upstream slow")

    async def broken(details):
        raise JobStepFailedError("corrupt input")

    registry.register(gated_definition, {"1": flaky, "2": broken})
    fixture = JobStateFixture(repository, gated_definition)
    errored, failed = await fixture.setup(
        """
        1|QUEUED,1|ERRORED
        2|QUEUED,2|FAILED
        """
    )
    executor = _executor(transport, service, registry)

    assert (await executor.handle_message(_message(errored))).kind == "error"
    assert (await executor.handle_message(_message(failed))).kind == "failed"

    await fixture.verify()
    chunk = await repository.get_work_chunk(errored.chunk_id)
    assert chunk.error_message == "upstream slow"
    assert chunk.error_count == 1
    assert (await repository.get_work_chunk(failed.chunk_id)).error_message == "corrupt input"


@pytest.mark.asyncio
async def test_storage_errors_propagate(transport, service, repository, registry, gated_definition):
    async def needs_db(details):
        raise StorageUnavailableError("db down")

    registry.register(gated_definition, {"1": needs_db})
    fixture = JobStateFixture(repository, gated_definition)
    [plan] = await fixture.setup("1|QUEUED,1|IN_PROGRESS")

    with pytest.raises(StorageUnavailableError):
        await _executor(transport, service, registry).handle_message(_message(plan))
    await fixture.verify()


@pytest.mark.asyncio
async def test_missing_worker_fails_chunk(transport, service, repository, registry, gated_definition):
    fixture = JobStateFixture(repository, gated_definition)
    [plan] = await fixture.setup("1|QUEUED,1|FAILED")

    outcome = await _executor(transport, service, registry).handle_message(_message(plan))

    assert outcome.kind == "failed"
    await fixture.verify()


@pytest.mark.asyncio
async def test_duplicate_and_unknown_notifications_are_dropped(
    transport, service, repository, registry, gated_definition
):
    calls = []

    class CountingWorker:
        async def run(self, details):
            calls.append(details.chunk.id)
            return StepOutcome.completed()

    registry.register(gated_definition, {"1": CountingWorker()})
    fixture = JobStateFixture(repository, gated_definition)
    [plan] = await fixture.setup("1|QUEUED,1|COMPLETED")
    executor = _executor(transport, service, registry)

    await executor.handle_message(_message(plan))
    assert await executor.handle_message(_message(plan)) is None
    missing = ChunkReadyMessage(
        chunk_id="missing", instance_id="x", definition_id="gated-job", step_id="1"
    )
    assert await executor.handle_message(missing) is None

    assert calls == [plan.chunk_id]
    await fixture.verify()


@pytest.mark.asyncio
async def test_start_consumes_topic(transport, service, repository, registry, dispatcher):
    definition = JobDefinition.from_step_ids("listen-job", ["only"])

    async def work(details):
        return StepOutcome.completed(records_processed=1)

    registry.register(definition, {"only": work})
    fixture = JobStateFixture(repository, definition)
    [plan] = await fixture.setup("only|READY,only|COMPLETED")
    await dispatcher.enqueue_work_chunk_for_processing(plan.chunk_id)

    executor = _executor(transport, service, registry, definition_id="listen-job")
    await executor.start(lifespan=0.2)

    await fixture.verify()
    assert transport.pending(chunk_topic("listen-job")) == []


@pytest.mark.asyncio
async def test_start_requires_registered_definition(transport, service, registry):
    with pytest.raises(ValueError):
        await _executor(transport, service, registry, definition_id="unknown").start(lifespan=0.1)
