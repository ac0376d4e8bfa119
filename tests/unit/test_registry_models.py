import pytest

from batchstep.models import JobDefinition, WorkChunk
from batchstep.registry import (
    REGISTRY,
    FunctionStepWorker,
    JobDefinitionRegistry,
    StepExecutionDetails,
    StepOutcome,
    register_job_definition,
)


async def _noop(details):
    return StepOutcome.completed()


def test_register_wraps_plain_functions():
    registry = JobDefinitionRegistry()
    definition = JobDefinition.from_step_ids("job", ["a", "b"])

    registry.register(definition, {"a": _noop})

    assert registry.get_definition("job") == definition
    assert isinstance(registry.get_worker("job", "a"), FunctionStepWorker)
    assert registry.get_worker("job", "b") is None
    assert registry.get_worker("other", "a") is None
    assert registry.definitions() == [definition]


def test_register_rejects_workers_for_unknown_steps():
    registry = JobDefinitionRegistry()
    definition = JobDefinition.from_step_ids("job", ["a"])
    with pytest.raises(ValueError):
        registry.register(definition, {"z": _noop})


def test_register_job_definition_uses_global_registry():
    definition = register_job_definition(JobDefinition.from_step_ids("global-job", ["a"]))
    assert REGISTRY.get_definition("global-job") is definition


def test_step_outcome_constructors():
    assert StepOutcome.completed(["x"], records_processed=3).outputs == ["x"]
    assert StepOutcome.poll(delay=5).poll_delay == 5
    assert StepOutcome.error("retry me").kind == "error"
    assert StepOutcome.failed("give up").message == "give up"


def test_execution_details_decode_json():
    chunk = WorkChunk(instance_id="i", definition_id="job", step_id="a", data='{"n": 1}')
    details = StepExecutionDetails(instance_id="i", chunk=chunk)
    assert details.step_id == "a"
    assert details.json_data() == {"n": 1}
    empty = StepExecutionDetails(
        instance_id="i", chunk=chunk.model_copy(update={"data": None})
    )
    assert empty.json_data() is None


@pytest.mark.asyncio
async def test_function_worker_runs():
    chunk = WorkChunk(instance_id="i", definition_id="job", step_id="a")
    worker = FunctionStepWorker(_noop)
    outcome = await worker.run(StepExecutionDetails(instance_id="i", chunk=chunk))
    assert outcome.kind == "completed"
