"""Job definition and step worker registry."""

from __future__ import annotations

from typing import Dict, Mapping, Optional

from ..models import JobDefinition
from .models import (
    FunctionStepWorker,
    RegisteredJob,
    StepExecutionDetails,
    StepOutcome,
    StepWorker,
    StepWorkerLike,
)


def _as_worker(worker: StepWorkerLike) -> StepWorker:
    if hasattr(worker, "run"):
        return worker  # type: ignore[return-value]
    return FunctionStepWorker(worker)  # type: ignore[arg-type]


class JobDefinitionRegistry:
    """Maps job definition ids to definitions and step ids to workers."""

    def __init__(self) -> None:
        self._jobs: Dict[str, RegisteredJob] = {}

    def register(
        self,
        definition: JobDefinition,
        workers: Optional[Mapping[str, StepWorkerLike]] = None,
    ) -> None:
        """Add ``definition`` and its workers, replacing any earlier registration."""
        workers = dict(workers or {})
        unknown = [step for step in workers if not definition.has_step(step)]
        if unknown:
            raise ValueError(
                f"Workers given for steps not in {definition.definition_id}: {unknown}"
            )
        self._jobs[definition.definition_id] = RegisteredJob(
            definition=definition,
            workers={step: _as_worker(w) for step, w in workers.items()},
        )

    def get_definition(self, definition_id: str) -> Optional[JobDefinition]:
        job = self._jobs.get(definition_id)
        return job.definition if job else None

    def get_worker(self, definition_id: str, step_id: str) -> Optional[StepWorker]:
        job = self._jobs.get(definition_id)
        return job.workers.get(step_id) if job else None

    def definitions(self) -> list[JobDefinition]:
        return [job.definition for job in self._jobs.values()]

    def clear(self) -> None:
        self._jobs.clear()


# Process-wide registry that job modules register into on import; the CLI
# worker command imports a module and then serves from this registry.
REGISTRY = JobDefinitionRegistry()


def register_job_definition(
    definition: JobDefinition,
    workers: Optional[Mapping[str, StepWorkerLike]] = None,
) -> JobDefinition:
    """Add ``definition`` to ``REGISTRY`` and return it."""
    REGISTRY.register(definition, workers)
    return definition


__all__ = [
    "FunctionStepWorker",
    "JobDefinitionRegistry",
    "REGISTRY",
    "StepExecutionDetails",
    "StepOutcome",
    "StepWorker",
    "register_job_definition",
]
