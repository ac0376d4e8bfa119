"""Work chunk state transition engine."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from .errors import NotFoundError, ValidationError
from .models import (
    ACTIVE_JOB_STATUSES,
    JobDefinition,
    JobInstance,
    JobStatus,
    WorkChunk,
    WorkChunkCompletionEvent,
    WorkChunkErrorEvent,
    utcnow,
)
from .persistence import WorkChunkRepository
from .registry import JobDefinitionRegistry
from .states import ChunkEvent, creation_status, sources_for, target_for

logger = logging.getLogger(__name__)


class WorkChunkService:
    """Validates and applies chunk and instance transitions.

    All writes go through conditional repository updates. Losing a race
    is not an error: the operation reports zero rows (or ``None`` for a
    dequeue) and leaves the decision to the caller.

    Args:
        repository: Durable store for instances and chunks.
        registry: Job definitions, used to resolve and validate step ids.
        clock: Source of "now"; tests substitute a controllable clock.
    """

    def __init__(
        self,
        repository: WorkChunkRepository,
        registry: JobDefinitionRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._clock = clock

    @property
    def repository(self) -> WorkChunkRepository:
        return self._repository

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Instances
    async def store_job_instance(self, instance: JobInstance) -> str:
        return await self._repository.store_job_instance(instance)

    async def start_job(
        self,
        definition: JobDefinition,
        parameters: Optional[Dict[str, Any]] = None,
        first_chunk_data: Optional[str] = None,
    ) -> str:
        """Create a job instance together with its first chunk."""
        instance = JobInstance(
            definition_id=definition.definition_id,
            definition_version=definition.version,
            current_gated_step_id=definition.first_step.step_id,
            parameters=parameters or {},
        )
        await self._repository.store_job_instance(instance)
        await self.create_first_chunk(definition, instance.id, data=first_chunk_data)
        logger.info(
            "Started job instance %s of %s", instance.id, definition.definition_id
        )
        return instance.id

    async def fetch_instance(self, instance_id: str) -> JobInstance:
        instance = await self._repository.get_job_instance(instance_id)
        if instance is None:
            raise NotFoundError("Job instance", instance_id)
        return instance

    async def request_cancellation(self, instance_id: str) -> int:
        """Mark an active instance CANCELLED; its chunks are left to finish or lapse."""
        await self.fetch_instance(instance_id)
        return await self._repository.update_job_instance(
            instance_id,
            {"status": JobStatus.CANCELLED, "end_time": self.now()},
            from_statuses=ACTIVE_JOB_STATUSES,
        )

    # ------------------------------------------------------------------
    # Chunk creation
    async def create_first_chunk(
        self, definition: JobDefinition, instance_id: str, data: Optional[str] = None
    ) -> str:
        """Create the chunk for the first step. It is always READY."""
        instance = await self._require_instance_for_creation(instance_id)
        chunk = WorkChunk(
            instance_id=instance.id,
            definition_id=definition.definition_id,
            definition_version=definition.version,
            step_id=definition.first_step.step_id,
            status=creation_status(first_step=True, gated_execution=definition.gated_execution),
            data=data,
            create_time=self.now(),
        )
        return await self._repository.store_work_chunk(chunk)

    async def create_chunk(
        self,
        instance_id: str,
        gated_execution: bool,
        step_id: Optional[str] = None,
        data: Optional[str] = None,
    ) -> str:
        """Create a chunk for a step after the first.

        The chunk starts GATE_WAITING for gated jobs and READY otherwise.
        When ``step_id`` is omitted the step after the instance's current
        gated step is used.

        Raises:
            ValidationError: if the instance does not exist or the step
                cannot be resolved against its job definition.
        """
        instance = await self._require_instance_for_creation(instance_id)
        definition = self._definition_for(instance)

        if step_id is None:
            step_id = self._default_next_step(instance, definition)
        if definition is not None and not definition.has_step(step_id):
            raise ValidationError(
                f"Step {step_id} is not part of job definition {definition.definition_id}"
            )
        first_step = definition is not None and definition.first_step.step_id == step_id

        chunk = WorkChunk(
            instance_id=instance.id,
            definition_id=instance.definition_id,
            definition_version=instance.definition_version,
            step_id=step_id,
            status=creation_status(first_step=first_step, gated_execution=gated_execution),
            data=data,
            create_time=self.now(),
        )
        chunk_id = await self._repository.store_work_chunk(chunk)
        logger.debug(
            "Created chunk %s for instance %s step %s in %s",
            chunk_id, instance.id, step_id, chunk.status,
        )
        return chunk_id

    # ------------------------------------------------------------------
    # Worker-driven transitions
    async def fetch_work_chunk(self, chunk_id: str) -> WorkChunk:
        chunk = await self._repository.get_work_chunk(chunk_id)
        if chunk is None:
            raise NotFoundError("Work chunk", chunk_id)
        return chunk

    async def on_work_chunk_dequeue(self, chunk_id: str) -> Optional[WorkChunk]:
        """Claim a QUEUED chunk for processing.

        Returns the chunk, now IN_PROGRESS with its payload, or ``None`` if it
        was not QUEUED (someone else already took it).
        """
        rows = await self._transition(chunk_id, ChunkEvent.DEQUEUE, {"start_time": self.now()})
        if not rows:
            return None
        return await self._repository.get_work_chunk(chunk_id)

    async def on_work_chunk_poll_delay(self, chunk_id: str, new_time: datetime) -> int:
        """Park an IN_PROGRESS chunk until ``new_time``; a no-op in any other status."""
        return await self._transition(
            chunk_id,
            ChunkEvent.POLL_DELAY,
            {"next_poll_time": new_time},
            increment=("poll_attempts",),
        )

    async def on_work_chunk_completion(self, event: WorkChunkCompletionEvent) -> int:
        return await self._transition(
            event.chunk_id,
            ChunkEvent.COMPLETE,
            {"records_processed": event.records_processed, "end_time": self.now()},
        )

    async def on_work_chunk_error(self, event: WorkChunkErrorEvent) -> int:
        return await self._transition(
            event.chunk_id,
            ChunkEvent.ERROR,
            {"error_message": event.error_message},
            increment=("error_count",),
        )

    async def on_work_chunk_failed(self, chunk_id: str, error_message: str) -> int:
        return await self._transition(
            chunk_id,
            ChunkEvent.FAIL,
            {"error_message": error_message, "end_time": self.now()},
        )

    # ------------------------------------------------------------------
    # Maintenance-driven transitions
    async def update_poll_waiting_chunks_for_job_if_ready(self, instance_id: str) -> int:
        """Return POLL_WAITING chunks whose deadline has passed to READY."""
        count = await self._repository.update_chunks_status(
            instance_id,
            sources_for(ChunkEvent.POLL_EXPIRED),
            target_for(ChunkEvent.POLL_EXPIRED),
            poll_due_by=self.now(),
        )
        if count:
            logger.debug("Woke %d poll-waiting chunks for instance %s", count, instance_id)
        return count

    async def advance_job_step_and_update_chunk_status(
        self, instance_id: str, next_step_id: str
    ) -> int:
        """Move the gate to ``next_step_id`` and release that step's chunks.

        GATE_WAITING chunks and stale QUEUED chunks of the step become READY
        in the same transaction that moves the gate pointer. The caller is
        trusted to have checked that the current step is complete.
        """
        instance = await self.fetch_instance(instance_id)
        definition = self._definition_for(instance)
        if definition is not None and not definition.has_step(next_step_id):
            raise ValidationError(
                f"Step {next_step_id} is not part of job definition {definition.definition_id}"
            )
        released = await self._repository.advance_gated_step(
            instance_id,
            next_step_id,
            sources_for(ChunkEvent.GATE_ADVANCE),
            target_for(ChunkEvent.GATE_ADVANCE),
        )
        logger.info(
            "Advanced instance %s from step %s to %s, released %d chunks",
            instance_id, instance.current_gated_step_id, next_step_id, released,
        )
        return released

    # ------------------------------------------------------------------
    async def _transition(
        self,
        chunk_id: str,
        event: ChunkEvent,
        fields: Mapping[str, Any] | None = None,
        increment: Iterable[str] = (),
    ) -> int:
        rows = await self._repository.update_chunk_status(
            chunk_id, sources_for(event), target_for(event), fields, increment
        )
        if rows:
            logger.debug("Chunk %s: %s -> %s", chunk_id, event.value, target_for(event))
            return rows
        current = await self.fetch_work_chunk(chunk_id)
        logger.debug(
            "Ignoring %s for chunk %s in status %s", event.value, chunk_id, current.status
        )
        return 0

    async def _require_instance_for_creation(self, instance_id: str) -> JobInstance:
        instance = await self._repository.get_job_instance(instance_id)
        if instance is None:
            raise ValidationError(f"Job instance {instance_id} does not exist")
        return instance

    def _definition_for(self, instance: JobInstance) -> Optional[JobDefinition]:
        if self._registry is None:
            return None
        return self._registry.get_definition(instance.definition_id)

    @staticmethod
    def _default_next_step(instance: JobInstance, definition: Optional[JobDefinition]) -> str:
        if definition is None:
            raise ValidationError(
                f"A step id is required: job definition {instance.definition_id} is not registered"
            )
        current = instance.current_gated_step_id or definition.first_step.step_id
        next_step = definition.step_after(current)
        if next_step is None:
            raise ValidationError(
                f"Step {current} is the last step of {definition.definition_id}"
            )
        return next_step.step_id


__all__ = ["WorkChunkService"]
