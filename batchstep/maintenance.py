"""Maintenance runner: poll expiry, gate advancement and dispatch."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .dispatch import WorkChunkDispatcher
from .errors import StorageUnavailableError
from .models import (
    ACTIVE_JOB_STATUSES,
    INCOMPLETE_CHUNK_STATUSES,
    JobDefinition,
    JobInstance,
    JobStatus,
    WorkChunk,
    WorkChunkStatus,
)
from .registry import JobDefinitionRegistry
from .service import WorkChunkService

logger = logging.getLogger(__name__)


class MaintenancePassResult(BaseModel):
    """Counters collected over one maintenance pass."""

    instances_processed: int = 0
    chunks_woken: int = 0
    gates_advanced: int = 0
    chunks_dispatched: int = 0
    instances_completed: int = 0
    instances_failed: int = 0
    errors: Dict[str, str] = Field(default_factory=dict)


class MaintenanceRunner:
    """Reconciles every active job instance against its chunks.

    Each instance is handled on its own: an exception for one is logged and
    recorded, and the pass moves on. Only ``StorageUnavailableError`` ends a
    pass early, since no other instance could make progress either; the
    next scheduled pass picks the work up again.
    """

    def __init__(
        self,
        service: WorkChunkService,
        dispatcher: WorkChunkDispatcher,
        registry: JobDefinitionRegistry,
        enabled: bool = True,
    ) -> None:
        self._service = service
        self._repository = service.repository
        self._dispatcher = dispatcher
        self._registry = registry
        self.enabled = enabled
        self._stop = asyncio.Event()

    async def run_maintenance_pass(self) -> MaintenancePassResult:
        """Run one pass over all active job instances."""
        result = MaintenancePassResult()
        instances = await self._repository.list_job_instances(ACTIVE_JOB_STATUSES)
        for instance in instances:
            try:
                await self._process_instance(instance, result)
            except StorageUnavailableError:
                raise
            except Exception as exc:
                logger.error(
                    "Maintenance failed for job instance %s", instance.id, exc_info=True
                )
                result.errors[instance.id] = str(exc)
            else:
                result.instances_processed += 1
        logger.debug("Maintenance pass finished: %s", result.model_dump())
        return result

    async def run_forever(self, interval: float = 60.0) -> None:
        """Run passes every ``interval`` seconds until ``stop`` is called."""
        self._stop.clear()
        while not self._stop.is_set():
            if self.enabled:
                try:
                    await self.run_maintenance_pass()
                except StorageUnavailableError as exc:
                    logger.warning("Storage unavailable, retrying next pass: %s", exc)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop.set()

    # ------------------------------------------------------------------
    async def _process_instance(
        self, instance: JobInstance, result: MaintenancePassResult
    ) -> None:
        if instance.status == JobStatus.QUEUED:
            await self._repository.update_job_instance(
                instance.id,
                {"status": JobStatus.IN_PROGRESS, "start_time": self._service.now()},
                from_statuses=[JobStatus.QUEUED],
            )

        result.chunks_woken += await self._service.update_poll_waiting_chunks_for_job_if_ready(
            instance.id
        )

        chunks = await self._repository.fetch_work_chunks(instance.id)
        failed = [c for c in chunks if c.status == WorkChunkStatus.FAILED]
        if failed:
            await self._finish(instance, JobStatus.FAILED, failed[0].error_message)
            result.instances_failed += 1
            return

        definition = self._registry.get_definition(instance.definition_id)
        if definition is None:
            logger.warning(
                "No job definition %s registered; only dispatching instance %s",
                instance.definition_id, instance.id,
            )
        elif definition.gated_execution:
            outcome = await self._evaluate_gate(instance, definition, chunks)
            if outcome == "advanced":
                result.gates_advanced += 1
            elif outcome == "completed":
                result.instances_completed += 1
                return
        elif self._no_work_left(chunks):
            await self._finish(instance, JobStatus.COMPLETED)
            result.instances_completed += 1
            return

        result.chunks_dispatched += await self._dispatcher.enqueue_ready_chunks(instance.id)

    async def _evaluate_gate(
        self, instance: JobInstance, definition: JobDefinition, chunks: List[WorkChunk]
    ) -> Optional[str]:
        current = instance.current_gated_step_id or definition.first_step.step_id
        step_chunks = [c for c in chunks if c.step_id == current]
        if any(c.status != WorkChunkStatus.COMPLETED for c in step_chunks):
            return None

        next_step = definition.step_after(current)
        if next_step is None:
            await self._finish(instance, JobStatus.COMPLETED)
            return "completed"
        await self._service.advance_job_step_and_update_chunk_status(
            instance.id, next_step.step_id
        )
        return "advanced"

    @staticmethod
    def _no_work_left(chunks: List[WorkChunk]) -> bool:
        # a step that produced no outputs ends the job early
        return not any(c.status in INCOMPLETE_CHUNK_STATUSES for c in chunks)

    async def _finish(
        self, instance: JobInstance, status: JobStatus, error_message: Optional[str] = None
    ) -> None:
        fields = {"status": status, "end_time": self._service.now()}
        if error_message:
            fields["error_message"] = error_message
        rows = await self._repository.update_job_instance(
            instance.id, fields, from_statuses=ACTIVE_JOB_STATUSES
        )
        if rows:
            logger.info("Job instance %s finished as %s", instance.id, status)
