"""Work chunk execution engine for batchstep step workers."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Optional

from .contracts import ChunkReadyMessage, chunk_topic
from .dispatch import WorkChunkDispatcher
from .errors import JobStepFailedError, NotFoundError, StorageUnavailableError
from .models import JobDefinition, WorkChunk, WorkChunkCompletionEvent, WorkChunkErrorEvent
from .registry import JobDefinitionRegistry, StepExecutionDetails, StepOutcome
from .service import WorkChunkService
from .transports import BaseTransport
from .utils.retry import next_poll_time

logger = logging.getLogger(__name__)


def encode_output(output: Any) -> str:
    """Serialize a step output into the next chunk's payload."""
    return json.dumps(output, default=str)


class WorkChunkExecutor:
    """Runs step workers for chunks announced on a definition's topic.

    Every notification is acknowledged once handled. A duplicate
    notification fails to dequeue and is dropped.
    """

    def __init__(
        self,
        transport: BaseTransport,
        service: WorkChunkService,
        registry: JobDefinitionRegistry,
        definition_id: str,
        dispatcher: Optional[WorkChunkDispatcher] = None,
        poll_backoff_base: float = 1.5,
    ) -> None:
        self._transport = transport
        self._service = service
        self._registry = registry
        self._definition_id = definition_id
        self._dispatcher = dispatcher
        self._poll_backoff_base = poll_backoff_base

    @property
    def topic(self) -> str:
        return chunk_topic(self._definition_id)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for chunk notifications on the definition's topic."""
        if self._registry.get_definition(self._definition_id) is None:
            raise ValueError(f"Job definition {self._definition_id} not found in registry.")

        async for raw_message, message in self._transport.subscribe(
            self.topic, lifespan=lifespan
        ):
            await self.handle_message(message)
            await self._transport.ack(raw_message)

    async def handle_message(self, message: ChunkReadyMessage) -> Optional[StepOutcome]:
        """Dequeue the announced chunk, run its step and report the outcome."""
        try:
            chunk = await self._service.on_work_chunk_dequeue(message.chunk_id)
        except NotFoundError:
            logger.warning("Notification for unknown chunk %s", message.chunk_id)
            return None
        if chunk is None:
            logger.debug("Chunk %s already taken; dropping notification", message.chunk_id)
            return None

        definition = self._registry.get_definition(chunk.definition_id)
        worker = self._registry.get_worker(chunk.definition_id, chunk.step_id)
        if definition is None or worker is None:
            outcome = StepOutcome.failed(
                f"No worker registered for {chunk.definition_id} step {chunk.step_id}"
            )
            await self._report(chunk, definition, outcome)
            return outcome

        instance = await self._service.fetch_instance(chunk.instance_id)
        details = StepExecutionDetails(
            instance_id=chunk.instance_id, chunk=chunk, parameters=instance.parameters
        )
        try:
            outcome = await worker.run(details)
        except StorageUnavailableError:
            raise
        except JobStepFailedError as e:
            outcome = StepOutcome.failed(str(e))
        except Exception as e:
            logger.warning(
                "Step %s failed for chunk %s: %s", chunk.step_id, chunk.id, e, exc_info=True
            )
            outcome = StepOutcome.error(str(e) or e.__class__.__name__)

        await self._report(chunk, definition, outcome)
        return outcome

    async def _report(
        self, chunk: WorkChunk, definition: Optional[JobDefinition], outcome: StepOutcome
    ) -> None:
        if outcome.kind == "completed":
            # Children must exist before the parent completes, otherwise the
            # gate could advance past a step that is still being produced.
            if outcome.outputs and definition is not None:
                await self._create_next_chunks(chunk, definition, outcome)
            await self._service.on_work_chunk_completion(
                WorkChunkCompletionEvent(
                    chunk_id=chunk.id, records_processed=outcome.records_processed
                )
            )
        elif outcome.kind == "poll":
            if outcome.poll_at is not None:
                when = outcome.poll_at
            elif outcome.poll_delay is not None:
                when = self._service.now() + timedelta(seconds=outcome.poll_delay)
            else:
                when = next_poll_time(
                    self._service.now(), chunk.poll_attempts + 1, base=self._poll_backoff_base
                )
            await self._service.on_work_chunk_poll_delay(chunk.id, when)
        elif outcome.kind == "error":
            await self._service.on_work_chunk_error(
                WorkChunkErrorEvent(chunk_id=chunk.id, error_message=outcome.message or "")
            )
        else:
            await self._service.on_work_chunk_failed(chunk.id, outcome.message or "")
        logger.info("Chunk %s step %s reported %s", chunk.id, chunk.step_id, outcome.kind)

    async def _create_next_chunks(
        self, chunk: WorkChunk, definition: JobDefinition, outcome: StepOutcome
    ) -> None:
        next_step = definition.step_after(chunk.step_id)
        if next_step is None:
            logger.warning(
                "Last step %s of %s produced %d outputs; discarding them",
                chunk.step_id, definition.definition_id, len(outcome.outputs),
            )
            return
        for output in outcome.outputs:
            new_id = await self._service.create_chunk(
                chunk.instance_id,
                definition.gated_execution,
                step_id=next_step.step_id,
                data=encode_output(output),
            )
            if not definition.gated_execution and self._dispatcher is not None:
                await self._dispatcher.enqueue_work_chunk_for_processing(new_id)
