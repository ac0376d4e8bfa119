"""Work chunk dispatcher for batchstep."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from .contracts import ChunkReadyMessage, chunk_topic
from .models import WorkChunkStatus
from .persistence import WorkChunkRepository
from .states import ChunkEvent, sources_for, target_for
from .transports import BaseTransport

logger = logging.getLogger(__name__)

ResultCallback = Callable[[int], Union[None, Awaitable[None]]]


class WorkChunkDispatcher:
    """Service responsible for moving READY chunks onto the message channel."""

    def __init__(
        self,
        repository: WorkChunkRepository,
        transport: BaseTransport,
        topic_for: Callable[[str], str] = chunk_topic,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._topic_for = topic_for

    async def enqueue_work_chunk_for_processing(
        self, chunk_id: str, on_result: Optional[ResultCallback] = None
    ) -> int:
        """Move ``chunk_id`` from READY to QUEUED and notify a worker.

        Args:
            chunk_id: Chunk presumed to be READY.
            on_result: Receives the number of rows updated (0 or 1), so that
                callers dispatching many chunks can tally the eligible ones.
                May be a plain or an async callable.

        Returns:
            The same row count handed to ``on_result``. Chunks that are not
            READY are skipped silently and nothing is published for them.
            When the publish fails the chunk goes back to READY and 0 is
            returned, so a later pass dispatches it again.
        """
        rows = await self._repository.update_chunk_status(
            chunk_id, sources_for(ChunkEvent.DISPATCH), target_for(ChunkEvent.DISPATCH)
        )
        if rows == 1:
            if not await self._notify(chunk_id):
                rows = 0
        else:
            logger.debug("Chunk %s was not READY; skipping dispatch", chunk_id)

        if on_result is not None:
            result: Any = on_result(rows)
            if inspect.isawaitable(result):
                await result
        return rows

    async def enqueue_ready_chunks(self, instance_id: str) -> int:
        """Dispatch every READY chunk of an instance and return how many went out."""
        ready = await self._repository.fetch_work_chunks(
            instance_id, statuses=[WorkChunkStatus.READY]
        )
        dispatched = 0
        for chunk in ready:
            dispatched += await self.enqueue_work_chunk_for_processing(chunk.id)
        if dispatched:
            logger.info("Dispatched %d chunks for instance %s", dispatched, instance_id)
        return dispatched

    async def _notify(self, chunk_id: str) -> bool:
        chunk = await self._repository.get_work_chunk(chunk_id)
        if chunk is None:
            logger.warning("Chunk %s vanished after being queued", chunk_id)
            return False
        message = ChunkReadyMessage(
            chunk_id=chunk.id,
            instance_id=chunk.instance_id,
            definition_id=chunk.definition_id,
            step_id=chunk.step_id,
        )
        topic = self._topic_for(chunk.definition_id)
        try:
            await self._transport.publish(topic, message)
        except Exception as e:
            logger.error(
                "Failed to publish ready notification for chunk %s on %s: %s",
                chunk_id, topic, e,
            )
            await self._repository.update_chunk_status(
                chunk_id,
                sources_for(ChunkEvent.DISPATCH_FAILED),
                target_for(ChunkEvent.DISPATCH_FAILED),
            )
            return False
        logger.debug("Published chunk %s to %s", chunk_id, topic)
        return True
