"""In-process transport for tests and single-process runs."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import ChunkReadyMessage
from .base import BaseTransport, Lifespan

RawInMemoryMessage = Tuple[str, ChunkReadyMessage]


class InMemoryTransport(BaseTransport[RawInMemoryMessage]):
    """Per-topic FIFO queues living in this process.

    The JSON form travels with each message so consumers see exactly what a
    networked broker would have delivered.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawInMemoryMessage]] = defaultdict(deque)
        self._poll_interval = poll_interval

    async def publish(self, topic: str, message: ChunkReadyMessage) -> None:
        self._queues[topic].append((message.to_json(), message))

    def pending(self, topic: str) -> List[ChunkReadyMessage]:
        """Messages published to ``topic`` and not yet consumed."""
        return [message for _, message in self._queues[topic]]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawInMemoryMessage, ChunkReadyMessage]]:
        window = Lifespan(lifespan)
        queue = self._queues[topic]
        while not window.expired:
            if not queue:
                await asyncio.sleep(self._poll_interval)
                continue
            raw = queue.popleft()
            yield raw, ChunkReadyMessage.from_json(raw[0])

    async def ack(self, raw_message: RawInMemoryMessage) -> None:
        """Nothing to confirm: the message left the queue when it was yielded."""
