"""Redis transport built on lists with a per-topic processing list."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import ChunkReadyMessage
from .base import BaseTransport, Lifespan

logger = logging.getLogger(__name__)

# (processing list, payload) of a delivered message
RawRedisMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawRedisMessage]):
    """Reliable-queue transport over Redis lists.

    Publishing pushes onto the topic list. Consuming atomically moves each
    payload onto ``<topic>:processing`` and ``ack`` removes it from there, so
    a worker that dies mid-chunk leaves its notification behind for
    ``recover`` to put back.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        block_timeout: float = 1.0,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.block_timeout = block_timeout
        self._redis: Optional[Any] = None

    @staticmethod
    def processing_key(topic: str) -> str:
        return f"{topic}:processing"

    async def connect(self) -> None:
        if self._redis is not None:
            return
        client = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await client.ping()
        self._redis = client

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        await self.connect()
        return self._redis

    async def publish(self, topic: str, message: ChunkReadyMessage) -> None:
        client = await self._client()
        await client.lpush(topic, message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawRedisMessage, ChunkReadyMessage]]:
        client = await self._client()
        processing = self.processing_key(topic)
        window = Lifespan(lifespan)
        while not window.expired:
            payload = await client.blmove(
                topic, processing, self.block_timeout, src="RIGHT", dest="LEFT"
            )
            if payload is None:
                continue
            try:
                message = ChunkReadyMessage.from_json(payload)
            except ValueError as e:
                logger.warning("Dropping unparseable message on %s: %s", topic, e)
                await client.lrem(processing, 1, payload)
                continue
            yield (processing, payload), message

    async def ack(self, raw_message: RawRedisMessage) -> None:
        processing, payload = raw_message
        client = await self._client()
        await client.lrem(processing, 1, payload)

    async def nack(self, raw_message: RawRedisMessage, requeue: bool = True) -> None:
        processing, payload = raw_message
        client = await self._client()
        removed = await client.lrem(processing, 1, payload)
        if requeue and removed:
            topic = processing[: -len(":processing")]
            await client.rpush(topic, payload)

    async def recover(self, topic: str) -> int:
        """Put notifications left in the processing list back on ``topic``.

        Only call this when no consumer of ``topic`` is running.
        """
        client = await self._client()
        moved = 0
        while await client.lmove(self.processing_key(topic), topic, src="RIGHT", dest="RIGHT"):
            moved += 1
        if moved:
            logger.info("Recovered %d unacknowledged notifications on %s", moved, topic)
        return moved
