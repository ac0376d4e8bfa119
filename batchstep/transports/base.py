"""Base transport interface for chunk-ready notifications."""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import ChunkReadyMessage

RawMessageT = TypeVar("RawMessageT")


class Lifespan:
    """Tracks whether a subscription has outlived the time it was given.

    ``None`` means the subscription runs until cancelled.
    """

    def __init__(self, seconds: Optional[float]) -> None:
        self._seconds = seconds
        self._started = asyncio.get_running_loop().time()

    @property
    def expired(self) -> bool:
        if self._seconds is None:
            return False
        return asyncio.get_running_loop().time() - self._started >= self._seconds


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Carries ``ChunkReadyMessage`` notifications from dispatcher to workers.

    Delivery is at-least-once. ``subscribe`` yields the broker's raw message
    next to the parsed notification, and the consumer hands the raw message
    back to ``ack`` once the chunk has been handled.
    """

    async def connect(self) -> None:
        """Open the broker connection. Backends without one do nothing."""

    async def disconnect(self) -> None:
        """Release the broker connection."""

    @abc.abstractmethod
    async def publish(self, topic: str, message: ChunkReadyMessage) -> None:
        """Announce a queued chunk on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, ChunkReadyMessage]]:
        """Yield ``(raw, message)`` pairs from ``topic``.

        Args:
            topic: Topic to consume, usually ``chunk_topic(definition_id)``
            lifespan: Seconds to keep consuming. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a notification as handled so it is not delivered again."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Give a notification back. Backends that cannot requeue just ack it."""
        await self.ack(raw_message)
