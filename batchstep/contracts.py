"""Message contracts exchanged between the dispatcher and chunk workers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

TOPIC_PREFIX = "batchstep"


def chunk_topic(definition_id: str) -> str:
    """Topic that carries ready notifications for one job definition."""
    return f"{TOPIC_PREFIX}.{definition_id}"


class ChunkReadyMessage(BaseModel):
    """
    Notification that a chunk moved from READY to QUEUED.

    Delivery is at-least-once; consumers treat a duplicate as a no-op because
    the dequeue transition only succeeds for the first taker.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    chunk_id: str
    instance_id: str
    definition_id: str
    step_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    schema_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "ChunkReadyMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
