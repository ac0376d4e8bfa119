"""Step worker contracts used by the registry and the executor."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field

from ..models import JobDefinition, WorkChunk


class StepExecutionDetails(BaseModel):
    """What a step worker receives for one chunk."""

    instance_id: str
    chunk: WorkChunk
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @property
    def step_id(self) -> str:
        return self.chunk.step_id

    @property
    def data(self) -> Optional[str]:
        return self.chunk.data

    def json_data(self) -> Any:
        """Decode the chunk payload written by the previous step."""
        return json.loads(self.chunk.data) if self.chunk.data else None


class StepOutcome(BaseModel):
    """Result a step worker hands back for its chunk.

    ``outputs`` of a completed chunk each become a chunk of the next step.
    """

    kind: Literal["completed", "poll", "error", "failed"]
    outputs: List[Any] = Field(default_factory=list)
    records_processed: int = 0
    poll_at: Optional[datetime] = None
    poll_delay: Optional[float] = None
    message: Optional[str] = None

    @classmethod
    def completed(cls, outputs: Optional[List[Any]] = None, records_processed: int = 0) -> "StepOutcome":
        return cls(kind="completed", outputs=outputs or [], records_processed=records_processed)

    @classmethod
    def poll(cls, at: Optional[datetime] = None, delay: Optional[float] = None) -> "StepOutcome":
        """Ask to be run again later; without ``at`` or ``delay`` a backoff is computed."""
        return cls(kind="poll", poll_at=at, poll_delay=delay)

    @classmethod
    def error(cls, message: str) -> "StepOutcome":
        return cls(kind="error", message=message)

    @classmethod
    def failed(cls, message: str) -> "StepOutcome":
        return cls(kind="failed", message=message)


class StepWorker(Protocol):
    """Business logic for one step. The engine never looks inside."""

    async def run(self, details: StepExecutionDetails) -> StepOutcome:
        ...


StepFunction = Callable[[StepExecutionDetails], Awaitable[StepOutcome]]


class FunctionStepWorker:
    """Adapts a plain async function to the ``StepWorker`` protocol."""

    def __init__(self, func: StepFunction) -> None:
        self._func = func

    async def run(self, details: StepExecutionDetails) -> StepOutcome:
        return await self._func(details)


StepWorkerLike = Union[StepWorker, StepFunction]


class RegisteredJob(BaseModel):
    """A job definition together with its step workers."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    definition: JobDefinition
    workers: Dict[str, Any] = Field(default_factory=dict)
