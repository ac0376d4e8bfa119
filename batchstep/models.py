"""Data models for job definitions, job instances and work chunks."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time; the default clock for the engine."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkChunkStatus(str, Enum):
    """Persisted status of a work chunk."""

    READY = "READY"
    GATE_WAITING = "GATE_WAITING"
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    POLL_WAITING = "POLL_WAITING"
    ERRORED = "ERRORED"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkChunkStatus.COMPLETED, WorkChunkStatus.FAILED)

    @property
    def is_incomplete(self) -> bool:
        return not self.is_terminal

    def __str__(self) -> str:
        return self.value


class JobStatus(str, Enum):
    """Lifecycle status of a job instance."""

    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.IN_PROGRESS)

    def __str__(self) -> str:
        return self.value


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.IN_PROGRESS)
INCOMPLETE_CHUNK_STATUSES = tuple(s for s in WorkChunkStatus if s.is_incomplete)


class JobStepDefinition(BaseModel):
    """One step of a job definition."""

    step_id: str
    description: Optional[str] = None
    is_first_step: bool = False
    is_last_step: bool = False


class JobDefinition(BaseModel):
    """Ordered steps of a job plus its gating flag.

    Gating applies to every step after the first: chunks produced for a
    later step wait in GATE_WAITING until all chunks of the step before it
    have completed.
    """

    definition_id: str
    version: int = 1
    gated_execution: bool = False
    steps: List[JobStepDefinition]

    @field_validator("steps")
    @classmethod
    def _mark_step_positions(cls, steps: List[JobStepDefinition]) -> List[JobStepDefinition]:
        if not steps:
            raise ValueError("a job definition needs at least one step")
        ids = [s.step_id for s in steps]
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate step ids in {ids}")
        last = len(steps) - 1
        return [
            step.model_copy(update={"is_first_step": i == 0, "is_last_step": i == last})
            for i, step in enumerate(steps)
        ]

    @classmethod
    def from_step_ids(
        cls, definition_id: str, step_ids: List[str], gated_execution: bool = False, version: int = 1
    ) -> "JobDefinition":
        return cls(
            definition_id=definition_id,
            version=version,
            gated_execution=gated_execution,
            steps=[JobStepDefinition(step_id=s) for s in step_ids],
        )

    @property
    def first_step(self) -> JobStepDefinition:
        return self.steps[0]

    @property
    def last_step(self) -> JobStepDefinition:
        return self.steps[-1]

    @property
    def step_ids(self) -> List[str]:
        return [s.step_id for s in self.steps]

    def has_step(self, step_id: str) -> bool:
        return step_id in self.step_ids

    def step_after(self, step_id: str) -> Optional[JobStepDefinition]:
        """Return the step following ``step_id`` or ``None`` for the last step."""
        ids = self.step_ids
        if step_id not in ids:
            raise ValueError(f"step {step_id} is not part of {self.definition_id}")
        index = ids.index(step_id)
        return self.steps[index + 1] if index + 1 < len(ids) else None


class JobInstance(BaseModel):
    """One execution of a job definition."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    definition_version: int = 1
    status: JobStatus = JobStatus.QUEUED
    current_gated_step_id: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    create_time: datetime = Field(default_factory=utcnow)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class WorkChunk(BaseModel):
    """The atomic unit of schedulable work."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    definition_id: str
    definition_version: int = 1
    step_id: str
    sequence: int = 0
    status: WorkChunkStatus = WorkChunkStatus.READY
    data: Optional[str] = None
    next_poll_time: Optional[datetime] = None
    poll_attempts: int = 0
    error_count: int = 0
    error_message: Optional[str] = None
    records_processed: Optional[int] = None
    create_time: datetime = Field(default_factory=utcnow)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    update_time: Optional[datetime] = None


class WorkChunkCompletionEvent(BaseModel):
    """Report from a worker that finished a chunk successfully."""

    chunk_id: str
    records_processed: int = 0


class WorkChunkErrorEvent(BaseModel):
    """Report from a worker that hit a recoverable error."""

    chunk_id: str
    error_message: str


__all__ = [
    "ACTIVE_JOB_STATUSES",
    "INCOMPLETE_CHUNK_STATUSES",
    "JobDefinition",
    "JobInstance",
    "JobStatus",
    "JobStepDefinition",
    "WorkChunk",
    "WorkChunkCompletionEvent",
    "WorkChunkErrorEvent",
    "WorkChunkStatus",
    "new_id",
    "utcnow",
]
