"""Repository abstraction for job instance and work chunk persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Protocol

from ..models import JobInstance, JobStatus, WorkChunk, WorkChunkStatus

# Columns a status update may also write. Anything else is rejected so the
# SQL backends can build SET clauses from field names safely.
CHUNK_UPDATE_FIELDS = frozenset(
    {
        "data",
        "next_poll_time",
        "error_message",
        "records_processed",
        "start_time",
        "end_time",
    }
)
CHUNK_COUNTER_FIELDS = frozenset({"poll_attempts", "error_count"})
INSTANCE_UPDATE_FIELDS = frozenset(
    {
        "status",
        "current_gated_step_id",
        "parameters",
        "error_message",
        "start_time",
        "end_time",
    }
)


def chunk_update_fields(
    to_status: WorkChunkStatus,
    fields: Mapping[str, Any] | None,
    increment: Iterable[str] = (),
) -> tuple[dict[str, Any], tuple[str, ...]]:
    """Validate the extra columns of a chunk status update.

    ``next_poll_time`` is only meaningful while POLL_WAITING, so it is cleared
    on every transition to another status.
    """
    values = dict(fields or {})
    unknown = set(values) - CHUNK_UPDATE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported work chunk fields: {sorted(unknown)}")
    counters = tuple(increment)
    bad_counters = set(counters) - CHUNK_COUNTER_FIELDS
    if bad_counters:
        raise ValueError(f"Unsupported work chunk counters: {sorted(bad_counters)}")
    if to_status != WorkChunkStatus.POLL_WAITING:
        values["next_poll_time"] = None
    elif values.get("next_poll_time") is None:
        raise ValueError("POLL_WAITING requires next_poll_time")
    return values, counters


def instance_update_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    values = dict(fields)
    unknown = set(values) - INSTANCE_UPDATE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported job instance fields: {sorted(unknown)}")
    return values


class WorkChunkRepository(Protocol):
    """Protocol for durable job and work chunk storage.

    Every status-changing method is a single conditional write guarded by the
    expected source statuses and returns the number of rows it changed.
    """

    async def store_job_instance(self, instance: JobInstance) -> str:
        """Persist a new job instance and return its id."""

    async def get_job_instance(self, instance_id: str) -> JobInstance | None:
        """Retrieve a job instance by id."""

    async def list_job_instances(
        self, statuses: Iterable[JobStatus] | None = None
    ) -> list[JobInstance]:
        """Return job instances, optionally filtered by status."""

    async def update_job_instance(
        self,
        instance_id: str,
        fields: Mapping[str, Any],
        from_statuses: Iterable[JobStatus] | None = None,
    ) -> int:
        """Update instance columns, guarded by status when ``from_statuses`` is given."""

    async def store_work_chunk(self, chunk: WorkChunk) -> str:
        """Persist a new chunk, assigning its sequence, and return its id."""

    async def get_work_chunk(self, chunk_id: str) -> WorkChunk | None:
        """Retrieve a chunk by id."""

    async def fetch_work_chunks(
        self,
        instance_id: str,
        step_id: str | None = None,
        statuses: Iterable[WorkChunkStatus] | None = None,
    ) -> list[WorkChunk]:
        """Return an instance's chunks in sequence order."""

    async def update_chunk_status(
        self,
        chunk_id: str,
        from_statuses: Iterable[WorkChunkStatus],
        to_status: WorkChunkStatus,
        fields: Mapping[str, Any] | None = None,
        increment: Iterable[str] = (),
    ) -> int:
        """Move one chunk to ``to_status`` if it is currently in ``from_statuses``."""

    async def update_chunks_status(
        self,
        instance_id: str,
        from_statuses: Iterable[WorkChunkStatus],
        to_status: WorkChunkStatus,
        step_id: str | None = None,
        poll_due_by: datetime | None = None,
        fields: Mapping[str, Any] | None = None,
    ) -> int:
        """Bulk variant of ``update_chunk_status`` scoped to one instance.

        ``poll_due_by`` restricts the update to chunks whose
        ``next_poll_time`` is at or before the given time.
        """

    async def advance_gated_step(
        self,
        instance_id: str,
        next_step_id: str,
        from_statuses: Iterable[WorkChunkStatus],
        to_status: WorkChunkStatus,
    ) -> int:
        """Atomically move the gate pointer and release the step's chunks."""
