"""In-memory implementation of the work chunk repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping

from ..models import JobInstance, JobStatus, WorkChunk, WorkChunkStatus, utcnow
from ..states import check_transition
from .repository import (
    WorkChunkRepository,
    chunk_update_fields,
    instance_update_fields,
)


class InMemoryWorkChunkRepository(WorkChunkRepository):
    """Store jobs and chunks in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. A single lock makes each
    check-and-set atomic, and records are copied in and out so callers never
    share mutable state with the store.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, JobInstance] = {}
        self._chunks: Dict[str, WorkChunk] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def store_job_instance(self, instance: JobInstance) -> str:
        async with self._lock:
            self._instances[instance.id] = instance.model_copy(deep=True)
        return instance.id

    async def get_job_instance(self, instance_id: str) -> JobInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_job_instances(
        self, statuses: Iterable[JobStatus] | None = None
    ) -> list[JobInstance]:
        wanted = set(statuses) if statuses is not None else None
        return [
            i.model_copy(deep=True)
            for i in sorted(self._instances.values(), key=lambda i: i.create_time)
            if wanted is None or i.status in wanted
        ]

    async def update_job_instance(
        self,
        instance_id: str,
        fields: Mapping[str, Any],
        from_statuses: Iterable[JobStatus] | None = None,
    ) -> int:
        values = instance_update_fields(fields)
        async with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                return 0
            if from_statuses is not None and instance.status not in set(from_statuses):
                return 0
            for key, value in values.items():
                setattr(instance, key, value)
            return 1

    # ------------------------------------------------------------------
    async def store_work_chunk(self, chunk: WorkChunk) -> str:
        async with self._lock:
            sequence = self._sequences.get(chunk.instance_id, 0)
            self._sequences[chunk.instance_id] = sequence + 1
            stored = chunk.model_copy(deep=True, update={"sequence": sequence})
            self._chunks[stored.id] = stored
        return stored.id

    async def get_work_chunk(self, chunk_id: str) -> WorkChunk | None:
        chunk = self._chunks.get(chunk_id)
        return chunk.model_copy(deep=True) if chunk else None

    async def fetch_work_chunks(
        self,
        instance_id: str,
        step_id: str | None = None,
        statuses: Iterable[WorkChunkStatus] | None = None,
    ) -> list[WorkChunk]:
        wanted = set(statuses) if statuses is not None else None
        chunks = [
            c
            for c in self._chunks.values()
            if c.instance_id == instance_id
            and (step_id is None or c.step_id == step_id)
            and (wanted is None or c.status in wanted)
        ]
        return [c.model_copy(deep=True) for c in sorted(chunks, key=lambda c: c.sequence)]

    async def update_chunk_status(
        self,
        chunk_id: str,
        from_statuses: Iterable[WorkChunkStatus],
        to_status: WorkChunkStatus,
        fields: Mapping[str, Any] | None = None,
        increment: Iterable[str] = (),
    ) -> int:
        sources = check_transition(from_statuses, to_status)
        values, counters = chunk_update_fields(to_status, fields, increment)
        async with self._lock:
            chunk = self._chunks.get(chunk_id)
            if chunk is None or chunk.status not in sources:
                return 0
            self._apply(chunk, to_status, values, counters)
            return 1

    async def update_chunks_status(
        self,
        instance_id: str,
        from_statuses: Iterable[WorkChunkStatus],
        to_status: WorkChunkStatus,
        step_id: str | None = None,
        poll_due_by: datetime | None = None,
        fields: Mapping[str, Any] | None = None,
    ) -> int:
        sources = check_transition(from_statuses, to_status)
        values, counters = chunk_update_fields(to_status, fields)
        async with self._lock:
            return self._update_matching(
                instance_id, sources, to_status, step_id, poll_due_by, values, counters
            )

    async def advance_gated_step(
        self,
        instance_id: str,
        next_step_id: str,
        from_statuses: Iterable[WorkChunkStatus],
        to_status: WorkChunkStatus,
    ) -> int:
        sources = check_transition(from_statuses, to_status)
        values, counters = chunk_update_fields(to_status, None)
        async with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                return 0
            instance.current_gated_step_id = next_step_id
            return self._update_matching(
                instance_id, sources, to_status, next_step_id, None, values, counters
            )

    # ------------------------------------------------------------------
    def _update_matching(
        self,
        instance_id: str,
        sources: tuple[WorkChunkStatus, ...],
        to_status: WorkChunkStatus,
        step_id: str | None,
        poll_due_by: datetime | None,
        values: dict[str, Any],
        counters: tuple[str, ...],
    ) -> int:
        count = 0
        for chunk in self._chunks.values():
            if chunk.instance_id != instance_id or chunk.status not in sources:
                continue
            if step_id is not None and chunk.step_id != step_id:
                continue
            if poll_due_by is not None and (
                chunk.next_poll_time is None or chunk.next_poll_time > poll_due_by
            ):
                continue
            self._apply(chunk, to_status, values, counters)
            count += 1
        return count

    @staticmethod
    def _apply(
        chunk: WorkChunk,
        to_status: WorkChunkStatus,
        values: dict[str, Any],
        counters: tuple[str, ...],
    ) -> None:
        chunk.status = to_status
        for key, value in values.items():
            setattr(chunk, key, value)
        for counter in counters:
            setattr(chunk, counter, getattr(chunk, counter) + 1)
        chunk.update_time = utcnow()
