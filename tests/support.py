"""Helpers for building chunks in given states and checking where they end up.

A state table lists one chunk per line as ``step|STATUS`` or
``step|STATUS,step|EXPECTED``. The second form also records the status the
chunk is expected to reach once the code under test has run; the first form
expects no change::

    1|COMPLETED
    2|COMPLETED
    3|GATE_WAITING,3|READY
    3|QUEUED,3|READY
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from batchstep.models import JobDefinition, JobInstance, JobStatus, WorkChunk, WorkChunkStatus
from batchstep.persistence import WorkChunkRepository


class MutableClock:
    """Callable clock that only moves when a test tells it to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@dataclass
class PlannedChunk:
    step_id: str
    initial: WorkChunkStatus
    expected_step_id: str
    expected: WorkChunkStatus
    chunk_id: Optional[str] = None


def parse_state_table(table: str) -> List[PlannedChunk]:
    planned = []
    for line in table.strip().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        first, _, second = line.partition(",")
        step_id, status = first.split("|")
        exp_step, exp_status = (second or first).split("|")
        planned.append(
            PlannedChunk(
                step_id=step_id.strip(),
                initial=WorkChunkStatus(status.strip()),
                expected_step_id=exp_step.strip(),
                expected=WorkChunkStatus(exp_status.strip()),
            )
        )
    return planned


class JobStateFixture:
    """Stores one job instance and a state table of chunks for it."""

    def __init__(
        self,
        repository: WorkChunkRepository,
        definition: JobDefinition,
        current_gated_step_id: Optional[str] = None,
        status: JobStatus = JobStatus.IN_PROGRESS,
    ) -> None:
        self.repository = repository
        self.definition = definition
        self.instance = JobInstance(
            definition_id=definition.definition_id,
            definition_version=definition.version,
            status=status,
            current_gated_step_id=current_gated_step_id or definition.first_step.step_id,
        )
        self.planned: List[PlannedChunk] = []

    @property
    def instance_id(self) -> str:
        return self.instance.id

    async def setup(
        self, table: str, next_poll_time: Optional[datetime] = None
    ) -> List[PlannedChunk]:
        if await self.repository.get_job_instance(self.instance.id) is None:
            await self.repository.store_job_instance(self.instance)
        planned = parse_state_table(table)
        for plan in planned:
            chunk = WorkChunk(
                instance_id=self.instance.id,
                definition_id=self.definition.definition_id,
                definition_version=self.definition.version,
                step_id=plan.step_id,
                status=plan.initial,
                data=f'{{"step": "{plan.step_id}"}}',
                next_poll_time=(
                    next_poll_time if plan.initial == WorkChunkStatus.POLL_WAITING else None
                ),
            )
            plan.chunk_id = await self.repository.store_work_chunk(chunk)
        self.planned.extend(planned)
        return planned

    async def mismatches(self) -> List[str]:
        """Describe every chunk whose final state differs from the table."""
        problems = []
        for plan in self.planned:
            chunk = await self.repository.get_work_chunk(plan.chunk_id)
            actual = (chunk.step_id, chunk.status)
            if actual != (plan.expected_step_id, plan.expected):
                problems.append(
                    f"{plan.step_id}|{plan.initial}: expected "
                    f"{plan.expected_step_id}|{plan.expected}, got {actual[0]}|{actual[1]}"
                )
        return problems

    async def verify(self) -> None:
        problems = await self.mismatches()
        assert not problems, "\n".join(problems)
