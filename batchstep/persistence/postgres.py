"""PostgreSQL implementation of the work chunk repository."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Mapping

import asyncpg

from ..errors import StorageUnavailableError
from ..models import JobInstance, JobStatus, WorkChunk, WorkChunkStatus, utcnow
from ..states import check_transition
from .repository import (
    WorkChunkRepository,
    chunk_update_fields,
    instance_update_fields,
)

_CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InterfaceError,
)

_CHUNK_COLUMNS = (
    "id, instance_id, definition_id, definition_version, step_id, sequence, status, data, "
    "next_poll_time, poll_attempts, error_count, error_message, records_processed, "
    "create_time, start_time, end_time, update_time"
)
_INSTANCE_COLUMNS = (
    "id, definition_id, definition_version, status, current_gated_step_id, parameters, "
    "error_message, create_time, start_time, end_time"
)


class PostgresWorkChunkRepository(WorkChunkRepository):
    """Persist jobs and chunks using PostgreSQL.

    Status changes are single ``UPDATE ... WHERE status = ANY(...)``
    statements, so concurrent workers racing on one row see exactly one
    winner. Gate advancement runs inside one transaction.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await self._connect()
        except _CONNECTION_ERRORS as exc:
            raise StorageUnavailableError(f"Cannot reach PostgreSQL: {exc}") from exc
        try:
            yield conn
        except _CONNECTION_ERRORS as exc:
            raise StorageUnavailableError(f"Lost PostgreSQL connection: {exc}") from exc
        finally:
            await conn.close()

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS job_instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                definition_version INTEGER NOT NULL,
                status TEXT NOT NULL,
                current_gated_step_id TEXT,
                parameters JSONB,
                error_message TEXT,
                create_time TIMESTAMPTZ NOT NULL,
                start_time TIMESTAMPTZ,
                end_time TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS work_chunks (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                definition_id TEXT NOT NULL,
                definition_version INTEGER NOT NULL,
                step_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                status TEXT NOT NULL,
                data TEXT,
                next_poll_time TIMESTAMPTZ,
                poll_attempts INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                records_processed INTEGER,
                create_time TIMESTAMPTZ NOT NULL,
                start_time TIMESTAMPTZ,
                end_time TIMESTAMPTZ,
                update_time TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_work_chunks_instance_step_status "
            "ON work_chunks (instance_id, step_id, status)"
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _rows_affected(status: str) -> int:
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        return int(status.split()[-1]) if status else 0

    @staticmethod
    def _to_column(key: str, value: Any) -> Any:
        if key == "parameters":
            return json.dumps(value or {})
        if key == "status":
            return str(value)
        return value

    def _set_clause(
        self, values: Mapping[str, Any], counters: Iterable[str] = (), start: int = 1
    ) -> tuple[str, list[Any]]:
        assignments = []
        params = []
        for offset, (key, value) in enumerate(values.items()):
            assignments.append(f"{key} = ${start + offset}")
            params.append(self._to_column(key, value))
        assignments.extend(f"{c} = {c} + 1" for c in counters)
        return ", ".join(assignments), params

    @staticmethod
    def _chunk_from_row(row: asyncpg.Record) -> WorkChunk:
        values = dict(row)
        values["status"] = WorkChunkStatus(values["status"])
        return WorkChunk(**values)

    @staticmethod
    def _instance_from_row(row: asyncpg.Record) -> JobInstance:
        values = dict(row)
        values["status"] = JobStatus(values["status"])
        params = values.get("parameters")
        values["parameters"] = json.loads(params) if isinstance(params, str) else (params or {})
        return JobInstance(**values)

    def _bulk_update_statement(
        self,
        instance_id: str,
        sources: tuple[WorkChunkStatus, ...],
        to_status: WorkChunkStatus,
        step_id: str | None,
        poll_due_by: datetime | None,
        values: Mapping[str, Any],
    ) -> tuple[str, list[Any]]:
        set_clause, params = self._set_clause(values, start=3)
        args: list[Any] = [str(to_status), utcnow(), *params]
        args.append(instance_id)
        args.append([str(s) for s in sources])
        query = (
            f"UPDATE work_chunks SET status = $1, update_time = $2, {set_clause} "
            f"WHERE instance_id = ${len(args) - 1} AND status = ANY(${len(args)}::text[])"
        )
        if step_id is not None:
            args.append(step_id)
            query += f" AND step_id = ${len(args)}"
        if poll_due_by is not None:
            args.append(poll_due_by)
            query += f" AND next_poll_time IS NOT NULL AND next_poll_time <= ${len(args)}"
        return query, args

    # ------------------------------------------------------------------
    async def store_job_instance(self, instance: JobInstance) -> str:
        async with self._connection() as conn:
            await conn.execute(
                f"INSERT INTO job_instances ({_INSTANCE_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
                instance.id,
                instance.definition_id,
                instance.definition_version,
                str(instance.status),
                instance.current_gated_step_id,
                json.dumps(instance.parameters),
                instance.error_message,
                instance.create_time,
                instance.start_time,
                instance.end_time,
            )
        return instance.id

    async def get_job_instance(self, instance_id: str) -> JobInstance | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_INSTANCE_COLUMNS} FROM job_instances WHERE id = $1",
                instance_id,
            )
        return self._instance_from_row(row) if row else None

    async def list_job_instances(
        self, statuses: Iterable[JobStatus] | None = None
    ) -> list[JobInstance]:
        async with self._connection() as conn:
            if statuses is None:
                rows = await conn.fetch(
                    f"SELECT {_INSTANCE_COLUMNS} FROM job_instances ORDER BY create_time"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_INSTANCE_COLUMNS} FROM job_instances "
                    "WHERE status = ANY($1::text[]) ORDER BY create_time",
                    [str(s) for s in statuses],
                )
        return [self._instance_from_row(r) for r in rows]

    async def update_job_instance(
        self,
        instance_id: str,
        fields: Mapping[str, Any],
        from_statuses: Iterable[JobStatus] | None = None,
    ) -> int:
        values = instance_update_fields(fields)
        if not values:
            return 0
        set_clause, params = self._set_clause(values)
        params.append(instance_id)
        query = f"UPDATE job_instances SET {set_clause} WHERE id = ${len(params)}"
        if from_statuses is not None:
            params.append([str(s) for s in from_statuses])
            query += f" AND status = ANY(${len(params)}::text[])"
        async with self._connection() as conn:
            status = await conn.execute(query, *params)
        return self._rows_affected(status)

    async def store_work_chunk(self, chunk: WorkChunk) -> str:
        async with self._connection() as conn:
            await conn.execute(
                f"""
                INSERT INTO work_chunks ({_CHUNK_COLUMNS})
                VALUES ($1, $2, $3, $4, $5,
                        (SELECT COALESCE(MAX(sequence), -1) + 1 FROM work_chunks WHERE instance_id = $2),
                        $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
                """,
                chunk.id,
                chunk.instance_id,
                chunk.definition_id,
                chunk.definition_version,
                chunk.step_id,
                str(chunk.status),
                chunk.data,
                chunk.next_poll_time,
                chunk.poll_attempts,
                chunk.error_count,
                chunk.error_message,
                chunk.records_processed,
                chunk.create_time,
                chunk.start_time,
                chunk.end_time,
                chunk.update_time,
            )
        return chunk.id

    async def get_work_chunk(self, chunk_id: str) -> WorkChunk | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_CHUNK_COLUMNS} FROM work_chunks WHERE id = $1", chunk_id
            )
        return self._chunk_from_row(row) if row else None

    async def fetch_work_chunks(
        self,
        instance_id: str,
        step_id: str | None = None,
        statuses: Iterable[WorkChunkStatus] | None = None,
    ) -> list[WorkChunk]:
        query = f"SELECT {_CHUNK_COLUMNS} FROM work_chunks WHERE instance_id = $1"
        params: list[Any] = [instance_id]
        if step_id is not None:
            params.append(step_id)
            query += f" AND step_id = ${len(params)}"
        if statuses is not None:
            params.append([str(s) for s in statuses])
            query += f" AND status = ANY(${len(params)}::text[])"
        async with self._connection() as conn:
            rows = await conn.fetch(query + " ORDER BY sequence", *params)
        return [self._chunk_from_row(r) for r in rows]

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
        set_clause, params = self._set_clause(values, counters, start=3)
        args: list[Any] = [str(to_status), utcnow(), *params, chunk_id, [str(s) for s in sources]]
        async with self._connection() as conn:
            status = await conn.execute(
                f"UPDATE work_chunks SET status = $1, update_time = $2, {set_clause} "
                f"WHERE id = ${len(args) - 1} AND status = ANY(${len(args)}::text[])",
                *args,
            )
        return self._rows_affected(status)

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
        values, _ = chunk_update_fields(to_status, fields)
        query, args = self._bulk_update_statement(
            instance_id, sources, to_status, step_id, poll_due_by, values
        )
        async with self._connection() as conn:
            status = await conn.execute(query, *args)
        return self._rows_affected(status)

    async def advance_gated_step(
        self,
        instance_id: str,
        next_step_id: str,
        from_statuses: Iterable[WorkChunkStatus],
        to_status: WorkChunkStatus,
    ) -> int:
        sources = check_transition(from_statuses, to_status)
        values, _ = chunk_update_fields(to_status, None)
        query, args = self._bulk_update_statement(
            instance_id, sources, to_status, next_step_id, None, values
        )
        async with self._connection() as conn:
            async with conn.transaction():
                moved = await conn.execute(
                    "UPDATE job_instances SET current_gated_step_id = $1 WHERE id = $2",
                    next_step_id,
                    instance_id,
                )
                if not self._rows_affected(moved):
                    return 0
                status = await conn.execute(query, *args)
        return self._rows_affected(status)
