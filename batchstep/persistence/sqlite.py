"""SQLite implementation of the work chunk repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from ..errors import StorageUnavailableError
from ..models import JobInstance, JobStatus, WorkChunk, WorkChunkStatus, utcnow
from ..states import check_transition
from .repository import (
    WorkChunkRepository,
    chunk_update_fields,
    instance_update_fields,
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
_TIME_FIELDS = {"next_poll_time", "start_time", "end_time", "create_time", "update_time"}


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC text so that string comparison orders by time."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteWorkChunkRepository(WorkChunkRepository):
    """Persist jobs and chunks using SQLite.

    The connection runs in autocommit mode; every status change is a single
    ``UPDATE ... WHERE status IN (...)`` statement and gate advancement wraps
    its statements in ``BEGIN IMMEDIATE``.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        try:
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
        except sqlite3.OperationalError as exc:
            raise StorageUnavailableError(f"Cannot open {self.db_path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                definition_version INTEGER NOT NULL,
                status TEXT NOT NULL,
                current_gated_step_id TEXT,
                parameters TEXT,
                error_message TEXT,
                create_time TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT
            )
            """
        )
        cur.execute(
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
                next_poll_time TEXT,
                poll_attempts INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                records_processed INTEGER,
                create_time TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT,
                update_time TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_work_chunks_instance_step_status "
            "ON work_chunks (instance_id, step_id, status)"
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            try:
                cur = self._conn.execute(query, params)
            except sqlite3.OperationalError as exc:
                raise StorageUnavailableError(str(exc)) from exc
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchone()
            except sqlite3.OperationalError as exc:
                raise StorageUnavailableError(str(exc)) from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.OperationalError as exc:
                raise StorageUnavailableError(str(exc)) from exc

    def _transaction(self, statements: list[tuple[str, tuple[Any, ...]]]) -> list[int]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    counts = [self._conn.execute(q, p).rowcount for q, p in statements]
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                raise StorageUnavailableError(str(exc)) from exc
            return counts

    @staticmethod
    def _to_column(key: str, value: Any) -> Any:
        if key in _TIME_FIELDS:
            return _ts(value)
        if key == "parameters":
            return json.dumps(value or {})
        if key == "status":
            return str(value)
        return value

    def _set_clause(
        self, values: Mapping[str, Any], counters: Iterable[str] = ()
    ) -> tuple[str, list[Any]]:
        assignments = [f"{key} = ?" for key in values]
        params = [self._to_column(key, value) for key, value in values.items()]
        assignments.extend(f"{c} = {c} + 1" for c in counters)
        return ", ".join(assignments), params

    @staticmethod
    def _chunk_from_row(row: sqlite3.Row) -> WorkChunk:
        return WorkChunk(
            id=row["id"],
            instance_id=row["instance_id"],
            definition_id=row["definition_id"],
            definition_version=row["definition_version"],
            step_id=row["step_id"],
            sequence=row["sequence"],
            status=WorkChunkStatus(row["status"]),
            data=row["data"],
            next_poll_time=_dt(row["next_poll_time"]),
            poll_attempts=row["poll_attempts"],
            error_count=row["error_count"],
            error_message=row["error_message"],
            records_processed=row["records_processed"],
            create_time=_dt(row["create_time"]),
            start_time=_dt(row["start_time"]),
            end_time=_dt(row["end_time"]),
            update_time=_dt(row["update_time"]),
        )

    @staticmethod
    def _instance_from_row(row: sqlite3.Row) -> JobInstance:
        return JobInstance(
            id=row["id"],
            definition_id=row["definition_id"],
            definition_version=row["definition_version"],
            status=JobStatus(row["status"]),
            current_gated_step_id=row["current_gated_step_id"],
            parameters=json.loads(row["parameters"]) if row["parameters"] else {},
            error_message=row["error_message"],
            create_time=_dt(row["create_time"]),
            start_time=_dt(row["start_time"]),
            end_time=_dt(row["end_time"]),
        )

    def _bulk_update_statement(
        self,
        instance_id: str,
        sources: tuple[WorkChunkStatus, ...],
        to_status: WorkChunkStatus,
        step_id: str | None,
        poll_due_by: datetime | None,
        values: Mapping[str, Any],
    ) -> tuple[str, tuple[Any, ...]]:
        set_clause, params = self._set_clause(values)
        query = (
            f"UPDATE work_chunks SET status = ?, update_time = ?, {set_clause} "
            f"WHERE instance_id = ? AND status IN ({_placeholders(sources)})"
        )
        args: list[Any] = [str(to_status), _ts(utcnow()), *params, instance_id]
        args.extend(str(s) for s in sources)
        if step_id is not None:
            query += " AND step_id = ?"
            args.append(step_id)
        if poll_due_by is not None:
            query += " AND next_poll_time IS NOT NULL AND next_poll_time <= ?"
            args.append(_ts(poll_due_by))
        return query, tuple(args)

    # ------------------------------------------------------------------
    # Repository API
    async def store_job_instance(self, instance: JobInstance) -> str:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO job_instances ({_INSTANCE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            instance.id,
            instance.definition_id,
            instance.definition_version,
            str(instance.status),
            instance.current_gated_step_id,
            json.dumps(instance.parameters),
            instance.error_message,
            _ts(instance.create_time),
            _ts(instance.start_time),
            _ts(instance.end_time),
        )
        return instance.id

    async def get_job_instance(self, instance_id: str) -> JobInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_INSTANCE_COLUMNS} FROM job_instances WHERE id = ?",
            instance_id,
        )
        return self._instance_from_row(row) if row else None

    async def list_job_instances(
        self, statuses: Iterable[JobStatus] | None = None
    ) -> list[JobInstance]:
        query = f"SELECT {_INSTANCE_COLUMNS} FROM job_instances"
        params: list[Any] = []
        if statuses is not None:
            wanted = [str(s) for s in statuses]
            query += f" WHERE status IN ({_placeholders(wanted)})"
            params.extend(wanted)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY create_time", *params)
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
        query = f"UPDATE job_instances SET {set_clause} WHERE id = ?"
        params.append(instance_id)
        if from_statuses is not None:
            sources = [str(s) for s in from_statuses]
            query += f" AND status IN ({_placeholders(sources)})"
            params.extend(sources)
        return await asyncio.to_thread(self._execute, query, *params)

    async def store_work_chunk(self, chunk: WorkChunk) -> str:
        await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO work_chunks ({_CHUNK_COLUMNS})
            VALUES (?, ?, ?, ?, ?,
                    (SELECT COALESCE(MAX(sequence), -1) + 1 FROM work_chunks WHERE instance_id = ?),
                    ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            chunk.id,
            chunk.instance_id,
            chunk.definition_id,
            chunk.definition_version,
            chunk.step_id,
            chunk.instance_id,
            str(chunk.status),
            chunk.data,
            _ts(chunk.next_poll_time),
            chunk.poll_attempts,
            chunk.error_count,
            chunk.error_message,
            chunk.records_processed,
            _ts(chunk.create_time),
            _ts(chunk.start_time),
            _ts(chunk.end_time),
            _ts(chunk.update_time),
        )
        return chunk.id

    async def get_work_chunk(self, chunk_id: str) -> WorkChunk | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_CHUNK_COLUMNS} FROM work_chunks WHERE id = ?",
            chunk_id,
        )
        return self._chunk_from_row(row) if row else None

    async def fetch_work_chunks(
        self,
        instance_id: str,
        step_id: str | None = None,
        statuses: Iterable[WorkChunkStatus] | None = None,
    ) -> list[WorkChunk]:
        query = f"SELECT {_CHUNK_COLUMNS} FROM work_chunks WHERE instance_id = ?"
        params: list[Any] = [instance_id]
        if step_id is not None:
            query += " AND step_id = ?"
            params.append(step_id)
        if statuses is not None:
            wanted = [str(s) for s in statuses]
            query += f" AND status IN ({_placeholders(wanted)})"
            params.extend(wanted)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY sequence", *params)
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
        set_clause, params = self._set_clause(values, counters)
        return await asyncio.to_thread(
            self._execute,
            f"UPDATE work_chunks SET status = ?, update_time = ?, {set_clause} "
            f"WHERE id = ? AND status IN ({_placeholders(sources)})",
            str(to_status),
            _ts(utcnow()),
            *params,
            chunk_id,
            *(str(s) for s in sources),
        )

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
        query, params = self._bulk_update_statement(
            instance_id, sources, to_status, step_id, poll_due_by, values
        )
        return await asyncio.to_thread(self._execute, query, *params)

    async def advance_gated_step(
        self,
        instance_id: str,
        next_step_id: str,
        from_statuses: Iterable[WorkChunkStatus],
        to_status: WorkChunkStatus,
    ) -> int:
        sources = check_transition(from_statuses, to_status)
        values, _ = chunk_update_fields(to_status, None)
        chunk_update = self._bulk_update_statement(
            instance_id, sources, to_status, next_step_id, None, values
        )
        counts = await asyncio.to_thread(
            self._transaction,
            [
                (
                    "UPDATE job_instances SET current_gated_step_id = ? WHERE id = ?",
                    (next_step_id, instance_id),
                ),
                chunk_update,
            ],
        )
        return counts[1] if counts[0] else 0

    def close(self) -> None:
        self._conn.close()
