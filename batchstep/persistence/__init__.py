"""Persistence layer for batchstep job instances and work chunks."""

from __future__ import annotations

import os
from typing import Optional

from ..config import BatchStepConfig, load_config
from .inmemory import InMemoryWorkChunkRepository
from .repository import WorkChunkRepository
from .sqlite import SQLiteWorkChunkRepository

try:  # pragma: no cover - asyncpg is optional at import time
    from .postgres import PostgresWorkChunkRepository
except ImportError:  # pragma: no cover
    PostgresWorkChunkRepository = None  # type: ignore

_repository_instance: WorkChunkRepository | None = None

_POSTGRES_SCHEMES = ("postgres://", "postgresql://")


def _repository_for_url(database_url: str) -> WorkChunkRepository:
    if database_url.startswith("sqlite://"):
        return SQLiteWorkChunkRepository(database_url[len("sqlite://"):])
    if database_url.startswith(_POSTGRES_SCHEMES):
        if PostgresWorkChunkRepository is None:
            raise RuntimeError("Postgres support requires the asyncpg package")
        return PostgresWorkChunkRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[BatchStepConfig] = None
) -> WorkChunkRepository:
    """Return the work chunk repository for this process.

    ``database_url`` comes from the argument, then ``BATCHSTEP_DATABASE_URL``,
    then ``DATABASE_URL``, then the config file. Without one the in-memory
    store is used. Calls without arguments share a single instance.
    """

    global _repository_instance
    if database_url is None and config is None and _repository_instance is not None:
        return _repository_instance

    config = config or load_config()
    url = (
        database_url
        or os.getenv("BATCHSTEP_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    _repository_instance = (
        _repository_for_url(url) if url else InMemoryWorkChunkRepository()
    )
    return _repository_instance


__all__ = [
    "InMemoryWorkChunkRepository",
    "PostgresWorkChunkRepository",
    "SQLiteWorkChunkRepository",
    "WorkChunkRepository",
    "get_repository",
]
