"""
Error log repository.

Persists classified :class:`~diffmigrate.models.MigrationError` records so a
halted run can be diagnosed after the process that ran it is gone.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from diffmigrate.models import MigrationError
from diffmigrate.observability import (
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_ERROR_TYPE,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from diffmigrate.repositories._connection import (
    db_system,
    execute_with_connection,
    timestamp_query,
)
from diffmigrate.serialization import json_dumps, json_loads, to_utc


@runtime_checkable
class ErrorLogRepository(Protocol):
    """Protocol for classified error persistence."""

    async def record(self, run_id: str, error: MigrationError) -> None:
        """Persist one classified error for a run."""
        ...

    async def list_errors(
        self,
        run_id: str,
        entity_type: str | None = None,
    ) -> list[MigrationError]:
        """Errors of a run, oldest first, optionally for one entity type."""
        ...


class InMemoryErrorLogRepository:
    """In-memory error log."""

    def __init__(self) -> None:
        self._errors: list[tuple[str, MigrationError]] = []
        self._lock = asyncio.Lock()

    async def record(self, run_id: str, error: MigrationError) -> None:
        async with self._lock:
            self._errors.append((run_id, error))

    async def list_errors(
        self,
        run_id: str,
        entity_type: str | None = None,
    ) -> list[MigrationError]:
        async with self._lock:
            return [
                error
                for rid, error in self._errors
                if rid == run_id
                and (entity_type is None or error.context.entity_type == entity_type)
            ]

    async def clear(self) -> None:
        async with self._lock:
            self._errors.clear()


class SQLAlchemyErrorLogRepository:
    """
    Error log backed by the ``migration_errors`` table.

    The full error is stored as JSON in ``payload``; the other columns
    exist for filtering.
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn

    async def record(self, run_id: str, error: MigrationError) -> None:
        with self._tracer.span(
            "diffmigrate.error_log_repo.record",
            {
                ATTR_DB_SYSTEM: db_system(self._conn),
                ATTR_RUN_ID: run_id,
                ATTR_ENTITY_TYPE: error.context.entity_type,
                ATTR_ERROR_TYPE: error.error_type.value,
            },
        ):
            query = timestamp_query(
                """
                INSERT INTO migration_errors (
                    error_id, migration_run_id, entity_type, record_id, batch_number,
                    error_type, severity, message, payload, created_at
                ) VALUES (
                    :error_id, :run_id, :entity_type, :record_id, :batch_number,
                    :error_type, :severity, :message, :payload, :created_at
                )
                """,
                "created_at",
            )
            params: dict[str, Any] = {
                "error_id": error.error_id,
                "run_id": run_id,
                "entity_type": error.context.entity_type,
                "record_id": error.context.record_id,
                "batch_number": error.context.batch_number,
                "error_type": error.error_type.value,
                "severity": error.severity.value,
                "message": error.message,
                "payload": json_dumps(error.to_dict()),
                "created_at": to_utc(error.timestamp),
            }
            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def list_errors(
        self,
        run_id: str,
        entity_type: str | None = None,
    ) -> list[MigrationError]:
        with self._tracer.span(
            "diffmigrate.error_log_repo.list_errors",
            {
                ATTR_DB_SYSTEM: db_system(self._conn),
                ATTR_RUN_ID: run_id,
                ATTR_ENTITY_TYPE: entity_type,
            },
        ):
            conditions = ["migration_run_id = :run_id"]
            params: dict[str, Any] = {"run_id": run_id}
            if entity_type is not None:
                conditions.append("entity_type = :entity_type")
                params["entity_type"] = entity_type
            query = timestamp_query(
                f"SELECT payload FROM migration_errors WHERE {' AND '.join(conditions)} "
                "ORDER BY created_at, error_id"
            )
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                rows = result.fetchall()
            return [MigrationError.from_dict(json_loads(row.payload)) for row in rows]


__all__ = [
    "ErrorLogRepository",
    "InMemoryErrorLogRepository",
    "SQLAlchemyErrorLogRepository",
]
