"""
Run repository for orchestration records.

Stores one :class:`~diffmigrate.models.MigrationRun` per run and one
:class:`~diffmigrate.models.EntityMigrationStatus` per entity and run.
The planner keeps the in-memory records authoritative during a run and
writes every state change through this repository.

Implementations:
    - SQLAlchemyRunRepository: ``migration_runs`` and ``entity_migration_status``
    - InMemoryRunRepository: For tests and single-process runs
"""

from __future__ import annotations

import asyncio
import copy
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from diffmigrate.exceptions import RunNotFoundError
from diffmigrate.models import EntityMigrationStatus, EntityStatus, MigrationRun, RunStatus
from diffmigrate.observability import (
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from diffmigrate.repositories._connection import (
    db_system,
    execute_with_connection,
    timestamp_query,
)
from diffmigrate.serialization import json_dumps, json_loads, parse_datetime, to_utc


def _utc_or_none(value: datetime | None) -> datetime | None:
    return to_utc(value) if value is not None else None


@runtime_checkable
class RunRepository(Protocol):
    """Protocol for run and entity status persistence."""

    async def create_run(self, run: MigrationRun) -> str:
        """
        Persist a new run.

        Returns:
            The run id.
        """
        ...

    async def get_run(self, run_id: str) -> MigrationRun | None:
        """Get a run by id, or None."""
        ...

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        requires_revalidation: bool | None = None,
        error_summary: dict[str, int] | None = None,
    ) -> None:
        """
        Update a run's status and the optional fields given.

        Raises:
            RunNotFoundError: If the run does not exist.
        """
        ...

    async def save_entity_status(self, status: EntityMigrationStatus) -> None:
        """Insert or replace the status of one entity within a run."""
        ...

    async def list_entity_statuses(self, run_id: str) -> list[EntityMigrationStatus]:
        """Entity statuses of a run ordered by dependency order."""
        ...

    async def list_runs(self, status: RunStatus | None = None) -> list[MigrationRun]:
        """Runs, optionally filtered by status, oldest first."""
        ...

    async def last_completed_at(self, entity_type: str) -> datetime | None:
        """When the entity type last completed in any run, or None."""
        ...


class InMemoryRunRepository:
    """
    In-memory run repository.

    Stored records are copies, so later mutation of the planner's objects
    only reaches the repository through explicit saves.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = False,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._runs: dict[str, MigrationRun] = {}
        self._created: dict[str, datetime] = {}
        self._statuses: dict[tuple[str, str], EntityMigrationStatus] = {}
        self._lock = asyncio.Lock()

    async def create_run(self, run: MigrationRun) -> str:
        with self._tracer.span("diffmigrate.run_repo.create_run", {ATTR_RUN_ID: run.run_id}):
            async with self._lock:
                self._runs[run.run_id] = copy.deepcopy(run)
                self._created[run.run_id] = datetime.now(UTC)
            return run.run_id

    async def get_run(self, run_id: str) -> MigrationRun | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run is not None else None

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        requires_revalidation: bool | None = None,
        error_summary: dict[str, int] | None = None,
    ) -> None:
        with self._tracer.span(
            "diffmigrate.run_repo.update_run_status",
            {ATTR_RUN_ID: run_id, "diffmigrate.run.status": status.value},
        ):
            async with self._lock:
                run = self._runs.get(run_id)
                if run is None:
                    raise RunNotFoundError(run_id)
                run.status = status
                if started_at is not None:
                    run.started_at = started_at
                if completed_at is not None:
                    run.completed_at = completed_at
                if requires_revalidation is not None:
                    run.requires_revalidation = requires_revalidation
                if error_summary is not None:
                    run.error_summary = dict(error_summary)

    async def save_entity_status(self, status: EntityMigrationStatus) -> None:
        async with self._lock:
            self._statuses[(status.migration_run_id, status.entity_type)] = copy.copy(status)

    async def list_entity_statuses(self, run_id: str) -> list[EntityMigrationStatus]:
        async with self._lock:
            statuses = [copy.copy(s) for (rid, _), s in self._statuses.items() if rid == run_id]
        return sorted(statuses, key=lambda s: s.dependency_order)

    async def list_runs(self, status: RunStatus | None = None) -> list[MigrationRun]:
        async with self._lock:
            runs = [
                copy.deepcopy(run)
                for run in self._runs.values()
                if status is None or run.status is status
            ]
            created = dict(self._created)
        return sorted(runs, key=lambda run: created[run.run_id])

    async def last_completed_at(self, entity_type: str) -> datetime | None:
        async with self._lock:
            completed = [
                s.completed_at
                for (_, entity), s in self._statuses.items()
                if entity == entity_type
                and s.status is EntityStatus.COMPLETED
                and s.completed_at is not None
            ]
        return max(completed, default=None)

    async def clear(self) -> None:
        """Remove every record. Useful for test setup/teardown."""
        async with self._lock:
            self._runs.clear()
            self._created.clear()
            self._statuses.clear()


_RUN_COLUMNS = """
    run_id, status, entity_types, config, started_at, completed_at,
    requires_revalidation, error_summary
"""

_STATUS_COLUMNS = """
    migration_run_id, entity_type, dependency_order, dependency_level, status,
    records_total, records_processed, records_failed, started_at, completed_at,
    last_checkpoint_id, error_message
"""


class SQLAlchemyRunRepository:
    """
    Run repository backed by ``migration_runs`` and ``entity_migration_status``.

    Entity statuses are upserted on ``(migration_run_id, entity_type)``,
    which works on PostgreSQL and SQLite 3.24+.
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn

    def _span_attributes(self, **attributes: Any) -> dict[str, Any]:
        return {ATTR_DB_SYSTEM: db_system(self._conn), **attributes}

    async def create_run(self, run: MigrationRun) -> str:
        with self._tracer.span(
            "diffmigrate.run_repo.create_run",
            self._span_attributes(**{ATTR_RUN_ID: run.run_id}),
        ):
            now = datetime.now(UTC)
            query = timestamp_query(
                """
                INSERT INTO migration_runs (
                    run_id, status, entity_types, config, started_at, completed_at,
                    requires_revalidation, error_summary, created_at, updated_at
                ) VALUES (
                    :run_id, :status, :entity_types, :config, :started_at, :completed_at,
                    :requires_revalidation, :error_summary, :created_at, :updated_at
                )
                """,
                "started_at",
                "completed_at",
                "created_at",
                "updated_at",
            )
            params = {
                "run_id": run.run_id,
                "status": run.status.value,
                "entity_types": json_dumps(list(run.entity_types)),
                "config": json_dumps(run.config),
                "started_at": _utc_or_none(run.started_at),
                "completed_at": _utc_or_none(run.completed_at),
                "requires_revalidation": run.requires_revalidation,
                "error_summary": json_dumps(run.error_summary),
                "created_at": now,
                "updated_at": now,
            }
            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(query, params)
            return run.run_id

    async def get_run(self, run_id: str) -> MigrationRun | None:
        with self._tracer.span(
            "diffmigrate.run_repo.get_run",
            self._span_attributes(**{ATTR_RUN_ID: run_id}),
        ):
            query = timestamp_query(f"SELECT {_RUN_COLUMNS} FROM migration_runs WHERE run_id = :id")
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"id": run_id})
                row = result.fetchone()
            return self._row_to_run(row) if row is not None else None

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        requires_revalidation: bool | None = None,
        error_summary: dict[str, int] | None = None,
    ) -> None:
        with self._tracer.span(
            "diffmigrate.run_repo.update_run_status",
            self._span_attributes(**{ATTR_RUN_ID: run_id, "diffmigrate.run.status": status.value}),
        ):
            assignments = ["status = :status", "updated_at = :updated_at"]
            params: dict[str, Any] = {
                "run_id": run_id,
                "status": status.value,
                "updated_at": datetime.now(UTC),
            }
            timestamps = ["updated_at"]
            if started_at is not None:
                assignments.append("started_at = :started_at")
                params["started_at"] = to_utc(started_at)
                timestamps.append("started_at")
            if completed_at is not None:
                assignments.append("completed_at = :completed_at")
                params["completed_at"] = to_utc(completed_at)
                timestamps.append("completed_at")
            if requires_revalidation is not None:
                assignments.append("requires_revalidation = :requires_revalidation")
                params["requires_revalidation"] = requires_revalidation
            if error_summary is not None:
                assignments.append("error_summary = :error_summary")
                params["error_summary"] = json_dumps(error_summary)

            query = timestamp_query(
                f"UPDATE migration_runs SET {', '.join(assignments)} WHERE run_id = :run_id",
                *timestamps,
            )
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, params)
            if result.rowcount == 0:
                raise RunNotFoundError(run_id)

    async def save_entity_status(self, status: EntityMigrationStatus) -> None:
        with self._tracer.span(
            "diffmigrate.run_repo.save_entity_status",
            self._span_attributes(
                **{ATTR_RUN_ID: status.migration_run_id, ATTR_ENTITY_TYPE: status.entity_type}
            ),
        ):
            query = timestamp_query(
                """
                INSERT INTO entity_migration_status (
                    migration_run_id, entity_type, dependency_order, dependency_level,
                    status, records_total, records_processed, records_failed,
                    started_at, completed_at, last_checkpoint_id, error_message, updated_at
                ) VALUES (
                    :migration_run_id, :entity_type, :dependency_order, :dependency_level,
                    :status, :records_total, :records_processed, :records_failed,
                    :started_at, :completed_at, :last_checkpoint_id, :error_message, :updated_at
                )
                ON CONFLICT (migration_run_id, entity_type) DO UPDATE SET
                    dependency_order = excluded.dependency_order,
                    dependency_level = excluded.dependency_level,
                    status = excluded.status,
                    records_total = excluded.records_total,
                    records_processed = excluded.records_processed,
                    records_failed = excluded.records_failed,
                    started_at = excluded.started_at,
                    completed_at = excluded.completed_at,
                    last_checkpoint_id = excluded.last_checkpoint_id,
                    error_message = excluded.error_message,
                    updated_at = excluded.updated_at
                """,
                "started_at",
                "completed_at",
                "updated_at",
            )
            params = {
                "migration_run_id": status.migration_run_id,
                "entity_type": status.entity_type,
                "dependency_order": status.dependency_order,
                "dependency_level": status.dependency_level,
                "status": status.status.value,
                "records_total": status.records_total,
                "records_processed": status.records_processed,
                "records_failed": status.records_failed,
                "started_at": _utc_or_none(status.started_at),
                "completed_at": _utc_or_none(status.completed_at),
                "last_checkpoint_id": status.last_checkpoint_id,
                "error_message": status.error_message,
                "updated_at": datetime.now(UTC),
            }
            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def list_entity_statuses(self, run_id: str) -> list[EntityMigrationStatus]:
        with self._tracer.span(
            "diffmigrate.run_repo.list_entity_statuses",
            self._span_attributes(**{ATTR_RUN_ID: run_id}),
        ):
            query = timestamp_query(
                f"SELECT {_STATUS_COLUMNS} FROM entity_migration_status "
                "WHERE migration_run_id = :run_id ORDER BY dependency_order"
            )
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"run_id": run_id})
                rows = result.fetchall()
            return [self._row_to_status(row) for row in rows]

    async def list_runs(self, status: RunStatus | None = None) -> list[MigrationRun]:
        with self._tracer.span("diffmigrate.run_repo.list_runs", self._span_attributes()):
            where = "WHERE status = :status" if status is not None else ""
            query = timestamp_query(
                f"SELECT {_RUN_COLUMNS} FROM migration_runs {where} ORDER BY created_at, run_id"
            )
            params = {"status": status.value} if status is not None else {}
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                rows = result.fetchall()
            return [self._row_to_run(row) for row in rows]

    async def last_completed_at(self, entity_type: str) -> datetime | None:
        with self._tracer.span(
            "diffmigrate.run_repo.last_completed_at",
            self._span_attributes(**{ATTR_ENTITY_TYPE: entity_type}),
        ):
            query = timestamp_query(
                "SELECT MAX(completed_at) AS last_completed FROM entity_migration_status "
                "WHERE entity_type = :entity_type AND status = :status"
            )
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(
                    query,
                    {"entity_type": entity_type, "status": EntityStatus.COMPLETED.value},
                )
                row = result.fetchone()
            return parse_datetime(row.last_completed) if row is not None else None

    @staticmethod
    def _row_to_run(row: Any) -> MigrationRun:
        return MigrationRun(
            run_id=row.run_id,
            status=RunStatus(row.status),
            entity_types=list(json_loads(row.entity_types) or []),
            config=json_loads(row.config) or {},
            started_at=parse_datetime(row.started_at),
            completed_at=parse_datetime(row.completed_at),
            requires_revalidation=bool(row.requires_revalidation),
            error_summary=json_loads(row.error_summary) or {},
        )

    @staticmethod
    def _row_to_status(row: Any) -> EntityMigrationStatus:
        return EntityMigrationStatus(
            migration_run_id=row.migration_run_id,
            entity_type=row.entity_type,
            dependency_order=int(row.dependency_order),
            dependency_level=int(row.dependency_level),
            status=EntityStatus(row.status),
            records_total=int(row.records_total),
            records_processed=int(row.records_processed),
            records_failed=int(row.records_failed),
            started_at=parse_datetime(row.started_at),
            completed_at=parse_datetime(row.completed_at),
            last_checkpoint_id=row.last_checkpoint_id,
            error_message=row.error_message,
        )


__all__ = [
    "RunRepository",
    "InMemoryRunRepository",
    "SQLAlchemyRunRepository",
]
