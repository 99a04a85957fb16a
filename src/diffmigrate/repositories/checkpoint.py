"""
Checkpoint repository for resumable execution.

Checkpoints are written by the execution planner every
``checkpoint_interval`` batches and on pause, and read back on resume. A
checkpoint may be read by a different process than the one that wrote it,
so everything needed to resume lives in the row.

Old checkpoints are pruned two ways: ``enforce_limit`` caps how many a run
keeps per entity, and ``delete_older_than`` applies a retention age. Neither
removes the latest resumable checkpoint of a run and entity.

Implementations:
    - SQLAlchemyCheckpointRepository: PostgreSQL or SQLite through SQLAlchemy
    - InMemoryCheckpointRepository: For tests and single-process runs
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from diffmigrate.exceptions import CheckpointNotFoundError
from diffmigrate.models import Checkpoint
from diffmigrate.observability import (
    ATTR_CHECKPOINT_ID,
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


@dataclass(frozen=True)
class CheckpointFilter:
    """
    Filter for listing checkpoints.

    Attributes:
        run_id: Only checkpoints of this run.
        entity_type: Only checkpoints of this entity type.
        resumable_only: Skip checkpoints marked not resumable.
    """

    run_id: str | None = None
    entity_type: str | None = None
    resumable_only: bool = False

    def matches(self, checkpoint: Checkpoint) -> bool:
        if self.run_id is not None and checkpoint.migration_run_id != self.run_id:
            return False
        if self.entity_type is not None and checkpoint.entity_type != self.entity_type:
            return False
        return not (self.resumable_only and not checkpoint.is_resumable)


def _ordering_key(checkpoint: Checkpoint) -> tuple[str, str, int, Any]:
    return (
        checkpoint.migration_run_id,
        checkpoint.entity_type,
        checkpoint.batch_position,
        checkpoint.created_at,
    )


def _superseded(ordered: list[Checkpoint]) -> set[str]:
    """Ids of checkpoints with a newer resumable checkpoint of the same run and entity."""
    superseded: set[str] = set()
    newer_resumable: set[tuple[str, str]] = set()
    for checkpoint in reversed(ordered):
        key = (checkpoint.migration_run_id, checkpoint.entity_type)
        if key in newer_resumable:
            superseded.add(checkpoint.checkpoint_id)
        elif checkpoint.is_resumable:
            newer_resumable.add(key)
    return superseded


def _over_limit(ordered: list[Checkpoint], max_checkpoints: int) -> list[str]:
    """Ids beyond the newest ``max_checkpoints`` that are safe to delete."""
    if max_checkpoints < 1:
        raise ValueError(f"max_checkpoints must be >= 1, got {max_checkpoints}")
    superseded = _superseded(ordered)
    excess = ordered[: max(len(ordered) - max_checkpoints, 0)]
    return [c.checkpoint_id for c in excess if c.checkpoint_id in superseded]


@runtime_checkable
class CheckpointRepository(Protocol):
    """
    Protocol for checkpoint persistence.

    Checkpoints of the same run and entity are totally ordered by
    ``batch_position``; ``get_latest`` returns the highest one.
    """

    async def create(self, checkpoint: Checkpoint) -> str:
        """
        Persist a new checkpoint.

        Returns:
            The checkpoint id.
        """
        ...

    async def get(self, checkpoint_id: str) -> Checkpoint | None:
        """Get a checkpoint by id, or None."""
        ...

    async def update(self, checkpoint: Checkpoint) -> None:
        """
        Replace a stored checkpoint.

        Raises:
            CheckpointNotFoundError: If the checkpoint does not exist.
        """
        ...

    async def list_checkpoints(
        self,
        checkpoint_filter: CheckpointFilter | None = None,
    ) -> list[Checkpoint]:
        """List checkpoints ordered by run, entity and batch position."""
        ...

    async def get_latest(
        self,
        run_id: str,
        entity_type: str,
        resumable_only: bool = True,
    ) -> Checkpoint | None:
        """Get the checkpoint with the highest batch position, or None."""
        ...

    async def delete_older_than(self, cutoff: datetime) -> int:
        """
        Delete checkpoints created before ``cutoff``.

        The latest resumable checkpoint of each run and entity is never
        deleted, so every paused or failed run stays resumable.

        Returns:
            Number of checkpoints deleted.
        """
        ...

    async def enforce_limit(self, run_id: str, entity_type: str, max_checkpoints: int) -> int:
        """
        Keep at most ``max_checkpoints`` checkpoints for a run and entity.

        The oldest are deleted first; the latest resumable one is kept.

        Returns:
            Number of checkpoints deleted.
        """
        ...


class InMemoryCheckpointRepository:
    """
    In-memory checkpoint repository.

    Example:
        >>> repo = InMemoryCheckpointRepository()
        >>> await repo.create(checkpoint)
        >>> latest = await repo.get_latest(run_id, "orders")
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = False,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._checkpoints: dict[str, Checkpoint] = {}
        self._lock = asyncio.Lock()

    async def create(self, checkpoint: Checkpoint) -> str:
        with self._tracer.span(
            "diffmigrate.checkpoint_repo.create",
            {
                ATTR_CHECKPOINT_ID: checkpoint.checkpoint_id,
                ATTR_RUN_ID: checkpoint.migration_run_id,
                ATTR_ENTITY_TYPE: checkpoint.entity_type,
            },
        ):
            async with self._lock:
                self._checkpoints[checkpoint.checkpoint_id] = checkpoint
            return checkpoint.checkpoint_id

    async def get(self, checkpoint_id: str) -> Checkpoint | None:
        async with self._lock:
            return self._checkpoints.get(checkpoint_id)

    async def update(self, checkpoint: Checkpoint) -> None:
        async with self._lock:
            if checkpoint.checkpoint_id not in self._checkpoints:
                raise CheckpointNotFoundError(checkpoint.checkpoint_id)
            self._checkpoints[checkpoint.checkpoint_id] = checkpoint

    async def list_checkpoints(
        self,
        checkpoint_filter: CheckpointFilter | None = None,
    ) -> list[Checkpoint]:
        checkpoint_filter = checkpoint_filter or CheckpointFilter()
        async with self._lock:
            matching = [c for c in self._checkpoints.values() if checkpoint_filter.matches(c)]
        return sorted(matching, key=_ordering_key)

    async def get_latest(
        self,
        run_id: str,
        entity_type: str,
        resumable_only: bool = True,
    ) -> Checkpoint | None:
        checkpoints = await self.list_checkpoints(
            CheckpointFilter(run_id=run_id, entity_type=entity_type, resumable_only=resumable_only)
        )
        return checkpoints[-1] if checkpoints else None

    async def delete_older_than(self, cutoff: datetime) -> int:
        cutoff = to_utc(cutoff)
        async with self._lock:
            ordered = sorted(self._checkpoints.values(), key=_ordering_key)
            superseded = _superseded(ordered)
            expired = [
                c.checkpoint_id
                for c in ordered
                if c.checkpoint_id in superseded and to_utc(c.created_at) < cutoff
            ]
            for checkpoint_id in expired:
                del self._checkpoints[checkpoint_id]
        return len(expired)

    async def enforce_limit(self, run_id: str, entity_type: str, max_checkpoints: int) -> int:
        ordered = await self.list_checkpoints(
            CheckpointFilter(run_id=run_id, entity_type=entity_type)
        )
        doomed = _over_limit(ordered, max_checkpoints)
        async with self._lock:
            for checkpoint_id in doomed:
                self._checkpoints.pop(checkpoint_id, None)
        return len(doomed)

    async def clear(self) -> None:
        """Remove every checkpoint. Useful for test setup/teardown."""
        async with self._lock:
            self._checkpoints.clear()


_SELECT_COLUMNS = """
    checkpoint_id, migration_run_id, entity_type, last_processed_id,
    batch_position, records_processed, records_remaining,
    checkpoint_data, is_resumable, created_at
"""


class SQLAlchemyCheckpointRepository:
    """
    Checkpoint repository backed by the ``migration_checkpoints`` table.

    Works with PostgreSQL (asyncpg) and SQLite (aiosqlite) engines; create
    the table with :func:`diffmigrate.schemas.create_schema`.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://...")
        >>> repo = SQLAlchemyCheckpointRepository(engine)
        >>> checkpoint = await repo.get(checkpoint_id)
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

    async def create(self, checkpoint: Checkpoint) -> str:
        with self._tracer.span(
            "diffmigrate.checkpoint_repo.create",
            self._span_attributes(
                **{
                    ATTR_CHECKPOINT_ID: checkpoint.checkpoint_id,
                    ATTR_RUN_ID: checkpoint.migration_run_id,
                    ATTR_ENTITY_TYPE: checkpoint.entity_type,
                }
            ),
        ):
            query = timestamp_query(
                """
                INSERT INTO migration_checkpoints (
                    checkpoint_id, migration_run_id, entity_type, last_processed_id,
                    batch_position, records_processed, records_remaining,
                    checkpoint_data, is_resumable, created_at
                ) VALUES (
                    :checkpoint_id, :migration_run_id, :entity_type, :last_processed_id,
                    :batch_position, :records_processed, :records_remaining,
                    :checkpoint_data, :is_resumable, :created_at
                )
                """,
                "created_at",
            )
            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(query, self._params(checkpoint))
            return checkpoint.checkpoint_id

    async def get(self, checkpoint_id: str) -> Checkpoint | None:
        with self._tracer.span(
            "diffmigrate.checkpoint_repo.get",
            self._span_attributes(**{ATTR_CHECKPOINT_ID: checkpoint_id}),
        ):
            query = timestamp_query(
                f"SELECT {_SELECT_COLUMNS} FROM migration_checkpoints "
                "WHERE checkpoint_id = :checkpoint_id"
            )
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"checkpoint_id": checkpoint_id})
                row = result.fetchone()
            return self._row_to_checkpoint(row) if row is not None else None

    async def update(self, checkpoint: Checkpoint) -> None:
        with self._tracer.span(
            "diffmigrate.checkpoint_repo.update",
            self._span_attributes(**{ATTR_CHECKPOINT_ID: checkpoint.checkpoint_id}),
        ):
            query = timestamp_query(
                """
                UPDATE migration_checkpoints SET
                    last_processed_id = :last_processed_id,
                    batch_position = :batch_position,
                    records_processed = :records_processed,
                    records_remaining = :records_remaining,
                    checkpoint_data = :checkpoint_data,
                    is_resumable = :is_resumable,
                    created_at = :created_at
                WHERE checkpoint_id = :checkpoint_id
                """,
                "created_at",
            )
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, self._params(checkpoint))
            if result.rowcount == 0:
                raise CheckpointNotFoundError(checkpoint.checkpoint_id)

    async def list_checkpoints(
        self,
        checkpoint_filter: CheckpointFilter | None = None,
    ) -> list[Checkpoint]:
        checkpoint_filter = checkpoint_filter or CheckpointFilter()
        with self._tracer.span(
            "diffmigrate.checkpoint_repo.list",
            self._span_attributes(
                **{
                    ATTR_RUN_ID: checkpoint_filter.run_id,
                    ATTR_ENTITY_TYPE: checkpoint_filter.entity_type,
                }
            ),
        ):
            conditions: list[str] = []
            params: dict[str, Any] = {}
            if checkpoint_filter.run_id is not None:
                conditions.append("migration_run_id = :run_id")
                params["run_id"] = checkpoint_filter.run_id
            if checkpoint_filter.entity_type is not None:
                conditions.append("entity_type = :entity_type")
                params["entity_type"] = checkpoint_filter.entity_type
            if checkpoint_filter.resumable_only:
                conditions.append("is_resumable = :is_resumable")
                params["is_resumable"] = True
            where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

            query = timestamp_query(
                f"SELECT {_SELECT_COLUMNS} FROM migration_checkpoints {where} "
                "ORDER BY migration_run_id, entity_type, batch_position, created_at"
            )
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                rows = result.fetchall()
            return [self._row_to_checkpoint(row) for row in rows]

    async def get_latest(
        self,
        run_id: str,
        entity_type: str,
        resumable_only: bool = True,
    ) -> Checkpoint | None:
        checkpoints = await self.list_checkpoints(
            CheckpointFilter(run_id=run_id, entity_type=entity_type, resumable_only=resumable_only)
        )
        return checkpoints[-1] if checkpoints else None

    async def delete_older_than(self, cutoff: datetime) -> int:
        with self._tracer.span(
            "diffmigrate.checkpoint_repo.delete_older_than",
            self._span_attributes(),
        ):
            query = timestamp_query(
                """
                DELETE FROM migration_checkpoints
                WHERE created_at < :cutoff
                  AND EXISTS (
                    SELECT 1 FROM migration_checkpoints newer
                    WHERE newer.migration_run_id = migration_checkpoints.migration_run_id
                      AND newer.entity_type = migration_checkpoints.entity_type
                      AND newer.is_resumable = :is_resumable
                      AND (
                        newer.batch_position > migration_checkpoints.batch_position
                        OR (
                          newer.batch_position = migration_checkpoints.batch_position
                          AND newer.created_at > migration_checkpoints.created_at
                        )
                      )
                  )
                """,
                "cutoff",
            )
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(
                    query, {"cutoff": to_utc(cutoff), "is_resumable": True}
                )
            return result.rowcount

    async def enforce_limit(self, run_id: str, entity_type: str, max_checkpoints: int) -> int:
        ordered = await self.list_checkpoints(
            CheckpointFilter(run_id=run_id, entity_type=entity_type)
        )
        doomed = _over_limit(ordered, max_checkpoints)
        if not doomed:
            return 0
        with self._tracer.span(
            "diffmigrate.checkpoint_repo.enforce_limit",
            self._span_attributes(**{ATTR_RUN_ID: run_id, ATTR_ENTITY_TYPE: entity_type}),
        ):
            query = text(
                "DELETE FROM migration_checkpoints WHERE checkpoint_id IN :ids"
            ).bindparams(bindparam("ids", expanding=True))
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, {"ids": doomed})
            return result.rowcount

    @staticmethod
    def _params(checkpoint: Checkpoint) -> dict[str, Any]:
        return {
            "checkpoint_id": checkpoint.checkpoint_id,
            "migration_run_id": checkpoint.migration_run_id,
            "entity_type": checkpoint.entity_type,
            "last_processed_id": checkpoint.last_processed_id,
            "batch_position": checkpoint.batch_position,
            "records_processed": checkpoint.records_processed,
            "records_remaining": checkpoint.records_remaining,
            "checkpoint_data": json_dumps(checkpoint.checkpoint_data),
            "is_resumable": checkpoint.is_resumable,
            "created_at": to_utc(checkpoint.created_at),
        }

    @staticmethod
    def _row_to_checkpoint(row: Any) -> Checkpoint:
        created_at = parse_datetime(row.created_at)
        checkpoint = Checkpoint(
            checkpoint_id=row.checkpoint_id,
            migration_run_id=row.migration_run_id,
            entity_type=row.entity_type,
            last_processed_id=row.last_processed_id,
            batch_position=int(row.batch_position),
            records_processed=int(row.records_processed),
            records_remaining=int(row.records_remaining),
            checkpoint_data=json_loads(row.checkpoint_data) or {},
            is_resumable=bool(row.is_resumable),
        )
        return replace(checkpoint, created_at=created_at) if created_at else checkpoint


__all__ = [
    "CheckpointFilter",
    "CheckpointRepository",
    "InMemoryCheckpointRepository",
    "SQLAlchemyCheckpointRepository",
]
