"""
SQLAlchemy source and destination stores.

Queries are plain ``text()`` SQL against the tables named by an
:class:`~diffmigrate.entities.EntityMapping`. Table and column names are
validated identifiers and are interpolated; every value is bound.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import bindparam, inspect
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from diffmigrate.entities import EntityMapping
from diffmigrate.observability import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_ENTITY_TYPE,
    ATTR_RECORD_COUNT,
    Tracer,
    create_tracer,
)
from diffmigrate.repositories._connection import (
    db_system,
    execute_with_connection,
    timestamp_query,
)
from diffmigrate.serialization import to_utc
from diffmigrate.stores.base import Row


def bind_ids(ids: Sequence[str]) -> list[Any]:
    """
    Convert string ids to driver values.

    Legacy ids are integer primary keys; asyncpg rejects strings for
    integer columns, so numeric ids are bound as ints.
    """
    return [int(i) if str(i).isdigit() else str(i) for i in ids]


class _SQLAlchemyStore:
    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn

    def _attributes(self, mapping: EntityMapping, table: str, operation: str) -> dict[str, Any]:
        return {
            ATTR_DB_SYSTEM: db_system(self._conn),
            ATTR_DB_OPERATION: operation,
            ATTR_DB_TABLE: table,
            ATTR_ENTITY_TYPE: mapping.entity_type,
        }

    async def _fetch(self, query: Any, params: dict[str, Any]) -> list[Row]:
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            return [dict(row._mapping) for row in result.fetchall()]

    async def _count(self, mapping: EntityMapping, table: str, span_name: str) -> int:
        with self._tracer.span(span_name, self._attributes(mapping, table, "SELECT")) as span:
            rows = await self._fetch(timestamp_query(f"SELECT COUNT(*) AS count FROM {table}"), {})
            count = int(rows[0]["count"])
            if span:
                span.set_attribute(ATTR_RECORD_COUNT, count)
            return count

    async def _columns(self, mapping: EntityMapping, table: str, span_name: str) -> dict[str, str]:
        with self._tracer.span(span_name, self._attributes(mapping, table, "INSPECT")):
            async with execute_with_connection(self._conn, transactional=False) as conn:
                columns = await conn.run_sync(
                    lambda sync_conn: inspect(sync_conn).get_columns(table)
                )
            return {column["name"]: str(column["type"]) for column in columns}


class SQLAlchemySourceStore(_SQLAlchemyStore):
    """
    Source store reading the legacy schema.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/legacy")
        >>> source = SQLAlchemySourceStore(engine)
        >>> rows = await source.fetch_changed_rows(get_entity_mapping("offices"), since)
    """

    async def fetch_changed_rows(
        self,
        mapping: EntityMapping,
        since: datetime,
        *,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        table = mapping.source_table
        ts = mapping.timestamp_field
        with self._tracer.span(
            "diffmigrate.source_store.fetch_changed_rows",
            self._attributes(mapping, table, "SELECT"),
        ) as span:
            conditions = [f"{ts} >= :since"]
            params: dict[str, Any] = {"since": to_utc(since)}
            timestamp_params = ["since"]
            if until is not None:
                conditions.append(f"{ts} < :until")
                params["until"] = to_utc(until)
                timestamp_params.append("until")
            sql = (
                f"SELECT * FROM {table} WHERE {' AND '.join(conditions)} "
                f"ORDER BY {ts}, {mapping.id_field}"
            )
            if limit is not None:
                sql += " LIMIT :limit"
                params["limit"] = limit
            rows = await self._fetch(timestamp_query(sql, *timestamp_params), params)
            if span:
                span.set_attribute(ATTR_RECORD_COUNT, len(rows))
            return rows

    async def fetch_rows_by_ids(self, mapping: EntityMapping, ids: Sequence[str]) -> list[Row]:
        if not ids:
            return []
        table = mapping.source_table
        with self._tracer.span(
            "diffmigrate.source_store.fetch_rows_by_ids",
            self._attributes(mapping, table, "SELECT"),
        ):
            query = timestamp_query(
                f"SELECT * FROM {table} WHERE {mapping.id_field} IN :ids "
                f"ORDER BY {mapping.id_field}"
            ).bindparams(bindparam("ids", expanding=True))
            return await self._fetch(query, {"ids": bind_ids(ids)})

    async def fetch_existing_ids(self, mapping: EntityMapping, ids: Sequence[str]) -> set[str]:
        if not ids:
            return set()
        table = mapping.source_table
        with self._tracer.span(
            "diffmigrate.source_store.fetch_existing_ids",
            self._attributes(mapping, table, "SELECT"),
        ):
            query = timestamp_query(
                f"SELECT {mapping.id_field} AS id FROM {table} WHERE {mapping.id_field} IN :ids"
            ).bindparams(bindparam("ids", expanding=True))
            rows = await self._fetch(query, {"ids": bind_ids(ids)})
            return {str(row["id"]) for row in rows}

    async def count_rows(self, mapping: EntityMapping) -> int:
        return await self._count(
            mapping, mapping.source_table, "diffmigrate.source_store.count_rows"
        )

    async def describe_columns(self, mapping: EntityMapping) -> dict[str, str]:
        return await self._columns(
            mapping, mapping.source_table, "diffmigrate.source_store.describe_columns"
        )


class SQLAlchemyDestinationStore(_SQLAlchemyStore):
    """Destination store reading the target schema by legacy id."""

    async def fetch_by_legacy_ids(
        self,
        mapping: EntityMapping,
        ids: Sequence[str],
    ) -> dict[str, Row]:
        if not ids:
            return {}
        table = mapping.destination_table
        legacy = mapping.legacy_id_field
        with self._tracer.span(
            "diffmigrate.destination_store.fetch_by_legacy_ids",
            self._attributes(mapping, table, "SELECT"),
        ):
            query = timestamp_query(
                f"SELECT * FROM {table} WHERE {legacy} IN :ids"
            ).bindparams(bindparam("ids", expanding=True))
            rows = await self._fetch(query, {"ids": bind_ids(ids)})
            return {str(row[legacy]): row for row in rows}

    async def fetch_updated_since(
        self,
        mapping: EntityMapping,
        since: datetime,
        *,
        until: datetime | None = None,
    ) -> list[Row]:
        table = mapping.destination_table
        legacy = mapping.legacy_id_field
        ts = mapping.timestamp_field
        with self._tracer.span(
            "diffmigrate.destination_store.fetch_updated_since",
            self._attributes(mapping, table, "SELECT"),
        ):
            conditions = [f"{legacy} IS NOT NULL", f"{ts} >= :since"]
            params: dict[str, Any] = {"since": to_utc(since)}
            timestamp_params = ["since"]
            if until is not None:
                conditions.append(f"{ts} < :until")
                params["until"] = to_utc(until)
                timestamp_params.append("until")
            query = timestamp_query(
                f"SELECT * FROM {table} WHERE {' AND '.join(conditions)} ORDER BY {legacy}",
                *timestamp_params,
            )
            return await self._fetch(query, params)

    async def count_rows(self, mapping: EntityMapping) -> int:
        return await self._count(
            mapping, mapping.destination_table, "diffmigrate.destination_store.count_rows"
        )

    async def describe_columns(self, mapping: EntityMapping) -> dict[str, str]:
        return await self._columns(
            mapping,
            mapping.destination_table,
            "diffmigrate.destination_store.describe_columns",
        )


__all__ = [
    "bind_ids",
    "SQLAlchemySourceStore",
    "SQLAlchemyDestinationStore",
]
