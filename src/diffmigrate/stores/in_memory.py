"""
In-memory stores and record migrator.

Used by the test suite and for dry runs. They behave like the SQL adapters,
including ordering and inclusive/exclusive bounds, so detection and
execution results are identical across both.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from diffmigrate.entities import EntityMapping
from diffmigrate.fingerprint import SYSTEM_FIELDS
from diffmigrate.serialization import parse_datetime
from diffmigrate.stores.base import Row, row_id


def id_sort_key(value: Any) -> tuple[int, Any]:
    """Numeric ids sort numerically and before non-numeric ones."""
    text = str(value)
    if text.isdigit():
        return (0, int(text))
    return (1, text)


def _in_window(value: Any, since: datetime, until: datetime | None) -> bool:
    timestamp = parse_datetime(value)
    if timestamp is None or timestamp < since:
        return False
    return until is None or timestamp < until


def _column_types(rows: Iterable[Row]) -> dict[str, str]:
    """Column name to the type name of its first non-null value."""
    columns: dict[str, str] = {}
    for row in rows:
        for key, value in row.items():
            if value is not None and columns.get(key, "unknown") == "unknown":
                columns[key] = type(value).__name__
            else:
                columns.setdefault(key, "unknown")
    return columns


class InMemorySourceStore:
    """
    Source store holding rows per source table.

    Example:
        >>> source = InMemorySourceStore()
        >>> source.put("dispatch_office", {"id": 1, "name": "Main", "updated_at": now})
    """

    def __init__(self, tables: Mapping[str, Iterable[Row]] | None = None) -> None:
        self._tables: dict[str, dict[str, Row]] = {}
        self._lock = asyncio.Lock()
        for table, rows in (tables or {}).items():
            for row in rows:
                self.put(table, row)

    def put(self, table: str, row: Row, id_field: str = "id") -> None:
        """Insert or replace a row."""
        self._tables.setdefault(table, {})[row_id(row, id_field)] = dict(row)

    def delete(self, table: str, record_id: str) -> None:
        self._tables.get(table, {}).pop(str(record_id), None)

    def rows(self, table: str) -> list[Row]:
        return [copy.copy(row) for row in self._tables.get(table, {}).values()]

    async def fetch_changed_rows(
        self,
        mapping: EntityMapping,
        since: datetime,
        *,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        async with self._lock:
            rows = [
                copy.copy(row)
                for row in self._tables.get(mapping.source_table, {}).values()
                if _in_window(row.get(mapping.timestamp_field), since, until)
            ]
        rows.sort(
            key=lambda row: (
                parse_datetime(row[mapping.timestamp_field]),
                id_sort_key(row[mapping.id_field]),
            )
        )
        return rows[:limit] if limit is not None else rows

    async def fetch_rows_by_ids(self, mapping: EntityMapping, ids: Sequence[str]) -> list[Row]:
        async with self._lock:
            table = self._tables.get(mapping.source_table, {})
            rows = [copy.copy(table[str(i)]) for i in ids if str(i) in table]
        return sorted(rows, key=lambda row: id_sort_key(row[mapping.id_field]))

    async def fetch_existing_ids(self, mapping: EntityMapping, ids: Sequence[str]) -> set[str]:
        async with self._lock:
            table = self._tables.get(mapping.source_table, {})
            return {str(i) for i in ids if str(i) in table}

    async def count_rows(self, mapping: EntityMapping) -> int:
        async with self._lock:
            return len(self._tables.get(mapping.source_table, {}))

    async def describe_columns(self, mapping: EntityMapping) -> dict[str, str]:
        async with self._lock:
            return _column_types(self._tables.get(mapping.source_table, {}).values())


class InMemoryDestinationStore:
    """Destination store holding rows per destination table, keyed by legacy id."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Row]] = {}
        self._lock = asyncio.Lock()

    def put(self, mapping: EntityMapping, row: Row) -> None:
        """Insert or replace a row keyed by its legacy id."""
        legacy_id = row_id(row, mapping.legacy_id_field)
        self._tables.setdefault(mapping.destination_table, {})[legacy_id] = dict(row)

    def get(self, mapping: EntityMapping, legacy_id: str) -> Row | None:
        row = self._tables.get(mapping.destination_table, {}).get(str(legacy_id))
        return copy.copy(row) if row is not None else None

    def rows(self, mapping: EntityMapping) -> list[Row]:
        return [copy.copy(r) for r in self._tables.get(mapping.destination_table, {}).values()]

    async def fetch_by_legacy_ids(
        self,
        mapping: EntityMapping,
        ids: Sequence[str],
    ) -> dict[str, Row]:
        async with self._lock:
            table = self._tables.get(mapping.destination_table, {})
            return {str(i): copy.copy(table[str(i)]) for i in ids if str(i) in table}

    async def fetch_updated_since(
        self,
        mapping: EntityMapping,
        since: datetime,
        *,
        until: datetime | None = None,
    ) -> list[Row]:
        async with self._lock:
            rows = [
                copy.copy(row)
                for row in self._tables.get(mapping.destination_table, {}).values()
                if row.get(mapping.legacy_id_field) is not None
                and _in_window(row.get(mapping.timestamp_field), since, until)
            ]
        return sorted(rows, key=lambda row: id_sort_key(row[mapping.legacy_id_field]))

    async def count_rows(self, mapping: EntityMapping) -> int:
        async with self._lock:
            return len(self._tables.get(mapping.destination_table, {}))

    async def describe_columns(self, mapping: EntityMapping) -> dict[str, str]:
        async with self._lock:
            return _column_types(self._tables.get(mapping.destination_table, {}).values())


Transform = Callable[[EntityMapping, Row], Row]


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return parse_datetime(value)
    if isinstance(value, Decimal):
        return str(value)
    return value


class InMemoryRecordMigrator:
    """
    Record migrator copying source rows into an in-memory destination.

    Each destination row carries the transformed source fields, the legacy
    id, a fresh last-modified timestamp and, when a fingerprint function is
    given, the content fingerprint under ``content_hash_field``. Writes are
    upserts keyed by the legacy id.

    Args:
        source: Source store to read from.
        destination: Destination store to write to.
        transform: Column transform per entity (identity by default).
        fingerprint: Computes the content fingerprint of a source row.
        content_hash_field: Destination column for the fingerprint.
        clock: Time source for destination timestamps.
    """

    def __init__(
        self,
        source: InMemorySourceStore,
        destination: InMemoryDestinationStore,
        *,
        transform: Transform | None = None,
        fingerprint: Callable[[Row], str] | None = None,
        content_hash_field: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._destination = destination
        self._transform = transform or (lambda _mapping, row: dict(row))
        self._fingerprint = fingerprint
        self._content_hash_field = content_hash_field
        self._clock = clock or (lambda: datetime.now(UTC))

    def _write(self, mapping: EntityMapping, source_row: Row) -> None:
        legacy_id = row_id(source_row, mapping.id_field)
        existing = self._destination.get(mapping, legacy_id)
        row = {
            key: value
            for key, value in self._transform(mapping, source_row).items()
            if key not in SYSTEM_FIELDS
        }
        row["id"] = existing["id"] if existing else str(uuid4())
        row[mapping.legacy_id_field] = legacy_id
        row[mapping.timestamp_field] = self._clock()
        if self._fingerprint is not None and self._content_hash_field:
            row[self._content_hash_field] = self._fingerprint(source_row)
        self._destination.put(mapping, row)

    async def migrate_batch(self, mapping: EntityMapping, record_ids: Sequence[str]) -> int:
        rows = await self._source.fetch_rows_by_ids(mapping, record_ids)
        for row in rows:
            self._write(mapping, row)
        return len(rows)

    async def migrate_record(self, mapping: EntityMapping, record_id: str) -> None:
        rows = await self._source.fetch_rows_by_ids(mapping, [record_id])
        if not rows:
            raise LookupError(f"Source record {record_id} not found in {mapping.source_table}")
        self._write(mapping, rows[0])

    def records_match(
        self,
        mapping: EntityMapping,
        source_row: Row,
        destination_row: Row,
    ) -> bool:
        expected = self._transform(mapping, source_row)
        return all(
            _comparable(destination_row.get(key)) == _comparable(value)
            for key, value in expected.items()
            if key not in SYSTEM_FIELDS and key != mapping.timestamp_field
        )


__all__ = [
    "id_sort_key",
    "InMemorySourceStore",
    "InMemoryDestinationStore",
    "InMemoryRecordMigrator",
    "Transform",
]
