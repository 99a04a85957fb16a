"""
Store interfaces used by change detection and execution.

The engine reads the legacy schema through a :class:`SourceStore`, reads
what was already migrated through a :class:`DestinationStore`, and writes
through an injected :class:`RecordMigrator` that owns the per-entity column
transforms.

Ids cross these interfaces as strings. Legacy ids are integer primary keys
in the source system; stores convert as needed.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from diffmigrate.entities import EntityMapping

Row = dict[str, Any]


def row_id(row: Mapping[str, Any], field: str) -> str:
    """String id of a row; raises KeyError when the field is missing."""
    return str(row[field])


@runtime_checkable
class SourceStore(Protocol):
    """Read access to the legacy schema."""

    async def fetch_changed_rows(
        self,
        mapping: EntityMapping,
        since: datetime,
        *,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        """
        Rows whose ``mapping.timestamp_field`` is at or after ``since``.

        Args:
            mapping: Entity mapping (source table, id and timestamp fields).
            since: Inclusive lower bound.
            until: Exclusive upper bound, if any.
            limit: Maximum rows to return.

        Returns:
            Rows ordered by timestamp, then id.
        """
        ...

    async def fetch_rows_by_ids(self, mapping: EntityMapping, ids: Sequence[str]) -> list[Row]:
        """Rows with the given ids, ordered by id."""
        ...

    async def fetch_existing_ids(self, mapping: EntityMapping, ids: Sequence[str]) -> set[str]:
        """Subset of ``ids`` that still exist in the source table."""
        ...

    async def count_rows(self, mapping: EntityMapping) -> int:
        """Number of rows in the source table."""
        ...

    async def describe_columns(self, mapping: EntityMapping) -> dict[str, str]:
        """Column names of the source table mapped to their type names."""
        ...


@runtime_checkable
class DestinationStore(Protocol):
    """Read access to the target schema."""

    async def fetch_by_legacy_ids(
        self,
        mapping: EntityMapping,
        ids: Sequence[str],
    ) -> dict[str, Row]:
        """Destination rows keyed by their legacy id (as a string)."""
        ...

    async def fetch_updated_since(
        self,
        mapping: EntityMapping,
        since: datetime,
        *,
        until: datetime | None = None,
    ) -> list[Row]:
        """Rows with a legacy id whose timestamp is at or after ``since``."""
        ...

    async def count_rows(self, mapping: EntityMapping) -> int:
        """Number of rows in the destination table."""
        ...

    async def describe_columns(self, mapping: EntityMapping) -> dict[str, str]:
        """Column names of the destination table mapped to their type names."""
        ...


@runtime_checkable
class RecordMigrator(Protocol):
    """
    Writes source records into the destination schema.

    Implementations own the column transforms of each entity type. Writes
    must be upserts keyed by the legacy id so re-running a batch after a
    crash is idempotent.
    """

    async def migrate_batch(self, mapping: EntityMapping, record_ids: Sequence[str]) -> int:
        """
        Migrate a batch of records in one unit of work.

        Raises on failure; the batch is then retried record by record.

        Returns:
            Number of records written.
        """
        ...

    async def migrate_record(self, mapping: EntityMapping, record_id: str) -> None:
        """Migrate one record; raises on failure."""
        ...

    def records_match(
        self,
        mapping: EntityMapping,
        source_row: Row,
        destination_row: Row,
    ) -> bool:
        """Whether a destination row faithfully represents its source row."""
        ...


__all__ = [
    "Row",
    "row_id",
    "SourceStore",
    "DestinationStore",
    "RecordMigrator",
]
