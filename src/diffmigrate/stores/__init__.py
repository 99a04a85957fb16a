"""
Source and destination data access.

Stores:
    - SourceStore: Reads changed rows from the legacy schema
    - DestinationStore: Reads migrated rows by legacy id
    - RecordMigrator: Writes records into the destination schema
"""

from diffmigrate.stores.base import (
    DestinationStore,
    RecordMigrator,
    Row,
    SourceStore,
    row_id,
)
from diffmigrate.stores.in_memory import (
    InMemoryDestinationStore,
    InMemoryRecordMigrator,
    InMemorySourceStore,
    id_sort_key,
)
from diffmigrate.stores.sqlalchemy import (
    SQLAlchemyDestinationStore,
    SQLAlchemySourceStore,
    bind_ids,
)

__all__ = [
    "Row",
    "row_id",
    "SourceStore",
    "DestinationStore",
    "RecordMigrator",
    "InMemorySourceStore",
    "InMemoryDestinationStore",
    "InMemoryRecordMigrator",
    "id_sort_key",
    "SQLAlchemySourceStore",
    "SQLAlchemyDestinationStore",
    "bind_ids",
]
