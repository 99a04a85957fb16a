"""
Unit tests for the in-memory stores and record migrator.

Tests cover:
- Changed-row windows with inclusive lower and exclusive upper bounds
- Ordering by timestamp then numeric id, and row limits
- Lookup by ids and existence checks
- Destination lookups keyed by legacy id
- Row counts and inferred column types
- Upserting writes, fingerprints and record comparison in the migrator
- Protocol conformance
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from diffmigrate.entities import get_entity_mapping
from diffmigrate.fingerprint import compute_fingerprint
from diffmigrate.stores import (
    DestinationStore,
    InMemoryDestinationStore,
    InMemoryRecordMigrator,
    InMemorySourceStore,
    RecordMigrator,
    SourceStore,
    id_sort_key,
    row_id,
)
from tests.fixtures import EPOCH, FakeClock, make_row

OFFICES = get_entity_mapping("offices")
HOUR = timedelta(hours=1)


@pytest.fixture
def legacy() -> InMemorySourceStore:
    return InMemorySourceStore(
        {
            "dispatch_office": [
                make_row(1, EPOCH + 2 * HOUR),
                make_row(10, EPOCH + HOUR),
                make_row(2, EPOCH + HOUR),
                make_row(4, EPOCH - timedelta(days=1)),
            ]
        }
    )


class TestHelpers:
    """Tests for id helpers."""

    def test_id_sort_key(self) -> None:
        assert sorted(["10", "2", "b", "1", "a"], key=id_sort_key) == ["1", "2", "10", "a", "b"]

    def test_row_id(self) -> None:
        assert row_id({"id": 7}, "id") == "7"
        with pytest.raises(KeyError):
            row_id({"name": "x"}, "id")


class TestInMemorySourceStore:
    """Tests for the source store."""

    @pytest.mark.asyncio
    async def test_changed_rows_window(self, legacy: InMemorySourceStore) -> None:
        """Rows at ``since`` are included, rows at ``until`` are not."""
        everything = await legacy.fetch_changed_rows(OFFICES, EPOCH)
        bounded = await legacy.fetch_changed_rows(OFFICES, EPOCH + HOUR, until=EPOCH + 2 * HOUR)

        assert [r["id"] for r in everything] == [2, 10, 1]
        assert [r["id"] for r in bounded] == [2, 10]

    @pytest.mark.asyncio
    async def test_changed_rows_limit(self, legacy: InMemorySourceStore) -> None:
        rows = await legacy.fetch_changed_rows(OFFICES, EPOCH, limit=2)

        assert [r["id"] for r in rows] == [2, 10]

    @pytest.mark.asyncio
    async def test_rows_without_timestamp_are_ignored(self) -> None:
        source = InMemorySourceStore()
        source.put("dispatch_office", {"id": 1, "name": "no timestamp"})

        assert await source.fetch_changed_rows(OFFICES, EPOCH) == []

    @pytest.mark.asyncio
    async def test_fetch_rows_by_ids(self, legacy: InMemorySourceStore) -> None:
        rows = await legacy.fetch_rows_by_ids(OFFICES, ["10", "1", "99"])

        assert [r["id"] for r in rows] == [1, 10]

    @pytest.mark.asyncio
    async def test_fetch_existing_ids(self, legacy: InMemorySourceStore) -> None:
        legacy.delete("dispatch_office", "2")

        existing = await legacy.fetch_existing_ids(OFFICES, ["1", "2", "99"])

        assert existing == {"1"}

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self, legacy: InMemorySourceStore) -> None:
        rows = await legacy.fetch_rows_by_ids(OFFICES, ["1"])
        rows[0]["name"] = "changed"

        assert (await legacy.fetch_rows_by_ids(OFFICES, ["1"]))[0]["name"] == "record-1"

    @pytest.mark.asyncio
    async def test_count_and_columns(self, legacy: InMemorySourceStore) -> None:
        """Column types come from the first non-null value of each column."""
        legacy.put("dispatch_office", make_row(5, EPOCH, phone=None))
        legacy.put("dispatch_office", make_row(6, EPOCH, phone="555-0100"))

        assert await legacy.count_rows(OFFICES) == 6
        assert await legacy.describe_columns(OFFICES) == {
            "id": "int",
            "name": "str",
            "updated_at": "datetime",
            "phone": "str",
        }

    @pytest.mark.asyncio
    async def test_count_missing_table(self) -> None:
        source = InMemorySourceStore()

        assert await source.count_rows(OFFICES) == 0
        assert await source.describe_columns(OFFICES) == {}


class TestInMemoryDestinationStore:
    """Tests for the destination store."""

    @pytest.mark.asyncio
    async def test_fetch_by_legacy_ids(self) -> None:
        destination = InMemoryDestinationStore()
        destination.put(OFFICES, {"id": "u-1", "legacy_office_id": 1, "updated_at": EPOCH})
        destination.put(OFFICES, {"id": "u-2", "legacy_office_id": 2, "updated_at": EPOCH})

        found = await destination.fetch_by_legacy_ids(OFFICES, ["2", "3"])

        assert list(found) == ["2"]
        assert found["2"]["id"] == "u-2"

    @pytest.mark.asyncio
    async def test_fetch_updated_since(self) -> None:
        destination = InMemoryDestinationStore()
        destination.put(OFFICES, {"id": "u-10", "legacy_office_id": 10, "updated_at": EPOCH})
        destination.put(OFFICES, {"id": "u-2", "legacy_office_id": 2, "updated_at": EPOCH + HOUR})
        destination.put(
            OFFICES, {"id": "u-3", "legacy_office_id": 3, "updated_at": EPOCH - HOUR}
        )

        rows = await destination.fetch_updated_since(OFFICES, EPOCH)
        bounded = await destination.fetch_updated_since(OFFICES, EPOCH, until=EPOCH + HOUR)

        assert [r["legacy_office_id"] for r in rows] == [2, 10]
        assert [r["legacy_office_id"] for r in bounded] == [10]

    @pytest.mark.asyncio
    async def test_count_and_columns(self) -> None:
        destination = InMemoryDestinationStore()
        destination.put(OFFICES, {"id": "u-1", "legacy_office_id": 1, "updated_at": EPOCH})
        destination.put(OFFICES, {"id": "u-2", "legacy_office_id": 2, "updated_at": EPOCH})

        assert await destination.count_rows(OFFICES) == 2
        assert await destination.describe_columns(OFFICES) == {
            "id": "str",
            "legacy_office_id": "int",
            "updated_at": "datetime",
        }


class TestInMemoryRecordMigrator:
    """Tests for the record migrator."""

    @pytest.fixture
    def destination(self) -> InMemoryDestinationStore:
        return InMemoryDestinationStore()

    @pytest.mark.asyncio
    async def test_migrate_batch(
        self, legacy: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        """Rows are written with the legacy id and the migrator's timestamp."""
        clock = FakeClock(EPOCH + 5 * HOUR)
        migrator = InMemoryRecordMigrator(legacy, destination, clock=clock)

        written = await migrator.migrate_batch(OFFICES, ["1", "2", "99"])
        row = destination.get(OFFICES, "1")

        assert written == 2
        assert row["legacy_office_id"] == "1"
        assert row["name"] == "record-1"
        assert row["updated_at"] == EPOCH + 5 * HOUR
        assert row["id"] != 1

    @pytest.mark.asyncio
    async def test_writes_are_upserts(
        self, legacy: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        """Re-migrating keeps the destination id and replaces the content."""
        migrator = InMemoryRecordMigrator(legacy, destination)
        await migrator.migrate_batch(OFFICES, ["1"])
        first_id = destination.get(OFFICES, "1")["id"]

        legacy.put("dispatch_office", make_row(1, EPOCH + 3 * HOUR, name="renamed"))
        await migrator.migrate_record(OFFICES, "1")

        assert len(destination.rows(OFFICES)) == 1
        assert destination.get(OFFICES, "1")["id"] == first_id
        assert destination.get(OFFICES, "1")["name"] == "renamed"

    @pytest.mark.asyncio
    async def test_migrate_missing_record(
        self, legacy: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        migrator = InMemoryRecordMigrator(legacy, destination)

        with pytest.raises(LookupError, match="dispatch_office"):
            await migrator.migrate_record(OFFICES, "99")

    @pytest.mark.asyncio
    async def test_fingerprint_column(
        self, legacy: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        migrator = InMemoryRecordMigrator(
            legacy,
            destination,
            fingerprint=compute_fingerprint,
            content_hash_field="content_hash",
        )

        await migrator.migrate_record(OFFICES, "1")
        source_row = (await legacy.fetch_rows_by_ids(OFFICES, ["1"]))[0]

        assert destination.get(OFFICES, "1")["content_hash"] == compute_fingerprint(source_row)

    def test_records_match(
        self, legacy: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        """System fields and the timestamp are ignored; decimals compare by value."""
        migrator = InMemoryRecordMigrator(legacy, destination)
        source_row = {"id": 1, "name": "Main", "fee": Decimal("1.50"), "updated_at": EPOCH}

        same = {"id": "u-1", "name": "Main", "fee": "1.50", "updated_at": EPOCH + HOUR}
        different = {"id": "u-1", "name": "Other", "fee": "1.50", "updated_at": EPOCH}

        assert migrator.records_match(OFFICES, source_row, same)
        assert not migrator.records_match(OFFICES, source_row, different)

    def test_transform(
        self, legacy: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        migrator = InMemoryRecordMigrator(
            legacy,
            destination,
            transform=lambda _mapping, row: {"office_name": row["name"].upper()},
        )

        assert migrator.records_match(OFFICES, {"name": "main"}, {"office_name": "MAIN"})


class TestProtocols:
    """The in-memory implementations satisfy the store protocols."""

    def test_runtime_checks(self, legacy: InMemorySourceStore) -> None:
        destination = InMemoryDestinationStore()

        assert isinstance(legacy, SourceStore)
        assert isinstance(destination, DestinationStore)
        assert isinstance(InMemoryRecordMigrator(legacy, destination), RecordMigrator)
