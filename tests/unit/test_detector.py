"""
Unit tests for ChangeDetector.

Tests cover:
- New and modified classification with confidences
- Idempotent detection after migration
- Content hashing suppressing timestamp-only touches
- Delete detection
- Time window bounds, sampling and analysis limits
- Explicit-id batch detection
- Timestamp sanity checks and recommendations
- Tracing spans
"""

from datetime import timedelta

import pytest

from diffmigrate.config import DetectionConfig
from diffmigrate.detector import (
    DELETED_CONFIDENCE,
    HASHED_MODIFIED_CONFIDENCE,
    MODIFIED_CONFIDENCE,
    NEW_CONFIDENCE,
    ChangeDetector,
    in_sample,
)
from diffmigrate.entities import get_entity_mapping
from diffmigrate.exceptions import ConfigurationError, UnknownEntityError
from diffmigrate.models import ChangeRecord, ChangeType, DetectionMethod
from diffmigrate.observability import ATTR_ENTITY_TYPE, MockTracer
from diffmigrate.stores.in_memory import InMemoryDestinationStore, InMemorySourceStore
from tests.fixtures import EPOCH, FakeClock, ScriptedMigrator, make_row, populate

OFFICES = get_entity_mapping("offices")
SINCE = EPOCH - timedelta(days=1)
READY = "Change detection complete; ready for migration"


@pytest.fixture
def detector(
    source: InMemorySourceStore,
    destination: InMemoryDestinationStore,
    fake_clock: FakeClock,
) -> ChangeDetector:
    return ChangeDetector(source, destination, enable_tracing=False, clock=fake_clock)


@pytest.fixture
def hashing_detector(
    source: InMemorySourceStore,
    destination: InMemoryDestinationStore,
    fake_clock: FakeClock,
) -> ChangeDetector:
    config = DetectionConfig(enable_content_hashing=True, content_hash_field="content_hash")
    return ChangeDetector(source, destination, config, enable_tracing=False, clock=fake_clock)


@pytest.fixture
def hashing_migrator(
    source: InMemorySourceStore,
    destination: InMemoryDestinationStore,
    hashing_detector: ChangeDetector,
    fake_clock: FakeClock,
) -> ScriptedMigrator:
    return ScriptedMigrator(
        source,
        destination,
        fingerprint=hashing_detector.fingerprint,
        content_hash_field="content_hash",
        clock=lambda: fake_clock() + timedelta(hours=1),
    )


class TestDetectChanges:
    """Tests for timestamp-based detection."""

    @pytest.mark.asyncio
    async def test_all_new(self, detector: ChangeDetector, source: InMemorySourceStore) -> None:
        ids = populate(source, "dispatch_office", 1234)

        result = await detector.detect_changes("offices", SINCE)

        assert result.new_records == 1234
        assert result.modified_records == 0
        assert result.total_records_analyzed == 1234
        assert result.record_ids() == ids
        assert all(c.confidence == NEW_CONFIDENCE for c in result.changes)
        assert result.detection_method is DetectionMethod.TIMESTAMP_ONLY
        assert (
            "Large number of new records; use larger batches with checkpointing"
            in result.recommendations
        )

    @pytest.mark.asyncio
    async def test_idempotent_after_migration(
        self,
        detector: ChangeDetector,
        source: InMemorySourceStore,
        migrator: ScriptedMigrator,
    ) -> None:
        ids = populate(source, "dispatch_office", 20)
        await migrator.migrate_batch(OFFICES, ids)

        result = await detector.detect_changes("offices", SINCE)

        assert result.total_changes == 0
        assert result.total_records_analyzed == 20
        assert result.recommendations == (READY,)

    @pytest.mark.asyncio
    async def test_modified_after_migration(
        self,
        detector: ChangeDetector,
        source: InMemorySourceStore,
        migrator: ScriptedMigrator,
    ) -> None:
        ids = populate(source, "dispatch_office", 3)
        await migrator.migrate_batch(OFFICES, ids)
        source.put("dispatch_office", make_row(2, EPOCH + timedelta(hours=2), name="renamed"))

        result = await detector.detect_changes("offices", SINCE)

        assert result.record_ids() == ["2"]
        change = result.changes[0]
        assert change.change_type is ChangeType.MODIFIED
        assert change.confidence == MODIFIED_CONFIDENCE
        assert change.destination_timestamp == EPOCH + timedelta(hours=1)
        assert change.source_timestamp == EPOCH + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_equal_timestamps_are_unchanged(
        self,
        detector: ChangeDetector,
        source: InMemorySourceStore,
        destination: InMemoryDestinationStore,
    ) -> None:
        source.put("dispatch_office", make_row(1))
        destination.put(OFFICES, {"id": "d1", "legacy_office_id": "1", "updated_at": EPOCH})

        result = await detector.detect_changes("offices", SINCE)

        assert result.total_changes == 0

    @pytest.mark.asyncio
    async def test_ordering_by_timestamp_then_id(
        self, detector: ChangeDetector, source: InMemorySourceStore
    ) -> None:
        source.put("dispatch_office", make_row(10, EPOCH))
        source.put("dispatch_office", make_row(2, EPOCH + timedelta(minutes=5)))
        source.put("dispatch_office", make_row(9, EPOCH))

        result = await detector.detect_changes("offices", SINCE)

        assert result.record_ids() == ["9", "10", "2"]

    @pytest.mark.asyncio
    async def test_window_bounds(
        self, detector: ChangeDetector, source: InMemorySourceStore
    ) -> None:
        source.put("dispatch_office", make_row(1, EPOCH - timedelta(seconds=1)))
        source.put("dispatch_office", make_row(2, EPOCH))
        source.put("dispatch_office", make_row(3, EPOCH + timedelta(hours=1)))

        result = await detector.detect_changes(
            "offices", EPOCH, until=EPOCH + timedelta(hours=1)
        )

        assert result.record_ids() == ["2"]

    @pytest.mark.asyncio
    async def test_unknown_entity(self, detector: ChangeDetector) -> None:
        with pytest.raises(UnknownEntityError):
            await detector.detect_changes("widgets", SINCE)

    @pytest.mark.asyncio
    async def test_analysis_limit(
        self, source: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        populate(source, "dispatch_office", 30)
        detector = ChangeDetector(
            source,
            destination,
            DetectionConfig(max_records_to_analyze=10, batch_size=3),
            enable_tracing=False,
        )

        result = await detector.detect_changes("offices", SINCE)

        assert result.record_ids() == [str(i) for i in range(1, 11)]

    @pytest.mark.asyncio
    async def test_sampling_is_deterministic(
        self, source: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        ids = populate(source, "dispatch_office", 200)
        detector = ChangeDetector(
            source, destination, DetectionConfig(sample_percentage=50), enable_tracing=False
        )

        first = await detector.detect_changes("offices", SINCE)
        second = await detector.detect_changes("offices", SINCE)

        expected = [i for i in ids if in_sample(i, 50)]
        assert first.record_ids() == expected
        assert second.record_ids() == expected
        assert 0 < len(expected) < 200

    def test_in_sample_bounds(self) -> None:
        assert all(in_sample(str(i), 100) for i in range(100))
        assert in_sample("42", 30) is in_sample("42", 30)

    @pytest.mark.asyncio
    async def test_custom_timestamp_field(
        self, source: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        source.put("dispatch_office", {"id": 1, "name": "x", "modified_at": EPOCH})
        detector = ChangeDetector(
            source,
            destination,
            DetectionConfig(timestamp_field="modified_at"),
            enable_tracing=False,
        )

        result = await detector.detect_changes("offices", SINCE)

        assert detector.mapping_for("offices").timestamp_field == "modified_at"
        assert result.record_ids() == ["1"]


class TestContentHashing:
    """Tests for fingerprint-based false-positive suppression."""

    @pytest.mark.asyncio
    async def test_suppresses_timestamp_only_touch(
        self,
        hashing_detector: ChangeDetector,
        hashing_migrator: ScriptedMigrator,
        source: InMemorySourceStore,
    ) -> None:
        ids = populate(source, "dispatch_office", 3)
        await hashing_migrator.migrate_batch(OFFICES, ids)
        later = EPOCH + timedelta(hours=2)
        source.put("dispatch_office", make_row(1, later))
        source.put("dispatch_office", make_row(2, later, name="renamed"))

        result = await hashing_detector.detect_changes("offices", SINCE)

        assert result.record_ids() == ["2"]
        assert result.false_positives_suppressed == 1
        assert result.detection_method is DetectionMethod.TIMESTAMP_WITH_HASH
        change = result.changes[0]
        assert change.confidence == HASHED_MODIFIED_CONFIDENCE
        assert change.previous_fingerprint is not None
        assert change.content_fingerprint != change.previous_fingerprint
        assert result.warnings == ()

    @pytest.mark.asyncio
    async def test_hashing_override_off(
        self,
        hashing_detector: ChangeDetector,
        hashing_migrator: ScriptedMigrator,
        source: InMemorySourceStore,
    ) -> None:
        ids = populate(source, "dispatch_office", 2)
        await hashing_migrator.migrate_batch(OFFICES, ids)
        source.put("dispatch_office", make_row(1, EPOCH + timedelta(hours=2)))

        result = await hashing_detector.detect_changes("offices", SINCE, content_hashing=False)

        assert result.record_ids() == ["1"]
        assert result.changes[0].confidence == MODIFIED_CONFIDENCE
        assert result.detection_method is DetectionMethod.TIMESTAMP_ONLY
        assert (
            "Content hashing is available but disabled; enable it to suppress false positives"
            in result.recommendations
        )

    @pytest.mark.asyncio
    async def test_hashing_override_without_hash_field(
        self, detector: ChangeDetector, source: InMemorySourceStore
    ) -> None:
        """Requesting hashing with nowhere to read fingerprints from is an error."""
        populate(source, "dispatch_office", 2)

        with pytest.raises(ConfigurationError) as exc_info:
            await detector.detect_changes("offices", SINCE, content_hashing=True)

        assert exc_info.value.violations == [
            "contentHashField is required when content hashing is enabled"
        ]
        with pytest.raises(ConfigurationError):
            await detector.batch_detect_changes("offices", ["1"], content_hashing=True)

    @pytest.mark.asyncio
    async def test_missing_fingerprint_warning(
        self,
        hashing_detector: ChangeDetector,
        migrator: ScriptedMigrator,
        source: InMemorySourceStore,
    ) -> None:
        ids = populate(source, "dispatch_office", 2)
        await migrator.migrate_batch(OFFICES, ids)
        source.put("dispatch_office", make_row(1, EPOCH + timedelta(hours=2)))

        result = await hashing_detector.detect_changes("offices", SINCE)

        assert result.record_ids() == ["1"]
        assert result.changes[0].previous_fingerprint is None
        assert len(result.warnings) == 1
        assert "2 migrated offices rows have no stored fingerprint" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_new_records_carry_fingerprint(
        self, hashing_detector: ChangeDetector, source: InMemorySourceStore
    ) -> None:
        source.put("dispatch_office", make_row(1))

        result = await hashing_detector.detect_changes("offices", SINCE)

        assert result.changes[0].content_fingerprint == hashing_detector.fingerprint(
            make_row(1)
        )


class TestDeletes:
    """Tests for delete detection."""

    @pytest.mark.asyncio
    async def test_detects_deleted_source_rows(
        self,
        detector: ChangeDetector,
        source: InMemorySourceStore,
        destination: InMemoryDestinationStore,
        migrator: ScriptedMigrator,
    ) -> None:
        ids = populate(source, "dispatch_office", 3)
        await migrator.migrate_batch(OFFICES, ids)
        source.delete("dispatch_office", "2")

        result = await detector.detect_changes("offices", SINCE, include_deletes=True)

        assert result.record_ids(ChangeType.DELETED) == ["2"]
        change = result.changes[0]
        assert change.confidence == DELETED_CONFIDENCE
        assert change.metadata["destination_id"] == destination.get(OFFICES, "2")["id"]
        assert result.total_records_analyzed == 5

    @pytest.mark.asyncio
    async def test_deletes_off_by_default(
        self,
        detector: ChangeDetector,
        source: InMemorySourceStore,
        migrator: ScriptedMigrator,
    ) -> None:
        ids = populate(source, "dispatch_office", 2)
        await migrator.migrate_batch(OFFICES, ids)
        source.delete("dispatch_office", "1")

        result = await detector.detect_changes("offices", SINCE)

        assert result.deleted_records == 0


class TestBatchDetectChanges:
    """Tests for detection over explicit ids."""

    @pytest.mark.asyncio
    async def test_mixed_ids(
        self,
        detector: ChangeDetector,
        source: InMemorySourceStore,
        migrator: ScriptedMigrator,
    ) -> None:
        ids = populate(source, "dispatch_office", 3)
        await migrator.migrate_batch(OFFICES, ids)
        source.delete("dispatch_office", "3")
        source.put("dispatch_office", make_row(4))

        result = await detector.batch_detect_changes("offices", ["1", "3", "4", "4", "99"])

        assert result.total_records_analyzed == 4
        assert result.record_ids(ChangeType.NEW) == ["4"]
        assert result.record_ids(ChangeType.DELETED) == ["3"]
        assert result.modified_records == 0

    @pytest.mark.asyncio
    async def test_hash_compared_regardless_of_timestamp(
        self,
        hashing_detector: ChangeDetector,
        hashing_migrator: ScriptedMigrator,
        source: InMemorySourceStore,
    ) -> None:
        ids = populate(source, "dispatch_office", 2)
        await hashing_migrator.migrate_batch(OFFICES, ids)
        # Content changed without a timestamp bump
        source.put("dispatch_office", make_row(2, name="renamed"))

        result = await hashing_detector.batch_detect_changes("offices", ids)

        assert result.record_ids() == ["2"]
        assert result.changes[0].confidence == HASHED_MODIFIED_CONFIDENCE
        assert result.detection_method is DetectionMethod.FULL_CONTENT_HASH


class TestDetectAll:
    """Tests for multi-entity detection."""

    @pytest.mark.asyncio
    async def test_results_per_entity(
        self, detector: ChangeDetector, source: InMemorySourceStore
    ) -> None:
        populate(source, "dispatch_office", 2)
        populate(source, "dispatch_doctor", 5)

        results = await detector.detect_all(["offices", "doctors"], SINCE)

        assert list(results) == ["offices", "doctors"]
        assert results["offices"].new_records == 2
        assert results["doctors"].new_records == 5

    @pytest.mark.asyncio
    async def test_unknown_entity_fails_first(
        self, source: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        tracer = MockTracer()
        detector = ChangeDetector(source, destination, tracer=tracer)

        with pytest.raises(UnknownEntityError):
            await detector.detect_all(["offices", "widgets"], SINCE)

        assert tracer.spans == []


class TestValidateTimestamps:
    """Tests for timestamp sanity checks."""

    def test_penalties(self, detector: ChangeDetector) -> None:
        changes = [
            ChangeRecord("1", ChangeType.NEW, EPOCH - timedelta(days=400), confidence=0.95),
            ChangeRecord("2", ChangeType.NEW, EPOCH + timedelta(days=2), confidence=0.95),
            ChangeRecord(
                "3",
                ChangeType.MODIFIED,
                EPOCH,
                destination_timestamp=EPOCH + timedelta(hours=1),
                confidence=0.85,
            ),
            ChangeRecord("4", ChangeType.NEW, EPOCH, confidence=0.95),
        ]

        adjusted, warnings = detector.validate_timestamps("offices", changes)

        assert [c.confidence for c in adjusted] == [0.75, 0.65, 0.45, 0.95]
        assert adjusted[3] is changes[3]
        assert len(warnings) == 3
        assert warnings[0].startswith("offices 1:")
        assert adjusted[0].metadata["timestamp_issues"] == [
            "source timestamp is older than one year"
        ]


class TestRecommendations:
    """Tests for generate_recommendations."""

    @pytest.mark.asyncio
    async def test_high_change_percentage(
        self,
        detector: ChangeDetector,
        source: InMemorySourceStore,
        migrator: ScriptedMigrator,
    ) -> None:
        ids = populate(source, "dispatch_office", 3)
        await migrator.migrate_batch(OFFICES, ids)
        source.put("dispatch_office", make_row(1, EPOCH + timedelta(hours=2)))

        result = await detector.detect_changes("offices", SINCE)

        assert result.change_percentage == 33.33
        assert result.recommendations[0].startswith("High change percentage")
        assert any(r.startswith("Modifications dominate") for r in result.recommendations)

    @pytest.mark.asyncio
    async def test_empty_source(self, detector: ChangeDetector) -> None:
        result = await detector.detect_changes("offices", SINCE)

        assert result.total_records_analyzed == 0
        assert result.recommendations == (READY,)


class TestTracing:
    """Tests for tracing spans."""

    @pytest.mark.asyncio
    async def test_detect_changes_span(
        self, source: InMemorySourceStore, destination: InMemoryDestinationStore
    ) -> None:
        tracer = MockTracer()
        detector = ChangeDetector(source, destination, tracer=tracer)
        populate(source, "dispatch_office", 2)

        await detector.detect_changes("offices", SINCE)
        await detector.batch_detect_changes("offices", ["1"])

        assert tracer.span_names == [
            "diffmigrate.detector.detect_changes",
            "diffmigrate.detector.batch_detect_changes",
        ]
        assert tracer.spans[0][1] == {ATTR_ENTITY_TYPE: "offices"}
