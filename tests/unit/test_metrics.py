"""
Unit tests for migration metrics.

Tests cover:
- Accumulated snapshots of batches, retries, errors and checkpoints
- OpenTelemetry counters, histogram and gauge via an SDK meter provider
- Batch timing context manager
- No-op instruments when metrics are disabled
- The per-run registry and the active runs tracker
"""

from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from diffmigrate.metrics import (
    ActiveRunsTracker,
    MigrationMetrics,
    NoOpCounter,
    get_migration_metrics,
    release_migration_metrics,
)
from tests.fixtures import collect_metrics


class TestMetricSnapshot:
    """Tests for the accumulated values."""

    def test_record_batch(self) -> None:
        metrics = MigrationMetrics("run-1", enable_metrics=False)

        metrics.record_batch("orders", processed=100, failed=2, duration_ms=850.0)
        metrics.record_batch("orders", processed=50, failed=0, duration_ms=400.0)
        metrics.record_batch("cases", processed=10, failed=0, duration_ms=90.0)
        snapshot = metrics.get_snapshot()

        assert snapshot.records_processed == 160
        assert snapshot.records_failed == 2
        assert snapshot.batches == 3
        assert snapshot.records_by_entity == {"orders": 150, "cases": 10}
        assert snapshot.batch_durations_ms == [850.0, 400.0, 90.0]

    def test_retries_errors_checkpoints(self) -> None:
        metrics = MigrationMetrics("run-1", enable_metrics=False)

        metrics.record_retry("orders", "network")
        metrics.record_retry("orders")
        metrics.record_error("orders", "network")
        metrics.record_error("orders", "network")
        metrics.record_error("cases", "data_integrity")
        metrics.record_checkpoint("orders")
        snapshot = metrics.get_snapshot()

        assert snapshot.retries == 2
        assert snapshot.errors_by_type == {"network": 2, "data_integrity": 1}
        assert snapshot.checkpoints == 1
        assert snapshot.to_dict()["errors_by_type"] == {"network": 2, "data_integrity": 1}

    def test_active_entities(self) -> None:
        metrics = MigrationMetrics("run-1", enable_metrics=False)

        metrics.entity_started("orders")
        metrics.entity_started("cases")
        metrics.entity_finished("orders")
        metrics.entity_finished("unknown")

        assert metrics.active_entities == {"cases"}
        assert metrics.get_snapshot().active_entities == 1

    def test_time_batch(self) -> None:
        metrics = MigrationMetrics("run-1", enable_metrics=False)

        with metrics.time_batch("orders") as timer:
            timer.processed = 25
            timer.failed = 1

        snapshot = metrics.get_snapshot()
        assert snapshot.records_processed == 25
        assert snapshot.records_failed == 1
        assert snapshot.batches == 1
        assert snapshot.batch_durations_ms[0] >= 0.0

    def test_time_batch_records_on_error(self) -> None:
        metrics = MigrationMetrics("run-1", enable_metrics=False)

        try:
            with metrics.time_batch("orders"):
                raise ConnectionError("lost")
        except ConnectionError:
            pass

        assert metrics.get_snapshot().batches == 1


class TestOpenTelemetryInstruments:
    """Tests for the instruments created from a meter provider."""

    def test_counters_carry_run_and_entity(
        self, meter_provider: MeterProvider, metric_reader: InMemoryMetricReader
    ) -> None:
        metrics = MigrationMetrics("run-1", meter_provider=meter_provider)

        metrics.record_batch("orders", processed=100, failed=3, duration_ms=500.0)
        metrics.record_batch("orders", processed=20, failed=0, duration_ms=100.0)
        points = collect_metrics(metric_reader)

        processed = points["diffmigrate.records.processed"]
        assert [p.value for p in processed] == [120]
        assert dict(processed[0].attributes) == {"run_id": "run-1", "entity_type": "orders"}
        assert [p.value for p in points["diffmigrate.records.failed"]] == [3]

        durations = points["diffmigrate.batch.duration"]
        assert durations[0].count == 2
        assert durations[0].sum == 600.0

    def test_error_and_retry_attributes(
        self, meter_provider: MeterProvider, metric_reader: InMemoryMetricReader
    ) -> None:
        metrics = MigrationMetrics("run-1", meter_provider=meter_provider)

        metrics.record_error("orders", "timeout")
        metrics.record_retry("orders", "timeout")
        metrics.record_checkpoint("orders", reason="pause")
        points = collect_metrics(metric_reader)

        assert points["diffmigrate.errors"][0].attributes["error_type"] == "timeout"
        assert points["diffmigrate.retries"][0].attributes["error_type"] == "timeout"
        assert points["diffmigrate.checkpoints"][0].attributes["reason"] == "pause"

    def test_active_entities_gauge(
        self, meter_provider: MeterProvider, metric_reader: InMemoryMetricReader
    ) -> None:
        metrics = MigrationMetrics("run-1", meter_provider=meter_provider)
        metrics.entity_started("orders")
        metrics.entity_started("cases")

        points = collect_metrics(metric_reader)

        assert [p.value for p in points["diffmigrate.entities.active"]] == [2]

    def test_disabled_metrics_use_noops(self) -> None:
        metrics = MigrationMetrics("run-1", enable_metrics=False)

        assert not metrics.metrics_enabled
        assert isinstance(metrics._processed_counter, NoOpCounter)


class TestRegistry:
    """Tests for the per-run registry and active runs tracking."""

    def test_get_returns_same_instance(self) -> None:
        first = get_migration_metrics("run-1", enable_metrics=False)
        second = get_migration_metrics("run-1", enable_metrics=False)

        assert first is second
        assert ActiveRunsTracker.get_instance().active_runs == {"run-1"}

    def test_release(self) -> None:
        first = get_migration_metrics("run-1", enable_metrics=False)
        release_migration_metrics("run-1")
        release_migration_metrics("run-1")

        assert ActiveRunsTracker.get_instance().active_count == 0
        assert get_migration_metrics("run-1", enable_metrics=False) is not first

    def test_tracker_singleton_reset(self) -> None:
        tracker = ActiveRunsTracker.get_instance()
        tracker.register_run("run-1")

        ActiveRunsTracker.reset()

        assert ActiveRunsTracker.get_instance() is not tracker
        assert ActiveRunsTracker.get_instance().active_count == 0
