"""
OpenTelemetry metrics for migration runs.

Example:
    >>> from diffmigrate.metrics import get_migration_metrics
    >>>
    >>> metrics = get_migration_metrics("run-123")
    >>> metrics.record_batch("orders", processed=1000, failed=2, duration_ms=850.0)
    >>> metrics.record_retry("orders", "network")
    >>> metrics.get_snapshot().records_processed
    1000

Metrics Exposed:
    - diffmigrate.records.processed (Counter): Records written to the destination
    - diffmigrate.records.failed (Counter): Records that could not be migrated
    - diffmigrate.batch.duration (Histogram): Batch processing time
    - diffmigrate.retries (Counter): Retry attempts
    - diffmigrate.errors (Counter): Classified errors, by type
    - diffmigrate.checkpoints (Counter): Checkpoints written
    - diffmigrate.entities.active (Gauge): Entities currently migrating
    - diffmigrate.runs.active (Gauge): Runs currently executing

All per-run metrics carry a ``run_id`` attribute; per-entity ones also carry
``entity_type``.
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import MeterProvider, Observation

METER_NAME = "diffmigrate"

_meter: Any = None


def _get_meter() -> Any:
    """Get or create the global meter for the diffmigrate namespace."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(METER_NAME, version="1.0.0")
    return _meter


def reset_meter() -> None:
    """Drop the cached meter (used between tests)."""
    global _meter
    _meter = None


class NoOpCounter:
    """Counter used when metrics are disabled."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Histogram used when metrics are disabled."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class MetricSnapshot:
    """
    Accumulated metric values for one run.

    Attributes:
        records_processed: Records written, across entities.
        records_failed: Records that failed, across entities.
        batches: Batches recorded.
        retries: Retry attempts.
        checkpoints: Checkpoints written.
        errors_by_type: Classified error counts keyed by error type.
        records_by_entity: Records written per entity type.
        batch_durations_ms: Recorded batch durations.
        active_entities: Entities currently migrating.
    """

    records_processed: int = 0
    records_failed: int = 0
    batches: int = 0
    retries: int = 0
    checkpoints: int = 0
    errors_by_type: dict[str, int] = field(default_factory=dict)
    records_by_entity: dict[str, int] = field(default_factory=dict)
    batch_durations_ms: list[float] = field(default_factory=list)
    active_entities: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "batches": self.batches,
            "retries": self.retries,
            "checkpoints": self.checkpoints,
            "errors_by_type": dict(self.errors_by_type),
            "records_by_entity": dict(self.records_by_entity),
            "batch_durations_ms": list(self.batch_durations_ms),
            "active_entities": self.active_entities,
        }


@dataclass
class MigrationMetrics:
    """
    Metric instruments for one migration run.

    Attributes:
        run_id: Run identifier used as a metric attribute.
        enable_metrics: Record to OpenTelemetry (snapshots are always kept).
        meter_provider: Provider to create instruments from instead of the
            global one.

    Example:
        >>> metrics = MigrationMetrics("run-123")
        >>> metrics.entity_started("orders")
        >>> with metrics.time_batch("orders") as timer:
        ...     written = await migrator.migrate_batch(mapping, ids)
        ...     timer.processed = written
        >>> metrics.entity_finished("orders")
    """

    run_id: str
    enable_metrics: bool = True
    meter_provider: MeterProvider | None = None

    _meter: Any = field(default=None, init=False, repr=False)
    _processed_counter: Any = field(default=None, init=False, repr=False)
    _failed_counter: Any = field(default=None, init=False, repr=False)
    _batch_histogram: Any = field(default=None, init=False, repr=False)
    _retry_counter: Any = field(default=None, init=False, repr=False)
    _error_counter: Any = field(default=None, init=False, repr=False)
    _checkpoint_counter: Any = field(default=None, init=False, repr=False)

    _records_processed: int = field(default=0, init=False, repr=False)
    _records_failed: int = field(default=0, init=False, repr=False)
    _batches: int = field(default=0, init=False, repr=False)
    _retries: int = field(default=0, init=False, repr=False)
    _checkpoints: int = field(default=0, init=False, repr=False)
    _errors_by_type: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _records_by_entity: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _batch_durations: list[float] = field(default_factory=list, init=False, repr=False)
    _active_entities: set[str] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        if self.meter_provider is not None:
            self._meter = self.meter_provider.get_meter(METER_NAME, version="1.0.0")
        else:
            self._meter = _get_meter()

        self._processed_counter = self._meter.create_counter(
            name="diffmigrate.records.processed",
            unit="records",
            description="Records written to the destination",
        )
        self._failed_counter = self._meter.create_counter(
            name="diffmigrate.records.failed",
            unit="records",
            description="Records that could not be migrated",
        )
        self._batch_histogram = self._meter.create_histogram(
            name="diffmigrate.batch.duration",
            unit="ms",
            description="Batch processing time in milliseconds",
        )
        self._retry_counter = self._meter.create_counter(
            name="diffmigrate.retries",
            unit="attempts",
            description="Retry attempts after classified failures",
        )
        self._error_counter = self._meter.create_counter(
            name="diffmigrate.errors",
            unit="errors",
            description="Classified migration errors",
        )
        self._checkpoint_counter = self._meter.create_counter(
            name="diffmigrate.checkpoints",
            unit="checkpoints",
            description="Checkpoints written",
        )
        self._meter.create_observable_gauge(
            name="diffmigrate.entities.active",
            callbacks=[self._observe_active_entities],
            unit="entities",
            description="Entities currently migrating",
        )

    def _setup_noop(self) -> None:
        self._processed_counter = NoOpCounter()
        self._failed_counter = NoOpCounter()
        self._batch_histogram = NoOpHistogram()
        self._retry_counter = NoOpCounter()
        self._error_counter = NoOpCounter()
        self._checkpoint_counter = NoOpCounter()

    def _attributes(self, entity_type: str | None = None) -> dict[str, str]:
        attrs = {"run_id": self.run_id}
        if entity_type is not None:
            attrs["entity_type"] = entity_type
        return attrs

    def _observe_active_entities(self, options: Any) -> Any:
        yield Observation(value=len(self._active_entities), attributes=self._attributes())

    def entity_started(self, entity_type: str) -> None:
        self._active_entities.add(entity_type)

    def entity_finished(self, entity_type: str) -> None:
        self._active_entities.discard(entity_type)

    def record_batch(
        self,
        entity_type: str,
        processed: int,
        failed: int,
        duration_ms: float,
    ) -> None:
        """
        Record the outcome of one batch.

        Args:
            entity_type: Entity the batch belongs to.
            processed: Records written.
            failed: Records that failed.
            duration_ms: Batch wall-clock duration.
        """
        attrs = self._attributes(entity_type)
        if processed:
            self._processed_counter.add(processed, attrs)
        if failed:
            self._failed_counter.add(failed, attrs)
        self._batch_histogram.record(duration_ms, attrs)

        self._records_processed += processed
        self._records_failed += failed
        self._batches += 1
        self._batch_durations.append(duration_ms)
        self._records_by_entity[entity_type] = (
            self._records_by_entity.get(entity_type, 0) + processed
        )

    def record_retry(self, entity_type: str, error_type: str | None = None) -> None:
        attrs = self._attributes(entity_type)
        if error_type:
            attrs["error_type"] = error_type
        self._retry_counter.add(1, attrs)
        self._retries += 1

    def record_error(self, entity_type: str, error_type: str) -> None:
        attrs = {**self._attributes(entity_type), "error_type": error_type}
        self._error_counter.add(1, attrs)
        self._errors_by_type[error_type] = self._errors_by_type.get(error_type, 0) + 1

    def record_checkpoint(self, entity_type: str, reason: str = "interval") -> None:
        attrs = {**self._attributes(entity_type), "reason": reason}
        self._checkpoint_counter.add(1, attrs)
        self._checkpoints += 1

    @contextmanager
    def time_batch(self, entity_type: str) -> Generator[_BatchTimer, None, None]:
        """
        Time a batch and record it on exit.

        Set ``processed`` and ``failed`` on the yielded timer before leaving
        the block.
        """
        timer = _BatchTimer()
        timer.start()
        try:
            yield timer
        finally:
            timer.stop()
            self.record_batch(entity_type, timer.processed, timer.failed, timer.duration_ms)

    def get_snapshot(self) -> MetricSnapshot:
        """Accumulated values, for tests and run summaries."""
        return MetricSnapshot(
            records_processed=self._records_processed,
            records_failed=self._records_failed,
            batches=self._batches,
            retries=self._retries,
            checkpoints=self._checkpoints,
            errors_by_type=dict(self._errors_by_type),
            records_by_entity=dict(self._records_by_entity),
            batch_durations_ms=list(self._batch_durations),
            active_entities=len(self._active_entities),
        )

    @property
    def metrics_enabled(self) -> bool:
        return self.enable_metrics

    @property
    def active_entities(self) -> set[str]:
        return set(self._active_entities)


class _BatchTimer:
    """Timer yielded by ``MigrationMetrics.time_batch``."""

    def __init__(self) -> None:
        self._start: float = 0.0
        self._end: float = 0.0
        self._stopped: bool = False
        self.processed: int = 0
        self.failed: int = 0

    def start(self) -> None:
        self._start = time.perf_counter()
        self._stopped = False

    def stop(self) -> None:
        if not self._stopped:
            self._end = time.perf_counter()
            self._stopped = True

    @property
    def duration_ms(self) -> float:
        if self._start == 0:
            return 0.0
        end = self._end if self._stopped else time.perf_counter()
        return (end - self._start) * 1000


class ActiveRunsTracker:
    """
    Process-wide set of executing runs behind the ``diffmigrate.runs.active`` gauge.

    Example:
        >>> tracker = ActiveRunsTracker.get_instance()
        >>> tracker.register_run("run-123")
        >>> tracker.unregister_run("run-123")
    """

    _instance: ActiveRunsTracker | None = None
    _initialized: bool = False

    def __init__(self) -> None:
        self._runs: set[str] = set()
        self._setup_gauge()

    @classmethod
    def get_instance(cls) -> ActiveRunsTracker:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._initialized = False

    def _setup_gauge(self) -> None:
        if ActiveRunsTracker._initialized:
            return
        _get_meter().create_observable_gauge(
            name="diffmigrate.runs.active",
            callbacks=[self._observe_active_count],
            unit="runs",
            description="Migration runs currently executing",
        )
        ActiveRunsTracker._initialized = True

    def _observe_active_count(self, options: Any) -> Any:
        yield Observation(value=len(self._runs))

    def register_run(self, run_id: str) -> None:
        self._runs.add(run_id)

    def unregister_run(self, run_id: str) -> None:
        self._runs.discard(run_id)

    @property
    def active_count(self) -> int:
        return len(self._runs)

    @property
    def active_runs(self) -> set[str]:
        return set(self._runs)


_metrics_registry: dict[str, MigrationMetrics] = {}


def get_migration_metrics(run_id: str, enable_metrics: bool = True) -> MigrationMetrics:
    """
    Get or create the metrics of a run and register the run as active.

    Args:
        run_id: Run identifier.
        enable_metrics: Whether to record to OpenTelemetry.
    """
    if run_id not in _metrics_registry:
        _metrics_registry[run_id] = MigrationMetrics(run_id=run_id, enable_metrics=enable_metrics)
        ActiveRunsTracker.get_instance().register_run(run_id)
    return _metrics_registry[run_id]


def release_migration_metrics(run_id: str) -> None:
    """Remove a finished run from the registry and the active gauge."""
    if run_id in _metrics_registry:
        del _metrics_registry[run_id]
        ActiveRunsTracker.get_instance().unregister_run(run_id)


def clear_metrics_registry() -> None:
    """Reset all module state (used between tests)."""
    global _metrics_registry
    _metrics_registry = {}
    reset_meter()
    ActiveRunsTracker.reset()


__all__ = [
    "METER_NAME",
    "MigrationMetrics",
    "MetricSnapshot",
    "ActiveRunsTracker",
    "NoOpCounter",
    "NoOpHistogram",
    "get_migration_metrics",
    "release_migration_metrics",
    "clear_metrics_registry",
    "reset_meter",
]
