"""
Progress and alert tracking for migration runs.

The tracker keeps a history of :class:`~diffmigrate.models.ProgressSnapshot`
per entity, derives throughput and ETA from it, raises deduplicated alerts
against configured thresholds and fans updates out to subscribers.

Emission never blocks the caller: callbacks run inline and their errors are
logged, stream queues are bounded and drop updates when full.

Example:
    >>> tracker = ProgressTracker(ProgressConfig())
    >>> tracker.start_tracking("orders", total_records=10_000)
    >>> snapshot = tracker.update_progress("orders", 2_500, BatchInfo(2, 1000, 850.0))
    >>> snapshot.status
    <ProgressStatus.RUNNING: 'running'>
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import psutil

from diffmigrate.config import ProgressConfig
from diffmigrate.exceptions import TrackingError
from diffmigrate.models import (
    Alert,
    AlertSeverity,
    AlertType,
    BatchInfo,
    PerformanceMetrics,
    ProgressSnapshot,
    ProgressStatus,
    new_id,
)

logger = logging.getLogger(__name__)

COMPLETING_PERCENTAGE = 95.0
ETA_COMPARISON_MIN_HISTORY = 6
"""Snapshots needed before ETA drift is evaluated."""

CPU_EFFICIENCY_BASELINE = 1000.0
"""Records per second treated as full CPU efficiency."""

_STREAM_QUEUE_SIZE = 100


def process_memory_mb() -> float:
    """Resident memory of the current process in megabytes."""
    return round(psutil.Process().memory_info().rss / 1024 / 1024, 2)


@dataclass(frozen=True)
class ProgressUpdate:
    """
    Notification pushed to subscribers.

    Attributes:
        update_type: "progress", "status" or "alert".
        entity_type: Entity the update is about.
        data: The snapshot or alert.
        timestamp: When the update was emitted.
    """

    update_type: str
    entity_type: str
    data: ProgressSnapshot | Alert
    timestamp: datetime
    update_id: str = field(default_factory=new_id)


ProgressCallback = Callable[[ProgressUpdate], Any]


class Subscription:
    """Handle returned by :meth:`ProgressTracker.subscribe`."""

    def __init__(self, tracker: ProgressTracker, callback: ProgressCallback) -> None:
        self._tracker = tracker
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._tracker._callbacks.remove(self._callback)
            self._active = False


@dataclass(frozen=True)
class SessionStatus:
    """
    Aggregate status across all tracked entities.

    Attributes:
        entities: Latest snapshot per entity.
        total_records: Sum of records to migrate.
        records_processed: Sum of records processed.
        overall_percentage: Processed share of all records.
        estimated_completion_time: Latest ETA among active entities.
        completed_entities: Entities in ``completed`` status.
        active_entities: Entities still processing.
        active_alerts: Unresolved alerts.
    """

    entities: dict[str, ProgressSnapshot]
    total_records: int
    records_processed: int
    overall_percentage: float
    estimated_completion_time: datetime | None
    completed_entities: int
    active_entities: int
    active_alerts: tuple[Alert, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": {name: s.to_dict() for name, s in self.entities.items()},
            "total_records": self.total_records,
            "records_processed": self.records_processed,
            "overall_percentage": self.overall_percentage,
            "estimated_completion_time": (
                self.estimated_completion_time.isoformat()
                if self.estimated_completion_time
                else None
            ),
            "completed_entities": self.completed_entities,
            "active_entities": self.active_entities,
            "active_alerts": [a.to_dict() for a in self.active_alerts],
        }


@dataclass(frozen=True)
class ProgressReport:
    """Point-in-time report combining session status, metrics and advice."""

    report_id: str
    generated_at: datetime
    session: SessionStatus
    performance: dict[str, PerformanceMetrics]
    recommendations: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "generated_at": self.generated_at.isoformat(),
            "session": self.session.to_dict(),
            "performance": {name: m.to_dict() for name, m in self.performance.items()},
            "recommendations": list(self.recommendations),
        }


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _stddev(values: list[float]) -> float:
    if len(values) < 2:
        return 0.0
    mean = _mean(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


class ProgressTracker:
    """
    Tracks progress, performance and alerts per entity.

    Args:
        config: Tracking and alerting settings.
        clock: Current time (UTC); injectable for tests.
        memory_probe: Returns process memory in MB.
    """

    def __init__(
        self,
        config: ProgressConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        memory_probe: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or ProgressConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._memory_probe = memory_probe or process_memory_mb
        self._history: dict[str, list[ProgressSnapshot]] = {}
        self._start_times: dict[str, datetime] = {}
        self._totals: dict[str, int] = {}
        self._batch_durations: dict[str, list[float]] = {}
        self._last_progress_at: dict[str, datetime] = {}
        self._alerts: list[Alert] = []
        self._callbacks: list[ProgressCallback] = []
        self._queues: list[asyncio.Queue[ProgressUpdate | None]] = []
        self._maintenance_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> ProgressConfig:
        return self._config

    @property
    def tracked_entities(self) -> list[str]:
        return list(self._history)

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def start_tracking(self, entity_type: str, total_records: int) -> str:
        """
        Begin tracking an entity, replacing any previous history for it.

        Returns:
            Id of the initial snapshot.
        """
        if total_records < 0:
            raise TrackingError(f"total_records must be non-negative, got {total_records}")

        now = self._clock()
        self._history[entity_type] = []
        self._start_times[entity_type] = now
        self._totals[entity_type] = total_records
        self._batch_durations[entity_type] = []
        self._last_progress_at[entity_type] = now

        snapshot = self._build_snapshot(entity_type, 0, now, None, None)
        self._history[entity_type].append(snapshot)
        logger.info(
            "Tracking %s: %d records",
            entity_type,
            total_records,
            extra={"entity_type": entity_type, "records_total": total_records},
        )
        self._emit(ProgressUpdate("progress", entity_type, snapshot, now))
        return snapshot.snapshot_id

    def update_progress(
        self,
        entity_type: str,
        records_processed: int,
        batch_info: BatchInfo | None = None,
    ) -> ProgressSnapshot:
        """
        Record progress and evaluate alert rules.

        Args:
            entity_type: Tracked entity.
            records_processed: Cumulative records processed.
            batch_info: Details of the batch that produced this update.

        Raises:
            TrackingError: If the entity is not being tracked.
        """
        history = self._require(entity_type)
        now = self._clock()
        previous = history[-1]

        if batch_info is not None:
            self._batch_durations[entity_type].append(batch_info.duration_ms)
        if records_processed != previous.records_processed:
            self._last_progress_at[entity_type] = now

        snapshot = self._build_snapshot(entity_type, records_processed, now, batch_info, None)
        history.append(snapshot)
        self._prune_snapshots(entity_type, now)

        if self._config.enable_alerts:
            self._check_alerts(snapshot, previous)

        logger.debug(
            "Progress %s: %d/%d (%.2f%%)",
            entity_type,
            snapshot.records_processed,
            snapshot.records_total,
            snapshot.percentage_complete,
            extra={"entity_type": entity_type, "records_per_second": snapshot.records_per_second},
        )
        self._emit(ProgressUpdate("progress", entity_type, snapshot, now))
        return snapshot

    def set_status(self, entity_type: str, status: ProgressStatus) -> ProgressSnapshot:
        """
        Set an externally driven status such as paused or error.

        A new snapshot carrying the current counters is appended.
        """
        history = self._require(entity_type)
        now = self._clock()
        last = history[-1]
        snapshot = self._build_snapshot(entity_type, last.records_processed, now, None, status)
        history.append(snapshot)
        logger.info(
            "Status of %s set to %s",
            entity_type,
            status.value,
            extra={"entity_type": entity_type, "status": status.value},
        )
        self._emit(ProgressUpdate("status", entity_type, snapshot, now))
        return snapshot

    def _require(self, entity_type: str) -> list[ProgressSnapshot]:
        history = self._history.get(entity_type)
        if not history:
            raise TrackingError(f"No tracking session for entity type '{entity_type}'")
        return history

    def _build_snapshot(
        self,
        entity_type: str,
        records_processed: int,
        now: datetime,
        batch_info: BatchInfo | None,
        status: ProgressStatus | None,
    ) -> ProgressSnapshot:
        total = self._totals[entity_type]
        start = self._start_times[entity_type]
        remaining = max(0, total - records_processed)
        percentage = round(records_processed / total * 100, 2) if total > 0 else 100.0
        elapsed_ms = (now - start).total_seconds() * 1000
        rps = round(records_processed / elapsed_ms * 1000, 2) if elapsed_ms > 0 else 0.0

        remaining_ms: float | None = None
        eta: datetime | None = None
        if rps > 0 and remaining > 0:
            remaining_ms = round(remaining / rps * 1000)
            eta = now + timedelta(milliseconds=remaining_ms)

        if status is None:
            if remaining == 0:
                status = ProgressStatus.COMPLETED
            elif records_processed == 0:
                status = ProgressStatus.STARTING
            elif percentage > COMPLETING_PERCENTAGE:
                status = ProgressStatus.COMPLETING
            else:
                status = ProgressStatus.RUNNING

        if batch_info is not None and batch_info.memory_usage_mb is not None:
            memory = batch_info.memory_usage_mb
        else:
            memory = self._memory_probe()

        return ProgressSnapshot(
            snapshot_id=new_id(),
            entity_type=entity_type,
            timestamp=now,
            status=status,
            records_processed=records_processed,
            records_remaining=remaining,
            records_total=total,
            percentage_complete=percentage,
            records_per_second=rps,
            average_batch_time_ms=round(_mean(self._batch_durations[entity_type]), 2),
            memory_usage_mb=memory,
            start_time=start,
            elapsed_time_ms=round(elapsed_ms, 3),
            remaining_time_ms=remaining_ms,
            estimated_completion_time=eta,
            current_batch=batch_info.batch_number if batch_info else None,
        )

    def get_current_progress(self, entity_type: str) -> ProgressSnapshot | None:
        history = self._history.get(entity_type)
        return history[-1] if history else None

    def get_progress_history(
        self,
        entity_type: str,
        limit: int | None = None,
    ) -> list[ProgressSnapshot]:
        """Snapshots of an entity, oldest first; the last ``limit`` when given."""
        history = list(self._history.get(entity_type, []))
        return history[-limit:] if limit else history

    # -------------------------------------------------------------------------
    # Performance
    # -------------------------------------------------------------------------

    def calculate_performance_metrics(
        self,
        entity_type: str,
        window: int | None = None,
    ) -> PerformanceMetrics:
        """
        Rolling performance over the last ``window`` snapshots.

        Raises:
            TrackingError: If fewer than two snapshots are available.
        """
        size = window or self._config.performance_window_size
        snapshots = self._history.get(entity_type, [])[-size:]
        if len(snapshots) < 2:
            raise TrackingError(
                f"Need at least 2 snapshots to compute metrics for '{entity_type}', "
                f"have {len(snapshots)}"
            )

        throughput = [s.records_per_second for s in snapshots]
        memory = [s.memory_usage_mb for s in snapshots]
        batch_times = self._batch_durations.get(entity_type, [])[-size:]
        nonzero = [t for t in throughput if t > 0]

        throughput_average = _mean(throughput)
        memory_average = _mean(memory)
        cpu_efficiency = min(1.0, throughput_average / CPU_EFFICIENCY_BASELINE)
        memory_efficiency = (
            min(1.0, throughput_average / memory_average) if memory_average > 0 else 0.0
        )

        return PerformanceMetrics(
            entity_type=entity_type,
            window_size=len(snapshots),
            throughput_current=throughput[-1],
            throughput_average=round(throughput_average, 2),
            throughput_peak=max(throughput),
            throughput_minimum=min(nonzero) if nonzero else 0.0,
            memory_current_mb=memory[-1],
            memory_average_mb=round(memory_average, 2),
            memory_peak_mb=max(memory),
            batch_time_average_ms=round(_mean(batch_times), 2),
            batch_time_fastest_ms=min(batch_times) if batch_times else 0.0,
            batch_time_slowest_ms=max(batch_times) if batch_times else 0.0,
            batch_time_stddev_ms=round(_stddev(batch_times), 2),
            cpu_efficiency=round(cpu_efficiency, 4),
            memory_efficiency=round(memory_efficiency, 4),
            overall_score=round((cpu_efficiency + memory_efficiency) / 2 * 100),
        )

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    def _check_alerts(self, snapshot: ProgressSnapshot, previous: ProgressSnapshot) -> None:
        thresholds = self._config.alert_thresholds
        rps = snapshot.records_per_second
        if 0 < rps < thresholds.low_throughput:
            self._raise_alert(
                AlertType.LOW_THROUGHPUT,
                AlertSeverity.WARNING,
                snapshot.entity_type,
                f"Low throughput: {rps} records/sec (floor {thresholds.low_throughput})",
                threshold=thresholds.low_throughput,
                current_value=rps,
            )

        if snapshot.memory_usage_mb > thresholds.high_memory_mb:
            self._raise_alert(
                AlertType.HIGH_MEMORY,
                AlertSeverity.WARNING,
                snapshot.entity_type,
                f"High memory usage: {snapshot.memory_usage_mb}MB",
                threshold=thresholds.high_memory_mb,
                current_value=snapshot.memory_usage_mb,
            )

        if snapshot.records_processed == previous.records_processed:
            self._check_stalled(snapshot.entity_type, snapshot.timestamp)

        self._check_eta_deviation(snapshot)

    def _check_stalled(self, entity_type: str, now: datetime) -> None:
        current = self.get_current_progress(entity_type)
        if current is None or current.status is not ProgressStatus.RUNNING:
            return
        idle = now - self._last_progress_at.get(entity_type, now)
        window = timedelta(minutes=self._config.alert_thresholds.stalled_minutes)
        if idle > window:
            minutes = round(idle.total_seconds() / 60)
            self._raise_alert(
                AlertType.STALLED_PROGRESS,
                AlertSeverity.ERROR,
                entity_type,
                f"No progress for {minutes} minutes",
                threshold=self._config.alert_thresholds.stalled_minutes,
                current_value=float(minutes),
            )

    def check_stalled(self) -> None:
        """Evaluate the stall rule for every running entity."""
        if not self._config.enable_alerts:
            return
        now = self._clock()
        for entity_type in list(self._history):
            self._check_stalled(entity_type, now)

    def _check_eta_deviation(self, snapshot: ProgressSnapshot) -> None:
        history = self._history[snapshot.entity_type]
        if snapshot.estimated_completion_time is None or len(history) < ETA_COMPARISON_MIN_HISTORY:
            return
        previous_eta = history[-3].estimated_completion_time
        if previous_eta is None:
            return
        drift = abs((snapshot.estimated_completion_time - previous_eta).total_seconds()) / 60
        if drift > self._config.eta_deviation_minutes:
            self._raise_alert(
                AlertType.ETA_DEVIATION,
                AlertSeverity.INFO,
                snapshot.entity_type,
                f"ETA changed by {round(drift)} minutes",
                threshold=self._config.eta_deviation_minutes,
                current_value=round(drift, 2),
            )

    def _raise_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        entity_type: str,
        message: str,
        *,
        threshold: float | None = None,
        current_value: float | None = None,
    ) -> Alert | None:
        now = self._clock()
        dedup = timedelta(seconds=self._config.alert_dedup_seconds)
        for existing in self._alerts:
            if (
                not existing.resolved
                and existing.alert_type is alert_type
                and existing.entity_type == entity_type
                and now - existing.timestamp < dedup
            ):
                return None

        alert = Alert(
            alert_id=new_id(),
            alert_type=alert_type,
            severity=severity,
            entity_type=entity_type,
            message=message,
            timestamp=now,
            threshold=threshold,
            current_value=current_value,
        )
        self._alerts.append(alert)
        logger.warning(
            "Alert %s for %s: %s",
            alert_type.value,
            entity_type,
            message,
            extra={
                "entity_type": entity_type,
                "alert_id": alert.alert_id,
                "alert_type": alert_type.value,
                "severity": severity.value,
            },
        )
        self._emit(ProgressUpdate("alert", entity_type, alert, now))
        return alert

    def get_active_alerts(self, entity_type: str | None = None) -> list[Alert]:
        return [
            alert
            for alert in self._alerts
            if not alert.resolved and (entity_type is None or alert.entity_type == entity_type)
        ]

    def get_alerts(self) -> list[Alert]:
        """All retained alerts, resolved ones included."""
        return list(self._alerts)

    def resolve_alert(self, alert_id: str) -> bool:
        """
        Mark an alert resolved.

        Returns:
            False when no unresolved alert has this id.
        """
        for alert in self._alerts:
            if alert.alert_id == alert_id and not alert.resolved:
                alert.resolve(self._clock())
                logger.info("Resolved alert %s", alert_id, extra={"alert_id": alert_id})
                return True
        return False

    # -------------------------------------------------------------------------
    # Session view
    # -------------------------------------------------------------------------

    def get_session_status(self, entity_types: list[str] | None = None) -> SessionStatus:
        """Aggregate the latest snapshot of each entity."""
        names = entity_types if entity_types is not None else list(self._history)
        latest = {
            name: snapshot
            for name in names
            if (snapshot := self.get_current_progress(name)) is not None
        }
        total = sum(s.records_total for s in latest.values())
        processed = sum(s.records_processed for s in latest.values())
        etas = [
            s.estimated_completion_time
            for s in latest.values()
            if s.status.is_active and s.estimated_completion_time is not None
        ]
        return SessionStatus(
            entities=latest,
            total_records=total,
            records_processed=processed,
            overall_percentage=round(processed / total * 100, 2) if total else 0.0,
            estimated_completion_time=max(etas) if etas else None,
            completed_entities=sum(
                1 for s in latest.values() if s.status is ProgressStatus.COMPLETED
            ),
            active_entities=sum(1 for s in latest.values() if s.status.is_active),
            active_alerts=tuple(
                a
                for a in self.get_active_alerts()
                if entity_types is None or a.entity_type in names
            ),
        )

    def generate_progress_report(self, entity_types: list[str] | None = None) -> ProgressReport:
        session = self.get_session_status(entity_types)
        performance: dict[str, PerformanceMetrics] = {}
        for name in session.entities:
            with contextlib.suppress(TrackingError):
                performance[name] = self.calculate_performance_metrics(name)

        report = ProgressReport(
            report_id=new_id(),
            generated_at=self._clock(),
            session=session,
            performance=performance,
            recommendations=tuple(self._recommendations(session)),
        )
        logger.info(
            "Progress report %s: %.2f%% across %d entities",
            report.report_id,
            session.overall_percentage,
            len(session.entities),
            extra={"report_id": report.report_id, "active_alerts": len(session.active_alerts)},
        )
        return report

    def _recommendations(self, session: SessionStatus) -> list[str]:
        recommendations: list[str] = []
        if session.active_alerts:
            recommendations.append(f"{len(session.active_alerts)} active alert(s) need attention")

        if session.entities and session.active_entities == 0 and session.overall_percentage == 100:
            recommendations.append("All entities completed")
        elif session.overall_percentage < 25:
            recommendations.append("Migration in early stages; watch throughput and memory")
        elif session.overall_percentage > 90:
            recommendations.append("Migration nearly complete; prepare final validation")

        floor = self._config.alert_thresholds.low_throughput
        slow = [
            name
            for name, s in session.entities.items()
            if s.status.is_active and 0 < s.records_per_second < floor
        ]
        if slow:
            recommendations.append(f"Low throughput for: {', '.join(slow)}")
        stalled = [
            name
            for name, s in session.entities.items()
            if s.status is ProgressStatus.RUNNING and s.records_per_second == 0
        ]
        if stalled:
            recommendations.append(f"Stalled entities: {', '.join(stalled)}")

        if not recommendations:
            recommendations.append("Progress normal")
        return recommendations

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def subscribe(self, callback: ProgressCallback) -> Subscription:
        """Register a callback invoked with every update."""
        self._callbacks.append(callback)
        return Subscription(self, callback)

    async def stream_updates(self, entity_type: str | None = None) -> AsyncIterator[ProgressUpdate]:
        """
        Stream updates as an async iterator until :meth:`stop` is called.

        Args:
            entity_type: Only yield updates for this entity.

        Example:
            >>> async for update in tracker.stream_updates("orders"):
            ...     print(update.update_type, update.data)
        """
        queue: asyncio.Queue[ProgressUpdate | None] = asyncio.Queue(maxsize=_STREAM_QUEUE_SIZE)
        self._queues.append(queue)
        try:
            while True:
                update = await queue.get()
                if update is None:
                    return
                if entity_type is None or update.entity_type == entity_type:
                    yield update
        finally:
            self._queues.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._queues)

    def _emit(self, update: ProgressUpdate) -> None:
        for callback in list(self._callbacks):
            try:
                callback(update)
            except Exception:
                logger.exception(
                    "Progress subscriber failed for %s",
                    update.entity_type,
                    extra={"entity_type": update.entity_type},
                )
        for queue in self._queues:
            with contextlib.suppress(asyncio.QueueFull):
                queue.put_nowait(update)

    # -------------------------------------------------------------------------
    # Retention and lifecycle
    # -------------------------------------------------------------------------

    def _prune_snapshots(self, entity_type: str, now: datetime) -> None:
        cutoff = now - timedelta(hours=self._config.history_retention_hours)
        history = self._history[entity_type]
        kept = [s for s in history[:-1] if s.timestamp > cutoff]
        kept.append(history[-1])
        self._history[entity_type] = kept

    def cleanup_history(self, now: datetime | None = None) -> int:
        """
        Drop snapshots and resolved alerts older than the retention window.

        The latest snapshot of each entity and every unresolved alert are
        kept regardless of age.

        Returns:
            Number of snapshots and alerts removed.
        """
        now = now or self._clock()
        cutoff = now - timedelta(hours=self._config.history_retention_hours)
        removed = 0
        for entity_type, history in self._history.items():
            before = len(history)
            self._prune_snapshots(entity_type, now)
            removed += before - len(self._history[entity_type])

        before = len(self._alerts)
        self._alerts = [a for a in self._alerts if not a.resolved or a.timestamp > cutoff]
        removed += before - len(self._alerts)
        if removed:
            logger.debug("Pruned %d history entries older than %s", removed, cutoff.isoformat())
        return removed

    def reset(self, entity_type: str | None = None) -> None:
        """Forget one entity, or everything when no entity is given."""
        if entity_type is None:
            self._history.clear()
            self._start_times.clear()
            self._totals.clear()
            self._batch_durations.clear()
            self._last_progress_at.clear()
            self._alerts.clear()
            return
        for store in (
            self._history,
            self._start_times,
            self._totals,
            self._batch_durations,
            self._last_progress_at,
        ):
            store.pop(entity_type, None)

    @property
    def is_running(self) -> bool:
        return self._maintenance_task is not None and not self._maintenance_task.done()

    def start(self) -> None:
        """Start the background loop that checks stalls and prunes history."""
        if self.is_running:
            return
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def stop(self) -> None:
        """Stop the background loop and end every open update stream."""
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._maintenance_task
            self._maintenance_task = None
        for queue in list(self._queues):
            while True:
                try:
                    queue.put_nowait(None)
                    break
                except asyncio.QueueFull:
                    queue.get_nowait()
        logger.info("Progress tracker stopped")

    async def _maintenance_loop(self) -> None:
        interval = self._config.update_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.check_stalled()
            self.cleanup_history()


__all__ = [
    "ProgressTracker",
    "ProgressUpdate",
    "ProgressCallback",
    "Subscription",
    "SessionStatus",
    "ProgressReport",
    "process_memory_mb",
]
