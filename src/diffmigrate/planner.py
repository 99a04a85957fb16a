"""
Dependency-safe, checkpointed execution of migration tasks.

The planner orders entity types into dependency levels, runs the entities of
a level concurrently (bounded by ``parallel_entity_limit``) and processes
each entity in fixed-size batches, strictly in order. Progress is persisted
as checkpoints so a paused, halted or crashed run can resume from the last
committed batch, in this process or another one.

Control flow:
    - Levels run strictly one after another. Any entity of a level that does
      not complete blocks every later level; those entities are skipped.
    - ``pause()`` takes effect at the next batch boundary of every in-flight
      entity, each of which writes a checkpoint before parking.
    - ``cancel()`` stops at the next boundary without a checkpoint guarantee
      and flags the run for re-validation.

Example:
    >>> planner = ExecutionPlanner(source, destination, migrator, ExecutionConfig())
    >>> tasks = planner.plan_from_detection(results)
    >>> result = await planner.execute_migration_tasks(tasks)
    >>> result.overall_status
    <RunStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from diffmigrate.classifier import ErrorClassifier
from diffmigrate.config import ExecutionConfig
from diffmigrate.entities import ENTITY_DEPENDENCIES, EntityMapping, get_entity_mapping
from diffmigrate.exceptions import (
    CheckpointNotFoundError,
    CheckpointNotResumableError,
    DependencyCycleError,
    ExecutionStateError,
    RunNotFoundError,
)
from diffmigrate.metrics import (
    ActiveRunsTracker,
    MetricSnapshot,
    MigrationMetrics,
    get_migration_metrics,
    release_migration_metrics,
)
from diffmigrate.models import (
    BatchInfo,
    BatchResult,
    BatchStatus,
    ChangeType,
    Checkpoint,
    DetectionResult,
    EntityMigrationStatus,
    EntityStatus,
    ErrorContext,
    ExecutionResult,
    MigrationError,
    MigrationRun,
    MigrationTask,
    ProgressStatus,
    RecoveryInfo,
    RunStatus,
    TaskPriority,
    ValidationResult,
    new_id,
)
from diffmigrate.observability import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_TYPE,
    ATTR_LEVEL,
    ATTR_RECORD_COUNT,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from diffmigrate.repositories import (
    CheckpointRepository,
    ErrorLogRepository,
    InMemoryCheckpointRepository,
    InMemoryErrorLogRepository,
    InMemoryRunRepository,
    RunRepository,
)
from diffmigrate.retry import CircuitBreakerConfig, RetryController
from diffmigrate.stores.base import DestinationStore, RecordMigrator, SourceStore
from diffmigrate.tracker import ProgressTracker, process_memory_mb

logger = logging.getLogger(__name__)

ESTIMATED_RECORDS_PER_SECOND = 500.0
"""Planning estimate used for ``MigrationTask.estimated_duration_ms``."""

_MIGRATED_CHANGES = (ChangeType.NEW, ChangeType.MODIFIED)

MAX_METRIC_SNAPSHOTS = 100
"""Finished runs whose metric snapshot stays available through ``metrics_snapshot``."""


# =============================================================================
# Dependency resolution
# =============================================================================


@dataclass(frozen=True)
class DependencyGraph:
    """
    Execution levels for a set of tasks.

    Attributes:
        levels: Entity types per level; every entity's dependencies appear
            in a strictly earlier level (except for cycle members).
        cycles: Entities that could not be ordered and were flushed as the
            final level.
        dependencies: Effective dependencies per entity, restricted to the
            entities being planned.
    """

    levels: tuple[tuple[str, ...], ...]
    cycles: tuple[str, ...] = ()
    dependencies: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def entities(self) -> list[str]:
        """Entity types in execution order."""
        return [entity for level in self.levels for entity in level]

    def level_of(self, entity_type: str) -> int:
        for index, level in enumerate(self.levels):
            if entity_type in level:
                return index
        raise KeyError(entity_type)


def build_dependency_graph(
    tasks: Sequence[MigrationTask],
    default_dependencies: Mapping[str, Sequence[str]] = ENTITY_DEPENDENCIES,
    strict: bool = False,
) -> DependencyGraph:
    """
    Order tasks into dependency levels.

    Level by level, every entity whose dependencies are all scheduled joins
    the next level. Dependencies declared on a task override the defaults,
    and dependencies on entities that are not being planned are ignored.
    Within a level entities are ordered by priority, then name.

    When no entity qualifies but some remain, they form a cycle: a warning
    is logged and they are flushed together as a final level, unless
    ``strict`` is set.

    Raises:
        DependencyCycleError: If a cycle exists and ``strict`` is True.
        ValueError: If two tasks target the same entity type.
    """
    by_name: dict[str, MigrationTask] = {}
    for task in tasks:
        if task.entity_type in by_name:
            raise ValueError(f"Duplicate task for entity type '{task.entity_type}'")
        by_name[task.entity_type] = task

    dependencies: dict[str, tuple[str, ...]] = {}
    for name, task in by_name.items():
        declared = task.dependencies or tuple(default_dependencies.get(name, ()))
        dependencies[name] = tuple(d for d in dict.fromkeys(declared) if d in by_name)

    def order(names: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted(names, key=lambda n: (by_name[n].priority.rank, n)))

    levels: list[tuple[str, ...]] = []
    scheduled: set[str] = set()
    remaining = set(by_name)
    while remaining:
        ready = [n for n in remaining if all(d in scheduled for d in dependencies[n])]
        if not ready:
            break
        levels.append(order(ready))
        scheduled.update(ready)
        remaining.difference_update(ready)

    cycles: tuple[str, ...] = ()
    if remaining:
        if strict:
            raise DependencyCycleError(sorted(remaining))
        cycles = tuple(sorted(remaining))
        logger.warning(
            "Dependency cycle between %s; running them as a final best-effort level",
            ", ".join(cycles),
            extra={"entities": list(cycles)},
        )
        levels.append(order(remaining))

    return DependencyGraph(levels=tuple(levels), cycles=cycles, dependencies=dependencies)


# =============================================================================
# Run state
# =============================================================================


class _RunState:
    """In-process control state of one executing run."""

    def __init__(self, run_id: str, metrics: MigrationMetrics) -> None:
        self.run_id = run_id
        self.metrics = metrics
        self.status = RunStatus.RUNNING
        self.opened = False
        self.gate = asyncio.Event()
        self.gate.set()
        self.changed = asyncio.Event()
        self.pause_requested = False
        self.cancel_requested = False
        self.in_flight: set[str] = set()
        self.parked: set[str] = set()
        self.checkpoint_ids: list[str] = []
        self.batch_results: list[BatchResult] = []
        self.errors: list[MigrationError] = []
        self.validations: list[ValidationResult] = []
        self.halt_reasons: dict[str, str] = {}

    @property
    def last_checkpoint_id(self) -> str | None:
        return self.checkpoint_ids[-1] if self.checkpoint_ids else None

    def all_parked(self) -> bool:
        return self.in_flight <= self.parked


@dataclass
class _EntityRun:
    """Per-entity execution cursor; counters cover fully accounted batches."""

    task: MigrationTask
    mapping: EntityMapping
    status: EntityMigrationStatus
    batch_size: int
    position: int = 0
    consumed: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)
    last_id: str | None = None
    checkpoint_position: int | None = None
    tracking_offset: int = 0
    restored_records: int = 0

    @property
    def entity_type(self) -> str:
        return self.task.entity_type

    @property
    def total_batches(self) -> int:
        return self.task.batch_count(self.batch_size)


# =============================================================================
# Planner
# =============================================================================


class ExecutionPlanner:
    """
    Plans and executes migration tasks with checkpoints and recovery.

    Args:
        source: Source store, used by validation.
        destination: Destination store, used by validation.
        migrator: Writes records into the destination.
        config: Execution settings.
        checkpoints: Checkpoint persistence.
        runs: Run and entity status persistence.
        errors: Error log persistence.
        tracker: Progress tracker notified of every state change.
        retry_controller: Retry policy and circuit breakers; built from the
            config when omitted.
        mappings: Entity registry override.
        default_dependencies: Dependency graph used when a task declares none.
        tracer: Optional custom Tracer.
        enable_tracing: Whether to create an OpenTelemetry tracer.
        enable_metrics: Whether to record OpenTelemetry metrics.
        memory_probe: Returns process memory in MB.
        monotonic: Clock used for per-entity timeouts.
    """

    def __init__(
        self,
        source: SourceStore,
        destination: DestinationStore,
        migrator: RecordMigrator,
        config: ExecutionConfig | None = None,
        checkpoints: CheckpointRepository | None = None,
        runs: RunRepository | None = None,
        errors: ErrorLogRepository | None = None,
        tracker: ProgressTracker | None = None,
        retry_controller: RetryController | None = None,
        *,
        mappings: Mapping[str, EntityMapping] | None = None,
        default_dependencies: Mapping[str, Sequence[str]] = ENTITY_DEPENDENCIES,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        enable_metrics: bool = True,
        memory_probe: Callable[[], float] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._source = source
        self._destination = destination
        self._migrator = migrator
        self._config = config or ExecutionConfig()
        self._checkpoints = checkpoints or InMemoryCheckpointRepository()
        self._runs = runs or InMemoryRunRepository()
        self._error_log = errors or InMemoryErrorLogRepository()
        self._tracker = tracker
        self._retry = retry_controller or RetryController(
            ErrorClassifier(self._config.max_retry_attempts),
            self._config.retry_config(),
            CircuitBreakerConfig(
                failure_threshold=self._config.circuit_failure_threshold,
                timeout_seconds=self._config.circuit_timeout_seconds,
            ),
        )
        self._mappings = mappings
        self._default_dependencies = default_dependencies
        self._enable_metrics = enable_metrics
        self._memory_probe = memory_probe or process_memory_mb
        self._monotonic = monotonic
        self._states: dict[str, _RunState] = {}
        self._metric_snapshots: dict[str, MetricSnapshot] = {}

    @property
    def config(self) -> ExecutionConfig:
        return self._config

    @property
    def retry_controller(self) -> RetryController:
        return self._retry

    @property
    def checkpoints(self) -> CheckpointRepository:
        return self._checkpoints

    @property
    def runs(self) -> RunRepository:
        return self._runs

    @property
    def error_log(self) -> ErrorLogRepository:
        return self._error_log

    def metrics_snapshot(self, run_id: str) -> MetricSnapshot | None:
        """Metric values of one of the last ``MAX_METRIC_SNAPSHOTS`` executions here."""
        return self._metric_snapshots.get(run_id)

    def _keep_metric_snapshot(self, run_id: str, snapshot: MetricSnapshot) -> None:
        self._metric_snapshots.pop(run_id, None)
        self._metric_snapshots[run_id] = snapshot
        while len(self._metric_snapshots) > MAX_METRIC_SNAPSHOTS:
            del self._metric_snapshots[next(iter(self._metric_snapshots))]

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def build_dependency_graph(self, tasks: Sequence[MigrationTask]) -> DependencyGraph:
        return build_dependency_graph(
            tasks, self._default_dependencies, strict=self._config.strict_cycles
        )

    def plan_from_detection(
        self,
        results: Mapping[str, DetectionResult] | Iterable[DetectionResult],
    ) -> list[MigrationTask]:
        """
        Turn detection results into migration tasks.

        New and modified records are migrated in detection order. Deleted
        records are reported in the task metadata but never applied.
        Entities without changes get no task.
        """
        items = results.values() if isinstance(results, Mapping) else results
        tasks: list[MigrationTask] = []
        for result in items:
            ids = tuple(result.record_ids(*_MIGRATED_CHANGES))
            if not ids:
                continue
            has_dependencies = bool(self._default_dependencies.get(result.entity_type))
            tasks.append(
                MigrationTask(
                    entity_type=result.entity_type,
                    record_ids=ids,
                    priority=TaskPriority.MEDIUM if has_dependencies else TaskPriority.HIGH,
                    estimated_duration_ms=round(len(ids) / ESTIMATED_RECORDS_PER_SECOND * 1000),
                    metadata={
                        "new_records": result.new_records,
                        "modified_records": result.modified_records,
                        "deleted_records": result.deleted_records,
                        "since": result.since.isoformat(),
                    },
                )
            )
        return tasks

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute_migration_tasks(
        self,
        tasks: Sequence[MigrationTask],
        run_id: str | None = None,
    ) -> ExecutionResult:
        """
        Execute tasks level by level.

        With the id of an existing run, every entity resumes from its latest
        resumable checkpoint.

        Args:
            tasks: One task per entity type.
            run_id: Run to create, or to resume.

        Returns:
            The execution result. Store failures never propagate; they are
            classified and reported in ``errors`` and ``recovery``.

        Raises:
            DependencyCycleError: On a cycle with ``strict_cycles`` enabled.
            ExecutionStateError: If the run is already executing here or
                already completed.
        """
        graph = self.build_dependency_graph(tasks)
        run_id = run_id or new_id()
        if run_id in self._states:
            raise ExecutionStateError("execute", self._states[run_id].status.value, run_id)

        by_name = {task.entity_type: task for task in tasks}
        mappings = {name: get_entity_mapping(name, self._mappings) for name in graph.entities}
        started_at = datetime.now(UTC)

        metrics = get_migration_metrics(run_id, self._enable_metrics)
        state = _RunState(run_id, metrics)
        self._states[run_id] = state
        ActiveRunsTracker.get_instance().register_run(run_id)

        try:
            await self._open_run(run_id, graph, tasks, started_at)
            statuses: dict[str, EntityMigrationStatus] = {}
            order = 0
            for level_index, level in enumerate(graph.levels):
                for name in level:
                    statuses[name] = EntityMigrationStatus(
                        migration_run_id=run_id,
                        entity_type=name,
                        dependency_order=order,
                        dependency_level=level_index,
                        records_total=by_name[name].total_records,
                    )
                    order += 1
                    await self._runs.save_entity_status(statuses[name])
            state.opened = True

            logger.info(
                "Starting run %s: %d entities in %d levels",
                run_id,
                len(statuses),
                len(graph.levels),
                extra={"run_id": run_id, "levels": [list(level) for level in graph.levels]},
            )

            with self._tracer.span(
                "diffmigrate.planner.execute_migration_tasks",
                {ATTR_RUN_ID: run_id, ATTR_ENTITY_COUNT: len(statuses)},
            ):
                blocked_by: str | None = None
                for level_index, level in enumerate(graph.levels):
                    if blocked_by is None and not await self._level_boundary(state):
                        blocked_by = "cancelled"
                    if blocked_by is not None:
                        await self._skip(
                            [statuses[name] for name in level], blocked_by, state.cancel_requested
                        )
                        continue

                    await self._execute_level(
                        state, level_index, level, by_name, mappings, statuses, metrics
                    )
                    unfinished = [
                        name
                        for name in level
                        if statuses[name].status is not EntityStatus.COMPLETED
                    ]
                    if unfinished:
                        blocked_by = "cancelled" if state.cancel_requested else unfinished[0]
                        logger.error(
                            "Level %d did not complete (%s); later levels will not run",
                            level_index,
                            ", ".join(unfinished),
                            extra={"run_id": run_id, "level": level_index},
                        )

            return await self._finish(state, graph, statuses, started_at, metrics)
        finally:
            self._states.pop(run_id, None)
            ActiveRunsTracker.get_instance().unregister_run(run_id)
            self._keep_metric_snapshot(run_id, metrics.get_snapshot())
            release_migration_metrics(run_id)

    async def _open_run(
        self,
        run_id: str,
        graph: DependencyGraph,
        tasks: Sequence[MigrationTask],
        started_at: datetime,
    ) -> None:
        existing = await self._runs.get_run(run_id)
        if existing is None:
            await self._runs.create_run(
                MigrationRun(
                    run_id=run_id,
                    status=RunStatus.RUNNING,
                    entity_types=graph.entities,
                    config={
                        "execution": self._config.model_dump(),
                        "plan": [task.to_dict() for task in tasks],
                    },
                    started_at=started_at,
                )
            )
            return
        if existing.status is RunStatus.COMPLETED:
            raise ExecutionStateError("execute", existing.status.value, run_id)
        logger.info(
            "Resuming run %s (was %s)",
            run_id,
            existing.status.value,
            extra={"run_id": run_id},
        )
        await self._runs.update_run_status(run_id, RunStatus.RUNNING)

    async def _level_boundary(self, state: _RunState) -> bool:
        if state.pause_requested:
            await state.gate.wait()
        return not state.cancel_requested

    async def _skip(
        self,
        statuses: Iterable[EntityMigrationStatus],
        blocked_by: str,
        cancelled: bool,
    ) -> None:
        reason = (
            "Run cancelled before this entity started"
            if cancelled
            else f"Blocked: dependency level did not complete ({blocked_by})"
        )
        for status in statuses:
            status.status = EntityStatus.SKIPPED
            status.error_message = reason
            await self._runs.save_entity_status(status)
            logger.info(
                "Skipping %s: %s",
                status.entity_type,
                reason,
                extra={"run_id": status.migration_run_id, "entity_type": status.entity_type},
            )

    async def _execute_level(
        self,
        state: _RunState,
        level_index: int,
        level: Sequence[str],
        tasks: Mapping[str, MigrationTask],
        mappings: Mapping[str, EntityMapping],
        statuses: Mapping[str, EntityMigrationStatus],
        metrics: MigrationMetrics,
    ) -> None:
        limit = self._config.parallel_entity_limit
        with self._tracer.span(
            "diffmigrate.planner.execute_level",
            {ATTR_RUN_ID: state.run_id, ATTR_LEVEL: level_index, ATTR_ENTITY_COUNT: len(level)},
        ):
            logger.info(
                "Level %d: %s",
                level_index,
                ", ".join(level),
                extra={"run_id": state.run_id, "level": level_index},
            )
            for start in range(0, len(level), limit):
                chunk = level[start : start + limit]
                await asyncio.gather(
                    *(
                        self._run_entity(
                            state, tasks[name], mappings[name], statuses[name], metrics
                        )
                        for name in chunk
                    )
                )

    async def _run_entity(
        self,
        state: _RunState,
        task: MigrationTask,
        mapping: EntityMapping,
        status: EntityMigrationStatus,
        metrics: MigrationMetrics,
    ) -> None:
        state.in_flight.add(task.entity_type)
        metrics.entity_started(task.entity_type)
        try:
            await self._execute_entity(state, task, mapping, status, metrics)
        except Exception as exc:
            context = ErrorContext(entity_type=task.entity_type, operation="execute_entity")
            error = self._retry.classifier.handle(exc, context)
            logger.exception(
                "Entity %s aborted by an unexpected error",
                task.entity_type,
                extra={"run_id": state.run_id, "entity_type": task.entity_type},
            )
            await self._record_errors(state, metrics, [error])
            state.halt_reasons[task.entity_type] = error.error_type.value
            status.status = EntityStatus.FAILED
            status.error_message = error.message
            status.completed_at = datetime.now(UTC)
            await self._runs.save_entity_status(status)
            self._notify_status(task.entity_type, ProgressStatus.ERROR)
        finally:
            state.in_flight.discard(task.entity_type)
            state.changed.set()
            metrics.entity_finished(task.entity_type)

    async def _execute_entity(
        self,
        state: _RunState,
        task: MigrationTask,
        mapping: EntityMapping,
        status: EntityMigrationStatus,
        metrics: MigrationMetrics,
    ) -> None:
        cursor = _EntityRun(task, mapping, status, self._config.batch_size)
        await self._restore(state, cursor)

        status.status = EntityStatus.RUNNING
        status.started_at = status.started_at or datetime.now(UTC)
        await self._runs.save_entity_status(status)
        self._notify_start(cursor)

        deadline = self._monotonic() + self._config.timeout_seconds
        with self._tracer.span(
            "diffmigrate.planner.execute_entity",
            {
                ATTR_RUN_ID: state.run_id,
                ATTR_ENTITY_TYPE: task.entity_type,
                ATTR_RECORD_COUNT: task.total_records,
            },
        ):
            while cursor.position < cursor.total_batches:
                if not await self._batch_boundary(state, cursor):
                    await self._stop_entity(cursor, "Run cancelled")
                    return

                index = cursor.position
                ids = task.record_ids[index * cursor.batch_size : (index + 1) * cursor.batch_size]
                result = await self._execute_batch(state, cursor, index, ids, metrics)

                status.records_processed += result.records_processed
                status.records_failed += result.records_failed

                if not result.can_continue:
                    checkpoint_id = await self._checkpoint(state, cursor, "halt")
                    state.batch_results.append(replace(result, checkpoint_id=checkpoint_id))
                    await self._fail_entity(state, cursor, result)
                    return

                cursor.position += 1
                cursor.consumed += len(ids)
                cursor.succeeded += result.records_processed
                cursor.failed += result.records_failed
                cursor.failed_ids.extend(result.failed_record_ids)
                cursor.last_id = ids[-1]

                checkpoint_id = None
                if cursor.position % self._config.checkpoint_interval == 0:
                    checkpoint_id = await self._checkpoint(state, cursor, "interval")
                state.batch_results.append(replace(result, checkpoint_id=checkpoint_id))
                await self._runs.save_entity_status(status)
                self._notify_progress(cursor, result)

                if (
                    cursor.position < cursor.total_batches
                    and self._monotonic() >= deadline
                ):
                    await self._checkpoint(state, cursor, "timeout")
                    await self._stop_entity(
                        cursor,
                        f"Timed out after {self._config.timeout_ms}ms; "
                        f"resume from batch {cursor.position}",
                    )
                    state.halt_reasons[task.entity_type] = "timeout"
                    return

            if cursor.checkpoint_position != cursor.position:
                await self._checkpoint(state, cursor, "complete")
            await self._complete_entity(state, cursor)

    async def _restore(self, state: _RunState, cursor: _EntityRun) -> None:
        latest = await self._checkpoints.get_latest(state.run_id, cursor.entity_type)
        if latest is None:
            return
        if not latest.verify_integrity():
            raise CheckpointNotResumableError(
                latest.checkpoint_id, "checksum mismatch", state.run_id
            )
        cursor.batch_size = latest.recorded_batch_size(cursor.batch_size)
        cursor.position = latest.next_batch_index(cursor.batch_size)
        cursor.consumed = min(cursor.position * cursor.batch_size, cursor.task.total_records)
        cursor.restored_records = latest.records_processed
        data = latest.checkpoint_data
        cursor.failed = int(data.get("records_failed", 0))
        cursor.succeeded = int(
            data.get("records_succeeded", latest.records_processed - cursor.failed)
        )
        cursor.failed_ids = list(data.get("failed_record_ids", ()))
        cursor.last_id = latest.last_processed_id
        cursor.checkpoint_position = cursor.position
        cursor.tracking_offset = cursor.consumed
        cursor.status.records_processed = cursor.succeeded
        cursor.status.records_failed = cursor.failed
        cursor.status.last_checkpoint_id = latest.checkpoint_id
        logger.info(
            "Resuming %s from batch %d (%d records already processed)",
            cursor.entity_type,
            cursor.position,
            cursor.consumed,
            extra={
                "run_id": state.run_id,
                "entity_type": cursor.entity_type,
                "checkpoint_id": latest.checkpoint_id,
            },
        )

    async def _batch_boundary(self, state: _RunState, cursor: _EntityRun) -> bool:
        """Honor pause and cancel requests; returns False when the entity must stop."""
        if state.cancel_requested:
            return False
        if not state.pause_requested:
            return True

        await self._checkpoint(state, cursor, "pause")
        cursor.status.status = EntityStatus.PENDING
        await self._runs.save_entity_status(cursor.status)
        self._notify_status(cursor.entity_type, ProgressStatus.PAUSED)
        state.parked.add(cursor.entity_type)
        state.changed.set()
        logger.info(
            "Paused %s at batch %d",
            cursor.entity_type,
            cursor.position,
            extra={"run_id": state.run_id, "entity_type": cursor.entity_type},
        )

        await state.gate.wait()
        state.parked.discard(cursor.entity_type)
        if state.cancel_requested:
            return False
        cursor.status.status = EntityStatus.RUNNING
        await self._runs.save_entity_status(cursor.status)
        self._notify_status(cursor.entity_type, ProgressStatus.RUNNING)
        return True

    async def _execute_batch(
        self,
        state: _RunState,
        cursor: _EntityRun,
        index: int,
        ids: Sequence[str],
        metrics: MigrationMetrics,
    ) -> BatchResult:
        entity_type = cursor.entity_type
        context = ErrorContext(
            entity_type=entity_type,
            batch_number=index,
            operation=f"{entity_type}.migrate_batch",
        )
        with (
            self._tracer.span(
                "diffmigrate.planner.execute_batch",
                {
                    ATTR_RUN_ID: state.run_id,
                    ATTR_ENTITY_TYPE: entity_type,
                    ATTR_BATCH_NUMBER: index,
                    ATTR_BATCH_SIZE: len(ids),
                },
            ),
            metrics.time_batch(entity_type) as timer,
        ):
            outcome = await self._retry.execute_with_retry(
                lambda: self._migrator.migrate_batch(cursor.mapping, ids),
                context,
                run_id=state.run_id,
            )
            for _ in range(max(outcome.attempts - 1, 0)):
                metrics.record_retry(
                    entity_type, outcome.error.error_type.value if outcome.error else None
                )

            if outcome.success:
                processed, failed_ids, errors = len(ids), (), ()
                can_continue, halt_reason = True, None
            else:
                batch_error = outcome.error
                logger.warning(
                    "Batch %d of %s failed (%s); retrying record by record",
                    index,
                    entity_type,
                    batch_error.message if batch_error else "unknown error",
                    extra={"run_id": state.run_id, "entity_type": entity_type},
                )
                if batch_error is not None:
                    await self._record_errors(state, metrics, [batch_error])
                recovery = await self._retry.handle_batch_error(
                    ids,
                    lambda record_id: self._migrator.migrate_record(cursor.mapping, record_id),
                    replace(context, operation=f"{entity_type}.migrate_record"),
                    run_id=state.run_id,
                )
                await self._record_errors(state, metrics, recovery.errors)
                processed = len(recovery.successful)
                failed_ids = recovery.failed_record_ids
                errors = recovery.errors
                can_continue, halt_reason = recovery.can_continue, recovery.halt_reason

            status = BatchStatus.from_counts(processed, len(failed_ids))
            if status is BatchStatus.FAILED:
                can_continue = False
                halt_reason = halt_reason or "batch_failed"
            if halt_reason is not None:
                state.halt_reasons[entity_type] = halt_reason
            timer.processed = processed
            timer.failed = len(failed_ids)

        result = BatchResult(
            entity_type=entity_type,
            batch_number=index,
            status=status,
            records_processed=processed,
            records_failed=len(failed_ids),
            failed_record_ids=tuple(failed_ids),
            errors=tuple(errors),
            duration_ms=round(timer.duration_ms, 3),
            memory_usage_mb=self._memory_probe(),
            can_continue=can_continue,
        )
        logger.debug(
            "Batch %d of %s: %s (%d processed, %d failed)",
            index,
            entity_type,
            status.value,
            processed,
            len(failed_ids),
            extra={"run_id": state.run_id, "entity_type": entity_type},
        )
        return result

    async def _checkpoint(
        self,
        state: _RunState,
        cursor: _EntityRun,
        reason: str,
    ) -> str:
        """Write a checkpoint at the cursor, reusing the last one for interval/halt duplicates."""
        if (
            reason in ("halt", "complete")
            and cursor.checkpoint_position == cursor.position
            and cursor.status.last_checkpoint_id is not None
        ):
            return cursor.status.last_checkpoint_id

        # A re-run final partial batch must not move the recorded position back.
        recorded = max(cursor.consumed, cursor.restored_records)
        checkpoint = Checkpoint(
            checkpoint_id=new_id(),
            entity_type=cursor.entity_type,
            migration_run_id=state.run_id,
            last_processed_id=cursor.last_id,
            batch_position=cursor.position,
            records_processed=recorded,
            records_remaining=max(cursor.task.total_records - recorded, 0),
            checkpoint_data={
                "batch_size": cursor.batch_size,
                "reason": reason,
                "records_succeeded": cursor.succeeded,
                "records_failed": cursor.failed,
                "failed_record_ids": list(cursor.failed_ids),
                "memory_usage_mb": self._memory_probe(),
                "started_at": (
                    cursor.status.started_at.isoformat() if cursor.status.started_at else None
                ),
            },
        ).with_checksum()
        await self._checkpoints.create(checkpoint)
        await self._checkpoints.enforce_limit(
            state.run_id, cursor.entity_type, self._config.max_checkpoints_per_entity
        )
        cursor.checkpoint_position = cursor.position
        cursor.status.last_checkpoint_id = checkpoint.checkpoint_id
        await self._runs.save_entity_status(cursor.status)
        state.checkpoint_ids.append(checkpoint.checkpoint_id)
        state.metrics.record_checkpoint(cursor.entity_type, reason)
        logger.debug(
            "Checkpoint %s for %s at batch %d (%s)",
            checkpoint.checkpoint_id,
            cursor.entity_type,
            cursor.position,
            reason,
            extra={"run_id": state.run_id, "entity_type": cursor.entity_type},
        )
        return checkpoint.checkpoint_id

    async def _complete_entity(self, state: _RunState, cursor: _EntityRun) -> None:
        status = cursor.status
        status.status = EntityStatus.COMPLETED
        status.completed_at = datetime.now(UTC)
        status.records_processed = cursor.succeeded
        status.records_failed = cursor.failed
        await self._runs.save_entity_status(status)
        current = self._tracker.get_current_progress(cursor.entity_type) if self._tracker else None
        if current is not None and current.status is not ProgressStatus.COMPLETED:
            self._notify_status(cursor.entity_type, ProgressStatus.COMPLETED)
        logger.info(
            "Completed %s: %d records processed, %d failed",
            cursor.entity_type,
            status.records_processed,
            status.records_failed,
            extra={"run_id": state.run_id, "entity_type": cursor.entity_type},
        )
        if self._config.enable_validation and cursor.succeeded > 0:
            state.validations.append(await self._validate(state, cursor))

    async def _fail_entity(self, state: _RunState, cursor: _EntityRun, result: BatchResult) -> None:
        status = cursor.status
        reason = state.halt_reasons.get(cursor.entity_type, "batch_failed")
        status.status = EntityStatus.FAILED
        status.completed_at = datetime.now(UTC)
        status.error_message = f"Halted at batch {result.batch_number}: {reason}"
        await self._runs.save_entity_status(status)
        self._notify_status(cursor.entity_type, ProgressStatus.ERROR)
        logger.error(
            "Entity %s halted at batch %d (%s): %d processed, %d failed in batch",
            cursor.entity_type,
            result.batch_number,
            reason,
            result.records_processed,
            result.records_failed,
            extra={"run_id": state.run_id, "entity_type": cursor.entity_type},
        )

    async def _stop_entity(self, cursor: _EntityRun, reason: str) -> None:
        cursor.status.status = EntityStatus.PENDING
        cursor.status.error_message = reason
        await self._runs.save_entity_status(cursor.status)
        self._notify_status(cursor.entity_type, ProgressStatus.PAUSED)
        logger.warning(
            "Stopped %s at batch %d: %s",
            cursor.entity_type,
            cursor.position,
            reason,
            extra={"run_id": cursor.status.migration_run_id, "entity_type": cursor.entity_type},
        )

    async def _record_errors(
        self,
        state: _RunState,
        metrics: MigrationMetrics,
        errors: Iterable[MigrationError],
    ) -> None:
        for error in errors:
            state.errors.append(error)
            metrics.record_error(error.context.entity_type or "unknown", error.error_type.value)
            await self._error_log.record(state.run_id, error)

    async def _validate(self, state: _RunState, cursor: _EntityRun) -> ValidationResult:
        """
        Compare a sample of migrated records with their source rows.

        Advisory only: a low match percentage or a store failure is logged
        as a warning and never fails the entity.
        """
        failed = set(cursor.failed_ids)
        committed = [i for i in cursor.task.record_ids[: cursor.consumed] if i not in failed]
        size = min(self._config.validation_sample_size, len(committed))
        if size == 0:
            return ValidationResult(entity_type=cursor.entity_type, sample_size=0, matched=0)
        step = max(len(committed) // size, 1)
        sample = committed[::step][:size]
        entity_type = cursor.entity_type

        try:
            source_rows = {
                str(row[cursor.mapping.id_field]): row
                for row in await self._source.fetch_rows_by_ids(cursor.mapping, sample)
            }
            destination_rows = await self._destination.fetch_by_legacy_ids(cursor.mapping, sample)
        except Exception:
            logger.warning(
                "Validation of %s could not read the stores",
                entity_type,
                exc_info=True,
                extra={"run_id": state.run_id, "entity_type": entity_type},
            )
            return ValidationResult(
                entity_type=entity_type,
                sample_size=len(sample),
                matched=0,
                match_percentage=0.0,
                is_valid=False,
            )

        missing: list[str] = []
        mismatched: list[str] = []
        for record_id in sample:
            source_row = source_rows.get(record_id)
            destination_row = destination_rows.get(record_id)
            if source_row is None or destination_row is None:
                missing.append(record_id)
            elif not self._migrator.records_match(cursor.mapping, source_row, destination_row):
                mismatched.append(record_id)

        matched = len(sample) - len(missing) - len(mismatched)
        percentage = round(matched / len(sample) * 100, 2) if sample else 100.0
        result = ValidationResult(
            entity_type=entity_type,
            sample_size=len(sample),
            matched=matched,
            missing_record_ids=tuple(missing),
            mismatched_record_ids=tuple(mismatched),
            match_percentage=percentage,
            is_valid=percentage >= self._config.validation_match_threshold,
        )
        if not result.is_valid:
            logger.warning(
                "Validation of %s matched %.2f%% of %d sampled records",
                entity_type,
                percentage,
                len(sample),
                extra={"run_id": state.run_id, "entity_type": entity_type},
            )
        return result

    async def _finish(
        self,
        state: _RunState,
        graph: DependencyGraph,
        statuses: Mapping[str, EntityMigrationStatus],
        started_at: datetime,
        metrics: MigrationMetrics,
    ) -> ExecutionResult:
        ordered = [statuses[name] for name in graph.entities]
        completed = [s for s in ordered if s.status is EntityStatus.COMPLETED]
        if state.cancel_requested:
            overall = RunStatus.CANCELLED
        elif len(completed) == len(ordered):
            overall = RunStatus.COMPLETED
        elif not completed:
            overall = RunStatus.FAILED
        else:
            overall = RunStatus.PARTIAL

        completed_at = datetime.now(UTC)
        error_summary = dict(Counter(e.error_type.value for e in state.errors))
        await self._runs.update_run_status(
            state.run_id,
            overall,
            completed_at=completed_at,
            requires_revalidation=True if overall is RunStatus.CANCELLED else None,
            error_summary=error_summary,
        )

        recovery = await self._recovery_info(state, ordered, overall)
        result = ExecutionResult(
            run_id=state.run_id,
            overall_status=overall,
            levels=graph.levels,
            cycles=graph.cycles,
            entity_statuses=tuple(ordered),
            batch_results=tuple(state.batch_results),
            checkpoint_ids=tuple(state.checkpoint_ids),
            validation_results=tuple(state.validations),
            errors=tuple(state.errors),
            started_at=started_at,
            completed_at=completed_at,
            recovery=recovery,
        )
        log = logger.info if overall is RunStatus.COMPLETED else logger.error
        log(
            "Run %s finished %s: %d completed, %d failed, %d skipped, %d records",
            state.run_id,
            overall.value,
            len(result.entities_processed),
            len(result.entities_failed),
            len(result.entities_skipped),
            result.total_records_processed,
            extra={"run_id": state.run_id, "error_summary": error_summary},
        )
        return result

    async def _recovery_info(
        self,
        state: _RunState,
        statuses: Sequence[EntityMigrationStatus],
        overall: RunStatus,
    ) -> RecoveryInfo:
        if overall is RunStatus.COMPLETED:
            return RecoveryInfo(is_recoverable=False, last_checkpoint_id=state.last_checkpoint_id)

        halted = next(
            (s for s in statuses if s.status in (EntityStatus.FAILED, EntityStatus.PENDING)),
            None,
        )
        actions: list[str] = []
        resume_from = 0
        checkpoint_id = state.last_checkpoint_id
        reason: str | None = None

        if halted is not None:
            reason = state.halt_reasons.get(halted.entity_type)
            checkpoint_id = halted.last_checkpoint_id or checkpoint_id
            if halted.last_checkpoint_id:
                checkpoint = await self._checkpoints.get(halted.last_checkpoint_id)
                if checkpoint is not None:
                    resume_from = checkpoint.resume_batch_index(self._config.batch_size)
            halting = next(
                (
                    e
                    for e in reversed(state.errors)
                    if e.context.entity_type == halted.entity_type and e.is_halting
                ),
                None,
            )
            if halting is not None and halting.resolution is not None:
                actions.extend(halting.resolution.manual_steps)
            elif reason == "timeout":
                actions.append("Increase timeout_ms or reduce batch_size for this entity")
            elif reason == "temporarily_unavailable":
                actions.append("Wait for the destination to recover; the circuit breaker is open")

        if overall is RunStatus.CANCELLED:
            actions.append(
                "Re-validate migrated data before resuming; cancellation skips checkpoints"
            )
        skipped = [s.entity_type for s in statuses if s.status is EntityStatus.SKIPPED]
        if skipped:
            actions.append(f"Entities not started: {', '.join(skipped)}")
        actions.append(f"Resume run {state.run_id} after remediation")

        return RecoveryInfo(
            is_recoverable=True,
            last_checkpoint_id=checkpoint_id,
            resume_from_batch=resume_from,
            halted_entity=halted.entity_type if halted else None,
            halt_reason=reason,
            recommended_actions=tuple(actions),
        )

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def _state_for(self, run_id: str | None, operation: str) -> _RunState:
        if run_id is not None:
            state = self._states.get(run_id)
            if state is None:
                raise ExecutionStateError(operation, "not running", run_id)
            return state
        if len(self._states) != 1:
            current = "idle" if not self._states else "ambiguous (several runs active)"
            raise ExecutionStateError(operation, current)
        return next(iter(self._states.values()))

    async def pause(self, run_id: str | None = None) -> str | None:
        """
        Pause a running execution at the next batch boundary.

        Waits until every in-flight entity has written its checkpoint.

        Args:
            run_id: Run to pause; optional when exactly one run is active.

        Returns:
            The most recent checkpoint id of the run.

        If the paused status cannot be persisted, the run keeps going and
        the error propagates.

        Raises:
            ExecutionStateError: If the run is not running in this process,
                or is still being created.
        """
        state = self._state_for(run_id, "pause")
        if state.status is not RunStatus.RUNNING:
            raise ExecutionStateError("pause", state.status.value, state.run_id)
        if not state.opened:
            raise ExecutionStateError("pause", "starting", state.run_id)

        state.pause_requested = True
        state.gate.clear()
        state.status = RunStatus.PAUSED
        logger.info("Pausing run %s", state.run_id, extra={"run_id": state.run_id})

        try:
            while not state.all_parked():
                state.changed.clear()
                await state.changed.wait()
            await self._runs.update_run_status(state.run_id, RunStatus.PAUSED)
        except BaseException:
            if state.status is RunStatus.PAUSED:
                state.pause_requested = False
                state.status = RunStatus.RUNNING
                state.gate.set()
            logger.warning(
                "Pause of run %s failed; execution continues",
                state.run_id,
                extra={"run_id": state.run_id},
            )
            raise

        logger.info(
            "Run %s paused at checkpoint %s",
            state.run_id,
            state.last_checkpoint_id,
            extra={"run_id": state.run_id},
        )
        return state.last_checkpoint_id

    async def resume(self, checkpoint_id: str) -> int:
        """
        Resume from a checkpoint.

        A run paused in this process continues immediately. Otherwise the run
        is marked resumable and the next ``execute_migration_tasks`` call
        with its run id continues from its latest checkpoints.

        Returns:
            The batch index execution resumes from.

        Raises:
            CheckpointNotFoundError: If the checkpoint does not exist.
            CheckpointNotResumableError: If it is marked not resumable or its
                stored checksum does not match its state.
            ExecutionStateError: If the run is not paused or has completed.
        """
        checkpoint = await self._checkpoints.get(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id)
        run_id = checkpoint.migration_run_id
        if not checkpoint.is_resumable:
            raise CheckpointNotResumableError(checkpoint_id, "marked not resumable", run_id)
        if not checkpoint.verify_integrity():
            raise CheckpointNotResumableError(checkpoint_id, "checksum mismatch", run_id)

        resumed_from = checkpoint.resume_batch_index(self._config.batch_size)

        state = self._states.get(run_id)
        if state is not None:
            if state.status is not RunStatus.PAUSED:
                raise ExecutionStateError("resume", state.status.value, run_id)
            state.pause_requested = False
            state.status = RunStatus.RUNNING
            await self._runs.update_run_status(run_id, RunStatus.RUNNING)
            state.gate.set()
        else:
            run = await self._runs.get_run(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.status is RunStatus.COMPLETED:
                raise ExecutionStateError("resume", run.status.value, run_id)
            await self._runs.update_run_status(run_id, RunStatus.PAUSED)

        logger.info(
            "Resuming run %s from checkpoint %s (%s batch %d)",
            run_id,
            checkpoint_id,
            checkpoint.entity_type,
            resumed_from,
            extra={"run_id": run_id, "checkpoint_id": checkpoint_id},
        )
        return resumed_from

    async def cancel(self, run_id: str | None = None) -> None:
        """
        Stop a run at the next batch boundary without writing checkpoints.

        The run ends ``cancelled`` and is flagged for re-validation.

        Raises:
            ExecutionStateError: If the run is not active in this process.
        """
        state = self._state_for(run_id, "cancel")
        if not state.status.is_active:
            raise ExecutionStateError("cancel", state.status.value, state.run_id)
        state.cancel_requested = True
        state.status = RunStatus.CANCELLED
        state.gate.set()
        await self._runs.update_run_status(
            state.run_id, RunStatus.CANCELLED, requires_revalidation=True
        )
        logger.warning("Cancelling run %s", state.run_id, extra={"run_id": state.run_id})

    async def cleanup_checkpoints(self, now: datetime | None = None) -> int:
        """
        Delete checkpoints older than ``checkpoint_retention_days``.

        The latest resumable checkpoint of every run and entity survives.

        Returns:
            Number of checkpoints deleted.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(days=self._config.checkpoint_retention_days)
        deleted = await self._checkpoints.delete_older_than(cutoff)
        logger.info(
            "Removed %d checkpoints created before %s",
            deleted,
            cutoff.isoformat(),
        )
        return deleted

    async def load_tasks(self, run_id: str) -> list[MigrationTask]:
        """
        Tasks planned for a run, as persisted when it first started.

        Resuming a run must replay the same record ids in the same order,
        so the plan is stored with the run instead of being re-detected.

        Raises:
            RunNotFoundError: If the run does not exist.
        """
        run = await self._runs.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return [MigrationTask.from_dict(data) for data in run.config.get("plan", ())]

    def is_executing(self, run_id: str) -> bool:
        return run_id in self._states

    async def list_active_runs(self) -> list[MigrationRun]:
        """Runs executing in this process."""
        runs = [await self._runs.get_run(run_id) for run_id in list(self._states)]
        return [run for run in runs if run is not None]

    async def get_entity_statuses(self, run_id: str) -> list[EntityMigrationStatus]:
        return await self._runs.list_entity_statuses(run_id)

    # -------------------------------------------------------------------------
    # Progress notifications (fire-and-forget)
    # -------------------------------------------------------------------------

    def _notify_start(self, cursor: _EntityRun) -> None:
        if self._tracker is None:
            return
        try:
            self._tracker.start_tracking(
                cursor.entity_type, cursor.task.total_records - cursor.tracking_offset
            )
        except Exception:
            logger.warning("Progress tracking failed for %s", cursor.entity_type, exc_info=True)

    def _notify_progress(self, cursor: _EntityRun, result: BatchResult) -> None:
        if self._tracker is None:
            return
        try:
            self._tracker.update_progress(
                cursor.entity_type,
                cursor.consumed - cursor.tracking_offset,
                BatchInfo(
                    batch_number=result.batch_number,
                    batch_size=result.records_processed + result.records_failed,
                    duration_ms=result.duration_ms,
                    memory_usage_mb=result.memory_usage_mb,
                ),
            )
        except Exception:
            logger.warning("Progress tracking failed for %s", cursor.entity_type, exc_info=True)

    def _notify_status(self, entity_type: str, status: ProgressStatus) -> None:
        if self._tracker is None or self._tracker.get_current_progress(entity_type) is None:
            return
        try:
            self._tracker.set_status(entity_type, status)
        except Exception:
            logger.warning("Progress tracking failed for %s", entity_type, exc_info=True)


__all__ = [
    "DependencyGraph",
    "build_dependency_graph",
    "ExecutionPlanner",
    "ESTIMATED_RECORDS_PER_SECOND",
    "MAX_METRIC_SNAPSHOTS",
]
