"""
MigrationEngine - entry point composing detection, planning and tracking.

The engine detects changes since a point in time, turns them into migration
tasks and executes them, either inline with :meth:`run_migration` or in a
background task with :meth:`start_migration`.

Usage:
    >>> engine = MigrationEngine(source, destination, migrator)
    >>> async with engine:
    ...     run_id = await engine.start_migration(["offices", "users"], since)
    ...     checkpoint_id = await engine.pause(run_id)
    ...     await engine.resume(checkpoint_id)
    ...     result = await engine.wait_for_completion(run_id)

A run paused or halted in one process can be resumed in another: the task
plan is stored with the run, so :meth:`resume` replays exactly the record
ids that were planned originally.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Coroutine, Iterable, Mapping
from datetime import datetime
from types import TracebackType
from typing import Any

from diffmigrate.baseline import BaselineAnalyzer, BaselineReport
from diffmigrate.config import DetectionConfig, ExecutionConfig, ProgressConfig
from diffmigrate.detector import ChangeDetector
from diffmigrate.entities import EntityMapping
from diffmigrate.exceptions import ExecutionStateError, MigrationHaltedError, RunNotFoundError
from diffmigrate.models import (
    DetectionResult,
    ExecutionResult,
    MigrationRun,
    MigrationTask,
    RunStatus,
    new_id,
)
from diffmigrate.observability import (
    ATTR_CHECKPOINT_ID,
    ATTR_ENTITY_COUNT,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from diffmigrate.planner import ExecutionPlanner
from diffmigrate.repositories import CheckpointRepository, ErrorLogRepository, RunRepository
from diffmigrate.retry import RetryController
from diffmigrate.stores.base import DestinationStore, RecordMigrator, SourceStore
from diffmigrate.tracker import ProgressTracker, SessionStatus

logger = logging.getLogger(__name__)


def halted_error(result: ExecutionResult) -> MigrationHaltedError | None:
    """Build the error describing why a run halted, or None if it did not."""
    recovery = result.recovery
    if result.overall_status not in (RunStatus.FAILED, RunStatus.PARTIAL):
        return None
    if recovery.halted_entity is None:
        return None
    return MigrationHaltedError(
        recovery.halted_entity,
        recovery.halt_reason or "unknown",
        run_id=result.run_id,
        checkpoint_id=recovery.last_checkpoint_id,
        remediation=recovery.recommended_actions,
    )


class MigrationEngine:
    """
    Detects, plans and executes incremental migrations.

    Args:
        source: Legacy data.
        destination: Migrated data.
        migrator: Writes records into the destination.
        execution_config: Planner settings.
        detection_config: Detector settings.
        progress_config: Tracker settings, when no tracker is given.
        checkpoints: Checkpoint persistence (in-memory by default).
        runs: Run persistence (in-memory by default).
        errors: Error log persistence (in-memory by default).
        tracker: Progress tracker shared with the planner.
        retry_controller: Retry policy and circuit breakers.
        mappings: Entity registry override.
        tracer: Optional custom Tracer.
        enable_tracing: Whether to enable OpenTelemetry tracing.
        enable_metrics: Whether to record OpenTelemetry metrics.
    """

    def __init__(
        self,
        source: SourceStore,
        destination: DestinationStore,
        migrator: RecordMigrator,
        *,
        execution_config: ExecutionConfig | None = None,
        detection_config: DetectionConfig | None = None,
        progress_config: ProgressConfig | None = None,
        checkpoints: CheckpointRepository | None = None,
        runs: RunRepository | None = None,
        errors: ErrorLogRepository | None = None,
        tracker: ProgressTracker | None = None,
        retry_controller: RetryController | None = None,
        mappings: Mapping[str, EntityMapping] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        enable_metrics: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._tracker = tracker or ProgressTracker(progress_config)
        self._detector = ChangeDetector(
            source,
            destination,
            detection_config,
            mappings,
            tracer=self._tracer,
            enable_tracing=enable_tracing,
        )
        self._planner = ExecutionPlanner(
            source,
            destination,
            migrator,
            execution_config,
            checkpoints,
            runs,
            errors,
            self._tracker,
            retry_controller,
            mappings=mappings,
            tracer=self._tracer,
            enable_tracing=enable_tracing,
            enable_metrics=enable_metrics,
        )
        self._baseline = BaselineAnalyzer(
            source,
            destination,
            self._planner.runs,
            mappings,
            tracer=self._tracer,
            enable_tracing=enable_tracing,
        )

        # Background executions by run id
        self._tasks: dict[str, asyncio.Task[ExecutionResult]] = {}

    @property
    def detector(self) -> ChangeDetector:
        return self._detector

    @property
    def baseline(self) -> BaselineAnalyzer:
        return self._baseline

    @property
    def planner(self) -> ExecutionPlanner:
        return self._planner

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    async def __aenter__(self) -> MigrationEngine:
        self._tracker.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Cancel background executions and stop the tracker."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._tracker.stop()

    # -------------------------------------------------------------------------
    # Detection and planning
    # -------------------------------------------------------------------------

    async def analyze_baseline(self, entity_types: Iterable[str]) -> BaselineReport:
        """
        Compare record counts and column mappings before migrating.

        Entities that cannot be read are logged and left out of the report.
        """
        return await self._baseline.generate_baseline_report(list(entity_types))

    async def detect(
        self,
        entity_types: Iterable[str],
        since: datetime,
        *,
        include_deletes: bool = False,
        content_hashing: bool | None = None,
    ) -> dict[str, DetectionResult]:
        return await self._detector.detect_all(
            entity_types,
            since,
            include_deletes=include_deletes,
            content_hashing=content_hashing,
        )

    async def plan(
        self,
        entity_types: Iterable[str],
        since: datetime,
        *,
        include_deletes: bool = False,
        content_hashing: bool | None = None,
    ) -> list[MigrationTask]:
        """Detect changes and turn them into migration tasks."""
        results = await self.detect(
            entity_types,
            since,
            include_deletes=include_deletes,
            content_hashing=content_hashing,
        )
        for result in results.values():
            for recommendation in result.recommendations:
                logger.info(
                    "%s: %s",
                    result.entity_type,
                    recommendation,
                    extra={"entity_type": result.entity_type},
                )
        return self._planner.plan_from_detection(results)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run_migration(
        self,
        entity_types: Iterable[str],
        since: datetime,
        *,
        run_id: str | None = None,
        include_deletes: bool = False,
        content_hashing: bool | None = None,
        raise_on_halt: bool = False,
    ) -> ExecutionResult:
        """
        Detect, plan and execute inline.

        Args:
            entity_types: Entity types to migrate.
            since: Lower bound of the change window.
            run_id: Run id to use; generated when omitted.
            include_deletes: Also detect (and report) deleted records.
            content_hashing: Override the configured content hashing.
            raise_on_halt: Raise instead of returning a halted result.

        Returns:
            The execution result.

        Raises:
            MigrationHaltedError: If ``raise_on_halt`` is set and an entity
                halted the run.
        """
        entity_types = list(entity_types)
        with self._tracer.span(
            "diffmigrate.engine.run_migration",
            {ATTR_ENTITY_COUNT: len(entity_types)},
        ) as span:
            tasks = await self.plan(
                entity_types,
                since,
                include_deletes=include_deletes,
                content_hashing=content_hashing,
            )
            result = await self._planner.execute_migration_tasks(tasks, run_id)
            if span:
                span.set_attribute(ATTR_RUN_ID, result.run_id)

        if raise_on_halt:
            error = halted_error(result)
            if error is not None:
                raise error
        return result

    async def start_migration(
        self,
        entity_types: Iterable[str],
        since: datetime,
        *,
        run_id: str | None = None,
        include_deletes: bool = False,
        content_hashing: bool | None = None,
    ) -> str:
        """
        Start a migration in the background.

        Detection runs in the background too, so the run becomes visible to
        :meth:`pause` and :meth:`list_active_migrations` once execution
        begins. Use :meth:`wait_for_completion` for the result.

        Returns:
            The run id.
        """
        run_id = run_id or new_id()
        if self._is_running(run_id):
            raise ExecutionStateError("start", RunStatus.RUNNING.value, run_id)
        self._spawn(
            run_id,
            self.run_migration(
                list(entity_types),
                since,
                run_id=run_id,
                include_deletes=include_deletes,
                content_hashing=content_hashing,
            ),
        )
        logger.info("Started migration %s", run_id, extra={"run_id": run_id})
        return run_id

    def _spawn(self, run_id: str, coro: Coroutine[Any, Any, ExecutionResult]) -> None:
        task = asyncio.create_task(coro, name=f"migration_{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda done: self._on_done(run_id, done))

    def _on_done(self, run_id: str, task: asyncio.Task[ExecutionResult]) -> None:
        if task.cancelled():
            logger.warning("Migration %s was interrupted", run_id, extra={"run_id": run_id})
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Migration %s failed: %s",
                run_id,
                exc,
                exc_info=exc,
                extra={"run_id": run_id},
            )
            return
        result = task.result()
        logger.info(
            "Migration %s finished %s",
            run_id,
            result.overall_status.value,
            extra={"run_id": run_id},
        )

    def _is_running(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return self._planner.is_executing(run_id) or (task is not None and not task.done())

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    async def pause(self, run_id: str) -> str | None:
        """
        Pause a run at the next batch boundary.

        Returns:
            The id of the last checkpoint written.

        Raises:
            ExecutionStateError: If the run is not executing.
        """
        with self._tracer.span("diffmigrate.engine.pause", {ATTR_RUN_ID: run_id}):
            return await self._planner.pause(run_id)

    async def resume(self, checkpoint_id: str) -> int:
        """
        Resume the run a checkpoint belongs to.

        A run paused in this engine continues where it stopped. Any other
        run is re-executed in the background from its stored plan, each
        entity continuing from its latest checkpoint.

        Returns:
            The batch index the checkpoint's entity resumes from.

        Raises:
            CheckpointNotFoundError: If the checkpoint does not exist.
            CheckpointNotResumableError: If it is marked not resumable.
            ExecutionStateError: If the run cannot be resumed.
        """
        with self._tracer.span("diffmigrate.engine.resume", {ATTR_CHECKPOINT_ID: checkpoint_id}):
            resumed_from = await self._planner.resume(checkpoint_id)
            checkpoint = await self._planner.checkpoints.get(checkpoint_id)
            run_id = checkpoint.migration_run_id if checkpoint else None
            if run_id is not None and not self._is_running(run_id):
                tasks = await self._planner.load_tasks(run_id)
                self._spawn(run_id, self._planner.execute_migration_tasks(tasks, run_id))
                logger.info(
                    "Re-executing run %s from stored plan",
                    run_id,
                    extra={"run_id": run_id, "checkpoint_id": checkpoint_id},
                )
            return resumed_from

    async def cancel(self, run_id: str) -> None:
        """
        Cancel a run.

        An executing run stops at the next batch boundary and is flagged for
        re-validation. A run still detecting changes is abandoned.

        Raises:
            ExecutionStateError: If the run is not running in this engine.
        """
        with self._tracer.span("diffmigrate.engine.cancel", {ATTR_RUN_ID: run_id}):
            if self._planner.is_executing(run_id):
                await self._planner.cancel(run_id)
                return
            task = self._tasks.get(run_id)
            if task is None or task.done():
                raise ExecutionStateError("cancel", "not running", run_id)
            task.cancel()
            logger.warning(
                "Cancelled migration %s before execution started",
                run_id,
                extra={"run_id": run_id},
            )

    async def cleanup_checkpoints(self, now: datetime | None = None) -> int:
        """
        Delete checkpoints past the configured retention.

        Returns:
            Number of checkpoints deleted.
        """
        return await self._planner.cleanup_checkpoints(now)

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    async def list_active_migrations(self) -> list[MigrationRun]:
        return await self._planner.list_active_runs()

    async def get_run(self, run_id: str) -> MigrationRun:
        run = await self._planner.runs.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def get_session_status(self, run_id: str) -> SessionStatus:
        """
        Live progress of the entities of a run.

        Raises:
            RunNotFoundError: If the run does not exist.
        """
        run = await self.get_run(run_id)
        return self._tracker.get_session_status(run.entity_types)

    async def wait_for_completion(
        self,
        run_id: str,
        *,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """
        Wait for a background run to finish.

        Raises:
            RunNotFoundError: If no background execution exists for the run.
            TimeoutError: If ``timeout`` seconds pass first.
        """
        task = self._tasks.get(run_id)
        if task is None:
            raise RunNotFoundError(run_id)
        return await asyncio.wait_for(asyncio.shield(task), timeout)


__all__ = [
    "MigrationEngine",
    "halted_error",
]
