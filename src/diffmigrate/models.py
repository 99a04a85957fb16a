"""
Data models for the differential migration engine.

Models in this module:

Enums:
    - ChangeType, DetectionMethod: Change detection vocabulary
    - TaskPriority: Scheduling hint for migration tasks
    - ErrorType, ResolutionAction: Failure taxonomy and routing
    - ProgressStatus, EntityStatus, BatchStatus, RunStatus: Lifecycle states
    - AlertType, AlertSeverity: Progress alert vocabulary

Detection:
    - ChangeRecord: One detected delta
    - DetectionResult: Classified change set for one entity type

Planning and execution:
    - MigrationTask: Planned work for one entity type
    - Checkpoint: Durable resumption point
    - EntityMigrationStatus: Orchestration record per entity and run
    - MigrationRun: Orchestration record for a whole run
    - BatchResult, ValidationResult, RecoveryInfo, ExecutionResult

Errors:
    - ErrorContext, Resolution, MigrationError

Progress:
    - BatchInfo, ProgressSnapshot, PerformanceMetrics, Alert
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from diffmigrate.exceptions import ErrorSeverity
from diffmigrate.serialization import canonical_json, parse_datetime

# checkpoint_data key holding the state checksum
CHECKSUM_KEY = "checksum"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def new_id() -> str:
    """Generate an identifier for snapshots, checkpoints, errors and runs."""
    return str(uuid4())


# =============================================================================
# Enums
# =============================================================================


class ChangeType(Enum):
    """
    Kind of delta detected between source and destination.

    Attributes:
        NEW: Source row has no destination counterpart.
        MODIFIED: Source row changed after it was last migrated.
        DELETED: Destination row whose source row no longer exists.
    """

    NEW = "new"
    MODIFIED = "modified"
    DELETED = "deleted"


class DetectionMethod(Enum):
    """How a change set was computed."""

    TIMESTAMP_ONLY = "timestamp_only"
    TIMESTAMP_WITH_HASH = "timestamp_with_hash"
    FULL_CONTENT_HASH = "full_content_hash"


class TaskPriority(Enum):
    """Scheduling hint for a migration task."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key, lower runs first within a level."""
        return {TaskPriority.HIGH: 0, TaskPriority.MEDIUM: 1, TaskPriority.LOW: 2}[self]


class ErrorType(Enum):
    """
    Closed taxonomy of migration failures.

    Attributes:
        NETWORK: Connectivity problems and timeouts.
        DATA_INTEGRITY: Constraint violations in the destination.
        SCHEMA_MISMATCH: Missing columns or tables, incompatible types.
        VALIDATION: Count or checksum mismatches.
        SYSTEM: Resource exhaustion and anything unrecognized.
        BUSINESS_RULE: Records rejected by a business rule.
    """

    NETWORK = "network"
    DATA_INTEGRITY = "data_integrity"
    SCHEMA_MISMATCH = "schema_mismatch"
    VALIDATION = "validation"
    SYSTEM = "system"
    BUSINESS_RULE = "business_rule"


class ResolutionAction(Enum):
    """What the engine does about a classified failure."""

    RETRY = "retry"
    SKIP = "skip"
    MANUAL_INTERVENTION = "manual_intervention"
    ROLLBACK = "rollback"
    HALT = "halt"

    @property
    def stops_entity(self) -> bool:
        """True when the owning entity cannot continue."""
        return self in (
            ResolutionAction.HALT,
            ResolutionAction.ROLLBACK,
            ResolutionAction.MANUAL_INTERVENTION,
        )


class ProgressStatus(Enum):
    """
    Progress status of one entity as seen by the tracker.

    ``STARTING`` -> ``RUNNING`` -> ``COMPLETING`` (above 95%) -> ``COMPLETED``.
    ``PAUSED`` and ``ERROR`` are set from outside.
    """

    STARTING = "starting"
    RUNNING = "running"
    COMPLETING = "completing"
    COMPLETED = "completed"
    PAUSED = "paused"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        """True while records are being processed."""
        return self in (ProgressStatus.STARTING, ProgressStatus.RUNNING, ProgressStatus.COMPLETING)


class EntityStatus(Enum):
    """
    Orchestration status of an entity within a run.

    Valid transitions:
        - PENDING -> RUNNING, SKIPPED
        - RUNNING -> COMPLETED, FAILED, PENDING (paused or timed out)
        - FAILED -> RUNNING (resumed)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (EntityStatus.COMPLETED, EntityStatus.FAILED, EntityStatus.SKIPPED)

    @property
    def unblocks_dependents(self) -> bool:
        """Entities at a higher dependency order may start after this one."""
        return self in (EntityStatus.COMPLETED, EntityStatus.SKIPPED)

    def can_transition_to(self, target: EntityStatus) -> bool:
        valid_transitions: dict[EntityStatus, tuple[EntityStatus, ...]] = {
            EntityStatus.PENDING: (EntityStatus.RUNNING, EntityStatus.SKIPPED),
            EntityStatus.RUNNING: (
                EntityStatus.COMPLETED,
                EntityStatus.FAILED,
                EntityStatus.PENDING,
            ),
            EntityStatus.FAILED: (EntityStatus.RUNNING,),
            EntityStatus.SKIPPED: (EntityStatus.RUNNING,),
        }
        return target in valid_transitions.get(self, ())


class BatchStatus(Enum):
    """Outcome of one batch."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"

    @classmethod
    def from_counts(cls, processed: int, failed: int) -> BatchStatus:
        """
        Derive the batch status from record counts.

        No failures is a success, some processed records make a partial
        success, and nothing processed is a failure.
        """
        if failed == 0:
            return cls.SUCCESS
        if processed > 0:
            return cls.PARTIAL_SUCCESS
        return cls.FAILED


class RunStatus(Enum):
    """Lifecycle status of a migration run."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RunStatus.COMPLETED,
            RunStatus.PARTIAL,
            RunStatus.FAILED,
            RunStatus.CANCELLED,
        )

    @property
    def is_active(self) -> bool:
        return self in (RunStatus.RUNNING, RunStatus.PAUSED)


class AlertType(Enum):
    """Kinds of progress alerts."""

    LOW_THROUGHPUT = "low_throughput"
    HIGH_MEMORY = "high_memory"
    STALLED_PROGRESS = "stalled_progress"
    ETA_DEVIATION = "eta_deviation"


class AlertSeverity(Enum):
    """Severity of a progress alert."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# =============================================================================
# Detection
# =============================================================================


@dataclass(frozen=True)
class ChangeRecord:
    """
    One detected delta for a source record.

    Instances are never mutated; a later detection pass produces new ones.

    Attributes:
        record_id: Source (legacy) id of the record.
        change_type: New, modified or deleted.
        source_timestamp: Source last-modified time (destination time for deletes).
        destination_timestamp: Destination last-modified time, if a row exists.
        content_fingerprint: Fingerprint of the current source content.
        previous_fingerprint: Fingerprint stored with the migrated row.
        confidence: Confidence in the classification, between 0 and 1.
        metadata: Free-form detection details.
    """

    record_id: str
    change_type: ChangeType
    source_timestamp: datetime
    destination_timestamp: datetime | None = None
    content_fingerprint: str | None = None
    previous_fingerprint: str | None = None
    confidence: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be between 0 and 1, got {self.confidence}")

    def with_confidence(self, confidence: float, **metadata: Any) -> ChangeRecord:
        """Return a copy with a new confidence clamped to [0, 1]."""
        merged = {**self.metadata, **metadata}
        return replace(self, confidence=round(min(max(confidence, 0.0), 1.0), 4), metadata=merged)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "change_type": self.change_type.value,
            "source_timestamp": _iso(self.source_timestamp),
            "destination_timestamp": _iso(self.destination_timestamp),
            "content_fingerprint": self.content_fingerprint,
            "previous_fingerprint": self.previous_fingerprint,
            "confidence": self.confidence,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class DetectionResult:
    """
    Classified change set for one entity type.

    Attributes:
        entity_type: Entity type analyzed.
        since: Lower bound of the detection window.
        analysis_timestamp: When the analysis finished.
        total_records_analyzed: Source rows inspected (plus destination rows
            inspected for deletes).
        changes: Detected changes in deterministic order.
        analysis_duration_ms: Wall-clock duration of the analysis.
        detection_method: How changes were detected.
        false_positives_suppressed: Timestamp-only touches dropped because
            the content fingerprint was unchanged.
        recommendations: Operator hints for the migration of this entity.
        warnings: Data quality warnings raised during detection.
    """

    entity_type: str
    since: datetime
    analysis_timestamp: datetime
    total_records_analyzed: int
    changes: tuple[ChangeRecord, ...]
    analysis_duration_ms: float
    detection_method: DetectionMethod
    false_positives_suppressed: int = 0
    recommendations: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def _count(self, change_type: ChangeType) -> int:
        return sum(1 for change in self.changes if change.change_type is change_type)

    @property
    def new_records(self) -> int:
        return self._count(ChangeType.NEW)

    @property
    def modified_records(self) -> int:
        return self._count(ChangeType.MODIFIED)

    @property
    def deleted_records(self) -> int:
        return self._count(ChangeType.DELETED)

    @property
    def total_changes(self) -> int:
        return len(self.changes)

    @property
    def change_percentage(self) -> float:
        """Share of analyzed records that changed, rounded to 2 decimals."""
        if self.total_records_analyzed == 0:
            return 0.0
        return round(self.total_changes / self.total_records_analyzed * 100, 2)

    @property
    def records_per_second(self) -> float:
        if self.analysis_duration_ms <= 0:
            return 0.0
        return round(self.total_records_analyzed / self.analysis_duration_ms * 1000, 2)

    def record_ids(self, *change_types: ChangeType) -> list[str]:
        """
        Ids of the changes of the given types, in detection order.

        Args:
            *change_types: Types to include (all types when omitted).
        """
        wanted = set(change_types) or set(ChangeType)
        return [change.record_id for change in self.changes if change.change_type in wanted]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "since": _iso(self.since),
            "analysis_timestamp": _iso(self.analysis_timestamp),
            "summary": {
                "total_records_analyzed": self.total_records_analyzed,
                "new_records": self.new_records,
                "modified_records": self.modified_records,
                "deleted_records": self.deleted_records,
                "change_percentage": self.change_percentage,
                "false_positives_suppressed": self.false_positives_suppressed,
            },
            "performance": {
                "analysis_duration_ms": self.analysis_duration_ms,
                "records_per_second": self.records_per_second,
                "detection_method": self.detection_method.value,
            },
            "changes": [change.to_dict() for change in self.changes],
            "recommendations": list(self.recommendations),
            "warnings": list(self.warnings),
        }


# =============================================================================
# Planning
# =============================================================================


@dataclass(frozen=True)
class MigrationTask:
    """
    Planned work for one entity type.

    Attributes:
        entity_type: Entity type to migrate.
        record_ids: Source ids in processing order.
        dependencies: Entity types that must finish first. When empty, the
            default dependency graph applies.
        priority: Scheduling hint within a dependency level.
        estimated_duration_ms: Planning estimate, informational only.
        metadata: Free-form planning details.
    """

    entity_type: str
    record_ids: tuple[str, ...]
    dependencies: tuple[str, ...] = ()
    priority: TaskPriority = TaskPriority.MEDIUM
    estimated_duration_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def total_records(self) -> int:
        return len(self.record_ids)

    def batch_count(self, batch_size: int) -> int:
        """Number of batches of ``batch_size`` needed for this task."""
        return -(-self.total_records // batch_size)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "record_ids": list(self.record_ids),
            "dependencies": list(self.dependencies),
            "priority": self.priority.value,
            "estimated_duration_ms": self.estimated_duration_ms,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationTask:
        return cls(
            entity_type=data["entity_type"],
            record_ids=tuple(str(i) for i in data.get("record_ids") or ()),
            dependencies=tuple(data.get("dependencies") or ()),
            priority=TaskPriority(data.get("priority", TaskPriority.MEDIUM.value)),
            estimated_duration_ms=float(data.get("estimated_duration_ms", 0.0)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Checkpoint:
    """
    Durable resumption point for one entity within a run.

    Checkpoints of the same entity and run are totally ordered by
    ``batch_position``, and ``records_processed`` never decreases along
    that order.

    Attributes:
        checkpoint_id: Unique identifier.
        entity_type: Entity type the checkpoint belongs to.
        migration_run_id: Run the checkpoint belongs to.
        last_processed_id: Last source id of the last committed batch.
        batch_position: Number of batches committed so far.
        records_processed: Records committed so far.
        records_remaining: Records still to process.
        checkpoint_data: Opaque data (batch size, start time, memory, reason).
        created_at: When the checkpoint was written.
        is_resumable: Whether execution may resume from it.
    """

    checkpoint_id: str
    entity_type: str
    migration_run_id: str
    last_processed_id: str | None
    batch_position: int
    records_processed: int
    records_remaining: int
    checkpoint_data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    is_resumable: bool = True

    def __post_init__(self) -> None:
        for name in ("batch_position", "records_processed", "records_remaining"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}")

    @property
    def total_records(self) -> int:
        return self.records_processed + self.records_remaining

    @property
    def progress_percentage(self) -> float:
        if self.total_records == 0:
            return 0.0
        return round(self.records_processed / self.total_records * 100, 2)

    @property
    def is_complete(self) -> bool:
        return self.records_remaining == 0

    def next_batch_index(self, batch_size: int) -> int:
        """Batch index to resume from: ``floor(records_processed / batch_size)``."""
        return self.records_processed // batch_size

    def recorded_batch_size(self, default: int) -> int:
        """Batch size the checkpoint was written with; ``default`` for older rows."""
        return int(self.checkpoint_data.get("batch_size", default))

    def resume_batch_index(self, default_batch_size: int) -> int:
        return self.next_batch_index(self.recorded_batch_size(default_batch_size))

    def state_checksum(self) -> str:
        """
        SHA-256 hex digest of the resumption state.

        Covers the position fields and ``checkpoint_data`` without its own
        ``checksum`` key, serialized as canonical JSON.
        """
        state = {
            "last_processed_id": self.last_processed_id,
            "batch_position": self.batch_position,
            "records_processed": self.records_processed,
            "records_remaining": self.records_remaining,
            "checkpoint_data": {
                k: v for k, v in self.checkpoint_data.items() if k != CHECKSUM_KEY
            },
        }
        return hashlib.sha256(canonical_json(state).encode("utf-8")).hexdigest()

    def with_checksum(self) -> Checkpoint:
        """Copy of this checkpoint with its state checksum stored in ``checkpoint_data``."""
        return replace(
            self,
            checkpoint_data={**self.checkpoint_data, CHECKSUM_KEY: self.state_checksum()},
        )

    def verify_integrity(self) -> bool:
        """
        Check the stored checksum against the current state.

        Checkpoints written without a checksum are accepted.
        """
        stored = self.checkpoint_data.get(CHECKSUM_KEY)
        if stored is None:
            return True
        return hmac.compare_digest(str(stored), self.state_checksum())

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "entity_type": self.entity_type,
            "migration_run_id": self.migration_run_id,
            "last_processed_id": self.last_processed_id,
            "batch_position": self.batch_position,
            "records_processed": self.records_processed,
            "records_remaining": self.records_remaining,
            "checkpoint_data": self.checkpoint_data,
            "created_at": _iso(self.created_at),
            "is_resumable": self.is_resumable,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            checkpoint_id=data["checkpoint_id"],
            entity_type=data["entity_type"],
            migration_run_id=data["migration_run_id"],
            last_processed_id=data.get("last_processed_id"),
            batch_position=int(data.get("batch_position", 0)),
            records_processed=int(data.get("records_processed", 0)),
            records_remaining=int(data.get("records_remaining", 0)),
            checkpoint_data=dict(data.get("checkpoint_data") or {}),
            created_at=parse_datetime(data.get("created_at")) or datetime.now(UTC),
            is_resumable=bool(data.get("is_resumable", True)),
        )


@dataclass
class EntityMigrationStatus:
    """
    Orchestration record for one entity within a run.

    Mutable because the planner updates it as the entity progresses.
    ``dependency_order`` is unique per run; entities sharing a dependency
    level occupy consecutive values.

    Attributes:
        migration_run_id: Run the entity belongs to.
        entity_type: Entity type.
        dependency_order: Global execution order within the run.
        dependency_level: Index of the dependency level.
        status: Current orchestration status.
        records_total: Records planned.
        records_processed: Records committed.
        records_failed: Records that failed and were skipped or halted on.
        started_at: When the entity first entered RUNNING.
        completed_at: When the entity reached a terminal status.
        last_checkpoint_id: Most recent checkpoint written for the entity.
        error_message: Reason for failure or skip.
    """

    migration_run_id: str
    entity_type: str
    dependency_order: int
    dependency_level: int = 0
    status: EntityStatus = EntityStatus.PENDING
    records_total: int = 0
    records_processed: int = 0
    records_failed: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_checkpoint_id: str | None = None
    error_message: str | None = None

    @property
    def records_remaining(self) -> int:
        return max(self.records_total - self.records_processed, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_run_id": self.migration_run_id,
            "entity_type": self.entity_type,
            "dependency_order": self.dependency_order,
            "dependency_level": self.dependency_level,
            "status": self.status.value,
            "records_total": self.records_total,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "last_checkpoint_id": self.last_checkpoint_id,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityMigrationStatus:
        return cls(
            migration_run_id=data["migration_run_id"],
            entity_type=data["entity_type"],
            dependency_order=int(data["dependency_order"]),
            dependency_level=int(data.get("dependency_level", 0)),
            status=EntityStatus(data.get("status", EntityStatus.PENDING.value)),
            records_total=int(data.get("records_total", 0)),
            records_processed=int(data.get("records_processed", 0)),
            records_failed=int(data.get("records_failed", 0)),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            last_checkpoint_id=data.get("last_checkpoint_id"),
            error_message=data.get("error_message"),
        )


@dataclass
class MigrationRun:
    """
    Orchestration record for a whole run.

    Attributes:
        run_id: Unique run identifier.
        status: Current run status.
        entity_types: Entity types planned for the run.
        config: Execution configuration snapshot.
        started_at: When execution started.
        completed_at: When execution reached a terminal status.
        requires_revalidation: Set when a run was cancelled without a
            guaranteed checkpoint.
        error_summary: Error counts by type.
    """

    run_id: str
    status: RunStatus = RunStatus.PENDING
    entity_types: list[str] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    requires_revalidation: bool = False
    error_summary: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "entity_types": list(self.entity_types),
            "config": self.config,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "requires_revalidation": self.requires_revalidation,
            "error_summary": self.error_summary,
        }


# =============================================================================
# Errors
# =============================================================================


@dataclass(frozen=True)
class ErrorContext:
    """
    Where a failure happened.

    Attributes:
        entity_type: Entity being processed.
        record_id: Record being processed, for record-level failures.
        batch_number: Batch being processed.
        operation: Logical operation name (also the circuit breaker key).
        retry_attempt: Retry attempt during which the failure happened.
    """

    entity_type: str | None = None
    record_id: str | None = None
    batch_number: int | None = None
    operation: str | None = None
    retry_attempt: int = 0

    def with_record(self, record_id: str) -> ErrorContext:
        return replace(self, record_id=record_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "record_id": self.record_id,
            "batch_number": self.batch_number,
            "operation": self.operation,
            "retry_attempt": self.retry_attempt,
        }


@dataclass(frozen=True)
class Resolution:
    """
    Routing decision for a classified failure.

    Attributes:
        action: What the engine does.
        reason: Why, in operator language.
        manual_steps: Remediation steps when an operator has to act.
        automated_fix: Description of the automatic handling, if any.
    """

    action: ResolutionAction
    reason: str
    manual_steps: tuple[str, ...] = ()
    automated_fix: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "manual_steps": list(self.manual_steps),
            "automated_fix": self.automated_fix,
        }


@dataclass
class MigrationError:
    """
    A classified failure.

    Created for every caught failure. The resolution is attached once via
    :meth:`attach_resolution`; nothing else changes after creation.

    Attributes:
        error_id: Unique identifier.
        error_type: Taxonomy bucket.
        severity: Severity of the failure.
        message: Original error message.
        context: Where the failure happened.
        retryable: Whether retrying may help.
        retry_count: Retries performed before this record was created.
        max_retries: Retry budget that applied.
        exception_type: Class name of the original exception.
        timestamp: When the failure was classified.
        resolution: Routing decision, once attached.
    """

    error_id: str
    error_type: ErrorType
    severity: ErrorSeverity
    message: str
    context: ErrorContext
    retryable: bool
    retry_count: int = 0
    max_retries: int = 0
    exception_type: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    resolution: Resolution | None = None

    def attach_resolution(self, resolution: Resolution) -> MigrationError:
        """
        Attach the routing decision.

        Raises:
            ValueError: If a resolution is already attached.
        """
        if self.resolution is not None:
            raise ValueError(f"Error {self.error_id} already has a resolution")
        self.resolution = resolution
        return self

    @property
    def is_halting(self) -> bool:
        return self.resolution is not None and self.resolution.action.stops_entity

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_id": self.error_id,
            "type": self.error_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "context": self.context.to_dict(),
            "retryable": self.retryable,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "exception_type": self.exception_type,
            "timestamp": _iso(self.timestamp),
            "resolution": self.resolution.to_dict() if self.resolution else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationError:
        context = data.get("context") or {}
        resolution = data.get("resolution")
        return cls(
            error_id=data["error_id"],
            error_type=ErrorType(data["type"]),
            severity=ErrorSeverity(data["severity"]),
            message=data["message"],
            context=ErrorContext(**context),
            retryable=bool(data.get("retryable", False)),
            retry_count=int(data.get("retry_count", 0)),
            max_retries=int(data.get("max_retries", 0)),
            exception_type=data.get("exception_type"),
            timestamp=parse_datetime(data.get("timestamp")) or datetime.now(UTC),
            resolution=(
                Resolution(
                    action=ResolutionAction(resolution["action"]),
                    reason=resolution["reason"],
                    manual_steps=tuple(resolution.get("manual_steps") or ()),
                    automated_fix=resolution.get("automated_fix"),
                )
                if resolution
                else None
            ),
        )


# =============================================================================
# Execution results
# =============================================================================


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of one batch.

    Attributes:
        entity_type: Entity the batch belongs to.
        batch_number: Zero-based batch index.
        status: Derived from the processed and failed counts.
        records_processed: Records committed.
        records_failed: Records that failed.
        failed_record_ids: Ids of failed records, for later retry.
        errors: Classified failures.
        duration_ms: Wall-clock duration of the batch.
        memory_usage_mb: Process memory after the batch.
        can_continue: False when the entity must stop after this batch.
        checkpoint_id: Checkpoint written after the batch, if any.
    """

    entity_type: str
    batch_number: int
    status: BatchStatus
    records_processed: int
    records_failed: int
    failed_record_ids: tuple[str, ...] = ()
    errors: tuple[MigrationError, ...] = ()
    duration_ms: float = 0.0
    memory_usage_mb: float = 0.0
    can_continue: bool = True
    checkpoint_id: str | None = None

    @property
    def records_per_second(self) -> float:
        if self.duration_ms <= 0:
            return 0.0
        return self.records_processed / self.duration_ms * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "batch_number": self.batch_number,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "failed_record_ids": list(self.failed_record_ids),
            "errors": [error.to_dict() for error in self.errors],
            "duration_ms": self.duration_ms,
            "memory_usage_mb": self.memory_usage_mb,
            "records_per_second": self.records_per_second,
            "can_continue": self.can_continue,
            "checkpoint_id": self.checkpoint_id,
        }


@dataclass(frozen=True)
class ValidationResult:
    """
    Sampled integrity validation of one entity.

    Attributes:
        entity_type: Entity validated.
        sample_size: Record pairs compared.
        matched: Pairs whose content matched.
        missing_record_ids: Sampled ids with no destination row.
        mismatched_record_ids: Sampled ids whose content differed.
        match_percentage: ``matched / sample_size * 100``.
        is_valid: Whether the match percentage reached the threshold.
    """

    entity_type: str
    sample_size: int
    matched: int
    missing_record_ids: tuple[str, ...] = ()
    mismatched_record_ids: tuple[str, ...] = ()
    match_percentage: float = 100.0
    is_valid: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "sample_size": self.sample_size,
            "matched": self.matched,
            "missing_record_ids": list(self.missing_record_ids),
            "mismatched_record_ids": list(self.mismatched_record_ids),
            "match_percentage": self.match_percentage,
            "is_valid": self.is_valid,
        }


@dataclass(frozen=True)
class RecoveryInfo:
    """
    What a caller needs to recover a run that did not complete.

    Attributes:
        is_recoverable: Whether resuming makes sense.
        last_checkpoint_id: Most recent checkpoint of the run.
        resume_from_batch: Batch index the next execution starts from.
        halted_entity: Entity whose failure stopped the run.
        halt_reason: Typed reason (classified error type value).
        recommended_actions: Ordered remediation list.
    """

    is_recoverable: bool
    last_checkpoint_id: str | None = None
    resume_from_batch: int = 0
    halted_entity: str | None = None
    halt_reason: str | None = None
    recommended_actions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_recoverable": self.is_recoverable,
            "last_checkpoint_id": self.last_checkpoint_id,
            "resume_from_batch": self.resume_from_batch,
            "halted_entity": self.halted_entity,
            "halt_reason": self.halt_reason,
            "recommended_actions": list(self.recommended_actions),
        }


@dataclass(frozen=True)
class ExecutionResult:
    """
    Final result of ``execute_migration_tasks``.

    Attributes:
        run_id: Migration run identifier.
        overall_status: completed, partial, failed, paused or cancelled.
        levels: Dependency levels as executed.
        cycles: Entity types that had to be flushed because of a cycle.
        entity_statuses: Final orchestration record per entity.
        batch_results: Every batch executed, in completion order.
        checkpoint_ids: Checkpoints written during this execution.
        validation_results: Sampled validation per entity.
        errors: Classified failures.
        started_at: When execution started.
        completed_at: When execution stopped.
        recovery: Recovery guidance when the run did not complete.
    """

    run_id: str
    overall_status: RunStatus
    levels: tuple[tuple[str, ...], ...]
    cycles: tuple[str, ...]
    entity_statuses: tuple[EntityMigrationStatus, ...]
    batch_results: tuple[BatchResult, ...]
    checkpoint_ids: tuple[str, ...]
    validation_results: tuple[ValidationResult, ...]
    errors: tuple[MigrationError, ...]
    started_at: datetime
    completed_at: datetime
    recovery: RecoveryInfo

    def _entities_with(self, status: EntityStatus) -> list[str]:
        return [s.entity_type for s in self.entity_statuses if s.status is status]

    @property
    def entities_processed(self) -> list[str]:
        return self._entities_with(EntityStatus.COMPLETED)

    @property
    def entities_failed(self) -> list[str]:
        return self._entities_with(EntityStatus.FAILED)

    @property
    def entities_skipped(self) -> list[str]:
        return self._entities_with(EntityStatus.SKIPPED)

    @property
    def total_records_processed(self) -> int:
        return sum(s.records_processed for s in self.entity_statuses)

    @property
    def total_records_failed(self) -> int:
        return sum(s.records_failed for s in self.entity_statuses)

    @property
    def duration_ms(self) -> float:
        return (self.completed_at - self.started_at).total_seconds() * 1000

    @property
    def average_throughput(self) -> float:
        if self.duration_ms <= 0:
            return 0.0
        return self.total_records_processed / self.duration_ms * 1000

    def status_of(self, entity_type: str) -> EntityMigrationStatus | None:
        for status in self.entity_statuses:
            if status.entity_type == entity_type:
                return status
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "overall_status": self.overall_status.value,
            "levels": [list(level) for level in self.levels],
            "cycles": list(self.cycles),
            "entities_processed": self.entities_processed,
            "entities_failed": self.entities_failed,
            "entities_skipped": self.entities_skipped,
            "total_records_processed": self.total_records_processed,
            "total_records_failed": self.total_records_failed,
            "entity_statuses": [status.to_dict() for status in self.entity_statuses],
            "batch_results": [batch.to_dict() for batch in self.batch_results],
            "checkpoint_ids": list(self.checkpoint_ids),
            "validation_results": [v.to_dict() for v in self.validation_results],
            "errors": [error.to_dict() for error in self.errors],
            "execution_summary": {
                "started_at": _iso(self.started_at),
                "completed_at": _iso(self.completed_at),
                "duration_ms": self.duration_ms,
                "average_throughput": self.average_throughput,
            },
            "recovery": self.recovery.to_dict(),
        }


# =============================================================================
# Progress
# =============================================================================


@dataclass(frozen=True)
class BatchInfo:
    """
    Details of the batch behind a progress update.

    Attributes:
        batch_number: Zero-based batch index.
        batch_size: Records in the batch.
        duration_ms: Wall-clock duration of the batch.
        memory_usage_mb: Process memory after the batch, if measured.
    """

    batch_number: int
    batch_size: int
    duration_ms: float
    memory_usage_mb: float | None = None


@dataclass(frozen=True)
class ProgressSnapshot:
    """
    Point-in-time progress of one entity.

    Snapshots are appended to a per-entity history and never edited; the
    last one is the current state.
    """

    snapshot_id: str
    entity_type: str
    timestamp: datetime
    status: ProgressStatus
    records_processed: int
    records_remaining: int
    records_total: int
    percentage_complete: float
    records_per_second: float
    average_batch_time_ms: float
    memory_usage_mb: float
    start_time: datetime
    elapsed_time_ms: float
    remaining_time_ms: float | None
    estimated_completion_time: datetime | None
    current_batch: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "entity_type": self.entity_type,
            "timestamp": _iso(self.timestamp),
            "status": self.status.value,
            "progress": {
                "records_processed": self.records_processed,
                "records_remaining": self.records_remaining,
                "records_total": self.records_total,
                "percentage_complete": self.percentage_complete,
                "current_batch": self.current_batch,
            },
            "performance": {
                "records_per_second": self.records_per_second,
                "average_batch_time_ms": self.average_batch_time_ms,
                "memory_usage_mb": self.memory_usage_mb,
            },
            "timing": {
                "start_time": _iso(self.start_time),
                "elapsed_time_ms": self.elapsed_time_ms,
                "remaining_time_ms": self.remaining_time_ms,
                "estimated_completion_time": _iso(self.estimated_completion_time),
            },
        }


@dataclass(frozen=True)
class PerformanceMetrics:
    """
    Rolling performance statistics for one entity.

    Throughput minimum ignores zero samples. Efficiency scores are between
    0 and 1, the overall score between 0 and 100.
    """

    entity_type: str
    window_size: int
    throughput_current: float
    throughput_average: float
    throughput_peak: float
    throughput_minimum: float
    memory_current_mb: float
    memory_average_mb: float
    memory_peak_mb: float
    batch_time_average_ms: float
    batch_time_fastest_ms: float
    batch_time_slowest_ms: float
    batch_time_stddev_ms: float
    cpu_efficiency: float
    memory_efficiency: float
    overall_score: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "window_size": self.window_size,
            "throughput": {
                "current": self.throughput_current,
                "average": self.throughput_average,
                "peak": self.throughput_peak,
                "minimum": self.throughput_minimum,
            },
            "memory": {
                "current_mb": self.memory_current_mb,
                "average_mb": self.memory_average_mb,
                "peak_mb": self.memory_peak_mb,
            },
            "batch_timing": {
                "average_ms": self.batch_time_average_ms,
                "fastest_ms": self.batch_time_fastest_ms,
                "slowest_ms": self.batch_time_slowest_ms,
                "stddev_ms": self.batch_time_stddev_ms,
            },
            "efficiency": {
                "cpu": self.cpu_efficiency,
                "memory": self.memory_efficiency,
                "overall_score": self.overall_score,
            },
        }


@dataclass
class Alert:
    """
    Threshold-based progress alert.

    Mutable only to mark it resolved.
    """

    alert_id: str
    alert_type: AlertType
    severity: AlertSeverity
    entity_type: str
    message: str
    timestamp: datetime
    threshold: float | None = None
    current_value: float | None = None
    resolved: bool = False
    resolved_at: datetime | None = None

    def resolve(self, at: datetime) -> None:
        self.resolved = True
        self.resolved_at = at

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "message": self.message,
            "timestamp": _iso(self.timestamp),
            "threshold": self.threshold,
            "current_value": self.current_value,
            "resolved": self.resolved,
            "resolved_at": _iso(self.resolved_at),
        }


__all__ = [
    "new_id",
    # Enums
    "ChangeType",
    "DetectionMethod",
    "TaskPriority",
    "ErrorType",
    "ResolutionAction",
    "ProgressStatus",
    "EntityStatus",
    "BatchStatus",
    "RunStatus",
    "AlertType",
    "AlertSeverity",
    # Detection
    "ChangeRecord",
    "DetectionResult",
    # Planning
    "MigrationTask",
    "Checkpoint",
    "CHECKSUM_KEY",
    "EntityMigrationStatus",
    "MigrationRun",
    # Errors
    "ErrorContext",
    "Resolution",
    "MigrationError",
    # Execution
    "BatchResult",
    "ValidationResult",
    "RecoveryInfo",
    "ExecutionResult",
    # Progress
    "BatchInfo",
    "ProgressSnapshot",
    "PerformanceMetrics",
    "Alert",
]
