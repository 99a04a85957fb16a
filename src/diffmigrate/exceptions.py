"""
Exceptions for the diffmigrate orchestration engine.

Every exception raised by the engine derives from :class:`DiffMigrateError`
and carries an :class:`ErrorClassification` describing how severe it is,
whether it can be retried, and what an operator should do about it.

Exception Hierarchy:
    DiffMigrateError (base)
    +-- ConfigurationError
    +-- UnknownEntityError
    +-- BusinessRuleViolation
    +-- CircuitBreakerOpenError
    +-- CheckpointError
    |   +-- CheckpointNotFoundError
    |   +-- CheckpointNotResumableError
    +-- DependencyCycleError
    +-- ExecutionStateError
    +-- RunNotFoundError
    +-- MigrationHaltedError
    +-- TrackingError

Failures coming from the source and destination stores are *not* wrapped in
this hierarchy. They are classified into :class:`diffmigrate.models.MigrationError`
records by :class:`diffmigrate.classifier.ErrorClassifier` instead.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    How bad a failure is for the run.

    Shared by engine exceptions and classified store failures, and mapped
    onto logging levels so both end up in the logs at a consistent level.
    """

    LOW = "low"
    """Informational; the record or run is unaffected."""

    MEDIUM = "medium"
    """Usually handled automatically by retrying or skipping."""

    HIGH = "high"
    """The entity stops until an operator looks at it."""

    CRITICAL = "critical"
    """The process itself is in trouble (memory, fatal driver errors)."""

    @property
    def should_alert(self) -> bool:
        """HIGH and CRITICAL failures page an operator."""
        return self in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL)

    @property
    def log_level(self) -> int:
        return _SEVERITY_LOG_LEVELS[self]


_SEVERITY_LOG_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


class ErrorRecoverability(Enum):
    """What it takes to get past an engine exception."""

    RECOVERABLE = "recoverable"
    """Fix the cause, then resume the run from its checkpoints."""

    TRANSIENT = "transient"
    """Calling again later may succeed without any change."""

    FATAL = "fatal"
    """The call is wrong as made; change the input or configuration."""

    @property
    def should_retry(self) -> bool:
        return self is ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        return self is ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff between attempts of a store operation.

    Retry ``n`` (counted from zero) waits
    ``min(base_delay_ms * exponential_base**n, max_delay_ms)`` plus up to
    ``jitter_factor`` of that amount at random. The total never exceeds
    ``max_delay_ms``, and without jitter the delays never decrease.

    Example:
        >>> RetryConfig(base_delay_ms=100, jitter_factor=0.0).get_delay_ms(3)
        800.0
    """

    max_retries: int = 3
    """Retries after the first attempt."""

    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0

    jitter_factor: float = 0.1
    """Upper bound of the random extra delay, as a fraction of the delay."""

    def __post_init__(self) -> None:
        problems = []
        if self.max_retries < 0:
            problems.append(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay_ms < 0:
            problems.append(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        elif self.max_delay_ms < self.base_delay_ms:
            problems.append(
                f"max_delay_ms ({self.max_delay_ms}) is below base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            problems.append(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            problems.append(f"jitter_factor must be within [0, 1], got {self.jitter_factor}")
        if problems:
            raise ValueError("; ".join(problems))

    def get_delay_ms(self, retry_count: int) -> float:
        """Milliseconds to wait before retry number ``retry_count`` (from zero)."""
        growth = self.exponential_base ** max(retry_count, 0)
        delay = min(self.base_delay_ms * growth, self.max_delay_ms)
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


DEFAULT_RETRY_CONFIG = RetryConfig()
"""Three retries starting at one second, capped at 30 seconds, 10% jitter."""


@dataclass(frozen=True)
class ErrorClassification:
    """
    Operator-facing description of an exception class.

    Each :class:`DiffMigrateError` subclass declares one as
    ``_default_classification``. Halt reports, logs and ``to_dict`` read
    their error code, category and remediation text from it.

    Attributes:
        severity: How bad the failure is.
        recoverability: What it takes to get past it.
        error_code: Stable code, e.g. ``"RUN_NOT_FOUND"``.
        category: Grouping such as ``"checkpoint"`` or ``"configuration"``.
        suggested_action: Remediation shown to the operator.
        retry_config: Backoff to use when the error is transient.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config is not None:
            data["retry_config"] = self.retry_config.to_dict()
        return data


class DiffMigrateError(Exception):
    """
    Base class of every exception the engine raises.

    Args:
        message: What went wrong.
        run_id: Migration run involved, when there is one.
        recoverable: True when the run can be resumed once the cause is fixed.
        suggested_action: Overrides the class-level remediation text.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.HIGH,
        recoverability=ErrorRecoverability.FATAL,
        error_code="DIFFMIGRATE_ERROR",
        category="general",
        suggested_action="Review the migration logs and the last checkpoint before retrying",
    )

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        recoverable: bool = False,
        suggested_action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.run_id = run_id
        self.recoverable = recoverable
        self.suggested_action = suggested_action

    def __str__(self) -> str:
        text = self.message
        if self.run_id:
            text += f" run_id={self.run_id}"
        if self.recoverable:
            text += " (recoverable)"
        return text

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        """Backoff for transient errors; None when retrying is pointless."""
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """Serializable form used in halt reports and API responses."""
        return {
            "message": self.message,
            "run_id": self.run_id,
            "error_code": self.error_code,
            "recoverable": self.recoverable,
            "suggested_action": self.suggested_action or self.classification.suggested_action,
            "classification": self.classification.to_dict(),
        }


class ConfigurationError(DiffMigrateError):
    """
    Raised when configuration is invalid.

    All violated constraints are collected before raising so the caller can
    fix them in one pass.

    Attributes:
        violations: One human-readable message per violated constraint.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.HIGH,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_CONFIGURATION",
        category="configuration",
        suggested_action="Fix the listed configuration values and construct the component again",
    )

    def __init__(self, violations: Sequence[str], config_name: str = "configuration") -> None:
        self.violations = list(violations)
        self.config_name = config_name
        super().__init__(
            message=f"Invalid {config_name}: " + "; ".join(self.violations),
            recoverable=False,
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["violations"] = self.violations
        return result


class UnknownEntityError(DiffMigrateError):
    """
    Raised when an entity type has no registered table mapping.

    Attributes:
        entity_type: The entity type that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.HIGH,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ENTITY",
        category="lookup",
        suggested_action="Register a table mapping for the entity type or fix the name",
    )

    def __init__(self, entity_type: str, known: Sequence[str] = ()) -> None:
        self.entity_type = entity_type
        self.known = sorted(known)
        message = f"Unknown entity type: {entity_type}"
        if self.known:
            message += f". Known entity types: {', '.join(self.known)}"
        super().__init__(message=message, recoverable=False)


class BusinessRuleViolation(DiffMigrateError):
    """
    Raised by record migrators when a record breaks a business rule.

    The classifier maps this exception to the ``business_rule`` error type,
    so the record is skipped and logged instead of halting the entity.

    Attributes:
        rule: Short name of the violated rule.
        record_id: Source id of the offending record, if known.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.MEDIUM,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BUSINESS_RULE_VIOLATION",
        category="data",
        suggested_action="Review the skipped record against the business rule",
    )

    def __init__(self, message: str, *, rule: str | None = None, record_id: str | None = None):
        self.rule = rule
        self.record_id = record_id
        super().__init__(message=message, recoverable=True)


class CircuitBreakerOpenError(DiffMigrateError):
    """
    Raised when an operation is rejected by an open circuit breaker.

    This is a "temporarily unavailable, retry later" condition, distinct
    from a failure of the operation itself.

    Attributes:
        operation_name: Name of the operation that was rejected.
        time_until_retry: Seconds until the circuit admits a trial call.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.MEDIUM,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CIRCUIT_BREAKER_OPEN",
        category="circuit_breaker",
        suggested_action=(
            "The operation is temporarily unavailable after repeated failures. "
            "Wait for the circuit timeout and retry later."
        ),
        retry_config=RetryConfig(
            max_retries=3,
            base_delay_ms=30000.0,
            max_delay_ms=120000.0,
            jitter_factor=0.2,
        ),
    )

    def __init__(
        self,
        operation_name: str,
        time_until_retry: float,
        run_id: str | None = None,
    ) -> None:
        self.operation_name = operation_name
        self.time_until_retry = time_until_retry
        super().__init__(
            message=(
                f"'{operation_name}' is temporarily unavailable, "
                f"retry after {time_until_retry:.1f}s"
            ),
            run_id=run_id,
            recoverable=True,
            suggested_action=f"Wait {time_until_retry:.0f}s before retrying",
        )


class CheckpointError(DiffMigrateError):
    """Base class for checkpoint lookup and resume errors."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.HIGH,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CHECKPOINT_ERROR",
        category="checkpoint",
        suggested_action="List the run's checkpoints and resume from a valid one",
    )


class CheckpointNotFoundError(CheckpointError):
    """
    Raised when a checkpoint id does not exist.

    Attributes:
        checkpoint_id: The id that was not found.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.HIGH,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CHECKPOINT_NOT_FOUND",
        category="checkpoint",
        suggested_action="Verify the checkpoint id returned by pause()",
    )

    def __init__(self, checkpoint_id: str) -> None:
        self.checkpoint_id = checkpoint_id
        super().__init__(message=f"Checkpoint not found: {checkpoint_id}")


class CheckpointNotResumableError(CheckpointError):
    """
    Raised when resuming from a checkpoint that is marked not resumable.

    Attributes:
        checkpoint_id: The rejected checkpoint.
        reason: Why the checkpoint cannot be used.
    """

    def __init__(self, checkpoint_id: str, reason: str, run_id: str | None = None) -> None:
        self.checkpoint_id = checkpoint_id
        self.reason = reason
        super().__init__(
            message=f"Checkpoint {checkpoint_id} is not resumable: {reason}",
            run_id=run_id,
            recoverable=True,
            suggested_action="Re-run change detection and start a new run",
        )


class DependencyCycleError(DiffMigrateError):
    """
    Raised in strict mode when the entity dependency graph has a cycle.

    Attributes:
        entities: Entity types that could not be ordered.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.HIGH,
        recoverability=ErrorRecoverability.FATAL,
        error_code="DEPENDENCY_CYCLE",
        category="planning",
        suggested_action="Break the cycle in the task dependencies",
    )

    def __init__(self, entities: Sequence[str]) -> None:
        self.entities = sorted(entities)
        super().__init__(
            message=f"Dependency cycle between entity types: {', '.join(self.entities)}",
        )


class ExecutionStateError(DiffMigrateError):
    """
    Raised when a control command does not apply to the current state.

    Examples: pausing when nothing is running, resuming a cancelled run.

    Attributes:
        operation: The rejected command.
        current_state: State the planner was in.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.MEDIUM,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INVALID_EXECUTION_STATE",
        category="state",
        suggested_action="Check the run status before sending control commands",
    )

    def __init__(self, operation: str, current_state: str, run_id: str | None = None) -> None:
        self.operation = operation
        self.current_state = current_state
        super().__init__(
            message=f"Cannot {operation} while execution is {current_state}",
            run_id=run_id,
        )


class RunNotFoundError(DiffMigrateError):
    """
    Raised when a migration run id is unknown.

    Attributes:
        run_id: The id that was not found.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.MEDIUM,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RUN_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the migration run id",
    )

    def __init__(self, run_id: str) -> None:
        super().__init__(message=f"Migration run not found: {run_id}", run_id=run_id)


class MigrationHaltedError(DiffMigrateError):
    """
    Raised when a run stops because an entity halted.

    Carries what an operator needs to act: the classified reason, the last
    good checkpoint and a remediation list.

    Attributes:
        entity_type: Entity whose failure halted the run.
        reason: Typed reason (the classified error type value).
        checkpoint_id: Last durable checkpoint for the entity, if any.
        remediation: Ordered remediation steps.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.HIGH,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_HALTED",
        category="execution",
        suggested_action="Follow the remediation steps and resume from the last checkpoint",
    )

    def __init__(
        self,
        entity_type: str,
        reason: str,
        *,
        run_id: str | None = None,
        checkpoint_id: str | None = None,
        remediation: Sequence[str] = (),
    ) -> None:
        self.entity_type = entity_type
        self.reason = reason
        self.checkpoint_id = checkpoint_id
        self.remediation = list(remediation)
        super().__init__(
            message=f"Migration halted on {entity_type}: {reason}",
            run_id=run_id,
            recoverable=True,
            suggested_action=self.remediation[0] if self.remediation else None,
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update(
            {
                "entity_type": self.entity_type,
                "reason": self.reason,
                "checkpoint_id": self.checkpoint_id,
                "remediation": self.remediation,
            }
        )
        return result


class TrackingError(DiffMigrateError):
    """Raised when the progress tracker is used incorrectly."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.LOW,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="TRACKING_ERROR",
        category="tracking",
        suggested_action="Start tracking the entity before reporting progress",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "DEFAULT_RETRY_CONFIG",
    "DiffMigrateError",
    "ConfigurationError",
    "UnknownEntityError",
    "BusinessRuleViolation",
    "CircuitBreakerOpenError",
    "CheckpointError",
    "CheckpointNotFoundError",
    "CheckpointNotResumableError",
    "DependencyCycleError",
    "ExecutionStateError",
    "RunNotFoundError",
    "MigrationHaltedError",
    "TrackingError",
]
