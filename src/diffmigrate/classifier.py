"""
Error classification for migration failures.

The :class:`ErrorClassifier` turns raw exceptions raised by stores and record
migrators into :class:`~diffmigrate.models.MigrationError` records. Each one
gets a type from a closed taxonomy, a severity and a retryable flag, and
:meth:`ErrorClassifier.determine_resolution` routes it to retry, skip or halt
through a fixed policy table.

Classification order:
    1. ``BusinessRuleViolation`` and ``MemoryError`` by exception type
    2. Message patterns per error type
    3. ``TimeoutError``, ``ConnectionError`` and ``OSError`` by exception type
    4. Keyword fallbacks (timeout, constraint, column, ...)
    5. Everything else is a system error
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any

from diffmigrate.exceptions import BusinessRuleViolation, CircuitBreakerOpenError, ErrorSeverity
from diffmigrate.models import (
    ErrorContext,
    ErrorType,
    MigrationError,
    Resolution,
    ResolutionAction,
    new_id,
)

logger = logging.getLogger(__name__)


_PATTERNS: tuple[tuple[ErrorType, tuple[re.Pattern[str], ...]], ...] = (
    (
        ErrorType.NETWORK,
        (
            re.compile(r"connection\s+(timed?\s?out|refused|reset)", re.IGNORECASE),
            re.compile(r"network\s+(error|timeout)", re.IGNORECASE),
            re.compile(r"econnreset|econnrefused|etimedout", re.IGNORECASE),
            re.compile(r"socket\s+hang\s+up", re.IGNORECASE),
        ),
    ),
    (
        ErrorType.DATA_INTEGRITY,
        (
            re.compile(r"foreign\s+key\s+(constraint|violation)", re.IGNORECASE),
            re.compile(r"unique\s+(constraint|violation)", re.IGNORECASE),
            re.compile(r"check\s+constraint", re.IGNORECASE),
            re.compile(r"not\s+null\s+(constraint|violation)", re.IGNORECASE),
            re.compile(r"duplicate\s+key", re.IGNORECASE),
        ),
    ),
    (
        ErrorType.SCHEMA_MISMATCH,
        (
            re.compile(r"column\s+.*\s+does\s+not\s+exist", re.IGNORECASE),
            re.compile(r"table\s+.*\s+does\s+not\s+exist", re.IGNORECASE),
            re.compile(r"data\s+type\s+mismatch", re.IGNORECASE),
            re.compile(r"invalid\s+input\s+syntax", re.IGNORECASE),
        ),
    ),
    (
        ErrorType.VALIDATION,
        (
            re.compile(r"validation\s+(failed|error)", re.IGNORECASE),
            re.compile(r"record\s+count\s+mismatch", re.IGNORECASE),
            re.compile(r"checksum\s+(failed|mismatch)", re.IGNORECASE),
        ),
    ),
)

_TRANSIENT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"connection.*timeout", re.IGNORECASE),
    re.compile(r"temporary.*lock", re.IGNORECASE),
    re.compile(r"deadlock", re.IGNORECASE),
    re.compile(r"server.*unavailable", re.IGNORECASE),
    re.compile(r"too.*many.*connections", re.IGNORECASE),
)

_SUGGESTED_FIXES: dict[ErrorType, str] = {
    ErrorType.NETWORK: "Check network connectivity and increase connection timeout",
    ErrorType.DATA_INTEGRITY: "Review and fix source data quality issues",
    ErrorType.SCHEMA_MISMATCH: "Synchronize database schemas before migration",
    ErrorType.VALIDATION: "Review validation rules and data quality standards",
    ErrorType.SYSTEM: "Check system resources and configuration",
    ErrorType.BUSINESS_RULE: "Review skipped records against the business rules",
}

NETWORK_STEPS = (
    "Check network connectivity to databases",
    "Verify database server availability",
    "Review connection timeout settings",
    "Resume migration after connectivity is restored",
)
DATA_INTEGRITY_STEPS = (
    "Review source data quality for the failing record",
    "Check foreign key relationships in source database",
    "Verify constraint definitions match between source and destination",
    "Fix data issues in source system or create data transformation rule",
    "Resume migration after data issues are resolved",
)
SCHEMA_MISMATCH_STEPS = (
    "Compare source and destination table schemas",
    "Update destination schema to match source requirements",
    "Run schema migration if necessary",
    "Update field mappings in migration configuration",
    "Restart migration after schema synchronization",
)
VALIDATION_STEPS = (
    "Review validation rules and data quality",
    "Check if validation criteria are appropriate",
    "Fix source data or update validation rules",
    "Resume migration after validation issues are resolved",
)
SYSTEM_STEPS = (
    "Review the error logs for the failing operation",
    "Check system resources and configuration",
    "Resume migration after the cause is fixed",
)


def _message_of(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error
    return str(error) or type(error).__name__


def is_memory_related(error: MigrationError) -> bool:
    """True for system errors caused by memory pressure."""
    if error.exception_type == "MemoryError":
        return True
    message = error.message.lower()
    return "memory" in message or "heap" in message


@dataclass(frozen=True)
class ErrorPattern:
    """A recurring failure and its suggested fix."""

    pattern: str
    frequency: int
    suggested_fix: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "frequency": self.frequency,
            "suggested_fix": self.suggested_fix,
        }


@dataclass(frozen=True)
class ErrorAnalysisReport:
    """
    Diagnostic summary over every failure classified during a run.

    Attributes:
        total_errors: Number of classified failures.
        errors_by_type: Counts per error type value.
        errors_by_severity: Counts per severity value.
        retries_attempted: Retries performed by the retry controller.
        successful_retries: Retries that eventually succeeded.
        critical_errors: Critical or halting failures.
        patterns: Most frequent failures, at most five.
        recovery_recommendations: Remediation derived from critical failures.
        migration_halted: Whether any failure resolved to halt.
        data_integrity_risk: none, low, medium or high.
        recoverability_score: Share of retryable failures (0-100).
    """

    total_errors: int
    errors_by_type: dict[str, int]
    errors_by_severity: dict[str, int]
    retries_attempted: int
    successful_retries: int
    critical_errors: tuple[MigrationError, ...]
    patterns: tuple[ErrorPattern, ...]
    recovery_recommendations: tuple[str, ...]
    migration_halted: bool
    data_integrity_risk: str
    recoverability_score: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": {
                "total_errors": self.total_errors,
                "errors_by_type": self.errors_by_type,
                "errors_by_severity": self.errors_by_severity,
                "retries_attempted": self.retries_attempted,
                "successful_retries": self.successful_retries,
            },
            "critical_errors": [error.to_dict() for error in self.critical_errors],
            "patterns": [pattern.to_dict() for pattern in self.patterns],
            "recovery_recommendations": list(self.recovery_recommendations),
            "system_health_impact": {
                "migration_halted": self.migration_halted,
                "data_integrity_risk": self.data_integrity_risk,
                "recoverability_score": self.recoverability_score,
            },
        }


@dataclass
class _RetryCounters:
    attempted: int = 0
    successful: int = 0


class ErrorClassifier:
    """
    Classifies raw failures and routes them through the resolution table.

    The classifier also keeps the most recent ``max_error_history`` errors it
    handled so a diagnostic report can be produced at the end of a run.

    Example:
        >>> classifier = ErrorClassifier(max_retries=3)
        >>> error = classifier.handle(
        ...     Exception("duplicate key value violates unique constraint"),
        ...     ErrorContext(entity_type="orders", record_id="42"),
        ... )
        >>> error.error_type, error.resolution.action
        (<ErrorType.DATA_INTEGRITY: 'data_integrity'>, <ResolutionAction.HALT: 'halt'>)
    """

    def __init__(self, max_retries: int = 3, *, max_error_history: int = 1000) -> None:
        self._max_retries = max_retries
        self._errors: deque[MigrationError] = deque(maxlen=max_error_history)
        self._retries = _RetryCounters()

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def errors(self) -> list[MigrationError]:
        """Retained errors, oldest first."""
        return list(self._errors)

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def classify_type(self, error: BaseException | str) -> ErrorType:
        """Map an exception or message to one error type."""
        if isinstance(error, BusinessRuleViolation):
            return ErrorType.BUSINESS_RULE
        if isinstance(error, MemoryError):
            return ErrorType.SYSTEM

        message = _message_of(error)
        for error_type, patterns in _PATTERNS:
            if any(pattern.search(message) for pattern in patterns):
                return error_type

        if isinstance(error, (TimeoutError, ConnectionError, OSError)):
            return ErrorType.NETWORK

        lowered = message.lower()
        if "timeout" in lowered:
            return ErrorType.NETWORK
        if "constraint" in lowered or "violation" in lowered:
            return ErrorType.DATA_INTEGRITY
        if "column" in lowered or "table" in lowered:
            return ErrorType.SCHEMA_MISMATCH
        return ErrorType.SYSTEM

    @staticmethod
    def assess_severity(error_type: ErrorType, message: str) -> ErrorSeverity:
        lowered = message.lower()
        if error_type in (ErrorType.DATA_INTEGRITY, ErrorType.SCHEMA_MISMATCH):
            return ErrorSeverity.HIGH
        if error_type is ErrorType.NETWORK:
            return ErrorSeverity.MEDIUM if "timeout" in lowered else ErrorSeverity.HIGH
        if error_type is ErrorType.VALIDATION:
            return ErrorSeverity.HIGH if "critical" in lowered else ErrorSeverity.MEDIUM
        if error_type is ErrorType.BUSINESS_RULE:
            return ErrorSeverity.MEDIUM
        if "critical" in lowered or "fatal" in lowered:
            return ErrorSeverity.CRITICAL
        return ErrorSeverity.MEDIUM

    @staticmethod
    def is_retryable(
        error_type: ErrorType,
        message: str,
        exception_type: str | None = None,
    ) -> bool:
        if error_type is ErrorType.NETWORK:
            return True
        if error_type is ErrorType.SYSTEM:
            lowered = message.lower()
            if exception_type == "MemoryError" or "memory" in lowered or "heap" in lowered:
                return True
        if error_type is ErrorType.BUSINESS_RULE:
            return False
        return any(pattern.search(message) for pattern in _TRANSIENT_PATTERNS)

    def classify(
        self,
        error: BaseException | str,
        context: ErrorContext,
        retry_count: int = 0,
    ) -> MigrationError:
        """
        Convert a raw failure into a MigrationError without a resolution.

        Args:
            error: The exception (or message) that was caught.
            context: Where the failure happened.
            retry_count: Retries already performed for the operation.

        Returns:
            The classified error.
        """
        message = _message_of(error)
        exception_type = None if isinstance(error, str) else type(error).__name__
        error_type = self.classify_type(error)
        return MigrationError(
            error_id=new_id(),
            error_type=error_type,
            severity=self.assess_severity(error_type, message),
            message=message,
            context=context,
            retryable=self.is_retryable(error_type, message, exception_type),
            retry_count=retry_count,
            max_retries=self._max_retries,
            exception_type=exception_type,
        )

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def determine_resolution(self, error: MigrationError) -> Resolution:
        """
        Route a classified error through the fixed resolution table.

        Args:
            error: Classified error.

        Returns:
            The resolution for the error.
        """
        if error.error_type is ErrorType.NETWORK:
            if error.retryable and error.retry_count < error.max_retries:
                return Resolution(
                    action=ResolutionAction.RETRY,
                    reason="Network error is retryable with exponential backoff",
                    automated_fix=(
                        f"Retry attempt {error.retry_count + 1}/{error.max_retries} "
                        "with exponential backoff"
                    ),
                )
            return Resolution(
                action=ResolutionAction.HALT,
                reason="Max retries exceeded for network error",
                manual_steps=NETWORK_STEPS,
            )

        if error.error_type is ErrorType.DATA_INTEGRITY:
            return Resolution(
                action=ResolutionAction.HALT,
                reason="Data integrity error requires manual review",
                manual_steps=DATA_INTEGRITY_STEPS,
            )

        if error.error_type is ErrorType.SCHEMA_MISMATCH:
            return Resolution(
                action=ResolutionAction.HALT,
                reason="Schema mismatch requires schema synchronization",
                manual_steps=SCHEMA_MISMATCH_STEPS,
            )

        if error.error_type is ErrorType.VALIDATION:
            if error.severity in (ErrorSeverity.LOW, ErrorSeverity.MEDIUM):
                return Resolution(
                    action=ResolutionAction.SKIP,
                    reason="Validation error is non-critical, can continue migration",
                    automated_fix="Record marked as failed validation, migration continues",
                )
            return Resolution(
                action=ResolutionAction.HALT,
                reason="Critical validation error requires investigation",
                manual_steps=VALIDATION_STEPS,
            )

        if error.error_type is ErrorType.BUSINESS_RULE:
            return Resolution(
                action=ResolutionAction.SKIP,
                reason="Business rule violation, record skipped with logging",
                automated_fix="Record marked as business rule violation, logged for review",
            )

        if is_memory_related(error):
            return Resolution(
                action=ResolutionAction.RETRY,
                reason="System resource error, retry with reduced batch size",
                automated_fix="Reduce batch size and retry operation",
            )
        return Resolution(
            action=ResolutionAction.HALT,
            reason="System error requires investigation",
            manual_steps=SYSTEM_STEPS,
        )

    def handle(
        self,
        error: BaseException | str,
        context: ErrorContext,
        retry_count: int = 0,
    ) -> MigrationError:
        """
        Classify, resolve, log and keep a failure.

        Returns:
            The classified error with its resolution attached.
        """
        migration_error = self.classify(error, context, retry_count)
        resolution = self.determine_resolution(migration_error)
        migration_error.attach_resolution(resolution)
        self._errors.append(migration_error)

        logger.log(
            migration_error.severity.log_level,
            "Classified %s error on %s (record=%s, batch=%s): %s -> %s",
            migration_error.error_type.value,
            context.entity_type or context.operation,
            context.record_id,
            context.batch_number,
            migration_error.message,
            resolution.action.value,
            extra={
                "entity_type": context.entity_type,
                "error_type": migration_error.error_type.value,
                "error_id": migration_error.error_id,
            },
        )
        return migration_error

    def unavailable(
        self,
        exc: CircuitBreakerOpenError,
        context: ErrorContext,
    ) -> MigrationError:
        """
        Record an operation rejected by an open circuit breaker.

        This is reported as "temporarily unavailable, retry later" rather
        than as a failure of the operation itself.
        """
        migration_error = MigrationError(
            error_id=new_id(),
            error_type=ErrorType.NETWORK,
            severity=ErrorSeverity.MEDIUM,
            message=exc.message,
            context=context,
            retryable=True,
            retry_count=context.retry_attempt,
            max_retries=self._max_retries,
            exception_type=type(exc).__name__,
        )
        migration_error.attach_resolution(
            Resolution(
                action=ResolutionAction.RETRY,
                reason=f"'{exc.operation_name}' is temporarily unavailable, retry later",
                manual_steps=(f"Wait {exc.time_until_retry:.0f}s before retrying",),
                automated_fix="Circuit breaker rejected the call after repeated failures",
            )
        )
        self._errors.append(migration_error)
        logger.warning(
            "Operation %s temporarily unavailable (circuit open, retry in %.1fs)",
            exc.operation_name,
            exc.time_until_retry,
            extra={"entity_type": context.entity_type, "error_id": migration_error.error_id},
        )
        return migration_error

    def record_retry_attempt(self) -> None:
        """Count one retry performed by the retry controller."""
        self._retries.attempted += 1

    def record_retry_success(self) -> None:
        """Count an operation that succeeded after at least one retry."""
        self._retries.successful += 1

    def clear(self) -> None:
        self._errors.clear()
        self._retries = _RetryCounters()

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def analysis_report(self) -> ErrorAnalysisReport:
        """
        Summarize the retained errors.

        Returns:
            The diagnostic report for the errors handled so far.
        """
        errors = self._errors
        critical = tuple(
            error
            for error in errors
            if error.severity is ErrorSeverity.CRITICAL
            or (error.resolution is not None and error.resolution.action is ResolutionAction.HALT)
        )

        pattern_counts: Counter[tuple[ErrorType, str]] = Counter(
            (error.error_type, error.message[:50]) for error in errors
        )
        patterns = tuple(
            ErrorPattern(
                pattern=f"{error_type.value}:{message}",
                frequency=frequency,
                suggested_fix=_SUGGESTED_FIXES[error_type],
            )
            for (error_type, message), frequency in pattern_counts.most_common(5)
        )

        integrity_errors = sum(1 for e in errors if e.error_type is ErrorType.DATA_INTEGRITY)
        if integrity_errors == 0:
            risk = "none"
        elif integrity_errors < 10:
            risk = "low"
        elif integrity_errors < 50:
            risk = "medium"
        else:
            risk = "high"

        retryable = sum(1 for error in errors if error.retryable)
        score = math.floor(retryable / len(errors) * 100) if errors else 100

        return ErrorAnalysisReport(
            total_errors=len(errors),
            errors_by_type=dict(Counter(error.error_type.value for error in errors)),
            errors_by_severity=dict(Counter(error.severity.value for error in errors)),
            retries_attempted=self._retries.attempted,
            successful_retries=self._retries.successful,
            critical_errors=critical,
            patterns=patterns,
            recovery_recommendations=tuple(_recovery_recommendations(critical)),
            migration_halted=any(
                e.resolution is not None and e.resolution.action is ResolutionAction.HALT
                for e in critical
            ),
            data_integrity_risk=risk,
            recoverability_score=score,
        )


def _recovery_recommendations(critical: tuple[MigrationError, ...]) -> list[str]:
    types = {error.error_type for error in critical}
    recommendations: list[str] = []
    if ErrorType.NETWORK in types:
        recommendations.append("Verify database connectivity and network stability")
        recommendations.append("Consider increasing connection timeouts and retry limits")
    if ErrorType.DATA_INTEGRITY in types:
        recommendations.append("Perform comprehensive source data quality analysis")
        recommendations.append("Fix foreign key relationships and constraint violations")
        recommendations.append("Consider implementing data validation pre-processing")
    if ErrorType.SCHEMA_MISMATCH in types:
        recommendations.append("Run schema comparison and synchronization")
        recommendations.append("Update field mappings and transformation rules")
        recommendations.append("Validate entity relationships match between systems")
    if ErrorType.VALIDATION in types:
        recommendations.append("Review post-migration validation criteria")
        recommendations.append("Implement data quality checks in migration pipeline")
    if not recommendations:
        recommendations.append("Review error logs for specific issues")
    return recommendations


__all__ = [
    "ErrorClassifier",
    "ErrorAnalysisReport",
    "ErrorPattern",
    "is_memory_related",
    "NETWORK_STEPS",
    "DATA_INTEGRITY_STEPS",
    "SCHEMA_MISMATCH_STEPS",
    "VALIDATION_STEPS",
    "SYSTEM_STEPS",
]
