"""
Retry control for migration operations.

Provides:
    - CircuitBreaker: Per-operation breaker (closed -> open -> half-open)
    - RetryController: Retries with exponential backoff behind a breaker,
      and per-record recovery for failed batches

Failures are never raised out of the controller. They come back as
classified :class:`~diffmigrate.models.MigrationError` records inside a
:class:`RetryOutcome` or :class:`BatchRecovery`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Generic, TypeVar

from diffmigrate.classifier import ErrorClassifier
from diffmigrate.exceptions import DEFAULT_RETRY_CONFIG, CircuitBreakerOpenError, RetryConfig
from diffmigrate.models import ErrorContext, MigrationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Batches failing at or above this rate cannot continue
HALT_FAILURE_RATE = 0.5


class CircuitState(Enum):
    """
    Circuit breaker state.

    Attributes:
        CLOSED: Calls proceed normally.
        OPEN: Calls are rejected immediately.
        HALF_OPEN: One trial call is admitted to test recovery.
    """

    CLOSED = "closed"
    """Calls proceed normally."""

    OPEN = "open"
    """Calls are rejected immediately."""

    HALF_OPEN = "half_open"
    """One trial call is admitted to test recovery."""


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """
    Configuration for circuit breaker behavior.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit.
        timeout_seconds: Seconds the circuit stays open before half-open.
        excluded_exceptions: Exception types that never trip the circuit.
    """

    failure_threshold: int = 5
    timeout_seconds: float = 30.0
    excluded_exceptions: tuple[type[Exception], ...] = ()


class CircuitBreaker:
    """
    Circuit breaker for one named operation.

    Opens after ``failure_threshold`` consecutive failures. Once
    ``timeout_seconds`` have passed it becomes half-open and admits exactly
    one trial call; other calls are rejected while the trial is in flight.
    A successful trial closes the circuit, a failed one reopens it.

    Usage:
        >>> breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3), name="orders")
        >>> async with await breaker.protect("orders.migrate_batch"):
        ...     await migrate()
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _check_state(self) -> None:
        if self._state is CircuitState.OPEN and self._opened_at is not None:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self.config.timeout_seconds:
                logger.info(
                    "Circuit breaker '%s' transitioning to half-open after %.1fs",
                    self.name,
                    elapsed,
                )
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False

    def get_time_until_retry(self) -> float:
        """Seconds until the circuit admits a trial call."""
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (self._clock() - self._opened_at))

    async def protect(
        self,
        operation_name: str,
        run_id: str | None = None,
    ) -> CircuitBreakerContext:
        """
        Admit one call through the breaker.

        Args:
            operation_name: Operation name for the rejection message.
            run_id: Optional run id for error context.

        Returns:
            Async context manager that records the outcome of the call.

        Raises:
            CircuitBreakerOpenError: If the circuit is open, or half-open
                with the trial call already in flight.
        """
        async with self._lock:
            self._check_state()
            if self._state is CircuitState.OPEN:
                raise CircuitBreakerOpenError(
                    operation_name=operation_name,
                    time_until_retry=self.get_time_until_retry(),
                    run_id=run_id,
                )
            trial = False
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitBreakerOpenError(
                        operation_name=operation_name,
                        time_until_retry=0.0,
                        run_id=run_id,
                    )
                self._trial_in_flight = True
                trial = True
        return CircuitBreakerContext(self, trial)

    async def _record_success(self, trial: bool) -> None:
        async with self._lock:
            if trial:
                self._trial_in_flight = False
            if self._state is CircuitState.HALF_OPEN:
                logger.info("Circuit breaker '%s' closing after successful trial", self.name)
                self._state = CircuitState.CLOSED
                self._opened_at = None
            self._failure_count = 0

    async def _record_failure(self, exc: BaseException, trial: bool) -> None:
        async with self._lock:
            if trial:
                self._trial_in_flight = False
            if isinstance(exc, self.config.excluded_exceptions) or not isinstance(exc, Exception):
                return
            self._failure_count += 1
            if self._state is CircuitState.HALF_OPEN:
                logger.warning("Circuit breaker '%s' reopening after failed trial", self.name)
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
            elif (
                self._state is CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                logger.warning(
                    "Circuit breaker '%s' opening after %d consecutive failures",
                    self.name,
                    self._failure_count,
                )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()

    def reset(self) -> None:
        """Reset the breaker to closed."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False


class CircuitBreakerContext:
    """Async context manager recording the outcome of one admitted call."""

    def __init__(self, breaker: CircuitBreaker, trial: bool) -> None:
        self._breaker = breaker
        self._trial = trial

    async def __aenter__(self) -> CircuitBreakerContext:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        if exc_val is None:
            await self._breaker._record_success(self._trial)
        else:
            await self._breaker._record_failure(exc_val, self._trial)
        return False


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """
    Result of :meth:`RetryController.execute_with_retry`.

    Attributes:
        success: Whether the operation eventually succeeded.
        result: Operation result on success.
        error: Last classified error on failure.
        attempts: Calls made, including the first.
        circuit_open: True when the breaker rejected the call.
    """

    success: bool
    result: T | None = None
    error: MigrationError | None = None
    attempts: int = 0
    circuit_open: bool = False


@dataclass(frozen=True)
class FailedRecord:
    """A record that could not be migrated, with its classified error."""

    record_id: str
    error: MigrationError


@dataclass(frozen=True)
class BatchRecovery:
    """
    Outcome of per-record recovery of a failed batch.

    Attributes:
        successful: Ids migrated individually, in input order.
        failed: Records that failed, in input order.
        can_continue: False when a failure resolved to halt or the failure
            rate reached 50%.
        halt_reason: Typed reason when the entity cannot continue.
    """

    successful: tuple[str, ...]
    failed: tuple[FailedRecord, ...]
    can_continue: bool
    halt_reason: str | None = None

    @property
    def failed_record_ids(self) -> tuple[str, ...]:
        return tuple(record.record_id for record in self.failed)

    @property
    def errors(self) -> tuple[MigrationError, ...]:
        return tuple(record.error for record in self.failed)

    @property
    def failure_rate(self) -> float:
        total = len(self.successful) + len(self.failed)
        return len(self.failed) / total if total else 0.0


class RetryController:
    """
    Executes operations with retry, backoff and a per-operation breaker.

    Failures are classified by the injected :class:`ErrorClassifier`.
    Retryable failures are retried up to ``retry_config.max_retries`` times
    with exponential backoff. Everything else returns immediately.

    Example:
        >>> controller = RetryController(ErrorClassifier(), RetryConfig(max_retries=2))
        >>> outcome = await controller.execute_with_retry(
        ...     lambda: store.fetch(ids),
        ...     ErrorContext(entity_type="orders", operation="orders.fetch"),
        ... )
        >>> outcome.success
        True
    """

    def __init__(
        self,
        classifier: ErrorClassifier | None = None,
        retry_config: RetryConfig | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self._classifier = classifier or ErrorClassifier(self._retry_config.max_retries)
        self._breaker_config = breaker_config or CircuitBreakerConfig()
        self._sleep = sleep
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    @property
    def errors(self) -> list[MigrationError]:
        """Every error classified through this controller."""
        return self._classifier.errors

    def breaker(self, operation_name: str) -> CircuitBreaker:
        """Get (or create) the breaker for an operation name."""
        if operation_name not in self._breakers:
            self._breakers[operation_name] = CircuitBreaker(
                self._breaker_config, name=operation_name, clock=self._clock
            )
        return self._breakers[operation_name]

    def reset_breakers(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: ErrorContext,
        *,
        run_id: str | None = None,
    ) -> RetryOutcome[T]:
        """
        Run an operation, retrying retryable failures with backoff.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt.
            context: Where the operation runs; ``context.operation`` names
                the circuit breaker (falls back to the entity type).
            run_id: Optional run id for error context.

        Returns:
            The outcome, with the result or the last classified error.
        """
        operation_name = context.operation or context.entity_type or "default"
        breaker = self.breaker(operation_name)
        retry_count = 0

        while True:
            attempt_context = replace(context, retry_attempt=retry_count)
            try:
                guard = await breaker.protect(operation_name, run_id)
            except CircuitBreakerOpenError as exc:
                error = self._classifier.unavailable(exc, attempt_context)
                return RetryOutcome(
                    success=False, error=error, attempts=retry_count, circuit_open=True
                )

            try:
                async with guard:
                    result = await operation()
            except Exception as exc:
                error = self._classifier.handle(exc, attempt_context, retry_count)
                if not error.retryable or retry_count >= self._retry_config.max_retries:
                    if retry_count > 0:
                        logger.error(
                            "Operation '%s' failed after %d retries: %s",
                            operation_name,
                            retry_count,
                            error.message,
                        )
                    return RetryOutcome(success=False, error=error, attempts=retry_count + 1)

                delay_ms = self._retry_config.get_delay_ms(retry_count)
                logger.warning(
                    "Retryable error in '%s' (attempt %d/%d): %s. Retrying in %.1fs",
                    operation_name,
                    retry_count + 1,
                    self._retry_config.max_retries + 1,
                    error.message,
                    delay_ms / 1000.0,
                )
                self._classifier.record_retry_attempt()
                await self._sleep(delay_ms / 1000.0)
                retry_count += 1
                continue

            if retry_count > 0:
                self._classifier.record_retry_success()
                logger.info(
                    "Operation '%s' succeeded after %d retries", operation_name, retry_count
                )
            return RetryOutcome(success=True, result=result, attempts=retry_count + 1)

    async def handle_batch_error(
        self,
        record_ids: Sequence[str],
        process_record: Callable[[str], Awaitable[Any]],
        context: ErrorContext,
        *,
        run_id: str | None = None,
    ) -> BatchRecovery:
        """
        Recover a failed batch by processing its records one at a time.

        Every record is attempted. The entity can continue only if no
        failure resolved to halt and fewer than half of the records failed.

        Args:
            record_ids: Records of the failed batch, in order.
            process_record: Migrates one record.
            context: Batch context; the record id is filled in per record.
            run_id: Optional run id for error context.

        Returns:
            Successful and failed records plus the continue decision.
        """
        successful: list[str] = []
        failed: list[FailedRecord] = []

        for record_id in record_ids:
            outcome = await self.execute_with_retry(
                lambda record_id=record_id: process_record(record_id),
                context.with_record(record_id),
                run_id=run_id,
            )
            if outcome.success:
                successful.append(record_id)
            elif outcome.error is not None:
                failed.append(FailedRecord(record_id, outcome.error))

        halting = next((record.error for record in failed if record.error.is_halting), None)
        failure_rate = len(failed) / len(record_ids) if record_ids else 0.0

        halt_reason: str | None = None
        if halting is not None:
            halt_reason = halting.error_type.value
        elif failure_rate >= HALT_FAILURE_RATE:
            if any(r.error.exception_type == "CircuitBreakerOpenError" for r in failed):
                halt_reason = "temporarily_unavailable"
            else:
                halt_reason = "failure_rate_exceeded"

        if failed:
            logger.warning(
                "Batch recovery for %s batch %s: %d succeeded, %d failed (%.0f%%)%s",
                context.entity_type,
                context.batch_number,
                len(successful),
                len(failed),
                failure_rate * 100,
                f", halting: {halt_reason}" if halt_reason else "",
                extra={"entity_type": context.entity_type},
            )

        return BatchRecovery(
            successful=tuple(successful),
            failed=tuple(failed),
            can_continue=halt_reason is None,
            halt_reason=halt_reason,
        )


__all__ = [
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerContext",
    "RetryOutcome",
    "FailedRecord",
    "BatchRecovery",
    "RetryController",
    "HALT_FAILURE_RATE",
]
