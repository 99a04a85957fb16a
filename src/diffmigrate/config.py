"""
Configuration models for the orchestration engine.

All configuration objects are immutable pydantic models. Construction
validates every field and cross-field rule, and every violation is reported
at once through :class:`~diffmigrate.exceptions.ConfigurationError`.

Options can be given either in snake_case or in the camelCase spelling used
by existing configuration files (``batchSize``, ``maxRetryAttempts``, ...).

Example:
    >>> config = ExecutionConfig(batch_size=500, parallel_entity_limit=4)
    >>> config.batch_size
    500
    >>> ExecutionConfig(batchSize=0, timeoutMs=10)
    Traceback (most recent call last):
        ...
    diffmigrate.exceptions.ConfigurationError: Invalid ExecutionConfig: ...
"""

from __future__ import annotations

from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from diffmigrate.exceptions import ConfigurationError, RetryConfig

HashAlgorithm = Literal["md5", "sha1", "sha256"]

# Separator used to report several cross-field violations from one validator
_CROSS_FIELD_SEPARATOR = " | "


def _violations(exc: ValidationError) -> list[str]:
    """Flatten a pydantic ValidationError into one message per violation."""
    violations: list[str] = []
    for error in exc.errors():
        message = str(error["msg"]).removeprefix("Value error, ")
        location = ".".join(str(part) for part in error["loc"])
        if not location:
            violations.extend(message.split(_CROSS_FIELD_SEPARATOR))
        else:
            violations.append(f"{location}: {message}")
    return violations


def _raise_cross_field(problems: list[str]) -> None:
    if problems:
        raise ValueError(_CROSS_FIELD_SEPARATOR.join(problems))


class _ConfigModel(BaseModel):
    """Base for configuration models: frozen, strict keys, aggregated errors."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise ConfigurationError(_violations(exc), type(self).__name__) from exc

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """
        Build a configuration from a plain mapping.

        Args:
            data: Options keyed by snake_case or camelCase names.

        Returns:
            Validated configuration.

        Raises:
            ConfigurationError: If any option is invalid.
        """
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the snake_case option names."""
        return self.model_dump(mode="json")


class ExecutionConfig(_ConfigModel):
    """
    Settings for batch execution, retries and checkpointing.

    Attributes:
        batch_size: Records per batch (1-5000).
        max_retry_attempts: Retries per failing operation (0-10).
        checkpoint_interval: Write a checkpoint every N batches (>= 1).
        parallel_entity_limit: Entities executed concurrently per level (1-10).
        timeout_ms: Wall-clock budget per entity in milliseconds (>= 1000).
        enable_validation: Run sampled integrity validation after each entity.
        validation_sample_size: Records compared by validation (1-10000).
        strict_cycles: Raise DependencyCycleError instead of flushing a cycle
            as a final best-effort level.
        retry_base_delay_ms: Delay before the first retry.
        retry_max_delay_ms: Upper bound for any retry delay.
        retry_jitter_factor: Maximum jitter as a fraction of the delay.
        circuit_failure_threshold: Consecutive failures that open a circuit.
        circuit_timeout_seconds: Seconds a circuit stays open.
        validation_match_threshold: Match percentage at which validation passes.
        max_checkpoints_per_entity: Checkpoints kept per run and entity type;
            older ones are pruned after each write (>= 1).
        checkpoint_retention_days: Age in days after which superseded
            checkpoints are removed by cleanup (>= 1).
    """

    batch_size: int = Field(default=1000, ge=1, le=5000)
    max_retry_attempts: int = Field(default=3, ge=0, le=10)
    checkpoint_interval: int = Field(default=10, ge=1)
    parallel_entity_limit: int = Field(default=3, ge=1, le=10)
    timeout_ms: int = Field(default=300_000, ge=1000)
    enable_validation: bool = True
    validation_sample_size: int = Field(default=100, ge=1, le=10_000)
    strict_cycles: bool = False
    retry_base_delay_ms: float = Field(default=1000.0, ge=0)
    retry_max_delay_ms: float = Field(default=30_000.0, ge=0)
    retry_jitter_factor: float = Field(default=0.1, ge=0.0, le=1.0)
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_timeout_seconds: float = Field(default=30.0, gt=0)
    validation_match_threshold: float = Field(default=95.0, ge=0, le=100)
    max_checkpoints_per_entity: int = Field(default=10, ge=1)
    checkpoint_retention_days: int = Field(default=30, ge=1)

    @model_validator(mode="after")
    def _check_cross_field(self) -> Self:
        problems: list[str] = []
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            problems.append(
                f"retryMaxDelayMs ({self.retry_max_delay_ms}) must be >= "
                f"retryBaseDelayMs ({self.retry_base_delay_ms})"
            )
        _raise_cross_field(problems)
        return self

    @property
    def timeout_seconds(self) -> float:
        """Per-entity timeout in seconds."""
        return self.timeout_ms / 1000.0

    def retry_config(self) -> RetryConfig:
        """Backoff settings derived from this configuration."""
        return RetryConfig(
            max_retries=self.max_retry_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            jitter_factor=self.retry_jitter_factor,
        )


class DetectionConfig(_ConfigModel):
    """
    Settings for change detection.

    Attributes:
        timestamp_field: Column holding the last-modified timestamp.
        content_hash_field: Destination column holding the stored fingerprint;
            required when content hashing is enabled.
        enable_content_hashing: Compare fingerprints to drop timestamp-only touches.
        hash_algorithm: md5, sha1 or sha256.
        batch_size: Ids per destination lookup (1-10000).
        exclude_fields: Extra fields left out of the fingerprint.
        sample_percentage: Analyze only this share of changed source rows.
        max_records_to_analyze: Upper bound on source rows fetched.
    """

    timestamp_field: str = Field(default="updated_at", min_length=1)
    content_hash_field: str | None = None
    enable_content_hashing: bool = False
    hash_algorithm: HashAlgorithm = "sha256"
    batch_size: int = Field(default=1000, ge=1, le=10_000)
    exclude_fields: tuple[str, ...] = ()
    sample_percentage: float | None = Field(default=None, gt=0, le=100)
    max_records_to_analyze: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_cross_field(self) -> Self:
        problems: list[str] = []
        if not self.timestamp_field.strip():
            problems.append("timestampField is required")
        if self.enable_content_hashing and not (self.content_hash_field or "").strip():
            problems.append("contentHashField is required when content hashing is enabled")
        _raise_cross_field(problems)
        return self


class AlertThresholds(_ConfigModel):
    """
    Alert thresholds for the progress tracker.

    Attributes:
        low_throughput: Records per second below which throughput is low.
        high_memory_mb: Memory usage above which memory is high.
        stalled_minutes: Minutes without progress before a run counts as stalled.
    """

    low_throughput: float = Field(default=100.0, ge=0)
    high_memory_mb: float = Field(default=1024.0, ge=0)
    stalled_minutes: float = Field(default=5.0, ge=1)


class ProgressConfig(_ConfigModel):
    """
    Settings for progress tracking and alerting.

    Attributes:
        update_interval_ms: Interval of the background maintenance loop.
        history_retention_hours: How long snapshots and resolved alerts are kept.
        performance_window_size: Snapshots used for rolling metrics.
        alert_thresholds: Alert thresholds.
        enable_alerts: Evaluate alert rules on each update.
        alert_dedup_seconds: Window in which an alert of the same type and
            entity is not raised again.
        eta_deviation_minutes: ETA drift that raises an eta_deviation alert.
    """

    update_interval_ms: int = Field(default=5000, ge=100, le=30_000)
    history_retention_hours: float = Field(default=24.0, ge=1, le=720)
    performance_window_size: int = Field(default=20, ge=5, le=1000)
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    enable_alerts: bool = True
    alert_dedup_seconds: float = Field(default=300.0, gt=0)
    eta_deviation_minutes: float = Field(default=30.0, gt=0)


__all__ = [
    "HashAlgorithm",
    "ExecutionConfig",
    "DetectionConfig",
    "AlertThresholds",
    "ProgressConfig",
]
