"""
Unit tests for the configuration models.

Tests cover:
- Defaults of ExecutionConfig, DetectionConfig and ProgressConfig
- Range validation with every violation reported at once
- Cross-field rules (content hash field, retry delays)
- camelCase aliases and from_dict/to_dict
- Derived retry settings
"""

import pytest

from diffmigrate.config import AlertThresholds, DetectionConfig, ExecutionConfig, ProgressConfig
from diffmigrate.exceptions import ConfigurationError, RetryConfig


class TestExecutionConfig:
    """Tests for ExecutionConfig."""

    def test_defaults(self) -> None:
        config = ExecutionConfig()

        assert config.batch_size == 1000
        assert config.max_retry_attempts == 3
        assert config.checkpoint_interval == 10
        assert config.parallel_entity_limit == 3
        assert config.timeout_ms == 300_000
        assert config.enable_validation is True
        assert config.validation_sample_size == 100
        assert config.strict_cycles is False

    def test_accepts_boundary_values(self) -> None:
        config = ExecutionConfig(
            batch_size=5000,
            max_retry_attempts=0,
            parallel_entity_limit=10,
            timeout_ms=1000,
        )

        assert config.batch_size == 5000
        assert config.max_retry_attempts == 0
        assert config.parallel_entity_limit == 10
        assert config.timeout_seconds == 1.0

    @pytest.mark.parametrize(
        "field,value",
        [
            ("batch_size", 0),
            ("batch_size", 5001),
            ("max_retry_attempts", 11),
            ("max_retry_attempts", -1),
            ("parallel_entity_limit", 0),
            ("parallel_entity_limit", 11),
            ("timeout_ms", 999),
            ("checkpoint_interval", 0),
        ],
    )
    def test_rejects_out_of_range(self, field: str, value: int) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            ExecutionConfig(**{field: value})

        assert len(exc_info.value.violations) == 1
        assert exc_info.value.config_name == "ExecutionConfig"

    def test_reports_every_violation(self) -> None:
        """All invalid fields are reported in one error."""
        with pytest.raises(ConfigurationError) as exc_info:
            ExecutionConfig(batch_size=0, timeout_ms=10, parallel_entity_limit=50)

        assert len(exc_info.value.violations) == 3
        assert exc_info.value.error_code == "INVALID_CONFIGURATION"

    def test_rejects_unknown_option(self) -> None:
        with pytest.raises(ConfigurationError):
            ExecutionConfig(batch_sise=10)

    def test_retry_max_delay_must_cover_base(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            ExecutionConfig(retry_base_delay_ms=5000, retry_max_delay_ms=1000)

        assert any("retryMaxDelayMs" in v for v in exc_info.value.violations)

    def test_camel_case_aliases(self) -> None:
        config = ExecutionConfig(batchSize=250, maxRetryAttempts=5, parallelEntityLimit=2)

        assert config.batch_size == 250
        assert config.max_retry_attempts == 5
        assert config.parallel_entity_limit == 2

    def test_from_dict_and_to_dict(self) -> None:
        config = ExecutionConfig.from_dict({"batchSize": 10, "checkpoint_interval": 2})
        data = config.to_dict()

        assert data["batch_size"] == 10
        assert data["checkpoint_interval"] == 2
        assert ExecutionConfig.from_dict(data) == config

    def test_is_frozen(self) -> None:
        config = ExecutionConfig()

        with pytest.raises(Exception):
            config.batch_size = 5  # type: ignore[misc]

    def test_retry_config(self) -> None:
        config = ExecutionConfig(
            max_retry_attempts=4,
            retry_base_delay_ms=200,
            retry_max_delay_ms=2000,
            retry_jitter_factor=0,
        )
        retry = config.retry_config()

        assert isinstance(retry, RetryConfig)
        assert retry.max_retries == 4
        assert retry.get_delay_ms(0) == 200
        assert retry.get_delay_ms(10) == 2000


class TestDetectionConfig:
    """Tests for DetectionConfig."""

    def test_defaults(self) -> None:
        config = DetectionConfig()

        assert config.timestamp_field == "updated_at"
        assert config.enable_content_hashing is False
        assert config.hash_algorithm == "sha256"
        assert config.batch_size == 1000
        assert config.sample_percentage is None

    def test_hashing_requires_hash_field(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            DetectionConfig(enable_content_hashing=True)

        assert exc_info.value.violations == [
            "contentHashField is required when content hashing is enabled"
        ]

    def test_hashing_with_hash_field(self) -> None:
        config = DetectionConfig(enable_content_hashing=True, content_hash_field="content_hash")

        assert config.content_hash_field == "content_hash"

    def test_rejects_unknown_algorithm(self) -> None:
        with pytest.raises(ConfigurationError):
            DetectionConfig(hash_algorithm="crc32")

    @pytest.mark.parametrize("value", [0, 100.5, -1])
    def test_sample_percentage_range(self, value: float) -> None:
        with pytest.raises(ConfigurationError):
            DetectionConfig(sample_percentage=value)

    def test_blank_timestamp_field(self) -> None:
        with pytest.raises(ConfigurationError):
            DetectionConfig(timestamp_field="  ")

    def test_exclude_fields_from_list(self) -> None:
        config = DetectionConfig.from_dict({"excludeFields": ["notes", "audit"]})

        assert config.exclude_fields == ("notes", "audit")


class TestProgressConfig:
    """Tests for ProgressConfig and AlertThresholds."""

    def test_defaults(self) -> None:
        config = ProgressConfig()

        assert config.enable_alerts is True
        assert config.alert_dedup_seconds == 300
        assert config.alert_thresholds.low_throughput == 100
        assert config.alert_thresholds.high_memory_mb == 1024
        assert config.alert_thresholds.stalled_minutes == 5

    @pytest.mark.parametrize(
        "field,value",
        [
            ("update_interval_ms", 99),
            ("update_interval_ms", 30_001),
            ("history_retention_hours", 0),
            ("history_retention_hours", 721),
            ("performance_window_size", 4),
            ("performance_window_size", 1001),
        ],
    )
    def test_rejects_out_of_range(self, field: str, value: float) -> None:
        with pytest.raises(ConfigurationError):
            ProgressConfig(**{field: value})

    def test_stalled_minutes_minimum(self) -> None:
        with pytest.raises(ConfigurationError):
            AlertThresholds(stalled_minutes=0.5)

    def test_nested_thresholds_from_dict(self) -> None:
        config = ProgressConfig.from_dict(
            {"alertThresholds": {"lowThroughput": 50, "stalledMinutes": 2}}
        )

        assert config.alert_thresholds.low_throughput == 50
        assert config.alert_thresholds.stalled_minutes == 2
        assert config.alert_thresholds.high_memory_mb == 1024
