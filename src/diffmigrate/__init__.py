"""
diffmigrate - Incremental, resumable migration from a legacy relational schema.

This library provides:
- Baseline analysis of record gaps and column mappings
- Change detection by timestamp window with optional content fingerprints
- Dependency-level planning with checkpointed, parallel batch execution
- Error classification, retry with backoff and circuit breaking
- Live progress tracking with ETA, throughput and alerting
- In-memory and SQLAlchemy (PostgreSQL, SQLite) stores and repositories
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("diffmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from diffmigrate.baseline import (
    BaselineAnalyzer,
    BaselineReport,
    BaselineStatus,
    EntityAnalysis,
    MappingValidation,
)
from diffmigrate.classifier import ErrorAnalysisReport, ErrorClassifier
from diffmigrate.config import (
    AlertThresholds,
    DetectionConfig,
    ExecutionConfig,
    ProgressConfig,
)
from diffmigrate.detector import ChangeDetector
from diffmigrate.engine import MigrationEngine, halted_error
from diffmigrate.entities import (
    ENTITY_DEPENDENCIES,
    ENTITY_TABLE_MAPPING,
    EntityMapping,
    get_entity_mapping,
)
from diffmigrate.exceptions import (
    CheckpointNotFoundError,
    CheckpointNotResumableError,
    CircuitBreakerOpenError,
    ConfigurationError,
    DependencyCycleError,
    DiffMigrateError,
    ExecutionStateError,
    MigrationHaltedError,
    RetryConfig,
    RunNotFoundError,
    TrackingError,
    UnknownEntityError,
)
from diffmigrate.fingerprint import compute_fingerprint
from diffmigrate.metrics import MetricSnapshot, MigrationMetrics, get_migration_metrics
from diffmigrate.models import (
    Alert,
    AlertSeverity,
    AlertType,
    BatchInfo,
    BatchResult,
    BatchStatus,
    ChangeRecord,
    ChangeType,
    Checkpoint,
    DetectionMethod,
    DetectionResult,
    EntityMigrationStatus,
    EntityStatus,
    ErrorContext,
    ErrorType,
    ExecutionResult,
    MigrationError,
    MigrationRun,
    MigrationTask,
    PerformanceMetrics,
    ProgressSnapshot,
    ProgressStatus,
    RecoveryInfo,
    Resolution,
    ResolutionAction,
    RunStatus,
    TaskPriority,
    ValidationResult,
)
from diffmigrate.planner import DependencyGraph, ExecutionPlanner, build_dependency_graph
from diffmigrate.retry import CircuitBreaker, CircuitBreakerConfig, RetryController
from diffmigrate.tracker import ProgressReport, ProgressTracker, SessionStatus, Subscription

__all__ = [
    "__version__",
    # Engine
    "MigrationEngine",
    "halted_error",
    # Components
    "ChangeDetector",
    "BaselineAnalyzer",
    "BaselineReport",
    "BaselineStatus",
    "EntityAnalysis",
    "MappingValidation",
    "ExecutionPlanner",
    "DependencyGraph",
    "build_dependency_graph",
    "ErrorClassifier",
    "ErrorAnalysisReport",
    "RetryController",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "ProgressTracker",
    "ProgressReport",
    "SessionStatus",
    "Subscription",
    "MigrationMetrics",
    "MetricSnapshot",
    "get_migration_metrics",
    "compute_fingerprint",
    # Configuration
    "ExecutionConfig",
    "DetectionConfig",
    "ProgressConfig",
    "AlertThresholds",
    "RetryConfig",
    # Entities
    "EntityMapping",
    "ENTITY_TABLE_MAPPING",
    "ENTITY_DEPENDENCIES",
    "get_entity_mapping",
    # Models
    "ChangeType",
    "DetectionMethod",
    "ChangeRecord",
    "DetectionResult",
    "TaskPriority",
    "MigrationTask",
    "Checkpoint",
    "EntityStatus",
    "EntityMigrationStatus",
    "RunStatus",
    "MigrationRun",
    "ErrorType",
    "ErrorContext",
    "Resolution",
    "ResolutionAction",
    "MigrationError",
    "BatchStatus",
    "BatchResult",
    "ValidationResult",
    "RecoveryInfo",
    "ExecutionResult",
    "BatchInfo",
    "ProgressStatus",
    "ProgressSnapshot",
    "PerformanceMetrics",
    "AlertType",
    "AlertSeverity",
    "Alert",
    # Exceptions
    "DiffMigrateError",
    "ConfigurationError",
    "UnknownEntityError",
    "CircuitBreakerOpenError",
    "CheckpointNotFoundError",
    "CheckpointNotResumableError",
    "DependencyCycleError",
    "ExecutionStateError",
    "RunNotFoundError",
    "MigrationHaltedError",
    "TrackingError",
]
