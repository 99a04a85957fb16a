"""
Standard span and metric attributes for diffmigrate.

Attribute constants shared by every component so spans and metrics can be
filtered on the same keys. Database attributes follow the OpenTelemetry
semantic conventions.

Example:
    >>> from diffmigrate.observability.attributes import ATTR_ENTITY_TYPE, ATTR_RUN_ID
    >>>
    >>> with tracer.span(
    ...     "diffmigrate.planner.execute_entity",
    ...     {ATTR_RUN_ID: run_id, ATTR_ENTITY_TYPE: "orders"},
    ... ):
    ...     pass
"""

# =============================================================================
# Migration Run Attributes
# =============================================================================

ATTR_RUN_ID = "diffmigrate.run.id"
"""Identifier of the migration run (string)."""

ATTR_ENTITY_TYPE = "diffmigrate.entity.type"
"""Logical entity type being migrated (e.g., 'orders')."""

ATTR_LEVEL = "diffmigrate.level"
"""Zero-based dependency level index (integer)."""

ATTR_ENTITY_COUNT = "diffmigrate.entity.count"
"""Number of entity types in an operation (integer)."""

# =============================================================================
# Batch Attributes
# =============================================================================

ATTR_BATCH_NUMBER = "diffmigrate.batch.number"
"""Zero-based batch index within an entity (integer)."""

ATTR_BATCH_SIZE = "diffmigrate.batch.size"
"""Number of records in a batch (integer)."""

ATTR_RECORD_COUNT = "diffmigrate.record.count"
"""Number of records touched by an operation (integer)."""

ATTR_CHECKPOINT_ID = "diffmigrate.checkpoint.id"
"""Identifier of a checkpoint (string)."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_TYPE = "diffmigrate.error.type"
"""Classified error type (network, data_integrity, ...)."""

ATTR_OPERATION = "diffmigrate.operation"
"""Logical operation name used for retry and circuit breaking."""

ATTR_RETRY_COUNT = "diffmigrate.retry.count"
"""Number of retries performed (integer)."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'SELECT', 'INSERT')."""

ATTR_DB_TABLE = "db.sql.table"
"""Table targeted by the statement."""


__all__ = [
    "ATTR_RUN_ID",
    "ATTR_ENTITY_TYPE",
    "ATTR_LEVEL",
    "ATTR_ENTITY_COUNT",
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_RECORD_COUNT",
    "ATTR_CHECKPOINT_ID",
    "ATTR_ERROR_TYPE",
    "ATTR_OPERATION",
    "ATTR_RETRY_COUNT",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_DB_TABLE",
]
