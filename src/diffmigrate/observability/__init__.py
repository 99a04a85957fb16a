"""
Observability utilities for diffmigrate.

Tracing is composition based: every component takes an optional ``tracer``
argument and otherwise builds one with :func:`create_tracer`. Attribute
constants keep span and metric labels consistent across components.
"""

from diffmigrate.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_CHECKPOINT_ID,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_TYPE,
    ATTR_ERROR_TYPE,
    ATTR_LEVEL,
    ATTR_OPERATION,
    ATTR_RECORD_COUNT,
    ATTR_RETRY_COUNT,
    ATTR_RUN_ID,
)
from diffmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_CHECKPOINT_ID",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_TABLE",
    "ATTR_ENTITY_COUNT",
    "ATTR_ENTITY_TYPE",
    "ATTR_ERROR_TYPE",
    "ATTR_LEVEL",
    "ATTR_OPERATION",
    "ATTR_RECORD_COUNT",
    "ATTR_RETRY_COUNT",
    "ATTR_RUN_ID",
]
