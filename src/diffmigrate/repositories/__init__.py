"""
Persistence for orchestration records.

Each repository is a ``Protocol`` with an in-memory implementation for
tests and a SQLAlchemy implementation for PostgreSQL and SQLite.

Repositories:
    - CheckpointRepository: Durable resumption points
    - RunRepository: Migration runs and per-entity orchestration status
    - ErrorLogRepository: Classified failures
"""

from diffmigrate.repositories.checkpoint import (
    CheckpointFilter,
    CheckpointRepository,
    InMemoryCheckpointRepository,
    SQLAlchemyCheckpointRepository,
)
from diffmigrate.repositories.error_log import (
    ErrorLogRepository,
    InMemoryErrorLogRepository,
    SQLAlchemyErrorLogRepository,
)
from diffmigrate.repositories.run import (
    InMemoryRunRepository,
    RunRepository,
    SQLAlchemyRunRepository,
)

__all__ = [
    "CheckpointFilter",
    "CheckpointRepository",
    "InMemoryCheckpointRepository",
    "SQLAlchemyCheckpointRepository",
    "ErrorLogRepository",
    "InMemoryErrorLogRepository",
    "SQLAlchemyErrorLogRepository",
    "RunRepository",
    "InMemoryRunRepository",
    "SQLAlchemyRunRepository",
]
