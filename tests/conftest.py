"""
Shared pytest fixtures for the diffmigrate tests.

This module provides:
- Clock fixtures (fake_clock, no_sleep)
- Store fixtures (source, destination, migrator) backed by memory
- Repository fixtures (checkpoint_repo, run_repo, error_log)
- Configuration fixtures (fast_config)
- SQLite fixtures (sqlite_engine) with the orchestration schema created
- OpenTelemetry metrics fixtures (metric_reader, meter_provider)
- Module state cleanup for the metrics registry
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from diffmigrate.config import ExecutionConfig
from diffmigrate.metrics import clear_metrics_registry
from diffmigrate.repositories import (
    InMemoryCheckpointRepository,
    InMemoryErrorLogRepository,
    InMemoryRunRepository,
)
from diffmigrate.schemas import create_schema
from diffmigrate.stores.in_memory import InMemoryDestinationStore, InMemorySourceStore
from tests.fixtures import FakeClock, RecordingSleep, ScriptedMigrator


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


# ============================================================================
# Module State
# ============================================================================


@pytest.fixture(autouse=True)
def reset_metrics_state() -> Generator[None, None, None]:
    """Drop the cached meter, the per-run registry and the active-runs gauge."""
    clear_metrics_registry()
    yield
    clear_metrics_registry()


# ============================================================================
# Clocks and Configuration
# ============================================================================


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_config() -> ExecutionConfig:
    """Execution config with 50-record batches and no retry delays."""
    return ExecutionConfig(
        batch_size=50,
        retry_base_delay_ms=0,
        retry_jitter_factor=0,
        enable_validation=False,
    )


# ============================================================================
# Stores and Repositories
# ============================================================================


@pytest.fixture
def source() -> InMemorySourceStore:
    return InMemorySourceStore()


@pytest.fixture
def destination() -> InMemoryDestinationStore:
    return InMemoryDestinationStore()


@pytest.fixture
def migrator(
    source: InMemorySourceStore,
    destination: InMemoryDestinationStore,
    fake_clock: FakeClock,
) -> ScriptedMigrator:
    """Migrator stamping destination rows one hour after the fake clock."""
    return ScriptedMigrator(
        source,
        destination,
        clock=lambda: fake_clock() + timedelta(hours=1),
    )


@pytest.fixture
def checkpoint_repo() -> InMemoryCheckpointRepository:
    return InMemoryCheckpointRepository()


@pytest.fixture
def run_repo() -> InMemoryRunRepository:
    return InMemoryRunRepository()


@pytest.fixture
def error_log() -> InMemoryErrorLogRepository:
    return InMemoryErrorLogRepository()


# ============================================================================
# OpenTelemetry Metrics Fixtures
# ============================================================================


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    """Fresh in-memory reader; pair it with the meter_provider fixture."""
    return InMemoryMetricReader()


@pytest.fixture
def meter_provider(metric_reader: InMemoryMetricReader) -> MeterProvider:
    """
    SDK meter provider reading into ``metric_reader``.

    Passed to MigrationMetrics explicitly instead of being installed
    globally, since the global provider can only be set once per process.
    """
    return MeterProvider(metric_readers=[metric_reader])


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite engine with the orchestration tables created.

    A file database is used so every pooled connection sees the same data.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'diffmigrate.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()
