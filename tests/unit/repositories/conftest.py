"""
Backend-parametrized repository fixtures.

Every repository test runs once against the in-memory implementation and
once against the SQLAlchemy implementation on a SQLite file database.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from diffmigrate.repositories import (
    InMemoryCheckpointRepository,
    InMemoryErrorLogRepository,
    InMemoryRunRepository,
    SQLAlchemyCheckpointRepository,
    SQLAlchemyErrorLogRepository,
    SQLAlchemyRunRepository,
)
from diffmigrate.schemas import create_schema

BACKENDS = ["memory", pytest.param("sqlite", marks=pytest.mark.sqlite)]


async def _engine(tmp_path: Path) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'repositories.db'}")
    await create_schema(engine)
    return engine


@pytest_asyncio.fixture(params=BACKENDS)
async def checkpoints(
    request: pytest.FixtureRequest, tmp_path: Path
) -> AsyncGenerator[InMemoryCheckpointRepository | SQLAlchemyCheckpointRepository, None]:
    if request.param == "memory":
        yield InMemoryCheckpointRepository()
        return
    engine = await _engine(tmp_path)
    yield SQLAlchemyCheckpointRepository(engine, enable_tracing=False)
    await engine.dispose()


@pytest_asyncio.fixture(params=BACKENDS)
async def runs(
    request: pytest.FixtureRequest, tmp_path: Path
) -> AsyncGenerator[InMemoryRunRepository | SQLAlchemyRunRepository, None]:
    if request.param == "memory":
        yield InMemoryRunRepository()
        return
    engine = await _engine(tmp_path)
    yield SQLAlchemyRunRepository(engine, enable_tracing=False)
    await engine.dispose()


@pytest_asyncio.fixture(params=BACKENDS)
async def errors(
    request: pytest.FixtureRequest, tmp_path: Path
) -> AsyncGenerator[InMemoryErrorLogRepository | SQLAlchemyErrorLogRepository, None]:
    if request.param == "memory":
        yield InMemoryErrorLogRepository()
        return
    engine = await _engine(tmp_path)
    yield SQLAlchemyErrorLogRepository(engine, enable_tracing=False)
    await engine.dispose()
