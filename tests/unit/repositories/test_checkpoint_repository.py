"""
Unit tests for checkpoint repositories.

Tests cover:
- Create and get round trips on both backends
- Update of existing checkpoints and missing checkpoint errors
- Listing order and filtering by run, entity and resumability
- Latest checkpoint lookup with and without the resumable filter
- Retention by age and per-entity limits that keep the latest resumable checkpoint
- Tracing span names of the SQLAlchemy implementation
"""

from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from diffmigrate.exceptions import CheckpointNotFoundError
from diffmigrate.models import Checkpoint
from diffmigrate.observability import ATTR_DB_SYSTEM, MockTracer
from diffmigrate.repositories import (
    CheckpointFilter,
    InMemoryCheckpointRepository,
    SQLAlchemyCheckpointRepository,
)
from tests.fixtures import EPOCH


def _checkpoint(
    checkpoint_id: str,
    position: int,
    run_id: str = "run-1",
    entity_type: str = "orders",
    **overrides,
) -> Checkpoint:
    return Checkpoint(
        checkpoint_id=checkpoint_id,
        entity_type=entity_type,
        migration_run_id=run_id,
        last_processed_id=str(position * 100),
        batch_position=position,
        records_processed=position * 100,
        records_remaining=max(0, 500 - position * 100),
        checkpoint_data={"batch_size": 100},
        created_at=EPOCH + timedelta(minutes=position),
        **overrides,
    )


class TestCreateAndGet:
    """Tests for storing and loading single checkpoints."""

    @pytest.mark.asyncio
    async def test_round_trip(self, checkpoints) -> None:
        """A stored checkpoint loads back equal to the original."""
        checkpoint = _checkpoint("cp-1", 2)

        returned = await checkpoints.create(checkpoint)
        loaded = await checkpoints.get("cp-1")

        assert returned == "cp-1"
        assert loaded == checkpoint
        assert loaded.next_batch_index(100) == 2

    @pytest.mark.asyncio
    async def test_get_missing(self, checkpoints) -> None:
        assert await checkpoints.get("missing") is None

    @pytest.mark.asyncio
    async def test_update(self, checkpoints) -> None:
        """Updates replace the stored fields."""
        checkpoint = _checkpoint("cp-1", 2)
        await checkpoints.create(checkpoint)

        await checkpoints.update(replace(checkpoint, is_resumable=False, records_remaining=0))
        loaded = await checkpoints.get("cp-1")

        assert loaded.is_resumable is False
        assert loaded.records_remaining == 0
        assert loaded.records_processed == 200

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, checkpoints) -> None:
        with pytest.raises(CheckpointNotFoundError) as exc_info:
            await checkpoints.update(_checkpoint("cp-missing", 1))

        assert exc_info.value.checkpoint_id == "cp-missing"


class TestListing:
    """Tests for listing, filtering and latest lookup."""

    @pytest.mark.asyncio
    async def test_ordering(self, checkpoints) -> None:
        """Checkpoints are ordered by run, entity and batch position."""
        await checkpoints.create(_checkpoint("c", 3))
        await checkpoints.create(_checkpoint("a", 1))
        await checkpoints.create(_checkpoint("z", 1, entity_type="cases"))
        await checkpoints.create(_checkpoint("b", 2))
        await checkpoints.create(_checkpoint("r2", 1, run_id="run-2"))

        listed = await checkpoints.list_checkpoints()

        assert [c.checkpoint_id for c in listed] == ["z", "a", "b", "c", "r2"]

    @pytest.mark.asyncio
    async def test_filter(self, checkpoints) -> None:
        await checkpoints.create(_checkpoint("a", 1))
        await checkpoints.create(_checkpoint("b", 2, is_resumable=False))
        await checkpoints.create(_checkpoint("z", 1, entity_type="cases"))
        await checkpoints.create(_checkpoint("r2", 1, run_id="run-2"))

        by_run = await checkpoints.list_checkpoints(CheckpointFilter(run_id="run-1"))
        by_entity = await checkpoints.list_checkpoints(
            CheckpointFilter(run_id="run-1", entity_type="orders")
        )
        resumable = await checkpoints.list_checkpoints(
            CheckpointFilter(run_id="run-1", entity_type="orders", resumable_only=True)
        )

        assert [c.checkpoint_id for c in by_run] == ["z", "a", "b"]
        assert [c.checkpoint_id for c in by_entity] == ["a", "b"]
        assert [c.checkpoint_id for c in resumable] == ["a"]

    @pytest.mark.asyncio
    async def test_get_latest(self, checkpoints) -> None:
        """The latest checkpoint is the highest batch position."""
        await checkpoints.create(_checkpoint("a", 1))
        await checkpoints.create(_checkpoint("c", 3))
        await checkpoints.create(_checkpoint("b", 2))

        latest = await checkpoints.get_latest("run-1", "orders")

        assert latest.checkpoint_id == "c"

    @pytest.mark.asyncio
    async def test_get_latest_skips_non_resumable(self, checkpoints) -> None:
        await checkpoints.create(_checkpoint("a", 1))
        await checkpoints.create(_checkpoint("b", 2, is_resumable=False))

        resumable = await checkpoints.get_latest("run-1", "orders")
        any_checkpoint = await checkpoints.get_latest("run-1", "orders", resumable_only=False)

        assert resumable.checkpoint_id == "a"
        assert any_checkpoint.checkpoint_id == "b"

    @pytest.mark.asyncio
    async def test_get_latest_none(self, checkpoints) -> None:
        await checkpoints.create(_checkpoint("a", 1))

        assert await checkpoints.get_latest("run-1", "cases") is None
        assert await checkpoints.get_latest("run-2", "orders") is None


class TestRetention:
    """Tests for pruning old checkpoints."""

    @pytest.mark.asyncio
    async def test_delete_older_than(self, checkpoints) -> None:
        """Superseded checkpoints past the cutoff go; the latest per entity stays."""
        await checkpoints.create(_checkpoint("a", 1))
        await checkpoints.create(_checkpoint("b", 2))
        await checkpoints.create(_checkpoint("c", 3))
        await checkpoints.create(_checkpoint("z", 1, entity_type="cases"))

        deleted = await checkpoints.delete_older_than(EPOCH + timedelta(minutes=2, seconds=30))
        remaining = await checkpoints.list_checkpoints()

        assert deleted == 2
        assert [c.checkpoint_id for c in remaining] == ["z", "c"]

    @pytest.mark.asyncio
    async def test_delete_keeps_latest_resumable(self, checkpoints) -> None:
        """A newer non-resumable checkpoint does not supersede the resumable one."""
        await checkpoints.create(_checkpoint("a", 1))
        await checkpoints.create(_checkpoint("b", 2, is_resumable=False))

        deleted = await checkpoints.delete_older_than(EPOCH + timedelta(days=365))

        assert deleted == 0
        assert (await checkpoints.get_latest("run-1", "orders")).checkpoint_id == "a"

    @pytest.mark.asyncio
    async def test_enforce_limit(self, checkpoints) -> None:
        """Only the newest checkpoints of the run and entity are kept."""
        for position, checkpoint_id in enumerate("abcde", start=1):
            await checkpoints.create(_checkpoint(checkpoint_id, position))
        await checkpoints.create(_checkpoint("r2", 1, run_id="run-2"))

        deleted = await checkpoints.enforce_limit("run-1", "orders", 2)
        remaining = await checkpoints.list_checkpoints()

        assert deleted == 3
        assert [c.checkpoint_id for c in remaining] == ["d", "e", "r2"]

    @pytest.mark.asyncio
    async def test_enforce_limit_within_bound(self, checkpoints) -> None:
        await checkpoints.create(_checkpoint("a", 1))

        assert await checkpoints.enforce_limit("run-1", "orders", 2) == 0
        assert await checkpoints.enforce_limit("run-1", "cases", 1) == 0

    @pytest.mark.asyncio
    async def test_enforce_limit_rejects_zero(self, checkpoints) -> None:
        with pytest.raises(ValueError):
            await checkpoints.enforce_limit("run-1", "orders", 0)

class TestInMemoryCheckpointRepository:
    """Tests specific to the in-memory implementation."""

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        repo = InMemoryCheckpointRepository()
        await repo.create(_checkpoint("a", 1))

        await repo.clear()

        assert await repo.list_checkpoints() == []

    @pytest.mark.asyncio
    async def test_create_span(self) -> None:
        tracer = MockTracer()
        repo = InMemoryCheckpointRepository(tracer=tracer)

        await repo.create(_checkpoint("a", 1))

        assert tracer.span_names == ["diffmigrate.checkpoint_repo.create"]


@pytest.mark.sqlite
class TestSQLAlchemyCheckpointRepository:
    """Tests specific to the SQLAlchemy implementation."""

    @pytest.mark.asyncio
    async def test_spans(self, sqlite_engine: AsyncEngine) -> None:
        """Every operation opens a span tagged with the database system."""
        tracer = MockTracer()
        repo = SQLAlchemyCheckpointRepository(sqlite_engine, tracer=tracer)

        await repo.create(_checkpoint("a", 1))
        await repo.get("a")
        await repo.update(_checkpoint("a", 1))
        await repo.get_latest("run-1", "orders")

        assert tracer.span_names == [
            "diffmigrate.checkpoint_repo.create",
            "diffmigrate.checkpoint_repo.get",
            "diffmigrate.checkpoint_repo.update",
            "diffmigrate.checkpoint_repo.list",
        ]
        assert all(attrs[ATTR_DB_SYSTEM] == "sqlite" for _, attrs in tracer.spans)

    @pytest.mark.asyncio
    async def test_connection_reuse(self, sqlite_engine: AsyncEngine) -> None:
        """A repository bound to a connection shares its transaction."""
        async with sqlite_engine.connect() as conn:
            repo = SQLAlchemyCheckpointRepository(conn, enable_tracing=False)
            await repo.create(_checkpoint("a", 1))

            assert (await repo.get("a")).checkpoint_id == "a"

    @pytest.mark.asyncio
    async def test_retention_spans(self, sqlite_engine: AsyncEngine) -> None:
        tracer = MockTracer()
        repo = SQLAlchemyCheckpointRepository(sqlite_engine, tracer=tracer)
        await repo.create(_checkpoint("a", 1))
        await repo.create(_checkpoint("b", 2))
        tracer.clear()

        await repo.enforce_limit("run-1", "orders", 1)
        await repo.delete_older_than(EPOCH)

        assert tracer.span_names == [
            "diffmigrate.checkpoint_repo.list",
            "diffmigrate.checkpoint_repo.enforce_limit",
            "diffmigrate.checkpoint_repo.delete_older_than",
        ]
