"""
Unit tests for run repositories.

Tests cover:
- Run create and get round trips on both backends
- Status updates with optional timestamps, flags and error summaries
- Missing run errors
- Entity status upserts and dependency ordering
- Run listing by creation order and status
- Last completion time of an entity type across runs
- Copy semantics of the in-memory implementation
"""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from diffmigrate.exceptions import RunNotFoundError
from diffmigrate.models import EntityMigrationStatus, EntityStatus, MigrationRun, RunStatus
from diffmigrate.observability import ATTR_DB_SYSTEM, MockTracer
from diffmigrate.repositories import InMemoryRunRepository, SQLAlchemyRunRepository
from tests.fixtures import EPOCH


def _run(run_id: str = "run-a", **overrides) -> MigrationRun:
    fields = {
        "run_id": run_id,
        "entity_types": ["offices", "doctors"],
        "config": {"batch_size": 100, "retry": {"max_retries": 3}},
    }
    fields.update(overrides)
    return MigrationRun(**fields)


def _status(entity_type: str, order: int, run_id: str = "run-a", **overrides):
    return EntityMigrationStatus(
        migration_run_id=run_id,
        entity_type=entity_type,
        dependency_order=order,
        dependency_level=order,
        **overrides,
    )


class TestRuns:
    """Tests for run records."""

    @pytest.mark.asyncio
    async def test_round_trip(self, runs) -> None:
        run = _run(started_at=EPOCH, error_summary={"network": 2})

        assert await runs.create_run(run) == "run-a"
        loaded = await runs.get_run("run-a")

        assert loaded == run

    @pytest.mark.asyncio
    async def test_get_missing(self, runs) -> None:
        assert await runs.get_run("missing") is None

    @pytest.mark.asyncio
    async def test_update_status(self, runs) -> None:
        """Only the given fields change besides the status."""
        await runs.create_run(_run())

        await runs.update_run_status("run-a", RunStatus.RUNNING, started_at=EPOCH)
        await runs.update_run_status(
            "run-a",
            RunStatus.CANCELLED,
            completed_at=EPOCH + timedelta(hours=1),
            requires_revalidation=True,
            error_summary={"timeout": 1},
        )
        loaded = await runs.get_run("run-a")

        assert loaded.status is RunStatus.CANCELLED
        assert loaded.started_at == EPOCH
        assert loaded.completed_at == EPOCH + timedelta(hours=1)
        assert loaded.requires_revalidation is True
        assert loaded.error_summary == {"timeout": 1}
        assert loaded.entity_types == ["offices", "doctors"]

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, runs) -> None:
        with pytest.raises(RunNotFoundError) as exc_info:
            await runs.update_run_status("missing", RunStatus.RUNNING)

        assert exc_info.value.run_id == "missing"

    @pytest.mark.asyncio
    async def test_list_runs(self, runs) -> None:
        """Runs are listed in creation order, optionally by status."""
        await runs.create_run(_run("run-a"))
        await runs.create_run(_run("run-b"))
        await runs.create_run(_run("run-c"))
        await runs.update_run_status("run-b", RunStatus.COMPLETED)

        everything = await runs.list_runs()
        pending = await runs.list_runs(RunStatus.PENDING)
        completed = await runs.list_runs(RunStatus.COMPLETED)

        assert [r.run_id for r in everything] == ["run-a", "run-b", "run-c"]
        assert [r.run_id for r in pending] == ["run-a", "run-c"]
        assert [r.run_id for r in completed] == ["run-b"]


class TestEntityStatuses:
    """Tests for per-entity orchestration records."""

    @pytest.mark.asyncio
    async def test_list_ordered_by_dependency(self, runs) -> None:
        await runs.create_run(_run())
        await runs.save_entity_status(_status("files", 2))
        await runs.save_entity_status(_status("offices", 0))
        await runs.save_entity_status(_status("doctors", 1))

        statuses = await runs.list_entity_statuses("run-a")

        assert [s.entity_type for s in statuses] == ["offices", "doctors", "files"]

    @pytest.mark.asyncio
    async def test_upsert(self, runs) -> None:
        """Saving the same entity twice replaces the first record."""
        await runs.create_run(_run())
        await runs.save_entity_status(_status("offices", 0, records_total=10))

        final = _status(
            "offices",
            0,
            status=EntityStatus.FAILED,
            records_total=10,
            records_processed=4,
            records_failed=1,
            started_at=EPOCH,
            completed_at=EPOCH + timedelta(minutes=5),
            last_checkpoint_id="cp-1",
            error_message="Halted at batch 2: constraint violation",
        )
        await runs.save_entity_status(final)
        statuses = await runs.list_entity_statuses("run-a")

        assert statuses == [final]
        assert statuses[0].records_remaining == 6

    @pytest.mark.asyncio
    async def test_scoped_to_run(self, runs) -> None:
        await runs.create_run(_run("run-a"))
        await runs.create_run(_run("run-b"))
        await runs.save_entity_status(_status("offices", 0, run_id="run-a"))
        await runs.save_entity_status(_status("offices", 0, run_id="run-b"))

        assert len(await runs.list_entity_statuses("run-a")) == 1
        assert await runs.list_entity_statuses("run-z") == []

    @pytest.mark.asyncio
    async def test_last_completed_at(self, runs) -> None:
        """Only completed entity records count, across every run."""
        await runs.create_run(_run("run-a"))
        await runs.create_run(_run("run-b"))
        await runs.save_entity_status(
            _status(
                "offices",
                0,
                run_id="run-a",
                status=EntityStatus.COMPLETED,
                completed_at=EPOCH + timedelta(hours=1),
            )
        )
        await runs.save_entity_status(
            _status(
                "offices",
                0,
                run_id="run-b",
                status=EntityStatus.FAILED,
                completed_at=EPOCH + timedelta(hours=2),
            )
        )

        assert await runs.last_completed_at("offices") == EPOCH + timedelta(hours=1)
        assert await runs.last_completed_at("doctors") is None


class TestInMemoryRunRepository:
    """Tests specific to the in-memory implementation."""

    @pytest.mark.asyncio
    async def test_stores_copies(self) -> None:
        """Mutating the caller's objects does not change stored records."""
        repo = InMemoryRunRepository()
        run = _run()
        status = _status("offices", 0)
        await repo.create_run(run)
        await repo.save_entity_status(status)

        run.entity_types.append("files")
        status.records_processed = 99
        loaded = await repo.get_run("run-a")
        loaded.config["batch_size"] = 1

        assert (await repo.get_run("run-a")).entity_types == ["offices", "doctors"]
        assert (await repo.get_run("run-a")).config["batch_size"] == 100
        assert (await repo.list_entity_statuses("run-a"))[0].records_processed == 0

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        repo = InMemoryRunRepository()
        await repo.create_run(_run())
        await repo.save_entity_status(_status("offices", 0))

        await repo.clear()

        assert await repo.list_runs() == []
        assert await repo.list_entity_statuses("run-a") == []


@pytest.mark.sqlite
class TestSQLAlchemyRunRepository:
    """Tests specific to the SQLAlchemy implementation."""

    @pytest.mark.asyncio
    async def test_spans(self, sqlite_engine: AsyncEngine) -> None:
        tracer = MockTracer()
        repo = SQLAlchemyRunRepository(sqlite_engine, tracer=tracer)

        await repo.create_run(_run())
        await repo.get_run("run-a")
        await repo.update_run_status("run-a", RunStatus.RUNNING)
        await repo.save_entity_status(_status("offices", 0))
        await repo.list_entity_statuses("run-a")
        await repo.list_runs()

        assert tracer.span_names == [
            "diffmigrate.run_repo.create_run",
            "diffmigrate.run_repo.get_run",
            "diffmigrate.run_repo.update_run_status",
            "diffmigrate.run_repo.save_entity_status",
            "diffmigrate.run_repo.list_entity_statuses",
            "diffmigrate.run_repo.list_runs",
        ]
        assert all(attrs[ATTR_DB_SYSTEM] == "sqlite" for _, attrs in tracer.spans)
