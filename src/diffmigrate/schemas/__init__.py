"""
SQL schemas for the orchestration tables.

Tables:
    - migration_runs: One row per migration run
    - entity_migration_status: Per-entity orchestration records
    - migration_checkpoints: Durable resumption points
    - migration_errors: Classified failures

Supported backends:
    - postgresql (default)
    - sqlite

Usage:
    from diffmigrate.schemas import create_schema, get_schema

    sql = get_schema("sqlite")

    engine = create_async_engine("sqlite+aiosqlite:///migration.db")
    await create_schema(engine, backend="sqlite")
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from diffmigrate.repositories._connection import execute_with_connection

BackendName = Literal["postgresql", "sqlite"]

_SCHEMAS_DIR = Path(__file__).parent


def get_schema(backend: BackendName = "postgresql") -> str:
    """
    Load the orchestration schema for a backend.

    Args:
        backend: "postgresql" or "sqlite".

    Returns:
        SQL script creating every orchestration table.

    Raises:
        ValueError: If the backend is not supported.
    """
    path = _SCHEMAS_DIR / f"{backend}.sql"
    if not path.exists():
        raise ValueError(f"Unsupported backend '{backend}'. Available: postgresql, sqlite")
    return path.read_text(encoding="utf-8")


def get_statements(backend: BackendName = "postgresql") -> list[str]:
    """Split the schema into individual statements, comments removed."""
    lines = [
        line for line in get_schema(backend).splitlines() if not line.strip().startswith("--")
    ]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


def backend_for(conn: AsyncConnection | AsyncEngine) -> BackendName:
    """Infer the schema backend from an engine or connection dialect."""
    return "sqlite" if conn.dialect.name == "sqlite" else "postgresql"


async def create_schema(
    conn: AsyncConnection | AsyncEngine,
    backend: BackendName | None = None,
) -> None:
    """
    Create the orchestration tables if they do not exist.

    Statements run one at a time because DBAPI drivers reject multiple
    statements per execute.

    Args:
        conn: Engine or connection to create the tables with.
        backend: Schema backend; inferred from the dialect when omitted.
    """
    async with execute_with_connection(conn, transactional=True) as connection:
        for statement in get_statements(backend or backend_for(conn)):
            await connection.execute(text(statement))


__all__ = [
    "BackendName",
    "get_schema",
    "get_statements",
    "backend_for",
    "create_schema",
]
