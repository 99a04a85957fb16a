"""
Connection helpers shared by the SQL repositories and stores.

``execute_with_connection`` accepts either an ``AsyncEngine`` or an
``AsyncConnection``. Engines get a fresh connection (or transaction) per
call; connections are used as-is and the caller owns the transaction.

``timestamp_query`` binds timestamp parameters as timezone-aware
``DateTime`` so the same SQL text works against PostgreSQL (TIMESTAMPTZ)
and SQLite (ISO text).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import DateTime, TextClause, bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for ``execute()`` calls.

    Args:
        conn: Database engine or connection.
        transactional: Open a transaction (``begin``) instead of a bare
            connection (``connect``). Only applies to engines.

    Example:
        >>> async with execute_with_connection(self._conn) as conn:
        ...     await conn.execute(query, params)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


def timestamp_query(sql: str, *timestamp_params: str) -> TextClause:
    """
    Build a text query whose named timestamp parameters are typed.

    Args:
        sql: SQL text with ``:name`` parameters.
        *timestamp_params: Names of the parameters holding datetimes.
    """
    query = text(sql)
    if timestamp_params:
        query = query.bindparams(
            *(bindparam(name, type_=DateTime(timezone=True)) for name in timestamp_params)
        )
    return query


def db_system(conn: AsyncConnection | AsyncEngine) -> str:
    """Dialect name for span attributes."""
    return conn.dialect.name
