"""
Connection handling helpers shared by the SQL-backed components.

Every SQL-backed component accepts a connection source: an ``AsyncEngine``,
an ``AsyncConnection`` already in a transaction, or anything exposing an
``engine`` attribute (a ``TenantHandle``). This module turns any of those
into a usable ``AsyncConnection``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@runtime_checkable
class SupportsEngine(Protocol):
    """Anything that carries a pooled AsyncEngine (e.g. TenantHandle)."""

    @property
    def engine(self) -> AsyncEngine: ...


ConnectionSource = AsyncEngine | AsyncConnection | SupportsEngine


def resolve_engine(source: ConnectionSource) -> AsyncEngine | AsyncConnection:
    """Unwrap a TenantHandle-like object to its engine; pass others through."""
    if isinstance(source, AsyncEngine | AsyncConnection):
        return source
    return source.engine


def dialect_name(source: ConnectionSource) -> str:
    """Name of the SQL dialect behind a connection source ('postgresql', 'sqlite')."""
    return resolve_engine(source).dialect.name


@asynccontextmanager
async def execute_with_connection(
    source: ConnectionSource,
    transactional: bool = True,
    isolation_level: str | None = None,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield an AsyncConnection for the given source.

    When given an engine, a new connection is checked out. With
    ``transactional=True`` it runs inside ``begin()`` and commits on exit
    (rolling back on error); otherwise it is a plain ``connect()``. When
    given an existing AsyncConnection it is yielded as-is and the caller
    owns its transaction.

    Args:
        source: Engine, connection, or object exposing ``engine``
        transactional: Whether to wrap the work in a transaction
        isolation_level: Isolation level for a newly checked-out connection

    Yields:
        AsyncConnection for executing queries
    """
    target = resolve_engine(source)
    if isinstance(target, AsyncConnection):
        yield target
        return

    if isolation_level is not None:
        target = target.execution_options(isolation_level=isolation_level)

    if transactional:
        async with target.begin() as connection:
            yield connection
    else:
        async with target.connect() as connection:
            yield connection


__all__ = [
    "ConnectionSource",
    "SupportsEngine",
    "dialect_name",
    "execute_with_connection",
    "resolve_engine",
]
