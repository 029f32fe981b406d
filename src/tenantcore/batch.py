"""
Chunked bulk mutations with partial-failure accounting.

BatchExecutor splits a large create/update/delete into chunks (1000 rows by
default) and runs each chunk as its own transaction with one bulk
statement. There is no transaction spanning chunks: a chunk that committed
stays committed when a later chunk fails. Callers get at-least-once
semantics per chunk, not all-or-nothing semantics for the call, and must
design replays to be idempotent.

Failure policy:
    - ``ignore_errors=False`` (default): the first failing chunk raises
      BatchChunkError carrying the partial BatchOperationResult
    - ``ignore_errors=True``: failures are collected in ``errors`` keyed by
      chunk index and processing continues

Usage:
    >>> executor = BatchExecutor(handle)
    >>> result = await executor.batch_create(contacts_table, rows)
    >>> result.successful, result.failed
    (2500, 0)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import Table, and_, bindparam, delete, insert, or_, update
from sqlalchemy.ext.asyncio import AsyncConnection

from tenantcore.config import Settings, get_settings
from tenantcore.exceptions import BatchChunkError
from tenantcore.observability import Tracer, create_tracer
from tenantcore.observability.attributes import (
    ATTR_BATCH_CHUNK_INDEX,
    ATTR_BATCH_CHUNK_SIZE,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_RETRY_COUNT,
)
from tenantcore.repositories._connection import (
    ConnectionSource,
    dialect_name,
    execute_with_connection,
)
from tenantcore.resilience.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChunkWork = Callable[[AsyncConnection, list[Any]], Awaitable[Any]]

# Dialects that accept a per-connection isolation_level execution option
_ISOLATION_DIALECTS = frozenset({"postgresql", "mysql", "mariadb", "mssql", "oracle"})


class IsolationLevel(str, Enum):
    """Transaction isolation requested for each chunk."""

    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


@dataclass
class BatchConfig:
    """
    Configuration for a batch call.

    Attributes:
        chunk_size: Items per chunk
        isolation_level: Isolation hint for each chunk's transaction; ignored
            by stores that do not support it (SQLite)
        ignore_errors: Continue past failed chunks instead of raising
        log_progress: Log each chunk at INFO
        retry: Retry transient failures of a chunk with this policy
        chunk_timeout: Seconds allowed per chunk attempt
    """

    chunk_size: int = 1000
    isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED
    ignore_errors: bool = False
    log_progress: bool = True
    retry: RetryConfig | None = None
    chunk_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}.")
        if self.chunk_timeout is not None and self.chunk_timeout <= 0:
            raise ValueError(f"chunk_timeout must be positive, got {self.chunk_timeout}.")


@dataclass(frozen=True)
class ChunkError:
    chunk_index: int
    error: BaseException

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "error": str(self.error),
            "error_type": type(self.error).__name__,
        }


@dataclass
class BatchOperationResult:
    """
    Outcome of one batch call. Durations are in seconds.

    Attributes:
        successful: Items in chunks that committed
        failed: Items in chunks that failed
        total: Items submitted
        errors: One entry per failed chunk
        total_duration: Wall time of the whole call
        average_duration_per_chunk: total_duration / chunks attempted
        chunks: Number of chunks attempted
    """

    successful: int = 0
    failed: int = 0
    total: int = 0
    errors: list[ChunkError] = field(default_factory=list)
    total_duration: float = 0.0
    average_duration_per_chunk: float = 0.0
    chunks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "total": self.total,
            "errors": [e.to_dict() for e in self.errors],
            "total_duration": self.total_duration,
            "average_duration_per_chunk": self.average_duration_per_chunk,
            "chunks": self.chunks,
        }


def chunk(items: Sequence[T], size: int) -> list[list[T]]:
    """
    Split a sequence into consecutive chunks of at most ``size`` items.

    >>> chunk([1, 2, 3, 4, 5], 2)
    [[1, 2], [3, 4], [5]]
    """
    if size < 1:
        raise ValueError(f"size must be >= 1, got {size}.")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class BatchExecutor:
    """
    Runs chunked bulk statements against one tenant's database.

    Args:
        source: TenantHandle, AsyncEngine, or AsyncConnection. With an
            AsyncConnection the caller owns the transaction, so chunks are
            not committed independently.
        config: Default BatchConfig for calls that do not pass one
        tracer: Optional tracer
        enable_tracing: Whether to enable tracing (default True)
    """

    def __init__(
        self,
        source: ConnectionSource,
        config: BatchConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._source = source
        self._config = config or BatchConfig()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._db_system = dialect_name(source)

    @classmethod
    def from_settings(
        cls, source: ConnectionSource, settings: Settings | None = None, **kwargs: Any
    ) -> BatchExecutor:
        settings = settings or get_settings()
        return cls(source, BatchConfig(chunk_size=settings.batch_chunk_size), **kwargs)

    def _isolation_for(self, config: BatchConfig) -> str | None:
        if self._db_system not in _ISOLATION_DIALECTS:
            return None
        return IsolationLevel(config.isolation_level).value

    async def _run_chunk(
        self,
        name: str,
        index: int,
        items: list[Any],
        work: ChunkWork,
        config: BatchConfig,
    ) -> None:
        isolation = self._isolation_for(config)
        attempts = 0

        async def attempt() -> None:
            nonlocal attempts
            retry_count = attempts
            attempts += 1
            with self._tracer.span(
                "tenantcore.batch.chunk",
                {
                    ATTR_DB_OPERATION: name,
                    ATTR_BATCH_CHUNK_INDEX: index,
                    ATTR_BATCH_CHUNK_SIZE: len(items),
                    ATTR_RETRY_COUNT: retry_count,
                },
            ):
                async with execute_with_connection(
                    self._source, transactional=True, isolation_level=isolation
                ) as conn:
                    await work(conn, items)

        async def bounded() -> None:
            if config.chunk_timeout is None:
                await attempt()
            else:
                await asyncio.wait_for(attempt(), timeout=config.chunk_timeout)

        if config.retry is not None:
            await with_retry(bounded, config.retry, operation_name=f"{name}[chunk {index}]")
        else:
            await bounded()

    async def _execute(
        self,
        name: str,
        table_name: str,
        items: Sequence[Any],
        work: ChunkWork,
        config: BatchConfig | None,
    ) -> BatchOperationResult:
        config = config or self._config
        result = BatchOperationResult(total=len(items))
        if not items:
            return result

        chunks = chunk(items, config.chunk_size)
        started = time.perf_counter()

        with self._tracer.span(
            f"tenantcore.batch.{name}",
            {
                ATTR_DB_OPERATION: name,
                ATTR_DB_TABLE: table_name,
                ATTR_BATCH_SIZE: len(items),
                ATTR_BATCH_CHUNK_SIZE: config.chunk_size,
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            for index, items_in_chunk in enumerate(chunks):
                chunk_started = time.perf_counter()
                result.chunks += 1
                try:
                    await self._run_chunk(name, index, items_in_chunk, work, config)
                except Exception as e:
                    result.failed += len(items_in_chunk)
                    result.errors.append(ChunkError(index, e))
                    logger.error(
                        "Batch %s on %s: chunk %d/%d failed: %s",
                        name,
                        table_name,
                        index + 1,
                        len(chunks),
                        e,
                        extra={
                            "operation": name,
                            "table": table_name,
                            "chunk_index": index,
                            "chunk_items": len(items_in_chunk),
                            "error_type": type(e).__name__,
                        },
                    )
                    if not config.ignore_errors:
                        self._finish(result, started)
                        raise BatchChunkError(index, e, result) from e
                    continue

                result.successful += len(items_in_chunk)
                if config.log_progress:
                    logger.info(
                        "Batch %s on %s: chunk %d/%d processed (%d items) in %.3fs",
                        name,
                        table_name,
                        index + 1,
                        len(chunks),
                        len(items_in_chunk),
                        time.perf_counter() - chunk_started,
                    )

        self._finish(result, started)
        if config.log_progress:
            logger.info(
                "Batch %s on %s complete: %d successful, %d failed in %.3fs",
                name,
                table_name,
                result.successful,
                result.failed,
                result.total_duration,
            )
        return result

    @staticmethod
    def _finish(result: BatchOperationResult, started: float) -> None:
        result.total_duration = time.perf_counter() - started
        if result.chunks:
            result.average_duration_per_chunk = result.total_duration / result.chunks

    # =========================================================================
    # Bulk statements
    # =========================================================================

    async def batch_create(
        self,
        table: Table,
        rows: Sequence[Mapping[str, Any]],
        config: BatchConfig | None = None,
    ) -> BatchOperationResult:
        """Insert rows, one multi-row INSERT per chunk."""

        async def work(conn: AsyncConnection, items: list[Mapping[str, Any]]) -> None:
            await conn.execute(insert(table), [dict(item) for item in items])

        return await self._execute("create", table.name, rows, work, config)

    async def batch_update(
        self,
        table: Table,
        updates: Sequence[Mapping[str, Any]],
        config: BatchConfig | None = None,
        key: str = "id",
    ) -> BatchOperationResult:
        """
        Update rows matched by ``key``.

        Each mapping holds the key value plus the columns to set. Items that
        set the same columns share one executemany UPDATE within the chunk.
        """
        key_column = table.c[key]

        async def work(conn: AsyncConnection, items: list[Mapping[str, Any]]) -> None:
            groups: dict[tuple[str, ...], list[dict[str, Any]]] = {}
            for item in items:
                if key not in item:
                    raise KeyError(f"Update item is missing key column {key!r}")
                columns = tuple(sorted(c for c in item if c != key))
                if not columns:
                    continue
                params = {"b_key": item[key]}
                params.update({f"b_{c}": item[c] for c in columns})
                groups.setdefault(columns, []).append(params)

            for columns, params in groups.items():
                stmt = (
                    update(table)
                    .where(key_column == bindparam("b_key"))
                    .values({c: bindparam(f"b_{c}") for c in columns})
                )
                await conn.execute(stmt, params)

        return await self._execute("update", table.name, updates, work, config)

    async def batch_delete(
        self,
        table: Table,
        targets: Sequence[Any],
        config: BatchConfig | None = None,
        key: str = "id",
    ) -> BatchOperationResult:
        """
        Delete rows by key value or by condition mappings.

        ``targets`` is either a list of ``key`` values (``IN``) or a list of
        column->value mappings (``OR`` of ``AND`` conditions).
        """

        async def work(conn: AsyncConnection, items: list[Any]) -> None:
            if all(isinstance(item, Mapping) for item in items):
                condition = or_(
                    *(
                        and_(*(table.c[column] == value for column, value in item.items()))
                        for item in items
                    )
                )
            elif any(isinstance(item, Mapping) for item in items):
                raise TypeError("batch_delete targets must be all keys or all condition mappings")
            else:
                condition = table.c[key].in_(items)
            await conn.execute(delete(table).where(condition))

        return await self._execute("delete", table.name, targets, work, config)

    # =========================================================================
    # Generic processing
    # =========================================================================

    async def stream_batch_process(
        self,
        fetch_page: Callable[[int, int], Awaitable[Sequence[T]]],
        process: Callable[[Sequence[T]], Awaitable[Any]],
        page_size: int = 1000,
        config: BatchConfig | None = None,
    ) -> AsyncIterator[BatchOperationResult]:
        """
        Page through a producer and process each page, bounding memory.

        ``fetch_page(offset, limit)`` is called until it returns an empty
        page or one shorter than ``page_size``. One BatchOperationResult is
        yielded per processed page.

        Raises:
            BatchChunkError: A page failed and ``ignore_errors`` is False
        """
        config = config or self._config
        offset = 0
        page_index = 0
        while True:
            page = await fetch_page(offset, page_size)
            if not page:
                return

            started = time.perf_counter()
            page_result = BatchOperationResult(total=len(page), chunks=1)
            try:
                await process(page)
                page_result.successful = len(page)
            except Exception as e:
                page_result.failed = len(page)
                page_result.errors.append(ChunkError(page_index, e))
                logger.error(
                    "Stream batch page %d (offset %d) failed: %s",
                    page_index,
                    offset,
                    e,
                    extra={"chunk_index": page_index, "offset": offset},
                )
                if not config.ignore_errors:
                    self._finish(page_result, started)
                    raise BatchChunkError(page_index, e, page_result) from e
            self._finish(page_result, started)
            yield page_result

            if len(page) < page_size:
                return
            offset += len(page)
            page_index += 1

    async def parallel_batch_process(
        self,
        items: Sequence[T],
        process: Callable[[list[T]], Awaitable[Any]],
        config: BatchConfig | None = None,
        concurrency: int = 3,
    ) -> BatchOperationResult:
        """
        Process chunks concurrently, at most ``concurrency`` at a time.

        The order of side effects across chunks is not guaranteed. Every
        chunk runs to completion before a failure is reported.

        Raises:
            BatchChunkError: For the lowest-indexed failed chunk, when
                ``ignore_errors`` is False
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}.")
        config = config or self._config
        result = BatchOperationResult(total=len(items))
        if not items:
            return result

        chunks = chunk(items, config.chunk_size)
        semaphore = asyncio.Semaphore(concurrency)
        started = time.perf_counter()

        async def run(index: int, items_in_chunk: list[T]) -> None:
            async with semaphore:
                if config.chunk_timeout is None:
                    await process(items_in_chunk)
                else:
                    await asyncio.wait_for(process(items_in_chunk), timeout=config.chunk_timeout)

        outcomes = await asyncio.gather(
            *(run(i, c) for i, c in enumerate(chunks)), return_exceptions=True
        )

        result.chunks = len(chunks)
        for index, (items_in_chunk, outcome) in enumerate(zip(chunks, outcomes, strict=True)):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                result.failed += len(items_in_chunk)
                result.errors.append(ChunkError(index, outcome))
            else:
                result.successful += len(items_in_chunk)

        self._finish(result, started)
        if result.errors:
            logger.error(
                "Parallel batch: %d of %d chunks failed",
                len(result.errors),
                len(chunks),
                extra={"failed_chunks": [e.chunk_index for e in result.errors]},
            )
            if not config.ignore_errors:
                first = result.errors[0]
                raise BatchChunkError(first.chunk_index, first.error, result) from first.error
        return result

    def with_config(self, **overrides: Any) -> BatchExecutor:
        """Copy of this executor with some default config fields replaced."""
        return BatchExecutor(self._source, replace(self._config, **overrides), tracer=self._tracer)


__all__ = [
    "IsolationLevel",
    "BatchConfig",
    "ChunkError",
    "BatchOperationResult",
    "BatchExecutor",
    "chunk",
]
