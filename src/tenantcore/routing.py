"""
Read/write routing across a primary and read replicas.

Operations are classified into a closed ``OperationKind`` (READ or WRITE)
and dispatched through a fixed table: writes go to the primary, reads go
round-robin to healthy replicas.

A failed replica read is logged, counted against the replica's health, and
re-raised. The first read on a router with replicas starts a periodic
``SELECT 1`` health check, which is what brings an unhealthy replica back
into rotation. The router never retries a read on the primary, so a replica
outage is never masked as a fresh answer. Callers that need
read-after-write freshness use ``router.primary`` directly.

Example:
    >>> router = ReadWriteRouter.from_settings()
    >>> rows = await router.execute(
    ...     "find_many",
    ...     lambda conn: conn.execute(text("SELECT * FROM members")),
    ... )
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from tenantcore.config import Settings, get_settings
from tenantcore.exceptions import ReplicaUnavailableError
from tenantcore.observability import SpanKindEnum, Tracer, create_tracer
from tenantcore.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_ROUTE_KIND,
    ATTR_ROUTE_TARGET,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures that say something about the replica rather than the query
HEALTH_FAILURES: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    ConnectionError,
    TimeoutError,
    OSError,
)


class OperationKind(str, Enum):
    READ = "read"
    WRITE = "write"


WRITE_OPERATIONS: frozenset[str] = frozenset(
    {
        "create",
        "update",
        "delete",
        "upsert",
        "create_many",
        "update_many",
        "delete_many",
    }
)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _normalize(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def classify_operation(operation: str | OperationKind) -> OperationKind:
    """
    Classify an operation name as READ or WRITE.

    Names are matched in snake_case, so ``createMany`` and ``create_many``
    are equivalent. Anything not in WRITE_OPERATIONS is a read.

    >>> classify_operation("createMany")
    <OperationKind.WRITE: 'write'>
    >>> classify_operation("find_first")
    <OperationKind.READ: 'read'>
    """
    if isinstance(operation, OperationKind):
        return operation
    return OperationKind.WRITE if _normalize(operation) in WRITE_OPERATIONS else OperationKind.READ


@dataclass
class ReplicaState:
    """Health bookkeeping for one read replica."""

    index: int
    engine: AsyncEngine
    healthy: bool = True
    consecutive_failures: int = 0
    total_failures: int = 0
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None

    @property
    def label(self) -> str:
        return f"replica-{self.index}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "url": self.engine.url.render_as_string(hide_password=True),
            "healthy": self.healthy,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


class ReplicaPool:
    """
    Round-robin selection over healthy replicas.

    A replica is marked unhealthy after ``failover_threshold`` consecutive
    failures and restored by its next success (a health check or a query).
    """

    def __init__(self, engines: Sequence[AsyncEngine], failover_threshold: int = 3) -> None:
        if failover_threshold < 1:
            raise ValueError(f"failover_threshold must be >= 1, got {failover_threshold}.")
        self.replicas = [ReplicaState(index=i, engine=e) for i, e in enumerate(engines)]
        self.failover_threshold = failover_threshold
        self._cursor = 0

    def __len__(self) -> int:
        return len(self.replicas)

    def next_healthy(self) -> ReplicaState:
        """
        Return the next healthy replica in round-robin order.

        Raises:
            ReplicaUnavailableError: If no replica is healthy
        """
        count = len(self.replicas)
        for step in range(count):
            candidate = self.replicas[(self._cursor + step) % count]
            if candidate.healthy:
                self._cursor = (candidate.index + 1) % count
                return candidate
        raise ReplicaUnavailableError(count)

    def record_failure(self, replica: ReplicaState) -> None:
        replica.consecutive_failures += 1
        replica.total_failures += 1
        replica.last_failure_at = datetime.now(UTC)
        if replica.healthy and replica.consecutive_failures >= self.failover_threshold:
            replica.healthy = False
            logger.warning(
                "Read replica %s marked unhealthy after %d consecutive failures",
                replica.label,
                replica.consecutive_failures,
                extra={"replica": replica.label, "failures": replica.consecutive_failures},
            )

    def record_success(self, replica: ReplicaState) -> None:
        if not replica.healthy:
            logger.info(
                "Read replica %s recovered", replica.label, extra={"replica": replica.label}
            )
        replica.healthy = True
        replica.consecutive_failures = 0
        replica.last_success_at = datetime.now(UTC)


Route = tuple[str, AsyncEngine, ReplicaState | None]


class ReadWriteRouter:
    """
    Dispatches operations to the primary or a replica by OperationKind.

    Args:
        primary: Engine for the primary database
        replicas: Engines for read replicas (may be empty)
        failover_threshold: Consecutive failures before a replica is skipped
        health_check_interval: Seconds between replica health checks, started
            by the first read. None disables them; call ``check_health()``
            or ``start_health_checks()`` yourself.
        tracer: Optional tracer
        enable_tracing: Whether to enable tracing (default True)
    """

    def __init__(
        self,
        primary: AsyncEngine,
        replicas: Sequence[AsyncEngine] = (),
        failover_threshold: int = 3,
        health_check_interval: float | None = 30.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if health_check_interval is not None and health_check_interval <= 0:
            raise ValueError(
                f"health_check_interval must be positive, got {health_check_interval}."
            )
        self._primary = primary
        self._pool = ReplicaPool(replicas, failover_threshold)
        self._health_check_interval = health_check_interval
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._health_task: asyncio.Task[None] | None = None

        self._dispatch: dict[OperationKind, Callable[[], Route]] = {
            OperationKind.READ: self._route_read,
            OperationKind.WRITE: self._route_write,
        }
        missing = set(OperationKind) - set(self._dispatch)
        if missing:
            raise RuntimeError(f"No route for operation kinds: {sorted(k.value for k in missing)}")

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        engine_factory: Callable[[str], AsyncEngine] = create_async_engine,
        **kwargs: Any,
    ) -> ReadWriteRouter:
        """Build a router from DATABASE_URL and DATABASE_READ_REPLICAS."""
        settings = settings or get_settings()
        return cls(
            engine_factory(settings.database_url),
            [engine_factory(url) for url in settings.read_replica_urls],
            failover_threshold=settings.replica_failover_threshold,
            health_check_interval=settings.replica_health_check_interval_seconds,
            **kwargs,
        )

    @property
    def primary(self) -> AsyncEngine:
        """Direct primary access for reads that must see the latest writes."""
        return self._primary

    @property
    def replicas(self) -> ReplicaPool:
        return self._pool

    def _route_write(self) -> Route:
        return "primary", self._primary, None

    def _route_read(self) -> Route:
        if not len(self._pool):
            return "primary", self._primary, None
        if self._health_check_interval is not None:
            self.start_health_checks(self._health_check_interval)
        replica = self._pool.next_healthy()
        return replica.label, replica.engine, replica

    async def execute(
        self,
        operation: str | OperationKind,
        fn: Callable[[AsyncConnection], Awaitable[T]],
    ) -> T:
        """
        Run ``fn`` on the connection chosen for ``operation``.

        Writes run inside a transaction on the primary. Reads run on a plain
        connection to the next healthy replica (or the primary when no
        replicas are configured).

        Raises:
            ReplicaUnavailableError: Replicas are configured but all unhealthy
            Exception: Whatever ``fn`` raises; replica failures are not
                retried on the primary
        """
        kind = classify_operation(operation)
        target, engine, replica = self._dispatch[kind]()
        op_name = operation.value if isinstance(operation, OperationKind) else operation

        with self._tracer.span_with_kind(
            f"tenantcore.router.{kind.value}",
            SpanKindEnum.CLIENT,
            {ATTR_DB_OPERATION: op_name, ATTR_ROUTE_KIND: kind.value, ATTR_ROUTE_TARGET: target},
        ):
            try:
                if kind is OperationKind.WRITE:
                    async with engine.begin() as conn:
                        result = await fn(conn)
                else:
                    async with engine.connect() as conn:
                        result = await fn(conn)
            except Exception as e:
                if replica is not None:
                    logger.warning(
                        "Read %s failed on %s: %s",
                        op_name,
                        target,
                        e,
                        extra={
                            "operation": op_name,
                            "replica": target,
                            "error_type": type(e).__name__,
                        },
                    )
                    if isinstance(e, HEALTH_FAILURES):
                        self._pool.record_failure(replica)
                raise

            if replica is not None:
                self._pool.record_success(replica)
            return result

    async def read(self, fn: Callable[[AsyncConnection], Awaitable[T]]) -> T:
        return await self.execute(OperationKind.READ, fn)

    async def write(self, fn: Callable[[AsyncConnection], Awaitable[T]]) -> T:
        return await self.execute(OperationKind.WRITE, fn)

    # =========================================================================
    # Health
    # =========================================================================

    async def check_health(self) -> dict[str, bool]:
        """Probe every replica with ``SELECT 1`` and update its health."""
        results: dict[str, bool] = {}
        for replica in self._pool.replicas:
            try:
                async with replica.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            except Exception as e:
                logger.warning(
                    "Health check failed for %s: %s",
                    replica.label,
                    e,
                    extra={"replica": replica.label},
                )
                self._pool.record_failure(replica)
                results[replica.label] = False
            else:
                self._pool.record_success(replica)
                results[replica.label] = True
        return results

    def start_health_checks(self, interval: float = 30.0) -> asyncio.Task[None]:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop(interval))
        return self._health_task

    async def _health_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_health()
            except Exception as e:
                logger.error(f"Replica health check loop error: {e}", exc_info=True)

    def status(self) -> dict[str, Any]:
        replicas = [r.to_dict() for r in self._pool.replicas]
        return {
            "primary": self._primary.url.render_as_string(hide_password=True),
            "replica_count": len(replicas),
            "healthy_replicas": sum(1 for r in replicas if r["healthy"]),
            "failover_threshold": self._pool.failover_threshold,
            "replicas": replicas,
        }

    async def dispose(self) -> None:
        """Stop health checks and dispose every engine."""
        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        for replica in self._pool.replicas:
            await replica.engine.dispose()
        await self._primary.dispose()


__all__ = [
    "OperationKind",
    "WRITE_OPERATIONS",
    "HEALTH_FAILURES",
    "classify_operation",
    "ReplicaState",
    "ReplicaPool",
    "ReadWriteRouter",
]
