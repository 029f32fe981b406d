"""
Unit tests for ReadWriteRouter.

Tests cover:
- Operation classification (snake_case and camelCase names)
- Writes to the primary, round-robin reads over replicas
- Replica failure accounting, failover threshold and recovery
- Health checks and lifecycle
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from tenantcore.config import Settings
from tenantcore.exceptions import ReplicaUnavailableError
from tenantcore.observability import MockTracer
from tenantcore.routing import (
    OperationKind,
    ReadWriteRouter,
    ReplicaPool,
    classify_operation,
)
from tests.conftest import skip_if_no_aiosqlite


async def _label(engine: AsyncEngine, name: str) -> None:
    async with engine.begin() as conn:
        await conn.execute(text("CREATE TABLE whoami (name TEXT)"))
        await conn.execute(text("INSERT INTO whoami (name) VALUES (:name)"), {"name": name})


async def _whoami(conn: AsyncConnection) -> str:
    return (await conn.execute(text("SELECT name FROM whoami"))).scalar_one()


async def _replica_down(conn: AsyncConnection) -> None:
    raise OperationalError("SELECT 1", {}, Exception("replica down"))


@pytest_asyncio.fixture
async def replica_engines(sqlite_engine, second_sqlite_engine, sqlite_url_factory):
    third = create_async_engine(sqlite_url_factory("tertiary"))
    await _label(sqlite_engine, "primary")
    await _label(second_sqlite_engine, "replica-a")
    await _label(third, "replica-b")
    yield sqlite_engine, [second_sqlite_engine, third]
    await third.dispose()


@pytest_asyncio.fixture
async def router(replica_engines):
    primary, replicas = replica_engines
    router = ReadWriteRouter(primary, replicas, failover_threshold=2, enable_tracing=False)
    yield router
    await router.dispose()


class TestClassifyOperation:
    """Tests for classify_operation()."""

    @pytest.mark.parametrize(
        "operation",
        ["create", "update", "delete", "upsert", "create_many", "updateMany", "deleteMany"],
    )
    def test_writes(self, operation: str):
        assert classify_operation(operation) is OperationKind.WRITE

    @pytest.mark.parametrize("operation", ["find_many", "findFirst", "count", "aggregate"])
    def test_reads(self, operation: str):
        assert classify_operation(operation) is OperationKind.READ

    def test_kind_passthrough(self):
        assert classify_operation(OperationKind.WRITE) is OperationKind.WRITE


class TestReplicaPool:
    """Tests for ReplicaPool bookkeeping."""

    def _pool(self, count: int = 2, threshold: int = 2) -> ReplicaPool:
        return ReplicaPool([MagicMock(spec=AsyncEngine) for _ in range(count)], threshold)

    def test_round_robin(self):
        pool = self._pool(3)

        labels = [pool.next_healthy().label for _ in range(4)]

        assert labels == ["replica-0", "replica-1", "replica-2", "replica-0"]

    def test_unhealthy_after_threshold(self):
        pool = self._pool()
        first = pool.replicas[0]

        pool.record_failure(first)
        assert first.healthy
        pool.record_failure(first)

        assert not first.healthy
        assert [pool.next_healthy().label for _ in range(2)] == ["replica-1", "replica-1"]

    def test_success_resets_consecutive_failures(self):
        pool = self._pool()
        first = pool.replicas[0]

        pool.record_failure(first)
        pool.record_success(first)
        pool.record_failure(first)

        assert first.healthy
        assert first.consecutive_failures == 1
        assert first.total_failures == 2

    def test_all_unhealthy_raises(self):
        pool = self._pool(count=1, threshold=1)
        pool.record_failure(pool.replicas[0])

        with pytest.raises(ReplicaUnavailableError) as exc_info:
            pool.next_healthy()
        assert exc_info.value.replica_count == 1

    def test_invalid_threshold(self):
        with pytest.raises(ValueError, match="failover_threshold"):
            ReplicaPool([], failover_threshold=0)


@skip_if_no_aiosqlite
class TestRouting:
    """Tests for ReadWriteRouter.execute()."""

    @pytest.mark.asyncio
    async def test_writes_go_to_primary(self, router: ReadWriteRouter):
        assert await router.execute("createMany", _whoami) == "primary"
        assert await router.write(_whoami) == "primary"

    @pytest.mark.asyncio
    async def test_reads_round_robin(self, router: ReadWriteRouter):
        seen = [await router.execute("findMany", _whoami) for _ in range(4)]

        assert seen == ["replica-a", "replica-b", "replica-a", "replica-b"]

    @pytest.mark.asyncio
    async def test_write_commits(self, router: ReadWriteRouter):
        async def insert(conn: AsyncConnection) -> None:
            await conn.execute(text("INSERT INTO whoami (name) VALUES ('second')"))

        await router.write(insert)

        async with router.primary.connect() as conn:
            count = (await conn.execute(text("SELECT count(*) FROM whoami"))).scalar_one()
        assert count == 2

    @pytest.mark.asyncio
    async def test_no_replicas_reads_primary(self, sqlite_engine: AsyncEngine):
        await _label(sqlite_engine, "primary")
        router = ReadWriteRouter(sqlite_engine, enable_tracing=False)

        assert await router.read(_whoami) == "primary"

    @pytest.mark.asyncio
    async def test_replica_failure_not_retried_on_primary(self, router: ReadWriteRouter):
        """A failed replica read surfaces to the caller unchanged."""
        with pytest.raises(OperationalError):
            await router.read(_replica_down)

        replica = router.replicas.replicas[0]
        assert replica.consecutive_failures == 1
        assert replica.healthy

    @pytest.mark.asyncio
    async def test_failover_after_threshold(self, router: ReadWriteRouter):
        # Reads alternate, so four failures hit each replica twice
        for _ in range(4):
            with pytest.raises(OperationalError):
                await router.read(_replica_down)

        assert router.status()["healthy_replicas"] == 0
        with pytest.raises(ReplicaUnavailableError):
            await router.read(_whoami)

    @pytest.mark.asyncio
    async def test_query_errors_do_not_mark_unhealthy(self, router: ReadWriteRouter):
        async def bad_sql(conn: AsyncConnection) -> None:
            raise ProgrammingError("SELECT nope", {}, Exception("syntax error"))

        for _ in range(4):
            with pytest.raises(ProgrammingError):
                await router.read(bad_sql)

        assert router.status()["healthy_replicas"] == 2

    @pytest.mark.asyncio
    async def test_success_restores_replica(self, router: ReadWriteRouter):
        with pytest.raises(OperationalError):
            await router.read(_replica_down)
        await router.read(_whoami)
        await router.read(_whoami)

        assert router.replicas.replicas[0].consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_traced(self, replica_engines):
        primary, replicas = replica_engines
        tracer = MockTracer()
        router = ReadWriteRouter(primary, replicas, tracer=tracer)

        await router.read(_whoami)
        await router.write(_whoami)

        assert tracer.span_names == ["tenantcore.router.read", "tenantcore.router.write"]
        await router.dispose()


@skip_if_no_aiosqlite
class TestHealth:
    """Tests for health checks, status and lifecycle."""

    @pytest.mark.asyncio
    async def test_check_health_restores(self, router: ReadWriteRouter):
        for _ in range(4):
            with pytest.raises(OperationalError):
                await router.read(_replica_down)

        results = await router.check_health()

        assert results == {"replica-0": True, "replica-1": True}
        assert await router.read(_whoami) in {"replica-a", "replica-b"}

    @pytest.mark.asyncio
    async def test_replicas_recover_without_manual_check(self, replica_engines):
        """The health task started by the first read restores recovered replicas."""
        primary, replicas = replica_engines
        router = ReadWriteRouter(
            primary,
            replicas,
            failover_threshold=1,
            health_check_interval=0.05,
            enable_tracing=False,
        )
        for _ in range(2):
            with pytest.raises(OperationalError):
                await router.read(_replica_down)
        assert router.status()["healthy_replicas"] == 0

        await asyncio.sleep(0.2)

        assert router.status()["healthy_replicas"] == 2
        assert await router.read(_whoami) in {"replica-a", "replica-b"}
        await router.dispose()

    @pytest.mark.asyncio
    async def test_no_health_task_when_disabled(self, replica_engines):
        primary, replicas = replica_engines
        router = ReadWriteRouter(
            primary, replicas, health_check_interval=None, enable_tracing=False
        )

        await router.read(_whoami)

        assert router._health_task is None
        await router.dispose()

    @pytest.mark.asyncio
    async def test_no_health_task_without_replicas(self, sqlite_engine: AsyncEngine):
        await _label(sqlite_engine, "primary")
        router = ReadWriteRouter(sqlite_engine, enable_tracing=False)

        await router.read(_whoami)

        assert router._health_task is None

    def test_invalid_health_interval(self, sqlite_engine: AsyncEngine):
        with pytest.raises(ValueError, match="health_check_interval"):
            ReadWriteRouter(sqlite_engine, health_check_interval=0)

    @pytest.mark.asyncio
    async def test_check_health_failure(self, sqlite_engine: AsyncEngine):
        broken = create_async_engine("sqlite+aiosqlite:////nonexistent-tenantcore-dir/r.db")
        router = ReadWriteRouter(
            sqlite_engine, [broken], failover_threshold=1, enable_tracing=False
        )

        results = await router.check_health()

        assert results == {"replica-0": False}
        assert router.status()["healthy_replicas"] == 0
        await broken.dispose()

    @pytest.mark.asyncio
    async def test_status(self, router: ReadWriteRouter):
        status = router.status()

        assert status["replica_count"] == 2
        assert status["failover_threshold"] == 2
        assert status["replicas"][0]["label"] == "replica-0"
        assert status["primary"].endswith("primary.db")

    @pytest.mark.asyncio
    async def test_dispose_cancels_health_task(self, router: ReadWriteRouter):
        task = router.start_health_checks(interval=3600)
        assert router.start_health_checks(interval=3600) is task

        await router.dispose()

        assert task.cancelled()

    def test_from_settings(self):
        built: list[str] = []

        def factory(url: str) -> AsyncEngine:
            built.append(url)
            return MagicMock(spec=AsyncEngine)

        settings = Settings(
            database_url="postgresql+asyncpg://primary/app",
            database_read_replicas="postgresql+asyncpg://r1/app, postgresql+asyncpg://r2/app",
            replica_failover_threshold=5,
            replica_health_check_interval_seconds=12.5,
        )

        router = ReadWriteRouter.from_settings(settings, engine_factory=factory)

        assert built == [
            "postgresql+asyncpg://primary/app",
            "postgresql+asyncpg://r1/app",
            "postgresql+asyncpg://r2/app",
        ]
        assert len(router.replicas) == 2
        assert router.replicas.failover_threshold == 5
        assert router._health_check_interval == 12.5
