"""Unit tests for the tenant registry stores."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tenantcore.config import Settings
from tenantcore.exceptions import TenantNotFoundError, TenantSuspendedError
from tenantcore.observability import MockTracer
from tenantcore.tenancy import (
    InMemoryTenantRegistry,
    SQLTenantRegistry,
    TenantRecord,
    TenantRegistry,
    TenantConnectionManager,
    TenantStatus,
)
from tests.conftest import skip_if_no_aiosqlite

RECORD = TenantRecord(
    id="church-9",
    display_name="Grace Chapel",
    database_identifier="church_9",
    connection_secret="postgresql+asyncpg://app:hunter2@db/church_9",
)


class TestTenantRecord:
    def test_active_by_default(self):
        assert RECORD.status is TenantStatus.ACTIVE
        assert RECORD.is_active is True

    def test_repr_hides_secret(self):
        """The connection secret never appears in logs via repr."""
        assert "hunter2" not in repr(RECORD)
        assert "church-9" in repr(RECORD)

    def test_status_values(self):
        assert TenantStatus("suspended") is TenantStatus.SUSPENDED


class TestInMemoryTenantRegistry:
    """Tests for InMemoryTenantRegistry."""

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryTenantRegistry(), TenantRegistry)

    @pytest.mark.asyncio
    async def test_add_and_get(self):
        registry = InMemoryTenantRegistry()
        await registry.add(RECORD)

        assert await registry.get_tenant("church-9") == RECORD
        assert await registry.get_tenant("missing") is None
        assert registry.lookups == 2

    @pytest.mark.asyncio
    async def test_set_status(self):
        registry = InMemoryTenantRegistry()
        await registry.add(RECORD)

        await registry.set_status("church-9", TenantStatus.SUSPENDED)

        record = await registry.get_tenant("church-9")
        assert record is not None
        assert record.status is TenantStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_set_status_unknown(self):
        with pytest.raises(TenantNotFoundError):
            await InMemoryTenantRegistry().set_status("missing", TenantStatus.DELETED)


@pytest_asyncio.fixture
async def sql_registry(sqlite_engine: AsyncEngine, mock_tracer: MockTracer) -> SQLTenantRegistry:
    registry = SQLTenantRegistry(sqlite_engine, tracer=mock_tracer)
    await registry.create_table()
    async with sqlite_engine.begin() as conn:
        await conn.execute(
            text("""
                INSERT INTO tenants (id, display_name, database_identifier, connection_secret)
                VALUES (:id, :name, :db, :secret)
            """),
            {
                "id": RECORD.id,
                "name": RECORD.display_name,
                "db": RECORD.database_identifier,
                "secret": RECORD.connection_secret,
            },
        )
    return registry


@skip_if_no_aiosqlite
class TestSQLTenantRegistry:
    """Tests for SQLTenantRegistry against SQLite."""

    @pytest.mark.asyncio
    async def test_get_tenant(self, sql_registry: SQLTenantRegistry):
        record = await sql_registry.get_tenant("church-9")

        assert record == RECORD

    @pytest.mark.asyncio
    async def test_get_missing(self, sql_registry: SQLTenantRegistry):
        assert await sql_registry.get_tenant("nope") is None

    @pytest.mark.asyncio
    async def test_set_status(self, sql_registry: SQLTenantRegistry):
        await sql_registry.set_status("church-9", TenantStatus.SUSPENDED)

        record = await sql_registry.get_tenant("church-9")
        assert record is not None
        assert record.status is TenantStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_set_status_missing(self, sql_registry: SQLTenantRegistry):
        with pytest.raises(TenantNotFoundError):
            await sql_registry.set_status("nope", TenantStatus.ACTIVE)

    @pytest.mark.asyncio
    async def test_create_table_idempotent(self, sql_registry: SQLTenantRegistry):
        await sql_registry.create_table()
        assert await sql_registry.get_tenant("church-9") is not None

    @pytest.mark.asyncio
    async def test_spans(self, sql_registry: SQLTenantRegistry, mock_tracer: MockTracer):
        await sql_registry.get_tenant("church-9")

        assert "tenantcore.registry.get_tenant" in mock_tracer.span_names

    @pytest.mark.asyncio
    async def test_unknown_status_fails_closed(
        self, sql_registry: SQLTenantRegistry, sqlite_engine: AsyncEngine
    ):
        async with sqlite_engine.begin() as conn:
            await conn.execute(text("UPDATE tenants SET status = 'archived' WHERE id = 'church-9'"))

        record = await sql_registry.get_tenant("church-9")

        assert record is not None
        assert record.status is TenantStatus.SUSPENDED
        manager = TenantConnectionManager(sql_registry, enable_tracing=False)
        with pytest.raises(TenantSuspendedError):
            await manager.resolve("church-9")
        await manager.close()

    @pytest.mark.asyncio
    async def test_from_settings(self, sqlite_url_factory):
        url = sqlite_url_factory("registry")
        built: list[str] = []

        def factory(database_url: str) -> AsyncEngine:
            built.append(database_url)
            return create_async_engine(database_url)

        registry = SQLTenantRegistry.from_settings(
            Settings(registry_database_url=url), engine_factory=factory, enable_tracing=False
        )
        await registry.create_table()

        assert built == [url]
        assert await registry.get_tenant("church-9") is None
        await registry.close()
