"""
Unit tests for TenantConnectionManager.

Tests cover:
- Resolution of active, suspended, deleted and unknown tenants
- Registry record caching and bounded staleness
- Engine pooling, LRU eviction and idle eviction
- Connection verification on first use
- Lifecycle (session, close, idle reaper)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantcore.config import Settings
from tenantcore.exceptions import ManagerClosedError, TenantNotFoundError, TenantSuspendedError
from tenantcore.tenancy import (
    InMemoryTenantRegistry,
    TenantConnectionManager,
    TenantContextNotSetError,
    TenantRecord,
    TenantStatus,
    default_engine_factory,
    tenant_scope,
)
from tests.conftest import skip_if_no_aiosqlite

pytestmark = skip_if_no_aiosqlite


class CountingFactory:
    """Engine factory that remembers which tenants it built engines for."""

    def __init__(self) -> None:
        self.created: list[str] = []

    def __call__(self, record: TenantRecord) -> AsyncEngine:
        self.created.append(record.id)
        return default_engine_factory(record)


@pytest.fixture
def factory() -> CountingFactory:
    return CountingFactory()


@pytest.fixture
def add_tenant(
    tenant_registry: InMemoryTenantRegistry,
    sqlite_url_factory: Callable[[str], str],
):
    async def add(tenant_id: str, status: TenantStatus = TenantStatus.ACTIVE) -> TenantRecord:
        record = TenantRecord(
            id=tenant_id,
            display_name=tenant_id.title(),
            database_identifier=tenant_id,
            connection_secret=sqlite_url_factory(tenant_id),
            status=status,
        )
        await tenant_registry.add(record)
        return record

    return add


@pytest_asyncio.fixture
async def manager(tenant_registry, factory, fake_clock):
    manager = TenantConnectionManager(
        tenant_registry,
        engine_factory=factory,
        record_ttl=30.0,
        max_cached_tenants=2,
        idle_timeout=60.0,
        clock=fake_clock,
        enable_tracing=False,
    )
    yield manager
    await manager.close()


class TestResolve:
    """Tests for resolve()."""

    @pytest.mark.asyncio
    async def test_active_tenant(self, manager, active_tenant):
        handle = await manager.resolve(active_tenant.id)

        assert handle.tenant_id == "church-1"
        async with handle.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            assert result.scalar() == 1

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, manager):
        with pytest.raises(TenantNotFoundError) as exc_info:
            await manager.resolve("nobody")
        assert exc_info.value.tenant_id == "nobody"

    @pytest.mark.asyncio
    async def test_suspended_tenant(self, manager, add_tenant):
        await add_tenant("lapsed", TenantStatus.SUSPENDED)

        with pytest.raises(TenantSuspendedError) as exc_info:
            await manager.resolve("lapsed")
        assert exc_info.value.status == "suspended"

    @pytest.mark.asyncio
    async def test_deleted_tenant_is_not_found(self, manager, add_tenant, factory):
        await add_tenant("gone", TenantStatus.DELETED)

        with pytest.raises(TenantNotFoundError):
            await manager.resolve("gone")
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_missing_secret_is_not_found(self, manager, tenant_registry):
        await tenant_registry.add(TenantRecord("bare", "Bare", "bare", ""))

        with pytest.raises(TenantNotFoundError):
            await manager.resolve("bare")

    @pytest.mark.asyncio
    async def test_engine_shared_between_handles(self, manager, active_tenant, factory):
        """Two handles for one tenant share the pooled engine."""
        first = await manager.resolve(active_tenant.id)
        second = await manager.resolve(active_tenant.id)

        assert first is not second
        assert first.engine is second.engine
        assert factory.created == ["church-1"]

    @pytest.mark.asyncio
    async def test_concurrent_first_resolves_create_one_engine(
        self, manager, active_tenant, factory
    ):
        handles = await asyncio.gather(*(manager.resolve(active_tenant.id) for _ in range(5)))

        assert len({id(h.engine) for h in handles}) == 1
        assert factory.created == ["church-1"]

    @pytest.mark.asyncio
    async def test_verification_failure_propagates(self, tenant_registry, fake_clock):
        await tenant_registry.add(
            TenantRecord(
                "broken",
                "Broken",
                "broken",
                "sqlite+aiosqlite:////nonexistent-tenantcore-dir/broken.db",
            )
        )
        manager = TenantConnectionManager(tenant_registry, clock=fake_clock, enable_tracing=False)

        with pytest.raises(OperationalError):
            await manager.resolve("broken")
        assert manager.pool_status()["cached_tenants"] == 0
        await manager.close()


class TestRecordCache:
    """Tests for registry lookup caching."""

    @pytest.mark.asyncio
    async def test_lookups_cached_within_ttl(self, manager, active_tenant, tenant_registry):
        await manager.resolve(active_tenant.id)
        await manager.resolve(active_tenant.id)

        assert tenant_registry.lookups == 1

    @pytest.mark.asyncio
    async def test_suspension_visible_after_ttl(
        self, manager, active_tenant, tenant_registry, fake_clock
    ):
        """A suspension is seen once the cached record expires."""
        await manager.resolve(active_tenant.id)
        await tenant_registry.set_status(active_tenant.id, TenantStatus.SUSPENDED)

        await manager.resolve(active_tenant.id)

        fake_clock.advance(30.0)
        with pytest.raises(TenantSuspendedError):
            await manager.resolve(active_tenant.id)
        assert manager.pool_status()["cached_tenants"] == 0

    @pytest.mark.asyncio
    async def test_not_found_not_cached(self, manager, tenant_registry, add_tenant):
        with pytest.raises(TenantNotFoundError):
            await manager.resolve("late")

        await add_tenant("late")

        handle = await manager.resolve("late")
        assert handle.tenant_id == "late"

    @pytest.mark.asyncio
    async def test_invalidate_forces_lookup(self, manager, active_tenant, tenant_registry):
        await manager.resolve(active_tenant.id)

        await manager.invalidate(active_tenant.id)
        await manager.resolve(active_tenant.id)

        assert tenant_registry.lookups == 2


class TestEviction:
    """Tests for LRU and idle eviction."""

    @pytest.mark.asyncio
    async def test_lru_eviction(self, manager, add_tenant):
        """The least recently used engine goes first when the pool is full."""
        for tenant_id in ("a", "b", "c"):
            await add_tenant(tenant_id)

        await manager.resolve("a")
        await manager.resolve("b")
        await manager.resolve("a")
        await manager.resolve("c")

        assert set(manager.pool_status()["tenants"]) == {"a", "c"}

    @pytest.mark.asyncio
    async def test_evict_idle(self, manager, add_tenant, fake_clock):
        await add_tenant("a")
        await add_tenant("b")
        await manager.resolve("a")
        fake_clock.advance(45.0)
        await manager.resolve("b")
        fake_clock.advance(20.0)

        evicted = await manager.evict_idle()

        assert evicted == 1
        assert set(manager.pool_status()["tenants"]) == {"b"}

    @pytest.mark.asyncio
    async def test_pool_status(self, manager, active_tenant):
        await manager.resolve(active_tenant.id)
        await manager.resolve(active_tenant.id)

        status = manager.pool_status()

        assert status["max_tenants"] == 2
        assert status["tenants"]["church-1"]["access_count"] == 2


class TestLifecycle:
    """Tests for session(), close() and the idle reaper."""

    @pytest.mark.asyncio
    async def test_session_closes_handle(self, manager, active_tenant):
        async with manager.session(active_tenant.id) as handle:
            assert not handle.closed

        assert handle.closed
        with pytest.raises(RuntimeError, match="closed"):
            _ = handle.engine

    @pytest.mark.asyncio
    async def test_session_uses_tenant_scope(self, manager, active_tenant):
        async with tenant_scope(active_tenant.id):
            async with manager.session() as handle:
                assert handle.tenant_id == active_tenant.id

    @pytest.mark.asyncio
    async def test_resolve_current_requires_scope(self, manager):
        with pytest.raises(TenantContextNotSetError):
            await manager.resolve_current()

    @pytest.mark.asyncio
    async def test_close_refuses_resolution(self, manager, active_tenant):
        await manager.resolve(active_tenant.id)

        await manager.close()

        assert manager.pool_status()["cached_tenants"] == 0
        with pytest.raises(ManagerClosedError):
            await manager.resolve(active_tenant.id)

    @pytest.mark.asyncio
    async def test_close_cancels_reaper(self, manager):
        task = manager.start_idle_reaper(interval=3600)
        assert manager.start_idle_reaper(interval=3600) is task

        await manager.close()

        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_context_manager(self, tenant_registry, active_tenant):
        async with TenantConnectionManager(tenant_registry, enable_tracing=False) as manager:
            await manager.resolve(active_tenant.id)

        with pytest.raises(ManagerClosedError):
            await manager.resolve(active_tenant.id)

    @pytest.mark.asyncio
    async def test_reaper_uses_configured_interval(self, tenant_registry, factory, add_tenant):
        """The reaper sweeps at idle_check_interval when started without one."""
        await add_tenant("church-1")
        manager = TenantConnectionManager(
            tenant_registry,
            engine_factory=factory,
            idle_timeout=0.0,
            idle_check_interval=0.02,
            enable_tracing=False,
        )
        await manager.resolve("church-1")

        manager.start_idle_reaper()
        await asyncio.sleep(0.2)

        assert manager.pool_status()["cached_tenants"] == 0
        await manager.close()

    def test_from_settings(self, tenant_registry):
        settings = Settings(
            tenant_cache_ttl_seconds=5.0,
            max_cached_tenants=7,
            tenant_idle_timeout_seconds=600.0,
            tenant_idle_check_interval_seconds=45.0,
        )

        manager = TenantConnectionManager.from_settings(
            tenant_registry, settings, enable_tracing=False
        )

        status = manager.pool_status()
        assert status["max_tenants"] == 7
        assert status["idle_timeout_seconds"] == 600.0
        assert status["idle_check_interval_seconds"] == 45.0

    def test_invalid_idle_check_interval(self, tenant_registry):
        with pytest.raises(ValueError, match="idle_check_interval"):
            TenantConnectionManager(tenant_registry, idle_check_interval=0)

    def test_invalid_max_cached(self, tenant_registry):
        with pytest.raises(ValueError, match="max_cached_tenants"):
            TenantConnectionManager(tenant_registry, max_cached_tenants=0)
