"""
Per-tenant connection management.

TenantConnectionManager resolves a tenant id to a request-scoped
TenantHandle backed by a pooled AsyncEngine for that tenant's database.

- Registry lookups go through a short TTL cache, so status transitions
  become visible within ``record_ttl`` seconds.
- A handle is never returned for a suspended or deleted tenant.
- Engines are created lazily, verified with ``SELECT 1``, shared by all
  concurrent handles for the tenant, and evicted LRU-first when more than
  ``max_cached_tenants`` are pooled, or when idle past ``idle_timeout``.

Example:
    >>> manager = TenantConnectionManager(SQLTenantRegistry(registry_engine))
    >>> async with manager.session("church-42") as handle:
    ...     async with handle.begin() as conn:
    ...         await conn.execute(text("SELECT 1"))
    >>> await manager.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from tenantcore.config import Settings, get_settings
from tenantcore.exceptions import ManagerClosedError, TenantNotFoundError, TenantSuspendedError
from tenantcore.observability import Tracer, create_tracer
from tenantcore.observability.attributes import (
    ATTR_CACHE_HIT,
    ATTR_TENANT_ID,
    ATTR_TENANT_STATUS,
)
from tenantcore.tenancy.context import get_required_tenant
from tenantcore.tenancy.registry import TenantRecord, TenantRegistry, TenantStatus

logger = logging.getLogger(__name__)

EngineFactory = Callable[[TenantRecord], AsyncEngine]


def default_engine_factory(record: TenantRecord) -> AsyncEngine:
    return create_async_engine(record.connection_secret, pool_pre_ping=True)


class TenantHandle:
    """
    Request-scoped access to one tenant's database.

    Handles share the tenant's pooled engine; holding one does not grant
    exclusive access to any connection. Use it for one logical operation,
    then close it (or use it as an async context manager).
    """

    def __init__(self, record: TenantRecord, engine: AsyncEngine) -> None:
        self.record = record
        self._engine = engine
        self._closed = False

    @property
    def tenant_id(self) -> str:
        return self.record.id

    @property
    def engine(self) -> AsyncEngine:
        if self._closed:
            raise RuntimeError(f"Tenant handle for {self.tenant_id} is closed")
        return self._engine

    @property
    def closed(self) -> bool:
        return self._closed

    def connect(self) -> contextlib.AbstractAsyncContextManager[AsyncConnection]:
        """Check out a connection without starting a transaction."""
        return self.engine.connect()

    def begin(self) -> contextlib.AbstractAsyncContextManager[AsyncConnection]:
        """Check out a connection inside a transaction that commits on exit."""
        return self.engine.begin()

    def close(self) -> None:
        self._closed = True

    async def __aenter__(self) -> TenantHandle:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<TenantHandle tenant={self.tenant_id} {state}>"


@dataclass
class _CachedRecord:
    record: TenantRecord | None
    fetched_at: float


@dataclass
class _PooledEngine:
    engine: AsyncEngine
    cached_since: datetime
    last_accessed: datetime
    last_used: float
    access_count: int = 0


class TenantConnectionManager:
    """
    Resolves tenant ids to TenantHandles over pooled per-tenant engines.

    Args:
        registry: Registry store to look tenants up in
        engine_factory: Builds an engine from a TenantRecord
        record_ttl: Seconds a registry lookup is reused
        max_cached_tenants: Upper bound on pooled engines (LRU eviction)
        idle_timeout: Seconds of inactivity before an engine is evicted
        idle_check_interval: Default seconds between ``start_idle_reaper`` sweeps
        verify_connections: Run ``SELECT 1`` on a new engine before use
        clock: Monotonic clock (injectable for tests)
        tracer: Optional tracer
        enable_tracing: Whether to enable tracing (default True)
    """

    def __init__(
        self,
        registry: TenantRegistry,
        engine_factory: EngineFactory = default_engine_factory,
        record_ttl: float = 30.0,
        max_cached_tenants: int = 100,
        idle_timeout: float = 1800.0,
        idle_check_interval: float = 300.0,
        verify_connections: bool = True,
        clock: Callable[[], float] = time.monotonic,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if max_cached_tenants < 1:
            raise ValueError(f"max_cached_tenants must be >= 1, got {max_cached_tenants}.")
        if record_ttl < 0:
            raise ValueError(f"record_ttl must be >= 0, got {record_ttl}.")
        if idle_check_interval <= 0:
            raise ValueError(
                f"idle_check_interval must be positive, got {idle_check_interval}."
            )

        self._registry = registry
        self._engine_factory = engine_factory
        self._record_ttl = record_ttl
        self._max_cached = max_cached_tenants
        self._idle_timeout = idle_timeout
        self._idle_check_interval = idle_check_interval
        self._verify = verify_connections
        self._clock = clock
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

        self._records: dict[str, _CachedRecord] = {}
        self._engines: OrderedDict[str, _PooledEngine] = OrderedDict()
        self._lock = asyncio.Lock()
        self._closed = False
        self._reaper_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        registry: TenantRegistry,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> TenantConnectionManager:
        settings = settings or get_settings()
        return cls(
            registry,
            record_ttl=settings.tenant_cache_ttl_seconds,
            max_cached_tenants=settings.max_cached_tenants,
            idle_timeout=settings.tenant_idle_timeout_seconds,
            idle_check_interval=settings.tenant_idle_check_interval_seconds,
            **kwargs,
        )

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve(self, tenant_id: str) -> TenantHandle:
        """
        Resolve a tenant id to a handle on its database.

        Raises:
            TenantNotFoundError: No record exists, the tenant is deleted, or
                the record has no connection secret
            TenantSuspendedError: The tenant's status is not active
            ManagerClosedError: The manager has been closed
        """
        if self._closed:
            raise ManagerClosedError()

        with self._tracer.span("tenantcore.tenant.resolve", {ATTR_TENANT_ID: tenant_id}) as span:
            record, cache_hit = await self._lookup(tenant_id)
            if span is not None:
                span.set_attribute(ATTR_CACHE_HIT, cache_hit)
                if record is not None:
                    span.set_attribute(ATTR_TENANT_STATUS, record.status.value)

            if record is None or record.status is TenantStatus.DELETED:
                await self._discard_engine(tenant_id)
                raise TenantNotFoundError(tenant_id)
            if not record.is_active:
                await self._discard_engine(tenant_id)
                raise TenantSuspendedError(tenant_id, record.status.value)
            if not record.connection_secret:
                raise TenantNotFoundError(tenant_id)

            engine = await self._engine_for(record)
            return TenantHandle(record, engine)

    async def resolve_current(self) -> TenantHandle:
        """Resolve the tenant of the active ``tenant_scope``."""
        return await self.resolve(get_required_tenant())

    @asynccontextmanager
    async def session(self, tenant_id: str | None = None) -> AsyncIterator[TenantHandle]:
        """
        Resolve a handle for the duration of a block.

        Args:
            tenant_id: Tenant to resolve; defaults to the active tenant scope
        """
        handle = await self.resolve(tenant_id if tenant_id is not None else get_required_tenant())
        try:
            yield handle
        finally:
            handle.close()

    async def _lookup(self, tenant_id: str) -> tuple[TenantRecord | None, bool]:
        now = self._clock()
        cached = self._records.get(tenant_id)
        if cached is not None and now - cached.fetched_at < self._record_ttl:
            return cached.record, True

        record = await self._registry.get_tenant(tenant_id)
        if record is None:
            self._records.pop(tenant_id, None)
        else:
            self._records[tenant_id] = _CachedRecord(record, now)
        return record, False

    async def _engine_for(self, record: TenantRecord) -> AsyncEngine:
        async with self._lock:
            if self._closed:
                raise ManagerClosedError()

            now = datetime.now(UTC)
            pooled = self._engines.get(record.id)
            if pooled is not None:
                self._engines.move_to_end(record.id)
                pooled.last_used = self._clock()
                pooled.last_accessed = now
                pooled.access_count += 1
                return pooled.engine

            while len(self._engines) >= self._max_cached:
                evicted_id, evicted = self._engines.popitem(last=False)
                logger.info(
                    "Evicting least recently used tenant engine %s",
                    evicted_id,
                    extra={"tenant_id": evicted_id, "access_count": evicted.access_count},
                )
                await evicted.engine.dispose()

            engine = self._engine_factory(record)
            if self._verify:
                try:
                    async with engine.connect() as conn:
                        await conn.execute(text("SELECT 1"))
                except Exception:
                    logger.error(
                        "Connection verification failed for tenant %s",
                        record.id,
                        extra={"tenant_id": record.id},
                        exc_info=True,
                    )
                    await engine.dispose()
                    raise

            self._engines[record.id] = _PooledEngine(
                engine=engine,
                cached_since=now,
                last_accessed=now,
                last_used=self._clock(),
                access_count=1,
            )
            logger.info(
                "Created engine for tenant %s",
                record.id,
                extra={"tenant_id": record.id, "cached_tenants": len(self._engines)},
            )
            return engine

    async def _discard_engine(self, tenant_id: str) -> None:
        async with self._lock:
            pooled = self._engines.pop(tenant_id, None)
        if pooled is not None:
            await pooled.engine.dispose()

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def invalidate(self, tenant_id: str) -> None:
        """Forget the cached record and dispose the engine for a tenant."""
        self._records.pop(tenant_id, None)
        await self._discard_engine(tenant_id)

    async def evict_idle(self) -> int:
        """
        Dispose engines unused for longer than the idle timeout.

        Returns:
            Number of engines evicted
        """
        now = self._clock()
        async with self._lock:
            idle = [
                tenant_id
                for tenant_id, pooled in self._engines.items()
                if now - pooled.last_used > self._idle_timeout
            ]
            evicted = [self._engines.pop(tenant_id) for tenant_id in idle]

        for tenant_id, pooled in zip(idle, evicted, strict=True):
            logger.info("Evicting idle tenant engine %s", tenant_id, extra={"tenant_id": tenant_id})
            await pooled.engine.dispose()
        return len(evicted)

    def start_idle_reaper(self, interval: float | None = None) -> asyncio.Task[None]:
        """
        Start a background task that calls ``evict_idle`` every ``interval``
        seconds (``idle_check_interval`` when not given).
        """
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(
                self._reap_loop(interval or self._idle_check_interval)
            )
        return self._reaper_task

    async def _reap_loop(self, interval: float) -> None:
        while not self._closed:
            await asyncio.sleep(interval)
            try:
                await self.evict_idle()
            except Exception:
                logger.exception("Idle tenant engine eviction failed")

    def pool_status(self) -> dict[str, Any]:
        """Snapshot of pooled engines for health endpoints."""
        now = self._clock()
        return {
            "cached_tenants": len(self._engines),
            "max_tenants": self._max_cached,
            "idle_timeout_seconds": self._idle_timeout,
            "idle_check_interval_seconds": self._idle_check_interval,
            "closed": self._closed,
            "tenants": {
                tenant_id: {
                    "cached_since": pooled.cached_since.isoformat(),
                    "last_accessed": pooled.last_accessed.isoformat(),
                    "access_count": pooled.access_count,
                    "idle_seconds": round(now - pooled.last_used, 3),
                }
                for tenant_id, pooled in self._engines.items()
            },
        }

    async def close(self) -> None:
        """Dispose every pooled engine and refuse further resolution."""
        self._closed = True
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper_task
            self._reaper_task = None

        async with self._lock:
            pooled = list(self._engines.values())
            self._engines.clear()
        self._records.clear()

        for entry in pooled:
            await entry.engine.dispose()
        logger.info("Disconnected %d tenant engines", len(pooled))

    async def __aenter__(self) -> TenantConnectionManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


__all__ = [
    "TenantConnectionManager",
    "TenantHandle",
    "EngineFactory",
    "default_engine_factory",
]
