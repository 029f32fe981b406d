"""
Central tenant registry.

The registry database maps tenant ids to their isolated databases. This
package only reads records and applies status transitions triggered by
external lifecycle events; provisioning lives elsewhere.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tenantcore.config import Settings, get_settings
from tenantcore.exceptions import TenantNotFoundError
from tenantcore.observability import Tracer, create_tracer
from tenantcore.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_TENANT_ID,
    ATTR_TENANT_STATUS,
)
from tenantcore.repositories._connection import (
    ConnectionSource,
    dialect_name,
    execute_with_connection,
)

logger = logging.getLogger(__name__)


class TenantStatus(str, Enum):
    """Lifecycle status of a tenant in the registry."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


@dataclass(frozen=True)
class TenantRecord:
    """
    Registry row describing one tenant.

    Attributes:
        id: Tenant identifier
        display_name: Human readable name (church name)
        database_identifier: Name of the tenant's database
        connection_secret: SQLAlchemy URL for the tenant database; never logged
        status: Lifecycle status
        schema_version: Schema revision of the tenant database, if tracked
    """

    id: str
    display_name: str
    database_identifier: str
    connection_secret: str
    status: TenantStatus = TenantStatus.ACTIVE
    schema_version: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status is TenantStatus.ACTIVE

    def __repr__(self) -> str:
        return (
            f"TenantRecord(id={self.id!r}, display_name={self.display_name!r}, "
            f"database_identifier={self.database_identifier!r}, status={self.status.value!r})"
        )


@runtime_checkable
class TenantRegistry(Protocol):
    """Protocol for registry stores consumed by TenantConnectionManager."""

    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        """
        Look up a tenant by id.

        Returns:
            The TenantRecord, or None if no row exists
        """
        ...

    async def set_status(self, tenant_id: str, status: TenantStatus) -> None:
        """
        Apply a lifecycle status transition.

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """
        ...


def _parse_status(tenant_id: str, raw: str) -> TenantStatus:
    """Read a stored status; anything unrecognised is treated as suspended."""
    try:
        return TenantStatus(raw)
    except ValueError:
        logger.warning(
            "Unknown status %r for tenant %s, treating as suspended",
            raw,
            tenant_id,
            extra={"tenant_id": tenant_id, "status": raw},
        )
        return TenantStatus.SUSPENDED


class SQLTenantRegistry:
    """
    Registry backed by a ``tenants`` table in the registry database.

    Works on PostgreSQL and SQLite; all columns are plain text.

    Example:
        >>> engine = create_async_engine(settings.registry_database_url)
        >>> registry = SQLTenantRegistry(engine)
        >>> record = await registry.get_tenant("church-42")
    """

    def __init__(
        self,
        conn: ConnectionSource,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.conn = conn
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._db_system = dialect_name(conn)
        self._owned_engine: AsyncEngine | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        engine_factory: Callable[[str], AsyncEngine] = create_async_engine,
        **kwargs: Any,
    ) -> SQLTenantRegistry:
        """Build a registry on its own engine for REGISTRY_DATABASE_URL."""
        settings = settings or get_settings()
        engine = engine_factory(settings.registry_database_url)
        registry = cls(engine, **kwargs)
        registry._owned_engine = engine
        return registry

    async def close(self) -> None:
        """Dispose the engine if this registry created it."""
        if self._owned_engine is not None:
            await self._owned_engine.dispose()
            self._owned_engine = None

    async def create_table(self) -> None:
        """Create the ``tenants`` table if it does not exist."""
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(
                text("""
                    CREATE TABLE IF NOT EXISTS tenants (
                        id VARCHAR(64) PRIMARY KEY,
                        display_name VARCHAR(255) NOT NULL,
                        database_identifier VARCHAR(255) NOT NULL,
                        connection_secret TEXT NOT NULL,
                        status VARCHAR(16) NOT NULL DEFAULT 'active',
                        schema_version VARCHAR(32)
                    )
                """)
            )

    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        with self._tracer.span(
            "tenantcore.registry.get_tenant",
            {ATTR_TENANT_ID: tenant_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(
                    text("""
                        SELECT id, display_name, database_identifier, connection_secret,
                               status, schema_version
                        FROM tenants
                        WHERE id = :id
                    """),
                    {"id": tenant_id},
                )
                row = result.fetchone()

            if row is None:
                return None
            return TenantRecord(
                id=row[0],
                display_name=row[1],
                database_identifier=row[2],
                connection_secret=row[3],
                status=_parse_status(row[0], row[4]),
                schema_version=row[5],
            )

    async def set_status(self, tenant_id: str, status: TenantStatus) -> None:
        with self._tracer.span(
            "tenantcore.registry.set_status",
            {
                ATTR_TENANT_ID: tenant_id,
                ATTR_TENANT_STATUS: status.value,
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    text("UPDATE tenants SET status = :status WHERE id = :id"),
                    {"status": status.value, "id": tenant_id},
                )
                if result.rowcount == 0:
                    raise TenantNotFoundError(tenant_id)

            logger.info(
                "Tenant %s status changed to %s",
                tenant_id,
                status.value,
                extra={"tenant_id": tenant_id, "status": status.value},
            )


class InMemoryTenantRegistry:
    """
    In-memory registry for tests and local development.

    Example:
        >>> registry = InMemoryTenantRegistry()
        >>> await registry.add(TenantRecord("t1", "First Church", "t1", "sqlite+aiosqlite://"))
    """

    def __init__(self) -> None:
        self._records: dict[str, TenantRecord] = {}
        self._lock = asyncio.Lock()
        self.lookups = 0

    async def add(self, record: TenantRecord) -> None:
        async with self._lock:
            self._records[record.id] = record

    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        async with self._lock:
            self.lookups += 1
            return self._records.get(tenant_id)

    async def set_status(self, tenant_id: str, status: TenantStatus) -> None:
        async with self._lock:
            record = self._records.get(tenant_id)
            if record is None:
                raise TenantNotFoundError(tenant_id)
            self._records[tenant_id] = replace(record, status=status)


__all__ = [
    "TenantStatus",
    "TenantRecord",
    "TenantRegistry",
    "SQLTenantRegistry",
    "InMemoryTenantRegistry",
]
