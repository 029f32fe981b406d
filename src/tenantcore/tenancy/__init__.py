"""
Tenant resolution for multi-tenant applications.

- TenantRegistry / SQLTenantRegistry / InMemoryTenantRegistry: registry stores
- TenantConnectionManager: tenant id -> TenantHandle over pooled engines
- tenant_scope and friends: ContextVar-based tenant propagation
"""

from tenantcore.tenancy.context import (
    TenantContextNotSetError,
    clear_tenant_context,
    get_current_tenant,
    get_required_tenant,
    set_current_tenant,
    tenant_context,
    tenant_scope,
    tenant_scope_sync,
)
from tenantcore.tenancy.manager import (
    EngineFactory,
    TenantConnectionManager,
    TenantHandle,
    default_engine_factory,
)
from tenantcore.tenancy.registry import (
    InMemoryTenantRegistry,
    SQLTenantRegistry,
    TenantRecord,
    TenantRegistry,
    TenantStatus,
)

__all__ = [
    # Context
    "TenantContextNotSetError",
    "tenant_context",
    "get_current_tenant",
    "get_required_tenant",
    "set_current_tenant",
    "clear_tenant_context",
    "tenant_scope",
    "tenant_scope_sync",
    # Registry
    "TenantStatus",
    "TenantRecord",
    "TenantRegistry",
    "SQLTenantRegistry",
    "InMemoryTenantRegistry",
    # Manager
    "TenantConnectionManager",
    "TenantHandle",
    "EngineFactory",
    "default_engine_factory",
]
