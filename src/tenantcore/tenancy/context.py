"""
Tenant context propagation for async request handling.

A request handler enters ``tenant_scope(tenant_id)`` once; code further down
the call stack reads the active tenant with ``get_current_tenant()`` or
``get_required_tenant()`` instead of threading the id through every call.
ContextVar isolation keeps concurrent requests on the same event loop apart.

Example:
    >>> async def handle(tenant_id: str, manager: TenantConnectionManager) -> None:
    ...     async with tenant_scope(tenant_id):
    ...         async with manager.session() as handle:
    ...             ...
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar, Token
from typing import TYPE_CHECKING

from tenantcore.exceptions import TenantCoreError

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Generator

logger = logging.getLogger(__name__)

tenant_context: ContextVar[str | None] = ContextVar("tenant_context", default=None)


class TenantContextNotSetError(TenantCoreError):
    """Raised when tenant context is required but not set."""

    def __init__(self) -> None:
        super().__init__(
            "No tenant context set. Use tenant_scope() before performing tenant operations."
        )


def get_current_tenant() -> str | None:
    """Return the active tenant id, or None outside any tenant scope."""
    return tenant_context.get()


def get_required_tenant() -> str:
    """
    Return the active tenant id.

    Raises:
        TenantContextNotSetError: If no tenant scope is active
    """
    tenant_id = tenant_context.get()
    if tenant_id is None:
        raise TenantContextNotSetError()
    return tenant_id


def set_current_tenant(tenant_id: str) -> Token[str | None]:
    """
    Set the active tenant id and return a token for ``tenant_context.reset``.

    Prefer ``tenant_scope()``, which restores the previous value on exit.
    """
    logger.debug("Tenant context set: %s", tenant_id)
    return tenant_context.set(tenant_id)


def clear_tenant_context() -> None:
    logger.debug("Tenant context cleared")
    tenant_context.set(None)


@asynccontextmanager
async def tenant_scope(tenant_id: str) -> AsyncGenerator[str, None]:
    """
    Async context manager that sets the tenant for the enclosed block.

    Nested scopes restore the outer tenant on exit.
    """
    token = tenant_context.set(tenant_id)
    logger.debug("Tenant scope entered: %s", tenant_id)
    try:
        yield tenant_id
    finally:
        tenant_context.reset(token)
        logger.debug("Tenant scope exited: %s", tenant_id)


@contextmanager
def tenant_scope_sync(tenant_id: str) -> Generator[str, None, None]:
    """Synchronous counterpart of ``tenant_scope``."""
    token = tenant_context.set(tenant_id)
    try:
        yield tenant_id
    finally:
        tenant_context.reset(token)


__all__ = [
    "TenantContextNotSetError",
    "tenant_context",
    "get_current_tenant",
    "get_required_tenant",
    "set_current_tenant",
    "clear_tenant_context",
    "tenant_scope",
    "tenant_scope_sync",
]
