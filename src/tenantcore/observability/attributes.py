"""
Standard span attributes for tenantcore.

Attribute names follow OpenTelemetry semantic conventions where one exists
(``db.*``, ``messaging.*``) and use the ``tenantcore.`` prefix otherwise.
"""

# =============================================================================
# Tenant Attributes
# =============================================================================

ATTR_TENANT_ID = "tenantcore.tenant.id"
"""Tenant identifier (string)."""

ATTR_TENANT_STATUS = "tenantcore.tenant.status"
"""Registry status of the tenant (active, suspended, deleted)."""

ATTR_CACHE_HIT = "tenantcore.tenant.cache_hit"
"""Whether a lookup was served from an in-process cache (bool)."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system (e.g., 'postgresql', 'sqlite')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'INSERT', 'find_many')."""

ATTR_DB_TABLE = "db.sql.table"
"""Table targeted by the statement."""

# =============================================================================
# Messaging Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system (always 'redis' for cache invalidation)."""

ATTR_MESSAGING_DESTINATION = "messaging.destination"
"""Pub/sub channel name."""

# =============================================================================
# DLQ Attributes
# =============================================================================

ATTR_DLQ_ENTRY_ID = "tenantcore.dlq.entry_id"
"""DLQ entry identifier."""

ATTR_DLQ_CATEGORY = "tenantcore.dlq.category"
"""DLQ category (SMS_SEND, WEBHOOK_INBOUND, ...)."""

# =============================================================================
# Batch Attributes
# =============================================================================

ATTR_BATCH_SIZE = "tenantcore.batch.size"
"""Total number of items submitted to a batch operation."""

ATTR_BATCH_CHUNK_SIZE = "tenantcore.batch.chunk_size"
"""Configured chunk size."""

ATTR_BATCH_CHUNK_INDEX = "tenantcore.batch.chunk_index"
"""Zero-based index of the chunk being processed."""

# =============================================================================
# Routing Attributes
# =============================================================================

ATTR_ROUTE_KIND = "tenantcore.route.kind"
"""READ or WRITE."""

ATTR_ROUTE_TARGET = "tenantcore.route.target"
"""'primary' or 'replica-<n>'."""

# =============================================================================
# Cache Attributes
# =============================================================================

ATTR_CACHE_KEY = "tenantcore.cache.key"
"""Cache key."""

ATTR_CACHE_COMPRESSED = "tenantcore.cache.compressed"
"""Whether the stored payload is compressed."""

# =============================================================================
# Error and Retry Attributes
# =============================================================================

ATTR_RETRY_COUNT = "tenantcore.retry.count"
"""Number of attempts made so far."""

ATTR_ERROR_TYPE = "tenantcore.error.type"
"""Exception class name."""


__all__ = [
    "ATTR_TENANT_ID",
    "ATTR_TENANT_STATUS",
    "ATTR_CACHE_HIT",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_DB_TABLE",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_DLQ_ENTRY_ID",
    "ATTR_DLQ_CATEGORY",
    "ATTR_BATCH_SIZE",
    "ATTR_BATCH_CHUNK_SIZE",
    "ATTR_BATCH_CHUNK_INDEX",
    "ATTR_ROUTE_KIND",
    "ATTR_ROUTE_TARGET",
    "ATTR_CACHE_KEY",
    "ATTR_CACHE_COMPRESSED",
    "ATTR_RETRY_COUNT",
    "ATTR_ERROR_TYPE",
]
