"""
tenantcore - Resilient multi-tenant data access for asyncio services.

This library provides:
- Tenant resolution to pooled per-tenant database engines
- Authenticated field encryption with search-by-hash
- Retry with exponential backoff, jitter and a circuit breaker
- A dead letter queue for failures that exhausted their retries
- Chunked batch mutation with configurable isolation
- Read/write routing across a primary and read replicas
- Best-effort cache-aside over Redis with broadcast invalidation
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tenantcore")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Batch
from tenantcore.batch import (
    BatchConfig,
    BatchExecutor,
    BatchOperationResult,
    ChunkError,
    IsolationLevel,
)

# Cache
from tenantcore.cache import (
    CacheAside,
    CacheEntry,
    CacheStats,
    jittered_ttl,
    prefix_cache_key,
)

# Configuration
from tenantcore.config import Settings, get_settings

# Encryption
from tenantcore.crypto import (
    Encrypted,
    EncryptionVault,
    Legacy,
    ParsedField,
    generate_token,
    mask_ein,
    parse_stored,
)

# Exceptions
from tenantcore.exceptions import (
    BatchChunkError,
    CacheBackendError,
    CircuitBreakerOpenError,
    DecryptionError,
    DLQEntryNotFoundError,
    EncryptionError,
    EncryptionKeyError,
    InvalidDLQTransitionError,
    ManagerClosedError,
    PermanentProviderError,
    ProviderError,
    ReplicaUnavailableError,
    TenantCoreError,
    TenantNotFoundError,
    TenantSuspendedError,
    TransientProviderError,
)

# Dead letter queue
from tenantcore.repositories import (
    DeadLetterQueue,
    DLQCategory,
    DLQEntry,
    DLQPage,
    DLQStats,
    DLQStatus,
    InMemoryDeadLetterQueue,
    SQLDeadLetterQueue,
)

# Retry and circuit breaking
from tenantcore.resilience import (
    PAYMENT_RETRY_CONFIG,
    SMS_PROVIDER_RETRY_CONFIG,
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryConfig,
    RetryExecutor,
    calculate_backoff,
    classify_error,
    with_retry,
)

# Routing
from tenantcore.routing import OperationKind, ReadWriteRouter, classify_operation

# Tenancy
from tenantcore.tenancy import (
    InMemoryTenantRegistry,
    SQLTenantRegistry,
    TenantConnectionManager,
    TenantHandle,
    TenantRecord,
    TenantRegistry,
    TenantStatus,
    get_current_tenant,
    tenant_scope,
)

__all__ = [
    "__version__",
    # Batch
    "BatchConfig",
    "BatchExecutor",
    "BatchOperationResult",
    "ChunkError",
    "IsolationLevel",
    # Cache
    "CacheAside",
    "CacheEntry",
    "CacheStats",
    "jittered_ttl",
    "prefix_cache_key",
    # Configuration
    "Settings",
    "get_settings",
    # Encryption
    "Encrypted",
    "EncryptionVault",
    "Legacy",
    "ParsedField",
    "generate_token",
    "mask_ein",
    "parse_stored",
    # Exceptions
    "BatchChunkError",
    "CacheBackendError",
    "CircuitBreakerOpenError",
    "DecryptionError",
    "DLQEntryNotFoundError",
    "EncryptionError",
    "EncryptionKeyError",
    "InvalidDLQTransitionError",
    "ManagerClosedError",
    "PermanentProviderError",
    "ProviderError",
    "ReplicaUnavailableError",
    "TenantCoreError",
    "TenantNotFoundError",
    "TenantSuspendedError",
    "TransientProviderError",
    # Dead letter queue
    "DeadLetterQueue",
    "DLQCategory",
    "DLQEntry",
    "DLQPage",
    "DLQStats",
    "DLQStatus",
    "InMemoryDeadLetterQueue",
    "SQLDeadLetterQueue",
    # Retry
    "PAYMENT_RETRY_CONFIG",
    "SMS_PROVIDER_RETRY_CONFIG",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "RetryConfig",
    "RetryExecutor",
    "calculate_backoff",
    "classify_error",
    "with_retry",
    # Routing
    "OperationKind",
    "ReadWriteRouter",
    "classify_operation",
    # Tenancy
    "InMemoryTenantRegistry",
    "SQLTenantRegistry",
    "TenantConnectionManager",
    "TenantHandle",
    "TenantRecord",
    "TenantRegistry",
    "TenantStatus",
    "get_current_tenant",
    "tenant_scope",
]
