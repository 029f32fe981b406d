"""Library exceptions for the tenantcore package."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tenantcore.batch import BatchOperationResult


class TenantCoreError(Exception):
    """Base exception for tenantcore library."""

    pass


# =============================================================================
# Tenant resolution
# =============================================================================


class TenantNotFoundError(TenantCoreError):
    """Raised when no usable TenantRecord exists for a tenant id."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        super().__init__(f"Tenant not found: {tenant_id}")


class TenantSuspendedError(TenantCoreError):
    """Raised when a tenant exists but its status is not active."""

    def __init__(self, tenant_id: str, status: str) -> None:
        self.tenant_id = tenant_id
        self.status = status
        super().__init__(f"Tenant {tenant_id} is not active (status: {status})")


class ManagerClosedError(TenantCoreError):
    """Raised when resolving through a connection manager that has been closed."""

    def __init__(self) -> None:
        super().__init__("Tenant connection manager is shutting down")


# =============================================================================
# Provider calls
# =============================================================================


class ProviderError(TenantCoreError):
    """
    Base class for failures of outbound provider calls (SMS, payment).

    Attributes:
        status_code: HTTP status returned by the provider, if any
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Provider failure that is expected to succeed on retry."""

    pass


class PermanentProviderError(ProviderError):
    """Provider failure that must never be retried."""

    pass


class CircuitBreakerOpenError(TenantCoreError):
    """
    Raised when a circuit breaker is open and blocking calls.

    Attributes:
        name: Name of the protected operation
        recovery_time: Monotonic time when the circuit may attempt recovery
    """

    def __init__(self, name: str, recovery_time: float) -> None:
        self.name = name
        self.recovery_time = recovery_time
        super().__init__(f"Circuit breaker is open for {name}")


# =============================================================================
# Encryption
# =============================================================================


class EncryptionKeyError(TenantCoreError):
    """Raised at startup when the encryption key is missing or malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class EncryptionError(TenantCoreError):
    """Raised when a field cannot be encrypted."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Encryption failed: {message}")


class DecryptionError(TenantCoreError):
    """Raised when a stored field cannot be decrypted or fails authentication."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Decryption failed: {message}")


# =============================================================================
# Dead letter queue
# =============================================================================


class DLQEntryNotFoundError(TenantCoreError):
    """Raised when a DLQ entry cannot be found."""

    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__(f"DLQ entry not found: {entry_id}")


class InvalidDLQTransitionError(TenantCoreError):
    """
    Raised when a DLQ status transition is not allowed.

    Only PENDING entries can move, and only to RESOLVED or DEAD_LETTER.

    Attributes:
        entry_id: The DLQ entry id
        current: Current status of the entry
        target: Status the caller attempted to move to
    """

    def __init__(self, entry_id: str, current: str, target: str) -> None:
        self.entry_id = entry_id
        self.current = current
        self.target = target
        super().__init__(f"DLQ entry {entry_id} cannot move from {current} to {target}")


# =============================================================================
# Batch, routing, cache
# =============================================================================


class BatchChunkError(TenantCoreError):
    """
    Raised when a batch chunk fails and errors are not being ignored.

    Chunks processed before the failing one remain committed.

    Attributes:
        chunk_index: Index of the chunk that failed
        cause: The underlying exception
        result: Accounting for the work done up to and including the failure
    """

    def __init__(
        self,
        chunk_index: int,
        cause: BaseException,
        result: BatchOperationResult | None = None,
    ) -> None:
        self.chunk_index = chunk_index
        self.cause = cause
        self.result = result
        super().__init__(f"Batch chunk {chunk_index} failed: {cause}")


class ReplicaUnavailableError(TenantCoreError):
    """Raised when read replicas are configured but none is healthy."""

    def __init__(self, replica_count: int) -> None:
        self.replica_count = replica_count
        super().__init__(f"No healthy read replica available ({replica_count} configured)")


class CacheBackendError(TenantCoreError):
    """Raised internally when the cache backend fails; always recovered locally."""

    def __init__(self, operation: str, key: str, cause: Any) -> None:
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"Cache {operation} failed for {key}: {cause}")


__all__ = [
    "TenantCoreError",
    "TenantNotFoundError",
    "TenantSuspendedError",
    "ManagerClosedError",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "CircuitBreakerOpenError",
    "EncryptionKeyError",
    "EncryptionError",
    "DecryptionError",
    "DLQEntryNotFoundError",
    "InvalidDLQTransitionError",
    "BatchChunkError",
    "ReplicaUnavailableError",
    "CacheBackendError",
]
