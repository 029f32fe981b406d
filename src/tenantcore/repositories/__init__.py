"""Tenant-scoped persistence: the dead letter queue."""

from tenantcore.repositories._connection import (
    ConnectionSource,
    SupportsEngine,
    execute_with_connection,
)
from tenantcore.repositories.dlq import (
    DeadLetterQueue,
    DLQCategory,
    DLQEntry,
    DLQPage,
    DLQStats,
    DLQStatus,
    InMemoryDeadLetterQueue,
    Pagination,
    SQLDeadLetterQueue,
)

__all__ = [
    "ConnectionSource",
    "SupportsEngine",
    "execute_with_connection",
    "DeadLetterQueue",
    "DLQCategory",
    "DLQEntry",
    "DLQPage",
    "DLQStats",
    "DLQStatus",
    "InMemoryDeadLetterQueue",
    "Pagination",
    "SQLDeadLetterQueue",
]
