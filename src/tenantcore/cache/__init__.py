"""Best-effort cache-aside over Redis with windowed hit/miss statistics."""

from tenantcore.cache.aside import (
    COMPRESSION_THRESHOLD,
    DEFAULT_TTL,
    INVALIDATION_CHANNEL,
    CacheAside,
    CacheEntry,
    InvalidationHandler,
    jittered_ttl,
    prefix_cache_key,
    trigger_key,
)
from tenantcore.cache.stats import CacheStats, CacheStatsSnapshot

__all__ = [
    "CacheAside",
    "CacheEntry",
    "CacheStats",
    "CacheStatsSnapshot",
    "COMPRESSION_THRESHOLD",
    "DEFAULT_TTL",
    "INVALIDATION_CHANNEL",
    "InvalidationHandler",
    "jittered_ttl",
    "prefix_cache_key",
    "trigger_key",
]
