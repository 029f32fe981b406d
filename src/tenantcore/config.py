"""
Environment-driven configuration for tenantcore.

Settings are read from ``TENANTCORE_``-prefixed environment variables (or a
``.env`` file) and cached by ``get_settings()``. Components never read
settings implicitly; use their ``from_settings()`` classmethods to bridge.

Example:
    >>> from tenantcore.config import get_settings
    >>> settings = get_settings()
    >>> settings.read_replica_urls
    []
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TENANTCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # 64 hex characters; validated by EncryptionVault so a bad key fails at startup.
    encryption_key: str | None = None

    registry_database_url: str = "postgresql+asyncpg://localhost:5432/registry"

    # Primary and comma-separated replicas for the shared read/write router.
    database_url: str = "postgresql+asyncpg://localhost:5432/app"
    database_read_replicas: str = ""
    replica_failover_threshold: int = 3
    replica_health_check_interval_seconds: float = 30.0

    redis_url: str = "redis://localhost:6379/0"
    cache_default_ttl_seconds: int = 3600
    cache_compression_threshold_bytes: int = 1024
    cache_invalidation_channel: str = "cache:invalidated"
    cache_stats_window_seconds: float = 300.0

    # Status transitions become visible within this bound.
    tenant_cache_ttl_seconds: float = 30.0
    max_cached_tenants: int = 100
    tenant_idle_timeout_seconds: float = 1800.0
    tenant_idle_check_interval_seconds: float = 300.0

    batch_chunk_size: int = 1000

    @property
    def read_replica_urls(self) -> list[str]:
        return [url.strip() for url in self.database_read_replicas.split(",") if url.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
