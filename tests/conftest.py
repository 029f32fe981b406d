"""
Shared pytest fixtures for the tenantcore tests.

This module provides:
- SQLite fixtures (sqlite_engine, second_sqlite_engine, sqlite_url_factory)
- Registry fixtures (tenant_registry, active_tenant)
- A settable monotonic clock (fake_clock)
- A MockTracer for span assertions
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tenantcore.observability import MockTracer
from tenantcore.tenancy import InMemoryTenantRegistry, TenantRecord, TenantStatus

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite  # noqa: F401

    AIOSQLITE_AVAILABLE = True
except ImportError:
    pass


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")


# ============================================================================
# Clock and tracing
# ============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_tracer() -> MockTracer:
    return MockTracer()


# ============================================================================
# SQLite fixtures
# ============================================================================


@pytest.fixture
def sqlite_url_factory(tmp_path: Path) -> Callable[[str], str]:
    """Build file-backed aiosqlite URLs inside the test's tmp directory."""

    def build(name: str) -> str:
        return f"sqlite+aiosqlite:///{tmp_path / name}.db"

    return build


@pytest_asyncio.fixture
async def sqlite_engine(
    sqlite_url_factory: Callable[[str], str],
) -> AsyncGenerator[AsyncEngine, None]:
    """A file-backed SQLite engine, disposed after the test."""
    engine = create_async_engine(sqlite_url_factory("primary"))
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def second_sqlite_engine(
    sqlite_url_factory: Callable[[str], str],
) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(sqlite_url_factory("secondary"))
    yield engine
    await engine.dispose()


# ============================================================================
# Registry fixtures
# ============================================================================


@pytest.fixture
def tenant_registry() -> InMemoryTenantRegistry:
    return InMemoryTenantRegistry()


@pytest_asyncio.fixture
async def active_tenant(
    tenant_registry: InMemoryTenantRegistry,
    sqlite_url_factory: Callable[[str], str],
) -> TenantRecord:
    """An active tenant whose database is a SQLite file."""
    record = TenantRecord(
        id="church-1",
        display_name="First Church",
        database_identifier="church_1",
        connection_secret=sqlite_url_factory("church_1"),
        status=TenantStatus.ACTIVE,
    )
    await tenant_registry.add(record)
    return record
