"""
Injectable tracers for tenantcore components.

Every component that touches a database, the cache or a provider accepts a
``tracer`` argument. When none is given it builds one with
``create_tracer(__name__, enable_tracing)``, which returns a real
OpenTelemetry tracer only when the optional dependency is installed.

Example:
    >>> from tenantcore.observability import create_tracer
    >>>
    >>> class TenantAwareThing:
    ...     def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True):
    ...         self._tracer = tracer or create_tracer(__name__, enable_tracing)
    ...
    ...     async def run(self, tenant_id: str) -> None:
    ...         with self._tracer.span("tenantcore.thing.run", {ATTR_TENANT_ID: tenant_id}):
    ...             ...
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from opentelemetry.trace import Span

from tenantcore.observability.tracing import get_tracer, should_trace


class SpanKindEnum(Enum):
    """
    Role a span plays in a trace.

    Maps onto OpenTelemetry's SpanKind when it is installed. CLIENT is used
    for database and provider calls, PRODUCER/CONSUMER for cache
    invalidation broadcasts.
    """

    INTERNAL = "internal"
    PRODUCER = "producer"
    CONSUMER = "consumer"
    CLIENT = "client"
    SERVER = "server"


@runtime_checkable
class Tracer(Protocol):
    """
    Protocol for tracers injected into components.

    Implementations:
    - NullTracer: no-op, used when tracing is off
    - OpenTelemetryTracer: wraps an OpenTelemetry tracer
    - MockTracer: records span names and attributes for tests
    """

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Create a tracing span context manager.

        Args:
            name: Span name (e.g., "tenantcore.dlq.add")
            attributes: Span attributes (optional)

        Returns:
            Context manager that yields Span or None
        """
        ...

    @property
    def enabled(self) -> bool:
        """True if this tracer creates real spans."""
        ...

    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Create a span context manager with an explicit SpanKind.

        Args:
            name: Span name
            kind: The span kind (CLIENT, PRODUCER, ...)
            attributes: Span attributes (optional)
        """
        ...


class NullTracer:
    """
    No-op tracer used when tracing is disabled or OpenTelemetry is missing.

    Example:
        >>> tracer = NullTracer()
        >>> with tracer.span("operation"):
        ...     pass
        >>> tracer.enabled
        False
    """

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False

    @contextlib.contextmanager
    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Args:
        tracer_name: Name for the tracer (typically __name__)

    Raises:
        ImportError: If OpenTelemetry is not installed
    """

    def __init__(self, tracer_name: str) -> None:
        tracer = get_tracer(tracer_name)
        if tracer is None:
            raise ImportError(
                "OpenTelemetryTracer requires opentelemetry-api "
                "(pip install tenantcore[telemetry])"
            )
        self._tracer = tracer

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(name, attributes=attributes or {})

    @property
    def enabled(self) -> bool:
        return True

    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        from opentelemetry.trace import SpanKind as OtelSpanKind

        kind_mapping = {
            SpanKindEnum.INTERNAL: OtelSpanKind.INTERNAL,
            SpanKindEnum.PRODUCER: OtelSpanKind.PRODUCER,
            SpanKindEnum.CONSUMER: OtelSpanKind.CONSUMER,
            SpanKindEnum.CLIENT: OtelSpanKind.CLIENT,
            SpanKindEnum.SERVER: OtelSpanKind.SERVER,
        }
        return self._tracer.start_as_current_span(
            name,
            kind=kind_mapping.get(kind, OtelSpanKind.INTERNAL),
            attributes=attributes or {},
        )


class MockTracer:
    """
    Tracer for tests that records every span it is asked to open.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("tenantcore.cache.get", {"k": "v"}):
        ...     pass
        >>> tracer.span_names
        ['tenantcore.cache.get']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def clear(self) -> None:
        self.spans.clear()

    @contextlib.contextmanager
    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        yield None


def create_tracer(
    name: str,
    enable_tracing: bool = True,
) -> Tracer:
    """
    Build the tracer a component should use.

    Args:
        name: Tracer name (typically __name__)
        enable_tracing: Whether tracing should be enabled (default True)

    Returns:
        OpenTelemetryTracer if enabled and available, NullTracer otherwise
    """
    if should_trace(enable_tracing):
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
]
