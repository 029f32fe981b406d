"""
Observability utilities for tenantcore.

OpenTelemetry is optional. Components accept an injected ``Tracer`` and fall
back to ``create_tracer(__name__, enable_tracing)``, which degrades to a
``NullTracer`` when OpenTelemetry is not installed.
"""

from tenantcore.observability.attributes import (
    ATTR_BATCH_CHUNK_INDEX,
    ATTR_BATCH_CHUNK_SIZE,
    ATTR_BATCH_SIZE,
    ATTR_CACHE_COMPRESSED,
    ATTR_CACHE_HIT,
    ATTR_CACHE_KEY,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_DLQ_CATEGORY,
    ATTR_DLQ_ENTRY_ID,
    ATTR_ERROR_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_RETRY_COUNT,
    ATTR_ROUTE_KIND,
    ATTR_ROUTE_TARGET,
    ATTR_TENANT_ID,
    ATTR_TENANT_STATUS,
)
from tenantcore.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)
from tenantcore.observability.tracing import OTEL_AVAILABLE, get_tracer, should_trace

__all__ = [
    # Availability
    "OTEL_AVAILABLE",
    "get_tracer",
    "should_trace",
    # Tracers
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
    # Attributes
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
