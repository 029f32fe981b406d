"""Retry, backoff and circuit breaking for outbound provider calls."""

from tenantcore.exceptions import CircuitBreakerOpenError
from tenantcore.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from tenantcore.resilience.retry import (
    PAYMENT_RETRY_CONFIG,
    SMS_PROVIDER_RETRY_CONFIG,
    TRANSIENT_EXCEPTIONS,
    ErrorClass,
    RetryConfig,
    RetryExecutor,
    RetryStats,
    calculate_backoff,
    classify_error,
    with_retry,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerOpenError",
    "CircuitState",
    "ErrorClass",
    "PAYMENT_RETRY_CONFIG",
    "RetryConfig",
    "RetryExecutor",
    "RetryStats",
    "SMS_PROVIDER_RETRY_CONFIG",
    "TRANSIENT_EXCEPTIONS",
    "calculate_backoff",
    "classify_error",
    "with_retry",
]
