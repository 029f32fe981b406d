"""
Retry utilities for outbound provider calls.

Provides exponential backoff with jitter and transient/permanent error
classification for SMS and payment provider calls.

This module provides:
- RetryConfig: Configuration for retry behavior
- RetryStats: Statistics for retry operations
- ErrorClass / classify_error: Transient vs permanent classification
- calculate_backoff: Delay with exponential growth and jitter
- with_retry: Retry an async operation, re-raising the last error on exhaustion
- RetryExecutor: Reusable executor bundling config, classifier and circuit breaker

RetryExecutor never persists failures itself. When ``with_retry`` re-raises,
the caller decides whether to write a DLQ entry.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from tenantcore.exceptions import (
    CircuitBreakerOpenError,
    PermanentProviderError,
    TransientProviderError,
)
from tenantcore.resilience.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[Any]]


# Network-level failures that are always worth another attempt
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)


class ErrorClass(Enum):
    """
    Retry classification of a failure.

    Attributes:
        TRANSIENT: Back off and try again
        PERMANENT: Propagate immediately without retrying
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Retries after the first attempt (0 = single attempt)
        initial_delay: Delay in seconds before the first retry
        max_delay: Upper bound in seconds for any single delay
        multiplier: Exponential growth factor between retries
        jitter_factor: Jitter span as a fraction of the delay; the applied
            jitter is uniform in ±(jitter_factor * delay) / 2

    Example:
        >>> config = RetryConfig(max_retries=3, initial_delay=0.5, max_delay=8.0)
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_retries < 0:
            raise ValueError(
                f"max_retries must be >= 0, got {self.max_retries}. Use 0 for no retries."
            )

        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}.")

        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})."
            )

        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}.")

        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(
                f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}."
            )


# Outbound SMS sends: quick first retry, capped well below request timeouts
SMS_PROVIDER_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    initial_delay=1.0,
    max_delay=8.0,
    multiplier=2.0,
    jitter_factor=0.1,
)

# Payment calls: fewer, slower attempts
PAYMENT_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    initial_delay=2.0,
    max_delay=10.0,
    multiplier=2.0,
    jitter_factor=0.2,
)


@dataclass
class RetryStats:
    """
    Statistics for retry operations.

    Attributes:
        attempts: Total number of attempts (including initial)
        successes: Number of successful attempts
        failures: Number of failed attempts
        retries: Number of backoff sleeps taken
        total_delay_seconds: Total time spent in delays
        last_error: String representation of the last error
    """

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    retries: int = 0
    total_delay_seconds: float = 0.0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "retries": self.retries,
            "total_delay_seconds": self.total_delay_seconds,
            "last_error": self.last_error,
        }


def _status_code(error: BaseException) -> int | None:
    """Best-effort HTTP status extraction from provider/HTTP client errors."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        for attr in ("status_code", "status"):
            value = getattr(response, attr, None)
            if isinstance(value, int):
                return value
    return None


def classify_error(error: BaseException) -> ErrorClass:
    """
    Classify a failure as transient or permanent.

    Transient: timeouts, connection errors (including resets), HTTP 5xx and
    HTTP 429, and TransientProviderError. Permanent: every other 4xx, an
    open circuit breaker, PermanentProviderError, and anything unrecognized.

    Args:
        error: The exception raised by the operation

    Returns:
        ErrorClass.TRANSIENT or ErrorClass.PERMANENT
    """
    if isinstance(error, CircuitBreakerOpenError | PermanentProviderError):
        return ErrorClass.PERMANENT
    if isinstance(error, TransientProviderError):
        return ErrorClass.TRANSIENT

    status = _status_code(error)
    if status is not None:
        if status == 429 or 500 <= status < 600:
            return ErrorClass.TRANSIENT
        if 400 <= status < 500:
            return ErrorClass.PERMANENT

    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
    jitter: bool = True,
) -> float:
    """
    Calculate backoff delay with exponential growth and jitter.

    Without jitter, successive delays are non-decreasing and capped at
    ``max_delay``.

    Args:
        attempt: Retry number (0-based)
        config: Retry configuration
        jitter: Apply random jitter (default True)

    Returns:
        Delay in seconds, never negative

    Example:
        >>> config = RetryConfig(initial_delay=1.0, max_delay=30.0)
        >>> calculate_backoff(3, config, jitter=False)
        8.0
    """
    delay = min(config.initial_delay * (config.multiplier**attempt), config.max_delay)

    if jitter and config.jitter_factor > 0:
        half_span = (config.jitter_factor * delay) / 2
        delay += random.uniform(-half_span, half_span)  # nosec B311 - not crypto

    return max(0.0, delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
    classifier: Callable[[BaseException], ErrorClass] = classify_error,
    sleep: Sleeper = asyncio.sleep,
    stats: RetryStats | None = None,
) -> T:
    """
    Run an async operation, retrying transient failures with backoff.

    Attempts are strictly sequential. A permanent failure is re-raised
    immediately. After ``max_retries + 1`` attempts the last error is
    re-raised unchanged; nothing is swallowed.

    Args:
        operation: Zero-argument async callable
        config: Retry configuration (defaults if None)
        operation_name: Name for logging
        classifier: Maps an exception to TRANSIENT or PERMANENT
        sleep: Awaitable sleep function (injectable for tests)
        stats: Optional stats accumulator

    Returns:
        Result of the first successful attempt

    Example:
        >>> result = await with_retry(
        ...     lambda: sms_client.send(to, body),
        ...     SMS_PROVIDER_RETRY_CONFIG,
        ...     operation_name=f"send_sms:{recipient_id}",
        ... )
    """
    config = config or RetryConfig()
    stats = stats if stats is not None else RetryStats()

    for attempt in range(config.max_retries + 1):
        stats.attempts += 1
        try:
            result = await operation()
        except Exception as e:
            stats.failures += 1
            stats.last_error = str(e)
            error_class = classifier(e)

            if error_class is ErrorClass.PERMANENT:
                logger.error(
                    f"Non-retryable error in {operation_name}",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt + 1,
                        "error_type": type(e).__name__,
                    },
                    exc_info=True,
                )
                raise

            if attempt >= config.max_retries:
                logger.error(
                    f"All retries exhausted for {operation_name}",
                    extra={
                        "operation": operation_name,
                        "attempts": attempt + 1,
                        "total_delay_seconds": stats.total_delay_seconds,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise

            delay = calculate_backoff(attempt, config)
            stats.retries += 1
            stats.total_delay_seconds += delay
            logger.warning(
                f"Retrying {operation_name} after transient failure",
                extra={
                    "operation": operation_name,
                    "attempt": attempt + 1,
                    "max_retries": config.max_retries,
                    "delay_seconds": delay,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            await sleep(delay)
            continue

        stats.successes += 1
        if attempt > 0:
            logger.info(
                f"Operation {operation_name} succeeded after retry",
                extra={"operation": operation_name, "attempt": attempt + 1},
            )
        return result

    raise AssertionError("retry loop exited without result")  # pragma: no cover


@dataclass
class RetryExecutor:
    """
    Reusable retry policy for a provider.

    Combines a RetryConfig, an error classifier and an optional circuit
    breaker. When the breaker is open the call fails immediately with
    CircuitBreakerOpenError, which is classified as permanent.

    Example:
        >>> sms_retry = RetryExecutor(
        ...     config=SMS_PROVIDER_RETRY_CONFIG,
        ...     circuit_breaker=CircuitBreaker(name="telnyx"),
        ... )
        >>> await sms_retry.execute(lambda: client.send(to, body), "send_sms")
    """

    config: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreaker | None = None
    classifier: Callable[[BaseException], ErrorClass] = classify_error
    sleep: Sleeper = asyncio.sleep
    _stats: RetryStats = field(default_factory=RetryStats, init=False, repr=False)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str = "operation",
    ) -> T:
        """
        Execute an operation under this executor's retry policy.

        Raises:
            CircuitBreakerOpenError: If the circuit breaker is open
            Exception: The last error once retries are exhausted, or the
                first permanent error
        """
        if self.circuit_breaker is not None:
            breaker = self.circuit_breaker

            async def protected() -> T:
                return await breaker.execute(operation, name)

            return await with_retry(
                protected, self.config, name, self.classifier, self.sleep, self._stats
            )
        return await with_retry(
            operation, self.config, name, self.classifier, self.sleep, self._stats
        )

    @property
    def stats(self) -> RetryStats:
        return self._stats


__all__ = [
    # Configuration
    "RetryConfig",
    "RetryStats",
    "SMS_PROVIDER_RETRY_CONFIG",
    "PAYMENT_RETRY_CONFIG",
    # Classification
    "ErrorClass",
    "classify_error",
    "TRANSIENT_EXCEPTIONS",
    # Functions
    "calculate_backoff",
    "with_retry",
    # Classes
    "RetryExecutor",
]
