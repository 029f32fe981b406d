"""
Circuit breaker for outbound provider calls.

States:
    CLOSED: Calls flow through; consecutive failures are counted
    OPEN: Failure threshold reached; calls are rejected immediately
    HALF_OPEN: Recovery timeout elapsed; a limited number of probe calls
        are let through, and one success closes the circuit
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from tenantcore.exceptions import CircuitBreakerOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """State of the circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """
    Configuration for circuit breaker behavior.

    Attributes:
        failure_threshold: Consecutive failures before opening the circuit
        recovery_timeout: Seconds to wait before allowing a probe call
        half_open_max_calls: Probe calls allowed while half-open
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    half_open_max_calls: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}.")

        if self.recovery_timeout <= 0:
            raise ValueError(f"recovery_timeout must be positive, got {self.recovery_timeout}.")

        if self.half_open_max_calls < 1:
            raise ValueError(f"half_open_max_calls must be >= 1, got {self.half_open_max_calls}.")


class CircuitBreaker:
    """
    Circuit breaker protecting a single provider.

    Args:
        name: Provider or operation name used in logs and errors
        config: Circuit breaker configuration
        clock: Monotonic clock (injectable for tests)

    Example:
        >>> breaker = CircuitBreaker(name="telnyx")
        >>> await breaker.execute(lambda: client.send(to, body), "send_sms")
    """

    def __init__(
        self,
        name: str = "default",
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._total_calls = 0
        self._last_failure_time: float | None = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _maybe_half_open(self) -> None:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            elapsed = self._clock() - self._last_failure_time
            if elapsed >= self.config.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
                logger.info(
                    f"Circuit breaker {self.name} entering half-open state",
                    extra={"breaker": self.name, "elapsed_seconds": elapsed},
                )

    async def _acquire(self) -> bool:
        async with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls < self.config.half_open_max_calls:
                    self._half_open_calls += 1
                    return True
            return False

    async def record_success(self) -> None:
        async with self._lock:
            self._success_count += 1
            self._total_calls += 1
            if self._state == CircuitState.HALF_OPEN:
                logger.info(
                    f"Circuit breaker {self.name} closed after successful recovery",
                    extra={"breaker": self.name},
                )
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._half_open_calls = 0

    async def record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            self._total_calls += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(
                    f"Circuit breaker {self.name} reopened after failed recovery attempt",
                    extra={"breaker": self.name, "failure_count": self._failure_count},
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._state = CircuitState.OPEN
                logger.warning(
                    f"Circuit breaker {self.name} opened due to failure threshold",
                    extra={
                        "breaker": self.name,
                        "failure_count": self._failure_count,
                        "threshold": self.config.failure_threshold,
                    },
                )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """
        Execute an operation through the circuit breaker.

        Raises:
            CircuitBreakerOpenError: If the circuit is open
            Exception: Whatever the operation raises
        """
        if not await self._acquire():
            last = self._last_failure_time if self._last_failure_time is not None else self._clock()
            raise CircuitBreakerOpenError(
                f"{self.name}:{operation_name}",
                recovery_time=last + self.config.recovery_timeout,
            )

        try:
            result = await operation()
        except Exception:
            await self.record_failure()
            raise
        await self.record_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to the closed state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0
        logger.info(f"Circuit breaker {self.name} reset to closed state")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "total_calls": self._total_calls,
            "last_failure_time": self._last_failure_time,
            "half_open_calls": self._half_open_calls,
        }


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
]
