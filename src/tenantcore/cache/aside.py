"""
Cache-aside over Redis with cascading and broadcast invalidation.

The cache is best-effort: every backend failure is logged, counted, and
answered by calling the fetcher directly. A cache outage can slow a request
down but never fail it. Only errors raised by the fetcher itself propagate.

Values are stored as a small JSON envelope (``CacheEntry``) so a reader
knows whether the payload was gzip-compressed without being told.

Example:
    >>> cache = CacheAside.from_settings()
    >>> key = prefix_cache_key("church", church_id, "settings")
    >>> settings = await cache.with_cache(
    ...     key,
    ...     lambda: load_settings(church_id),
    ...     ttl=1800,
    ...     invalidate_on=[f"church:{church_id}"],
    ... )
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import functools
import gzip
import logging
import random
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, ParamSpec, TypeVar

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tenantcore.cache.stats import CacheStats, CacheStatsSnapshot
from tenantcore.config import Settings, get_settings
from tenantcore.exceptions import CacheBackendError
from tenantcore.observability import Tracer, create_tracer
from tenantcore.observability.attributes import (
    ATTR_CACHE_COMPRESSED,
    ATTR_CACHE_HIT,
    ATTR_CACHE_KEY,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_SYSTEM,
)
from tenantcore.serialization import json_dumps, json_loads

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")

DEFAULT_TTL = 3600
COMPRESSION_THRESHOLD = 1024
INVALIDATION_CHANNEL = "cache:invalidated"
TRIGGER_PREFIX = "trigger:"
MAX_RECONNECT_DELAY = 30.0

# Pub/sub failures that end a listen() but leave the subscription recoverable
LISTENER_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    RedisConnectionError,
    RedisTimeoutError,
    OSError,
)

InvalidationHandler = Callable[[list[str]], Awaitable[None]]


def prefix_cache_key(namespace: str, id: str, suffix: str | None = None) -> str:
    """
    Build a namespaced cache key.

    >>> prefix_cache_key("user", "123", "profile")
    'cache:user:123:profile'
    """
    key = f"cache:{namespace}:{id}"
    return f"{key}:{suffix}" if suffix else key


def trigger_key(trigger: str) -> str:
    return f"{TRIGGER_PREFIX}{trigger}"


def jittered_ttl(ttl: int, spread: int = 60, minimum: int = 60) -> int:
    """Spread expiry by up to ``spread`` seconds either way, never below ``minimum``."""
    return max(ttl + random.randint(-spread, spread), minimum)


@dataclass(frozen=True)
class CacheEntry:
    """Envelope stored under a cache key."""

    key: str
    serialized_value: str
    ttl_seconds: int
    compressed: bool = False

    @classmethod
    def build(cls, key: str, value: Any, ttl: int, compress: bool, threshold: int) -> CacheEntry:
        serialized = json_dumps(value)
        if compress and len(serialized.encode("utf-8")) > threshold:
            packed = gzip.compress(serialized.encode("utf-8"))
            return cls(key, base64.b64encode(packed).decode("ascii"), ttl, compressed=True)
        return cls(key, serialized, ttl)

    def encode(self) -> str:
        return json_dumps({"v": self.serialized_value, "c": self.compressed})

    @classmethod
    def decode(cls, key: str, raw: str | bytes, ttl: int = 0) -> CacheEntry:
        envelope = json_loads(raw)
        return cls(key, envelope["v"], ttl, compressed=bool(envelope["c"]))

    def value(self) -> Any:
        if self.compressed:
            payload = gzip.decompress(base64.b64decode(self.serialized_value))
            return json_loads(payload)
        return json_loads(self.serialized_value)


# Payload problems that make a stored entry unreadable
_DECODE_ERRORS = (ValueError, KeyError, TypeError, binascii.Error, OSError, EOFError)


class CacheAside:
    """
    Get-or-compute cache over a shared ``redis.asyncio.Redis`` client.

    Args:
        redis: Shared async Redis client
        default_ttl: TTL in seconds when ``with_cache`` is given none
        compression_threshold: Serialized size in bytes above which values
            are gzip-compressed
        invalidation_channel: Pub/sub channel for broadcast invalidation
        stats: Windowed counters (a fresh 300s window by default)
        reconnect_delay: First wait in seconds before an invalidation
            listener resubscribes after a dropped connection; doubles up to
            ``MAX_RECONNECT_DELAY``
        tracer: Optional tracer
        enable_tracing: Whether to enable tracing (default True)
    """

    def __init__(
        self,
        redis: Redis,
        default_ttl: int = DEFAULT_TTL,
        compression_threshold: int = COMPRESSION_THRESHOLD,
        invalidation_channel: str = INVALIDATION_CHANNEL,
        stats: CacheStats | None = None,
        reconnect_delay: float = 1.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._redis = redis
        self.reconnect_delay = reconnect_delay
        self.reconnections = 0
        self.default_ttl = default_ttl
        self.compression_threshold = compression_threshold
        self.invalidation_channel = invalidation_channel
        self._stats = stats or CacheStats()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._warming_tasks: list[asyncio.Task[None]] = []

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> CacheAside:
        settings = settings or get_settings()
        client = Redis.from_url(settings.redis_url, decode_responses=True)
        return cls(
            client,
            default_ttl=settings.cache_default_ttl_seconds,
            compression_threshold=settings.cache_compression_threshold_bytes,
            invalidation_channel=settings.cache_invalidation_channel,
            stats=CacheStats(window=settings.cache_stats_window_seconds),
            **kwargs,
        )

    @property
    def redis(self) -> Redis:
        return self._redis

    # =========================================================================
    # Get-or-compute
    # =========================================================================

    async def with_cache(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl: int | None = None,
        compress: bool = True,
        invalidate_on: Sequence[str] = (),
    ) -> T:
        """
        Return the cached value for ``key``, computing and storing it on a miss.

        Args:
            key: Full cache key (see ``prefix_cache_key``)
            fetcher: Coroutine factory producing the value on a miss
            ttl: Expiry in seconds (defaults to ``default_ttl``)
            compress: Gzip values larger than ``compression_threshold``
            invalidate_on: Triggers under which the key is registered

        Returns:
            The cached or freshly fetched value

        Raises:
            Exception: Only what ``fetcher`` raises
        """
        ttl = self.default_ttl if ttl is None else ttl
        started = time.perf_counter()

        with self._tracer.span("tenantcore.cache.with_cache", {ATTR_CACHE_KEY: key}) as span:
            cached = await self._read(key)
            if cached is not None:
                self._stats.record_hit(time.perf_counter() - started)
                if span:
                    span.set_attribute(ATTR_CACHE_HIT, True)
                return cached[0]  # type: ignore[no-any-return]

            value = await fetcher()
            self._stats.record_miss(time.perf_counter() - started)

            if span:
                span.set_attribute(ATTR_CACHE_HIT, False)
            try:
                entry = CacheEntry.build(key, value, ttl, compress, self.compression_threshold)
            except (TypeError, ValueError) as e:
                self._record_backend_error("serialize", key, e)
                return value
            if span:
                span.set_attribute(ATTR_CACHE_COMPRESSED, entry.compressed)
            await self._write(entry, invalidate_on)
            return value

    async def _read(self, key: str) -> tuple[Any] | None:
        """Return a 1-tuple holding the cached value, or None on miss or error."""
        try:
            raw = await self._redis.get(key)
        except Exception as e:
            self._record_backend_error("get", key, e)
            return None
        if raw is None:
            return None
        try:
            return (CacheEntry.decode(key, raw).value(),)
        except _DECODE_ERRORS as e:
            self._record_backend_error("decode", key, e)
            return None

    async def _write(self, entry: CacheEntry, triggers: Sequence[str]) -> None:
        try:
            await self._redis.setex(entry.key, entry.ttl_seconds, entry.encode())
            for trigger in triggers:
                await self._redis.sadd(trigger_key(trigger), entry.key)
        except Exception as e:
            self._record_backend_error("set", entry.key, e)

    def _record_backend_error(
        self, operation: str, key: str, error: Exception
    ) -> CacheBackendError:
        self._stats.record_error()
        wrapped = CacheBackendError(operation, key, error)
        logger.warning(
            str(wrapped),
            extra={"operation": operation, "key": key, "error_type": type(error).__name__},
        )
        return wrapped

    # =========================================================================
    # Invalidation
    # =========================================================================

    async def invalidate(self, *keys: str) -> int:
        """Delete ``keys``. Returns the number removed, 0 on backend failure."""
        if not keys:
            return 0
        try:
            return int(await self._redis.delete(*keys))
        except Exception as e:
            self._record_backend_error("delete", ",".join(keys), e)
            return 0

    async def invalidate_trigger(self, trigger: str) -> int:
        """Delete every key registered under ``trigger`` and the trigger set itself."""
        name = trigger_key(trigger)
        try:
            members = await self._redis.smembers(name)
            await self._redis.delete(*members, name)
        except Exception as e:
            self._record_backend_error("invalidate_trigger", name, e)
            return 0
        logger.debug(
            "Invalidated trigger %s",
            trigger,
            extra={"trigger": trigger, "keys": len(members)},
        )
        return len(members)

    async def cascade_invalidate(self, key: str, dependent_keys: Iterable[str] = ()) -> int:
        """
        Delete ``key`` and its dependents in one DELETE.

        Best effort: not transactional across instances, and failures are
        logged rather than raised.
        """
        keys = [key, *dependent_keys]
        removed = await self.invalidate(*keys)
        logger.debug(
            "Cascade invalidated %d keys",
            len(keys),
            extra={"primary_key": key, "dependents": len(keys) - 1},
        )
        return removed

    async def broadcast_invalidate(self, keys: Iterable[str], channel: str | None = None) -> int:
        """
        Publish ``keys`` for every subscribed instance to drop.

        Returns the number of receivers, 0 on backend failure.
        """
        channel = channel or self.invalidation_channel
        payload = json_dumps({"keys": list(keys)})
        with self._tracer.span(
            "tenantcore.cache.broadcast_invalidate",
            {ATTR_MESSAGING_SYSTEM: "redis", ATTR_MESSAGING_DESTINATION: channel},
        ):
            try:
                receivers = int(await self._redis.publish(channel, payload))
            except Exception as e:
                self._record_backend_error("publish", channel, e)
                return 0
        logger.debug("Broadcast cache invalidation", extra={"channel": channel})
        return receivers

    async def subscribe_cache_invalidation(
        self,
        handler: InvalidationHandler,
        channel: str | None = None,
    ) -> Callable[[], Awaitable[None]]:
        """
        Listen for broadcast invalidations and pass each key list to ``handler``.

        Handler failures and malformed messages are logged and skipped. A
        dropped connection is logged and the listener resubscribes with
        backoff, so the subscription outlives Redis restarts.

        Returns:
            Coroutine function that stops listening and closes the subscription
        """
        channel = channel or self.invalidation_channel
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        task = asyncio.create_task(self._listen(pubsub, channel, handler))
        logger.debug("Subscribed to cache invalidation channel", extra={"channel": channel})

        async def unsubscribe() -> None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Cache invalidation listener had failed: {e}", exc_info=True)
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except Exception as e:
                self._record_backend_error("unsubscribe", channel, e)

        return unsubscribe

    async def _listen(self, pubsub: Any, channel: str, handler: InvalidationHandler) -> None:
        delay = self.reconnect_delay
        while True:
            try:
                async for message in pubsub.listen():
                    delay = self.reconnect_delay
                    await self._dispatch_invalidation(message, channel, handler)
                return
            except LISTENER_CONNECTION_ERRORS as e:
                self.reconnections += 1
                self._record_backend_error("listen", channel, e)
                delay = await self._resubscribe(pubsub, channel, delay)

    async def _resubscribe(self, pubsub: Any, channel: str, delay: float) -> float:
        """Sleep and resubscribe until it works; returns the next backoff delay."""
        while True:
            await asyncio.sleep(delay)
            delay = min(delay * 2, MAX_RECONNECT_DELAY)
            try:
                await pubsub.subscribe(channel)
            except LISTENER_CONNECTION_ERRORS as e:
                logger.error(
                    f"Failed to resubscribe to {channel}, will retry: {e}",
                    extra={"channel": channel, "reconnections": self.reconnections},
                )
            else:
                logger.info(
                    "Resubscribed to cache invalidation channel",
                    extra={"channel": channel, "reconnections": self.reconnections},
                )
                return delay

    async def _dispatch_invalidation(
        self, message: dict[str, Any], channel: str, handler: InvalidationHandler
    ) -> None:
        if message.get("type") != "message":
            return
        try:
            keys = list(json_loads(message["data"])["keys"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Malformed invalidation message on {channel}: {e}")
            return
        try:
            await handler(keys)
        except Exception as e:
            logger.error(
                f"Cache invalidation handler failed: {e}",
                exc_info=True,
                extra={"channel": channel, "keys": len(keys)},
            )

    def invalidating_handler(self) -> InvalidationHandler:
        """Handler that deletes the broadcast keys from this instance's cache."""

        async def handle(keys: list[str]) -> None:
            await self.invalidate(*keys)

        return handle

    # =========================================================================
    # Decorator and warming
    # =========================================================================

    def cached(
        self,
        namespace: str,
        ttl: int | None = None,
        key_builder: Callable[..., str] | None = None,
        compress: bool = True,
    ) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
        """
        Decorate an async function so its results go through ``with_cache``.

        The default key joins the positional arguments: ``cache:<ns>:<a1>:<a2>``.
        """

        def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
            @functools.wraps(func)
            async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
                if key_builder is not None:
                    key = key_builder(*args, **kwargs)
                else:
                    key = prefix_cache_key(namespace, ":".join(str(a) for a in args))
                return await self.with_cache(
                    key, lambda: func(*args, **kwargs), ttl=ttl, compress=compress
                )

            return wrapper

        return decorator

    async def warm(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: int | None = None,
    ) -> None:
        """Fetch and store ``key`` unconditionally, with jittered expiry."""
        value = await fetcher()
        expiry = jittered_ttl(self.default_ttl if ttl is None else ttl)
        entry = CacheEntry.build(key, value, expiry, True, self.compression_threshold)
        await self._write(entry, ())

    def start_cache_warming(
        self,
        fetchers: dict[str, Callable[[], Awaitable[Any]]],
        interval: float = 300.0,
        ttl: int | None = None,
    ) -> asyncio.Task[None]:
        """Refresh each key in ``fetchers`` now and then every ``interval`` seconds."""
        task = asyncio.create_task(self._warm_loop(fetchers, interval, ttl))
        self._warming_tasks.append(task)
        return task

    async def _warm_loop(
        self,
        fetchers: dict[str, Callable[[], Awaitable[Any]]],
        interval: float,
        ttl: int | None,
    ) -> None:
        while True:
            for key, fetcher in fetchers.items():
                try:
                    await self.warm(key, fetcher, ttl)
                    logger.debug("Cache warmed: %s", key)
                except Exception as e:
                    logger.warning(f"Cache warming failed for {key}: {e}", extra={"key": key})
            await asyncio.sleep(interval)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def stats(self) -> CacheStatsSnapshot:
        return self._stats.snapshot()

    async def close(self) -> None:
        """Stop warming tasks and close the Redis client."""
        for task in self._warming_tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._warming_tasks.clear()
        await self._redis.aclose()


__all__ = [
    "CacheAside",
    "CacheEntry",
    "DEFAULT_TTL",
    "COMPRESSION_THRESHOLD",
    "INVALIDATION_CHANNEL",
    "InvalidationHandler",
    "prefix_cache_key",
    "trigger_key",
    "jittered_ttl",
]
