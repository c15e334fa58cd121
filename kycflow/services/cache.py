"""Key/value cache for derived per-owner data.

Values are serialized with orjson.  Redis is used when a URL is configured
and reachable; otherwise, or as soon as a Redis call fails, the manager
switches to a process-local dict so that callers never see a cache error.
Nothing stored here is authoritative.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import orjson
import structlog

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


@runtime_checkable
class CacheBackend(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class RedisCacheBackend:
    """``redis.asyncio`` backend sharing one connection pool."""

    __slots__ = ("_redis",)

    def __init__(self, url: str, *, max_connections: int = 10) -> None:
        import redis.asyncio as aioredis

        self._redis = aioredis.Redis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )

    async def get(self, key: str) -> bytes | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryCacheBackend:
    """OrderedDict LRU with lazy TTL expiry, bounded at ``max_size`` entries."""

    __slots__ = ("_clock", "_data", "_lock", "_max_size")

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_size = max_size
        self._clock = clock
        self._data: OrderedDict[str, tuple[bytes, float | None]] = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() > expires_at:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        async with self._lock:
            self._data.pop(key, None)
            # Least-recently-used first.
            while len(self._data) >= self._max_size:
                self._data.popitem(last=False)
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# CacheManager
# ---------------------------------------------------------------------------


class CacheManager:
    """Namespaced JSON cache with Redis -> in-memory failover.

    Parameters
    ----------
    redis_url:
        Redis connection string, or *None* for in-memory only.
    namespace:
        Prefix added to every key (e.g. ``"stats:"``).
    inmemory_max_size:
        Maximum entries kept by the in-memory fallback.
    """

    __slots__ = ("_fallback", "_namespace", "_redis", "_use_redis", "_checked")

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        namespace: str = "",
        inmemory_max_size: int = 10_000,
    ) -> None:
        self._namespace = namespace
        self._fallback = InMemoryCacheBackend(max_size=inmemory_max_size)
        self._redis: RedisCacheBackend | None = None
        self._use_redis = False
        self._checked = False

        if redis_url:
            try:
                self._redis = RedisCacheBackend(redis_url)
            except Exception:
                logger.warning("cache.redis_init_failed", redis_url=redis_url)

    @classmethod
    def for_namespace(
        cls,
        namespace: str,
        *,
        redis_url: str | None = None,
        inmemory_max_size: int = 10_000,
    ) -> CacheManager:
        return cls(redis_url=redis_url, namespace=namespace, inmemory_max_size=inmemory_max_size)

    async def _ensure_checked(self) -> None:
        if self._checked:
            return
        self._checked = True
        if self._redis is not None:
            self._use_redis = await self._redis.ping()
            if self._use_redis:
                logger.info("cache.redis_connected", namespace=self._namespace)
            else:
                logger.warning("cache.redis_unavailable_using_inmemory", namespace=self._namespace)

    async def _call(self, method: str, key: str, *args: Any, **kwargs: Any) -> Any:
        await self._ensure_checked()
        if self._use_redis and self._redis is not None:
            try:
                return await getattr(self._redis, method)(key, *args, **kwargs)
            except Exception:
                logger.warning("cache.redis_op_failed", method=method, key=key)
                self._use_redis = False
        return await getattr(self._fallback, method)(key, *args, **kwargs)

    async def get(self, key: str, default: Any = None) -> Any:
        raw = await self._call("get", f"{self._namespace}{key}")
        if raw is None:
            return default
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            return default

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        raw = orjson.dumps(value)
        await self._call("set", f"{self._namespace}{key}", raw, ttl_seconds=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._call("delete", f"{self._namespace}{key}")

    async def close(self) -> None:
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.close()
