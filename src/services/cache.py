"""Client-side persisted state: Redis primary with in-memory LRU fallback.

Each client session (one ``X-Client-Id``) gets a :class:`LocalState`
view onto a shared :class:`CacheManager`.  The session store keeps three
entries there so a reload can skip re-authentication:

* ``nagarika_user``  -- the cached :data:`~src.models.identity.Identity`
* ``nagarika_auth``  -- the backend :class:`~src.models.verification.AuthSession`
* ``employee_info``  -- the official's roster entry

If Redis is unavailable every operation degrades to the process-local
LRU so a missing cache never blocks login.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import OrderedDict
from typing import Any, Final, Protocol, runtime_checkable

import orjson
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)

USER_KEY: Final[str] = "nagarika_user"
AUTH_KEY: Final[str] = "nagarika_auth"
EMPLOYEE_KEY: Final[str] = "employee_info"


# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class CacheBackend(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, *keys: str) -> None: ...


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCacheBackend:
    """``redis.asyncio`` client over a shared connection pool."""

    __slots__ = ("_pool", "_redis")

    def __init__(self, url: str, *, max_connections: int = 20) -> None:
        import redis.asyncio as aioredis

        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)

    async def get(self, key: str) -> bytes | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._redis.delete(*keys)

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError):
            return False


# ---------------------------------------------------------------------------
# In-memory LRU backend
# ---------------------------------------------------------------------------


class _CacheEntry:
    __slots__ = ("expires_at", "value")

    def __init__(self, value: bytes, ttl_seconds: int | None) -> None:
        self.value = value
        self.expires_at: float | None = (time.monotonic() + ttl_seconds) if ttl_seconds is not None else None

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() > self.expires_at


class InMemoryCacheBackend:
    """OrderedDict-based LRU with lazy TTL eviction."""

    __slots__ = ("_data", "_lock", "_max_size")

    def __init__(self, *, max_size: int = 10_000) -> None:
        self._max_size = max_size
        self._data: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.expired:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return entry.value

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None:
        async with self._lock:
            self._data.pop(key, None)
            while len(self._data) >= self._max_size:
                self._data.popitem(last=False)
            self._data[key] = _CacheEntry(value, ttl_seconds)

    async def delete(self, *keys: str) -> None:
        async with self._lock:
            for key in keys:
                self._data.pop(key, None)

    @property
    def size(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# CacheManager
# ---------------------------------------------------------------------------


class CacheManager:
    """JSON-valued cache with automatic Redis -> in-memory fallback.

    Parameters
    ----------
    redis_url:
        Redis connection string.  Empty or *None* skips Redis entirely.
    namespace:
        Prefix prepended to every key.
    default_ttl:
        TTL applied by :meth:`set` when the caller gives none.
    inmemory_max_size:
        Maximum entries for the in-memory fallback.
    """

    __slots__ = (
        "_default_ttl",
        "_fallback",
        "_namespace",
        "_redis",
        "_redis_available",
        "_redis_checked",
    )

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        namespace: str = "nagarika:",
        default_ttl: int | None = None,
        inmemory_max_size: int = 10_000,
    ) -> None:
        self._namespace = namespace
        self._default_ttl = default_ttl
        self._fallback = InMemoryCacheBackend(max_size=inmemory_max_size)
        self._redis: RedisCacheBackend | None = None
        self._redis_available = False
        self._redis_checked = False

        if redis_url:
            try:
                self._redis = RedisCacheBackend(url=redis_url)
            except (RedisError, ValueError):
                logger.warning("cache.redis_init_failed")
                self._redis = None

    @property
    def using_redis(self) -> bool:
        return self._redis_available

    def _make_key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def _ensure_checked(self) -> None:
        if self._redis is not None and not self._redis_checked:
            self._redis_checked = True
            self._redis_available = await self._redis.ping()
            if self._redis_available:
                logger.info("cache.redis_connected")
            else:
                logger.warning("cache.redis_unavailable_using_inmemory")

    async def _op(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """Try Redis; on failure flip to in-memory and retry there."""
        await self._ensure_checked()
        if self._redis_available and self._redis is not None:
            try:
                return await getattr(self._redis, method)(*args, **kwargs)
            except (RedisError, OSError):
                logger.warning("cache.redis_op_failed", method=method)
                self._redis_available = False
        return await getattr(self._fallback, method)(*args, **kwargs)

    async def get(self, key: str, default: Any = None) -> Any:
        raw: bytes | None = await self._op("get", self._make_key(key))
        if raw is None:
            return default
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("cache.corrupt_entry", key=key)
            return default

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        await self._op("set", self._make_key(key), orjson.dumps(value), ttl_seconds=ttl)

    async def delete(self, *keys: str) -> None:
        await self._op("delete", *(self._make_key(k) for k in keys))

    async def close(self) -> None:
        if self._redis is not None:
            with contextlib.suppress(RedisError, OSError):
                await self._redis.close()

    def for_client(self, client_id: str) -> LocalState:
        return LocalState(self, client_id)


class LocalState:
    """Per-client view of the cache, the equivalent of one tab's storage."""

    __slots__ = ("_cache", "_prefix", "client_id")

    def __init__(self, cache: CacheManager, client_id: str) -> None:
        self._cache = cache
        self.client_id = client_id
        self._prefix = f"client:{client_id}:"

    async def get(self, key: str) -> Any:
        return await self._cache.get(self._prefix + key)

    async def set(self, key: str, value: Any) -> None:
        await self._cache.set(self._prefix + key, value)

    async def delete(self, *keys: str) -> None:
        await self._cache.delete(*(self._prefix + k for k in keys))

    async def clear(self) -> None:
        await self.delete(USER_KEY, AUTH_KEY, EMPLOYEE_KEY)
