"""Tests for the client-state cache (in-memory LRU + CacheManager + LocalState)."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.services.cache import (
    AUTH_KEY,
    EMPLOYEE_KEY,
    USER_KEY,
    CacheManager,
    InMemoryCacheBackend,
)


# -----------------------------------------------------------------------
# InMemoryCacheBackend
# -----------------------------------------------------------------------


class TestInMemoryCacheBackend:
    async def test_get_set_basic(self) -> None:
        cache = InMemoryCacheBackend(max_size=100)
        await cache.set("key1", b"value1")
        assert await cache.get("key1") == b"value1", "get should return the value that was set"

    async def test_get_missing_key_returns_none(self) -> None:
        cache = InMemoryCacheBackend(max_size=100)
        assert await cache.get("nonexistent") is None

    async def test_delete_many(self) -> None:
        cache = InMemoryCacheBackend(max_size=100)
        await cache.set("a", b"1")
        await cache.set("b", b"2")
        await cache.delete("a", "b", "missing")
        assert cache.size == 0

    async def test_lru_eviction(self) -> None:
        cache = InMemoryCacheBackend(max_size=3)
        await cache.set("a", b"1")
        await cache.set("b", b"2")
        await cache.set("c", b"3")
        await cache.get("a")  # 'b' is now least recently used

        await cache.set("d", b"4")

        assert cache.size == 3
        assert await cache.get("b") is None, "LRU entry 'b' should have been evicted"
        assert await cache.get("a") == b"1"

    async def test_ttl_expiry(self) -> None:
        cache = InMemoryCacheBackend(max_size=10)
        await cache.set("k", b"v", ttl_seconds=5)
        with patch("src.services.cache.time.monotonic", return_value=time.monotonic() + 10):
            assert await cache.get("k") is None, "expired entry should not be returned"


# -----------------------------------------------------------------------
# CacheManager
# -----------------------------------------------------------------------


class TestCacheManager:
    async def test_json_round_trip_without_redis(self) -> None:
        manager = CacheManager()
        await manager.set("profile", {"name": "Anita", "age": 34})

        assert await manager.get("profile") == {"name": "Anita", "age": 34}
        assert not manager.using_redis

    async def test_default_for_missing_key(self) -> None:
        manager = CacheManager()
        assert await manager.get("missing", default="fallback") == "fallback"

    async def test_keys_are_namespaced(self) -> None:
        manager = CacheManager(namespace="test:")
        await manager.set("k", 1)
        assert await manager._fallback.get("test:k") == b"1"

    async def test_corrupt_entry_returns_default(self) -> None:
        manager = CacheManager(namespace="")
        await manager._fallback.set("bad", b"{not json")
        assert await manager.get("bad") is None

    async def test_unreachable_redis_falls_back_to_memory(self) -> None:
        manager = CacheManager(redis_url="redis://localhost:1/0")
        manager._redis = MagicMock()
        manager._redis.ping = AsyncMock(return_value=False)

        await manager.set("k", "v")

        assert await manager.get("k") == "v"
        assert not manager.using_redis

    async def test_redis_error_mid_operation_flips_to_memory(self) -> None:
        manager = CacheManager(redis_url="redis://localhost:6379/0")
        fake = MagicMock()
        fake.ping = AsyncMock(return_value=True)
        fake.set = AsyncMock(side_effect=RedisConnectionError("connection reset"))
        fake.get = AsyncMock(side_effect=RedisConnectionError("connection reset"))
        manager._redis = fake

        await manager.set("k", {"v": 1})

        assert not manager.using_redis
        assert await manager.get("k") == {"v": 1}

    async def test_redis_used_when_available(self) -> None:
        manager = CacheManager(redis_url="redis://localhost:6379/0", namespace="n:")
        fake = MagicMock()
        fake.ping = AsyncMock(return_value=True)
        fake.set = AsyncMock()
        fake.get = AsyncMock(return_value=b'"hello"')
        manager._redis = fake

        await manager.set("greeting", "hello", ttl_seconds=60)
        value = await manager.get("greeting")

        assert manager.using_redis
        assert value == "hello"
        fake.set.assert_awaited_once_with("n:greeting", b'"hello"', ttl_seconds=60)


# -----------------------------------------------------------------------
# LocalState
# -----------------------------------------------------------------------


class TestLocalState:
    async def test_clients_are_isolated(self) -> None:
        manager = CacheManager()
        first = manager.for_client("client-aaaa")
        second = manager.for_client("client-bbbb")

        await first.set(USER_KEY, {"id": "1"})

        assert await first.get(USER_KEY) == {"id": "1"}
        assert await second.get(USER_KEY) is None

    async def test_clear_removes_session_keys(self) -> None:
        manager = CacheManager()
        state = manager.for_client("client-aaaa")
        for key in (USER_KEY, AUTH_KEY, EMPLOYEE_KEY):
            await state.set(key, {"k": key})

        await state.clear()

        for key in (USER_KEY, AUTH_KEY, EMPLOYEE_KEY):
            assert await state.get(key) is None

    def test_fixed_storage_keys(self) -> None:
        assert (USER_KEY, AUTH_KEY, EMPLOYEE_KEY) == ("nagarika_user", "nagarika_auth", "employee_info")

    @pytest.mark.parametrize("ttl", [None, 3600])
    async def test_default_ttl_applies(self, ttl) -> None:
        manager = CacheManager(default_ttl=ttl)
        state = manager.for_client("client-aaaa")
        await state.set(AUTH_KEY, {"access_token": "t"})
        entry = manager._fallback._data["nagarika:client:client-aaaa:nagarika_auth"]
        assert (entry.expires_at is None) == (ttl is None)
