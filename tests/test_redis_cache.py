"""Tests for the ephemeral cache implementations."""

from tokensmith.storage.redis_cache import MemoryCache, RedisCache, SyncRedisCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class RecordingAsyncClient:
    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)

    async def aclose(self):
        self.closed = True


class RecordingSyncClient:
    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.closed = False

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    def delete(self, key):
        self.data.pop(key, None)

    def close(self):
        self.closed = True


async def test_memory_cache_expires_entries():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set("k", "v", 60)

    clock.now = 59.9
    assert await cache.get("k") == "v"
    clock.now = 60
    assert await cache.get("k") is None
    assert "k" not in cache.ttls


async def test_memory_cache_last_writer_wins():
    cache = MemoryCache()
    await cache.set("k", "first", 60)
    await cache.set("k", "second", 5)

    assert await cache.get("k") == "second"
    assert cache.ttls["k"] == 5


async def test_memory_cache_delete_and_close():
    cache = MemoryCache()
    await cache.set("a", "1", 60)
    await cache.set("b", "2", 60)

    await cache.delete("a")
    await cache.delete("missing")
    assert await cache.get("a") is None

    await cache.close()
    assert await cache.get("b") is None


async def test_memory_cache_ttl_floor_is_one_second():
    cache = MemoryCache()
    await cache.set("k", "v", 0)
    assert cache.ttls["k"] == 1


async def test_redis_cache_namespaces_keys():
    cache = RedisCache("redis://localhost:6379/0", namespace="ts")
    cache.client = RecordingAsyncClient()

    await cache.set("auth:access_verify:abc", "failed", 60)

    assert cache.client.data == {"ts:auth:access_verify:abc": "failed"}
    assert cache.client.expiry["ts:auth:access_verify:abc"] == 60
    assert await cache.get("auth:access_verify:abc") == "failed"
    await cache.delete("auth:access_verify:abc")
    assert cache.client.data == {}
    await cache.close()
    assert cache.client.closed


async def test_redis_cache_without_namespace():
    cache = RedisCache("redis://localhost:6379/0", namespace="")
    cache.client = RecordingAsyncClient()

    await cache.set("k", "v", 0.4)

    assert cache.client.expiry == {"k": 1}


async def test_sync_redis_cache_matches_async_contract():
    cache = SyncRedisCache("redis://localhost:6379/0", namespace="ts")
    cache.client = RecordingSyncClient()

    await cache.set("k", "v", 300)
    assert await cache.get("k") == "v"
    assert cache.client.expiry == {"ts:k": 300}
    await cache.delete("k")
    assert await cache.get("k") is None
    await cache.close()
    assert cache.client.closed
