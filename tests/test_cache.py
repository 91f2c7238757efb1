from custody.infra.cache import InMemoryCacheStore, TieredCache


class UnreachableStore:
    async def get(self, key):
        raise ConnectionError("redis down")

    async def set(self, key, value, ttl_seconds):
        raise ConnectionError("redis down")

    async def delete(self, key):
        raise ConnectionError("redis down")

    async def ping(self):
        raise ConnectionError("redis down")

    async def close(self):
        return None


async def test_invalidation_is_visible_to_every_instance():
    shared = InMemoryCacheStore()
    instance_a = TieredCache(shared)
    instance_b = TieredCache(shared)

    await instance_b.set("balance:0xabc", {"usdc": "100"}, 300)
    await instance_a.delete("balance:0xabc")

    assert await instance_b.get("balance:0xabc") is None


async def test_local_tier_answers_while_primary_is_down():
    cache = TieredCache(UnreachableStore())

    await cache.set("balance:0xabc", {"usdc": "100"}, 300)

    assert await cache.get("balance:0xabc") == {"usdc": "100"}
    assert await cache.ping() is False


async def test_local_only_cache_expires_entries():
    now = [0.0]
    cache = TieredCache(None, InMemoryCacheStore(clock=lambda: now[0]))

    await cache.set("price", 2500, 10)
    assert await cache.get("price") == 2500

    now[0] = 11.0
    assert await cache.get("price") is None
