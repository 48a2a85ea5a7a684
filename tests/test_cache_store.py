import fakeredis
import pytest

from shared.cache import CacheStore
from shared.utils import CacheUnavailable


async def test_set_and_get_under_prefix(cache, redis_client):
    await cache.set("cart:cust-a", {"total": "10.00"}, ttl=1800)

    assert await cache.get("cart:cust-a") == {"total": "10.00"}
    assert await redis_client.exists("api:cart:cust-a") == 1
    assert 0 < await redis_client.ttl("api:cart:cust-a") <= 1800


async def test_hits_and_misses_are_counted(cache):
    assert await cache.get("product:NOPE") is None
    await cache.set("product:VALVE-1", {"sku": "VALVE-1"})
    await cache.get("product:VALVE-1")

    assert (cache.hits, cache.misses) == (1, 1)


async def test_undecodable_entry_reads_as_miss(cache, redis_client):
    await redis_client.set("api:product:BAD", "{not json")
    assert await cache.get("product:BAD") is None


async def test_delete_and_exists(cache):
    await cache.set("order:1", {"id": "1"})
    assert await cache.exists("order:1")
    assert await cache.delete("order:1") == 1
    assert not await cache.exists("order:1")


async def test_delete_pattern_only_touches_matches(cache):
    await cache.set("products:all:all_user_cust-a", [])
    await cache.set("products:valves:all_user_cust-a", [])
    await cache.set("products:all:all_user_cust-b", [])

    deleted = await cache.delete_pattern("products:*_user_cust-a")

    assert deleted == 2
    assert await cache.exists("products:all:all_user_cust-b")


async def test_invalidate_tag_deletes_every_tagged_key(cache, redis_client):
    await cache.set("product:VALVE-1", {}, tags=["sku:VALVE-1"])
    await cache.set("cart:cust-a", {}, tags=["sku:VALVE-1", "sku:PUMP-1"])
    await cache.set("cart:cust-b", {}, tags=["sku:PUMP-1"])

    assert await cache.invalidate_tag("sku:VALVE-1") == 2

    assert not await cache.exists("product:VALVE-1")
    assert not await cache.exists("cart:cust-a")
    assert await cache.exists("cart:cust-b")
    assert await redis_client.exists("api:tag:sku:VALVE-1") == 0


async def test_stats_groups_keys_by_family(cache):
    await cache.set("cart:cust-a", {})
    await cache.set("product:VALVE-1", {}, tags=["sku:VALVE-1"])
    await cache.set("products:all:all", {})
    await cache.set("orders:user:cust-a", [])

    stats = await cache.stats()

    assert stats["total_keys"] == 5
    assert stats["cart_keys"] == 1
    assert stats["product_keys"] == 2
    assert stats["order_keys"] == 1
    assert stats["tag_keys"] == 1


async def test_clear_all_stays_inside_namespace(cache, redis_client):
    await cache.set("cart:cust-a", {})
    await redis_client.set("other-app:key", "1")

    await cache.clear_all()

    assert not await cache.exists("cart:cust-a")
    assert await redis_client.get("other-app:key") == "1"


async def test_unprefixed_store_flushes_database(redis_client):
    cache = CacheStore(redis_client, prefix="")
    await cache.set("a", 1)
    await cache.clear_all()
    assert await redis_client.dbsize() == 0


async def test_disconnected_server_raises_cache_unavailable():
    server = fakeredis.FakeServer()
    server.connected = False
    cache = CacheStore(fakeredis.FakeAsyncRedis(server=server, decode_responses=True), prefix="api")

    with pytest.raises(CacheUnavailable):
        await cache.get("cart:cust-a")
    with pytest.raises(CacheUnavailable):
        await cache.set("cart:cust-a", {})
    with pytest.raises(CacheUnavailable):
        await cache.delete_pattern("cart:*")
    assert await cache.ping() is False
