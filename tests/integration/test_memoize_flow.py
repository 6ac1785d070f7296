"""
End-to-end flow: miss, hit, stale mark, background refresh, invalidation.
"""

import asyncio

import pytest

from query_memoize.caching.keys import derive_key
from query_memoize.caching.memoizer import Memoizer
from query_memoize.caching.store import StoreAdapter
from query_memoize.shared.config import CacheConfig
from query_memoize.shared.test_helpers import FakeRedis, read_entry


@pytest.mark.asyncio
async def test_stale_while_revalidate_flow():
    """A cached query goes stale before expiry and is refreshed in the background."""
    config = CacheConfig(ttl_seconds=1, prefetch_ratio=0.1, startup_grace_seconds=0.01)
    fake_redis = FakeRedis()
    memoizer = Memoizer(StoreAdapter(fake_redis, config=config), config)

    versions = iter(range(1, 100))
    db_calls = []

    async def get_orders(customer_id, status="open"):
        db_calls.append((customer_id, status))
        return {"customer": customer_id, "version": next(versions)}

    get_orders = memoizer.memoize(get_orders)
    key = derive_key("get_orders", ("c-1",))

    async with memoizer:
        # Miss populates the cache.
        assert await get_orders("c-1") == {"customer": "c-1", "version": 1}
        await memoizer.drain()
        assert read_entry(fake_redis, key).stale is False

        # Hit is served without touching the database.
        assert await get_orders("c-1") == {"customer": "c-1", "version": 1}
        assert len(db_calls) == 1

        # After ttl * prefetch_ratio the entry turns stale but stays readable.
        await asyncio.sleep(0.3)
        await memoizer.drain()
        assert read_entry(fake_redis, key).stale is True

        # Stale hit returns the old value and refreshes in the background.
        assert await get_orders("c-1") == {"customer": "c-1", "version": 1}
        await memoizer.drain()
        assert len(db_calls) == 2
        refreshed = read_entry(fake_redis, key)
        assert refreshed.stale is False
        assert refreshed.value["version"] == 2

        # Invalidation removes the entry and its timer.
        assert await memoizer.invalidate_all(operation_names=["get_orders"], locators=["c-1"]) == 1
        assert fake_redis.raw(key) is None
        assert not memoizer.scheduler.is_armed(key)

        # Next call is a miss again.
        assert (await get_orders("c-1"))["version"] == 3
        await memoizer.drain()

    assert len(memoizer.scheduler) == 0


@pytest.mark.asyncio
async def test_stale_entry_still_expires_at_default_ratio():
    """A one second entry marked stale with under half a second left still expires."""
    config = CacheConfig(ttl_seconds=1, startup_grace_seconds=0.01)
    fake_redis = FakeRedis()
    memoizer = Memoizer(StoreAdapter(fake_redis, config=config), config)

    async def get_orders(customer_id):
        return {"customer": customer_id}

    get_orders = memoizer.memoize(get_orders)
    key = derive_key("get_orders", ("c-1",))

    async with memoizer:
        await get_orders("c-1")
        await memoizer.drain()

        await asyncio.sleep(0.75)
        await memoizer.drain()

        assert read_entry(fake_redis, key).stale is True
        assert await fake_redis.pttl(key) > 0

        await asyncio.sleep(0.35)
        assert fake_redis.raw(key) is None
