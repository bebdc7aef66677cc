from __future__ import annotations

from decimal import Decimal

from redis.exceptions import ConnectionError as RedisConnectionError

from app.data.cache import MemoryCacheStore, PriceCache, cache_key
from app.data.types import PriceSource, ResolvedPrice

from conftest import USDC

TS = 1_700_000_000


def _price(value: str = "1.0002") -> ResolvedPrice:
    return ResolvedPrice(Decimal(value), PriceSource.UPSTREAM_INTERPOLATED)


def test_cache_key_layout():
    assert cache_key(USDC, "ethereum", TS) == f"price:{USDC}:ethereum:{TS}"


async def test_hit_reports_cache_source(cache):
    await cache.set(USDC, "ethereum", TS, _price())
    hit = await cache.get(USDC, "ethereum", TS)
    assert hit == ResolvedPrice(Decimal("1.0002"), PriceSource.CACHE)


async def test_entry_expires_without_reads(cache, clock):
    await cache.set(USDC, "ethereum", TS, _price())
    clock.advance(301)
    assert await cache.get(USDC, "ethereum", TS) is None


async def test_reads_slide_the_expiry(cache, clock):
    await cache.set(USDC, "ethereum", TS, _price())
    clock.advance(299)
    assert await cache.get(USDC, "ethereum", TS) is not None
    clock.advance(299)   # t = 598, still inside the re-armed window
    assert await cache.get(USDC, "ethereum", TS) is not None
    clock.advance(300)
    assert await cache.get(USDC, "ethereum", TS) is None


async def test_keys_are_isolated_per_network(cache):
    await cache.set(USDC, "ethereum", TS, _price("1"))
    assert await cache.get(USDC, "polygon", TS) is None


async def test_malformed_entry_is_a_miss(clock):
    store = MemoryCacheStore(clock=clock)
    await store.set(cache_key(USDC, "ethereum", TS), "not json", ex=300)
    assert await PriceCache(store).get(USDC, "ethereum", TS) is None


class _BrokenStore:
    async def get(self, name):
        raise RedisConnectionError("connection refused")

    async def set(self, name, value, ex=None):
        raise RedisConnectionError("connection refused")

    async def expire(self, name, time):
        raise RedisConnectionError("connection refused")


async def test_store_failures_never_raise():
    cache = PriceCache(_BrokenStore())
    assert await cache.get(USDC, "ethereum", TS) is None
    await cache.set(USDC, "ethereum", TS, _price())
