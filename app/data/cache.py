"""Cache-aside price cache with sliding expiration.

Entries live under ``price:{token}:{network}:{timestamp}`` with a 300 s TTL.
Every read hit re-arms the TTL to the full 300 s, so a key that keeps being
read never expires while a key left alone for 300 s disappears.

The backing store is anything with the ``redis.asyncio.Redis`` call shape
(``get`` / ``set(..., ex=)`` / ``expire``).  Production uses Redis; without a
``REDIS_URL`` the service runs on :class:`MemoryCacheStore`, which implements
the same three calls in-process against an injectable clock.

Cache failures are never fatal: a store error on read is logged and treated
as a miss, a store error on write is logged and skipped.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
import json
import logging
import time
from typing import Callable, Protocol

from redis.exceptions import RedisError

from app.data.types import PriceSource, ResolvedPrice

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300


class CacheStore(Protocol):
    async def get(self, name: str) -> bytes | str | None: ...
    async def set(self, name: str, value: str, ex: int | None = None) -> object: ...
    async def expire(self, name: str, time: int) -> object: ...


def cache_key(token: str, network: str, timestamp: int) -> str:
    return f"price:{token}:{network}:{timestamp}"


# ── In-process store ──────────────────────────────────────────────────────────

class MemoryCacheStore:
    """Dict-backed store with Redis TTL semantics for single-process runs."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, name: str) -> tuple[str, float | None] | None:
        entry = self._data.get(name)
        if entry is None:
            return None
        _value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[name]
            return None
        return entry

    async def get(self, name: str) -> str | None:
        entry = self._live(name)
        return entry[0] if entry else None

    async def set(self, name: str, value: str, ex: int | None = None) -> bool:
        expires_at = self._clock() + ex if ex is not None else None
        self._data[name] = (value, expires_at)
        return True

    async def expire(self, name: str, time: int) -> bool:
        entry = self._live(name)
        if entry is None:
            return False
        self._data[name] = (entry[0], self._clock() + time)
        return True

    async def aclose(self) -> None:
        self._data.clear()


# ── Price cache ───────────────────────────────────────────────────────────────

class PriceCache:
    """Read-through helper over a :class:`CacheStore`."""

    def __init__(self, store: CacheStore, ttl: int = CACHE_TTL_SECONDS) -> None:
        self.store = store
        self.ttl   = ttl

    async def get(self, token: str, network: str, timestamp: int) -> ResolvedPrice | None:
        """Return the cached price (source=cache) and re-arm its TTL, or None."""
        key = cache_key(token, network, timestamp)
        try:
            raw = await self.store.get(key)
            if raw is None:
                return None
            await self.store.expire(key, self.ttl)
        except RedisError:
            logger.exception("[Cache] Read failed for %s", key)
            return None

        try:
            payload = json.loads(raw)
            price   = Decimal(str(payload["price"]))
        except (ValueError, KeyError, TypeError, InvalidOperation):
            logger.warning("[Cache] Discarding malformed entry %s", key)
            return None

        logger.debug("[Cache] Hit %s, TTL re-armed to %ds", key, self.ttl)
        return ResolvedPrice(price=price, source=PriceSource.CACHE)

    async def set(
        self,
        token: str,
        network: str,
        timestamp: int,
        resolved: ResolvedPrice,
    ) -> None:
        key = cache_key(token, network, timestamp)
        payload = json.dumps({
            "price":      str(resolved.price),
            "source":     resolved.source.value,
            "fetched_at": int(time.time()),
        })
        try:
            await self.store.set(key, payload, ex=self.ttl)
        except RedisError:
            logger.exception("[Cache] Write failed for %s", key)
