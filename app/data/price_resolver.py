"""Point-in-time price resolution.

    resolve(query)
        │
        ├─ cache hit (5m only) ─────────────────────► ResolvedPrice(source=cache)
        │     (TTL re-armed to 300 s)
        │
        └─ miss
             ├─ 5m:  get_range_prices(t-600, t+600, "5m")   ┐
             │  1d:  get_daily_price(day)                   ┘ inside call_with_retry
             ├─ empty series → NO_DATA (abort)
             ├─ interpolate(samples, t)
             ├─ cache.set(ttl=300)
             ├─ store.save()   best effort, failure only logged
             └─ return

Daily resolution (the backfill path) skips the cache read, so every daily job
fetches, re-caches and persists its point even when /price already cached it.

Concurrent misses on the same key are not coalesced: each caller goes to
upstream and the last cache write wins.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from app.data.cache import PriceCache
from app.data.errors import (
    InternalError,
    PriceServiceError,
    UpstreamError,
    UpstreamErrorKind,
)
from app.data.interpolate import from_epoch, interpolate
from app.data.network_registry import Network
from app.data.retry import RetryPolicy, Sleep, call_with_retry
from app.data.types import Granularity, PriceQuery, PriceSample, ResolvedPrice

logger = logging.getLogger(__name__)

# Half-width of the upstream window around the requested instant
WINDOW_SECONDS = 600


class PriceSourceClient(Protocol):
    async def get_range_prices(
        self, network: Network, token: str, start: datetime, end: datetime, interval: str = "5m",
    ) -> list[PriceSample]: ...

    async def get_daily_price(self, network: Network, token: str, day: datetime) -> PriceSample: ...

    async def get_first_transfer(self, network: Network, token: str) -> datetime | None: ...


class PriceSink(Protocol):
    async def save(self, query: PriceQuery, resolved: ResolvedPrice) -> bool: ...


class PriceResolver:
    """Cache → upstream (with retry) → interpolate → cache write → persist."""

    def __init__(
        self,
        source: PriceSourceClient,
        cache: PriceCache,
        store: PriceSink | None = None,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.source       = source
        self.cache        = cache
        self.store        = store
        self.retry_policy = retry_policy
        self._sleep       = sleep

    async def resolve(
        self,
        query: PriceQuery,
        granularity: Granularity = Granularity.FIVE_MINUTE,
    ) -> ResolvedPrice:
        network = query.network.value

        if granularity is not Granularity.DAILY:
            cached = await self.cache.get(query.token, network, query.timestamp)
            if cached is not None:
                logger.info("Cache hit: %s/%s @ %d", query.token, network, query.timestamp)
                return cached

        try:
            samples = await call_with_retry(
                lambda: self._fetch(query, granularity),
                policy=self.retry_policy,
                label=f"{granularity.value} prices {query.token}/{network}",
                sleep=self._sleep,
            )
            resolved = interpolate(samples, query.timestamp)
        except PriceServiceError:
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected error resolving %s/%s @ %d", query.token, network, query.timestamp,
            )
            raise InternalError("Unexpected error resolving price") from exc

        logger.info(
            "Resolved %s/%s @ %d → %s (%s, %d samples)",
            query.token, network, query.timestamp,
            resolved.price, resolved.source.value, len(samples),
        )
        await self.cache.set(query.token, network, query.timestamp, resolved)
        await self._persist(query, resolved)
        return resolved

    async def _fetch(self, query: PriceQuery, granularity: Granularity) -> list[PriceSample]:
        target = from_epoch(query.timestamp)
        if granularity is Granularity.DAILY:
            return [await self.source.get_daily_price(query.network, query.token, target)]

        samples = await self.source.get_range_prices(
            query.network,
            query.token,
            target - timedelta(seconds=WINDOW_SECONDS),
            target + timedelta(seconds=WINDOW_SECONDS),
            granularity.value,
        )
        if not samples:
            raise UpstreamError(UpstreamErrorKind.NO_DATA, "No data available for this timestamp")
        return samples

    async def _persist(self, query: PriceQuery, resolved: ResolvedPrice) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(query, resolved)
        except SQLAlchemyError:
            logger.exception(
                "Failed to persist price %s/%s @ %d",
                query.token, query.network.value, query.timestamp,
            )
