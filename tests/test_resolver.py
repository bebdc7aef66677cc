from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.data.errors import (
    InternalError,
    NoPriceDataError,
    RetryExhaustedError,
    TokenNotFoundError,
    UpstreamError,
    UpstreamErrorKind,
)
from app.data.interpolate import from_epoch
from app.data.network_registry import Network
from app.data.price_resolver import PriceResolver
from app.data.retry import RetryPolicy
from app.data.types import Granularity, PriceQuery, PriceSource, ResolvedPrice

from conftest import USDC, sample

T = 1_700_000_000
QUERY = PriceQuery(USDC, Network.ETHEREUM, T)


class _RecordingStore:
    def __init__(self, fail: bool = False):
        self.saved = []
        self.fail = fail

    async def save(self, query, resolved):
        if self.fail:
            raise SQLAlchemyError("database is locked")
        self.saved.append((query, resolved))
        return True


async def test_cold_then_cached(resolver, source):
    source.range_default = [sample(T - 150, "10"), sample(T + 150, "20")]

    first = await resolver.resolve(QUERY)
    assert first.price == Decimal("15")
    assert first.source is PriceSource.UPSTREAM_INTERPOLATED

    second = await resolver.resolve(QUERY)
    assert second.price == Decimal("15")
    assert second.source is PriceSource.CACHE
    assert source.count("range") == 1


async def test_requests_ten_minute_window_at_five_minutes(resolver, source):
    source.range_default = [sample(T, "2")]
    await resolver.resolve(QUERY)
    _kind, network, token, start, end, interval = source.calls[0]
    assert (network, token, interval) == (Network.ETHEREUM, USDC, "5m")
    assert start == from_epoch(T - 600)
    assert end == from_epoch(T + 600)


async def test_empty_window_is_no_data(resolver, source, sleeps):
    with pytest.raises(NoPriceDataError):
        await resolver.resolve(QUERY)
    assert source.count("range") == 1
    assert sleeps.waits == []


async def test_unknown_token_is_not_found(resolver, source):
    source.range_script = [UpstreamError(UpstreamErrorKind.BAD_REQUEST, "Token not found")]
    with pytest.raises(TokenNotFoundError):
        await resolver.resolve(QUERY)


async def test_transient_failure_is_retried(resolver, source, sleeps):
    source.range_script = [
        UpstreamError(UpstreamErrorKind.RATE_LIMITED, "slow down", 429),
        [sample(T, "4.2")],
    ]
    result = await resolver.resolve(QUERY)
    assert result.price == Decimal("4.2")
    assert result.source is PriceSource.UPSTREAM_EXACT
    assert sleeps.waits == [1.0]


async def test_persistent_failure_exhausts(resolver, source):
    source.range_script = [UpstreamError(UpstreamErrorKind.SERVER_ERROR, "oops", 500)] * 3
    with pytest.raises(RetryExhaustedError):
        await resolver.resolve(QUERY)
    assert source.count("range") == 3


async def test_unexpected_errors_become_internal(resolver, source):
    source.range_script = [ZeroDivisionError()]
    with pytest.raises(InternalError):
        await resolver.resolve(QUERY)


async def test_daily_granularity_uses_daily_endpoint(source, cache, sleeps):
    store = _RecordingStore()
    resolver = PriceResolver(source, cache, store=store, retry_policy=RetryPolicy(), sleep=sleeps)
    day = 1_609_459_200
    result = await resolver.resolve(PriceQuery(USDC, Network.POLYGON, day), Granularity.DAILY)
    assert result.price == Decimal("1.5")
    assert source.count("daily") == 1
    assert source.count("range") == 0
    assert len(store.saved) == 1
    cached = await cache.get(USDC, "polygon", day)
    assert cached is not None and cached.price == Decimal("1.5")


async def test_daily_resolution_persists_even_when_cached(source, cache, sleeps):
    store = _RecordingStore()
    resolver = PriceResolver(source, cache, store=store, retry_policy=RetryPolicy(), sleep=sleeps)
    day = 1_609_459_200
    await cache.set(USDC, "ethereum", day, ResolvedPrice(Decimal("9"), PriceSource.UPSTREAM_EXACT))

    result = await resolver.resolve(PriceQuery(USDC, Network.ETHEREUM, day), Granularity.DAILY)

    assert result.price == Decimal("1.5")
    assert result.source is not PriceSource.CACHE
    assert source.count("daily") == 1
    assert len(store.saved) == 1
    assert (await cache.get(USDC, "ethereum", day)).price == Decimal("1.5")


async def test_persistence_failure_does_not_fail_the_query(source, cache, sleeps):
    resolver = PriceResolver(
        source, cache, store=_RecordingStore(fail=True), retry_policy=RetryPolicy(), sleep=sleeps,
    )
    source.range_default = [sample(T, "7")]
    result = await resolver.resolve(QUERY)
    assert result.price == Decimal("7")
