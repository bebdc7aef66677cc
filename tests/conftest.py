from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import fakeredis
import pytest

from app.backfill.queue import MemoryJobQueue
from app.data.cache import MemoryCacheStore, PriceCache
from app.data.network_registry import Network
from app.data.price_resolver import PriceResolver
from app.data.retry import RetryPolicy
from app.data.types import PriceSample

USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"


def sample(epoch: int, value: str) -> PriceSample:
    return PriceSample(datetime.fromtimestamp(epoch, tz=timezone.utc), Decimal(value))


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


class ScriptedSource:
    """Price source whose answers are queued up front.

    Each script entry is either a return value or an exception instance to
    raise; once a script runs dry the matching default is used.
    """

    def __init__(self) -> None:
        self.range_script:    list[Any] = []
        self.daily_script:    list[Any] = []
        self.transfer_script: list[Any] = []
        self.range_default:    list[PriceSample] = []
        self.transfer_default: datetime | None = None
        self.calls: list[tuple] = []

    @staticmethod
    def _take(script: list[Any], default: Any) -> Any:
        item = script.pop(0) if script else default
        if isinstance(item, BaseException):
            raise item
        return item

    async def get_range_prices(self, network, token, start, end, interval="5m"):
        self.calls.append(("range", network, token, start, end, interval))
        return self._take(self.range_script, self.range_default)

    async def get_daily_price(self, network, token, day):
        self.calls.append(("daily", network, token, day))
        return self._take(self.daily_script, PriceSample(day, Decimal("1.5")))

    async def get_first_transfer(self, network, token):
        self.calls.append(("transfer", network, token))
        return self._take(self.transfer_script, self.transfer_default)

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def source() -> ScriptedSource:
    return ScriptedSource()


@pytest.fixture
def cache(clock: FakeClock) -> PriceCache:
    return PriceCache(MemoryCacheStore(clock=clock))


@pytest.fixture
def queue(clock: FakeClock) -> MemoryJobQueue:
    return MemoryJobQueue(clock=clock)


@pytest.fixture
def resolver(source: ScriptedSource, cache: PriceCache, sleeps: RecordingSleep) -> PriceResolver:
    return PriceResolver(source, cache, retry_policy=RetryPolicy(), sleep=sleeps)


@pytest.fixture
def network() -> Network:
    return Network.ETHEREUM


@pytest.fixture
async def fake_redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()
