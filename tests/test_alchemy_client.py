from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import json

import httpx
import pytest

from app.data.alchemy_client import AlchemyPriceSource
from app.data.errors import UpstreamError, UpstreamErrorKind
from app.data.network_registry import Network

from conftest import USDC

API_KEY = "test-key-123"
START = datetime(2023, 11, 14, 22, 3, 20, tzinfo=timezone.utc)
END   = datetime(2023, 11, 14, 22, 23, 20, tzinfo=timezone.utc)


def _source(handler) -> AlchemyPriceSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AlchemyPriceSource(API_KEY, client=client)


async def test_range_prices_request_and_parsing():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [
            {"timestamp": "2023-11-14T22:10:00Z", "value": "1.0001"},
            {"timestamp": "2023-11-14T22:15:00.500Z", "value": "0.9999"},
            {"timestamp": "garbage", "value": "1"},
            {"value": "1"},
        ]})

    samples = await _source(handler).get_range_prices(Network.ETHEREUM, USDC, START, END)

    assert seen["url"] == f"https://api.g.alchemy.com/prices/v1/{API_KEY}/tokens/historical"
    assert seen["body"] == {
        "network":   "eth-mainnet",
        "address":   USDC,
        "startTime": "2023-11-14T22:03:20Z",
        "endTime":   "2023-11-14T22:23:20Z",
        "interval":  "5m",
    }
    assert [s.value for s in samples] == [Decimal("1.0001"), Decimal("0.9999")]
    assert samples[1].timestamp.microsecond == 500_000


@pytest.mark.parametrize("status,kind", [
    (400, UpstreamErrorKind.BAD_REQUEST),
    (429, UpstreamErrorKind.RATE_LIMITED),
    (500, UpstreamErrorKind.SERVER_ERROR),
    (502, UpstreamErrorKind.BAD_GATEWAY),
    (503, UpstreamErrorKind.UNAVAILABLE),
    (401, UpstreamErrorKind.UNAUTHORIZED),
])
async def test_http_errors_are_classified(status, kind):
    def handler(request):
        return httpx.Response(status, json={"error": {"message": "Token not found"}})

    with pytest.raises(UpstreamError) as info:
        await _source(handler).get_range_prices(Network.POLYGON, USDC, START, END)
    assert info.value.kind is kind
    assert info.value.status_code == status
    assert info.value.message == "Token not found"


async def test_error_messages_are_sanitized():
    def handler(request):
        return httpx.Response(403, json={"error": {"message": f"key {API_KEY}\n\nis  invalid " + "x" * 400}})

    with pytest.raises(UpstreamError) as info:
        await _source(handler).get_range_prices(Network.ETHEREUM, USDC, START, END)
    message = info.value.message
    assert API_KEY not in message
    assert message.startswith("key *** is invalid")
    assert len(message) <= 200


async def test_timeout_and_connection_errors():
    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamError) as info:
        await _source(timeout).get_range_prices(Network.ETHEREUM, USDC, START, END)
    assert info.value.kind is UpstreamErrorKind.TIMEOUT

    with pytest.raises(UpstreamError) as info:
        await _source(refused).get_range_prices(Network.ETHEREUM, USDC, START, END)
    assert info.value.kind is UpstreamErrorKind.NETWORK


async def test_non_json_body_is_unexpected():
    def handler(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(UpstreamError) as info:
        await _source(handler).get_range_prices(Network.ETHEREUM, USDC, START, END)
    assert info.value.kind is UpstreamErrorKind.UNEXPECTED


async def test_daily_price_picks_sample_for_the_day():
    day = datetime(2021, 1, 1, tzinfo=timezone.utc)

    def handler(request):
        body = json.loads(request.content)
        assert body["interval"] == "1d"
        assert body["endTime"] == "2021-01-02T00:00:00Z"
        return httpx.Response(200, json={"data": [
            {"timestamp": "2021-01-01T00:00:00Z", "value": "730.5"},
            {"timestamp": "2021-01-02T00:00:00Z", "value": "775.0"},
        ]})

    result = await _source(handler).get_daily_price(Network.ETHEREUM, USDC, day)
    assert result.value == Decimal("730.5")


async def test_daily_price_without_data_is_no_data():
    def handler(request):
        return httpx.Response(200, json={"data": []})

    with pytest.raises(UpstreamError) as info:
        await _source(handler).get_daily_price(
            Network.ETHEREUM, USDC, datetime(2021, 1, 1, tzinfo=timezone.utc),
        )
    assert info.value.kind is UpstreamErrorKind.NO_DATA


async def test_first_transfer_timestamp():
    def handler(request):
        assert str(request.url) == f"https://polygon-mainnet.g.alchemy.com/v2/{API_KEY}"
        params = json.loads(request.content)["params"][0]
        assert params["contractAddresses"] == [USDC]
        assert params["order"] == "asc"
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"transfers": [
            {"metadata": {"blockTimestamp": "2020-10-07T12:34:56.000Z"}},
        ]}})

    created = await _source(handler).get_first_transfer(Network.POLYGON, USDC)
    assert created == datetime(2020, 10, 7, 12, 34, 56, tzinfo=timezone.utc)


async def test_first_transfer_none_when_no_transfers():
    def handler(request):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"transfers": []}})

    assert await _source(handler).get_first_transfer(Network.ETHEREUM, USDC) is None


async def test_first_transfer_rpc_error():
    def handler(request):
        return httpx.Response(200, json={
            "jsonrpc": "2.0", "id": 1,
            "error": {"code": -32602, "message": "invalid contract address"},
        })

    with pytest.raises(UpstreamError) as info:
        await _source(handler).get_first_transfer(Network.ETHEREUM, USDC)
    assert info.value.kind is UpstreamErrorKind.BAD_REQUEST
