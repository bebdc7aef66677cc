"""Alchemy price-source adapter.

Endpoints used
──────────────
  POST {prices_url}/{api_key}/tokens/historical   historical prices by address
  POST https://{slug}.g.alchemy.com/v2/{api_key}  alchemy_getAssetTransfers

Each public method performs exactly one HTTP exchange.  Retrying is the
caller's business (see ``app.data.retry.call_with_retry``); this module only
turns every failure into an :class:`~app.data.errors.UpstreamError` with a
closed ``kind`` and a sanitised message.  Raw upstream payloads never leave
this module: messages are reduced to the upstream's own ``error.message``
field when there is one, the API key is redacted, and the text is truncated.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
import logging
import re
from typing import Any

import httpx

from app.data.errors import UpstreamError, UpstreamErrorKind, kind_for_status
from app.data.types import PriceSample
from app.data.network_registry import ALCHEMY_NETWORK_SLUG, Network, rpc_url

logger = logging.getLogger(__name__)

_MAX_MESSAGE_LEN = 200
_WHITESPACE_RE   = re.compile(r"\s+")

# JSON-RPC error codes that mean the request itself is wrong
_RPC_INVALID_CODES = frozenset({-32600, -32602})


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_timestamp(raw: str) -> datetime:
    dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class AlchemyPriceSource:
    """Historical token prices and first-transfer lookup via Alchemy."""

    name = "alchemy"

    def __init__(
        self,
        api_key: str,
        prices_url: str = "https://api.g.alchemy.com/prices/v1",
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key    = api_key
        self._prices_url = prices_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={"Accept": "application/json"},
            follow_redirects=True,
            timeout=timeout,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Public API ────────────────────────────────────────────────────────────

    async def get_range_prices(
        self,
        network: Network,
        token: str,
        start: datetime,
        end: datetime,
        interval: str = "5m",
    ) -> list[PriceSample]:
        """Return every price sample Alchemy has for *token* in [start, end]."""
        url  = f"{self._prices_url}/{self._api_key}/tokens/historical"
        body = {
            "network":   ALCHEMY_NETWORK_SLUG[network],
            "address":   token,
            "startTime": _iso(start),
            "endTime":   _iso(end),
            "interval":  interval,
        }
        logger.debug(
            "[Alchemy] Historical prices %s/%s %s → %s (%s)",
            network.value, token, body["startTime"], body["endTime"], interval,
        )
        payload = await self._post(url, body)

        samples: list[PriceSample] = []
        for row in payload.get("data") or []:
            try:
                samples.append(PriceSample(
                    timestamp=_parse_timestamp(str(row["timestamp"])),
                    value=Decimal(str(row["value"])),
                ))
            except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
                logger.debug("[Alchemy] Skipping malformed price row %s: %s", row, exc)
        return samples

    async def get_daily_price(
        self,
        network: Network,
        token: str,
        day: datetime,
    ) -> PriceSample:
        """Return the daily price sample for the UTC day starting at *day*."""
        samples = await self.get_range_prices(
            network, token, day, day + timedelta(days=1), interval="1d",
        )
        if not samples:
            raise UpstreamError(
                UpstreamErrorKind.NO_DATA,
                f"No price data found for {token} at {_iso(day)}",
            )
        return min(samples, key=lambda s: abs((s.timestamp - day).total_seconds()))

    async def get_first_transfer(self, network: Network, token: str) -> datetime | None:
        """Return the block timestamp of the token's first ERC-20 transfer, or None."""
        body = {
            "jsonrpc": "2.0",
            "id":      1,
            "method":  "alchemy_getAssetTransfers",
            "params": [{
                "fromBlock":         "0x0",
                "toBlock":           "latest",
                "contractAddresses": [token],
                "category":          ["erc20"],
                "order":             "asc",
                "maxCount":          "0x1",
                "withMetadata":      True,
                "excludeZeroValue":  False,
            }],
        }
        payload = await self._post(rpc_url(network, self._api_key), body)

        if payload.get("error"):
            err  = payload["error"]
            code = err.get("code") if isinstance(err, dict) else None
            kind = (
                UpstreamErrorKind.BAD_REQUEST if code in _RPC_INVALID_CODES
                else UpstreamErrorKind.RATE_LIMITED if code == 429
                else UpstreamErrorKind.UNEXPECTED
            )
            raise UpstreamError(kind, self._sanitize(self._error_message(payload)))

        transfers = (payload.get("result") or {}).get("transfers") or []
        if not transfers:
            return None
        raw_ts = (transfers[0].get("metadata") or {}).get("blockTimestamp")
        if not raw_ts:
            raise UpstreamError(
                UpstreamErrorKind.UNEXPECTED, "Transfer metadata has no block timestamp",
            )
        return _parse_timestamp(raw_ts)

    # ── Transport ─────────────────────────────────────────────────────────────

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(url, json=body)
        except httpx.TimeoutException as exc:
            raise UpstreamError(UpstreamErrorKind.TIMEOUT, "Upstream request timed out") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(
                UpstreamErrorKind.NETWORK,
                self._sanitize(f"Network error: {type(exc).__name__}"),
            ) from exc

        if resp.status_code >= 400:
            kind    = kind_for_status(resp.status_code)
            message = self._sanitize(self._error_message(self._json_or_none(resp)) or resp.reason_phrase)
            logger.warning("[Alchemy] HTTP %s (%s): %s", resp.status_code, kind.value, message)
            raise UpstreamError(kind, message, status_code=resp.status_code)

        payload = self._json_or_none(resp)
        if not isinstance(payload, dict):
            raise UpstreamError(UpstreamErrorKind.UNEXPECTED, "Upstream returned a non-JSON body")
        return payload

    @staticmethod
    def _json_or_none(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return None

    @staticmethod
    def _error_message(payload: Any) -> str:
        if not isinstance(payload, dict):
            return ""
        err = payload.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or "")
        if isinstance(err, str):
            return err
        return ""

    def _sanitize(self, message: str) -> str:
        text = _WHITESPACE_RE.sub(" ", message or "").strip()
        if self._api_key:
            text = text.replace(self._api_key, "***")
        if len(text) > _MAX_MESSAGE_LEN:
            text = text[: _MAX_MESSAGE_LEN - 3] + "..."
        return text
