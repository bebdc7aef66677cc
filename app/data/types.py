from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import enum

from app.data.network_registry import Network


class PriceSource(str, enum.Enum):
    CACHE                 = "cache"
    UPSTREAM_EXACT        = "alchemy"
    UPSTREAM_INTERPOLATED = "interpolated"


class Granularity(str, enum.Enum):
    FIVE_MINUTE = "5m"
    DAILY       = "1d"


@dataclass(frozen=True)
class PriceSample:
    timestamp: datetime   # tz-aware UTC, sub-second precision preserved
    value:     Decimal


@dataclass(frozen=True)
class PriceQuery:
    token:     str
    network:   Network
    timestamp: int        # unix seconds UTC


@dataclass(frozen=True)
class ResolvedPrice:
    price:  Decimal
    source: PriceSource
