"""Price at an exact instant from a sparse series of upstream samples.

Precedence
──────────
1. One sample            → that sample                     (exact)
2. Sample == target      → that sample, full precision     (exact)
3. Sort ascending by whole-second timestamp (stable)
4. before = last ≤ target, after = first > target
5. No before             → earliest sample                 (exact)
6. No after              → latest sample                   (exact)
7. before == target      → before                          (exact)
8. Linear interpolation between before and after           (interpolated)

Clamped results (5, 6) carry the same provenance tag as exact matches.

Duplicate timestamps
────────────────────
Samples that share a whole-second timestamp are collapsed to the first one
seen in arrival order before the scan, so the result never depends on which
of several equal-time samples a sort happens to leave last.
"""
from __future__ import annotations

import calendar
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Sequence

from app.data.errors import EmptySeriesError
from app.data.types import PriceSample, PriceSource, ResolvedPrice

logger = logging.getLogger(__name__)


def to_epoch(dt: datetime) -> int:
    """Whole-second UTC epoch; naive datetimes are taken as UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    else:
        dt = dt.replace(tzinfo=timezone.utc)
    return calendar.timegm(dt.timetuple())


def from_epoch(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def _exact(sample: PriceSample) -> ResolvedPrice:
    return ResolvedPrice(price=sample.value, source=PriceSource.UPSTREAM_EXACT)


def interpolate(samples: Sequence[PriceSample], target: int) -> ResolvedPrice:
    """Resolve the price at unix second *target* from *samples*."""
    if not samples:
        raise EmptySeriesError("No price data available")

    if len(samples) == 1:
        return _exact(samples[0])

    target_dt = from_epoch(target)
    for sample in samples:
        if sample.timestamp == target_dt:
            return _exact(sample)

    ordered = sorted(
        ((to_epoch(s.timestamp), s) for s in samples),
        key=lambda pair: pair[0],
    )
    series: list[tuple[int, PriceSample]] = []
    for epoch, sample in ordered:
        if series and series[-1][0] == epoch:
            continue
        series.append((epoch, sample))

    before: tuple[int, PriceSample] | None = None
    after:  tuple[int, PriceSample] | None = None
    for epoch, sample in series:
        if epoch <= target:
            before = (epoch, sample)
        else:
            after = (epoch, sample)
            break

    if before is None:
        return _exact(series[0][1])
    if after is None:
        return _exact(series[-1][1])

    before_ts, before_sample = before
    after_ts,  after_sample  = after
    if before_ts == target:
        return _exact(before_sample)

    ratio = Decimal(target - before_ts) / Decimal(after_ts - before_ts)
    price = before_sample.value + (after_sample.value - before_sample.value) * ratio
    logger.debug(
        "Interpolated %s between %d (%s) and %d (%s), ratio=%s",
        price, before_ts, before_sample.value, after_ts, after_sample.value, ratio,
    )
    return ResolvedPrice(price=price, source=PriceSource.UPSTREAM_INTERPOLATED)
