"""Bounded retry loop for upstream calls.

    attempt 1 ──fail(RETRY)──► sleep 1s ──► attempt 2 ──fail(RETRY)──► sleep 2s ──► attempt 3
        │                                      │                                      │
        └─ fail(ABORT/UNKNOWN) ─► raise now    └─ ...                                 └─ fail ─► RetryExhaustedError

Waits double from ``base_delay`` and are capped at ``max_delay``.  The
classifier in :mod:`app.data.errors` is the only thing that decides whether
a failure is worth another attempt.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Awaitable, Callable, TypeVar

from app.data.errors import (
    RetryExhaustedError,
    UpstreamError,
    Verdict,
    classify,
    translate_upstream,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    attempts:   int   = 3
    base_delay: float = 1.0
    max_delay:  float = 10.0

    def delay(self, attempt: int) -> float:
        """Wait before retry number *attempt* + 1 (attempt is 0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    label: str,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run *fn* until it succeeds, aborts, or runs out of attempts.

    Aborted upstream failures are translated to the matching service error
    (not-found, no-data, rejected).  Exceptions that are not upstream errors
    propagate untouched after the first attempt.
    """
    last_exc: UpstreamError | None = None
    for attempt in range(policy.attempts):
        try:
            return await fn()
        except UpstreamError as exc:
            if classify(exc) is not Verdict.RETRY:
                logger.info("[Retry] %s aborted (%s): %s", label, exc.kind.value, exc.message)
                raise translate_upstream(exc) from exc
            last_exc = exc
            if attempt < policy.attempts - 1:
                wait = policy.delay(attempt)
                logger.warning(
                    "[Retry] %s failed (%s), attempt %d/%d, sleeping %.1fs",
                    label, exc.kind.value, attempt + 1, policy.attempts, wait,
                )
                await sleep(wait)

    detail = last_exc.message if last_exc is not None else "no attempts made"
    raise RetryExhaustedError(
        f"{label}: upstream still failing after {policy.attempts} attempts ({detail})",
        attempts=policy.attempts,
    ) from last_exc
