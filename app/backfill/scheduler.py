"""Back-fill planning: first transfer → day range → one coordinating job."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Callable

from app.backfill.jobs import BatchPlan, batch_job
from app.backfill.queue import JobQueue
from app.data.errors import NoTransfersError
from app.data.network_registry import Network
from app.data.price_resolver import PriceSourceClient
from app.data.retry import RetryPolicy, Sleep, call_with_retry

logger = logging.getLogger(__name__)

BATCH_PRIORITY = 10


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BackfillScheduler:

    def __init__(
        self,
        source: PriceSourceClient,
        queue: JobQueue,
        retry_policy: RetryPolicy = RetryPolicy(),
        priority: int = BATCH_PRIORITY,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.source       = source
        self.queue        = queue
        self.retry_policy = retry_policy
        self.priority     = priority
        self._clock       = clock
        self._sleep       = sleep

    async def plan(self, token: str, network: Network) -> BatchPlan:
        """Plan a daily back-fill for *token* and enqueue its batch job.

        Raises NoTransfersError when the token has no ERC-20 transfer on
        record.  Calling this again for the same pair returns a fresh plan but
        leaves the already-queued batch job in place.
        """
        creation = await call_with_retry(
            lambda: self.source.get_first_transfer(network, token),
            policy=self.retry_policy,
            label=f"first transfer {token}/{network.value}",
            sleep=self._sleep,
        )
        if creation is None:
            raise NoTransfersError(f"No transfers found for {token} on {network.value}")

        plan = BatchPlan.build(token, network, creation, self._clock())
        record, created = await self.queue.add(batch_job(plan, priority=self.priority))
        logger.info(
            "[Scheduler] %s/%s: created %s, %d day(s) %s → %s, batch job %s (%s)",
            token, network.value, creation.isoformat(), plan.total_days,
            plan.start_day.date(), plan.end_day.date(),
            record.id, "queued" if created else "already queued",
        )
        return plan
