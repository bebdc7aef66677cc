"""Backfill worker: pulls jobs off the queue and runs them.

Main loop
─────────
    ┌──────────────────────────────────────────────────────────┐
    │ every stall_interval/2: requeue_stalled()                │
    │ in-flight == concurrency?  → wait for one to finish      │
    │ acquire_rate_slot() full?  → pause poll_interval         │
    │ reserve() → None?          → release slot, pause         │
    │ spawn task(job)                                          │
    │ RedisError anywhere above  → log, pause, keep looping    │
    └──────────────────────────────────────────────────────────┘

close() stops the loop, then waits until run() has returned and every job it
started (including one reserved while closing) has finished.

Per job
───────
    schedule-batch     expand into one fetch-daily-price job per day
                       (day order, delay i * stagger, one add_bulk)
    fetch-daily-price  resolver.resolve(query, DAILY): cache write + persist

    success                         → complete
    retryable, attempts left        → fail(retry_delay = 5s · 2^(n-1))
    non-retryable or last attempt   → fail (terminal)

While a job runs its task heartbeats every stall_interval/2.  A job whose
heartbeat stops (worker crash, event loop wedged) is requeued by the next
sweep, up to max_stalled_count times.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Protocol

from redis.exceptions import RedisError

from app.backfill.jobs import BatchPlan, FetchJob, JobKind, JobRecord, expand_batch
from app.backfill.queue import JobQueue
from app.data.errors import PriceServiceError
from app.data.price_resolver import PriceResolver
from app.data.types import Granularity, PriceQuery

logger = logging.getLogger(__name__)


class UnsupportedJobError(PriceServiceError):
    status_code = 400
    retryable   = False
    error       = "Unsupported job"


@dataclass(frozen=True)
class WorkerSettings:
    concurrency:       int   = 5
    rate_limit_max:    int   = 290
    rate_limit_period: float = 3600.0
    attempts:          int   = 5
    backoff_base:      float = 5.0
    stall_interval:    float = 30.0
    max_stalled_count: int   = 3
    stagger_delay:     float = 0.1
    poll_interval:     float = 1.0

    @classmethod
    def from_settings(cls, settings: Any) -> "WorkerSettings":
        return cls(
            concurrency=settings.worker_concurrency,
            rate_limit_max=settings.rate_limit_max,
            rate_limit_period=settings.rate_limit_period,
            attempts=settings.job_attempts,
            backoff_base=settings.job_backoff_base,
            stall_interval=settings.stall_interval,
            max_stalled_count=settings.max_stalled_count,
            stagger_delay=settings.stagger_delay,
            poll_interval=settings.poll_interval,
        )

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number *attempt* (1-based)."""
        return self.backoff_base * (2 ** (attempt - 1))


# ── Lifecycle notifications ───────────────────────────────────────────────────

class WorkerObserver(Protocol):
    def on_completed(self, record: JobRecord, result: dict[str, Any]) -> None: ...
    def on_failed(self, record: JobRecord, error: BaseException, terminal: bool) -> None: ...
    def on_stalled(self, job_id: str, terminal: bool) -> None: ...


class LoggingObserver:

    def on_completed(self, record: JobRecord, result: dict[str, Any]) -> None:
        logger.info("[Worker] Job %s completed", record.id)

    def on_failed(self, record: JobRecord, error: BaseException, terminal: bool) -> None:
        if terminal:
            logger.error(
                "[Worker] Job %s failed permanently after %d attempt(s): %s",
                record.id, record.attempts_made, error,
            )
        else:
            logger.warning(
                "[Worker] Job %s failed (attempt %d), will retry: %s",
                record.id, record.attempts_made, error,
            )

    def on_stalled(self, job_id: str, terminal: bool) -> None:
        if terminal:
            logger.error("[Worker] Job %s stalled too often, moved to failed", job_id)
        else:
            logger.warning("[Worker] Job %s stalled, requeued", job_id)


# ── Worker ────────────────────────────────────────────────────────────────────

class JobWorker:

    def __init__(
        self,
        queue: JobQueue,
        resolver: PriceResolver,
        settings: WorkerSettings = WorkerSettings(),
        observer: WorkerObserver | None = None,
    ) -> None:
        self.queue      = queue
        self.resolver   = resolver
        self.settings   = settings
        self._observer  = observer or LoggingObserver()
        self._tasks:    set[asyncio.Task] = set()
        self._stop      = asyncio.Event()
        self._idle      = asyncio.Event()
        self._idle.set()
        self._last_sweep: float | None = None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def run(self) -> None:
        """Process jobs until :meth:`close` is called."""
        logger.info(
            "[Worker] Started: concurrency=%d, rate=%d/%.0fs, attempts=%d",
            self.settings.concurrency, self.settings.rate_limit_max,
            self.settings.rate_limit_period, self.settings.attempts,
        )
        self._stop.clear()
        self._idle.clear()
        try:
            while not self._stop.is_set():
                try:
                    await self._maybe_sweep()
                    if len(self._tasks) >= self.settings.concurrency:
                        await asyncio.wait(
                            set(self._tasks),
                            timeout=self.settings.poll_interval,
                            return_when=asyncio.FIRST_COMPLETED,
                        )
                        continue
                    if not await self._start_next():
                        await self._pause(self.settings.poll_interval)
                except RedisError:
                    logger.exception("[Worker] Queue unavailable, retrying in %.1fs",
                                     self.settings.poll_interval)
                    await self._pause(self.settings.poll_interval)
            logger.info("[Worker] Loop stopped")
            # a reserve() in progress when close() was called may have started one more job
            await self._wait_in_flight()
        finally:
            self._idle.set()

    async def drain(self) -> None:
        """Run every job that is ready now and return when none are in flight."""
        while True:
            while len(self._tasks) < self.settings.concurrency and await self._start_next():
                pass
            if not self._tasks:
                return
            await asyncio.wait(set(self._tasks), return_when=asyncio.FIRST_COMPLETED)

    async def close(self) -> None:
        """Stop reserving new jobs and wait for in-flight ones to finish."""
        self._stop.set()
        await self._idle.wait()
        await self._wait_in_flight()
        logger.info("[Worker] Closed")

    async def sweep_stalled(self) -> list[tuple[str, bool]]:
        moved = await self.queue.requeue_stalled(
            self.settings.stall_interval, self.settings.max_stalled_count,
        )
        for job_id, terminal in moved:
            self._observer.on_stalled(job_id, terminal)
        return moved

    async def process(self, record: JobRecord) -> dict[str, Any]:
        job = record.job
        if job.kind is JobKind.SCHEDULE_BATCH:
            return await self._expand_batch(job)
        if job.kind is JobKind.FETCH_DAILY:
            return await self._fetch_daily(job)
        raise UnsupportedJobError(f"Unsupported job kind: {job.kind}")

    # ── Job handlers ──────────────────────────────────────────────────────────

    async def _expand_batch(self, job: FetchJob) -> dict[str, Any]:
        plan    = BatchPlan.from_job(job)
        jobs    = expand_batch(plan, self.settings.stagger_delay)
        created = await self.queue.add_bulk(jobs)
        logger.info(
            "[Worker] Batch %s expanded: %d daily job(s), %d new",
            job.idempotency_key, len(jobs), created,
        )
        return {"success": True, "totalJobs": len(jobs), "newJobs": created}

    async def _fetch_daily(self, job: FetchJob) -> dict[str, Any]:
        if job.timestamp is None:
            raise UnsupportedJobError(f"Daily job {job.idempotency_key} has no timestamp")
        query    = PriceQuery(job.token, job.network, job.timestamp)
        resolved = await self.resolver.resolve(query, Granularity.DAILY)
        return {
            "success":   True,
            "timestamp": job.timestamp,
            "price":     str(resolved.price),
            "source":    resolved.source.value,
        }

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _start_next(self) -> bool:
        slot, wait = await self.queue.acquire_rate_slot(
            self.settings.rate_limit_max, self.settings.rate_limit_period,
        )
        if slot is None:
            logger.debug("[Worker] Rate window full, next slot in %.1fs", wait)
            return False
        record = await self.queue.reserve()
        if record is None:
            await self.queue.release_rate_slot(slot)
            return False
        task = asyncio.create_task(self._execute(record), name=f"job:{record.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _execute(self, record: JobRecord) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(record.id))
        try:
            try:
                result = await self.process(record)
            except Exception as exc:
                await self._handle_failure(record, exc)
            else:
                done = await self.queue.complete(record.id, result)
                self._observer.on_completed(done or record, result)
        except RedisError:
            logger.exception("[Worker] Queue update failed for job %s", record.id)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _handle_failure(self, record: JobRecord, exc: Exception) -> None:
        attempt   = record.attempts_made + 1
        retryable = getattr(exc, "retryable", True)
        message   = getattr(exc, "message", None) or str(exc) or type(exc).__name__

        if retryable and attempt < self.settings.attempts:
            updated  = await self.queue.fail(
                record.id, message, retry_delay=self.settings.backoff(attempt),
            )
            terminal = False
        else:
            updated  = await self.queue.fail(record.id, message)
            terminal = True
        self._observer.on_failed(updated or record, exc, terminal)

    async def _heartbeat(self, job_id: str) -> None:
        interval = self.settings.stall_interval / 2
        while True:
            await asyncio.sleep(interval)
            try:
                await self.queue.heartbeat(job_id)
            except RedisError:
                logger.warning("[Worker] Heartbeat failed for job %s", job_id)

    async def _maybe_sweep(self) -> None:
        now = asyncio.get_running_loop().time()
        if self._last_sweep is not None and now - self._last_sweep < self.settings.stall_interval / 2:
            return
        self._last_sweep = now
        await self.sweep_stalled()

    async def _wait_in_flight(self) -> None:
        while self._tasks:
            logger.info("[Worker] Waiting for %d in-flight job(s)", len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
