"""Durable job queue for the backfill worker.

Two backends share one interface:

  MemoryJobQueue   in-process dicts against an injectable clock.  Used when no
                   REDIS_URL is configured and throughout the test-suite.
  RedisJobQueue    keys under ``{queue_name}:*``; safe for several worker
                   processes because every state move is guarded by an atomic
                   Redis primitive (SET NX, ZPOPMIN, ZREM, and one Lua script
                   that checks and records the rate window together).

Redis layout
────────────
    {q}:job:{id}     JSON JobRecord
    {q}:seq          INCR counter (FIFO tie-break, rate-slot members)
    {q}:wait         ZSET id → priority * 1e12 + seq      (ready to run)
    {q}:delayed      ZSET id → ready_at epoch             (backoff / stagger)
    {q}:active       ZSET id → last heartbeat epoch
    {q}:completed    LIST newest first, trimmed to keep_completed
    {q}:failed       LIST newest first, trimmed to keep_failed
    {q}:limiter      ZSET slot → execution epoch          (rolling rate window)

Delivery is at-least-once: a worker that dies mid-job stops heartbeating and
the job is requeued by whichever worker runs the next stall sweep.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
import json
import logging
import time
from typing import Callable, Iterable

from redis.asyncio import Redis

from app.backfill.jobs import FetchJob, JobRecord, JobState

logger = logging.getLogger(__name__)

KEEP_COMPLETED = 50
KEEP_FAILED    = 100

_PRIORITY_STRIDE = 1e12

# KEYS[1] limiter ZSET; ARGV now, period, max_calls, slot member.
# Returns "0" after recording the slot, else seconds until the oldest expires.
_ACQUIRE_SLOT_LUA = """
local now    = tonumber(ARGV[1])
local period = tonumber(ARGV[2])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - period)
if redis.call('ZCARD', KEYS[1]) < tonumber(ARGV[3]) then
    redis.call('ZADD', KEYS[1], ARGV[1], ARGV[4])
    return '0'
end
local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
return tostring(tonumber(oldest[2]) + period - now)
"""


class JobQueue(ABC):
    """Operations the scheduler, the worker and the status endpoint rely on."""

    def __init__(
        self,
        keep_completed: int = KEEP_COMPLETED,
        keep_failed: int = KEEP_FAILED,
    ) -> None:
        self.keep_completed = keep_completed
        self.keep_failed    = keep_failed

    @abstractmethod
    async def add(self, job: FetchJob) -> tuple[JobRecord, bool]:
        """Enqueue *job*; returns (record, created).  An existing id is left as is."""

    async def add_bulk(self, jobs: Iterable[FetchJob]) -> int:
        """Enqueue *jobs* in order; returns how many were newly created."""
        created = 0
        for job in jobs:
            _record, is_new = await self.add(job)
            created += is_new
        return created

    @abstractmethod
    async def reserve(self) -> JobRecord | None:
        """Move the next ready job to active and return it, or None."""

    @abstractmethod
    async def heartbeat(self, job_id: str) -> None: ...

    @abstractmethod
    async def complete(self, job_id: str, result: dict | None = None) -> JobRecord | None: ...

    @abstractmethod
    async def fail(
        self,
        job_id: str,
        error: str,
        retry_delay: float | None = None,
    ) -> JobRecord | None:
        """Record a failed attempt.

        With *retry_delay* the job goes to delayed and becomes ready again
        after that many seconds; without it the failure is terminal.
        """

    @abstractmethod
    async def requeue_stalled(
        self,
        stall_interval: float,
        max_stalled: int,
    ) -> list[tuple[str, bool]]:
        """Requeue active jobs silent for *stall_interval* seconds.

        Returns (job_id, terminal) pairs; terminal is True for jobs that
        exceeded *max_stalled* and were moved to failed instead.
        """

    @abstractmethod
    async def acquire_rate_slot(self, max_calls: int, period: float) -> tuple[str | None, float]:
        """Claim one execution in the rolling window, checking and recording together.

        Returns (slot, 0.0) when a slot was taken, or (None, seconds) with the
        time until the oldest execution leaves the window.
        """

    @abstractmethod
    async def release_rate_slot(self, slot: str) -> None:
        """Give back a slot that ended up running nothing."""

    @abstractmethod
    async def get(self, job_id: str) -> JobRecord | None: ...

    @abstractmethod
    async def counts(self) -> dict[str, int]: ...

    async def close(self) -> None:
        return None


# ── In-process backend ────────────────────────────────────────────────────────

class MemoryJobQueue(JobQueue):

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        keep_completed: int = KEEP_COMPLETED,
        keep_failed: int = KEEP_FAILED,
    ) -> None:
        super().__init__(keep_completed, keep_failed)
        self._clock     = clock
        self._records:   dict[str, JobRecord] = {}
        self._seq       = 0
        self._completed: deque[str] = deque()
        self._failed:    deque[str] = deque()
        self._executions: deque[tuple[float, str]] = deque()

    async def add(self, job: FetchJob) -> tuple[JobRecord, bool]:
        existing = self._records.get(job.idempotency_key)
        if existing is not None:
            return existing, False
        self._seq += 1
        now = self._clock()
        record = JobRecord(
            job=job,
            state=JobState.DELAYED if job.delay > 0 else JobState.WAITING,
            ready_at=now + job.delay,
            seq=self._seq,
        )
        self._records[record.id] = record
        return record, True

    async def reserve(self) -> JobRecord | None:
        now = self._clock()
        ready = [
            r for r in self._records.values()
            if r.state in (JobState.WAITING, JobState.DELAYED) and r.ready_at <= now
        ]
        if not ready:
            return None
        record = min(ready, key=lambda r: (r.job.priority, r.ready_at, r.seq))
        record.state        = JobState.ACTIVE
        record.heartbeat_at = now
        return record

    async def heartbeat(self, job_id: str) -> None:
        record = self._records.get(job_id)
        if record is not None and record.state is JobState.ACTIVE:
            record.heartbeat_at = self._clock()

    async def complete(self, job_id: str, result: dict | None = None) -> JobRecord | None:
        record = self._records.get(job_id)
        if record is None:
            return None
        record.state       = JobState.COMPLETED
        record.result      = result
        record.finished_at = self._clock()
        self._retain(self._completed, job_id, self.keep_completed)
        return record

    async def fail(
        self,
        job_id: str,
        error: str,
        retry_delay: float | None = None,
    ) -> JobRecord | None:
        record = self._records.get(job_id)
        if record is None:
            return None
        record.attempts_made += 1
        record.last_error     = error
        if retry_delay is not None:
            record.state    = JobState.DELAYED
            record.ready_at = self._clock() + retry_delay
        else:
            record.state       = JobState.FAILED
            record.finished_at = self._clock()
            self._retain(self._failed, job_id, self.keep_failed)
        return record

    async def requeue_stalled(
        self,
        stall_interval: float,
        max_stalled: int,
    ) -> list[tuple[str, bool]]:
        now = self._clock()
        moved: list[tuple[str, bool]] = []
        for record in list(self._records.values()):
            if record.state is not JobState.ACTIVE:
                continue
            if record.heartbeat_at is not None and now - record.heartbeat_at < stall_interval:
                continue
            record.stalled_count += 1
            if record.stalled_count > max_stalled:
                record.state       = JobState.FAILED
                record.last_error  = "job stalled more than allowable limit"
                record.finished_at = now
                self._retain(self._failed, record.id, self.keep_failed)
                moved.append((record.id, True))
            else:
                record.state    = JobState.WAITING
                record.ready_at = now
                moved.append((record.id, False))
        return moved

    async def acquire_rate_slot(self, max_calls: int, period: float) -> tuple[str | None, float]:
        now = self._clock()
        while self._executions and self._executions[0][0] <= now - period:
            self._executions.popleft()
        if len(self._executions) >= max_calls:
            return None, self._executions[0][0] + period - now
        self._seq += 1
        slot = f"{now}:{self._seq}"
        self._executions.append((now, slot))
        return slot, 0.0

    async def release_rate_slot(self, slot: str) -> None:
        for entry in self._executions:
            if entry[1] == slot:
                self._executions.remove(entry)
                return

    async def get(self, job_id: str) -> JobRecord | None:
        return self._records.get(job_id)

    async def counts(self) -> dict[str, int]:
        out = {state.value: 0 for state in JobState}
        for record in self._records.values():
            out[record.state.value] += 1
        return out

    def _retain(self, bucket: deque[str], job_id: str, keep: int) -> None:
        bucket.append(job_id)
        while len(bucket) > keep:
            self._records.pop(bucket.popleft(), None)


# ── Redis backend ─────────────────────────────────────────────────────────────

class RedisJobQueue(JobQueue):
    """Queue stored in Redis.  The client must use ``decode_responses=True``."""

    def __init__(
        self,
        redis: Redis,
        name: str = "history-fetcher",
        clock: Callable[[], float] = time.time,
        keep_completed: int = KEEP_COMPLETED,
        keep_failed: int = KEEP_FAILED,
    ) -> None:
        super().__init__(keep_completed, keep_failed)
        self._redis = redis
        self._name  = name
        self._clock = clock
        self._acquire_slot = redis.register_script(_ACQUIRE_SLOT_LUA)

    def _key(self, suffix: str) -> str:
        return f"{self._name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._name}:job:{job_id}"

    @staticmethod
    def _wait_score(record: JobRecord) -> float:
        return record.job.priority * _PRIORITY_STRIDE + record.seq

    async def _load(self, job_id: str) -> JobRecord | None:
        raw = await self._redis.get(self._job_key(job_id))
        if raw is None:
            return None
        return JobRecord.from_dict(json.loads(raw))

    async def _save(self, record: JobRecord) -> None:
        await self._redis.set(self._job_key(record.id), json.dumps(record.to_dict()))

    async def add(self, job: FetchJob) -> tuple[JobRecord, bool]:
        now = self._clock()
        seq = await self._redis.incr(self._key("seq"))
        record = JobRecord(
            job=job,
            state=JobState.DELAYED if job.delay > 0 else JobState.WAITING,
            ready_at=now + job.delay,
            seq=seq,
        )
        created = await self._redis.set(
            self._job_key(record.id), json.dumps(record.to_dict()), nx=True,
        )
        if not created:
            existing = await self._load(record.id)
            return (existing or record), False

        if record.state is JobState.DELAYED:
            await self._redis.zadd(self._key("delayed"), {record.id: record.ready_at})
        else:
            await self._redis.zadd(self._key("wait"), {record.id: self._wait_score(record)})
        return record, True

    async def _promote_delayed(self, now: float) -> None:
        due = await self._redis.zrangebyscore(self._key("delayed"), "-inf", now)
        for job_id in due:
            if not await self._redis.zrem(self._key("delayed"), job_id):
                continue   # another worker promoted it
            record = await self._load(job_id)
            if record is None:
                continue
            record.state = JobState.WAITING
            await self._save(record)
            await self._redis.zadd(self._key("wait"), {job_id: self._wait_score(record)})

    async def reserve(self) -> JobRecord | None:
        now = self._clock()
        await self._promote_delayed(now)
        while True:
            popped = await self._redis.zpopmin(self._key("wait"))
            if not popped:
                return None
            job_id, _score = popped[0]
            record = await self._load(job_id)
            if record is None:
                logger.warning("[Queue] Dropping dangling id %s", job_id)
                continue
            record.state        = JobState.ACTIVE
            record.heartbeat_at = now
            await self._save(record)
            await self._redis.zadd(self._key("active"), {job_id: now})
            return record

    async def heartbeat(self, job_id: str) -> None:
        await self._redis.zadd(self._key("active"), {job_id: self._clock()}, xx=True)

    async def complete(self, job_id: str, result: dict | None = None) -> JobRecord | None:
        await self._redis.zrem(self._key("active"), job_id)
        record = await self._load(job_id)
        if record is None:
            return None
        record.state       = JobState.COMPLETED
        record.result      = result
        record.finished_at = self._clock()
        await self._save(record)
        await self._retain("completed", job_id, self.keep_completed)
        return record

    async def fail(
        self,
        job_id: str,
        error: str,
        retry_delay: float | None = None,
    ) -> JobRecord | None:
        await self._redis.zrem(self._key("active"), job_id)
        record = await self._load(job_id)
        if record is None:
            return None
        now = self._clock()
        record.attempts_made += 1
        record.last_error     = error
        if retry_delay is not None:
            record.state    = JobState.DELAYED
            record.ready_at = now + retry_delay
            await self._save(record)
            await self._redis.zadd(self._key("delayed"), {job_id: record.ready_at})
        else:
            record.state       = JobState.FAILED
            record.finished_at = now
            await self._save(record)
            await self._retain("failed", job_id, self.keep_failed)
        return record

    async def requeue_stalled(
        self,
        stall_interval: float,
        max_stalled: int,
    ) -> list[tuple[str, bool]]:
        now = self._clock()
        silent = await self._redis.zrangebyscore(
            self._key("active"), "-inf", f"({now - stall_interval}",
        )
        moved: list[tuple[str, bool]] = []
        for job_id in silent:
            if not await self._redis.zrem(self._key("active"), job_id):
                continue   # completed or claimed by another sweeper meanwhile
            record = await self._load(job_id)
            if record is None:
                continue
            record.stalled_count += 1
            if record.stalled_count > max_stalled:
                record.state       = JobState.FAILED
                record.last_error  = "job stalled more than allowable limit"
                record.finished_at = now
                await self._save(record)
                await self._retain("failed", job_id, self.keep_failed)
                moved.append((job_id, True))
            else:
                record.state    = JobState.WAITING
                record.ready_at = now
                await self._save(record)
                await self._redis.zadd(self._key("wait"), {job_id: self._wait_score(record)})
                moved.append((job_id, False))
        return moved

    async def acquire_rate_slot(self, max_calls: int, period: float) -> tuple[str | None, float]:
        now  = self._clock()
        slot = f"{now}:{await self._redis.incr(self._key('seq'))}"
        wait = await self._acquire_slot(
            keys=[self._key("limiter")],
            args=[repr(now), repr(float(period)), max_calls, slot],
        )
        wait = float(wait)
        if wait > 0:
            return None, wait
        return slot, 0.0

    async def release_rate_slot(self, slot: str) -> None:
        await self._redis.zrem(self._key("limiter"), slot)

    async def get(self, job_id: str) -> JobRecord | None:
        return await self._load(job_id)

    async def counts(self) -> dict[str, int]:
        return {
            JobState.WAITING.value:   await self._redis.zcard(self._key("wait")),
            JobState.DELAYED.value:   await self._redis.zcard(self._key("delayed")),
            JobState.ACTIVE.value:    await self._redis.zcard(self._key("active")),
            JobState.COMPLETED.value: await self._redis.llen(self._key("completed")),
            JobState.FAILED.value:    await self._redis.llen(self._key("failed")),
        }

    async def _retain(self, bucket: str, job_id: str, keep: int) -> None:
        key = self._key(bucket)
        await self._redis.lpush(key, job_id)
        evicted = await self._redis.lrange(key, keep, -1)
        if evicted:
            await self._redis.delete(*(self._job_key(old) for old in evicted))
            await self._redis.ltrim(key, 0, keep - 1)
