"""Backfill job model.

Job identity
────────────
A job's id IS its idempotency key, derived only from its inputs:

    schedule-batch     batch-{token}-{network}
    fetch-daily-price  price-{token}-{network}-{day_epoch}

The queue refuses to create a second job under an existing id, so asking to
back-fill the same token twice, or re-expanding a batch whose days are still
queued, collapses onto the work that already exists.

State machine
─────────────
    waiting ──reserve──► active ──complete──► completed
       ▲                   │
       │                   ├──fail (retryable, attempts left)──► delayed ──ready──► waiting
       │                   ├──fail (terminal)──────────────────► failed
       └──stalled (≤ max)──┘──stalled (> max)──────────────────► failed
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import enum
from typing import Any, Iterator

from app.data.interpolate import from_epoch, to_epoch
from app.data.network_registry import Network


class JobKind(str, enum.Enum):
    FETCH_DAILY    = "fetch-daily-price"
    SCHEDULE_BATCH = "schedule-batch"


class JobState(str, enum.Enum):
    WAITING   = "waiting"
    DELAYED   = "delayed"
    ACTIVE    = "active"
    COMPLETED = "completed"
    FAILED    = "failed"


def batch_job_key(token: str, network: Network) -> str:
    return f"batch-{token}-{network.value}"


def daily_job_key(token: str, network: Network, day_epoch: int) -> str:
    return f"price-{token}-{network.value}-{day_epoch}"


def utc_day_floor(dt: datetime) -> datetime:
    """Midnight UTC of the day containing *dt* (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


# ── Batch plan ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BatchPlan:
    token:            str
    network:          Network
    creation_instant: datetime
    start_day:        datetime
    end_day:          datetime
    total_days:       int

    @classmethod
    def build(
        cls,
        token: str,
        network: Network,
        creation_instant: datetime,
        now: datetime,
    ) -> "BatchPlan":
        start = utc_day_floor(creation_instant)
        end   = utc_day_floor(now)
        return cls(
            token=token,
            network=network,
            creation_instant=creation_instant,
            start_day=start,
            end_day=end,
            total_days=max((end - start).days + 1, 0),
        )

    @property
    def batch_job_id(self) -> str:
        return batch_job_key(self.token, self.network)

    def day_epochs(self) -> Iterator[int]:
        """UTC midnight epochs from start_day to end_day inclusive, ascending."""
        for i in range(self.total_days):
            yield to_epoch(self.start_day + timedelta(days=i))

    def to_payload(self) -> dict[str, Any]:
        return {
            "creationDate": self.creation_instant.isoformat(),
            "startDate":    to_epoch(self.start_day),
            "endDate":      to_epoch(self.end_day),
            "totalDays":    self.total_days,
        }

    @classmethod
    def from_job(cls, job: "FetchJob") -> "BatchPlan":
        p = job.payload
        return cls(
            token=job.token,
            network=job.network,
            creation_instant=datetime.fromisoformat(p["creationDate"]),
            start_day=from_epoch(int(p["startDate"])),
            end_day=from_epoch(int(p["endDate"])),
            total_days=int(p["totalDays"]),
        )


# ── Jobs ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FetchJob:
    kind:            JobKind
    token:           str
    network:         Network
    idempotency_key: str
    timestamp:       int | None = None     # UTC-midnight epoch for fetch-daily
    delay:           float = 0.0           # seconds before the job becomes ready
    priority:        int   = 0             # lower runs first
    payload:         dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind":            self.kind.value,
            "token":           self.token,
            "network":         self.network.value,
            "idempotency_key": self.idempotency_key,
            "timestamp":       self.timestamp,
            "delay":           self.delay,
            "priority":        self.priority,
            "payload":         self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FetchJob":
        return cls(
            kind=JobKind(data["kind"]),
            token=data["token"],
            network=Network(data["network"]),
            idempotency_key=data["idempotency_key"],
            timestamp=data.get("timestamp"),
            delay=float(data.get("delay") or 0.0),
            priority=int(data.get("priority") or 0),
            payload=dict(data.get("payload") or {}),
        )


def batch_job(plan: BatchPlan, priority: int = 10) -> FetchJob:
    return FetchJob(
        kind=JobKind.SCHEDULE_BATCH,
        token=plan.token,
        network=plan.network,
        idempotency_key=plan.batch_job_id,
        priority=priority,
        payload=plan.to_payload(),
    )


def daily_job(token: str, network: Network, day_epoch: int, delay: float = 0.0) -> FetchJob:
    if day_epoch % 86400:
        raise ValueError(f"Daily job timestamp {day_epoch} is not aligned to a UTC day")
    return FetchJob(
        kind=JobKind.FETCH_DAILY,
        token=token,
        network=network,
        idempotency_key=daily_job_key(token, network, day_epoch),
        timestamp=day_epoch,
        delay=delay,
    )


def expand_batch(plan: BatchPlan, stagger: float = 0.1) -> list[FetchJob]:
    """One daily job per day in *plan*, in day order, delayed index * stagger."""
    return [
        daily_job(plan.token, plan.network, day_epoch, delay=i * stagger)
        for i, day_epoch in enumerate(plan.day_epochs())
    ]


@dataclass
class JobRecord:
    """Queue-side state of one job."""
    job:           FetchJob
    state:         JobState
    ready_at:      float
    seq:           int
    attempts_made: int = 0
    stalled_count: int = 0
    heartbeat_at:  float | None = None
    finished_at:   float | None = None
    result:        dict[str, Any] | None = None
    last_error:    str | None = None

    @property
    def id(self) -> str:
        return self.job.idempotency_key

    def to_dict(self) -> dict[str, Any]:
        return {
            "job":           self.job.to_dict(),
            "state":         self.state.value,
            "ready_at":      self.ready_at,
            "seq":           self.seq,
            "attempts_made": self.attempts_made,
            "stalled_count": self.stalled_count,
            "heartbeat_at":  self.heartbeat_at,
            "finished_at":   self.finished_at,
            "result":        self.result,
            "last_error":    self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobRecord":
        return cls(
            job=FetchJob.from_dict(data["job"]),
            state=JobState(data["state"]),
            ready_at=float(data["ready_at"]),
            seq=int(data["seq"]),
            attempts_made=int(data.get("attempts_made") or 0),
            stalled_count=int(data.get("stalled_count") or 0),
            heartbeat_at=data.get("heartbeat_at"),
            finished_at=data.get("finished_at"),
            result=data.get("result"),
            last_error=data.get("last_error"),
        )
