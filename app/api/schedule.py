"""Backfill scheduling endpoints.

POST /schedule            {"token", "network"} → plan the daily back-fill and
                          enqueue its batch job (idempotent per token/network)
GET  /schedule/{job_id}   state of a queued, running, or recently finished job
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Path
from fastapi.responses import JSONResponse

from app.api.deps import error_response, get_container
from app.api.validation import ScheduleRequest
from app.container import ServiceContainer
from app.data.errors import InternalError, NoTransfersError, PriceServiceError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/schedule", tags=["schedule"])


@router.post("", response_model=None)
async def schedule_backfill(
    body: ScheduleRequest,
    container: ServiceContainer = Depends(get_container),
) -> dict | JSONResponse:
    try:
        plan = await container.scheduler.plan(body.token, body.network)
    except NoTransfersError as exc:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.error})
    except PriceServiceError as exc:
        logger.warning(
            "[Schedule] %s/%s failed (%d): %s",
            body.token, body.network.value, exc.status_code, exc.message,
        )
        return error_response(exc)
    except Exception:
        logger.exception("[Schedule] Unhandled error for %s/%s", body.token, body.network.value)
        return JSONResponse(status_code=500, content={"error": InternalError.error})

    return {
        "success":      True,
        "creationDate": plan.creation_instant.isoformat(),
        "totalDays":    plan.total_days,
        "batchJobId":   plan.batch_job_id,
        "message": (
            f"Scheduled {plan.total_days} daily price fetches "
            f"for {plan.token} on {plan.network.value}"
        ),
    }


@router.get("/{job_id}", response_model=None)
async def job_status(
    job_id: str = Path(description="Job id, e.g. batch-0x…-ethereum"),
    container: ServiceContainer = Depends(get_container),
) -> dict | JSONResponse:
    record = await container.queue.get(job_id)
    if record is None:
        return JSONResponse(status_code=404, content={"error": "Job not found", "details": job_id})
    return {
        "id":           record.id,
        "kind":         record.job.kind.value,
        "state":        record.state.value,
        "token":        record.job.token,
        "network":      record.job.network.value,
        "timestamp":    record.job.timestamp,
        "attemptsMade": record.attempts_made,
        "stalledCount": record.stalled_count,
        "result":       record.result,
        "lastError":    record.last_error,
    }
