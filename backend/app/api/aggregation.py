"""REST API for episode recalculation, queue status and the dead-letter queue."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from core.errors import EntityNotFoundError, JobNotFoundError
from core.states import state_options
from services.job_queue import now_ms

router = APIRouter(prefix="/api/aggregation", tags=["aggregation"])
states_router = APIRouter(prefix="/api/states", tags=["states"])

RECALCULATE_JOB = "recalculate"


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class EnqueuedOut(BaseModel):
    queue_job_id: str


class RecalculationOut(BaseModel):
    job_id: int
    alarm_episodes: int
    state_episodes: int
    annotations_restored: int
    carved_out: int
    failed_tags: list[int]
    efficiency_ok: bool | None = None
    skipped: bool = False


class StateOptionOut(BaseModel):
    code: int
    label: str
    color: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/jobs/{job_id}/recalculate")
async def recalculate_job(
    job_id: int,
    request: Request,
    wait: bool = Query(False, description="Run now instead of enqueueing"),
):
    if wait:
        try:
            result = await request.app.state.orchestrator.recalculate(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail=exc.to_dict()) from exc
        return RecalculationOut(**vars(result))

    queue = request.app.state.recalculation_queue
    queue_job_id = await queue.schedule(
        RECALCULATE_JOB, {"job_id": job_id}, 0, job_id=f"recalculate-{job_id}-{now_ms()}",
    )
    return EnqueuedOut(queue_job_id=queue_job_id)


@router.post("/sweep", response_model=EnqueuedOut)
async def enqueue_sweep(request: Request) -> EnqueuedOut:
    queue = request.app.state.recalculation_queue
    queue_job_id = await queue.schedule(RECALCULATE_JOB, {"job_id": None}, 0)
    return EnqueuedOut(queue_job_id=queue_job_id)


@router.get("/queues")
async def queue_stats(request: Request) -> dict:
    state = request.app.state
    return {
        "notification": await state.notification_queue.stats(),
        "recalculation": await state.recalculation_queue.stats(),
        "dead_letter": await state.recalculation_dlq.count(),
    }


@router.get("/dead-letter")
async def list_dead_letter(request: Request, limit: int = Query(50, le=500)) -> list[dict]:
    return await request.app.state.recalculation_dlq.list_jobs(limit)


@router.post("/dead-letter/{dlq_id}/retry", response_model=EnqueuedOut)
async def retry_dead_letter(dlq_id: str, request: Request) -> EnqueuedOut:
    try:
        queue_job_id = await request.app.state.recalculation_dlq.retry(dlq_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.to_dict()) from exc
    return EnqueuedOut(queue_job_id=queue_job_id)


@router.delete("/dead-letter")
async def clear_dead_letter(request: Request) -> dict:
    return {"cleared": await request.app.state.recalculation_dlq.clear()}


@states_router.get("", response_model=list[StateOptionOut])
async def get_states() -> list[StateOptionOut]:
    return [StateOptionOut(**option) for option in state_options()]
