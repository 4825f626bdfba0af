"""
Webhook queue admin routes.

Lets operators inspect jobs, retry failed ones and run the retention sweep.
"""
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from app.dependencies.auth import require_admin
from app.dependencies.queue import get_webhook_queue
from app.exceptions import InvalidJobStateError, WebhookJobNotFoundError
from app.models.webhook import WebhookJob, WebhookJobStatus
from app.services.webhook_queue import WebhookQueueService, RETENTION_DAYS


router = APIRouter(
    prefix="/api/admin/webhooks",
    tags=["admin", "webhooks"],
    dependencies=[Depends(require_admin)],
)


class WebhookJobResponse(BaseModel):
    """Response model for a webhook job."""
    id: str
    webhook_type: str
    payload: Any = None
    status: str
    retry_count: int = 0
    last_error: str | None = None
    processed_at: str | None = None
    claimed_at: str | None = None
    created_at: str | None = None


def job_to_response(job: WebhookJob) -> WebhookJobResponse:
    """Convert WebhookJob model to WebhookJobResponse."""
    return WebhookJobResponse(**job.to_dict())


@router.get("/", response_model=list[WebhookJobResponse])
async def list_webhook_jobs(
    status_filter: WebhookJobStatus | None = Query(None, alias="status"),
    webhook_type: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    queue: WebhookQueueService = Depends(get_webhook_queue)
):
    """List webhook jobs, newest first."""
    jobs = await queue.list_jobs(status=status_filter, webhook_type=webhook_type, limit=limit)
    return [job_to_response(job) for job in jobs]


@router.get("/stats", response_model=dict)
async def webhook_queue_stats(
    queue: WebhookQueueService = Depends(get_webhook_queue)
):
    """Job counts per status."""
    return await queue.count_by_status()


@router.post("/cleanup", response_model=dict)
async def cleanup_webhook_jobs(
    days: int = Query(RETENTION_DAYS, ge=0),
    queue: WebhookQueueService = Depends(get_webhook_queue)
):
    """Delete completed jobs older than ``days``. Failed jobs are kept."""
    deleted = await queue.cleanup(days)
    return {"deleted": deleted, "older_than_days": days}


@router.get("/{job_id}", response_model=WebhookJobResponse)
async def get_webhook_job(
    job_id: str,
    queue: WebhookQueueService = Depends(get_webhook_queue)
):
    """Get a webhook job by id."""
    job = await queue.get_status(job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook job not found"
        )
    return job_to_response(job)


@router.post("/{job_id}/retry", response_model=WebhookJobResponse)
async def retry_webhook_job(
    job_id: str,
    queue: WebhookQueueService = Depends(get_webhook_queue)
):
    """
    Reset a failed job and process it immediately.

    The response reflects the outcome of that attempt.
    """
    try:
        job = await queue.retry_failed(job_id)
    except WebhookJobNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook job not found"
        )
    except InvalidJobStateError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
    return job_to_response(job)
