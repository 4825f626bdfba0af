"""
Inbound webhook routes.

Third parties POST here; the body is persisted to the webhook queue and
acknowledged immediately. Processing happens in the background processor.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.dependencies.queue import get_webhook_queue
from app.exceptions import WebhookEnqueueError
from app.services.webhook_queue import WebhookQueueService


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{webhook_type}", status_code=status.HTTP_202_ACCEPTED, response_model=dict)
async def receive_webhook(
    webhook_type: str,
    request: Request,
    queue: WebhookQueueService = Depends(get_webhook_queue)
):
    """
    Accept an inbound webhook.

    Returns 202 with the job id once the payload is stored. A 503 tells the
    sender to retry later; most providers do so on any non-2xx response.
    """
    if webhook_type not in queue.handlers:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown webhook source: {webhook_type}"
        )

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body must be valid JSON"
        )

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body must be a JSON object"
        )

    try:
        job_id = await queue.enqueue(webhook_type, payload)
    except WebhookEnqueueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook could not be stored, retry later"
        )

    return {
        "job_id": job_id,
        "status": "pending"
    }
