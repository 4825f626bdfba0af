"""
Webhook queue dependency.

The service instance is built once by the application factory and kept on
app.state.
"""
from fastapi import Request

from app.services.webhook_queue import WebhookQueueService


def get_webhook_queue(request: Request) -> WebhookQueueService:
    """Return the application's WebhookQueueService."""
    return request.app.state.webhook_queue
