"""
Prometheus metrics endpoint.

Exposes HTTP and webhook queue metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Webhook Queue Metrics
# ============================================

webhooks_enqueued = Counter(
    'webhooks_enqueued_total',
    'Total inbound webhooks persisted to the queue',
    ['webhook_type']
)

webhooks_completed = Counter(
    'webhooks_completed_total',
    'Total webhook jobs processed successfully',
    ['webhook_type']
)

webhooks_retried = Counter(
    'webhooks_retried_total',
    'Total webhook job failures that were re-queued',
    ['webhook_type']
)

webhooks_failed = Counter(
    'webhooks_failed_total',
    'Total webhook jobs that reached the failed state',
    ['webhook_type']
)

webhook_processing_duration = Histogram(
    'webhook_processing_duration_seconds',
    'Time spent in a webhook handler',
    ['webhook_type'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0]
)

webhook_queue_jobs = Gauge(
    'webhook_queue_jobs',
    'Current number of webhook jobs per status',
    ['status']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Called by LoggingMiddleware after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_webhook_enqueued(webhook_type: str):
    """Record a webhook being queued."""
    webhooks_enqueued.labels(webhook_type=webhook_type).inc()


def track_webhook_completed(webhook_type: str, duration_seconds: float):
    """Record a webhook job completing successfully."""
    webhooks_completed.labels(webhook_type=webhook_type).inc()
    webhook_processing_duration.labels(webhook_type=webhook_type).observe(duration_seconds)


def track_webhook_retried(webhook_type: str):
    """Record a failed attempt that will be retried."""
    webhooks_retried.labels(webhook_type=webhook_type).inc()


def track_webhook_failed(webhook_type: str):
    """Record a webhook job reaching the failed state."""
    webhooks_failed.labels(webhook_type=webhook_type).inc()


def update_queue_depth(counts: dict[str, int]):
    """Update the per-status job gauge."""
    for status, count in counts.items():
        webhook_queue_jobs.labels(status=status).set(count)


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
