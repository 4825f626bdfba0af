"""
Webhook Relay - inbound webhook queue service

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Import observability modules
from app.config import settings
from app.logging_config import configure_logging
from app.sentry_config import configure_sentry
from app.middleware.logging import LoggingMiddleware
from app.routes.metrics import router as metrics_router

# Import route modules
from app.routes.webhooks import router as webhooks_router
from app.routes.admin_webhooks import router as admin_webhooks_router

from app.services.webhook_handlers import WebhookHandlerRegistry, build_default_registry
from app.services.webhook_processor import start_processor
from app.services.webhook_queue import WebhookQueueService

logger = structlog.get_logger()


def build_webhook_queue(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    handlers: WebhookHandlerRegistry | None = None,
) -> WebhookQueueService:
    """Construct the queue service from settings."""
    if session_factory is None:
        from app.database import AsyncSessionLocal
        session_factory = AsyncSessionLocal

    return WebhookQueueService(
        session_factory,
        handlers or build_default_registry(),
        max_retries=settings.WEBHOOK_MAX_RETRIES,
        batch_size=settings.WEBHOOK_BATCH_SIZE,
        job_timeout=settings.WEBHOOK_JOB_TIMEOUT_SECONDS,
        stale_after=settings.WEBHOOK_STALE_CLAIM_SECONDS,
    )


def create_app(
    queue: WebhookQueueService | None = None,
    run_processor: bool | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        queue: Queue service to use; built from settings when omitted
        run_processor: Start the background processor in the lifespan.
            Defaults to WEBHOOK_PROCESSOR_ENABLED.
    """
    if run_processor is None:
        run_processor = settings.WEBHOOK_PROCESSOR_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        processor = None
        if run_processor:
            processor = start_processor(
                app.state.webhook_queue,
                interval_seconds=settings.WEBHOOK_PROCESSOR_INTERVAL_SECONDS,
                cleanup_interval_seconds=settings.WEBHOOK_CLEANUP_INTERVAL_SECONDS,
                retention_days=settings.WEBHOOK_RETENTION_DAYS,
            )
        app.state.webhook_processor = processor
        try:
            yield
        finally:
            if processor is not None:
                await processor.stop()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Durable inbound webhook queue with bounded retries",
        lifespan=lifespan,
    )
    app.state.webhook_queue = queue or build_webhook_queue()

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)

    # Inbound webhook receivers
    app.include_router(webhooks_router)

    # Operator endpoints
    app.include_router(admin_webhooks_router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Detailed health check."""
        processor = getattr(app.state, "webhook_processor", None)
        return {
            "status": "healthy",
            "webhook_processor": "running" if processor and processor.is_running else "stopped",
            "webhook_types": app.state.webhook_queue.handlers.types(),
        }

    return app


def get_application() -> FastAPI:
    """uvicorn factory: ``uvicorn app.main:get_application --factory``."""
    # Initialize logging first
    configure_logging()

    # Initialize Sentry (if SENTRY_DSN is set)
    configure_sentry()

    logger.info("app_starting", environment=settings.ENVIRONMENT)
    return create_app()
