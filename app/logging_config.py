"""
Structured logging configuration using structlog.

Logs are JSON in deployed environments and pretty-printed when DEBUG is on.
"""
import structlog
import logging
import sys

from app.config import settings


def configure_logging(level: str | None = None, json_output: bool | None = None):
    """Configure stdlib logging and structlog. Safe to call more than once."""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    if json_output is None:
        json_output = not settings.DEBUG

    # Configure standard library logging (uvicorn, sqlalchemy)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )

    return structlog.get_logger()


def get_logger(**context):
    """
    Get a logger with additional context bound.

    Usage:
        log = get_logger(job_id=job_id, webhook_type="stripe")
        log.info("webhook_job_completed", retry_count=0)
    """
    return structlog.get_logger().bind(**context)
