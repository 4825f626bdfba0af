"""
Sentry configuration for error tracking.

Terminal webhook failures and processor errors are reported with the
job id and webhook type as tags.
"""
import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from app.config import settings

logger = structlog.get_logger()


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Does nothing unless SENTRY_DSN is set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=strip_payload,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    logger.info("sentry_initialized", environment=settings.ENVIRONMENT)


def strip_payload(event, hint):
    """Drop webhook payloads from event extras; they can carry customer data."""
    extra = event.get("extra")
    if isinstance(extra, dict):
        extra.pop("payload", None)
    return event


def capture_exception(exc=None, **tags):
    """
    Capture an exception to Sentry with optional tags.

    Usage:
        except Exception as e:
            capture_exception(e, webhook_job_id=job.id, webhook_type=job.webhook_type)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            scope.set_tag(key, value)
        sentry_sdk.capture_exception(exc)

