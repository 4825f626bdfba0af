"""
Webhook Queue Service

Database-backed processing of inbound webhooks with bounded retries.

State machine per job:

    pending    -> processing            (atomic claim)
    processing -> completed             (handler succeeded)
    processing -> pending               (handler failed, retries left)
    processing -> failed                (retries exhausted or unknown type)
    processing -> pending / failed      (claim expired, counts as a failed attempt)
    failed     -> pending               (manual retry only)
"""
import asyncio
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import (
    InvalidJobStateError,
    UnknownWebhookTypeError,
    WebhookEnqueueError,
    WebhookJobNotFoundError,
)
from app.logging_config import get_logger
from app.models.webhook import WebhookJob, WebhookJobStatus
from app.routes.metrics import (
    track_webhook_completed,
    track_webhook_enqueued,
    track_webhook_failed,
    track_webhook_retried,
    update_queue_depth,
)
from app.sentry_config import capture_exception
from app.services.webhook_handlers import WebhookHandlerRegistry


MAX_RETRIES = 3
BATCH_SIZE = 10
JOB_TIMEOUT_SECONDS = 60.0
STALE_CLAIM_MARGIN_SECONDS = 60.0
RETENTION_DAYS = 30
# wait_for may fire a hair before the nominal deadline
TIMEOUT_TOLERANCE_SECONDS = 0.01

STALE_CLAIM_ERROR = "Processing claim expired before the outcome was recorded"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookQueueService:
    """
    Persists inbound webhooks and dispatches them to registered handlers.

    Every operation opens its own session from ``session_factory``; no
    session is held open while a handler runs.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: WebhookHandlerRegistry,
        *,
        max_retries: int = MAX_RETRIES,
        batch_size: int = BATCH_SIZE,
        job_timeout: float | None = JOB_TIMEOUT_SECONDS,
        stale_after: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.session_factory = session_factory
        self.handlers = handlers
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.job_timeout = job_timeout
        if stale_after is None:
            stale_after = (job_timeout or JOB_TIMEOUT_SECONDS) + STALE_CLAIM_MARGIN_SECONDS
        if stale_after <= 0:
            raise ValueError("stale_after must be positive")
        self.stale_after = stale_after
        self.clock = clock
        self.log = get_logger(component="webhook_queue")

    async def enqueue(self, webhook_type: str, payload: Any) -> str:
        """
        Persist a webhook as a PENDING job.

        Args:
            webhook_type: Type tag selecting the handler (stripe, youtube, ...)
            payload: Webhook body, stored verbatim

        Returns:
            The new job id

        Raises:
            ValueError: webhook_type is empty
            WebhookEnqueueError: the row could not be written
        """
        if not webhook_type or not webhook_type.strip():
            raise ValueError("webhook_type must be a non-empty string")

        job_id = str(uuid.uuid4())
        job = WebhookJob(
            id=job_id,
            webhook_type=webhook_type,
            payload=payload,
            status=WebhookJobStatus.PENDING,
            retry_count=0,
        )

        try:
            async with self.session_factory() as db:
                db.add(job)
                await db.commit()
        except (SQLAlchemyError, OSError) as e:
            self.log.error("webhook_enqueue_failed", webhook_type=webhook_type, error=str(e))
            raise WebhookEnqueueError(f"Failed to enqueue webhook: {e}") from e

        track_webhook_enqueued(webhook_type)
        self.log.info("webhook_enqueued", job_id=job_id, webhook_type=webhook_type)
        return job_id

    async def process_pending(self) -> int:
        """
        Process one batch of PENDING jobs, sequentially.

        Expired PROCESSING claims are requeued first, so a job whose outcome
        write was lost is picked up again once ``stale_after`` has passed.

        Never raises: a broken job or an unavailable database is logged and
        the next tick tries again.

        Returns:
            Number of jobs this call claimed and dispatched
        """
        try:
            await self.requeue_stale()
            async with self.session_factory() as db:
                result = await db.execute(
                    select(WebhookJob.id)
                    .where(WebhookJob.status == WebhookJobStatus.PENDING)
                    .order_by(WebhookJob.created_at)
                    .limit(self.batch_size)
                )
                job_ids = list(result.scalars().all())
        except Exception as e:
            self.log.exception("webhook_batch_fetch_failed")
            capture_exception(e)
            return 0

        if not job_ids:
            return 0

        processed = 0
        for job_id in job_ids:
            try:
                if await self._process_job(job_id):
                    processed += 1
            except Exception as e:
                self.log.exception("webhook_job_processing_crashed", job_id=job_id)
                capture_exception(e, webhook_job_id=job_id)

        self.log.info("webhook_batch_processed", fetched=len(job_ids), processed=processed)
        await self._refresh_queue_depth()
        return processed

    async def get_status(self, job_id: str) -> WebhookJob | None:
        """Get a job by id."""
        async with self.session_factory() as db:
            return await db.get(WebhookJob, job_id)

    async def retry_failed(self, job_id: str) -> WebhookJob:
        """
        Reset a job to PENDING with a clean retry budget and process it now.

        Allowed from FAILED and PENDING, and from PROCESSING once the claim
        is older than ``stale_after``. COMPLETED is terminal and a freshly
        claimed job is owned by a running dispatch.

        Returns:
            The job as it stands after the synchronous attempt

        Raises:
            WebhookJobNotFoundError: no such job
            InvalidJobStateError: job is COMPLETED or freshly PROCESSING
        """
        resettable = or_(
            WebhookJob.status.in_((WebhookJobStatus.FAILED, WebhookJobStatus.PENDING)),
            self._stale_claim_clause(),
        )

        async with self.session_factory() as db:
            job = await db.get(WebhookJob, job_id)
            if job is None:
                raise WebhookJobNotFoundError(job_id)
            previous_status = job.status.value
            if job.status == WebhookJobStatus.COMPLETED:
                raise InvalidJobStateError(job_id, previous_status, "retry")

            result = await db.execute(
                update(WebhookJob)
                .where(WebhookJob.id == job_id, resettable)
                .values(
                    status=WebhookJobStatus.PENDING,
                    retry_count=0,
                    last_error=None,
                    claimed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount != 1:
                # Claimed by a live dispatch, either before or after the read
                raise InvalidJobStateError(job_id, WebhookJobStatus.PROCESSING.value, "retry")

        self.log.info("webhook_job_retry_requested", job_id=job_id, previous_status=previous_status)
        await self._process_job(job_id)
        return await self.get_status(job_id)

    async def requeue_stale(self) -> int:
        """
        Release PROCESSING jobs whose claim is older than ``stale_after``.

        Each one is recorded as a failed attempt, so it returns to PENDING
        or goes to FAILED when its retry budget is spent.

        Returns:
            Number of jobs released
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookJob)
                .where(self._stale_claim_clause())
                .order_by(WebhookJob.claimed_at)
                .limit(self.batch_size)
            )
            jobs = list(result.scalars().all())

        for job in jobs:
            self.log.warning(
                "webhook_job_claim_expired",
                job_id=job.id,
                claimed_at=job.claimed_at.isoformat() if job.claimed_at else None,
            )
            await self._handle_processing_error(job, STALE_CLAIM_ERROR)
        return len(jobs)

    async def cleanup(self, older_than_days: int = RETENTION_DAYS) -> int:
        """
        Delete COMPLETED jobs processed more than ``older_than_days`` ago.

        FAILED, PENDING and PROCESSING jobs are never touched.

        Returns:
            Number of rows deleted
        """
        if older_than_days < 0:
            raise ValueError("older_than_days must not be negative")

        cutoff = self.clock() - timedelta(days=older_than_days)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(WebhookJob)
                .where(
                    WebhookJob.status == WebhookJobStatus.COMPLETED,
                    WebhookJob.processed_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        deleted = result.rowcount or 0
        self.log.info("webhook_cleanup_completed", deleted=deleted, older_than_days=older_than_days)
        return deleted

    async def list_jobs(
        self,
        status: WebhookJobStatus | None = None,
        webhook_type: str | None = None,
        limit: int = 50,
    ) -> list[WebhookJob]:
        """List jobs, newest first, optionally filtered by status and type."""
        stmt = select(WebhookJob).order_by(WebhookJob.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(WebhookJob.status == status)
        if webhook_type is not None:
            stmt = stmt.where(WebhookJob.webhook_type == webhook_type)

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        """Job counts for every status, zero-filled."""
        counts = {s.value: 0 for s in WebhookJobStatus}
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookJob.status, func.count()).group_by(WebhookJob.status)
            )
            for status, count in result.all():
                key = status.value if isinstance(status, WebhookJobStatus) else status
                counts[key] = count
        return counts

    async def _claim(self, job_id: str) -> WebhookJob | None:
        """
        Move a job from PENDING to PROCESSING in one conditional UPDATE.

        Returns None when another worker got there first.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                update(WebhookJob)
                .where(WebhookJob.id == job_id, WebhookJob.status == WebhookJobStatus.PENDING)
                .values(status=WebhookJobStatus.PROCESSING, claimed_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount != 1:
                return None
            return await db.get(WebhookJob, job_id)

    def _stale_claim_clause(self):
        cutoff = self.clock() - timedelta(seconds=self.stale_after)
        return and_(
            WebhookJob.status == WebhookJobStatus.PROCESSING,
            WebhookJob.claimed_at < cutoff,
        )

    async def _process_job(self, job_id: str) -> bool:
        """
        Claim and dispatch a single job.

        Returns:
            True if this call claimed the job, False if it was skipped
        """
        job = await self._claim(job_id)
        if job is None:
            self.log.debug("webhook_job_claim_skipped", job_id=job_id)
            return False

        log = self.log.bind(job_id=job.id, webhook_type=job.webhook_type, retry_count=job.retry_count)

        handler = self.handlers.get(job.webhook_type)
        if handler is None:
            error = UnknownWebhookTypeError(job.webhook_type)
            log.warning("webhook_type_unrecognized")
            await self._handle_processing_error(job, str(error), error, retryable=False)
            return True

        log.info("webhook_job_processing")
        started = time.monotonic()
        try:
            if self.job_timeout:
                await asyncio.wait_for(handler(job.payload), timeout=self.job_timeout)
            else:
                await handler(job.payload)
        except Exception as e:
            # A handler may raise TimeoutError itself; only the deadline gets the generic message
            elapsed = time.monotonic() - started
            if (
                isinstance(e, asyncio.TimeoutError)
                and self.job_timeout
                and elapsed >= self.job_timeout - TIMEOUT_TOLERANCE_SECONDS
            ):
                error_message = f"Handler timed out after {self.job_timeout}s"
            else:
                error_message = str(e) or type(e).__name__
            await self._handle_processing_error(job, error_message, e)
            return True

        duration = time.monotonic() - started
        if await self._transition(
            job.id,
            WebhookJobStatus.COMPLETED,
            processed_at=self.clock(),
        ):
            track_webhook_completed(job.webhook_type, duration)
            log.info("webhook_job_completed", duration_ms=round(duration * 1000, 2))
        else:
            log.warning("webhook_job_state_changed_during_processing")
        return True

    async def _handle_processing_error(
        self,
        job: WebhookJob,
        error_message: str,
        exc: BaseException | None = None,
        retryable: bool = True,
    ) -> None:
        """
        Record a failed attempt.

        The job goes back to PENDING for the next tick, or to FAILED once
        the retry budget is spent. There is no backoff beyond the polling
        interval.
        """
        new_retry_count = job.retry_count + 1
        exhausted = not retryable or new_retry_count >= self.max_retries
        new_status = WebhookJobStatus.FAILED if exhausted else WebhookJobStatus.PENDING

        await self._transition(
            job.id,
            new_status,
            retry_count=new_retry_count,
            last_error=error_message,
        )

        log = self.log.bind(
            job_id=job.id,
            webhook_type=job.webhook_type,
            retry_count=new_retry_count,
            max_retries=self.max_retries,
            error=error_message,
        )
        if exhausted:
            track_webhook_failed(job.webhook_type)
            log.error("webhook_job_failed")
            capture_exception(exc, webhook_job_id=job.id, webhook_type=job.webhook_type)
        else:
            track_webhook_retried(job.webhook_type)
            log.warning("webhook_job_will_retry")

    async def _transition(self, job_id: str, status: WebhookJobStatus, **values) -> bool:
        """Write the outcome of a dispatch; only applies to a PROCESSING job."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(WebhookJob)
                .where(WebhookJob.id == job_id, WebhookJob.status == WebhookJobStatus.PROCESSING)
                .values(status=status, **values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def _refresh_queue_depth(self) -> None:
        try:
            update_queue_depth(await self.count_by_status())
        except Exception:
            self.log.exception("webhook_queue_depth_refresh_failed")
