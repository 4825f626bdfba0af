"""
Webhook queue processor.

Periodically drains PENDING webhook jobs and sweeps old completed ones.
Runs as a single asyncio task inside the API process.
"""
import asyncio

import structlog

from app.sentry_config import capture_exception
from app.services.webhook_queue import WebhookQueueService, RETENTION_DAYS

logger = structlog.get_logger()

PROCESSOR_INTERVAL_SECONDS = 30.0
CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60.0


class WebhookProcessor:
    """
    Timer that drives WebhookQueueService.process_pending.

    Ticks never overlap: the loop awaits each batch before sleeping again.
    stop() lets the current batch finish, then returns.
    """

    def __init__(
        self,
        queue: WebhookQueueService,
        interval_seconds: float = PROCESSOR_INTERVAL_SECONDS,
        cleanup_interval_seconds: float | None = CLEANUP_INTERVAL_SECONDS,
        retention_days: int = RETENTION_DAYS,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.retention_days = retention_days
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._last_cleanup: float | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "WebhookProcessor":
        """Start the background loop. Calling start() twice is a no-op."""
        if self.is_running:
            return self
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="webhook-processor")
        return self

    async def stop(self) -> None:
        """Signal the loop to exit and wait for it."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None

    async def tick(self) -> int:
        """Run one batch. Returns the number of jobs processed."""
        return await self.queue.process_pending()

    async def maybe_cleanup(self) -> int | None:
        """Run the retention sweep if its interval has elapsed."""
        if self.cleanup_interval_seconds is None:
            return None
        now = asyncio.get_running_loop().time()
        if self._last_cleanup is not None and now - self._last_cleanup < self.cleanup_interval_seconds:
            return None
        self._last_cleanup = now
        return await self.queue.cleanup(self.retention_days)

    async def _run(self) -> None:
        logger.info(
            "webhook_processor_started",
            interval_seconds=self.interval_seconds,
            cleanup_interval_seconds=self.cleanup_interval_seconds,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                    await self.maybe_cleanup()
                except Exception as e:
                    logger.exception("webhook_processor_iteration_failed")
                    capture_exception(e)

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("webhook_processor_stopped")


def start_processor(
    queue: WebhookQueueService,
    interval_seconds: float = PROCESSOR_INTERVAL_SECONDS,
    **kwargs,
) -> WebhookProcessor:
    """
    Start a processor for ``queue`` and return it as the cancellable handle.

    Must be called from a running event loop (e.g. the FastAPI lifespan).
    """
    return WebhookProcessor(queue, interval_seconds=interval_seconds, **kwargs).start()
