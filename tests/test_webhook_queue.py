"""Tests for the webhook queue state machine."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.exceptions import InvalidJobStateError, WebhookEnqueueError, WebhookJobNotFoundError
from app.models.webhook import WebhookJobStatus
from app.services.webhook_queue import WebhookQueueService


def days_ago(days: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


class RecordingHandler:
    """Handler stub that counts calls and fails while ``error`` is set."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.payloads = []

    async def __call__(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error

    @property
    def calls(self) -> int:
        return len(self.payloads)


class FakeClock:
    """Settable replacement for the queue clock."""

    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.mark.asyncio
async def test_enqueue_creates_pending_job(queue):
    job_id = await queue.enqueue("stripe", {"type": "invoice.paid", "data": {"amount": 500}})

    job = await queue.get_status(job_id)
    assert job is not None
    assert job.webhook_type == "stripe"
    assert job.status == WebhookJobStatus.PENDING
    assert job.retry_count == 0
    assert job.last_error is None
    assert job.processed_at is None
    assert job.payload == {"type": "invoice.paid", "data": {"amount": 500}}


@pytest.mark.asyncio
@pytest.mark.parametrize("webhook_type", ["", "   "])
async def test_enqueue_rejects_blank_type(queue, webhook_type):
    with pytest.raises(ValueError):
        await queue.enqueue(webhook_type, {})


@pytest.mark.asyncio
async def test_enqueue_propagates_persistence_failure(broken_session_factory, handlers):
    queue = WebhookQueueService(broken_session_factory, handlers)

    with pytest.raises(WebhookEnqueueError) as exc_info:
        await queue.enqueue("stripe", {"type": "invoice.paid"})

    assert exc_info.value.__cause__ is not None


@pytest.mark.asyncio
async def test_get_status_unknown_id_returns_none(queue):
    assert await queue.get_status("does-not-exist") is None


@pytest.mark.asyncio
async def test_process_pending_empty_queue_is_noop(queue):
    assert await queue.process_pending() == 0
    assert await queue.list_jobs() == []


@pytest.mark.asyncio
async def test_successful_stripe_job_completes_on_first_tick(queue, handlers):
    stripe = RecordingHandler()
    handlers.register("stripe", stripe)
    job_id = await queue.enqueue("stripe", {"type": "invoice.paid"})

    assert await queue.process_pending() == 1

    job = await queue.get_status(job_id)
    assert job.status == WebhookJobStatus.COMPLETED
    assert job.processed_at is not None
    assert job.retry_count == 0
    assert stripe.payloads == [{"type": "invoice.paid"}]

    # Completed jobs are not picked up again
    assert await queue.process_pending() == 0
    assert stripe.calls == 1


@pytest.mark.asyncio
async def test_failing_job_retries_then_fails_after_max_retries(queue, handlers):
    a2e = RecordingHandler(error=RuntimeError("timeout"))
    handlers.register("a2e", a2e)
    job_id = await queue.enqueue("a2e", {"event": "video.completed", "video_id": "v_1"})

    await queue.process_pending()
    job = await queue.get_status(job_id)
    assert job.status == WebhookJobStatus.PENDING
    assert job.retry_count == 1
    assert job.last_error == "timeout"

    await queue.process_pending()
    job = await queue.get_status(job_id)
    assert job.status == WebhookJobStatus.PENDING
    assert job.retry_count == 2

    await queue.process_pending()
    job = await queue.get_status(job_id)
    assert job.status == WebhookJobStatus.FAILED
    assert job.retry_count == 3
    assert job.last_error == "timeout"
    assert job.processed_at is None

    # No automatic retry once failed
    assert await queue.process_pending() == 0
    assert a2e.calls == 3
    assert (await queue.get_status(job_id)).retry_count == 3


@pytest.mark.asyncio
async def test_retry_count_never_decreases_across_ticks(queue, handlers):
    handlers.register("youtube", RecordingHandler(error=ValueError("quota exceeded")))
    job_id = await queue.enqueue("youtube", {"video": "abc"})

    seen = []
    for _ in range(5):
        await queue.process_pending()
        seen.append((await queue.get_status(job_id)).retry_count)

    assert seen == sorted(seen)
    assert seen[-1] == queue.max_retries


@pytest.mark.asyncio
async def test_custom_max_retries(session_factory, handlers):
    handlers.register("stripe", RecordingHandler(error=RuntimeError("down")))
    queue = WebhookQueueService(session_factory, handlers, max_retries=1)
    job_id = await queue.enqueue("stripe", {})

    await queue.process_pending()

    job = await queue.get_status(job_id)
    assert job.status == WebhookJobStatus.FAILED
    assert job.retry_count == 1


@pytest.mark.asyncio
async def test_unknown_webhook_type_fails_immediately(queue):
    job_id = await queue.enqueue("unknown_type", {})

    assert await queue.process_pending() == 1

    job = await queue.get_status(job_id)
    assert job.status == WebhookJobStatus.FAILED
    assert job.retry_count == 1
    assert job.last_error == "Unrecognized webhook type: unknown_type"

    assert await queue.process_pending() == 0


@pytest.mark.asyncio
async def test_exception_without_message_records_class_name(queue, handlers):
    handlers.register("stripe", RecordingHandler(error=RuntimeError()))
    job_id = await queue.enqueue("stripe", {})

    await queue.process_pending()

    assert (await queue.get_status(job_id)).last_error == "RuntimeError"


@pytest.mark.asyncio
async def test_handler_timeout_counts_as_failure(session_factory, handlers):
    async def slow_handler(payload):
        await asyncio.sleep(1)

    handlers.register("youtube", slow_handler)
    queue = WebhookQueueService(session_factory, handlers, job_timeout=0.05)
    job_id = await queue.enqueue("youtube", {})

    await queue.process_pending()

    job = await queue.get_status(job_id)
    assert job.status == WebhookJobStatus.PENDING
    assert job.retry_count == 1
    assert job.last_error == "Handler timed out after 0.05s"


@pytest.mark.asyncio
async def test_handler_raising_timeout_error_keeps_its_message(queue, handlers):
    handlers.register("a2e", RecordingHandler(error=TimeoutError("timeout")))
    job_id = await queue.enqueue("a2e", {"event": "video.completed"})

    await queue.process_pending()

    job = await queue.get_status(job_id)
    assert job.status == WebhookJobStatus.PENDING
    assert job.retry_count == 1
    assert job.last_error == "timeout"


@pytest.mark.asyncio
async def test_failing_job_does_not_block_rest_of_batch(queue, handlers):
    async def picky_handler(payload):
        if payload.get("broken"):
            raise KeyError("customer")

    handlers.register("stripe", picky_handler)
    bad_id = await queue.enqueue("stripe", {"broken": True})
    good_ids = [await queue.enqueue("stripe", {"n": i}) for i in range(3)]

    assert await queue.process_pending() == 4

    assert (await queue.get_status(bad_id)).status == WebhookJobStatus.PENDING
    for job_id in good_ids:
        assert (await queue.get_status(job_id)).status == WebhookJobStatus.COMPLETED


@pytest.mark.asyncio
async def test_process_pending_respects_batch_size(session_factory, handlers):
    stripe = RecordingHandler()
    handlers.register("stripe", stripe)
    queue = WebhookQueueService(session_factory, handlers, batch_size=10)
    for i in range(12):
        await queue.enqueue("stripe", {"n": i})

    assert await queue.process_pending() == 10
    assert await queue.process_pending() == 2
    assert await queue.process_pending() == 0
    assert stripe.calls == 12


@pytest.mark.asyncio
async def test_claimed_job_is_not_dispatched_again(queue, handlers, set_job_fields):
    stripe = RecordingHandler()
    handlers.register("stripe", stripe)
    job_id = await queue.enqueue("stripe", {})
    await set_job_fields(job_id, status=WebhookJobStatus.PROCESSING)

    assert await queue.process_pending() == 0
    assert await queue._process_job(job_id) is False
    assert stripe.calls == 0


@pytest.mark.asyncio
async def test_overlapping_ticks_dispatch_each_job_once(queue, handlers):
    calls = []

    async def slow_handler(payload):
        calls.append(payload["n"])
        await asyncio.sleep(0.01)

    handlers.register("stripe", slow_handler)
    for i in range(5):
        await queue.enqueue("stripe", {"n": i})

    results = await asyncio.gather(queue.process_pending(), queue.process_pending())

    assert sum(results) == 5
    assert sorted(calls) == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_process_pending_swallows_batch_errors(broken_session_factory, handlers):
    queue = WebhookQueueService(broken_session_factory, handlers)

    assert await queue.process_pending() == 0


@pytest.mark.asyncio
async def test_retry_failed_resets_and_processes_immediately(queue, handlers):
    a2e = RecordingHandler(error=RuntimeError("timeout"))
    handlers.register("a2e", a2e)
    job_id = await queue.enqueue("a2e", {"event": "avatar.ready"})
    for _ in range(3):
        await queue.process_pending()
    assert (await queue.get_status(job_id)).status == WebhookJobStatus.FAILED

    a2e.error = None
    job = await queue.retry_failed(job_id)

    assert a2e.calls == 4
    assert job.status == WebhookJobStatus.COMPLETED
    assert job.retry_count == 0
    assert job.last_error is None
    assert job.processed_at is not None


@pytest.mark.asyncio
async def test_retry_failed_with_persistent_error_starts_a_fresh_budget(queue, handlers):
    a2e = RecordingHandler(error=RuntimeError("timeout"))
    handlers.register("a2e", a2e)
    job_id = await queue.enqueue("a2e", {})
    for _ in range(3):
        await queue.process_pending()

    job = await queue.retry_failed(job_id)

    assert job.status == WebhookJobStatus.PENDING
    assert job.retry_count == 1
    assert job.last_error == "timeout"
    assert a2e.calls == 4


@pytest.mark.asyncio
async def test_retry_failed_unknown_job_raises(queue):
    with pytest.raises(WebhookJobNotFoundError):
        await queue.retry_failed("missing-id")


@pytest.mark.asyncio
async def test_retry_failed_rejects_completed_job(queue):
    job_id = await queue.enqueue("stripe", {"type": "invoice.paid"})
    await queue.process_pending()

    with pytest.raises(InvalidJobStateError):
        await queue.retry_failed(job_id)

    assert (await queue.get_status(job_id)).status == WebhookJobStatus.COMPLETED


@pytest.mark.asyncio
async def test_retry_failed_rejects_processing_job(queue, set_job_fields):
    job_id = await queue.enqueue("stripe", {})
    await set_job_fields(job_id, status=WebhookJobStatus.PROCESSING)

    with pytest.raises(InvalidJobStateError):
        await queue.retry_failed(job_id)


@pytest.mark.asyncio
async def test_job_stranded_by_failed_outcome_write_is_recovered(session_factory, handlers, monkeypatch):
    clock = FakeClock()
    stripe = RecordingHandler()
    handlers.register("stripe", stripe)
    queue = WebhookQueueService(session_factory, handlers, job_timeout=5.0, stale_after=30, clock=clock)
    job_id = await queue.enqueue("stripe", {"type": "invoice.paid"})

    real_transition = queue._transition
    transitions = []

    async def transition_failing_once(*args, **kwargs):
        transitions.append(args)
        if len(transitions) == 1:
            raise OSError("connection reset")
        return await real_transition(*args, **kwargs)

    monkeypatch.setattr(queue, "_transition", transition_failing_once)

    assert await queue.process_pending() == 0
    job = await queue.get_status(job_id)
    assert job.status == WebhookJobStatus.PROCESSING
    assert job.claimed_at is not None

    # Claim still fresh: left alone
    assert await queue.process_pending() == 0
    assert (await queue.get_status(job_id)).status == WebhookJobStatus.PROCESSING
    assert stripe.calls == 1

    clock.advance(seconds=31)
    assert await queue.process_pending() == 1

    job = await queue.get_status(job_id)
    assert job.status == WebhookJobStatus.COMPLETED
    assert job.retry_count == 1
    assert job.processed_at is not None
    assert stripe.calls == 2


@pytest.mark.asyncio
async def test_requeue_stale_fails_job_with_spent_budget(session_factory, handlers, set_job_fields):
    clock = FakeClock()
    queue = WebhookQueueService(session_factory, handlers, stale_after=30, clock=clock)
    stale_id = await queue.enqueue("stripe", {"n": 1})
    fresh_id = await queue.enqueue("stripe", {"n": 2})
    await set_job_fields(
        stale_id,
        status=WebhookJobStatus.PROCESSING,
        retry_count=2,
        claimed_at=clock() - timedelta(minutes=5),
    )
    await set_job_fields(fresh_id, status=WebhookJobStatus.PROCESSING, claimed_at=clock())

    assert await queue.requeue_stale() == 1

    stale = await queue.get_status(stale_id)
    assert stale.status == WebhookJobStatus.FAILED
    assert stale.retry_count == 3
    assert stale.last_error == "Processing claim expired before the outcome was recorded"
    assert (await queue.get_status(fresh_id)).status == WebhookJobStatus.PROCESSING


@pytest.mark.asyncio
async def test_retry_failed_resets_processing_job_once_claim_expires(session_factory, handlers, set_job_fields):
    clock = FakeClock()
    stripe = RecordingHandler()
    handlers.register("stripe", stripe)
    queue = WebhookQueueService(session_factory, handlers, stale_after=30, clock=clock)
    job_id = await queue.enqueue("stripe", {})
    await set_job_fields(job_id, status=WebhookJobStatus.PROCESSING, retry_count=1, claimed_at=clock())

    with pytest.raises(InvalidJobStateError):
        await queue.retry_failed(job_id)

    clock.advance(seconds=31)
    job = await queue.retry_failed(job_id)

    assert job.status == WebhookJobStatus.COMPLETED
    assert job.retry_count == 0
    assert stripe.calls == 1


@pytest.mark.asyncio
async def test_stale_after_defaults_to_job_timeout_plus_margin(session_factory, handlers):
    assert WebhookQueueService(session_factory, handlers, job_timeout=5.0).stale_after == 65.0
    assert WebhookQueueService(session_factory, handlers, job_timeout=None).stale_after == 120.0
    with pytest.raises(ValueError):
        WebhookQueueService(session_factory, handlers, stale_after=0)


@pytest.mark.asyncio
async def test_cleanup_removes_only_old_completed_jobs(queue, set_job_fields):
    old_completed = await queue.enqueue("stripe", {"n": 1})
    new_completed = await queue.enqueue("stripe", {"n": 2})
    old_failed = await queue.enqueue("stripe", {"n": 3})
    old_pending = await queue.enqueue("stripe", {"n": 4})
    old_processing = await queue.enqueue("stripe", {"n": 5})

    await set_job_fields(old_completed, status=WebhookJobStatus.COMPLETED, processed_at=days_ago(40))
    await set_job_fields(new_completed, status=WebhookJobStatus.COMPLETED, processed_at=days_ago(5))
    await set_job_fields(old_failed, status=WebhookJobStatus.FAILED, retry_count=3, created_at=days_ago(90))
    await set_job_fields(old_pending, created_at=days_ago(90))
    await set_job_fields(old_processing, status=WebhookJobStatus.PROCESSING, created_at=days_ago(90))

    assert await queue.cleanup(30) == 1

    assert await queue.get_status(old_completed) is None
    for job_id in (new_completed, old_failed, old_pending, old_processing):
        assert await queue.get_status(job_id) is not None


@pytest.mark.asyncio
async def test_cleanup_with_nothing_to_delete(queue):
    await queue.enqueue("stripe", {})
    assert await queue.cleanup() == 0


@pytest.mark.asyncio
async def test_cleanup_rejects_negative_days(queue):
    with pytest.raises(ValueError):
        await queue.cleanup(-1)


@pytest.mark.asyncio
async def test_count_by_status_is_zero_filled(queue):
    await queue.enqueue("stripe", {})
    await queue.enqueue("unknown_type", {})
    await queue.process_pending()
    await queue.enqueue("youtube", {})

    counts = await queue.count_by_status()

    assert counts == {"pending": 1, "processing": 0, "completed": 1, "failed": 1}


@pytest.mark.asyncio
async def test_list_jobs_filters(queue):
    await queue.enqueue("stripe", {})
    await queue.enqueue("youtube", {})
    await queue.enqueue("nope", {})
    await queue.process_pending()

    failed = await queue.list_jobs(status=WebhookJobStatus.FAILED)
    assert [j.webhook_type for j in failed] == ["nope"]

    youtube = await queue.list_jobs(webhook_type="youtube")
    assert len(youtube) == 1
    assert youtube[0].status == WebhookJobStatus.COMPLETED

    assert len(await queue.list_jobs(limit=2)) == 2


def test_constructor_validates_limits(session_factory, handlers):
    with pytest.raises(ValueError):
        WebhookQueueService(session_factory, handlers, max_retries=0)
    with pytest.raises(ValueError):
        WebhookQueueService(session_factory, handlers, batch_size=0)
