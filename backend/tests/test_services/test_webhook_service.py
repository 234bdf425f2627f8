"""Tests for webhook ingestion, status tracking, retry sweep and stats."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    RetryExhaustedError,
    ValidationError,
)
from app.db.base import utcnow
from app.models.webhook_event import WebhookEvent, WebhookStatus
from app.services.webhook_service import EXHAUSTED_SAMPLE_SIZE, WebhookService

BOUNCE_PAYLOAD = [
    {"email": "lead@example.com", "event": "bounce", "reason": "550 mailbox unavailable"}
]


@pytest.fixture
def service():
    """Webhook service with a retry ceiling of 3."""
    return WebhookService(max_retries=3, stats_days_back=30)


async def _set_retry_count(db, webhook_id: uuid.UUID, retry_count: int) -> None:
    await db.execute(
        update(WebhookEvent).where(WebhookEvent.id == webhook_id).values(retry_count=retry_count)
    )
    await db.commit()


@pytest.mark.asyncio
async def test_bounce_fails_then_retry_sweep_requeues(test_session, service):
    """received -> failed('timeout') -> sweep -> received with one retry and no error."""
    webhook = await service.log_webhook_event(test_session, "sendgrid", "bounce", BOUNCE_PAYLOAD)
    assert webhook.status == WebhookStatus.RECEIVED.value
    assert webhook.processed_at is None

    failed = await service.mark_failed(test_session, webhook.id, "timeout")
    assert failed.status == WebhookStatus.FAILED.value
    assert failed.error_message == "timeout"
    assert failed.processed_at is not None

    sweep = await service.retry_failed_webhooks(test_session, max_retries=3)

    assert sweep.retried == 1
    assert sweep.exhausted == 0
    retried = await test_session.get(WebhookEvent, webhook.id, populate_existing=True)
    assert retried.status == WebhookStatus.RECEIVED.value
    assert retried.retry_count == 1
    assert retried.error_message is None
    assert retried.processed_at is None
    assert retried.payload == BOUNCE_PAYLOAD


@pytest.mark.asyncio
async def test_sweep_excludes_and_counts_webhooks_at_ceiling(test_session, service):
    """Webhooks at the ceiling stay failed and are reported separately."""
    retryable = await service.log_webhook_event(test_session, "twilio", "undelivered", {"sid": "1"})
    exhausted = await service.log_webhook_event(test_session, "twilio", "undelivered", {"sid": "2"})
    processed = await service.log_webhook_event(test_session, "twilio", "delivered", {"sid": "3"})
    for webhook in (retryable, exhausted):
        await service.mark_failed(test_session, webhook.id, "handler error")
    await service.mark_processed(test_session, processed.id)
    await _set_retry_count(test_session, exhausted.id, 3)

    sweep = await service.retry_failed_webhooks(test_session)

    assert [r.webhook_id for r in sweep.results] == [retryable.id]
    assert sweep.exhausted_ids == [exhausted.id]
    error = sweep.exhausted_error()
    assert isinstance(error, RetryExhaustedError)
    assert error.max_retries == 3

    still_failed = await test_session.get(WebhookEvent, exhausted.id, populate_existing=True)
    assert still_failed.status == WebhookStatus.FAILED.value
    assert still_failed.retry_count == 3
    assert still_failed.error_message == "handler error"

    untouched = await test_session.get(WebhookEvent, processed.id, populate_existing=True)
    assert untouched.status == WebhookStatus.PROCESSED.value
    assert untouched.retry_count == 0


@pytest.mark.asyncio
async def test_retry_count_only_grows_through_the_sweep(test_session, service):
    """Repeated fail/sweep cycles stop at the ceiling."""
    webhook = await service.log_webhook_event(test_session, "segment", "track", {"event": "x"})

    for expected in (1, 2, 3):
        await service.mark_failed(test_session, webhook.id, f"attempt {expected}")
        sweep = await service.retry_failed_webhooks(test_session)
        assert sweep.retried == 1
        current = await test_session.get(WebhookEvent, webhook.id, populate_existing=True)
        assert current.retry_count == expected

    await service.mark_failed(test_session, webhook.id, "attempt 4")
    sweep = await service.retry_failed_webhooks(test_session)

    assert sweep.retried == 0
    assert sweep.exhausted == 1


@pytest.mark.asyncio
async def test_sweep_scoped_to_client(test_session, service):
    """A client-scoped sweep leaves other clients' webhooks alone."""
    mine = await service.log_webhook_event(test_session, "stripe", "charge.failed", {}, client_id="a")
    theirs = await service.log_webhook_event(
        test_session, "stripe", "charge.failed", {}, client_id="b"
    )
    await service.mark_failed(test_session, mine.id, "boom")
    await service.mark_failed(test_session, theirs.id, "boom")

    sweep = await service.retry_failed_webhooks(test_session, client_id="a")

    assert [r.webhook_id for r in sweep.results] == [mine.id]
    other = await test_session.get(WebhookEvent, theirs.id, populate_existing=True)
    assert other.status == WebhookStatus.FAILED.value


@pytest.mark.asyncio
async def test_duplicate_deliveries_are_stored_separately(test_session, service):
    """The same provider event delivered twice becomes two rows."""
    payload = {"MessageSid": "SM1", "MessageStatus": "delivered"}

    first = await service.log_webhook_event(test_session, "Twilio", "status", payload)
    second = await service.log_webhook_event(test_session, "twilio", "status", payload)

    assert first.id != second.id
    assert first.provider == second.provider == "twilio"
    assert len(await service.get_webhooks_by_event(test_session, "status")) == 2


@pytest.mark.asyncio
async def test_log_validation(test_session, service):
    """Unknown providers, blank event types and bad statuses are rejected."""
    with pytest.raises(ValidationError):
        await service.log_webhook_event(test_session, "myspace", "poke", {})
    with pytest.raises(ValidationError):
        await service.log_webhook_event(test_session, "sendgrid", " ", {})
    with pytest.raises(ValidationError):
        await service.log_webhook_event(test_session, "sendgrid", "open", {}, status="lost")


@pytest.mark.asyncio
async def test_log_with_initial_status(test_session, service):
    """A webhook logged already processed gets processed_at straight away."""
    webhook = await service.log_webhook_event(
        test_session, "slack", "message", {"text": "hi"}, status=WebhookStatus.PROCESSED
    )

    assert webhook.status == WebhookStatus.PROCESSED.value
    assert webhook.processed_at is not None


@pytest.mark.asyncio
async def test_status_update_rules(test_session, service):
    """Only received webhooks can be finished, and only as processed or failed."""
    webhook = await service.log_webhook_event(test_session, "nmi", "sale", {"amount": "10.00"})

    with pytest.raises(ValidationError):
        await service.update_webhook_status(test_session, webhook.id, "received")

    processed = await service.update_webhook_status(test_session, webhook.id, "processed")
    assert processed.processed_at is not None
    assert processed.error_message is None

    with pytest.raises(InvalidTransitionError):
        await service.mark_failed(test_session, webhook.id, "too late")

    with pytest.raises(NotFoundError):
        await service.mark_processed(test_session, uuid.uuid4())


@pytest.mark.asyncio
async def test_filtered_listing(test_session, service):
    """get_webhooks filters by envelope fields and date range, newest first."""
    bounce = await service.log_webhook_event(test_session, "sendgrid", "bounce", {})
    await service.log_webhook_event(test_session, "sendgrid", "open", {})
    newest = await service.log_webhook_event(test_session, "sendgrid", "bounce", {})
    await service.mark_failed(test_session, bounce.id, "parse error")

    bounces = await service.get_webhooks(test_session, provider="SendGrid", event_type="bounce")
    assert [w.id for w in bounces] == [newest.id, bounce.id]

    failed = await service.get_webhooks(test_session, status=WebhookStatus.FAILED)
    assert [w.id for w in failed] == [bounce.id]

    future = await service.get_webhooks(test_session, date_from=utcnow() + timedelta(days=1))
    assert future == []

    failed_list = await service.get_failed_webhooks(test_session, max_retries=3)
    assert [w.id for w in failed_list] == [bounce.id]


@pytest.mark.asyncio
async def test_webhook_stats(test_session, service):
    """Stats count by status and provider and report retry exhaustion."""
    ok = await service.log_webhook_event(test_session, "sendgrid", "delivered", {})
    bad = await service.log_webhook_event(test_session, "sendgrid", "bounce", {})
    await service.log_webhook_event(test_session, "twilio", "inbound", {})
    await service.mark_processed(test_session, ok.id)
    await service.mark_failed(test_session, bad.id, "timeout")
    await _set_retry_count(test_session, bad.id, 3)

    stats = await service.get_webhook_stats(test_session)

    assert stats.total == 3
    assert stats.by_status == {"processed": 1, "failed": 1, "received": 1}
    assert stats.by_provider == {"sendgrid": 2, "twilio": 1}
    assert stats.retry_exhausted == 1
    assert stats.avg_processing_seconds is not None
    assert stats.avg_processing_seconds >= 0
    assert stats.to_dict()["days_back"] == 30


@pytest.mark.asyncio
async def test_sweep_is_bounded_and_counts_exhausted_rows(test_session, service):
    """A sweep moves at most `limit` webhooks and only samples the exhausted ids."""
    retryable = []
    for n in range(3):
        webhook = await service.log_webhook_event(test_session, "twilio", "status", {"n": n})
        await service.mark_failed(test_session, webhook.id, "timeout")
        retryable.append(webhook.id)
    exhausted = []
    for n in range(EXHAUSTED_SAMPLE_SIZE + 5):
        webhook = await service.log_webhook_event(test_session, "twilio", "status", {"x": n})
        await service.mark_failed(test_session, webhook.id, "timeout")
        exhausted.append(webhook.id)
    await test_session.execute(
        update(WebhookEvent).where(WebhookEvent.id.in_(exhausted)).values(retry_count=3)
    )
    await test_session.commit()

    sweep = await service.retry_failed_webhooks(test_session, limit=2)

    assert sweep.retried == 2
    assert {r.webhook_id for r in sweep.results} <= set(retryable)
    assert sweep.exhausted == EXHAUSTED_SAMPLE_SIZE + 5
    assert len(sweep.exhausted_ids) == EXHAUSTED_SAMPLE_SIZE
    assert set(sweep.exhausted_ids) <= set(exhausted)
    assert sweep.exhausted_error().count == EXHAUSTED_SAMPLE_SIZE + 5

    next_sweep = await service.retry_failed_webhooks(test_session, limit=2)
    assert next_sweep.retried == 1


@pytest.mark.asyncio
async def test_listing_rejects_unknown_status(test_session, service):
    """An unknown status filter is a validation error, not a bare ValueError."""
    with pytest.raises(ValidationError):
        await service.get_webhooks(test_session, status="lost")


@pytest.mark.asyncio
async def test_zero_day_window_is_honoured(test_session, service):
    """An explicit zero-day window is not replaced by the default."""
    await service.log_webhook_event(test_session, "sendgrid", "open", {})

    stats = await service.get_webhook_stats(test_session, days_back=0)

    assert stats.days_back == 0
    assert WebhookService(stats_days_back=0).stats_days_back == 0
