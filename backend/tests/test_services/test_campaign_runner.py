"""Tests for the campaign send driver."""

import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    CredentialAttempt,
    DeliveryError,
    DeliveryErrorKind,
    NoWorkingCredentialError,
    ValidationError,
)
from app.models.campaign_execution import ExecutionStatus
from app.services.campaign_execution_service import CampaignExecutionService
from app.services.campaign_runner import CampaignRunner
from app.services.messaging.base import Channel, DeliveryResult

RECIPIENTS = ["+15550000001", "+15550000002", "+15550000003", "+15550000004", "+15550000005"]


def _accepted(message) -> DeliveryResult:
    return DeliveryResult(
        provider="twilio",
        channel=Channel.SMS,
        to=message.to,
        from_="+15559990000",
        provider_message_id=f"SM{message.to[-4:]}",
        status="queued",
        auth_method="auth_token",
    )


@pytest.fixture
def execution_service():
    """Execution service shared by the runner and the assertions."""
    return CampaignExecutionService()


@pytest.fixture
def dispatcher():
    """Dispatcher stand-in that accepts every message."""
    mock = AsyncMock()
    mock.send.side_effect = _accepted
    return mock


@pytest.fixture
def runner(dispatcher, execution_service, session_factory):
    """Runner with no pacing delay."""
    return CampaignRunner(
        dispatcher,
        execution_service=execution_service,
        session_factory=session_factory,
        concurrency=1,
        send_interval=0,
    )


async def _create(session_factory, execution_service, target_count=len(RECIPIENTS)):
    async with session_factory() as db:
        return await execution_service.create_execution(
            db, uuid.uuid4(), "immediate", target_count=target_count
        )


@pytest.mark.asyncio
async def test_partial_failures_still_complete(
    runner, dispatcher, execution_service, session_factory
):
    """Failed recipients are counted and the batch carries on."""
    failures = {
        RECIPIENTS[1]: DeliveryError(
            DeliveryErrorKind.PROVIDER_REJECTED, "Invalid 'To' number", status_code=400
        ),
        RECIPIENTS[3]: NoWorkingCredentialError(
            "twilio", [CredentialAttempt(method="auth_token", error="Authenticate")]
        ),
    }

    async def send(message):
        if message.to in failures:
            raise failures[message.to]
        return _accepted(message)

    dispatcher.send.side_effect = send
    execution = await _create(session_factory, execution_service)

    summary = await runner.run(execution.id, RECIPIENTS, "Spring sale")

    assert summary.sent == 3
    assert summary.failed == 2
    assert summary.final_status == ExecutionStatus.COMPLETED.value
    assert {f.error_kind for f in summary.failures} == {
        "provider_rejected",
        "no_working_credential",
    }
    assert dispatcher.send.await_count == 5

    async with session_factory() as db:
        final = await execution_service.get_execution(db, execution.id)
    assert final.sent_count == 3
    assert final.failed_count == 2
    assert final.status == ExecutionStatus.COMPLETED.value
    assert final.started_at is not None
    assert final.completed_at is not None


@pytest.mark.asyncio
async def test_nothing_sent_marks_execution_failed(
    runner, dispatcher, execution_service, session_factory
):
    """If every send fails the execution ends failed with the last error."""
    dispatcher.send.side_effect = DeliveryError(DeliveryErrorKind.TRANSPORT, "connect timeout")
    execution = await _create(session_factory, execution_service)

    summary = await runner.run(execution.id, RECIPIENTS[:2], "Hello")

    assert summary.final_status == ExecutionStatus.FAILED.value
    async with session_factory() as db:
        final = await execution_service.get_execution(db, execution.id)
    assert final.failed_count == 2
    assert final.sent_count == 0
    assert "connect timeout" in final.error_message


@pytest.mark.asyncio
async def test_pause_stops_dispatching(runner, dispatcher, execution_service, session_factory):
    """Pausing the execution mid-run leaves the rest of the recipients unsent."""
    execution = await _create(session_factory, execution_service)

    async def send(message):
        if message.to == RECIPIENTS[1]:
            async with session_factory() as db:
                await execution_service.update_execution_progress(
                    db, execution.id, status=ExecutionStatus.PAUSED
                )
        return _accepted(message)

    dispatcher.send.side_effect = send

    summary = await runner.run(execution.id, RECIPIENTS, "Hello")

    assert summary.sent == 2
    assert summary.skipped == 3
    assert summary.final_status == ExecutionStatus.PAUSED.value
    async with session_factory() as db:
        final = await execution_service.get_execution(db, execution.id)
    assert final.status == ExecutionStatus.PAUSED.value
    assert final.sent_count == 2


@pytest.mark.asyncio
async def test_finished_execution_is_not_rerun(
    runner, dispatcher, execution_service, session_factory
):
    """A terminal execution is left alone and nothing is sent."""
    execution = await _create(session_factory, execution_service)
    async with session_factory() as db:
        await execution_service.update_execution_progress(db, execution.id, status="failed")

    summary = await runner.run(execution.id, RECIPIENTS, "Hello")

    assert summary.final_status == ExecutionStatus.FAILED.value
    assert summary.skipped == len(RECIPIENTS)
    dispatcher.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_trigger_creates_and_runs(dispatcher, execution_service, session_factory):
    """trigger() creates an execution sized to the recipient list."""
    runner = CampaignRunner(
        dispatcher,
        execution_service=execution_service,
        session_factory=session_factory,
        concurrency=3,
        send_interval=0,
    )
    campaign_id = uuid.uuid4()

    execution, summary = await runner.trigger(campaign_id, RECIPIENTS, "Hello")

    assert execution.campaign_id == campaign_id
    assert execution.target_count == len(RECIPIENTS)
    assert execution.sent_count == len(RECIPIENTS)
    assert execution.status == ExecutionStatus.COMPLETED.value
    assert execution.progress_percent == 100.0
    assert summary.sent == len(RECIPIENTS)


class FlakyExecutionService(CampaignExecutionService):
    """Execution service whose second per-recipient progress write fails."""

    def __init__(self):
        super().__init__()
        self.progress_writes = 0

    async def update_execution_progress(self, db, execution_id, sent_delta=0, **kwargs):
        if sent_delta and kwargs.get("status") is None:
            self.progress_writes += 1
            if self.progress_writes == 2:
                raise OperationalError("UPDATE campaign_executions", {}, Exception("locked"))
        return await super().update_execution_progress(
            db, execution_id, sent_delta=sent_delta, **kwargs
        )


@pytest.mark.asyncio
async def test_store_error_does_not_abort_batch(dispatcher, session_factory):
    """A failed progress write is carried into the final update and the run still completes."""
    execution_service = FlakyExecutionService()
    runner = CampaignRunner(
        dispatcher,
        execution_service=execution_service,
        session_factory=session_factory,
        concurrency=1,
        send_interval=0,
    )
    execution = await _create(session_factory, execution_service)

    summary = await runner.run(execution.id, RECIPIENTS, "Hello")

    assert dispatcher.send.await_count == len(RECIPIENTS)
    assert summary.sent == len(RECIPIENTS)
    assert summary.unrecorded == 1
    assert summary.final_status == ExecutionStatus.COMPLETED.value

    async with session_factory() as db:
        final = await execution_service.get_execution(db, execution.id)
    assert final.status == ExecutionStatus.COMPLETED.value
    assert final.sent_count == len(RECIPIENTS)
    assert final.failed_count == 0


@pytest.mark.asyncio
async def test_cancelled_run_is_paused(runner, dispatcher, execution_service, session_factory):
    """Cancelling the run mid-batch leaves the execution paused, not running."""
    execution = await _create(session_factory, execution_service)
    started = asyncio.Event()

    async def send(message):
        if message.to == RECIPIENTS[1]:
            started.set()
            await asyncio.Event().wait()
        return _accepted(message)

    dispatcher.send.side_effect = send

    task = asyncio.create_task(runner.run(execution.id, RECIPIENTS, "Hello"))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    async with session_factory() as db:
        final = await execution_service.get_execution(db, execution.id)
    assert final.status == ExecutionStatus.PAUSED.value
    assert final.sent_count == 1


def test_zero_concurrency_rejected(dispatcher, execution_service):
    """A runner that could never send is refused up front."""
    with pytest.raises(ValidationError):
        CampaignRunner(
            dispatcher,
            execution_service=execution_service,
            concurrency=0,
        )
