"""Send driver for campaign executions.

Walks a recipient list, dispatching one message per recipient with bounded
concurrency, and records every outcome on the execution as a +1 counter
delta. A failed recipient never stops the batch.
"""

import asyncio
import uuid
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import (
    DeliveryError,
    NoWorkingCredentialError,
    RelayError,
    ValidationError,
)
from app.db.session import AsyncSessionLocal
from app.models.campaign_execution import CampaignExecution, ExecutionStatus, ExecutionType
from app.services.campaign_execution_service import CampaignExecutionService
from app.services.messaging.base import Channel, OutboundMessage
from app.services.messaging.dispatcher import DeliveryDispatcher

logger = structlog.get_logger()


@dataclass(frozen=True)
class RecipientFailure:
    """Why one recipient's send failed."""

    to: str
    error_kind: str
    message: str


@dataclass
class RunSummary:
    """Outcome of one runner pass over a recipient list."""

    execution_id: uuid.UUID
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    unrecorded: int = 0
    final_status: str | None = None
    failures: list[RecipientFailure] = field(default_factory=list)


def _error_kind(error: Exception) -> str:
    if isinstance(error, DeliveryError):
        return error.kind.value
    if isinstance(error, NoWorkingCredentialError):
        return "no_working_credential"
    if isinstance(error, ValidationError):
        return "validation"
    return "unexpected"


class CampaignRunner:
    """Drives a campaign execution through its recipients."""

    def __init__(
        self,
        dispatcher: DeliveryDispatcher,
        execution_service: CampaignExecutionService | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        concurrency: int | None = None,
        send_interval: float | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            dispatcher: Sends individual messages
            execution_service: Records progress
            session_factory: Session factory (one session per progress update)
            concurrency: Max in-flight sends
            send_interval: Pause after each send (seconds)
        """
        self.dispatcher = dispatcher
        self.execution_service = execution_service or CampaignExecutionService()
        self.session_factory = session_factory or AsyncSessionLocal
        self.concurrency = (
            settings.CAMPAIGN_SEND_CONCURRENCY if concurrency is None else concurrency
        )
        if self.concurrency < 1:
            raise ValidationError("concurrency must be at least 1", field="concurrency")
        self.send_interval = (
            settings.CAMPAIGN_SEND_INTERVAL_SECONDS if send_interval is None else send_interval
        )
        self.logger = logger.bind(component="campaign_runner")

    async def trigger(
        self,
        campaign_id: uuid.UUID,
        recipients: Sequence[str],
        body: str,
        execution_type: ExecutionType | str = ExecutionType.IMMEDIATE,
        from_: str | None = None,
        channel: Channel = Channel.SMS,
        subject: str | None = None,
    ) -> tuple[CampaignExecution, RunSummary]:
        """Create an execution for the recipients and run it."""
        async with self.session_factory() as db:
            execution = await self.execution_service.create_execution(
                db, campaign_id, execution_type, target_count=len(recipients)
            )
        summary = await self.run(
            execution.id, recipients, body, from_=from_, channel=channel, subject=subject
        )
        async with self.session_factory() as db:
            execution = await self.execution_service.get_execution(db, execution.id)
        return execution, summary

    async def run(
        self,
        execution_id: uuid.UUID,
        recipients: Sequence[str],
        body: str,
        from_: str | None = None,
        channel: Channel = Channel.SMS,
        subject: str | None = None,
    ) -> RunSummary:
        """Send to every recipient and finish the execution.

        Stops dispatching early if the execution leaves ``running``
        (paused or finished elsewhere); in that case its status is left as is.
        Otherwise ends ``completed``, or ``failed`` when nothing could be sent.
        A failed progress write is logged and retried with the final update,
        so one recipient never stalls the rest of the batch.
        """
        log = self.logger.bind(execution_id=str(execution_id), recipients=len(recipients))
        summary = RunSummary(execution_id=execution_id)

        async with self.session_factory() as db:
            execution = await self.execution_service.update_execution_progress(
                db, execution_id, status=ExecutionStatus.RUNNING
            )
        if execution.status != ExecutionStatus.RUNNING.value:
            log.warning("execution_not_runnable", status=execution.status)
            summary.skipped = len(recipients)
            summary.final_status = execution.status
            return summary

        log.info("campaign_run_started", channel=channel.value)
        stop = asyncio.Event()
        semaphore = asyncio.Semaphore(self.concurrency)
        # Outcomes whose progress write failed; applied with the final update.
        unrecorded: Counter[str] = Counter()

        async def deliver(to: str) -> None:
            async with semaphore:
                if stop.is_set():
                    summary.skipped += 1
                    return
                summary.attempted += 1
                sent = await self._send_one(
                    OutboundMessage(
                        to=to, body=body, from_=from_, subject=subject, channel=channel
                    ),
                    summary,
                )
                try:
                    async with self.session_factory() as db:
                        current = await self.execution_service.update_execution_progress(
                            db,
                            execution_id,
                            sent_delta=1 if sent else 0,
                            failed_delta=0 if sent else 1,
                        )
                except Exception:
                    log.exception("progress_update_failed", to=to, sent=sent)
                    unrecorded["sent" if sent else "failed"] += 1
                else:
                    if current.status != ExecutionStatus.RUNNING.value:
                        stop.set()
                if self.send_interval:
                    await asyncio.sleep(self.send_interval)

        cancelled = False
        try:
            results = await asyncio.gather(
                *(deliver(to) for to in recipients), return_exceptions=True
            )
            for to, result in zip(recipients, results, strict=True):
                if isinstance(result, Exception):
                    log.error("recipient_delivery_crashed", to=to, error=str(result))
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            summary.unrecorded = sum(unrecorded.values())
            await self._finish(execution_id, summary, unrecorded, stop.is_set(), cancelled)
        return summary

    async def _finish(
        self,
        execution_id: uuid.UUID,
        summary: RunSummary,
        unrecorded: Counter[str],
        interrupted: bool,
        cancelled: bool,
    ) -> None:
        """Write the closing update, carrying any outcomes not yet recorded.

        An execution moved out of ``running`` elsewhere keeps its status.
        A cancelled run is paused so it can be resumed.
        """
        log = self.logger.bind(execution_id=str(execution_id))
        error_message = None
        if interrupted:
            final_status = None
        elif cancelled:
            final_status = ExecutionStatus.PAUSED
        elif summary.sent == 0 and summary.failed > 0:
            final_status = ExecutionStatus.FAILED
            error_message = f"All {summary.failed} sends failed"
            if summary.failures:
                error_message += f"; last error: {summary.failures[-1].message}"
        else:
            final_status = ExecutionStatus.COMPLETED

        async with self.session_factory() as db:
            if final_status is None and not unrecorded:
                execution = await self.execution_service.get_execution(db, execution_id)
            else:
                execution = await self.execution_service.update_execution_progress(
                    db,
                    execution_id,
                    sent_delta=unrecorded["sent"],
                    failed_delta=unrecorded["failed"],
                    status=final_status,
                    error_message=error_message,
                )
        summary.final_status = execution.status
        log.info(
            "campaign_run_interrupted" if final_status is None else "campaign_run_finished",
            status=execution.status,
            sent=summary.sent,
            failed=summary.failed,
            skipped=summary.skipped,
            unrecorded=summary.unrecorded,
        )

    async def _send_one(self, message: OutboundMessage, summary: RunSummary) -> bool:
        """Dispatch one message; failures are recorded, never raised."""
        try:
            await self.dispatcher.send(message)
        except RelayError as e:
            self.logger.warning(
                "recipient_send_failed", to=message.to, error_kind=_error_kind(e), error=e.message
            )
            summary.failed += 1
            summary.failures.append(
                RecipientFailure(to=message.to, error_kind=_error_kind(e), message=e.message)
            )
            return False
        except Exception as e:
            self.logger.exception("recipient_send_error", to=message.to)
            summary.failed += 1
            summary.failures.append(
                RecipientFailure(to=message.to, error_kind=_error_kind(e), message=str(e))
            )
            return False

        summary.sent += 1
        return True
