"""Periodic progress notifications.

Keeps an in-memory progress snapshot and, while scheduled, sends a summary
of it (plus campaign execution totals) to one recipient on a fixed
interval. Only one schedule exists per notifier; the snapshot and schedule
are lost on restart.
"""

import asyncio
import contextlib
from dataclasses import dataclass, field, replace
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import ValidationError
from app.db.base import utcnow
from app.db.session import AsyncSessionLocal
from app.services.campaign_execution_service import CampaignExecutionService, ExecutionStats
from app.services.messaging.base import Channel, DeliveryResult, OutboundMessage
from app.services.messaging.dispatcher import DeliveryDispatcher
from app.services.messaging.twilio_provider import MAX_SMS_BODY_LENGTH

logger = structlog.get_logger()

RECENT_TASKS_SHOWN = 3


@dataclass
class ProgressSnapshot:
    """What the next notification reports."""

    url: str | None = None
    completed_tasks: list[str] = field(default_factory=list)
    current_task: str | None = None
    remaining_tasks: int = 0
    estimated_time_remaining: str | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def total_tasks(self) -> int:
        """Completed plus remaining."""
        return len(self.completed_tasks) + self.remaining_tasks

    @property
    def percent_complete(self) -> int:
        """Whole-number share of tasks completed; 0 when there are none."""
        total = self.total_tasks
        if total == 0:
            return 0
        return round(len(self.completed_tasks) / total * 100)

    def to_dict(self) -> dict[str, object]:
        """Plain dict for logs and API responses."""
        return {
            "url": self.url,
            "completed_tasks": list(self.completed_tasks),
            "current_task": self.current_task,
            "remaining_tasks": self.remaining_tasks,
            "estimated_time_remaining": self.estimated_time_remaining,
            "percent_complete": self.percent_complete,
            "updated_at": self.updated_at.isoformat(),
        }


class SchedulerHandle:
    """The single running periodic task of a notifier."""

    def __init__(self, task: asyncio.Task[None], recipient: str, interval: float) -> None:
        self._task = task
        self.recipient = recipient
        self.interval = interval

    @property
    def active(self) -> bool:
        """True until the scheduled task finishes or is cancelled."""
        return not self._task.done()

    def cancel(self) -> None:
        """Request cancellation without waiting for it."""
        self._task.cancel()

    async def wait_closed(self) -> None:
        """Wait until the cancelled task has unwound."""
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class ProgressNotifier:
    """Sends progress summaries on a fixed interval."""

    def __init__(
        self,
        dispatcher: DeliveryDispatcher,
        execution_service: CampaignExecutionService | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        recipient: str | None = None,
        interval: float | None = None,
        url: str | None = None,
        channel: Channel = Channel.SMS,
    ) -> None:
        """Initialize the notifier.

        Args:
            dispatcher: Sends the notification messages
            execution_service: Source of execution totals
            session_factory: Session factory for the totals query
            recipient: Default recipient (phone number or email)
            interval: Seconds between notifications
            url: Link included in every notification
            channel: Channel used for notifications
        """
        self.dispatcher = dispatcher
        self.execution_service = execution_service or CampaignExecutionService()
        self.session_factory = session_factory or AsyncSessionLocal
        self.recipient = recipient or settings.PROGRESS_NOTIFY_RECIPIENT
        self.interval = (
            settings.PROGRESS_NOTIFY_INTERVAL_SECONDS if interval is None else interval
        )
        self.channel = channel
        self.logger = logger.bind(component="progress_notifier")
        self._snapshot = ProgressSnapshot(url=url or settings.PROGRESS_NOTIFY_URL)
        self._handle: SchedulerHandle | None = None
        self._lock = asyncio.Lock()

    @property
    def handle(self) -> SchedulerHandle | None:
        """The current schedule, if one was started."""
        return self._handle

    @property
    def is_running(self) -> bool:
        """Whether a schedule is active."""
        return self._handle is not None and self._handle.active

    def update_progress(
        self,
        completed_task: str | None = None,
        current_task: str | None = None,
        remaining_tasks: int | None = None,
        estimated_time: str | None = None,
        url: str | None = None,
    ) -> ProgressSnapshot:
        """Merge new progress into the snapshot; omitted fields are kept."""
        if remaining_tasks is not None and remaining_tasks < 0:
            raise ValidationError("Remaining tasks cannot be negative", field="remaining_tasks")

        snapshot = self._snapshot
        if completed_task:
            snapshot.completed_tasks.append(completed_task)
        if current_task:
            snapshot.current_task = current_task
        if remaining_tasks is not None:
            snapshot.remaining_tasks = remaining_tasks
        if estimated_time:
            snapshot.estimated_time_remaining = estimated_time
        if url:
            snapshot.url = url
        snapshot.updated_at = utcnow()
        return self.get_progress()

    def get_progress(self) -> ProgressSnapshot:
        """Copy of the current snapshot."""
        return replace(self._snapshot, completed_tasks=list(self._snapshot.completed_tasks))

    async def start(
        self, recipient: str | None = None, interval: float | None = None
    ) -> SchedulerHandle:
        """Send one notification now, then schedule the rest.

        A schedule that is already running is cancelled first.

        Raises:
            ValidationError: If no recipient is configured
        """
        recipient = (recipient or self.recipient or "").strip()
        if not recipient:
            raise ValidationError("Progress notification recipient is required", field="recipient")
        interval = self.interval if interval is None else interval
        if interval <= 0:
            raise ValidationError("Notification interval must be positive", field="interval")

        async with self._lock:
            await self._cancel_handle()

            await self.tick(recipient)

            task = asyncio.create_task(self._run_schedule(recipient, interval))
            self._handle = SchedulerHandle(task, recipient, interval)

        self.logger.info("progress_notifications_started", recipient=recipient, interval=interval)
        return self._handle

    async def stop(self) -> bool:
        """Cancel the schedule. Safe to call when nothing is scheduled.

        Returns:
            True if a schedule was cancelled
        """
        async with self._lock:
            stopped = await self._cancel_handle()
        if stopped:
            self.logger.info("progress_notifications_stopped")
        return stopped

    async def _cancel_handle(self) -> bool:
        handle = self._handle
        if handle is None:
            return False
        # Detach before awaiting so no caller ever sees the old handle.
        self._handle = None
        handle.cancel()
        await handle.wait_closed()
        return True

    async def _run_schedule(self, recipient: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.tick(recipient)

    async def tick(self, recipient: str | None = None) -> DeliveryResult | None:
        """Compose and send one notification.

        Failures are logged and swallowed so the schedule keeps going.
        """
        recipient = recipient or self.recipient
        try:
            body = await self.compose_message()
            result = await self.dispatcher.send(
                OutboundMessage(
                    to=recipient,
                    body=body,
                    subject="Campaign progress update",
                    channel=self.channel,
                )
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.exception("progress_notification_failed", recipient=recipient, error=str(e))
            return None

        self.logger.info(
            "progress_notification_sent",
            recipient=recipient,
            percent_complete=self._snapshot.percent_complete,
            message_id=result.provider_message_id,
        )
        return result

    async def compose_message(self) -> str:
        """Render the snapshot and execution totals as message text."""
        snapshot = self.get_progress()
        async with self.session_factory() as db:
            stats = await self.execution_service.get_execution_stats(db)

        body = render_progress(snapshot, stats)
        if self.channel == Channel.SMS and len(body) > MAX_SMS_BODY_LENGTH:
            body = body[: MAX_SMS_BODY_LENGTH - 3] + "..."
        return body


def render_progress(snapshot: ProgressSnapshot, stats: ExecutionStats) -> str:
    """Plain-text progress summary."""
    recent = snapshot.completed_tasks[-RECENT_TASKS_SHOWN:]
    lines = [
        "CAMPAIGN PROGRESS UPDATE",
        "",
        f"Progress: {snapshot.percent_complete}% complete "
        f"({len(snapshot.completed_tasks)}/{snapshot.total_tasks})",
        "",
        "Recently completed:",
    ]
    if recent:
        lines.extend(f"- {task}" for task in recent)
    else:
        lines.append("- Nothing yet")
    lines += [
        "",
        "Currently working on:",
        snapshot.current_task or "Idle",
        "",
        f"Est. time remaining: {snapshot.estimated_time_remaining or 'unknown'}",
        "",
        f"Executions: {stats.running} running, {stats.paused} paused, "
        f"{stats.completed} completed, {stats.failed} failed",
        f"Messages: {stats.total_sent} sent, {stats.total_failed} failed",
    ]
    if snapshot.url:
        lines += ["", snapshot.url]
    return "\n".join(lines)
