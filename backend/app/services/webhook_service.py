"""Webhook ingestion, status tracking and retry sweep.

Every inbound provider callback is stored as its own row, duplicates
included, and rows are never deleted. Processing moves a webhook from
``received`` to ``processed`` or ``failed``; the retry sweep moves
``failed`` webhooks back to ``received`` while they are under the retry
ceiling. The sweep only marks eligibility; the next processing pass does
the redelivery.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    RetryExhaustedError,
    ValidationError,
)
from app.db.base import utcnow
from app.models.webhook_event import WebhookEvent, WebhookStatus

logger = structlog.get_logger()

DEFAULT_LIST_LIMIT = 100
EXHAUSTED_SAMPLE_SIZE = 20
_TERMINAL_FOR_ATTEMPT = (WebhookStatus.PROCESSED, WebhookStatus.FAILED)


def _coerce_status(status: WebhookStatus | str) -> WebhookStatus:
    try:
        return WebhookStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown webhook status: {status!r}", field="status") from None


@dataclass
class RetryItemResult:
    """Outcome of moving one failed webhook back to received."""

    webhook_id: uuid.UUID
    success: bool
    retry_count: int
    error: str | None = None


@dataclass
class RetrySweepResult:
    """What a retry sweep did."""

    max_retries: int
    results: list[RetryItemResult] = field(default_factory=list)
    exhausted: int = 0
    # Oldest exhausted webhooks, at most EXHAUSTED_SAMPLE_SIZE of them.
    exhausted_ids: list[uuid.UUID] = field(default_factory=list)

    @property
    def retried(self) -> int:
        """Webhooks moved back to received."""
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        """Retry transitions that did not apply."""
        return sum(1 for r in self.results if not r.success)

    def exhausted_error(self) -> RetryExhaustedError | None:
        """Error describing the webhooks at the ceiling, if any."""
        if not self.exhausted:
            return None
        return RetryExhaustedError(self.exhausted_ids, self.max_retries, count=self.exhausted)

    def to_dict(self) -> dict[str, Any]:
        """Summary for logs and API responses."""
        return {
            "max_retries": self.max_retries,
            "retried": self.retried,
            "failed": self.failed,
            "exhausted": self.exhausted,
            "results": [
                {
                    "webhook_id": str(r.webhook_id),
                    "success": r.success,
                    "retry_count": r.retry_count,
                    "error": r.error,
                }
                for r in self.results
            ],
        }


@dataclass
class WebhookStats:
    """Counts and processing latency over a lookback window."""

    days_back: int
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_provider: dict[str, int] = field(default_factory=dict)
    retry_exhausted: int = 0
    avg_processing_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Plain dict for API responses."""
        return {
            "days_back": self.days_back,
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_provider": dict(self.by_provider),
            "retry_exhausted": self.retry_exhausted,
            "avg_processing_seconds": self.avg_processing_seconds,
        }


class WebhookService:
    """Record and manage inbound provider webhooks."""

    def __init__(
        self,
        allowed_providers: list[str] | None = None,
        max_retries: int | None = None,
        stats_days_back: int | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            allowed_providers: Known provider tags (defaults to settings)
            max_retries: Default retry ceiling for sweeps
            stats_days_back: Default stats lookback window in days
        """
        providers = (
            settings.WEBHOOK_ALLOWED_PROVIDERS if allowed_providers is None else allowed_providers
        )
        self.allowed_providers = frozenset(p.lower() for p in providers)
        self.max_retries = settings.WEBHOOK_MAX_RETRIES if max_retries is None else max_retries
        self.stats_days_back = (
            settings.WEBHOOK_STATS_DAYS_BACK if stats_days_back is None else stats_days_back
        )
        self.logger = logger.bind(component="webhooks")

    async def log_webhook_event(
        self,
        db: AsyncSession,
        provider: str,
        event_type: str,
        payload: Any,
        client_id: str | None = None,
        status: WebhookStatus | str = WebhookStatus.RECEIVED,
    ) -> WebhookEvent:
        """Store an inbound callback.

        Redeliveries of the same provider event become new rows.

        Raises:
            ValidationError: Unknown provider tag, missing event type,
                or unknown initial status
        """
        provider_tag = (provider or "").strip().lower()
        if not provider_tag:
            raise ValidationError("Provider is required", field="provider")
        if provider_tag not in self.allowed_providers:
            raise ValidationError(f"Unknown webhook provider: {provider!r}", field="provider")
        if not event_type or not event_type.strip():
            raise ValidationError("Event type is required", field="event_type")
        initial = _coerce_status(status)

        now = utcnow()
        webhook = WebhookEvent(
            id=uuid.uuid4(),
            client_id=client_id,
            provider=provider_tag,
            event_type=event_type.strip(),
            payload=payload if payload is not None else {},
            status=initial.value,
            retry_count=0,
            created_at=now,
            processed_at=None if initial == WebhookStatus.RECEIVED else now,
        )
        db.add(webhook)
        await db.commit()

        self.logger.info(
            "webhook_logged",
            webhook_id=str(webhook.id),
            provider=provider_tag,
            event_type=webhook.event_type,
            status=initial.value,
        )
        return webhook

    async def update_webhook_status(
        self,
        db: AsyncSession,
        webhook_id: uuid.UUID,
        status: WebhookStatus | str,
        error_message: str | None = None,
    ) -> WebhookEvent:
        """Finish a processing attempt as processed or failed.

        Sets ``processed_at``. Only ``received`` webhooks can be finished;
        moving back to ``received`` is the retry sweep's job.

        Raises:
            ValidationError: Status other than processed/failed
            InvalidTransitionError: Webhook is not currently received
            NotFoundError: No such webhook
        """
        target = _coerce_status(status)
        if target not in _TERMINAL_FOR_ATTEMPT:
            raise ValidationError(
                "Webhook status can only be set to processed or failed; use the retry sweep",
                field="status",
            )

        values: dict[str, Any] = {
            "status": target.value,
            "processed_at": utcnow(),
            "error_message": error_message if target == WebhookStatus.FAILED else None,
        }
        result = await db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == webhook_id,
                WebhookEvent.status == WebhookStatus.RECEIVED.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if not result.rowcount:
            current = await db.scalar(select(WebhookEvent.status).where(WebhookEvent.id == webhook_id))
            # No row changed. rollback() would expire the caller's loaded objects.
            await db.commit()
            if current is None:
                raise NotFoundError("Webhook", webhook_id)
            raise InvalidTransitionError("Webhook", webhook_id, current, target.value)

        await db.commit()
        webhook = await db.get(WebhookEvent, webhook_id, populate_existing=True)
        if webhook is None:
            raise NotFoundError("Webhook", webhook_id)

        log = self.logger.bind(webhook_id=str(webhook_id), provider=webhook.provider)
        if target == WebhookStatus.FAILED:
            log.warning("webhook_failed", error=error_message, retry_count=webhook.retry_count)
        else:
            log.info("webhook_processed")
        return webhook

    async def mark_processed(self, db: AsyncSession, webhook_id: uuid.UUID) -> WebhookEvent:
        """Mark a received webhook processed."""
        return await self.update_webhook_status(db, webhook_id, WebhookStatus.PROCESSED)

    async def mark_failed(
        self, db: AsyncSession, webhook_id: uuid.UUID, error_message: str
    ) -> WebhookEvent:
        """Mark a received webhook failed with a reason."""
        return await self.update_webhook_status(
            db, webhook_id, WebhookStatus.FAILED, error_message=error_message
        )

    async def get_webhook(self, db: AsyncSession, webhook_id: uuid.UUID) -> WebhookEvent:
        """Fetch one webhook.

        Raises:
            NotFoundError: No such webhook
        """
        webhook = await db.get(WebhookEvent, webhook_id)
        if webhook is None:
            raise NotFoundError("Webhook", webhook_id)
        return webhook

    async def get_webhooks(
        self,
        db: AsyncSession,
        provider: str | None = None,
        event_type: str | None = None,
        status: WebhookStatus | str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        client_id: str | None = None,
        limit: int | None = None,
    ) -> list[WebhookEvent]:
        """Filtered listing, newest first."""
        stmt = select(WebhookEvent)
        if provider:
            stmt = stmt.where(WebhookEvent.provider == provider.lower())
        if event_type:
            stmt = stmt.where(WebhookEvent.event_type == event_type)
        if status:
            stmt = stmt.where(WebhookEvent.status == _coerce_status(status).value)
        if date_from is not None:
            stmt = stmt.where(WebhookEvent.created_at >= date_from)
        if date_to is not None:
            stmt = stmt.where(WebhookEvent.created_at <= date_to)
        if client_id is not None:
            stmt = stmt.where(WebhookEvent.client_id == client_id)
        stmt = stmt.order_by(WebhookEvent.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def get_webhooks_by_event(
        self,
        db: AsyncSession,
        event_type: str,
        provider: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[WebhookEvent]:
        """Webhooks of one event type, newest first."""
        return await self.get_webhooks(db, provider=provider, event_type=event_type, limit=limit)

    async def get_failed_webhooks(
        self,
        db: AsyncSession,
        client_id: str | None = None,
        max_retries: int | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[WebhookEvent]:
        """Failed webhooks, newest first; only retryable ones when a ceiling is given."""
        stmt = select(WebhookEvent).where(WebhookEvent.status == WebhookStatus.FAILED.value)
        if client_id is not None:
            stmt = stmt.where(WebhookEvent.client_id == client_id)
        if max_retries is not None:
            stmt = stmt.where(WebhookEvent.retry_count < max_retries)
        stmt = stmt.order_by(WebhookEvent.created_at.desc()).limit(limit)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def retry_failed_webhooks(
        self,
        db: AsyncSession,
        max_retries: int | None = None,
        client_id: str | None = None,
        limit: int | None = None,
    ) -> RetrySweepResult:
        """Move retryable failed webhooks back to received.

        Each eligible webhook gets ``retry_count + 1`` and its error cleared.
        At most ``limit`` webhooks are moved per sweep, oldest first.
        Webhooks already at the ceiling are left alone; the sweep only
        counts them and samples the oldest ids.
        """
        ceiling = self.max_retries if max_retries is None else max_retries
        if ceiling < 0:
            raise ValidationError("max_retries cannot be negative", field="max_retries")
        batch = settings.WEBHOOK_BATCH_SIZE if limit is None else limit
        if batch < 1:
            raise ValidationError("limit must be at least 1", field="limit")

        scope = [WebhookEvent.status == WebhookStatus.FAILED.value]
        if client_id is not None:
            scope.append(WebhookEvent.client_id == client_id)

        sweep = RetrySweepResult(max_retries=ceiling)
        sweep.exhausted = (
            await db.scalar(
                select(func.count())
                .select_from(WebhookEvent)
                .where(*scope, WebhookEvent.retry_count >= ceiling)
            )
            or 0
        )
        if sweep.exhausted:
            sample = await db.execute(
                select(WebhookEvent.id)
                .where(*scope, WebhookEvent.retry_count >= ceiling)
                .order_by(WebhookEvent.created_at)
                .limit(EXHAUSTED_SAMPLE_SIZE)
            )
            sweep.exhausted_ids = list(sample.scalars().all())

        rows = (
            await db.execute(
                select(WebhookEvent.id, WebhookEvent.retry_count)
                .where(*scope, WebhookEvent.retry_count < ceiling)
                .order_by(WebhookEvent.created_at)
                .limit(batch)
            )
        ).all()

        for webhook_id, retry_count in rows:
            result = await db.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == webhook_id,
                    WebhookEvent.status == WebhookStatus.FAILED.value,
                    WebhookEvent.retry_count < ceiling,
                )
                .values(
                    status=WebhookStatus.RECEIVED.value,
                    retry_count=WebhookEvent.retry_count + 1,
                    error_message=None,
                    processed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                sweep.results.append(
                    RetryItemResult(webhook_id=webhook_id, success=True, retry_count=retry_count + 1)
                )
            else:
                sweep.results.append(
                    RetryItemResult(
                        webhook_id=webhook_id,
                        success=False,
                        retry_count=retry_count,
                        error="Webhook changed state before the retry was applied",
                    )
                )

        await db.commit()

        if sweep.results or sweep.exhausted:
            self.logger.info(
                "webhook_retry_sweep",
                client_id=client_id,
                max_retries=ceiling,
                retried=sweep.retried,
                failed=sweep.failed,
                exhausted=sweep.exhausted,
            )
        return sweep

    async def get_webhook_stats(
        self,
        db: AsyncSession,
        client_id: str | None = None,
        days_back: int | None = None,
        max_retries: int | None = None,
    ) -> WebhookStats:
        """Counts for webhooks created in the window plus average processing latency.

        Latency is ``processed_at - created_at`` over webhooks whose
        ``processed_at`` falls inside the window.
        """
        window = self.stats_days_back if days_back is None else days_back
        if window < 0:
            raise ValidationError("days_back cannot be negative", field="days_back")
        ceiling = self.max_retries if max_retries is None else max_retries
        cutoff = utcnow() - timedelta(days=window)
        stats = WebhookStats(days_back=window)

        scope = [WebhookEvent.created_at >= cutoff]
        if client_id is not None:
            scope.append(WebhookEvent.client_id == client_id)

        by_status = await db.execute(
            select(WebhookEvent.status, func.count()).where(*scope).group_by(WebhookEvent.status)
        )
        for status, count in by_status.all():
            stats.by_status[status] = count
            stats.total += count

        by_provider = await db.execute(
            select(WebhookEvent.provider, func.count()).where(*scope).group_by(WebhookEvent.provider)
        )
        stats.by_provider = {provider: count for provider, count in by_provider.all()}

        stats.retry_exhausted = (
            await db.scalar(
                select(func.count())
                .select_from(WebhookEvent)
                .where(
                    *scope,
                    WebhookEvent.status == WebhookStatus.FAILED.value,
                    WebhookEvent.retry_count >= ceiling,
                )
            )
            or 0
        )

        latency_scope = [WebhookEvent.processed_at.is_not(None), WebhookEvent.processed_at >= cutoff]
        if client_id is not None:
            latency_scope.append(WebhookEvent.client_id == client_id)
        timings = await db.execute(
            select(WebhookEvent.created_at, WebhookEvent.processed_at).where(*latency_scope)
        )
        durations = [
            (processed_at - created_at).total_seconds() for created_at, processed_at in timings.all()
        ]
        if durations:
            stats.avg_processing_seconds = round(sum(durations) / len(durations), 3)

        return stats
