"""Webhook processing worker.

This background worker:
1. Runs the retry sweep, moving retryable failed webhooks back to received
2. Hands each received webhook to the handler registered for its
   (provider, event_type)
3. Marks the webhook processed, or failed with the handler's error
"""

import asyncio
import contextlib
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import InvalidTransitionError, ValidationError
from app.db.session import AsyncSessionLocal
from app.models.webhook_event import WebhookEvent, WebhookStatus
from app.services.webhook_service import RetrySweepResult, WebhookService

logger = structlog.get_logger()

WebhookHandler = Callable[[WebhookEvent, AsyncSession], Awaitable[Any]]

ANY_EVENT = "*"


class WebhookHandlerRegistry:
    """Handlers keyed by (provider, event_type), with per-provider wildcards."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], WebhookHandler] = {}

    def add(self, provider: str, event_type: str, handler: WebhookHandler) -> None:
        """Register a handler; ``event_type="*"`` matches any event of the provider."""
        self._handlers[(provider.lower(), event_type)] = handler

    def register(
        self, provider: str, event_type: str = ANY_EVENT
    ) -> Callable[[WebhookHandler], WebhookHandler]:
        """Decorator form of :meth:`add`."""

        def decorator(handler: WebhookHandler) -> WebhookHandler:
            self.add(provider, event_type, handler)
            return handler

        return decorator

    def get(self, provider: str, event_type: str) -> WebhookHandler | None:
        """Exact match first, then the provider wildcard."""
        provider = provider.lower()
        return self._handlers.get((provider, event_type)) or self._handlers.get(
            (provider, ANY_EVENT)
        )


@dataclass
class ProcessingSummary:
    """Counts from one processing pass."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    unhandled: int = 0


class WebhookProcessor:
    """Background service that retries and processes stored webhooks."""

    def __init__(
        self,
        webhook_service: WebhookService | None = None,
        registry: WebhookHandlerRegistry | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        poll_interval: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        """Initialize the processor.

        Args:
            webhook_service: Service used for status changes and sweeps
            registry: Event handlers
            session_factory: Session factory (defaults to the app's)
            poll_interval: Seconds between passes
            batch_size: Max webhooks handled per pass
        """
        self.webhook_service = webhook_service or WebhookService()
        self.registry = registry or WebhookHandlerRegistry()
        self.session_factory = session_factory or AsyncSessionLocal
        self.poll_interval = (
            settings.WEBHOOK_POLL_INTERVAL if poll_interval is None else poll_interval
        )
        self.batch_size = settings.WEBHOOK_BATCH_SIZE if batch_size is None else batch_size
        if self.batch_size < 1:
            raise ValidationError("batch_size must be at least 1", field="batch_size")
        self.running = False
        self.logger = logger.bind(component="webhook_processor")
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start the processing loop."""
        if self.running:
            self.logger.warning("webhook_processor_already_running")
            return

        self.running = True
        self._task = asyncio.create_task(self._run_loop())
        self.logger.info("webhook_processor_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the processing loop."""
        self.running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self.logger.info("webhook_processor_stopped")

    async def _run_loop(self) -> None:
        """Main polling loop."""
        while self.running:
            try:
                await self.run_once()
            except Exception:
                self.logger.exception("webhook_processor_loop_error")

            await asyncio.sleep(self.poll_interval)

    async def run_once(self) -> tuple[RetrySweepResult, ProcessingSummary]:
        """One sweep followed by one processing pass."""
        async with self.session_factory() as db:
            sweep = await self.webhook_service.retry_failed_webhooks(db, limit=self.batch_size)
        async with self.session_factory() as db:
            summary = await self.process_pending(db)
        return sweep, summary

    async def process_pending(self, db: AsyncSession) -> ProcessingSummary:
        """Process up to ``batch_size`` received webhooks, oldest first.

        Webhooks are claimed one at a time with ``FOR UPDATE SKIP LOCKED``
        and each is finished in its own transaction, so a concurrent worker
        skips the row being handled. A handler that fails, or commits on its
        own, releases the claim early; the processed/failed update is
        conditional on ``received``, so the worst case is a handler running
        twice (at-least-once delivery). Processing order is not a contract.
        """
        summary = ProcessingSummary()
        claimed: list[uuid.UUID] = []
        while len(claimed) < self.batch_size:
            stmt = (
                select(WebhookEvent.id)
                .where(WebhookEvent.status == WebhookStatus.RECEIVED.value)
                .order_by(WebhookEvent.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            if claimed:
                stmt = stmt.where(WebhookEvent.id.not_in(claimed))
            webhook_id = await db.scalar(stmt)
            if webhook_id is None:
                break

            claimed.append(webhook_id)
            try:
                await self._process_webhook(webhook_id, db, summary)
            except Exception:
                self.logger.exception("webhook_processing_error", webhook_id=str(webhook_id))
                await db.rollback()

        if claimed:
            self.logger.debug("processed_webhooks", count=len(claimed))
        return summary

    async def _process_webhook(
        self, webhook_id: uuid.UUID, db: AsyncSession, summary: ProcessingSummary
    ) -> None:
        """Run the handler for one webhook and record the outcome."""
        webhook = await db.get(WebhookEvent, webhook_id, populate_existing=True)
        if webhook is None or webhook.status != WebhookStatus.RECEIVED.value:
            summary.skipped += 1
            return

        log = self.logger.bind(
            webhook_id=str(webhook_id),
            provider=webhook.provider,
            event_type=webhook.event_type,
            retry_count=webhook.retry_count,
        )

        handler = self.registry.get(webhook.provider, webhook.event_type)
        try:
            if handler is None:
                log.info("unhandled_event_type")
                summary.unhandled += 1
            else:
                await handler(webhook, db)
        except Exception as e:
            log.exception("webhook_handler_error", error=str(e))
            await db.rollback()
            try:
                await self.webhook_service.mark_failed(db, webhook_id, str(e) or type(e).__name__)
                summary.failed += 1
            except InvalidTransitionError:
                log.info("webhook_already_finished")
                summary.skipped += 1
            return

        try:
            await self.webhook_service.mark_processed(db, webhook_id)
            summary.processed += 1
        except InvalidTransitionError:
            log.info("webhook_already_finished")
            summary.skipped += 1
