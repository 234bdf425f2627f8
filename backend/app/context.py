"""Process-wide application context.

Owns the long-lived collaborators (dispatcher, background worker, progress
notifier) so their lifecycles are explicit: ``init`` once at startup,
``teardown`` once at shutdown.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, settings
from app.core.logging import configure_logging
from app.db.redis import check_redis, close_redis
from app.db.session import AsyncSessionLocal
from app.services.campaign_execution_service import CampaignExecutionService
from app.services.campaign_runner import CampaignRunner
from app.services.credentials.cache import create_credential_cache
from app.services.messaging.dispatcher import DeliveryDispatcher
from app.services.messaging.factory import ProviderFactory
from app.services.progress_notifier import ProgressNotifier
from app.services.webhook_processor import WebhookHandlerRegistry, WebhookProcessor
from app.services.webhook_service import WebhookService

logger = structlog.get_logger()


class AppContext:
    """Holds the shared services of one running process."""

    def __init__(
        self,
        config: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        dispatcher: DeliveryDispatcher | None = None,
        registry: WebhookHandlerRegistry | None = None,
    ) -> None:
        """Build the shared services; nothing is started until init().

        Args:
            config: Settings override, defaults to the process settings
            session_factory: Session factory, defaults to the app's
            dispatcher: Dispatcher override; built from config when omitted
            registry: Webhook handlers for the background processor
        """
        self.config = config or settings
        self.session_factory = session_factory or AsyncSessionLocal
        self.dispatcher = dispatcher or DeliveryDispatcher(
            providers=ProviderFactory.create_all(self.config),
            cache=create_credential_cache(self.config.CREDENTIAL_CACHE_BACKEND),
            timeout=self.config.HTTP_TIMEOUT_SECONDS,
        )

        self.execution_service = CampaignExecutionService(
            conflict_retries=self.config.STORE_CONFLICT_RETRIES
        )
        self.webhook_service = WebhookService(
            allowed_providers=self.config.WEBHOOK_ALLOWED_PROVIDERS,
            max_retries=self.config.WEBHOOK_MAX_RETRIES,
            stats_days_back=self.config.WEBHOOK_STATS_DAYS_BACK,
        )
        self.campaign_runner = CampaignRunner(
            self.dispatcher,
            execution_service=self.execution_service,
            session_factory=self.session_factory,
            concurrency=self.config.CAMPAIGN_SEND_CONCURRENCY,
            send_interval=self.config.CAMPAIGN_SEND_INTERVAL_SECONDS,
        )
        self.webhook_processor = WebhookProcessor(
            webhook_service=self.webhook_service,
            registry=registry,
            session_factory=self.session_factory,
            poll_interval=self.config.WEBHOOK_POLL_INTERVAL,
            batch_size=self.config.WEBHOOK_BATCH_SIZE,
        )
        self.progress_notifier = ProgressNotifier(
            self.dispatcher,
            execution_service=self.execution_service,
            session_factory=self.session_factory,
            recipient=self.config.PROGRESS_NOTIFY_RECIPIENT,
            interval=self.config.PROGRESS_NOTIFY_INTERVAL_SECONDS,
            url=self.config.PROGRESS_NOTIFY_URL,
        )
        self._initialized = False

    async def init(self, start_webhook_processor: bool = True) -> None:
        """Configure logging and start background work."""
        if self._initialized:
            return
        configure_logging(self.config.LOG_LEVEL, self.config.LOG_JSON)
        if self.config.CREDENTIAL_CACHE_BACKEND == "redis" and not await check_redis():
            # Every send re-resolves credentials until Redis comes back.
            logger.warning("credential_cache_unavailable", backend="redis")
        if start_webhook_processor:
            await self.webhook_processor.start()
        self._initialized = True
        logger.info("app_context_initialized")

    async def teardown(self) -> None:
        """Stop background work and release connections. Idempotent."""
        await self.progress_notifier.stop()
        await self.webhook_processor.stop()
        await self.dispatcher.close()
        await close_redis()
        self._initialized = False
        logger.info("app_context_closed")

    async def __aenter__(self) -> "AppContext":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.teardown()
