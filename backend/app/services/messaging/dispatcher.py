"""Delivery dispatcher: resolve a credential, then send one message.

No retries happen here. Campaign runners, the webhook worker and the
progress notifier each apply their own retry policy to the errors raised.
"""

import httpx
import structlog

from app.core.config import settings
from app.core.exceptions import DeliveryError, DeliveryErrorKind, ValidationError
from app.services.credentials.cache import CredentialCache, create_credential_cache
from app.services.credentials.resolver import CredentialResolver
from app.services.messaging.base import Channel, DeliveryResult, MessagingProvider, OutboundMessage
from app.services.messaging.factory import ProviderFactory

logger = structlog.get_logger()


class DeliveryDispatcher:
    """Sends single outbound messages over the configured channel providers."""

    def __init__(
        self,
        providers: list[MessagingProvider] | None = None,
        cache: CredentialCache | None = None,
        http_clients: dict[str, httpx.AsyncClient] | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            providers: Channel providers (defaults to one per supported channel)
            cache: Credential cache shared by all resolvers
            http_clients: Pre-built clients keyed by provider name (tests)
            timeout: HTTP timeout in seconds
        """
        provider_list = providers if providers is not None else ProviderFactory.create_all()
        self._providers: dict[Channel, MessagingProvider] = {p.channel: p for p in provider_list}
        self.cache = cache or create_credential_cache()
        self.timeout = settings.HTTP_TIMEOUT_SECONDS if timeout is None else timeout
        self._injected_clients = dict(http_clients or {})
        self._clients: dict[str, httpx.AsyncClient] = {}
        self._resolvers: dict[str, CredentialResolver] = {}
        self.logger = logger.bind(component="delivery_dispatcher")

    def provider_for(self, channel: Channel) -> MessagingProvider:
        """Provider registered for a channel.

        Raises:
            ValidationError: If no provider serves the channel
        """
        provider = self._providers.get(channel)
        if provider is None:
            raise ValidationError(f"No provider configured for channel {channel}", field="channel")
        return provider

    def _client_for(self, provider: MessagingProvider) -> httpx.AsyncClient:
        name = provider.provider_name
        if name in self._injected_clients:
            return self._injected_clients[name]
        if name not in self._clients:
            self._clients[name] = httpx.AsyncClient(
                base_url=provider.base_url,
                headers={"User-Agent": "campaign-relay/1.0"},
                timeout=self.timeout,
            )
        return self._clients[name]

    def resolver_for(self, provider: MessagingProvider) -> CredentialResolver:
        """Credential resolver bound to a provider's identity endpoint."""
        name = provider.provider_name
        if name not in self._resolvers:
            self._resolvers[name] = CredentialResolver(
                probe=provider.identity_probe(),
                cache=self.cache,
                http_client=self._client_for(provider),
                timeout=self.timeout,
            )
        return self._resolvers[name]

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        """Send one message.

        Args:
            message: Recipient, sender, body and channel

        Returns:
            DeliveryResult from the provider

        Raises:
            ValidationError: Malformed message or missing configuration
            NoWorkingCredentialError: Every candidate credential failed
            DeliveryError: Transport failure or provider rejection
        """
        provider = self.provider_for(message.channel)
        prepared = provider.prepare(message)
        log = self.logger.bind(provider=provider.provider_name, channel=prepared.channel.value)

        credentials = provider.credential_set()
        resolver = self.resolver_for(provider)
        credential = await resolver.resolve(credentials)

        try:
            result = await provider.send(self._client_for(provider), credential, prepared)
        except DeliveryError as e:
            if e.is_auth_failure:
                log.warning(
                    "send_auth_rejected",
                    status_code=e.status_code,
                    method=credential.method_kind,
                )
                await resolver.invalidate(credentials)
            raise
        except httpx.HTTPError as e:
            log.warning("send_transport_error", error=str(e))
            raise DeliveryError(
                DeliveryErrorKind.TRANSPORT,
                f"HTTP error calling {provider.provider_name}: {e!s}",
            ) from e

        log.debug("message_dispatched", message_id=result.provider_message_id)
        return result

    async def close(self) -> None:
        """Close HTTP clients created by this dispatcher."""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
        self._resolvers.clear()
