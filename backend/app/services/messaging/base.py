"""Abstract base class for outbound message channel providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from app.services.credentials.probes import IdentityProbe
from app.services.credentials.types import ActiveCredential, CredentialSet


class Channel(str, Enum):
    """Outbound message channel."""

    SMS = "sms"
    EMAIL = "email"


@dataclass(frozen=True)
class OutboundMessage:
    """A single message to one recipient."""

    to: str
    body: str
    from_: str | None = None
    subject: str | None = None
    channel: Channel = Channel.SMS


@dataclass(frozen=True)
class DeliveryResult:
    """Provider acceptance of a message."""

    provider: str
    channel: Channel
    to: str
    from_: str
    provider_message_id: str | None
    status: str
    auth_method: str
    raw: dict[str, Any] = field(default_factory=dict)


class MessagingProvider(ABC):
    """Channel provider contract.

    Providers validate and normalize messages, describe their candidate
    credentials, and perform a single send with an already-resolved
    credential. They never retry.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return provider identifier (e.g., 'twilio', 'sendgrid')."""

    @property
    @abstractmethod
    def channel(self) -> Channel:
        """Channel this provider delivers on."""

    @property
    @abstractmethod
    def base_url(self) -> str:
        """Provider API base URL."""

    @abstractmethod
    def credential_set(self) -> CredentialSet:
        """Candidate auth methods, in priority order."""

    @abstractmethod
    def identity_probe(self) -> IdentityProbe:
        """Identity check matching this provider's credentials."""

    @abstractmethod
    def prepare(self, message: OutboundMessage) -> OutboundMessage:
        """Validate and normalize a message before any network call.

        Raises:
            ValidationError: If a required field is missing or malformed
        """

    @abstractmethod
    async def send(
        self,
        client: httpx.AsyncClient,
        credential: ActiveCredential,
        message: OutboundMessage,
    ) -> DeliveryResult:
        """Issue the provider send request.

        Raises:
            DeliveryError: PROVIDER_REJECTED on a non-2xx response
            httpx.HTTPError: On transport failure (wrapped by the dispatcher)
        """
