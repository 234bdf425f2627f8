"""SendGrid email provider."""

import re
from typing import Any

import httpx
import structlog

from app.core.config import Settings, settings
from app.core.exceptions import DeliveryError, DeliveryErrorKind, ValidationError
from app.services.credentials.probes import IdentityProbe, SendGridIdentityProbe
from app.services.credentials.registry import SENDGRID, build_credential_set
from app.services.credentials.types import ActiveCredential, CredentialSet
from app.services.messaging.base import Channel, DeliveryResult, MessagingProvider, OutboundMessage

logger = structlog.get_logger()

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class SendGridEmailProvider(MessagingProvider):
    """Send email through SendGrid v3 mail/send."""

    def __init__(
        self,
        credentials: CredentialSet | None = None,
        default_from: str | None = None,
        base_url: str | None = None,
        config: Settings | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            credentials: Candidate API keys; built from settings when omitted
            default_from: Sender address used when a message has none
            base_url: SendGrid API base URL
            config: Settings override (tests)
        """
        config = config or settings
        self._credentials = credentials or build_credential_set(SENDGRID, config)
        self.default_from = default_from or config.SENDGRID_FROM_EMAIL
        self._base_url = base_url or config.SENDGRID_API_BASE_URL
        self.logger = logger.bind(provider=SENDGRID)

    @property
    def provider_name(self) -> str:
        """Return provider identifier."""
        return SENDGRID

    @property
    def channel(self) -> Channel:
        """Email."""
        return Channel.EMAIL

    @property
    def base_url(self) -> str:
        """SendGrid v3 base URL."""
        return self._base_url

    def credential_set(self) -> CredentialSet:
        """Full-access key first, then the restricted key."""
        return self._credentials

    def identity_probe(self) -> IdentityProbe:
        """User account lookup."""
        return SendGridIdentityProbe(base_url=self._base_url)

    def prepare(self, message: OutboundMessage) -> OutboundMessage:
        """Validate addresses, subject and body."""
        to_email = (message.to or "").strip()
        if not _EMAIL_PATTERN.match(to_email):
            raise ValidationError(f"Invalid recipient email: {message.to!r}", field="to")
        sender = (message.from_ or self.default_from or "").strip()
        if not _EMAIL_PATTERN.match(sender):
            raise ValidationError("Sender email is not configured", field="from")
        if not message.body or not message.body.strip():
            raise ValidationError("Message body is required", field="body")

        return OutboundMessage(
            to=to_email,
            from_=sender,
            body=message.body,
            subject=message.subject or "",
            channel=Channel.EMAIL,
        )

    async def send(
        self,
        client: httpx.AsyncClient,
        credential: ActiveCredential,
        message: OutboundMessage,
    ) -> DeliveryResult:
        """POST /v3/mail/send; SendGrid answers 202 with an empty body."""
        payload = {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": {"email": message.from_},
            "subject": message.subject or "",
            "content": [{"type": "text/html", "value": message.body}],
        }
        response = await client.post("/v3/mail/send", json=payload, headers=credential.auth_headers())

        if not response.is_success:
            raise self._rejection(response)

        message_id = response.headers.get("X-Message-Id")
        self.logger.info("email_sent", message_id=message_id, auth_method=credential.method_kind)
        return DeliveryResult(
            provider=SENDGRID,
            channel=Channel.EMAIL,
            to=message.to,
            from_=message.from_ or "",
            provider_message_id=message_id,
            status="accepted",
            auth_method=credential.method_kind,
        )

    def _rejection(self, response: httpx.Response) -> DeliveryError:
        """Build a ProviderRejected error from a non-2xx response."""
        provider_response: dict[str, Any] | None = None
        error_msg = response.text or f"HTTP {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            provider_response = body
            errors = body.get("errors") or []
            if errors and isinstance(errors[0], dict):
                error_msg = " | ".join(
                    str(err.get("message", "Unknown error")) for err in errors if isinstance(err, dict)
                )

        self.logger.error("email_send_failed", status_code=response.status_code, error=error_msg)
        return DeliveryError(
            DeliveryErrorKind.PROVIDER_REJECTED,
            error_msg,
            status_code=response.status_code,
            provider_response=provider_response,
        )
