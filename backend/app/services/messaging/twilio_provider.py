"""Twilio SMS provider."""

import re
from typing import Any

import httpx
import structlog

from app.core.config import Settings, settings
from app.core.exceptions import DeliveryError, DeliveryErrorKind, ValidationError
from app.services.credentials.probes import IdentityProbe, TwilioIdentityProbe
from app.services.credentials.registry import TWILIO, build_credential_set
from app.services.credentials.types import ActiveCredential, CredentialSet
from app.services.messaging.base import Channel, DeliveryResult, MessagingProvider, OutboundMessage

logger = structlog.get_logger()

# Twilio rejects bodies longer than this
MAX_SMS_BODY_LENGTH = 1600
US_NATIONAL_NUMBER_LENGTH = 10
ERROR_CODE_UNSUBSCRIBED = 21610

_PHONE_PUNCTUATION = re.compile(r"[\s\-().]")


def normalize_e164(phone_number: str) -> str:
    """Normalize a phone number to E.164 format.

    Bare 10-digit numbers are assumed to be US numbers.

    Raises:
        ValidationError: If the number contains anything but digits and punctuation
    """
    cleaned = phone_number.strip()
    has_plus = cleaned.startswith("+")
    digits = _PHONE_PUNCTUATION.sub("", cleaned[1:] if has_plus else cleaned)
    if not digits.isdigit():
        raise ValidationError(f"Invalid phone number format: {phone_number}", field="to")
    if not has_plus and len(digits) == US_NATIONAL_NUMBER_LENGTH:
        return f"+1{digits}"
    return f"+{digits}"


class TwilioSMSProvider(MessagingProvider):
    """Send SMS through the Twilio Messages API."""

    def __init__(
        self,
        credentials: CredentialSet | None = None,
        default_from: str | None = None,
        base_url: str | None = None,
        config: Settings | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            credentials: Candidate auth methods; built from settings when omitted
            default_from: Sender number used when a message has none
            base_url: Twilio API base URL
            config: Settings override (tests)
        """
        config = config or settings
        self._credentials = credentials or build_credential_set(TWILIO, config)
        self.default_from = default_from or config.TWILIO_PHONE_NUMBER
        self._base_url = base_url or config.TWILIO_API_BASE_URL
        self.logger = logger.bind(provider=TWILIO)

    @property
    def provider_name(self) -> str:
        """Return provider identifier."""
        return TWILIO

    @property
    def channel(self) -> Channel:
        """SMS."""
        return Channel.SMS

    @property
    def base_url(self) -> str:
        """Twilio REST base URL."""
        return self._base_url

    def credential_set(self) -> CredentialSet:
        """Auth token first, then API key."""
        return self._credentials

    def identity_probe(self) -> IdentityProbe:
        """Account lookup against the same base URL."""
        return TwilioIdentityProbe(base_url=self._base_url)

    def prepare(self, message: OutboundMessage) -> OutboundMessage:
        """Validate recipient, sender and body."""
        if not self._credentials.account_id:
            raise ValidationError("Twilio account SID is not configured", field="account_sid")
        if not message.to or not message.to.strip():
            raise ValidationError("Destination phone number is required", field="to")
        sender = message.from_ or self.default_from
        if not sender:
            raise ValidationError("Source phone number is required", field="from")
        if not message.body or not message.body.strip():
            raise ValidationError("Message body is required", field="body")
        if len(message.body) > MAX_SMS_BODY_LENGTH:
            raise ValidationError(
                f"Message body exceeds {MAX_SMS_BODY_LENGTH} characters", field="body"
            )

        to_number = normalize_e164(message.to)
        from_number = normalize_e164(sender)
        if to_number == from_number:
            raise ValidationError(
                f"Cannot send SMS to the same number as the sender ({from_number})",
                field="to",
            )

        return OutboundMessage(
            to=to_number,
            from_=from_number,
            body=message.body,
            channel=Channel.SMS,
        )

    async def send(
        self,
        client: httpx.AsyncClient,
        credential: ActiveCredential,
        message: OutboundMessage,
    ) -> DeliveryResult:
        """POST /2010-04-01/Accounts/{sid}/Messages.json."""
        path = f"/2010-04-01/Accounts/{credential.account_id}/Messages.json"
        response = await client.post(
            path,
            data={"To": message.to, "From": message.from_ or "", "Body": message.body},
            headers=credential.auth_headers(),
        )

        try:
            body: Any = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            raise self._rejection(response, body)

        data = body if isinstance(body, dict) else {}
        self.logger.info(
            "sms_sent",
            message_sid=data.get("sid"),
            status=data.get("status"),
            auth_method=credential.method_kind,
        )
        return DeliveryResult(
            provider=TWILIO,
            channel=Channel.SMS,
            to=message.to,
            from_=message.from_ or "",
            provider_message_id=data.get("sid"),
            status=str(data.get("status") or "queued"),
            auth_method=credential.method_kind,
            raw=data,
        )

    def _rejection(self, response: httpx.Response, body: Any) -> DeliveryError:
        """Build a ProviderRejected error from a non-2xx response."""
        if isinstance(body, dict):
            code = body.get("code")
            error_msg = str(body.get("message") or "SMS send failed")
            if code == ERROR_CODE_UNSUBSCRIBED:
                error_msg = "The recipient has unsubscribed from SMS messages"
            provider_response: dict[str, Any] | None = body
        else:
            code = None
            error_msg = response.text or f"HTTP {response.status_code}"
            provider_response = None

        self.logger.error(
            "sms_send_failed",
            status_code=response.status_code,
            error_code=code,
            error=error_msg,
        )
        return DeliveryError(
            DeliveryErrorKind.PROVIDER_REJECTED,
            error_msg,
            status_code=response.status_code,
            provider_code=str(code) if code is not None else None,
            provider_response=provider_response,
        )
