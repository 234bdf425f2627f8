"""Tests for the delivery dispatcher and its channel providers."""

# ruff: noqa: S106

import httpx
import pytest

from app.core.exceptions import (
    DeliveryError,
    DeliveryErrorKind,
    NoWorkingCredentialError,
    ValidationError,
)
from app.services.credentials.cache import InMemoryCredentialCache
from app.services.credentials.registry import SENDGRID, TWILIO
from app.services.credentials.types import AuthMethod, AuthScheme, CredentialSet
from app.services.messaging.base import Channel, OutboundMessage
from app.services.messaging.dispatcher import DeliveryDispatcher
from app.services.messaging.sendgrid_provider import SendGridEmailProvider
from app.services.messaging.twilio_provider import TwilioSMSProvider, normalize_e164

ACCOUNT_SID = "AC00000000000000000000000000000002"
TWILIO_BASE = "https://api.twilio.test"
SENDGRID_BASE = "https://api.sendgrid.test"
FROM_NUMBER = "+15550001111"


class FakeTwilio:
    """Mock Twilio API: account lookup plus Messages.json."""

    def __init__(self, send_status: int = 201, send_body: dict | str | None = None):
        self.send_status = send_status
        self.send_body = send_body
        self.account_lookups = 0
        self.sent: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == f"/2010-04-01/Accounts/{ACCOUNT_SID}.json":
            self.account_lookups += 1
            return httpx.Response(200, json={"sid": ACCOUNT_SID, "status": "active"})
        if request.url.path == f"/2010-04-01/Accounts/{ACCOUNT_SID}/Messages.json":
            self.sent.append(request)
            body = self.send_body
            if body is None:
                body = {"sid": "SM123", "status": "queued"}
            if isinstance(body, str):
                return httpx.Response(self.send_status, text=body)
            return httpx.Response(self.send_status, json=body)
        return httpx.Response(404)


def _twilio_dispatcher(fake: FakeTwilio, cache=None) -> DeliveryDispatcher:
    provider = TwilioSMSProvider(
        credentials=CredentialSet(
            provider=TWILIO,
            account_id=ACCOUNT_SID,
            methods=(AuthMethod(kind="auth_token", principal=ACCOUNT_SID, secret="token"),),
        ),
        default_from=FROM_NUMBER,
        base_url=TWILIO_BASE,
    )
    client = httpx.AsyncClient(base_url=TWILIO_BASE, transport=httpx.MockTransport(fake))
    return DeliveryDispatcher(
        providers=[provider],
        cache=cache or InMemoryCredentialCache(),
        http_clients={TWILIO: client},
    )


class TestDeliveryDispatcher:
    """Tests for DeliveryDispatcher.send."""

    @pytest.mark.asyncio
    async def test_send_sms_success(self):
        """A resolved credential is used to post the normalized message."""
        fake = FakeTwilio()
        dispatcher = _twilio_dispatcher(fake)

        result = await dispatcher.send(OutboundMessage(to="(555) 123-4567", body="Hello"))

        assert result.provider_message_id == "SM123"
        assert result.auth_method == "auth_token"
        assert result.to == "+15551234567"
        sent = fake.sent[0]
        assert sent.headers["Authorization"].startswith("Basic ")
        form = dict(httpx.QueryParams(sent.content.decode()))
        assert form == {"To": "+15551234567", "From": FROM_NUMBER, "Body": "Hello"}

    @pytest.mark.asyncio
    async def test_provider_400_is_rejected_with_parsed_message(self):
        """Non-2xx responses carry the provider's parsed error."""
        fake = FakeTwilio(
            send_status=400,
            send_body={"code": 21211, "message": "The 'To' number is not a valid phone number."},
        )
        dispatcher = _twilio_dispatcher(fake)

        with pytest.raises(DeliveryError) as exc_info:
            await dispatcher.send(OutboundMessage(to="+15551234567", body="Hello"))

        error = exc_info.value
        assert error.kind == DeliveryErrorKind.PROVIDER_REJECTED
        assert error.status_code == 400
        assert error.provider_code == "21211"
        assert error.message == "The 'To' number is not a valid phone number."

    @pytest.mark.asyncio
    async def test_unparseable_rejection_keeps_raw_text(self):
        """Without a JSON body the raw response text is used."""
        dispatcher = _twilio_dispatcher(FakeTwilio(send_status=502, send_body="Bad Gateway"))

        with pytest.raises(DeliveryError) as exc_info:
            await dispatcher.send(OutboundMessage(to="+15551234567", body="Hello"))

        assert exc_info.value.message == "Bad Gateway"
        assert exc_info.value.provider_response is None

    @pytest.mark.asyncio
    async def test_unsubscribed_recipient_has_readable_message(self):
        """Twilio error 21610 is reported as an unsubscribe."""
        dispatcher = _twilio_dispatcher(
            FakeTwilio(send_status=400, send_body={"code": 21610, "message": "Attempt to send"})
        )

        with pytest.raises(DeliveryError) as exc_info:
            await dispatcher.send(OutboundMessage(to="+15551234567", body="Hello"))

        assert "unsubscribed" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        """Network errors on the send become transport delivery errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/Messages.json"):
                raise httpx.ReadTimeout("read timed out", request=request)
            return httpx.Response(200, json={"sid": ACCOUNT_SID})

        provider = TwilioSMSProvider(
            credentials=CredentialSet(
                provider=TWILIO,
                account_id=ACCOUNT_SID,
                methods=(AuthMethod(kind="auth_token", principal=ACCOUNT_SID, secret="token"),),
            ),
            default_from=FROM_NUMBER,
            base_url=TWILIO_BASE,
        )
        dispatcher = DeliveryDispatcher(
            providers=[provider],
            http_clients={
                TWILIO: httpx.AsyncClient(
                    base_url=TWILIO_BASE, transport=httpx.MockTransport(handler)
                )
            },
        )

        with pytest.raises(DeliveryError) as exc_info:
            await dispatcher.send(OutboundMessage(to="+15551234567", body="Hello"))

        assert exc_info.value.kind == DeliveryErrorKind.TRANSPORT

    @pytest.mark.asyncio
    async def test_auth_rejection_invalidates_cached_credential(self):
        """A 401 on send forces the next send to re-resolve."""
        cache = InMemoryCredentialCache()
        fake = FakeTwilio()
        dispatcher = _twilio_dispatcher(fake, cache=cache)

        await dispatcher.send(OutboundMessage(to="+15551234567", body="one"))
        assert await cache.get(TWILIO, ACCOUNT_SID) == "auth_token"

        fake.send_status = 401
        fake.send_body = {"code": 20003, "message": "Authenticate"}
        with pytest.raises(DeliveryError) as exc_info:
            await dispatcher.send(OutboundMessage(to="+15551234567", body="two"))

        assert exc_info.value.is_auth_failure
        assert await cache.get(TWILIO, ACCOUNT_SID) is None

        fake.send_status = 201
        fake.send_body = None
        await dispatcher.send(OutboundMessage(to="+15551234567", body="three"))
        assert fake.account_lookups == 2

    @pytest.mark.asyncio
    async def test_no_credentials_is_distinct_from_delivery_failure(self):
        """An unconfigured provider fails resolution, not delivery."""
        provider = TwilioSMSProvider(
            credentials=CredentialSet(provider=TWILIO, account_id=ACCOUNT_SID),
            default_from=FROM_NUMBER,
            base_url=TWILIO_BASE,
        )
        fake = FakeTwilio()
        dispatcher = DeliveryDispatcher(
            providers=[provider],
            http_clients={
                TWILIO: httpx.AsyncClient(base_url=TWILIO_BASE, transport=httpx.MockTransport(fake))
            },
        )

        with pytest.raises(NoWorkingCredentialError):
            await dispatcher.send(OutboundMessage(to="+15551234567", body="Hello"))

        assert fake.account_lookups == 0
        assert fake.sent == []

    @pytest.mark.asyncio
    async def test_validation_happens_before_network(self):
        """Malformed messages never reach the provider."""
        fake = FakeTwilio()
        dispatcher = _twilio_dispatcher(fake)

        with pytest.raises(ValidationError):
            await dispatcher.send(OutboundMessage(to=FROM_NUMBER, body="to myself"))
        with pytest.raises(ValidationError):
            await dispatcher.send(OutboundMessage(to="+15551234567", body=""))
        with pytest.raises(ValidationError):
            await dispatcher.send(OutboundMessage(to="+15551234567", body="x" * 1601))
        with pytest.raises(ValidationError):
            await dispatcher.send(OutboundMessage(to="call me", body="Hello"))

        assert fake.account_lookups == 0
        assert fake.sent == []

    @pytest.mark.asyncio
    async def test_channel_without_provider(self):
        """Asking for a channel nobody serves is a validation error."""
        dispatcher = _twilio_dispatcher(FakeTwilio())

        with pytest.raises(ValidationError):
            await dispatcher.send(
                OutboundMessage(to="a@example.com", body="Hi", channel=Channel.EMAIL)
            )


class TestSendGridEmailProvider:
    """Tests for email delivery through SendGrid."""

    @pytest.fixture
    def requests(self):
        """Requests seen by the mock SendGrid API."""
        return []

    @pytest.fixture
    def dispatcher(self, requests):
        """Dispatcher with a SendGrid provider over a mock API."""

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path == "/v3/user/account":
                return httpx.Response(200, json={"type": "free"})
            if request.url.path == "/v3/mail/send":
                payload = request.read()
                if b"bounce@example.com" in payload:
                    return httpx.Response(
                        400,
                        json={
                            "errors": [
                                {"message": "Invalid recipient", "field": "personalizations"},
                                {"message": "Blocked address", "field": None},
                            ]
                        },
                    )
                return httpx.Response(202, headers={"X-Message-Id": "sg-msg-1"})
            return httpx.Response(404)

        provider = SendGridEmailProvider(
            credentials=CredentialSet(
                provider=SENDGRID,
                account_id=SENDGRID,
                methods=(
                    AuthMethod(
                        kind="api_key", principal="", secret="SG.key", scheme=AuthScheme.BEARER
                    ),
                ),
            ),
            default_from="team@example.com",
            base_url=SENDGRID_BASE,
        )
        return DeliveryDispatcher(
            providers=[provider],
            http_clients={
                SENDGRID: httpx.AsyncClient(
                    base_url=SENDGRID_BASE, transport=httpx.MockTransport(handler)
                )
            },
        )

    @pytest.mark.asyncio
    async def test_send_email(self, dispatcher, requests):
        """A 202 is accepted and the message id comes from the header."""
        result = await dispatcher.send(
            OutboundMessage(
                to="lead@example.com", body="<p>Hi</p>", subject="Hello", channel=Channel.EMAIL
            )
        )

        assert result.provider_message_id == "sg-msg-1"
        assert result.from_ == "team@example.com"
        assert requests[-1].headers["Authorization"] == "Bearer SG.key"

    @pytest.mark.asyncio
    async def test_rejection_joins_provider_errors(self, dispatcher):
        """All SendGrid error messages are kept."""
        with pytest.raises(DeliveryError) as exc_info:
            await dispatcher.send(
                OutboundMessage(to="bounce@example.com", body="Hi", channel=Channel.EMAIL)
            )

        assert exc_info.value.kind == DeliveryErrorKind.PROVIDER_REJECTED
        assert exc_info.value.message == "Invalid recipient | Blocked address"

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, dispatcher, requests):
        """Malformed addresses are rejected before any request."""
        with pytest.raises(ValidationError):
            await dispatcher.send(OutboundMessage(to="not-an-email", body="Hi", channel=Channel.EMAIL))

        assert requests == []


class TestNormalizeE164:
    """Tests for phone number normalization."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("5551234567", "+15551234567"),
            ("(555) 123-4567", "+15551234567"),
            ("+44 20 7946 0958", "+442079460958"),
            ("15551234567", "+15551234567"),
        ],
    )
    def test_normalizes(self, raw, expected):
        """Bare US numbers get +1; punctuation is stripped."""
        assert normalize_e164(raw) == expected

    def test_rejects_letters(self):
        """Non-numeric input is a validation error."""
        with pytest.raises(ValidationError):
            normalize_e164("555-CALL-NOW")
