"""Identity-check endpoints used to test an auth method before sending."""

from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as SchemaError

from app.core.config import settings
from app.services.credentials.registry import SENDGRID, TWILIO
from app.services.credentials.types import AuthMethod

HTTP_OK = 200


class ProbeOutcome(BaseModel):
    """Result of one identity check."""

    success: bool
    status_code: int | None = None
    error: str | None = None
    account_info: dict[str, Any] = {}


class TwilioAccount(BaseModel):
    """Subset of the Twilio account resource we rely on."""

    model_config = ConfigDict(extra="allow")

    sid: str
    status: str | None = None
    friendly_name: str | None = None


class SendGridAccount(BaseModel):
    """Subset of the SendGrid /user/account response."""

    model_config = ConfigDict(extra="allow")

    type: str
    reputation: float | None = None


class IdentityProbe(ABC):
    """Lightweight account lookup for one provider."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier (e.g., 'twilio')."""

    @property
    @abstractmethod
    def base_url(self) -> str:
        """Provider API base URL."""

    @abstractmethod
    def build_request(self, method: AuthMethod, account_id: str) -> tuple[str, str]:
        """Return the (HTTP method, path) of the identity endpoint."""

    @abstractmethod
    def parse_account(self, body: Any, account_id: str) -> dict[str, Any]:
        """Validate the response body against the expected account schema.

        Raises:
            ValueError: If the body does not describe the expected account
        """

    def error_message(self, body: Any) -> str | None:
        """Pull the provider's error text out of a failed response body."""
        if isinstance(body, dict):
            message = body.get("message")
            if message:
                return str(message)
        return None

    async def check(
        self,
        client: httpx.AsyncClient,
        method: AuthMethod,
        account_id: str,
    ) -> ProbeOutcome:
        """Run the identity check for one auth method.

        Transport errors propagate; the resolver records them per attempt.
        """
        http_method, path = self.build_request(method, account_id)
        response = await client.request(http_method, path, headers=method.auth_headers())

        try:
            body: Any = response.json()
        except ValueError:
            body = None

        if response.status_code != HTTP_OK:
            return ProbeOutcome(
                success=False,
                status_code=response.status_code,
                error=self.error_message(body)
                or response.text[:200]
                or "Authentication failed",
            )

        try:
            account_info = self.parse_account(body, account_id)
        except (SchemaError, ValueError, TypeError) as e:
            return ProbeOutcome(
                success=False,
                status_code=response.status_code,
                error=f"Unexpected account schema: {e}",
            )

        return ProbeOutcome(
            success=True,
            status_code=response.status_code,
            account_info=account_info,
        )


class TwilioIdentityProbe(IdentityProbe):
    """GET /2010-04-01/Accounts/{sid}.json with Basic auth."""

    def __init__(self, base_url: str | None = None) -> None:
        """Initialize the probe.

        Args:
            base_url: Twilio API base URL, defaults to settings
        """
        self._base_url = base_url or settings.TWILIO_API_BASE_URL

    @property
    def provider_name(self) -> str:
        """Return provider identifier."""
        return TWILIO

    @property
    def base_url(self) -> str:
        """Twilio REST base URL."""
        return self._base_url

    def build_request(self, method: AuthMethod, account_id: str) -> tuple[str, str]:
        """Account lookup path for the configured account SID."""
        return "GET", f"/2010-04-01/Accounts/{account_id}.json"

    def parse_account(self, body: Any, account_id: str) -> dict[str, Any]:
        """Account must parse and carry the SID we asked for."""
        account = TwilioAccount.model_validate(body)
        if account.sid != account_id:
            raise ValueError(f"account sid mismatch ({account.sid})")
        return account.model_dump(include={"sid", "status", "friendly_name"})


class SendGridIdentityProbe(IdentityProbe):
    """GET /v3/user/account with a Bearer key."""

    def __init__(self, base_url: str | None = None) -> None:
        """Initialize the probe.

        Args:
            base_url: SendGrid API base URL, defaults to settings
        """
        self._base_url = base_url or settings.SENDGRID_API_BASE_URL

    @property
    def provider_name(self) -> str:
        """Return provider identifier."""
        return SENDGRID

    @property
    def base_url(self) -> str:
        """SendGrid v3 base URL."""
        return self._base_url

    def build_request(self, method: AuthMethod, account_id: str) -> tuple[str, str]:
        """Account lookup path."""
        return "GET", "/v3/user/account"

    def parse_account(self, body: Any, account_id: str) -> dict[str, Any]:
        """Account must carry its plan type."""
        return SendGridAccount.model_validate(body).model_dump(include={"type", "reputation"})

    def error_message(self, body: Any) -> str | None:
        """SendGrid wraps errors in an ``errors`` list."""
        if isinstance(body, dict):
            errors = body.get("errors") or []
            if errors and isinstance(errors[0], dict):
                return errors[0].get("message")
        return super().error_message(body)
