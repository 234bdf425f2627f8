"""Error taxonomy shared by the credential, delivery, execution and webhook services."""

from dataclasses import dataclass
from enum import Enum


class RelayError(Exception):
    """Base exception for the campaign relay backend."""

    def __init__(self, message: str = "An error occurred") -> None:
        self.message = message
        super().__init__(self.message)


class ValidationError(RelayError):
    """Input rejected before any network call or store write."""

    def __init__(self, message: str = "Validation failed", field: str | None = None) -> None:
        self.field = field
        if field:
            message = f"Validation failed for field '{field}': {message}"
        super().__init__(message)


class InvalidTransitionError(ValidationError):
    """A status change that the entity's state machine does not allow."""

    def __init__(self, entity: str, entity_id: object, current: str, requested: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.requested = requested
        super().__init__(f"{entity} {entity_id} cannot move from '{current}' to '{requested}'")


class NotFoundError(RelayError):
    """Referenced execution or webhook does not exist."""

    def __init__(self, resource: str = "Resource", resource_id: object = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(message)


class StoreConflictError(RelayError):
    """Concurrent updates kept winning the compare-and-swap on a record."""

    def __init__(self, resource: str, resource_id: object, attempts: int) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.attempts = attempts
        super().__init__(
            f"{resource} {resource_id} changed concurrently; gave up after {attempts} attempts"
        )


@dataclass(frozen=True)
class CredentialAttempt:
    """Outcome of testing one auth method against a provider identity endpoint."""

    method: str
    error: str
    status_code: int | None = None


class NoWorkingCredentialError(RelayError):
    """Every candidate auth method failed the identity check."""

    def __init__(self, provider: str, attempts: list[CredentialAttempt] | None = None) -> None:
        self.provider = provider
        self.attempts = list(attempts or [])
        if self.attempts:
            details = "; ".join(f"{a.method}: {a.error}" for a in self.attempts)
            message = f"No working {provider} credential ({details})"
        else:
            message = f"No working {provider} credential (no candidates configured)"
        super().__init__(message)


class DeliveryErrorKind(str, Enum):
    """Why an outbound send failed."""

    TRANSPORT = "transport"
    PROVIDER_REJECTED = "provider_rejected"


class DeliveryError(RelayError):
    """Outbound send failed at the network layer or was rejected by the provider."""

    def __init__(
        self,
        kind: DeliveryErrorKind,
        message: str,
        status_code: int | None = None,
        provider_code: str | None = None,
        provider_response: dict | None = None,  # type: ignore[type-arg]
    ) -> None:
        self.kind = kind
        self.status_code = status_code
        self.provider_code = provider_code
        self.provider_response = provider_response
        super().__init__(message)

    @property
    def is_auth_failure(self) -> bool:
        """Provider refused the credential (HTTP 401/403)."""
        return self.kind == DeliveryErrorKind.PROVIDER_REJECTED and self.status_code in (401, 403)


class RetryExhaustedError(RelayError):
    """Webhooks whose retry_count reached the ceiling.

    Reported in sweep and stats output; callers decide whether to raise it.
    """

    def __init__(
        self, webhook_ids: list[object], max_retries: int, count: int | None = None
    ) -> None:
        self.webhook_ids = list(webhook_ids)
        self.max_retries = max_retries
        self.count = len(self.webhook_ids) if count is None else count
        super().__init__(
            f"{self.count} webhook(s) reached the retry ceiling of {max_retries}"
        )
