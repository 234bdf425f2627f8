"""Known credential kinds and how to build candidate sets from settings."""

from dataclasses import dataclass

from app.core.config import Settings, settings
from app.services.credentials.types import AuthMethod, AuthScheme, CredentialSet

TWILIO = "twilio"
SENDGRID = "sendgrid"


@dataclass(frozen=True)
class CredentialKind:
    """Where one auth method's principal and secret live in settings."""

    provider: str
    kind: str
    secret_setting: str
    principal_setting: str | None = None
    scheme: AuthScheme = AuthScheme.BASIC


# Priority order within each provider is the order listed here.
CREDENTIAL_KINDS: tuple[CredentialKind, ...] = (
    CredentialKind(
        provider=TWILIO,
        kind="auth_token",
        principal_setting="TWILIO_ACCOUNT_SID",
        secret_setting="TWILIO_AUTH_TOKEN",
    ),
    CredentialKind(
        provider=TWILIO,
        kind="api_key",
        principal_setting="TWILIO_API_KEY_SID",
        secret_setting="TWILIO_API_KEY_SECRET",
    ),
    CredentialKind(
        provider=SENDGRID,
        kind="api_key",
        secret_setting="SENDGRID_API_KEY",
        scheme=AuthScheme.BEARER,
    ),
    CredentialKind(
        provider=SENDGRID,
        kind="restricted_key",
        secret_setting="SENDGRID_RESTRICTED_API_KEY",
        scheme=AuthScheme.BEARER,
    ),
)

ACCOUNT_ID_SETTINGS: dict[str, str | None] = {
    TWILIO: "TWILIO_ACCOUNT_SID",
    SENDGRID: None,
}


def kinds_for(provider: str) -> list[CredentialKind]:
    """Registered kinds for a provider, in priority order."""
    return [kind for kind in CREDENTIAL_KINDS if kind.provider == provider]


def build_credential_set(provider: str, config: Settings | None = None) -> CredentialSet:
    """Collect the configured auth methods for a provider.

    Kinds whose secret is blank are left out, so an unconfigured provider
    yields an empty candidate list.

    Raises:
        ValueError: If the provider has no registered credential kinds
    """
    config = config or settings
    kinds = kinds_for(provider)
    if not kinds:
        raise ValueError(f"Unsupported credential provider: {provider}")

    account_setting = ACCOUNT_ID_SETTINGS.get(provider)
    account_id = getattr(config, account_setting) if account_setting else provider

    methods: list[AuthMethod] = []
    for kind in kinds:
        secret = getattr(config, kind.secret_setting) or ""
        principal = getattr(config, kind.principal_setting) if kind.principal_setting else ""
        if not secret:
            continue
        methods.append(
            AuthMethod(
                kind=kind.kind,
                principal=principal or "",
                secret=secret,
                scheme=kind.scheme,
            )
        )

    return CredentialSet(provider=provider, account_id=account_id or "", methods=tuple(methods))
