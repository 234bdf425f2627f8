"""Outbound credential resolution."""

from app.services.credentials.cache import (
    CredentialCache,
    InMemoryCredentialCache,
    NullCredentialCache,
    RedisCredentialCache,
    create_credential_cache,
)
from app.services.credentials.probes import (
    IdentityProbe,
    SendGridIdentityProbe,
    TwilioIdentityProbe,
)
from app.services.credentials.registry import CREDENTIAL_KINDS, build_credential_set
from app.services.credentials.resolver import CredentialResolver
from app.services.credentials.types import ActiveCredential, AuthMethod, AuthScheme, CredentialSet

__all__ = [
    "CREDENTIAL_KINDS",
    "ActiveCredential",
    "AuthMethod",
    "AuthScheme",
    "CredentialCache",
    "CredentialResolver",
    "CredentialSet",
    "IdentityProbe",
    "InMemoryCredentialCache",
    "NullCredentialCache",
    "RedisCredentialCache",
    "SendGridIdentityProbe",
    "TwilioIdentityProbe",
    "build_credential_set",
    "create_credential_cache",
]
