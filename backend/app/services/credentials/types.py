"""Auth method and credential value types."""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from app.core.logging import mask_secret


class AuthScheme(str, Enum):
    """How a method's secret is carried in the Authorization header."""

    BASIC = "basic"
    BEARER = "bearer"


@dataclass(frozen=True)
class AuthMethod:
    """One (principal, secret) pair tagged by method kind."""

    kind: str
    principal: str
    secret: str
    scheme: AuthScheme = AuthScheme.BASIC

    @property
    def is_complete(self) -> bool:
        """Bearer tokens need only a secret; basic auth needs both halves."""
        if self.scheme == AuthScheme.BEARER:
            return bool(self.secret)
        return bool(self.principal and self.secret)

    def auth_headers(self) -> dict[str, str]:
        """Authorization header for this method."""
        if self.scheme == AuthScheme.BEARER:
            return {"Authorization": f"Bearer {self.secret}"}
        token = base64.b64encode(f"{self.principal}:{self.secret}".encode()).decode("ascii")
        return {"Authorization": f"Basic {token}"}

    def __repr__(self) -> str:
        """Never expose the secret."""
        return f"AuthMethod(kind={self.kind!r}, principal={mask_secret(self.principal)!r})"


@dataclass(frozen=True)
class CredentialSet:
    """Ordered candidate auth methods for one provider account."""

    provider: str
    account_id: str
    methods: tuple[AuthMethod, ...] = ()

    def find(self, kind: str) -> AuthMethod | None:
        """Look up a candidate by its method kind."""
        for method in self.methods:
            if method.kind == kind:
                return method
        return None


@dataclass(frozen=True)
class ActiveCredential:
    """The method that passed the identity check, tagged with its kind."""

    provider: str
    account_id: str
    method: AuthMethod
    account_info: dict[str, Any] = field(default_factory=dict)
    from_cache: bool = False

    @property
    def method_kind(self) -> str:
        """Tag callers use to pick a transport/signing scheme."""
        return self.method.kind

    def auth_headers(self) -> dict[str, str]:
        """Authorization header for requests sent with this credential."""
        return self.method.auth_headers()
