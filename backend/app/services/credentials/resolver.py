"""Pick the first auth method that currently authenticates against a provider.

Candidates are tested strictly in priority order against the provider's
identity endpoint. The first success wins; if none succeed the caller gets
every attempt's failure reason, not just the last one.
"""

import httpx
import structlog

from app.core.config import settings
from app.core.exceptions import CredentialAttempt, NoWorkingCredentialError
from app.core.logging import mask_secret
from app.services.credentials.cache import CredentialCache, NullCredentialCache
from app.services.credentials.probes import IdentityProbe
from app.services.credentials.types import ActiveCredential, CredentialSet

logger = structlog.get_logger()


class CredentialResolver:
    """Resolves a working credential for one provider."""

    def __init__(
        self,
        probe: IdentityProbe,
        cache: CredentialCache | None = None,
        cache_ttl_seconds: int | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            probe: Identity check for the provider
            cache: Positive-result cache (defaults to no caching)
            cache_ttl_seconds: How long a working method is trusted
            http_client: Shared HTTP client; one is created lazily otherwise
            timeout: Request timeout for identity checks (seconds)
        """
        self.probe = probe
        self.cache = cache or NullCredentialCache()
        self.cache_ttl_seconds = (
            settings.CREDENTIAL_CACHE_TTL_SECONDS if cache_ttl_seconds is None else cache_ttl_seconds
        )
        self.timeout = settings.HTTP_TIMEOUT_SECONDS if timeout is None else timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self.logger = logger.bind(component="credential_resolver", provider=probe.provider_name)

    @property
    def provider_name(self) -> str:
        """Provider this resolver checks against."""
        return self.probe.provider_name

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client for identity checks."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.probe.base_url,
                headers={"User-Agent": "campaign-relay/1.0"},
                timeout=self.timeout,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this resolver created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def resolve(self, credentials: CredentialSet) -> ActiveCredential:
        """Return the first candidate that passes the identity check.

        Args:
            credentials: Ordered candidate methods for the account

        Returns:
            ActiveCredential tagged with the winning method kind

        Raises:
            NoWorkingCredentialError: If there are no candidates or all fail
        """
        log = self.logger.bind(account=mask_secret(credentials.account_id))

        if not credentials.methods:
            log.warning("no_credential_candidates")
            raise NoWorkingCredentialError(self.provider_name, [])

        cached = await self._from_cache(credentials)
        if cached is not None:
            log.debug("credential_cache_hit", method=cached.method_kind)
            return cached

        client = await self._get_http_client()
        attempts: list[CredentialAttempt] = []

        for method in credentials.methods:
            if not method.is_complete:
                attempts.append(
                    CredentialAttempt(method=method.kind, error="Missing principal or secret")
                )
                continue

            try:
                outcome = await self.probe.check(client, method, credentials.account_id)
            except httpx.HTTPError as e:
                log.warning("credential_check_transport_error", method=method.kind, error=str(e))
                attempts.append(CredentialAttempt(method=method.kind, error=f"Transport error: {e!s}"))
                continue

            if outcome.success:
                log.info("credential_resolved", method=method.kind, attempts=len(attempts) + 1)
                await self.cache.set(
                    self.provider_name,
                    credentials.account_id,
                    method.kind,
                    self.cache_ttl_seconds,
                )
                return ActiveCredential(
                    provider=self.provider_name,
                    account_id=credentials.account_id,
                    method=method,
                    account_info=outcome.account_info,
                )

            log.warning(
                "credential_check_failed",
                method=method.kind,
                status_code=outcome.status_code,
                error=outcome.error,
            )
            attempts.append(
                CredentialAttempt(
                    method=method.kind,
                    error=outcome.error or "Authentication failed",
                    status_code=outcome.status_code,
                )
            )

        log.error("no_working_credential", attempts=[a.method for a in attempts])
        raise NoWorkingCredentialError(self.provider_name, attempts)

    async def invalidate(self, credentials: CredentialSet) -> None:
        """Drop the cached method after the provider refused it."""
        await self.cache.invalidate(self.provider_name, credentials.account_id)
        self.logger.info("credential_invalidated", account=mask_secret(credentials.account_id))

    async def _from_cache(self, credentials: CredentialSet) -> ActiveCredential | None:
        kind = await self.cache.get(self.provider_name, credentials.account_id)
        if not kind:
            return None
        method = credentials.find(kind)
        if method is None or not method.is_complete:
            # Configuration changed since the entry was written.
            await self.cache.invalidate(self.provider_name, credentials.account_id)
            return None
        return ActiveCredential(
            provider=self.provider_name,
            account_id=credentials.account_id,
            method=method,
            from_cache=True,
        )
