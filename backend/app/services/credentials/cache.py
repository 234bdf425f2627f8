"""Short-lived cache of the last method kind that passed the identity check.

Only the method kind is stored, never the secret; the secret is looked up
again in the caller's candidate set on a hit.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog
from redis.exceptions import RedisError

from app.core.config import settings

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = structlog.get_logger()


class CredentialCache(ABC):
    """Positive-result cache keyed by (provider, account)."""

    @abstractmethod
    async def get(self, provider: str, account_id: str) -> str | None:
        """Return the cached method kind, if still fresh."""

    @abstractmethod
    async def set(self, provider: str, account_id: str, kind: str, ttl_seconds: int) -> None:
        """Remember a working method kind."""

    @abstractmethod
    async def invalidate(self, provider: str, account_id: str) -> None:
        """Forget the cached method (after an observed 401/403)."""


class NullCredentialCache(CredentialCache):
    """Cache that never hits; every send re-resolves."""

    async def get(self, provider: str, account_id: str) -> str | None:
        """Always miss."""
        return None

    async def set(self, provider: str, account_id: str, kind: str, ttl_seconds: int) -> None:
        """Discard."""

    async def invalidate(self, provider: str, account_id: str) -> None:
        """Nothing to drop."""


class InMemoryCredentialCache(CredentialCache):
    """Process-local cache with monotonic-clock expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[str, float]] = {}

    async def get(self, provider: str, account_id: str) -> str | None:
        """Return the kind unless expired."""
        entry = self._entries.get((provider, account_id))
        if entry is None:
            return None
        kind, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop((provider, account_id), None)
            return None
        return kind

    async def set(self, provider: str, account_id: str, kind: str, ttl_seconds: int) -> None:
        """Store with an expiry; a zero TTL disables caching."""
        if ttl_seconds <= 0:
            return
        self._entries[(provider, account_id)] = (kind, self._clock() + ttl_seconds)

    async def invalidate(self, provider: str, account_id: str) -> None:
        """Drop the entry."""
        self._entries.pop((provider, account_id), None)


class RedisCredentialCache(CredentialCache):
    """Cache shared across worker processes through Redis."""

    KEY_PREFIX = "credential:active"

    def __init__(self, redis_factory: Callable[[], Awaitable["Redis"]]) -> None:
        """Initialize the cache.

        Args:
            redis_factory: Coroutine returning the shared Redis client
                (normally ``app.db.redis.get_redis``)
        """
        self._redis_factory = redis_factory
        self.logger = logger.bind(component="credential_cache", backend="redis")

    def _key(self, provider: str, account_id: str) -> str:
        return f"{self.KEY_PREFIX}:{provider}:{account_id}"

    async def get(self, provider: str, account_id: str) -> str | None:
        """Read the cached kind; Redis TTL handles expiry. Errors count as a miss."""
        try:
            redis = await self._redis_factory()
            value = await redis.get(self._key(provider, account_id))
        except RedisError as e:
            self.logger.warning("credential_cache_read_failed", provider=provider, error=str(e))
            return None
        return value or None

    async def set(self, provider: str, account_id: str, kind: str, ttl_seconds: int) -> None:
        """SET with EX."""
        if ttl_seconds <= 0:
            return
        try:
            redis = await self._redis_factory()
            await redis.set(self._key(provider, account_id), kind, ex=ttl_seconds)
        except RedisError as e:
            self.logger.warning("credential_cache_write_failed", provider=provider, error=str(e))

    async def invalidate(self, provider: str, account_id: str) -> None:
        """DEL the key."""
        try:
            redis = await self._redis_factory()
            await redis.delete(self._key(provider, account_id))
        except RedisError as e:
            self.logger.warning(
                "credential_cache_invalidate_failed", provider=provider, error=str(e)
            )
            return
        self.logger.debug("credential_cache_invalidated", provider=provider)


def create_credential_cache(backend: str | None = None) -> CredentialCache:
    """Build the cache selected by ``CREDENTIAL_CACHE_BACKEND``.

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = (backend or settings.CREDENTIAL_CACHE_BACKEND).lower()
    if backend == "memory":
        return InMemoryCredentialCache()
    if backend == "redis":
        from app.db.redis import get_redis

        return RedisCredentialCache(get_redis)
    if backend == "none":
        return NullCredentialCache()
    raise ValueError(f"Unsupported credential cache backend: {backend}")
