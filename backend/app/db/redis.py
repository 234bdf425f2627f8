"""Redis connection backing the shared credential cache."""

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from app.core.config import settings

logger = structlog.get_logger()

_client: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Shared client, created from REDIS_URL on first use."""
    global _client
    if _client is None:
        _client = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
    return _client


async def check_redis() -> bool:
    """PING the server. Unreachable servers are reported, not raised."""
    client = await get_redis()
    try:
        return bool(await client.ping())
    except RedisError as e:
        logger.warning("redis_unreachable", error=str(e))
        return False


async def close_redis() -> None:
    """Close the shared client if one was opened."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
