"""Process-wide Redis client (rate limiter and readiness check)."""

import logging
from typing import Optional

import redis.asyncio as redis

from app.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Lazily build the pooled client from REDIS_URL."""
    global _client
    if _client is None:
        _client = redis.from_url(settings.redis_url, decode_responses=True, max_connections=50)
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        client, _client = _client, None
        await client.aclose()


async def ping_redis() -> bool:
    try:
        return bool(await (await get_redis()).ping())
    except redis.RedisError as exc:
        logger.warning("Redis ping failed: %s", exc)
        return False
