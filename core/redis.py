"""
Redis client factory shared by the work queue, job locks and the read cache
"""

import logging
from typing import Optional

import redis.asyncio as aioredis

from core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[aioredis.Redis] = None


def get_redis() -> aioredis.Redis:
    """Return the process-wide Redis client, creating it on first use"""
    global _client
    if _client is None:
        _client = aioredis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
        logger.info("Redis client created")
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("Redis client closed")


async def check_redis(client: aioredis.Redis) -> bool:
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return False
