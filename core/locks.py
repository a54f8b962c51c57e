"""
Mutual exclusion for batch jobs.

A job that must never overlap with itself (publishing the daily queue,
replacing a week's trending snapshot) acquires a ``JobLock`` first. The lock
is a Redis key set with NX and an expiry, so a crashed holder releases it
automatically once the TTL passes. Release only deletes the key while it
still carries this holder's token.
"""

import logging
import uuid
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from core.config import settings
from core.exceptions import ConcurrentExecutionSkippedError

logger = logging.getLogger(__name__)


class JobLock:
    """Non-blocking, token-checked Redis lock for one named job"""
    
    def __init__(self, redis: aioredis.Redis, job_name: str, ttl_seconds: Optional[int] = None):
        self.redis = redis
        self.job_name = job_name
        self.key = f"lock:job:{job_name}"
        self.ttl_seconds = ttl_seconds or settings.JOB_LOCK_TTL_SECONDS
        self.token: Optional[str] = None
    
    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        acquired = await self.redis.set(self.key, token, nx=True, ex=self.ttl_seconds)
        if acquired:
            self.token = token
            logger.debug(f"Acquired lock {self.key}")
            return True
        return False
    
    async def release(self) -> None:
        if self.token is None:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self.key)
                current = await pipe.get(self.key)
                if current == self.token:
                    pipe.multi()
                    pipe.delete(self.key)
                    await pipe.execute()
                    logger.debug(f"Released lock {self.key}")
                else:
                    await pipe.unwatch()
                    logger.warning(f"Lock {self.key} expired before release")
            except WatchError:
                logger.warning(f"Lock {self.key} changed while releasing")
        self.token = None
    
    async def __aenter__(self) -> "JobLock":
        if not await self.acquire():
            raise ConcurrentExecutionSkippedError(
                f"Job '{self.job_name}' is already running",
                context={"job_name": self.job_name, "lock_key": self.key}
            )
        return self
    
    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
