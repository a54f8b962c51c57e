"""
Durable work queue on Redis with manual acknowledgment.

Layout for a queue named ``daily-download``:

    queue:daily-download             pending messages (LPUSH in, LMOVE out from the right)
    queue:daily-download:processing  messages handed to a worker, not yet acknowledged
    queue:daily-download:leases      sorted set, raw message -> visibility deadline
    queue:daily-download:deliveries  hash, message_id -> delivery count
    queue:daily-download:dead        messages that exhausted their deliveries

A reserved message stays in the processing list until it is acknowledged.
If the worker dies or is cancelled the lease expires and
``requeue_expired`` puts the message back, which gives at-least-once
delivery. Consumers must therefore be idempotent.

Every move between lists runs as one Lua script, so a message is always
in exactly one of pending, processing (with a lease) or dead.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.config import settings
from core.exceptions import QueueError

logger = logging.getLogger(__name__)

# KEYS: pending, processing, leases  ARGV: lease deadline
_RESERVE_SCRIPT = """
local raw = redis.call('LMOVE', KEYS[1], KEYS[2], 'RIGHT', 'LEFT')
if not raw then
    return false
end
redis.call('ZADD', KEYS[3], ARGV[1], raw)
return raw
"""

# KEYS: processing, leases, pending, deliveries
# ARGV: raw message, message id, 'front' | 'back', delivery count adjustment
_RETURN_SCRIPT = """
if redis.call('LREM', KEYS[1], 1, ARGV[1]) == 0 then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
if tonumber(ARGV[4]) ~= 0 then
    redis.call('HINCRBY', KEYS[4], ARGV[2], ARGV[4])
end
if ARGV[3] == 'front' then
    redis.call('RPUSH', KEYS[3], ARGV[1])
else
    redis.call('LPUSH', KEYS[3], ARGV[1])
end
return 1
"""

# KEYS: leases, processing, pending  ARGV: raw message
_REQUEUE_EXPIRED_SCRIPT = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
    return 0
end
if redis.call('LREM', KEYS[2], 1, ARGV[1]) == 0 then
    return 0
end
redis.call('LPUSH', KEYS[3], ARGV[1])
return 1
"""


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    package_id: str
    published_at: datetime

    def to_json(self) -> str:
        return json.dumps(
            {
                "message_id": self.message_id,
                "package_id": self.package_id,
                "published_at": self.published_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "QueueMessage":
        data = json.loads(raw)
        return cls(
            message_id=data["message_id"],
            package_id=data["package_id"],
            published_at=datetime.fromisoformat(data["published_at"]),
        )

    @classmethod
    def for_package(cls, package_id: str) -> "QueueMessage":
        return cls(
            message_id=uuid.uuid4().hex,
            package_id=package_id,
            published_at=datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class Delivery:
    """A reserved message and how many times it has been handed out"""
    raw: str
    message: QueueMessage
    delivery_count: int


class WorkQueue:
    """
    Reliable queue of package ids to fetch.

    Usage:
        queue = WorkQueue(redis)
        await queue.publish_many(["Sentry", "Serilog"])

        delivery = await queue.reserve()
        if delivery:
            ...
            await queue.ack(delivery)
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        name: Optional[str] = None,
        max_deliveries: Optional[int] = None,
        visibility_timeout: Optional[int] = None,
        message_ttl: Optional[int] = None
    ):
        self.redis = redis
        self.name = name or settings.QUEUE_NAME
        self.max_deliveries = max_deliveries or settings.QUEUE_MAX_DELIVERIES
        self.visibility_timeout = visibility_timeout or settings.QUEUE_VISIBILITY_TIMEOUT_SECONDS
        self.message_ttl = message_ttl or settings.QUEUE_MESSAGE_TTL_SECONDS

        self.pending_key = f"queue:{self.name}"
        self.processing_key = f"queue:{self.name}:processing"
        self.leases_key = f"queue:{self.name}:leases"
        self.deliveries_key = f"queue:{self.name}:deliveries"
        self.dead_key = f"queue:{self.name}:dead"

        self._reserve_script = redis.register_script(_RESERVE_SCRIPT)
        self._return_script = redis.register_script(_RETURN_SCRIPT)
        self._requeue_expired_script = redis.register_script(_REQUEUE_EXPIRED_SCRIPT)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, package_id: str) -> QueueMessage:
        message = QueueMessage.for_package(package_id)
        try:
            await self.redis.lpush(self.pending_key, message.to_json())
        except RedisError as e:
            raise QueueError(
                "Failed to publish message",
                context={"queue": self.name, "package_id": package_id},
                original_exception=e
            )
        return message

    async def publish_many(self, package_ids: Sequence[str]) -> int:
        """Publish one message per id in a single pipelined round trip"""
        if not package_ids:
            return 0
        messages = [QueueMessage.for_package(package_id).to_json() for package_id in package_ids]
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                for raw in messages:
                    pipe.lpush(self.pending_key, raw)
                await pipe.execute()
        except RedisError as e:
            raise QueueError(
                "Failed to publish message batch",
                context={"queue": self.name, "batch_size": len(messages)},
                original_exception=e
            )
        return len(messages)

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def reserve(self) -> Optional[Delivery]:
        """
        Move the oldest pending message to the processing list and lease it.

        Returns:
            The delivery, or None when the queue is empty
        """
        try:
            raw = await self._reserve_script(
                keys=[self.pending_key, self.processing_key, self.leases_key],
                args=[time.time() + self.visibility_timeout],
            )
            if raw is None:
                return None

            message = QueueMessage.from_json(raw)
            delivery_count = await self.redis.hincrby(self.deliveries_key, message.message_id, 1)
        except RedisError as e:
            raise QueueError(
                "Failed to reserve message",
                context={"queue": self.name},
                original_exception=e
            )
        except (ValueError, KeyError):
            # Unreadable payload
            logger.error(f"Dropping malformed message from {self.name}: {raw!r}")
            await self._dead_letter(raw, None)
            return None

        if int(delivery_count) > self.max_deliveries:
            logger.error(
                f"Message for {message.package_id} exceeded {self.max_deliveries} deliveries, dead-lettering"
            )
            await self._dead_letter(raw, message.message_id)
            return None

        return Delivery(raw=raw, message=message, delivery_count=int(delivery_count))

    def is_expired(self, delivery: Delivery) -> bool:
        age = datetime.now(timezone.utc) - delivery.message.published_at
        return age.total_seconds() > self.message_ttl

    async def ack(self, delivery: Delivery) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self.processing_key, 1, delivery.raw)
                pipe.zrem(self.leases_key, delivery.raw)
                pipe.hdel(self.deliveries_key, delivery.message.message_id)
                await pipe.execute()
        except RedisError as e:
            raise QueueError(
                "Failed to acknowledge message",
                context={"queue": self.name, "package_id": delivery.message.package_id},
                original_exception=e
            )

    async def nack(self, delivery: Delivery) -> bool:
        """
        Return a message for redelivery, or dead-letter it once it has been
        delivered ``max_deliveries`` times.

        Returns:
            True when the message was requeued, False when dead-lettered
        """
        if delivery.delivery_count >= self.max_deliveries:
            logger.error(
                f"Message for {delivery.message.package_id} dead-lettered after "
                f"{delivery.delivery_count} deliveries"
            )
            await self._dead_letter(delivery.raw, delivery.message.message_id)
            return False

        await self._return(delivery, "back", 0)
        return True

    async def release(self, delivery: Delivery) -> None:
        """
        Hand a message back without counting the delivery.

        Used when the failure lies outside the message, such as the registry
        being down. The message goes to the front of the queue and keeps its
        delivery count.
        """
        await self._return(delivery, "front", -1)

    async def _return(self, delivery: Delivery, end: str, delivery_adjustment: int) -> None:
        try:
            returned = await self._return_script(
                keys=[self.processing_key, self.leases_key, self.pending_key, self.deliveries_key],
                args=[delivery.raw, delivery.message.message_id, end, delivery_adjustment],
            )
        except RedisError as e:
            raise QueueError(
                "Failed to requeue message",
                context={"queue": self.name, "package_id": delivery.message.package_id},
                original_exception=e
            )
        if not returned:
            logger.warning(
                f"Message for {delivery.message.package_id} was no longer in processing, "
                f"lease already expired"
            )

    async def dead_letter(self, delivery: Delivery) -> None:
        """Park a message that can never succeed"""
        await self._dead_letter(delivery.raw, delivery.message.message_id)

    async def _dead_letter(self, raw: str, message_id: Optional[str]) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self.processing_key, 1, raw)
                pipe.zrem(self.leases_key, raw)
                pipe.lpush(self.dead_key, raw)
                if message_id:
                    pipe.hdel(self.deliveries_key, message_id)
                await pipe.execute()
        except RedisError as e:
            raise QueueError(
                "Failed to dead-letter message",
                context={"queue": self.name},
                original_exception=e
            )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def requeue_expired(self, now: Optional[float] = None) -> int:
        """
        Put messages whose lease ran out back on the pending list.

        Returns:
            Number of messages requeued
        """
        now = time.time() if now is None else now
        try:
            expired: List[str] = await self.redis.zrangebyscore(self.leases_key, "-inf", now)
            requeued = 0
            for raw in expired:
                # 0 when another sweeper or a late ack got there first
                requeued += await self._requeue_expired_script(
                    keys=[self.leases_key, self.processing_key, self.pending_key],
                    args=[raw],
                )
        except RedisError as e:
            raise QueueError(
                "Failed to requeue expired messages",
                context={"queue": self.name},
                original_exception=e
            )

        if requeued:
            logger.warning(f"Requeued {requeued} messages with expired leases on {self.name}")
        return requeued

    async def stats(self) -> Dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self.pending_key)
            pipe.llen(self.processing_key)
            pipe.llen(self.dead_key)
            pending, processing, dead = await pipe.execute()
        return {"pending": pending, "processing": processing, "dead_letter": dead}
