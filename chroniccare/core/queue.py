"""Durable priority queue with dead-lettering, backed by Redis.

Layout per queue name ``q``:

- ``queue:q`` sorted set of pending messages; lower score pops first, the score
  encodes priority (higher first) then publish time (older first).
- ``queue:q:processing`` hash of reserved, unacknowledged messages by id.
- ``queue:q.dlq`` sorted set of dead letters scored by the time they were parked.

Transport-level redelivery is counted per message and is independent of the
notification retry counter kept in the database.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)

MAX_PRIORITY = 10
_PRIORITY_BAND = 10**13

# Pops up to ARGV[1] members and records them as in flight in one step.
_RESERVE_SCRIPT = """
local popped = redis.call('ZPOPMIN', KEYS[1], ARGV[1])
local reserved = {}
for i = 1, #popped, 2 do
    local member = popped[i]
    local message = cjson.decode(member)
    redis.call('HSET', KEYS[2], message['id'], member)
    table.insert(reserved, member)
end
return reserved
"""


class QueuePublishError(Exception):
    """Raised when a message cannot be handed to the queue."""


@dataclass
class QueueMessage:
    """A message as seen by consumers."""

    queue: str
    body: dict[str, Any]
    priority: int = 5
    id: str = field(default_factory=lambda: uuid4().hex)
    deliveries: int = 0
    published_at: float = field(default_factory=time.time)

    def encode(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "body": self.body,
                "priority": self.priority,
                "deliveries": self.deliveries,
                "published_at": self.published_at,
            },
            default=str,
            sort_keys=True,
        )

    @classmethod
    def decode(cls, queue: str, raw: str) -> "QueueMessage":
        data = json.loads(raw)
        return cls(
            queue=queue,
            body=data["body"],
            priority=data["priority"],
            id=data["id"],
            deliveries=data.get("deliveries", 0),
            published_at=data.get("published_at", time.time()),
        )


class NotificationQueue(Protocol):
    """Operations the scheduler and the worker pool need from a queue."""

    async def publish(self, queue: str, body: dict[str, Any], priority: int = 5) -> str: ...

    async def reserve(self, queue: str, count: int) -> list[QueueMessage]: ...

    async def ack(self, message: QueueMessage) -> None: ...

    async def nack(self, message: QueueMessage, requeue: bool = True) -> None: ...


def clamp_priority(priority: int) -> int:
    return max(0, min(MAX_PRIORITY, int(priority)))


class RedisNotificationQueue:
    """Redis implementation of :class:`NotificationQueue`."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        max_deliveries: int = 3,
        dlq_retention_days: int = 7,
    ):
        self.redis = redis_client
        self.max_deliveries = max_deliveries
        self.dlq_retention_seconds = dlq_retention_days * 86400
        self._reserve = redis_client.register_script(_RESERVE_SCRIPT)

    @staticmethod
    def _ready_key(queue: str) -> str:
        return f"queue:{queue}"

    @staticmethod
    def _processing_key(queue: str) -> str:
        return f"queue:{queue}:processing"

    @staticmethod
    def _dead_letter_key(queue: str) -> str:
        return f"queue:{queue}.dlq"

    @staticmethod
    def _score(priority: int, published_at: float) -> int:
        return (MAX_PRIORITY - priority) * _PRIORITY_BAND + int(published_at * 1000)

    async def publish(self, queue: str, body: dict[str, Any], priority: int = 5) -> str:
        """
        Publish a message.

        Args:
            queue: Queue name
            body: JSON-serialisable payload
            priority: 0..10, higher is consumed first

        Returns:
            Message id

        Raises:
            QueuePublishError: If Redis rejects the write
        """
        message = QueueMessage(queue=queue, body=body, priority=clamp_priority(priority))
        try:
            await self.redis.zadd(
                self._ready_key(queue),
                {message.encode(): self._score(message.priority, message.published_at)},
            )
        except RedisError as e:
            raise QueuePublishError(f"Failed to publish to {queue}: {e}") from e

        logger.debug("queue_message_published", queue=queue, message_id=message.id)
        return message.id

    async def reserve(self, queue: str, count: int) -> list[QueueMessage]:
        """Take up to ``count`` messages, highest priority first."""
        raw = await self._reserve(
            keys=[self._ready_key(queue), self._processing_key(queue)],
            args=[count],
        )
        return [QueueMessage.decode(queue, item) for item in raw or []]

    async def ack(self, message: QueueMessage) -> None:
        await self.redis.hdel(self._processing_key(message.queue), message.id)

    async def nack(self, message: QueueMessage, requeue: bool = True) -> None:
        """
        Return a message after a failed handling attempt.

        The message goes back to the ready set until it has been delivered
        ``max_deliveries`` times; after that, or when ``requeue`` is False, it is
        parked in the dead-letter queue.
        """
        message.deliveries += 1
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self._processing_key(message.queue), message.id)
            if requeue and message.deliveries < self.max_deliveries:
                pipe.zadd(
                    self._ready_key(message.queue),
                    {message.encode(): self._score(message.priority, time.time())},
                )
            else:
                now = time.time()
                dlq = self._dead_letter_key(message.queue)
                pipe.zadd(dlq, {message.encode(): now})
                pipe.zremrangebyscore(dlq, "-inf", now - self.dlq_retention_seconds)
            await pipe.execute()

        if not requeue or message.deliveries >= self.max_deliveries:
            logger.warning(
                "queue_message_dead_lettered",
                queue=message.queue,
                message_id=message.id,
                deliveries=message.deliveries,
            )

    async def recover_inflight(self, queue: str) -> int:
        """Return messages left reserved by a crashed consumer to the queue."""
        entries = await self.redis.hgetall(self._processing_key(queue))
        for raw in entries.values():
            await self.nack(QueueMessage.decode(queue, raw), requeue=True)
        if entries:
            logger.info("queue_inflight_recovered", queue=queue, count=len(entries))
        return len(entries)

    async def dead_letters(self, queue: str, limit: int = 100) -> list[QueueMessage]:
        """Most recent dead letters, newest first, for manual inspection."""
        raw = await self.redis.zrevrange(self._dead_letter_key(queue), 0, limit - 1)
        return [QueueMessage.decode(queue, item) for item in raw]

    async def depth(self, queue: str) -> int:
        return int(await self.redis.zcard(self._ready_key(queue)))
