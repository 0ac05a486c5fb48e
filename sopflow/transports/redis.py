"""Redis transport for cross-process job delivery."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import JobMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

# Delete the lock only while it still holds the caller's token.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis-based transport for distributed job delivery.

    Ready jobs live in a list per topic. Delayed jobs wait in a sorted set
    scored by due time and are moved onto the list by subscribers.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "sopflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    def _delayed(self, topic: str) -> str:
        return f"{self.prefix}:{topic}:delayed"

    def _lock_key(self, key: str) -> str:
        return f"{self.prefix}:lock:{key}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(
        self, topic: str, message: JobMessage, delay: Optional[float] = None
    ) -> None:
        """Push onto the topic list, or the delayed set when ``delay`` is given."""
        if not self._redis:
            await self.connect()

        message_json = message.to_json()
        if delay:
            await self._redis.zadd(
                self._delayed(topic), {message_json: time.time() + delay}
            )
        else:
            await self._redis.lpush(self._queue(topic), message_json)

    async def _promote_due(self, topic: str) -> None:
        due = await self._redis.zrangebyscore(self._delayed(topic), 0, time.time())
        for message_json in due:
            # zrem decides which subscriber wins a due job
            if await self._redis.zrem(self._delayed(topic), message_json):
                await self._redis.lpush(self._queue(topic), message_json)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], JobMessage]]:
        """Subscribe to jobs from the Redis queue."""
        if not self._redis:
            await self.connect()

        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            await self._promote_due(topic)
            result = await self._redis.brpop(self._queue(topic), timeout=1)

            if result:
                _, message_json = result
                try:
                    message = JobMessage.from_json(message_json)
                except ValidationError as e:
                    logger.error(f"Dropping unparseable job on {topic}: {e}")
                    continue
                yield (topic, message_json), message

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if requeue:
            topic, message_json = raw_message
            await self._redis.lpush(self._queue(topic), message_json)

    async def acquire_lock(self, key: str, ttl_seconds: float) -> Optional[str]:
        if not self._redis:
            await self.connect()
        token = str(uuid.uuid4())
        acquired = await self._redis.set(
            self._lock_key(key), token, nx=True, px=int(ttl_seconds * 1000)
        )
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> bool:
        if not self._redis:
            await self.connect()
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, self._lock_key(key), token)
        return bool(released)
