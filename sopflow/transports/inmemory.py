"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import JobMessage
from .base import BaseTransport

RawJob = Tuple[str, str, JobMessage]


class InMemoryTransport(BaseTransport[RawJob]):
    """Simple in-process queue for unit tests.

    Raw messages are ``(topic, json, message)`` triples so ``nack`` can put a
    message back on the queue it came from.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawJob]] = defaultdict(deque)
        self._locks: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def publish(
        self, topic: str, message: JobMessage, delay: Optional[float] = None
    ) -> None:
        """Publish message to in-memory queue."""
        if delay:
            message = message.model_copy(
                update={
                    "not_before": datetime.now(timezone.utc) + timedelta(seconds=delay)
                }
            )
        raw = (topic, message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    async def receive(
        self, topic: str, now: Optional[datetime] = None
    ) -> Optional[RawJob]:
        """Pop the oldest due message on ``topic`` without waiting."""
        async with self._lock:
            queue = self._queues[topic]
            for raw in list(queue):
                if raw[2].is_due(now):
                    queue.remove(raw)
                    return raw
        return None

    def pending(self, topic: str) -> List[JobMessage]:
        """Messages still queued on ``topic``, delayed ones included."""
        return [raw[2] for raw in self._queues[topic]]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawJob, JobMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            raw_message = await self.receive(topic)
            if raw_message is not None:
                yield raw_message, raw_message[2]
                continue

            await asyncio.sleep(0.1)

    async def ack(self, raw_message: RawJob) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawJob, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append(raw_message)

    async def acquire_lock(self, key: str, ttl_seconds: float) -> Optional[str]:
        now = time.monotonic()
        async with self._lock:
            held = self._locks.get(key)
            if held is not None and held[1] > now:
                return None
            token = str(uuid.uuid4())
            self._locks[key] = (token, now + ttl_seconds)
            return token

    async def release_lock(self, key: str, token: str) -> bool:
        async with self._lock:
            held = self._locks.get(key)
            if held is None or held[0] != token:
                return False
            del self._locks[key]
            return True
