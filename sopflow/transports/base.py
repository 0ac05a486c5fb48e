"""Base transport interface for the sopflow job queue."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import JobMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for the job queue.

    Delivery is at-least-once. ``publish`` accepts a delay for scheduled
    dispatch, and the lock methods provide per-key mutual exclusion with a
    TTL so an abandoned lock eventually frees itself.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(
        self, topic: str, message: JobMessage, delay: Optional[float] = None
    ) -> None:
        """Send a job to a topic, optionally not before ``delay`` seconds."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, JobMessage]]:
        """Yield raw transport message and JobMessage pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)

    @abc.abstractmethod
    async def acquire_lock(self, key: str, ttl_seconds: float) -> Optional[str]:
        """Take the lock named ``key``; return an owner token or ``None`` if held."""
        raise NotImplementedError

    @abc.abstractmethod
    async def release_lock(self, key: str, token: str) -> bool:
        """Release ``key`` if ``token`` still owns it."""
        raise NotImplementedError
