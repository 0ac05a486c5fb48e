"""Job queue transports and the factory selecting one from configuration."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SopflowConfig, TransportConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _redis_transport(settings: TransportConfig) -> BaseTransport:
    from .redis import RedisTransport

    redis_conf = settings.redis
    return RedisTransport(
        host=redis_conf.host,
        port=redis_conf.port,
        db=redis_conf.db,
        password=redis_conf.password,
        prefix=redis_conf.key_prefix,
    )


_BACKENDS = {
    "inmemory": lambda settings: InMemoryTransport(),
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[SopflowConfig] = None
) -> BaseTransport:
    """Build the job queue transport.

    ``backend`` wins over ``SOPFLOW_TRANSPORT``, which wins over the
    configured ``transport.backend``. Redis is imported lazily so the
    in-memory queue works without a Redis client installed.
    """
    config = config or load_config()
    name = (backend or os.getenv("SOPFLOW_TRANSPORT") or config.transport.backend).lower()
    factory = _BACKENDS.get(name)
    if factory is None:
        raise ValueError(f"Unsupported transport backend: {name}")
    return factory(config.transport)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
