"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DraftflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport, QueuedMessage


def get_transport(
    backend: Optional[str] = None, config: Optional[DraftflowConfig] = None
) -> BaseTransport:
    """Factory function to get the configured transport."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("DRAFTFLOW_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    elif backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        return RabbitMQTransport(url=config.transport.rabbitmq.url)
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "QueuedMessage", "get_transport"]
