"""Transport selection."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import BatchStepConfig, TransportConfig, load_config
from .base import BaseTransport, Lifespan
from .inmemory import InMemoryTransport


def _redis(conf: TransportConfig) -> BaseTransport:
    from .redis import RedisTransport

    return RedisTransport(**conf.redis.model_dump())


def _rabbitmq(conf: TransportConfig) -> BaseTransport:
    from .rabbitmq import RabbitMQTransport

    return RabbitMQTransport(url=conf.rabbitmq.url)


def _kafka(conf: TransportConfig) -> BaseTransport:
    from .kafka import KafkaTransport

    return KafkaTransport(**conf.kafka.model_dump())


_BUILDERS: Dict[str, Callable[[TransportConfig], BaseTransport]] = {
    "inmemory": lambda conf: InMemoryTransport(),
    "redis": _redis,
    "rabbitmq": _rabbitmq,
    "kafka": _kafka,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[BatchStepConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``BATCHSTEP_TRANSPORT`` or config."""

    config = config or load_config()
    name = (backend or os.getenv("BATCHSTEP_TRANSPORT") or config.transport.backend).lower()
    try:
        build = _BUILDERS[name]
    except KeyError:
        raise ValueError(f"Unsupported transport backend: {name}") from None
    return build(config.transport)


__all__ = ["BaseTransport", "InMemoryTransport", "Lifespan", "get_transport"]
