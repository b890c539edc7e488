"""Transport factory: selects the implementation from config. Only place that imports concrete transports."""
from __future__ import annotations

from rmq_channel.app.config.settings import Settings
from rmq_channel.app.infrastructure.messaging.inmemory.in_memory_transport import (
    InMemoryBroker,
    InMemoryTransport,
)
from rmq_channel.app.infrastructure.messaging.rabbitmq.aio_pika_transport import (
    connect_aio_pika_transport,
)
from rmq_channel.app.ports.transport import Transport


async def create_transport(settings: Settings, *, broker: InMemoryBroker | None = None) -> Transport:
    """Build and connect the configured transport.

    `broker` only applies to the in-memory backend and lets several transports
    share one broker.
    """
    backend = settings.transport_backend.strip().lower()

    if backend == "rabbitmq":
        return await connect_aio_pika_transport(settings)

    if backend == "inmemory":
        return InMemoryTransport(broker)

    raise ValueError(f"Unsupported transport backend: {backend}")
