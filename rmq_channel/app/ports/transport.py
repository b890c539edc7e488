"""Transport port: contract of the AMQP client underneath the channel façade.

The façade depends only on this port; broker adapters (aio_pika, in-memory)
implement it. Adapters raise whatever their client raises; translating those
failures into typed errors is the façade's job.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable


@dataclass(frozen=True)
class InboundMessage:
    """One message handed to a consumer callback by the transport."""

    delivery_tag: int
    body: bytes
    properties: Mapping[str, Any] = field(default_factory=dict)
    redelivered: bool = False
    exchange: str = ""
    routing_key: str = ""
    consumer_tag: str | None = None


DeliveryCallback = Callable[[InboundMessage], Awaitable[None]]


@runtime_checkable
class ChannelHandle(Protocol):
    """One open session over a transport connection."""

    @property
    def number(self) -> int | None: ...

    @property
    def is_closed(self) -> bool: ...

    async def close(self, code: int | None = None, reason: str | None = None) -> None: ...

    async def abort(self, code: int | None = None, reason: str | None = None) -> None: ...

    async def queue_declare(
        self,
        name: str = "",
        *,
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: Mapping[str, Any] | None = None,
    ) -> str:
        """Declare a queue and return the name the broker settled on."""
        ...

    async def exchange_declare(
        self,
        name: str,
        type: str,
        *,
        durable: bool = False,
        auto_delete: bool = False,
        arguments: Mapping[str, Any] | None = None,
    ) -> None: ...

    async def queue_bind(self, queue: str, exchange: str, routing_key: str) -> None: ...

    async def basic_publish(
        self,
        exchange: str,
        routing_key: str,
        properties: Mapping[str, Any] | None,
        body: bytes,
    ) -> None: ...

    async def queue_delete(self, name: str) -> None: ...

    async def exchange_delete(self, name: str) -> None: ...

    async def queue_purge(self, name: str) -> None: ...

    async def basic_ack(self, delivery_tag: int, multiple: bool) -> None: ...

    async def basic_nack(self, delivery_tag: int, multiple: bool, requeue: bool) -> None: ...

    async def basic_consume(
        self,
        queue: str,
        callback: DeliveryCallback,
        *,
        auto_ack: bool = False,
    ) -> str:
        """Start a consumer; returns its consumer tag."""
        ...

    async def basic_cancel(self, consumer_tag: str) -> None: ...

    async def basic_qos(self, prefetch_count: int) -> None: ...


@runtime_checkable
class Transport(Protocol):
    """Owns the physical connection and hands out channels."""

    @property
    def is_closed(self) -> bool: ...

    async def create_channel(self) -> ChannelHandle: ...

    async def close(self) -> None: ...
