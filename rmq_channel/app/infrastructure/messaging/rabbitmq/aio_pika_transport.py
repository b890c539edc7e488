"""
RabbitMQ transport: implements ports.transport on top of aio_pika.

Connection:
  connect_aio_pika_transport(settings) -> connect_robust with exponential backoff ->
  AioPikaTransport. Only the connect is retried; channel operations surface
  their first failure.

Acknowledgements go straight to the underlying aiormq channel by delivery tag,
so the façade's Delivery handle owns ack state rather than aio_pika's
IncomingMessage.
"""
from __future__ import annotations

from typing import Any, Mapping

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import ChannelInvalidStateError
from loguru import logger

from rmq_channel.app.config.settings import Settings
from rmq_channel.app.constants import DEFAULT_EXCHANGE, UNINITIALIZED_TAG
from rmq_channel.app.core import SERVICE_NAME
from rmq_channel.app.core.backoff import exponential_backoff
from rmq_channel.app.ports.transport import DeliveryCallback, InboundMessage

_MESSAGE_PROPERTIES = (
    "content_type",
    "content_encoding",
    "headers",
    "delivery_mode",
    "priority",
    "correlation_id",
    "reply_to",
    "expiration",
    "message_id",
    "timestamp",
    "type",
    "user_id",
    "app_id",
)


class UnknownConsumerTag(LookupError):
    """basic_cancel was given a tag this handle never registered."""


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _to_inbound(message: AbstractIncomingMessage) -> InboundMessage:
    properties: dict[str, Any] = {}
    for name in _MESSAGE_PROPERTIES:
        value = getattr(message, name, None)
        if value is not None:
            properties[name] = value
    tag = message.delivery_tag
    return InboundMessage(
        delivery_tag=UNINITIALIZED_TAG if tag is None else int(tag),
        body=message.body,
        properties=properties,
        redelivered=bool(message.redelivered),
        exchange=message.exchange or "",
        routing_key=message.routing_key or "",
        consumer_tag=message.consumer_tag,
    )


class AioPikaChannelHandle:
    """ChannelHandle backed by an aio_pika channel."""

    def __init__(self, channel: AbstractChannel, *, timeout: float | None = None) -> None:
        self._channel = channel
        self._timeout = timeout
        self._number = getattr(channel, "number", None)
        self._queues_by_consumer: dict[str, AbstractQueue] = {}

    @property
    def number(self) -> int | None:
        return self._number

    @property
    def is_closed(self) -> bool:
        return self._channel.is_closed

    async def _set_close_reason(self, code: int, reason: str | None) -> None:
        # Channel.Close takes its reply code and text from the aiormq channel,
        # not from the argument of aio_pika's Channel.close().
        underlay = await self._channel.get_underlay_channel()
        underlay.set_close_reason(code, reason or "")

    async def close(self, code: int | None = None, reason: str | None = None) -> None:
        if code is not None:
            await self._set_close_reason(code, reason)
        await self._channel.close()

    async def abort(self, code: int | None = None, reason: str | None = None) -> None:
        try:
            if code is not None:
                await self._set_close_reason(code, reason)
            await self._channel.close()
        except ChannelInvalidStateError as e:
            # The broker or connection already tore the channel down.
            logger.debug("abort on a channel that is already gone: {}", e)

    async def _queue(self, name: str) -> AbstractQueue:
        return await self._channel.get_queue(name, ensure=False)

    async def queue_declare(
        self,
        name: str = "",
        *,
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: Mapping[str, Any] | None = None,
    ) -> str:
        queue = await self._channel.declare_queue(
            name or None,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=dict(arguments) if arguments else None,
            timeout=self._timeout,
        )
        return queue.name

    async def exchange_declare(
        self,
        name: str,
        type: str,
        *,
        durable: bool = False,
        auto_delete: bool = False,
        arguments: Mapping[str, Any] | None = None,
    ) -> None:
        await self._channel.declare_exchange(
            name,
            type=aio_pika.ExchangeType(type),
            durable=durable,
            auto_delete=auto_delete,
            arguments=dict(arguments) if arguments else None,
            timeout=self._timeout,
        )

    async def queue_bind(self, queue: str, exchange: str, routing_key: str) -> None:
        target = await self._queue(queue)
        await target.bind(exchange, routing_key=routing_key, timeout=self._timeout)

    async def basic_publish(
        self,
        exchange: str,
        routing_key: str,
        properties: Mapping[str, Any] | None,
        body: bytes,
    ) -> None:
        message = aio_pika.Message(body, **dict(properties or {}))
        if exchange == DEFAULT_EXCHANGE:
            target = self._channel.default_exchange
        else:
            target = await self._channel.get_exchange(exchange, ensure=False)
        await target.publish(message, routing_key=routing_key, timeout=self._timeout)

    async def queue_delete(self, name: str) -> None:
        await self._channel.queue_delete(name, timeout=self._timeout)

    async def exchange_delete(self, name: str) -> None:
        await self._channel.exchange_delete(name, timeout=self._timeout)

    async def queue_purge(self, name: str) -> None:
        target = await self._queue(name)
        await target.purge(timeout=self._timeout)

    async def basic_ack(self, delivery_tag: int, multiple: bool) -> None:
        underlay = await self._channel.get_underlay_channel()
        await underlay.basic_ack(delivery_tag, multiple=multiple)

    async def basic_nack(self, delivery_tag: int, multiple: bool, requeue: bool) -> None:
        underlay = await self._channel.get_underlay_channel()
        await underlay.basic_nack(delivery_tag, multiple=multiple, requeue=requeue)

    async def basic_consume(
        self,
        queue: str,
        callback: DeliveryCallback,
        *,
        auto_ack: bool = False,
    ) -> str:
        target = await self._queue(queue)

        async def on_message(message: AbstractIncomingMessage) -> None:
            await callback(_to_inbound(message))

        consumer_tag = await target.consume(on_message, no_ack=auto_ack, timeout=self._timeout)
        self._queues_by_consumer[consumer_tag] = target
        return consumer_tag

    async def basic_cancel(self, consumer_tag: str) -> None:
        target = self._queues_by_consumer.get(consumer_tag)
        if target is None:
            raise UnknownConsumerTag(f"unknown consumer tag: {consumer_tag}")
        await target.cancel(consumer_tag, timeout=self._timeout)
        del self._queues_by_consumer[consumer_tag]

    async def basic_qos(self, prefetch_count: int) -> None:
        await self._channel.set_qos(prefetch_count=prefetch_count, timeout=self._timeout)


class AioPikaTransport:
    """Transport backed by one aio_pika robust connection."""

    def __init__(
        self,
        connection: AbstractRobustConnection,
        *,
        prefetch_count: int = 0,
        timeout: float | None = None,
    ) -> None:
        self._connection = connection
        self._prefetch_count = prefetch_count
        self._timeout = timeout

    @property
    def is_closed(self) -> bool:
        return self._connection.is_closed

    async def create_channel(self) -> AioPikaChannelHandle:
        channel = await self._connection.channel()
        if self._prefetch_count:
            await channel.set_qos(prefetch_count=self._prefetch_count, timeout=self._timeout)
        return AioPikaChannelHandle(channel, timeout=self._timeout)

    async def close(self) -> None:
        await self._connection.close()


async def connect_aio_pika_transport(settings: Settings) -> AioPikaTransport:
    """Open a robust connection, retrying with exponential backoff."""
    _log("rmq_connecting", host=settings.broker_host, port=settings.broker_port)
    async for attempt, delay in exponential_backoff(
        settings.initial_backoff_seconds,
        settings.max_backoff_seconds,
        settings.backoff_multiplier,
        settings.max_connection_attempts,
    ):
        _log("rmq_connect_attempt", attempt=attempt, delay=delay)
        try:
            connection = await aio_pika.connect_robust(
                settings.amqp_url,
                timeout=settings.operation_timeout_seconds,
            )
        except Exception as e:
            logger.warning("rmq connect failed: {}", e)
            if attempt >= settings.max_connection_attempts:
                _log("rmq_connect_failed", attempt=attempt)
                raise
            continue
        _log("rmq_connected", attempt=attempt)
        return AioPikaTransport(
            connection,
            prefetch_count=settings.prefetch_count,
            timeout=settings.operation_timeout_seconds,
        )
    raise RuntimeError("rmq connect failed: no connection attempts configured")
