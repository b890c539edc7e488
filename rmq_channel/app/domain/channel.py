"""
Channel façade: one logical session over a Transport.

Lifecycle:
  open_channel(transport) -> OPEN -> close()/abort() -> CLOSED.
  A channel the transport closes underneath us (broker error, connection loss)
  reads as CLOSED on the next call.

Every operation except close/abort requires OPEN. Transport failures are wrapped
in the operation's typed error (see domain.errors) and never retried here.
A Channel is not safe for concurrent callers; open one channel per task instead.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, Mapping

from loguru import logger

from rmq_channel.app.constants import ChannelState, DeliveryState
from rmq_channel.app.core import SERVICE_NAME
from rmq_channel.app.domain.delivery import Delivery
from rmq_channel.app.domain.errors import (
    AcknowledgementFailed,
    BindingFailed,
    ChannelAbortFailed,
    ChannelCloseFailed,
    ChannelCreationFailed,
    ChannelError,
    ConsumeFailed,
    ExchangeDeclarationFailed,
    ExchangeDeletionFailed,
    PublishFailed,
    QosFailed,
    QueueAutoDeclarationFailed,
    QueueDeclarationFailed,
    QueueDeletionFailed,
    QueuePurgeFailed,
    TransportOperationError,
)
from rmq_channel.app.domain.models import CloseParams, ExchangeSpec, QueueSpec
from rmq_channel.app.ports.transport import ChannelHandle, InboundMessage, Transport

DeliveryHandler = Callable[[Delivery], Awaitable[None]]


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _encode_payload(payload: bytes | str) -> bytes:
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    raise TypeError(f"payload must be bytes or str, not {type(payload).__name__}")


async def open_channel(transport: Transport) -> "Channel":
    """Create a channel on `transport`; raises ChannelCreationFailed."""
    try:
        handle = await transport.create_channel()
    except Exception as exc:
        logger.warning("channel creation failed: {}", exc)
        raise ChannelCreationFailed.wrap(exc) from exc
    channel = Channel(transport, handle)
    _log("channel_opened", channel_id=channel.channel_id)
    return channel


class Channel:
    """Queue, exchange, publish and consume operations for one session."""

    def __init__(self, transport: Transport, handle: ChannelHandle) -> None:
        self._transport = transport
        self._handle = handle
        self._channel_id = handle.number
        self._state = ChannelState.OPEN
        # Manual-ack deliveries not yet settled, by delivery tag.
        self._outstanding: dict[int, Delivery] = {}
        self._consumers: set[str] = set()

    async def __aenter__(self) -> "Channel":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self.is_open:
            await self.close()

    @property
    def channel_id(self) -> int | None:
        return self._channel_id

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def state(self) -> ChannelState:
        if self._state == ChannelState.OPEN and self._handle.is_closed:
            self._mark_closed()
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == ChannelState.OPEN

    @property
    def consumer_tags(self) -> frozenset[str]:
        return frozenset(self._consumers)

    def _mark_closed(self) -> None:
        self._state = ChannelState.CLOSED
        self._outstanding.clear()
        self._consumers.clear()

    def _ensure_open(self, error: type[TransportOperationError]) -> None:
        if not self.is_open:
            raise error.channel_closed(self.channel_id)

    @contextmanager
    def _translate(self, error: type[TransportOperationError], event: str) -> Iterator[None]:
        try:
            yield
        except ChannelError:
            raise
        except Exception as exc:
            logger.warning("{} failed on channel {}: {}", event, self.channel_id, exc)
            raise error.wrap(exc) from exc

    async def close(self, params: CloseParams | None = None) -> None:
        """Graceful close; `params` selects the reply code/text form."""
        if not self.is_open:
            raise ChannelCloseFailed.channel_closed(self.channel_id)
        with self._translate(ChannelCloseFailed, "channel_close"):
            if params is None:
                await self._handle.close()
            else:
                await self._handle.close(params.code, params.reason)
        self._mark_closed()
        _log("channel_closed", channel_id=self.channel_id, params=params)

    async def abort(self, params: CloseParams | None = None) -> None:
        """Forced close. The channel is CLOSED afterwards even if the transport complained."""
        if not self.is_open:
            raise ChannelAbortFailed.channel_closed(self.channel_id)
        try:
            with self._translate(ChannelAbortFailed, "channel_abort"):
                if params is None:
                    await self._handle.abort()
                else:
                    await self._handle.abort(params.code, params.reason)
        finally:
            self._mark_closed()
        _log("channel_aborted", channel_id=self.channel_id, params=params)

    async def close_with(self, code: Any = None, reason: Any = None) -> None:
        """Close with a loosely typed code/reason pair.

        Falls back to the zero-argument close when either value is missing or
        of the wrong type, rather than failing.
        """
        params = CloseParams.coerce(code, reason)
        if params is None and (code is not None or reason is not None):
            logger.debug("ignoring ill-typed close parameters: {!r} {!r}", code, reason)
        await self.close(params)

    async def abort_with(self, code: Any = None, reason: Any = None) -> None:
        """Abort counterpart of close_with, with the same fallback."""
        params = CloseParams.coerce(code, reason)
        if params is None and (code is not None or reason is not None):
            logger.debug("ignoring ill-typed abort parameters: {!r} {!r}", code, reason)
        await self.abort(params)

    async def declare_queue(self, spec: QueueSpec | None = None) -> str:
        """Declare a queue; returns the broker-assigned name when none was given."""
        error = QueueDeclarationFailed if spec is not None else QueueAutoDeclarationFailed
        self._ensure_open(error)
        spec = spec if spec is not None else QueueSpec.anonymous()
        with self._translate(error, "queue_declare"):
            name = await self._handle.queue_declare(
                spec.name,
                durable=spec.durable,
                exclusive=spec.exclusive,
                auto_delete=spec.auto_delete,
                arguments=spec.arguments,
            )
        _log("queue_declared", channel_id=self.channel_id, queue=name)
        return name

    async def declare_exchange(self, spec: ExchangeSpec) -> None:
        self._ensure_open(ExchangeDeclarationFailed)
        with self._translate(ExchangeDeclarationFailed, "exchange_declare"):
            await self._handle.exchange_declare(
                spec.name,
                spec.type,
                durable=spec.durable,
                auto_delete=spec.auto_delete,
                arguments=spec.arguments,
            )
        _log("exchange_declared", channel_id=self.channel_id, exchange=spec.name, type=spec.type)

    async def bind_queue(self, queue_name: str, exchange_name: str, binding_key: str) -> None:
        self._ensure_open(BindingFailed)
        with self._translate(BindingFailed, "queue_bind"):
            await self._handle.queue_bind(queue_name, exchange_name, binding_key)
        _log(
            "queue_bound",
            channel_id=self.channel_id,
            queue=queue_name,
            exchange=exchange_name,
            binding_key=binding_key,
        )

    async def publish(
        self,
        exchange_name: str,
        routing_key: str,
        payload: bytes | str,
        properties: Mapping[str, Any] | None = None,
    ) -> None:
        """Publish `payload` (text is sent as UTF-8). Exchange "" routes by queue name."""
        self._ensure_open(PublishFailed)
        body = _encode_payload(payload)
        with self._translate(PublishFailed, "publish"):
            await self._handle.basic_publish(
                exchange_name,
                routing_key,
                dict(properties) if properties else None,
                body,
            )
        _log(
            "message_published",
            channel_id=self.channel_id,
            exchange=exchange_name,
            routing_key=routing_key,
            size=len(body),
        )

    async def delete_queue(self, queue_name: str) -> None:
        self._ensure_open(QueueDeletionFailed)
        with self._translate(QueueDeletionFailed, "queue_delete"):
            await self._handle.queue_delete(queue_name)
        _log("queue_deleted", channel_id=self.channel_id, queue=queue_name)

    async def delete_exchange(self, exchange_name: str) -> None:
        self._ensure_open(ExchangeDeletionFailed)
        with self._translate(ExchangeDeletionFailed, "exchange_delete"):
            await self._handle.exchange_delete(exchange_name)
        _log("exchange_deleted", channel_id=self.channel_id, exchange=exchange_name)

    async def purge_queue(self, queue_name: str) -> None:
        self._ensure_open(QueuePurgeFailed)
        with self._translate(QueuePurgeFailed, "queue_purge"):
            await self._handle.queue_purge(queue_name)
        _log("queue_purged", channel_id=self.channel_id, queue=queue_name)

    async def set_qos(self, prefetch_count: int) -> None:
        self._ensure_open(QosFailed)
        if prefetch_count < 0:
            raise ValueError("prefetch_count must be >= 0")
        with self._translate(QosFailed, "basic_qos"):
            await self._handle.basic_qos(prefetch_count)

    async def consume(
        self,
        queue_name: str,
        handler: DeliveryHandler,
        *,
        auto_ack: bool = False,
    ) -> str:
        """Call `handler` with a Delivery for every message on `queue_name`.

        Returns the consumer tag. With auto_ack=False the handler owns the
        delivery and must ack or nack it.
        """
        self._ensure_open(ConsumeFailed)

        async def on_message(message: InboundMessage) -> None:
            delivery = Delivery(
                self,
                message.delivery_tag,
                message.body,
                message.properties,
                auto_ack=auto_ack,
                redelivered=message.redelivered,
                exchange=message.exchange,
                routing_key=message.routing_key,
                consumer_tag=message.consumer_tag,
            )
            if not auto_ack:
                self._outstanding[message.delivery_tag] = delivery
            try:
                await handler(delivery)
            except Exception as exc:
                logger.exception("delivery handler failed: {}", exc)
                raise

        with self._translate(ConsumeFailed, "basic_consume"):
            consumer_tag = await self._handle.basic_consume(queue_name, on_message, auto_ack=auto_ack)
        self._consumers.add(consumer_tag)
        _log(
            "consumer_started",
            channel_id=self.channel_id,
            queue=queue_name,
            consumer_tag=consumer_tag,
            auto_ack=auto_ack,
        )
        return consumer_tag

    async def cancel(self, consumer_tag: str) -> None:
        """Detach a consumer. Deliveries it already handed out can still be settled."""
        self._ensure_open(ConsumeFailed)
        with self._translate(ConsumeFailed, "basic_cancel"):
            await self._handle.basic_cancel(consumer_tag)
        self._consumers.discard(consumer_tag)
        _log("consumer_cancelled", channel_id=self.channel_id, consumer_tag=consumer_tag)

    async def _settle(
        self,
        delivery: Delivery,
        state: DeliveryState,
        *,
        multiple: bool,
        requeue: bool = True,
    ) -> None:
        """Send ack/nack for `delivery`; with `multiple`, mark earlier outstanding deliveries too."""
        self._ensure_open(AcknowledgementFailed)
        tag = delivery.get_delivery_tag()
        if state == DeliveryState.ACKNOWLEDGED:
            with self._translate(AcknowledgementFailed, "basic_ack"):
                await self._handle.basic_ack(tag, multiple)
        else:
            with self._translate(AcknowledgementFailed, "basic_nack"):
                await self._handle.basic_nack(tag, multiple, requeue)
        self._outstanding.pop(tag, None)
        if multiple:
            for earlier in [t for t in self._outstanding if t < tag]:
                self._outstanding.pop(earlier)._mark(state)
