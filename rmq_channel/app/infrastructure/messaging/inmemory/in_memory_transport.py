"""In-memory transport for tests and local mode.

An in-process broker that follows the AMQP 0-9-1 model closely enough to
exercise the channel façade: server-named queues, equivalence checks on
redeclare, direct/fanout/topic routing, per-channel delivery tags, prefetch,
requeue on nack and on channel close, exclusive and auto-delete queues.
Headers exchanges can be declared but route nothing (bindings carry no
arguments here). Several transports can share one InMemoryBroker, the way
several connections share one RabbitMQ node.

Consumer callbacks run as asyncio tasks, as they do with aio_pika.
"""
from __future__ import annotations

import asyncio
import itertools
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from loguru import logger

from rmq_channel.app.constants import DEFAULT_EXCHANGE, ExchangeType
from rmq_channel.app.ports.transport import DeliveryCallback, InboundMessage


class InMemoryBrokerError(Exception):
    """Broker-side refusal, carrying an AMQP reply code and text."""

    def __init__(self, code: int, text: str) -> None:
        super().__init__(f"{code} {text}")
        self.code = code
        self.text = text


NOT_FOUND = 404
ACCESS_REFUSED = 403
RESOURCE_LOCKED = 405
PRECONDITION_FAILED = 406
CHANNEL_ERROR = 504


@dataclass
class _Message:
    body: bytes
    properties: dict[str, Any]
    exchange: str
    routing_key: str
    redelivered: bool = False


@dataclass
class _Queue:
    name: str
    durable: bool
    exclusive: bool
    auto_delete: bool
    arguments: dict[str, Any]
    owner: "InMemoryTransport | None"
    messages: deque = field(default_factory=deque)
    consumers: list = field(default_factory=list)
    _next_consumer: int = 0

    def same_declaration(self, durable: bool, exclusive: bool, auto_delete: bool, arguments: dict[str, Any]) -> bool:
        return (
            self.durable == durable
            and self.exclusive == exclusive
            and self.auto_delete == auto_delete
            and self.arguments == arguments
        )


@dataclass
class _Exchange:
    name: str
    type: str
    durable: bool
    auto_delete: bool
    arguments: dict[str, Any]
    # (queue name, binding key) pairs.
    bindings: set = field(default_factory=set)


@dataclass
class _Consumer:
    tag: str
    queue: _Queue
    channel: "InMemoryChannelHandle"
    callback: DeliveryCallback
    auto_ack: bool


def topic_matches(binding_key: str, routing_key: str) -> bool:
    """AMQP topic match: `*` is exactly one word, `#` is zero or more words."""
    pattern = binding_key.split(".") if binding_key else []
    words = routing_key.split(".") if routing_key else []

    def match(p: int, w: int) -> bool:
        if p == len(pattern):
            return w == len(words)
        if pattern[p] == "#":
            return any(match(p + 1, k) for k in range(w, len(words) + 1))
        if w == len(words):
            return False
        if pattern[p] == "*" or pattern[p] == words[w]:
            return match(p + 1, w + 1)
        return False

    return match(0, 0)


class InMemoryBroker:
    """Broker state shared by every InMemoryTransport connected to it."""

    def __init__(self) -> None:
        self.queues: dict[str, _Queue] = {}
        self.exchanges: dict[str, _Exchange] = {}
        self._consumer_tags = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    def get_queue(self, name: str) -> _Queue:
        queue = self.queues.get(name)
        if queue is None:
            raise InMemoryBrokerError(NOT_FOUND, f"NOT_FOUND - no queue '{name}'")
        return queue

    def get_exchange(self, name: str) -> _Exchange:
        exchange = self.exchanges.get(name)
        if exchange is None:
            raise InMemoryBrokerError(NOT_FOUND, f"NOT_FOUND - no exchange '{name}'")
        return exchange

    def check_queue_access(self, queue: _Queue, transport: "InMemoryTransport") -> None:
        if queue.exclusive and queue.owner is not transport:
            raise InMemoryBrokerError(
                RESOURCE_LOCKED,
                f"RESOURCE_LOCKED - cannot obtain exclusive access to locked queue '{queue.name}'",
            )

    def declare_queue(
        self,
        transport: "InMemoryTransport",
        name: str,
        durable: bool,
        exclusive: bool,
        auto_delete: bool,
        arguments: dict[str, Any],
    ) -> str:
        if not name:
            name = f"amq.gen-{uuid.uuid4().hex}"
        elif name.startswith("amq."):
            raise InMemoryBrokerError(ACCESS_REFUSED, f"ACCESS_REFUSED - queue name '{name}' contains reserved prefix 'amq.*'")
        existing = self.queues.get(name)
        if existing is not None:
            self.check_queue_access(existing, transport)
            if not existing.same_declaration(durable, exclusive, auto_delete, arguments):
                raise InMemoryBrokerError(
                    PRECONDITION_FAILED,
                    f"PRECONDITION_FAILED - inequivalent arg for queue '{name}'",
                )
            return name
        self.queues[name] = _Queue(
            name=name,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=arguments,
            owner=transport if exclusive else None,
        )
        return name

    def declare_exchange(self, name: str, type: str, durable: bool, auto_delete: bool, arguments: dict[str, Any]) -> None:
        if name == DEFAULT_EXCHANGE or name.startswith("amq."):
            raise InMemoryBrokerError(ACCESS_REFUSED, f"ACCESS_REFUSED - exchange name '{name}' is reserved")
        kind = ExchangeType(type).value
        existing = self.exchanges.get(name)
        if existing is not None:
            if (existing.type, existing.durable, existing.auto_delete, existing.arguments) != (
                kind,
                durable,
                auto_delete,
                arguments,
            ):
                raise InMemoryBrokerError(
                    PRECONDITION_FAILED,
                    f"PRECONDITION_FAILED - inequivalent arg for exchange '{name}'",
                )
            return
        self.exchanges[name] = _Exchange(name, kind, durable, auto_delete, arguments)

    def bind(self, queue_name: str, exchange_name: str, routing_key: str) -> None:
        if exchange_name == DEFAULT_EXCHANGE:
            raise InMemoryBrokerError(ACCESS_REFUSED, "ACCESS_REFUSED - cannot bind to the default exchange")
        self.get_queue(queue_name)
        self.get_exchange(exchange_name).bindings.add((queue_name, routing_key))

    def route(self, exchange_name: str, routing_key: str) -> list[_Queue]:
        if exchange_name == DEFAULT_EXCHANGE:
            queue = self.queues.get(routing_key)
            return [queue] if queue is not None else []
        exchange = self.get_exchange(exchange_name)
        names: set[str] = set()
        for queue_name, binding_key in exchange.bindings:
            if exchange.type == ExchangeType.FANOUT.value:
                names.add(queue_name)
            elif exchange.type == ExchangeType.DIRECT.value and binding_key == routing_key:
                names.add(queue_name)
            elif exchange.type == ExchangeType.TOPIC.value and topic_matches(binding_key, routing_key):
                names.add(queue_name)
        return [self.queues[n] for n in sorted(names) if n in self.queues]

    def publish(self, exchange_name: str, routing_key: str, properties: dict[str, Any], body: bytes) -> int:
        targets = self.route(exchange_name, routing_key)
        for queue in targets:
            queue.messages.append(_Message(body, dict(properties), exchange_name, routing_key))
            self.dispatch(queue)
        return len(targets)

    def delete_queue(self, name: str) -> None:
        queue = self.queues.pop(name, None)
        if queue is None:
            return
        for consumer in list(queue.consumers):
            consumer.channel.forget_consumer(consumer.tag)
        queue.consumers.clear()
        for exchange in self.exchanges.values():
            exchange.bindings = {b for b in exchange.bindings if b[0] != name}

    def delete_exchange(self, name: str) -> None:
        if name == DEFAULT_EXCHANGE:
            raise InMemoryBrokerError(ACCESS_REFUSED, "ACCESS_REFUSED - cannot delete the default exchange")
        self.exchanges.pop(name, None)

    def add_consumer(self, consumer: _Consumer) -> None:
        consumer.queue.consumers.append(consumer)
        self.dispatch(consumer.queue)

    def remove_consumer(self, consumer: _Consumer) -> None:
        queue = consumer.queue
        if consumer in queue.consumers:
            queue.consumers.remove(consumer)
        if queue.auto_delete and not queue.consumers and queue.name in self.queues:
            self.delete_queue(queue.name)

    def next_consumer_tag(self) -> str:
        return f"amq.ctag-{next(self._consumer_tags)}"

    def requeue(self, queue: _Queue, message: _Message) -> None:
        if self.queues.get(queue.name) is not queue:
            return
        message.redelivered = True
        queue.messages.appendleft(message)
        self.dispatch(queue)

    def dispatch(self, queue: _Queue) -> None:
        """Hand queued messages to consumers round-robin, honouring prefetch."""
        while queue.messages and queue.consumers:
            consumer = None
            for offset in range(len(queue.consumers)):
                candidate = queue.consumers[(queue._next_consumer + offset) % len(queue.consumers)]
                if candidate.auto_ack or candidate.channel.has_capacity():
                    consumer = candidate
                    queue._next_consumer = (queue._next_consumer + offset + 1) % len(queue.consumers)
                    break
            if consumer is None:
                return
            message = queue.messages.popleft()
            inbound = consumer.channel.track(consumer, message)
            self._spawn(consumer.callback(inbound))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).warning("in-memory consumer callback failed: {}", exc)

    async def drain(self) -> None:
        """Wait until every delivery handed to a consumer callback has run."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class InMemoryChannelHandle:
    """ChannelHandle for the in-memory broker."""

    def __init__(self, transport: "InMemoryTransport", number: int) -> None:
        self._transport = transport
        self._broker = transport.broker
        self._number = number
        self._closed = False
        self._delivery_tags = itertools.count(1)
        self._unacked: dict[int, tuple[_Queue, _Message]] = {}
        self._consumers: dict[str, _Consumer] = {}
        self._prefetch_count = 0
        self.close_params: tuple[int, str] | None = None

    @property
    def number(self) -> int:
        return self._number

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise InMemoryBrokerError(CHANNEL_ERROR, f"CHANNEL_ERROR - channel {self._number} is closed")

    def has_capacity(self) -> bool:
        return self._prefetch_count == 0 or len(self._unacked) < self._prefetch_count

    def track(self, consumer: _Consumer, message: _Message) -> InboundMessage:
        tag = next(self._delivery_tags)
        if not consumer.auto_ack:
            self._unacked[tag] = (consumer.queue, message)
        return InboundMessage(
            delivery_tag=tag,
            body=message.body,
            properties=dict(message.properties),
            redelivered=message.redelivered,
            exchange=message.exchange,
            routing_key=message.routing_key,
            consumer_tag=consumer.tag,
        )

    def forget_consumer(self, consumer_tag: str) -> None:
        self._consumers.pop(consumer_tag, None)

    def _shutdown(self, code: int | None, reason: str | None) -> None:
        self._closed = True
        self.close_params = None if code is None else (code, reason or "")
        for consumer in list(self._consumers.values()):
            self._broker.remove_consumer(consumer)
        self._consumers.clear()
        pending = sorted(self._unacked.items(), reverse=True)
        self._unacked.clear()
        for _, (queue, message) in pending:
            self._broker.requeue(queue, message)
        self._transport.forget_channel(self)

    async def close(self, code: int | None = None, reason: str | None = None) -> None:
        self._ensure_open()
        self._shutdown(code, reason)

    async def abort(self, code: int | None = None, reason: str | None = None) -> None:
        if not self._closed:
            self._shutdown(code, reason)

    async def queue_declare(
        self,
        name: str = "",
        *,
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: Mapping[str, Any] | None = None,
    ) -> str:
        self._ensure_open()
        return self._broker.declare_queue(
            self._transport, name, durable, exclusive, auto_delete, dict(arguments or {})
        )

    async def exchange_declare(
        self,
        name: str,
        type: str,
        *,
        durable: bool = False,
        auto_delete: bool = False,
        arguments: Mapping[str, Any] | None = None,
    ) -> None:
        self._ensure_open()
        self._broker.declare_exchange(name, type, durable, auto_delete, dict(arguments or {}))

    async def queue_bind(self, queue: str, exchange: str, routing_key: str) -> None:
        self._ensure_open()
        self._broker.bind(queue, exchange, routing_key)

    async def basic_publish(
        self,
        exchange: str,
        routing_key: str,
        properties: Mapping[str, Any] | None,
        body: bytes,
    ) -> None:
        self._ensure_open()
        self._broker.publish(exchange, routing_key, dict(properties or {}), bytes(body))

    async def queue_delete(self, name: str) -> None:
        self._ensure_open()
        queue = self._broker.queues.get(name)
        if queue is not None:
            self._broker.check_queue_access(queue, self._transport)
        self._broker.delete_queue(name)

    async def exchange_delete(self, name: str) -> None:
        self._ensure_open()
        self._broker.delete_exchange(name)

    async def queue_purge(self, name: str) -> None:
        self._ensure_open()
        queue = self._broker.get_queue(name)
        self._broker.check_queue_access(queue, self._transport)
        queue.messages.clear()

    def _settle(self, delivery_tag: int, multiple: bool) -> list[tuple[_Queue, _Message]]:
        if delivery_tag not in self._unacked:
            raise InMemoryBrokerError(
                PRECONDITION_FAILED,
                f"PRECONDITION_FAILED - unknown delivery tag {delivery_tag}",
            )
        tags = [t for t in self._unacked if t <= delivery_tag] if multiple else [delivery_tag]
        return [self._unacked.pop(t) for t in sorted(tags)]

    def _redispatch(self, queues: Iterable[_Queue]) -> None:
        for queue in queues:
            self._broker.dispatch(queue)

    async def basic_ack(self, delivery_tag: int, multiple: bool) -> None:
        self._ensure_open()
        settled = self._settle(delivery_tag, multiple)
        self._redispatch({id(q): q for q, _ in settled}.values())

    async def basic_nack(self, delivery_tag: int, multiple: bool, requeue: bool) -> None:
        self._ensure_open()
        settled = self._settle(delivery_tag, multiple)
        if requeue:
            for queue, message in reversed(settled):
                self._broker.requeue(queue, message)
        self._redispatch({id(q): q for q, _ in settled}.values())

    async def basic_consume(
        self,
        queue: str,
        callback: DeliveryCallback,
        *,
        auto_ack: bool = False,
    ) -> str:
        self._ensure_open()
        target = self._broker.get_queue(queue)
        self._broker.check_queue_access(target, self._transport)
        consumer = _Consumer(
            tag=self._broker.next_consumer_tag(),
            queue=target,
            channel=self,
            callback=callback,
            auto_ack=auto_ack,
        )
        self._consumers[consumer.tag] = consumer
        self._broker.add_consumer(consumer)
        return consumer.tag

    async def basic_cancel(self, consumer_tag: str) -> None:
        self._ensure_open()
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None:
            raise InMemoryBrokerError(NOT_FOUND, f"NOT_FOUND - unknown consumer tag '{consumer_tag}'")
        self._broker.remove_consumer(consumer)

    async def basic_qos(self, prefetch_count: int) -> None:
        self._ensure_open()
        self._prefetch_count = prefetch_count
        queues = {id(c.queue): c.queue for c in self._consumers.values()}
        self._redispatch(queues.values())


class InMemoryTransport:
    """One 'connection' to an InMemoryBroker."""

    def __init__(self, broker: InMemoryBroker | None = None) -> None:
        self.broker = broker or InMemoryBroker()
        self._closed = False
        self._channel_numbers = itertools.count(1)
        self._channels: dict[int, InMemoryChannelHandle] = {}

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def channels(self) -> list[InMemoryChannelHandle]:
        return list(self._channels.values())

    def forget_channel(self, channel: InMemoryChannelHandle) -> None:
        self._channels.pop(channel.number, None)

    async def create_channel(self) -> InMemoryChannelHandle:
        if self._closed:
            raise InMemoryBrokerError(CHANNEL_ERROR, "CHANNEL_ERROR - connection is closed")
        channel = InMemoryChannelHandle(self, next(self._channel_numbers))
        self._channels[channel.number] = channel
        return channel

    async def close(self) -> None:
        if self._closed:
            return
        for channel in list(self._channels.values()):
            await channel.abort()
        self._closed = True
        for name, queue in list(self.broker.queues.items()):
            if queue.owner is self:
                self.broker.delete_queue(name)
