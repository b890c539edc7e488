"""Unit tests for the Channel façade against a recording fake transport."""
from __future__ import annotations

import pytest

from rmq_channel.app.constants import ChannelState
from rmq_channel.app.domain.channel import Channel, open_channel
from rmq_channel.app.domain.errors import (
    BindingFailed,
    ChannelAbortFailed,
    ChannelCloseFailed,
    ChannelCreationFailed,
    ConsumeFailed,
    ErrorKind,
    ExchangeDeclarationFailed,
    ExchangeDeletionFailed,
    PublishFailed,
    QosFailed,
    QueueAutoDeclarationFailed,
    QueueDeclarationFailed,
    QueueDeletionFailed,
    QueuePurgeFailed,
)
from rmq_channel.app.domain.models import CloseParams, ExchangeSpec, QueueSpec
from tests.fakes import FakeTransport


@pytest.mark.asyncio
async def test_open_channel_wraps_creation_failure():
    transport = FakeTransport(create_raises=OSError("connection reset"))
    with pytest.raises(ChannelCreationFailed) as info:
        await open_channel(transport)
    assert info.value.kind == ErrorKind.CHANNEL_CREATION_FAILED
    assert "connection reset" in str(info.value)
    assert str(info.value).startswith("An error occurred while creating the channel")
    assert isinstance(info.value.__cause__, OSError)


@pytest.mark.asyncio
async def test_open_channel_returns_open_channel(fake_transport):
    channel = await open_channel(fake_transport)
    assert isinstance(channel, Channel)
    assert channel.state == ChannelState.OPEN
    assert channel.channel_id == 1
    assert channel.transport is fake_transport


@pytest.mark.asyncio
async def test_close_without_params_uses_zero_argument_form(fake_transport):
    channel = await open_channel(fake_transport)
    await channel.close()
    assert fake_transport.handles[0].calls_to("close") == [((), {})]
    assert channel.state == ChannelState.CLOSED


@pytest.mark.asyncio
async def test_close_with_params_uses_parameterized_form(fake_transport):
    channel = await open_channel(fake_transport)
    await channel.close(CloseParams(320, "shutting down"))
    assert fake_transport.handles[0].calls_to("close") == [((320, "shutting down"), {})]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code, reason, expected_args",
    [
        (200, "bye", (200, "bye")),
        (None, None, ()),
        (200, None, ()),
        (None, "bye", ()),
        ("200", "bye", ()),
        (200, 17, ()),
        (True, "bye", ()),
    ],
)
async def test_close_with_dispatch(fake_transport, code, reason, expected_args):
    channel = await open_channel(fake_transport)
    await channel.close_with(code, reason)
    assert fake_transport.handles[0].calls_to("close") == [(expected_args, {})]
    assert channel.state == ChannelState.CLOSED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code, reason, expected_args",
    [
        (541, "internal error", (541, "internal error")),
        (541, None, ()),
        (5.41, "internal error", ()),
    ],
)
async def test_abort_with_dispatch(fake_transport, code, reason, expected_args):
    channel = await open_channel(fake_transport)
    await channel.abort_with(code, reason)
    assert fake_transport.handles[0].calls_to("abort") == [(expected_args, {})]
    assert channel.state == ChannelState.CLOSED


@pytest.mark.asyncio
async def test_close_failure_is_wrapped_and_channel_stays_open(fake_transport):
    channel = await open_channel(fake_transport)
    fake_transport.handles[0].fail("close", TimeoutError("close-ok not received"))
    with pytest.raises(ChannelCloseFailed, match="close-ok not received"):
        await channel.close_with(200, "bye")
    assert channel.state == ChannelState.OPEN


@pytest.mark.asyncio
async def test_abort_failure_is_wrapped_but_channel_is_closed(fake_transport):
    channel = await open_channel(fake_transport)
    fake_transport.handles[0].fail("abort", OSError("socket gone"))
    with pytest.raises(ChannelAbortFailed, match="socket gone"):
        await channel.abort()
    assert channel.state == ChannelState.CLOSED


@pytest.mark.asyncio
async def test_close_and_abort_on_closed_channel_report_failure(fake_transport):
    channel = await open_channel(fake_transport)
    await channel.close()
    with pytest.raises(ChannelCloseFailed, match="is closed"):
        await channel.close()
    with pytest.raises(ChannelAbortFailed, match="is closed"):
        await channel.abort()
    assert channel.state == ChannelState.CLOSED
    assert len(fake_transport.handles[0].calls_to("close")) == 1
    assert fake_transport.handles[0].calls_to("abort") == []


@pytest.mark.asyncio
async def test_channel_closed_by_transport_reads_closed(fake_transport):
    channel = await open_channel(fake_transport)
    fake_transport.handles[0].closed = True
    assert channel.is_open is False
    with pytest.raises(PublishFailed, match="is closed"):
        await channel.publish("", "q", b"x")
    assert fake_transport.handles[0].calls_to("basic_publish") == []


@pytest.mark.asyncio
async def test_declare_queue_without_spec_returns_broker_assigned_name(fake_transport):
    channel = await open_channel(fake_transport)
    name = await channel.declare_queue()
    assert name == "amq.gen-test"
    ((args, kwargs),) = fake_transport.handles[0].calls_to("queue_declare")
    assert args == ("",)
    assert kwargs == {"durable": False, "exclusive": True, "auto_delete": True, "arguments": None}


@pytest.mark.asyncio
async def test_declare_queue_passes_spec(fake_transport):
    channel = await open_channel(fake_transport)
    spec = QueueSpec("orders", durable=True, arguments={"x-max-length": 10})
    assert await channel.declare_queue(spec) == "orders"
    ((args, kwargs),) = fake_transport.handles[0].calls_to("queue_declare")
    assert args == ("orders",)
    assert kwargs == {"durable": True, "exclusive": False, "auto_delete": False, "arguments": {"x-max-length": 10}}


@pytest.mark.asyncio
async def test_declare_exchange_passes_spec(fake_transport):
    channel = await open_channel(fake_transport)
    await channel.declare_exchange(ExchangeSpec("logs", "fanout"))
    ((args, kwargs),) = fake_transport.handles[0].calls_to("exchange_declare")
    assert args == ("logs", "fanout")
    assert kwargs["durable"] is False


@pytest.mark.asyncio
async def test_publish_encodes_text_as_utf8(fake_transport):
    channel = await open_channel(fake_transport)
    await channel.publish("", "greetings", "grüß dich")
    await channel.publish("amq.direct", "rk", b"\x00\x01", {"content_type": "application/octet-stream"})
    calls = fake_transport.handles[0].calls_to("basic_publish")
    assert calls[0][0] == ("", "greetings", None, "grüß dich".encode("utf-8"))
    assert calls[1][0] == ("amq.direct", "rk", {"content_type": "application/octet-stream"}, b"\x00\x01")


@pytest.mark.asyncio
async def test_publish_rejects_non_bytes_payload(fake_transport):
    channel = await open_channel(fake_transport)
    with pytest.raises(TypeError):
        await channel.publish("", "q", 12)  # type: ignore[arg-type]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "operation, call, error",
    [
        ("queue_declare", lambda ch: ch.declare_queue(QueueSpec("q")), QueueDeclarationFailed),
        ("exchange_declare", lambda ch: ch.declare_exchange(ExchangeSpec("x")), ExchangeDeclarationFailed),
        ("queue_bind", lambda ch: ch.bind_queue("q", "x", "k"), BindingFailed),
        ("basic_publish", lambda ch: ch.publish("x", "k", b"m"), PublishFailed),
        ("queue_delete", lambda ch: ch.delete_queue("q"), QueueDeletionFailed),
        ("exchange_delete", lambda ch: ch.delete_exchange("x"), ExchangeDeletionFailed),
        ("queue_purge", lambda ch: ch.purge_queue("q"), QueuePurgeFailed),
        ("basic_qos", lambda ch: ch.set_qos(5), QosFailed),
    ],
)
async def test_transport_failures_are_wrapped_once_without_retry(fake_transport, operation, call, error):
    channel = await open_channel(fake_transport)
    handle = fake_transport.handles[0]
    handle.fail(operation, OSError("404 NOT_FOUND"))
    with pytest.raises(error) as info:
        await call(channel)
    assert info.value.message == f"{error.prefix}: 404 NOT_FOUND"
    assert isinstance(info.value.__cause__, OSError)
    assert len(handle.calls_to(operation)) == 1
    assert channel.is_open


@pytest.mark.asyncio
async def test_bind_delete_and_purge_forward_names(fake_transport):
    channel = await open_channel(fake_transport)
    await channel.bind_queue("q", "logs", "")
    await channel.delete_queue("q")
    await channel.delete_exchange("logs")
    await channel.purge_queue("other")
    handle = fake_transport.handles[0]
    assert handle.calls_to("queue_bind") == [(("q", "logs", ""), {})]
    assert handle.calls_to("queue_delete") == [(("q",), {})]
    assert handle.calls_to("exchange_delete") == [(("logs",), {})]
    assert handle.calls_to("queue_purge") == [(("other",), {})]


@pytest.mark.asyncio
async def test_consume_and_cancel(fake_transport):
    channel = await open_channel(fake_transport)
    received = []

    async def handler(delivery):
        received.append(delivery)

    tag = await channel.consume("q", handler)
    assert tag in channel.consumer_tags
    await fake_transport.handles[0].deliver(tag, 1, b"hello", content_type="text/plain")
    assert received[0].as_text() == "hello"
    assert received[0].delivery_tag == 1
    assert received[0].content_type == "text/plain"

    await channel.cancel(tag)
    assert tag not in channel.consumer_tags


@pytest.mark.asyncio
async def test_consume_failure_is_wrapped(fake_transport):
    channel = await open_channel(fake_transport)
    fake_transport.handles[0].fail("basic_consume", OSError("no queue"))

    async def handler(delivery):
        return None

    with pytest.raises(ConsumeFailed, match="no queue"):
        await channel.consume("missing", handler)


@pytest.mark.asyncio
async def test_async_context_manager_closes_channel(fake_transport):
    async with await open_channel(fake_transport) as channel:
        assert channel.is_open
    assert channel.state == ChannelState.CLOSED
    assert fake_transport.handles[0].calls_to("close") == [((), {})]


@pytest.mark.asyncio
async def test_anonymous_declare_failure_uses_auto_declare_message(fake_transport):
    channel = await open_channel(fake_transport)
    fake_transport.handles[0].fail("queue_declare", OSError("403 ACCESS_REFUSED"))
    with pytest.raises(QueueAutoDeclarationFailed) as info:
        await channel.declare_queue()
    assert info.value.message == "An error occurred while auto-declaring the queue: 403 ACCESS_REFUSED"
    assert info.value.kind == ErrorKind.QUEUE_DECLARATION_FAILED
    assert isinstance(info.value, QueueDeclarationFailed)

    with pytest.raises(QueueDeclarationFailed) as named:
        await channel.declare_queue(QueueSpec("orders"))
    assert not isinstance(named.value, QueueAutoDeclarationFailed)
    assert named.value.message.startswith("An error occurred while declaring the queue: ")


@pytest.mark.asyncio
async def test_publish_failure_message_names_the_queue_publish(fake_transport):
    channel = await open_channel(fake_transport)
    fake_transport.handles[0].fail("basic_publish", OSError("312 NO_ROUTE"))
    with pytest.raises(PublishFailed) as info:
        await channel.publish("x", "k", b"m")
    assert info.value.message == "An error occurred while publishing the message to a queue: 312 NO_ROUTE"
