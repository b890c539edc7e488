"""Delivery handle: one received message awaiting acknowledgement.

State machine:
  UNACKNOWLEDGED -> ACKNOWLEDGED (ack) or REJECTED (nack). Both are terminal;
  a second ack/nack raises AlreadyAcknowledged.

In auto-ack mode the broker settled the message on delivery, so ack/nack send
nothing but still move the handle to its terminal state. A transport failure
while settling leaves the handle UNACKNOWLEDGED.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping

from rmq_channel.app.constants import UNINITIALIZED_TAG, DeliveryState
from rmq_channel.app.domain.content import MessageContent
from rmq_channel.app.domain.errors import AlreadyAcknowledged, UninitializedTag

if TYPE_CHECKING:
    from rmq_channel.app.domain.channel import Channel


class Delivery(MessageContent):
    def __init__(
        self,
        channel: "Channel",
        delivery_tag: int,
        body: bytes,
        properties: Mapping[str, Any] | None = None,
        *,
        auto_ack: bool = False,
        redelivered: bool = False,
        exchange: str = "",
        routing_key: str = "",
        consumer_tag: str | None = None,
    ) -> None:
        super().__init__(body, properties)
        self._channel = channel
        self._delivery_tag = delivery_tag
        self._auto_ack = auto_ack
        self._state = DeliveryState.UNACKNOWLEDGED
        self.redelivered = redelivered
        self.exchange = exchange
        self.routing_key = routing_key
        self.consumer_tag = consumer_tag

    def __repr__(self) -> str:
        return (
            f"Delivery(tag={self._delivery_tag}, state={self._state.value}, "
            f"auto_ack={self._auto_ack}, routing_key={self.routing_key!r})"
        )

    @property
    def state(self) -> DeliveryState:
        return self._state

    @property
    def auto_ack(self) -> bool:
        return self._auto_ack

    @property
    def settled(self) -> bool:
        return self._state != DeliveryState.UNACKNOWLEDGED

    @property
    def channel(self) -> "Channel":
        return self._channel

    @property
    def delivery_tag(self) -> int:
        return self.get_delivery_tag()

    def get_delivery_tag(self) -> int:
        if self._delivery_tag == UNINITIALIZED_TAG:
            raise UninitializedTag("delivery tag was never assigned")
        return self._delivery_tag

    def _ensure_unsettled(self) -> None:
        if self._state != DeliveryState.UNACKNOWLEDGED:
            raise AlreadyAcknowledged(
                f"delivery {self._delivery_tag} is already {self._state.value.lower()}"
            )

    def _mark(self, state: DeliveryState) -> None:
        self._state = state

    async def ack(self, *, multiple: bool = False) -> None:
        """Acknowledge this delivery (and, with `multiple`, every earlier one on the channel)."""
        self._ensure_unsettled()
        if not self._auto_ack:
            await self._channel._settle(self, DeliveryState.ACKNOWLEDGED, multiple=multiple)
        self._mark(DeliveryState.ACKNOWLEDGED)

    async def nack(self, *, multiple: bool = False, requeue: bool = True) -> None:
        """Reject this delivery, optionally asking the broker to requeue it."""
        self._ensure_unsettled()
        if not self._auto_ack:
            await self._channel._settle(
                self,
                DeliveryState.REJECTED,
                multiple=multiple,
                requeue=requeue,
            )
        self._mark(DeliveryState.REJECTED)
