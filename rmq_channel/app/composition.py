"""Composition root: build and lifecycle-manage the transport and its channels.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle.
"""
from __future__ import annotations

from typing import Any

from loguru import logger

from rmq_channel.app.config.settings import Settings
from rmq_channel.app.core import SERVICE_NAME
from rmq_channel.app.domain.channel import Channel, open_channel
from rmq_channel.app.infrastructure.messaging.factory import create_transport
from rmq_channel.app.ports.transport import Transport


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class ChannelDependencies:
    """Holds the connected transport and every channel opened through it."""

    def __init__(self, *, settings: Settings) -> None:
        self._settings = settings
        self._transport: Transport | None = None
        self._channels: list[Channel] = []

    async def __aenter__(self) -> "ChannelDependencies":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            raise RuntimeError("transport is not initialized")
        return self._transport

    @property
    def connected(self) -> bool:
        return self._transport is not None and not self._transport.is_closed

    async def connect(self) -> None:
        if self._transport is not None:
            return
        self._transport = await create_transport(self._settings)
        _log("transport_ready", backend=self._settings.transport_backend)

    async def open_channel(self) -> Channel:
        channel = await open_channel(self.transport)
        self._channels.append(channel)
        return channel

    async def close(self) -> None:
        for channel in self._channels:
            if not channel.is_open:
                continue
            try:
                await channel.close()
            except Exception as exc:
                logger.warning("channel {} close failed: {}", channel.channel_id, exc)
        self._channels.clear()

        if self._transport is not None:
            try:
                await self._transport.close()
            except Exception as exc:
                logger.warning("transport close failed: {}", exc)
            self._transport = None
        _log("transport_closed")


def create_channel_dependencies(settings: Settings | None = None) -> ChannelDependencies:
    return ChannelDependencies(settings=settings or Settings())
