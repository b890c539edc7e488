from __future__ import annotations

import pytest

from rmq_channel.app.infrastructure.messaging.inmemory.in_memory_transport import (
    InMemoryBroker,
    InMemoryTransport,
)
from tests.fakes import FakeTransport


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture()
def memory_transport(broker: InMemoryBroker) -> InMemoryTransport:
    return InMemoryTransport(broker)
