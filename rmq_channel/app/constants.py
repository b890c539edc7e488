"""Channel-level constants shared across modules."""
from __future__ import annotations

from enum import Enum

DEFAULT_EXCHANGE = ""
# Delivery tag value for a delivery the broker never numbered.
UNINITIALIZED_TAG = -1


class ChannelState(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class DeliveryState(str, Enum):
    UNACKNOWLEDGED = "UNACKNOWLEDGED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    REJECTED = "REJECTED"


class ExchangeType(str, Enum):
    DIRECT = "direct"
    FANOUT = "fanout"
    TOPIC = "topic"
    HEADERS = "headers"
