"""Domain models: declaration descriptors and close parameters."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from rmq_channel.app.constants import DEFAULT_EXCHANGE, ExchangeType


@dataclass(frozen=True)
class QueueSpec:
    """Queue declaration. An empty name lets the broker assign one."""

    name: str = ""
    durable: bool = False
    exclusive: bool = False
    auto_delete: bool = False
    arguments: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str):
            raise TypeError("queue name must be a str")
        if self.arguments is not None and not isinstance(self.arguments, dict):
            raise TypeError("queue arguments must be a dict or None")

    @property
    def server_named(self) -> bool:
        return self.name == ""

    @staticmethod
    def anonymous() -> "QueueSpec":
        """Broker-named, exclusive, auto-delete, non-durable queue."""
        return QueueSpec(name="", durable=False, exclusive=True, auto_delete=True)


@dataclass(frozen=True)
class ExchangeSpec:
    """Exchange declaration."""

    name: str
    type: str = ExchangeType.DIRECT.value
    durable: bool = False
    auto_delete: bool = False
    arguments: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str):
            raise TypeError("exchange name must be a str")
        if self.name == DEFAULT_EXCHANGE:
            raise ValueError("the default exchange cannot be declared")
        # Accept ExchangeType members and plain strings alike.
        kind = ExchangeType(self.type).value
        object.__setattr__(self, "type", kind)
        if self.arguments is not None and not isinstance(self.arguments, dict):
            raise TypeError("exchange arguments must be a dict or None")


@dataclass(frozen=True)
class CloseParams:
    """Reply code and text sent with a channel close or abort."""

    code: int
    reason: str

    def __post_init__(self) -> None:
        if isinstance(self.code, bool) or not isinstance(self.code, int):
            raise TypeError("close code must be an int")
        if not isinstance(self.reason, str):
            raise TypeError("close reason must be a str")

    @staticmethod
    def coerce(code: Any, reason: Any) -> "CloseParams | None":
        """Build params only when both values are well typed, otherwise None."""
        if isinstance(code, bool) or not isinstance(code, int):
            return None
        if not isinstance(reason, str):
            return None
        return CloseParams(code=code, reason=reason)
