"""Typed errors raised at the channel façade boundary.

Every transport failure is wrapped in exactly one error class per operation
category, carrying the underlying diagnostic text and chained to the underlying
exception. Nothing here retries. Misuse of a delivery (double settlement,
missing tag) has its own branch so callers can tell it apart from broker
trouble.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CHANNEL_CREATION_FAILED = "ChannelCreationFailed"
    CHANNEL_CLOSE_FAILED = "ChannelCloseFailed"
    CHANNEL_ABORT_FAILED = "ChannelAbortFailed"
    QUEUE_DECLARATION_FAILED = "QueueDeclarationFailed"
    EXCHANGE_DECLARATION_FAILED = "ExchangeDeclarationFailed"
    BINDING_FAILED = "BindingFailed"
    PUBLISH_FAILED = "PublishFailed"
    QUEUE_DELETION_FAILED = "QueueDeletionFailed"
    EXCHANGE_DELETION_FAILED = "ExchangeDeletionFailed"
    QUEUE_PURGE_FAILED = "QueuePurgeFailed"
    CONSUME_FAILED = "ConsumeFailed"
    QOS_FAILED = "QosFailed"
    ACKNOWLEDGEMENT_FAILED = "AcknowledgementFailed"
    ALREADY_ACKNOWLEDGED = "AlreadyAcknowledged"
    UNINITIALIZED_TAG = "UninitializedTag"
    DECODE_FAILED = "DecodeFailed"


class ChannelError(Exception):
    """Base for every error the façade raises."""

    kind: ErrorKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransportOperationError(ChannelError):
    """A transport call failed; `prefix` names the operation that was attempted."""

    prefix = "An error occurred while talking to the broker"

    @classmethod
    def wrap(cls, exc: BaseException) -> "TransportOperationError":
        detail = str(exc) or type(exc).__name__
        return cls(f"{cls.prefix}: {detail}")

    @classmethod
    def channel_closed(cls, channel_id: int | None) -> "TransportOperationError":
        return cls(f"{cls.prefix}: channel {channel_id} is closed")


class ChannelCreationFailed(TransportOperationError):
    kind = ErrorKind.CHANNEL_CREATION_FAILED
    prefix = "An error occurred while creating the channel"


class ChannelCloseFailed(TransportOperationError):
    kind = ErrorKind.CHANNEL_CLOSE_FAILED
    prefix = "An error occurred while closing the channel"


class ChannelAbortFailed(TransportOperationError):
    kind = ErrorKind.CHANNEL_ABORT_FAILED
    prefix = "An error occurred while aborting the channel"


class QueueDeclarationFailed(TransportOperationError):
    kind = ErrorKind.QUEUE_DECLARATION_FAILED
    prefix = "An error occurred while declaring the queue"


class QueueAutoDeclarationFailed(QueueDeclarationFailed):
    """Declaring a server-named queue from the default spec failed."""

    prefix = "An error occurred while auto-declaring the queue"


class ExchangeDeclarationFailed(TransportOperationError):
    kind = ErrorKind.EXCHANGE_DECLARATION_FAILED
    prefix = "An error occurred while declaring the exchange"


class BindingFailed(TransportOperationError):
    kind = ErrorKind.BINDING_FAILED
    prefix = "An error occurred while binding the queue to an exchange"


class PublishFailed(TransportOperationError):
    kind = ErrorKind.PUBLISH_FAILED
    prefix = "An error occurred while publishing the message to a queue"


class QueueDeletionFailed(TransportOperationError):
    kind = ErrorKind.QUEUE_DELETION_FAILED
    prefix = "An error occurred while deleting the queue"


class ExchangeDeletionFailed(TransportOperationError):
    kind = ErrorKind.EXCHANGE_DELETION_FAILED
    prefix = "An error occurred while deleting the exchange"


class QueuePurgeFailed(TransportOperationError):
    kind = ErrorKind.QUEUE_PURGE_FAILED
    prefix = "An error occurred while purging the queue"


class ConsumeFailed(TransportOperationError):
    kind = ErrorKind.CONSUME_FAILED
    prefix = "An error occurred while managing the consumer"


class QosFailed(TransportOperationError):
    kind = ErrorKind.QOS_FAILED
    prefix = "An error occurred while setting the prefetch count"


class AcknowledgementFailed(TransportOperationError):
    kind = ErrorKind.ACKNOWLEDGEMENT_FAILED
    prefix = "An error occurred while acknowledging the message"


class DeliveryStateError(ChannelError):
    """The delivery handle was used in a way its state does not allow."""


class AlreadyAcknowledged(DeliveryStateError):
    kind = ErrorKind.ALREADY_ACKNOWLEDGED


class UninitializedTag(DeliveryStateError):
    kind = ErrorKind.UNINITIALIZED_TAG


class DecodeFailed(ChannelError):
    kind = ErrorKind.DECODE_FAILED
