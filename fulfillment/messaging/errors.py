"""Messaging-specific exceptions."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fulfillment.messaging.publisher import PublishResult


class MessagingError(Exception):
    """Base class for all event backbone errors."""


class TopologyError(MessagingError, ValueError):
    """Raised when a topology descriptor is invalid or references unknown entities."""


class TopologyConflictError(TopologyError):
    """Raised when the broker refuses a re-declaration with different parameters."""


class BrokerUnavailableError(MessagingError):
    """Raised when the reconnect budget is exhausted. The process cannot continue."""


class NotConnectedError(MessagingError):
    """Raised when a broker handle is requested while disconnected."""


class MalformedMessageError(MessagingError, ValueError):
    """Raised when a message body cannot be decoded into an event."""


class IllegalTransitionError(MessagingError):
    """Raised when the connection state machine receives an event it cannot accept."""


class EventPublishError(MessagingError):
    """Raised by application services when an event was not accepted by the broker."""

    def __init__(self, result: PublishResult) -> None:
        self.result = result
        super().__init__(f"event not accepted: {result.status.value} ({result.reason})")
