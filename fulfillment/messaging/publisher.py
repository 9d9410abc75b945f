"""
Event publisher on top of the shared operating channel.

Responsibilities:
- Build the wire envelope (body, persistent delivery, message id, timestamp,
  `x-retry-count = 0`).
- Merge caller options without letting them overwrite required fields.
- Report the outcome of every publish as a `PublishResult`.

Non-responsibilities:
- Opening/closing broker handles (ConnectionManager).
- Client-side buffering: a publish while disconnected fails immediately.
- Deciding what to do with a non-accepted publish (callers decide).
"""

from __future__ import annotations

import asyncio
import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import aio_pika
import structlog
from aio_pika.abc import AbstractMessage
from aio_pika.exceptions import (
    AMQPConnectionError,
    ChannelClosed,
    ChannelInvalidStateError,
    DeliveryError,
    PublishError,
)
from pamqp.commands import Basic

from fulfillment.messaging.connection import ConnectionManager
from fulfillment.messaging.envelope import EnvelopeHeaders, EventMessage, PublishOptions, split_reserved
from fulfillment.messaging.errors import NotConnectedError, TopologyError

logger = structlog.get_logger(__name__)

CONTENT_TYPE = "application/json"


class PublishStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    NOT_CONNECTED = "not_connected"


@dataclass(frozen=True)
class PublishResult:
    """
    Outcome of a single publish.

    Attributes:
        status: accepted / rejected / not_connected.
        message_id: Id of the message that was (or would have been) sent.
        reason: Short diagnostic for non-accepted results. Not meant for end users.
    """

    status: PublishStatus
    message_id: str | None = None
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.status is PublishStatus.ACCEPTED


class EventPublisher(Protocol):
    """
    What application services depend on.

    Lets services be tested with an in-memory publisher instead of a broker.
    """

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        event: EventMessage,
        options: PublishOptions | None = None,
    ) -> PublishResult: ...


class Publisher:
    """
    Publishes events with publisher confirms.

    A broker nack, an unroutable message or a confirm timeout is `REJECTED`:
    the broker did not take responsibility for the message and the caller
    should apply backpressure. A missing channel is `NOT_CONNECTED`.
    """

    def __init__(self, connection: ConnectionManager, *, timeout: float = 10.0) -> None:
        """
        Args:
            connection: Owner of the operating channel.
            timeout: Seconds to wait for a publisher confirm.
        """
        self._connection = connection
        self._timeout = timeout

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        event: EventMessage,
        options: PublishOptions | None = None,
    ) -> PublishResult:
        """
        Publish a domain event.

        Args:
            exchange: Exchange name from the topology, or "" for the default exchange.
            routing_key: Routing key.
            event: Event to serialize into the body.
            options: Extra headers and properties.

        Returns:
            PublishResult. Never raises for broker conditions.
        """
        options = options or PublishOptions()
        if exchange and not self._connection.topology.has_exchange(exchange):
            logger.warning("publish_rejected", exchange=exchange, routing_key=routing_key, reason="unknown exchange")
            return PublishResult(PublishStatus.REJECTED, reason=f"exchange {exchange!r} is not declared")

        caller_headers, dropped = split_reserved(options.headers)
        if dropped:
            logger.warning("reserved_headers_dropped", exchange=exchange, routing_key=routing_key, headers=dropped)
        headers = EnvelopeHeaders().merge(caller_headers)

        message = aio_pika.Message(
            body=event.to_bytes(),
            headers=headers.to_amqp(),
            content_type=CONTENT_TYPE,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc),
            priority=options.priority,
            correlation_id=options.correlation_id,
            expiration=(
                timedelta(milliseconds=options.expiration_ms) if options.expiration_ms is not None else None
            ),
        )
        result = await self.send(exchange, routing_key, message)
        if result.accepted:
            logger.info(
                "event_published",
                event_name=event.event,
                exchange=exchange,
                routing_key=routing_key,
                message_id=result.message_id,
            )
        return result

    async def send(self, exchange: str, routing_key: str, message: AbstractMessage) -> PublishResult:
        """
        Publish a prebuilt message and wait for its confirm.

        Shared by `publish()`, the retry engine and the admin tooling.
        """
        message_id = message.message_id
        try:
            target = self._connection.exchange(exchange)
        except NotConnectedError:
            logger.warning("publish_not_connected", exchange=exchange, routing_key=routing_key)
            return PublishResult(PublishStatus.NOT_CONNECTED, message_id, "not connected")
        except TopologyError as exc:
            logger.warning("publish_rejected", exchange=exchange, routing_key=routing_key, error=str(exc))
            return PublishResult(PublishStatus.REJECTED, message_id, "unknown exchange")

        try:
            confirmation = await target.publish(message, routing_key=routing_key, timeout=self._timeout)
        except (ChannelInvalidStateError, ChannelClosed, AMQPConnectionError, ConnectionError) as exc:
            logger.warning("publish_not_connected", exchange=exchange, routing_key=routing_key, error=repr(exc))
            return PublishResult(PublishStatus.NOT_CONNECTED, message_id, "channel closed")
        except (DeliveryError, PublishError) as exc:
            logger.warning("publish_rejected", exchange=exchange, routing_key=routing_key, error=repr(exc))
            return PublishResult(PublishStatus.REJECTED, message_id, "returned by broker")
        except asyncio.TimeoutError:
            logger.warning("publish_rejected", exchange=exchange, routing_key=routing_key, reason="confirm timeout")
            return PublishResult(PublishStatus.REJECTED, message_id, "confirm timeout")

        if confirmation is not None and not isinstance(confirmation, Basic.Ack):
            logger.warning(
                "publish_rejected",
                exchange=exchange,
                routing_key=routing_key,
                reason=type(confirmation).__name__,
            )
            return PublishResult(PublishStatus.REJECTED, message_id, "nacked by broker")
        return PublishResult(PublishStatus.ACCEPTED, message_id)
