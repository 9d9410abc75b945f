"""
Consumer with bounded retry and dead-lettering.

Every delivery ends in exactly one of:
- ack: the handler succeeded;
- redirect to `<queue>.retry` with `x-retry-count` incremented and a
  per-message expiration of `retry_delay_ms * retry_count`; the retry queue
  dead-letters it back to `<queue>` when it expires;
- redirect to `<queue>.dlq` once `retry_count` exceeds `max_retries`.

After a redirect the original delivery is nacked without requeue, so the
redirected copy is the only surviving instance. If the redirect itself is not
accepted by the broker, the original is nacked with requeue instead and the
broker delivers it again.

In-flight concurrency is bounded by the channel prefetch set by the
ConnectionManager.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import Any, Union

import aio_pika
import structlog
from aio_pika.abc import AbstractIncomingMessage
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from fulfillment.core.config import Settings
from fulfillment.messaging.connection import ConnectionManager
from fulfillment.messaging.envelope import EnvelopeHeaders, EventMessage
from fulfillment.messaging.errors import NotConnectedError, TopologyError
from fulfillment.messaging.publisher import Publisher
from fulfillment.messaging.topology import dead_letter_queue_name, retry_queue_name

logger = structlog.get_logger(__name__)

Handler = Callable[[EventMessage], Union[Awaitable[Any], Any]]

MAX_ERROR_LENGTH = 1024


@dataclass
class _Subscription:
    queue: str
    handler: Handler
    consumer_tag: str | None = None
    # Channel the consumer is registered on; None while pending.
    channel: Any = None


def describe_error(exc: BaseException) -> str:
    """Text stored in `x-error`."""
    text = str(exc) or type(exc).__name__
    return text[:MAX_ERROR_LENGTH]


class RetryEngine:
    """
    Runs handlers for queue deliveries and applies the retry/dead-letter policy.

    Subscriptions are remembered and re-established after every reconnect
    through the connection manager's ready callback.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        publisher: Publisher,
        *,
        max_retries: int = 3,
        retry_delay_ms: int = 5000,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if retry_delay_ms <= 0:
            raise ValueError("retry_delay_ms must be > 0")
        self._connection = connection
        self._publisher = publisher
        self._max_retries = max_retries
        self._retry_delay_ms = retry_delay_ms
        self._subscriptions: dict[str, _Subscription] = {}
        connection.add_ready_callback(self._resubscribe)

    @classmethod
    def from_settings(cls, connection: ConnectionManager, publisher: Publisher, settings: Settings) -> RetryEngine:
        return cls(
            connection,
            publisher,
            max_retries=settings.rabbitmq_max_retries,
            retry_delay_ms=settings.rabbitmq_retry_delay_ms,
        )

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def retry_delay_ms(self, retry_count: int) -> int:
        """Linear delay before redelivery number `retry_count`."""
        return self._retry_delay_ms * retry_count

    async def consume(self, queue: str, handler: Handler) -> None:
        """
        Register `handler` for deliveries on `queue`.

        The handler receives the decoded EventMessage. It may be a plain
        function or a coroutine function; any exception it raises is a failure.
        Without an open, declared channel the subscription starts on the next
        successful connect.

        Raises:
            TopologyError: If the queue is unknown or has no retry/dlq companions.
            ValueError: If the queue already has a handler.
        """
        definition = self._connection.topology.get_queue(queue)
        if not definition.with_retry:
            raise TopologyError(f"queue {queue!r} has no retry/dead-letter companions")
        if queue in self._subscriptions:
            raise ValueError(f"queue {queue!r} already has a handler")

        subscription = _Subscription(queue=queue, handler=handler)
        self._subscriptions[queue] = subscription
        if self._connection.has_channel():
            await self._subscribe(subscription)

    async def stop(self) -> None:
        """Cancel all consumers. In-flight handlers finish on their own."""
        for subscription in list(self._subscriptions.values()):
            if subscription.consumer_tag is None:
                continue
            try:
                await self._connection.queue(subscription.queue).cancel(subscription.consumer_tag)
            except (NotConnectedError, ChannelInvalidStateError, AMQPError) as exc:
                logger.warning("consumer_cancel_failed", queue=subscription.queue, error=repr(exc))
            subscription.consumer_tag = None
            subscription.channel = None
        self._subscriptions.clear()
        logger.info("consumers_stopped")

    async def _resubscribe(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await self._subscribe(subscription)

    async def _subscribe(self, subscription: _Subscription) -> None:
        """Register the consumer on the current channel unless it already is."""
        channel = self._connection.channel
        if subscription.channel is channel:
            return
        queue = self._connection.queue(subscription.queue)
        subscription.channel = channel
        try:
            subscription.consumer_tag = await queue.consume(partial(self._on_message, subscription), no_ack=False)
        except BaseException:
            subscription.channel = None
            raise
        logger.info("consumer_subscribed", queue=subscription.queue, consumer_tag=subscription.consumer_tag)

    async def _on_message(self, subscription: _Subscription, message: AbstractIncomingMessage) -> None:
        headers = EnvelopeHeaders.from_amqp(message.headers)
        log = logger.bind(queue=subscription.queue, message_id=message.message_id, retry_count=headers.retry_count)
        try:
            event = EventMessage.from_bytes(message.body)
            result = subscription.handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            log.warning("handler_failed", error=describe_error(exc), exc_type=type(exc).__name__)
            await self._redirect(subscription.queue, message, headers, exc)
            return
        await message.ack()
        log.debug("message_acked")

    async def _redirect(
        self,
        queue: str,
        message: AbstractIncomingMessage,
        headers: EnvelopeHeaders,
        exc: Exception,
    ) -> None:
        error = describe_error(exc)
        retry_count = headers.retry_count + 1
        expiration: timedelta | None
        if retry_count <= self._max_retries:
            target = retry_queue_name(queue)
            outgoing = headers.for_retry(queue, error)
            expiration = timedelta(milliseconds=self.retry_delay_ms(retry_count))
        else:
            target = dead_letter_queue_name(queue)
            outgoing = headers.for_dead_letter(queue, error, datetime.now(tz=UTC))
            expiration = None

        copy = aio_pika.Message(
            body=message.body,
            headers=outgoing.to_amqp(),
            content_type=message.content_type,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=message.message_id,
            timestamp=message.timestamp,
            priority=message.priority,
            correlation_id=message.correlation_id,
            expiration=expiration,
        )
        result = await self._publisher.send("", target, copy)
        log = logger.bind(queue=queue, message_id=message.message_id, retry_count=outgoing.retry_count)
        if not result.accepted:
            log.error("redirect_failed", target=target, status=result.status.value, reason=result.reason)
            await message.nack(requeue=True)
            return

        await message.nack(requeue=False)
        if expiration is None:
            log.error("message_dead_lettered", target=target, error=error)
        else:
            log.warning("message_retry_scheduled", target=target, delay_ms=self.retry_delay_ms(retry_count))
