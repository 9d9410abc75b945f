"""Turns payment-provider notifications into payment-lifecycle events."""

from __future__ import annotations

import structlog

from fulfillment.messaging.envelope import EventMessage, PublishOptions
from fulfillment.messaging.errors import EventPublishError
from fulfillment.messaging.publisher import EventPublisher, PublishResult
from fulfillment.messaging.topology import PAYMENTS_EXCHANGE, payment_routing_key
from fulfillment.schemas.payments import PaymentNotification

logger = structlog.get_logger(__name__)


class PaymentsService:
    def __init__(self, publisher: EventPublisher) -> None:
        self._publisher = publisher

    async def notify(self, notification: PaymentNotification) -> PublishResult:
        """
        Publish `payment_<status>` to `payments.exchange` / `payment.<status>`.

        Raises:
            EventPublishError: If the event was not accepted.
        """
        event = EventMessage(
            event=notification.event_name,
            payload={
                "orderId": str(notification.order_id),
                "paymentId": notification.payment_id,
                "status": notification.status.value,
            },
        )
        result = await self._publisher.publish(
            PAYMENTS_EXCHANGE,
            payment_routing_key(notification.status.value),
            event,
            PublishOptions(correlation_id=str(notification.order_id)),
        )
        if not result.accepted:
            raise EventPublishError(result)
        logger.info(
            "payment_event_published",
            order_id=str(notification.order_id),
            event_name=event.event,
            message_id=result.message_id,
        )
        return result
