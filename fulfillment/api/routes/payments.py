"""Payment-provider notification endpoint."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from fulfillment.api.deps import PaymentsServiceDep
from fulfillment.api.routes.orders import RETRY_LATER
from fulfillment.messaging.errors import EventPublishError
from fulfillment.schemas.payments import PaymentNotification, PaymentNotificationAccepted

router = APIRouter(tags=["payments"])


@router.post(
    "/payments/notifications",
    response_model=PaymentNotificationAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def payment_notification_endpoint(
    payload: PaymentNotification,
    service: PaymentsServiceDep,
) -> PaymentNotificationAccepted:
    """Publish the payment outcome; the order status is updated asynchronously by the projector."""
    try:
        result = await service.notify(payload)
    except EventPublishError as err:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=RETRY_LATER) from err
    return PaymentNotificationAccepted(event=payload.event_name, message_id=result.message_id)
