"""Order endpoints: checkout and status read model."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, HTTPException, status

from fulfillment.api.deps import OrdersServiceDep
from fulfillment.messaging.errors import EventPublishError
from fulfillment.schemas.orders import OrderCreate, OrderRead, OrderStatusRead

router = APIRouter(tags=["orders"])

RETRY_LATER = "Service temporarily unavailable, please try again"


@router.post("/orders/", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
async def create_order_endpoint(payload: OrderCreate, service: OrdersServiceDep) -> OrderRead:
    """Create an order and publish `order_created`. Nothing is stored if the event is not accepted."""
    try:
        return await service.create_order(payload)
    except EventPublishError as err:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=RETRY_LATER) from err


@router.get("/orders/{order_id}/status", response_model=OrderStatusRead)
async def get_order_status_endpoint(order_id: uuid.UUID, service: OrdersServiceDep) -> OrderStatusRead:
    """Current order and payment status; served from Redis when cached."""
    try:
        return await service.get_order_status(order_id)
    except ValueError as err:
        raise HTTPException(status_code=404, detail="Order not found") from err
