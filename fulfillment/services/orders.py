from __future__ import annotations

import uuid

import structlog

from fulfillment.messaging.envelope import EventMessage, PublishOptions
from fulfillment.messaging.errors import EventPublishError
from fulfillment.messaging.publisher import EventPublisher
from fulfillment.messaging.topology import ORDER_CREATED_KEY, ORDERS_EXCHANGE
from fulfillment.repositories.orders import OrdersRepository
from fulfillment.schemas.orders import OrderCreate, OrderRead, OrderStatusRead

logger = structlog.get_logger(__name__)

ORDER_CREATED_EVENT = "order_created"


class OrdersService:
    """
    Orders application service.

    Orchestrates the repository and the event backbone for checkout, and
    serves the order status read model.

    Responsibilities:
    - Persist a new order only when its `order_created` event was accepted.
    - Expose `get_order_status` to the rest of the application.

    Non-responsibilities:
    - SQL queries or cache logic (handled by OrdersRepository).
    - HTTP concerns (status codes, FastAPI exceptions).
    """

    def __init__(self, repo: OrdersRepository, publisher: EventPublisher) -> None:
        """
        Initialize OrdersService.

        Args:
            repo: OrdersRepository instance.
            publisher: Publisher used to emit domain events.
        """
        self._repo = repo
        self._publisher = publisher

    async def create_order(self, payload: OrderCreate) -> OrderRead:
        """
        Check out a new order.

        Business flow:
        1. Add the pending order to the transaction.
        2. Publish `order_created` to `orders.exchange` / `order.created`.
        3. Commit if the broker accepted the event, roll back otherwise.

        Args:
            payload: Checkout payload.

        Returns:
            OrderRead DTO representing the created order.

        Raises:
            EventPublishError: If the event was rejected or the broker is not connected.
        """
        order = await self._repo.create(payload)
        event = EventMessage(
            event=ORDER_CREATED_EVENT,
            payload={
                "orderId": str(order.id),
                "customerEmail": order.customer_email,
                "items": [item.model_dump() for item in order.items],
                "total": order.total_price,
                "paymentMethod": order.payment_method.value,
            },
        )
        result = await self._publisher.publish(
            ORDERS_EXCHANGE,
            ORDER_CREATED_KEY,
            event,
            PublishOptions(correlation_id=str(order.id)),
        )
        if not result.accepted:
            await self._repo.rollback()
            logger.warning("checkout_rolled_back", order_id=str(order.id), publish_status=result.status.value)
            raise EventPublishError(result)

        await self._repo.commit()
        logger.info("order_created", order_id=str(order.id), message_id=result.message_id)
        return order

    async def get_order_status(self, order_id: uuid.UUID) -> OrderStatusRead:
        """
        Return the current status of an order.

        Raises:
            ValueError: If the order does not exist.
        """
        return await self._repo.get_status(order_id)
