"""
Order-status projector.

Consumes payment-lifecycle events (`payment.*`) and applies them to the Order
read model.

    current payment_status | event            | new payment_status | new status
    pending                | payment_approved | completed          | confirmed (if order is pending)
    pending                | payment_rejected | failed             | cancelled (if order is pending)
    anything else                                -> no-op

Delivery is at-least-once, so the transition is keyed on the current state
and not on the arrival of the event: a duplicate `payment_approved` finds
`payment_status = completed` and changes nothing.
"""

from __future__ import annotations

import enum
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.db.models import OrderStatus, PaymentStatus
from fulfillment.messaging.envelope import EventMessage
from fulfillment.messaging.errors import MalformedMessageError
from fulfillment.repositories.orders import DEFAULT_CACHE_TTL_SECONDS, OrdersRepository
from fulfillment.schemas.orders import OrderStatusRead

logger = structlog.get_logger(__name__)

# Re-reads allowed when a concurrent writer changes the order under us.
MAX_TRANSITION_ATTEMPTS = 3


class PaymentEvent(str, enum.Enum):
    APPROVED = "payment_approved"
    REJECTED = "payment_rejected"
    CANCELLED = "payment_cancelled"


PAYMENT_EVENTS = frozenset(event.value for event in PaymentEvent)


class ProjectionConflictError(RuntimeError):
    """Raised when the order changed on every attempt to apply a payment event."""


@dataclass(frozen=True)
class Transition:
    status: OrderStatus
    payment_status: PaymentStatus


def next_state(status: OrderStatus, payment_status: PaymentStatus, event: str) -> Transition | None:
    """Return the state an order moves to on `event`, or None when the event changes nothing."""
    if payment_status is not PaymentStatus.PENDING:
        return None
    if event == PaymentEvent.APPROVED.value:
        new_status = OrderStatus.CONFIRMED if status is OrderStatus.PENDING else status
        return Transition(new_status, PaymentStatus.COMPLETED)
    if event == PaymentEvent.REJECTED.value:
        new_status = OrderStatus.CANCELLED if status is OrderStatus.PENDING else status
        return Transition(new_status, PaymentStatus.FAILED)
    return None


def order_id_from(payload: Mapping[str, Any]) -> uuid.UUID:
    """
    Extract the order id of a payment event payload.

    Raises:
        MalformedMessageError: If `orderId` is missing or not a UUID.
    """
    raw = payload.get("orderId")
    if raw is None:
        raise MalformedMessageError("payment event has no orderId")
    try:
        return uuid.UUID(str(raw))
    except ValueError as exc:
        raise MalformedMessageError(f"orderId is not a UUID: {raw!r}") from exc


class OrderStatusProjector:
    """
    Retry-engine handler that projects payment events onto orders.

    Raising lets the retry engine redeliver the event later. That is what
    happens for an order that is not visible yet (the checkout transaction may
    commit after the payment event arrives), and for an order that kept
    changing under every compare-and-set attempt.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis
        self._cache_ttl_seconds = cache_ttl_seconds

    async def __call__(self, message: EventMessage) -> None:
        if message.event not in PAYMENT_EVENTS:
            logger.debug("event_ignored", event_name=message.event)
            return

        order_id = order_id_from(message.payload)
        log = logger.bind(order_id=str(order_id), event_name=message.event, payment_id=message.payload.get("paymentId"))

        async with self._session_factory() as session:
            repo = OrdersRepository(session, self._redis, self._cache_ttl_seconds)
            for _ in range(MAX_TRANSITION_ATTEMPTS):
                current = await repo.load_status(order_id)
                target = next_state(current.status, current.payment_status, message.event)
                if target is None:
                    log.info(
                        "payment_event_noop",
                        status=current.status.value,
                        payment_status=current.payment_status.value,
                    )
                    return

                applied = await repo.apply_payment_transition(
                    order_id,
                    expected_status=current.status,
                    expected_payment_status=current.payment_status,
                    status=target.status,
                    payment_status=target.payment_status,
                )
                if applied:
                    log.info(
                        "order_status_projected",
                        status=target.status.value,
                        payment_status=target.payment_status.value,
                    )
                    return

                log.info(
                    "payment_event_raced",
                    status=current.status.value,
                    payment_status=current.payment_status.value,
                )

        raise ProjectionConflictError(f"order {order_id} kept changing while applying {message.event}")

    async def get_order_status(self, order_id: uuid.UUID) -> OrderStatusRead:
        """
        Read side of the projection (cache-aside).

        Raises:
            ValueError: If the order does not exist.
        """
        async with self._session_factory() as session:
            repo = OrdersRepository(session, self._redis, self._cache_ttl_seconds)
            return await repo.get_status(order_id)
