"""
Orders repository (ORM + status cache).

This repository is the single place that knows about:
- SQLAlchemy persistence of the Order read model.
- The Redis status cache.

Reads of the status go through cache-aside: Redis first, then the database,
then Redis is populated. Every write that changes the status invalidates the
cached entry.

Transactions are owned by the caller for order creation (`create()` only
flushes, so the service can roll back when the `order_created` event is not
accepted). Payment transitions commit on their own.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from redis.asyncio import Redis
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.db.models import Order, OrderStatus, PaymentStatus
from fulfillment.schemas.orders import OrderCreate, OrderRead, OrderStatusRead
from fulfillment.services.cache import drop_status, read_status, write_status

DEFAULT_CACHE_TTL_SECONDS = 60


class OrdersRepository:
    """
    Data access layer for Order entities, with optional Redis caching.

    Args:
        session: SQLAlchemy async session.
        redis: Redis client. If None, repository works without caching.
        cache_ttl_seconds: TTL of cached status entries.
    """

    def __init__(
        self,
        session: AsyncSession,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ) -> None:
        self._session = session
        self._redis = redis
        self._cache_ttl_seconds = cache_ttl_seconds

    async def create(self, data: OrderCreate) -> OrderRead:
        """
        Add a pending order to the current transaction.

        The row is flushed (so it has an id and defaults) but not committed.

        Args:
            data: Checkout payload.

        Returns:
            OrderRead DTO of the new order.
        """
        order = Order(
            customer_email=data.customer_email,
            items=[item.model_dump() for item in data.items],
            total_price=data.total_price,
            payment_method=data.payment_method.value,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
        )
        self._session.add(order)
        await self._session.flush()
        await self._session.refresh(order)
        return OrderRead.model_validate(order)

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()

    async def load_status(self, order_id: uuid.UUID) -> OrderStatusRead:
        """
        Load the current status from the database, bypassing the cache.

        Raises:
            ValueError: If order not found in DB.
        """
        stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        res = await self._session.execute(stmt)
        order = res.scalar_one_or_none()
        if order is None:
            raise ValueError("Order not found")
        return OrderStatusRead.model_validate(order)

    async def get_status(self, order_id: uuid.UUID) -> OrderStatusRead:
        """
        Get the status of an order (cache-aside).

        Args:
            order_id: Order UUID.

        Returns:
            OrderStatusRead DTO.

        Raises:
            ValueError: If order not found in DB.
        """
        if self._redis is not None:
            cached = await read_status(self._redis, order_id)
            if cached is not None:
                return cached

        status = await self.load_status(order_id)

        if self._redis is not None:
            await write_status(self._redis, status, self._cache_ttl_seconds)
        return status

    async def apply_payment_transition(
        self,
        order_id: uuid.UUID,
        expected_status: OrderStatus,
        expected_payment_status: PaymentStatus,
        status: OrderStatus,
        payment_status: PaymentStatus,
    ) -> bool:
        """
        Move an order to a new (status, payment_status) and commit.

        The update only matches while the row still has `expected_status` and
        `expected_payment_status`, so two deliveries of the same payment event
        cannot both apply, and a status written concurrently (for example an
        order moved to `preparing`) is never overwritten.

        Returns:
            True if the row was updated, False if another writer got there first.
        """
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == expected_status,
                Order.payment_status == expected_payment_status,
            )
            .values(status=status, payment_status=payment_status, updated_at=datetime.now(tz=UTC))
        )
        res = await self._session.execute(stmt)
        await self._session.commit()

        applied = res.rowcount == 1
        if applied and self._redis is not None:
            await drop_status(self._redis, order_id)
        return applied
