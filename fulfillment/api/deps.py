"""
Request-scoped providers for the HTTP layer.

Database sessions and Redis clients live for one request. The broker
connection and the publisher are process-wide: the lifespan in `main.py`
stores them on `app.state` and the providers below only hand them out, so
tests replace them through `app.dependency_overrides`.

Routers import the `*Dep` aliases and never build services themselves.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated, Any, TypeAlias

from fastapi import Depends, Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.config import get_settings
from fulfillment.db.session import get_session
from fulfillment.messaging.connection import ConnectionManager
from fulfillment.messaging.publisher import EventPublisher
from fulfillment.repositories.orders import OrdersRepository
from fulfillment.services.orders import OrdersService
from fulfillment.services.payments import PaymentsService


async def get_redis() -> AsyncGenerator[Redis, None]:
    """
    Provide a Redis client scoped to the request lifetime.

    Yields:
        Redis client configured from settings, with `decode_responses=True`.
    """
    redis: Redis = Redis.from_url(
        get_settings().redis_dsn,
        encoding="utf-8",
        decode_responses=True,
    )
    try:
        yield redis
    finally:
        await redis.aclose()


def get_publisher(request: Request) -> EventPublisher:
    """Return the publisher created by the application lifespan."""
    return request.app.state.publisher


def get_connection(request: Request) -> ConnectionManager:
    """Return the broker connection manager created by the application lifespan."""
    return request.app.state.connection


SessionDep = Annotated[AsyncSession, Depends(get_session)]
RedisDep: TypeAlias = Annotated[Redis, Depends(get_redis)]
PublisherDep = Annotated[EventPublisher, Depends(get_publisher)]
ConnectionDep = Annotated[ConnectionManager, Depends(get_connection)]


def get_orders_repo(session: SessionDep, redis: RedisDep) -> OrdersRepository:  # type: ignore[type-arg]
    """Orders repository bound to the request session, caching status reads in Redis."""
    return OrdersRepository(session=session, redis=redis, cache_ttl_seconds=get_settings().cache_ttl_seconds)


def get_orders_service(
    repo: Annotated[OrdersRepository, Depends(get_orders_repo)],
    publisher: PublisherDep,
) -> OrdersService:
    return OrdersService(repo=repo, publisher=publisher)


def get_payments_service(publisher: PublisherDep) -> PaymentsService:
    return PaymentsService(publisher=publisher)


# ---- aliases used by routers ----

OrdersServiceDep = Annotated[OrdersService, Depends(get_orders_service)]
PaymentsServiceDep = Annotated[PaymentsService, Depends(get_payments_service)]
