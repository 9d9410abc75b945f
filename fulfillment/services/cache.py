"""
Redis cache for the order status read model.

Low-level helpers used by OrdersRepository only.

Responsibilities:
- Own the key layout of cached status entries (`order-status:<uuid>`).
- Serialize / deserialize `OrderStatusRead` to/from JSON.
- Treat an unreadable entry as a miss and drop it.

Non-responsibilities:
- Deciding when an entry is stale (the repository invalidates on writes).
- Database access.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from pydantic import ValidationError
from redis.asyncio import Redis

from fulfillment.schemas.orders import OrderStatusRead

logger = structlog.get_logger(__name__)

STATUS_PREFIX = "order-status"


def status_key(order_id: uuid.UUID) -> str:
    """Redis key of the cached status of an order."""
    return f"{STATUS_PREFIX}:{order_id}"


async def read_status(redis: Redis, order_id: uuid.UUID) -> OrderStatusRead | None:
    """
    Return the cached status of an order.

    Returns:
        The cached read model, or None on a miss or an unreadable entry.
    """
    key = status_key(order_id)
    raw: str | None = await redis.get(key)
    if raw is None:
        return None
    try:
        return OrderStatusRead.model_validate_json(raw)
    except ValidationError:
        logger.warning("status_cache_entry_invalid", key=key)
        await redis.delete(key)
        return None


async def write_status(redis: Redis, status: OrderStatusRead, ttl_seconds: int) -> None:
    await redis.setex(status_key(status.id), ttl_seconds, status.model_dump_json())


async def drop_status(redis: Redis, order_id: uuid.UUID) -> None:
    """Invalidate the cached status. Safe when nothing is cached."""
    await redis.delete(status_key(order_id))
