"""
Worker process that projects payment events onto the order read model.

Run with:
    python -m fulfillment.consumers.payments_consumer

Exits with status 1 when the broker is lost for good (reconnect budget
exhausted) or refuses the topology, so the supervisor restarts it.
"""

from __future__ import annotations

import asyncio
import signal
import sys

import redis.asyncio as redis
import structlog

from fulfillment.core.config import Settings, get_settings
from fulfillment.core.logging import bind_context, configure_logging
from fulfillment.db.session import build_session_maker
from fulfillment.messaging.connection import ConnectionManager
from fulfillment.messaging.consumer import RetryEngine
from fulfillment.messaging.errors import BrokerUnavailableError, TopologyConflictError
from fulfillment.messaging.publisher import Publisher
from fulfillment.projections.order_status import OrderStatusProjector

logger = structlog.get_logger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


async def run(settings: Settings, connection: ConnectionManager | None = None) -> None:
    """
    Consume `settings.payments_queue` until stopped.

    Returns when the process is asked to stop (SIGINT/SIGTERM).

    Raises:
        BrokerUnavailableError: The broker is unreachable for good.
        TopologyConflictError: The broker refused the topology.
    """
    connection = connection or ConnectionManager.from_settings(settings)
    publisher = Publisher(connection, timeout=settings.rabbitmq_publish_timeout)
    engine = RetryEngine.from_settings(connection, publisher, settings)

    db_engine, session_maker = build_session_maker(settings.database_dsn)
    redis_client = redis.from_url(settings.redis_dsn, encoding="utf-8", decode_responses=True)
    projector = OrderStatusProjector(session_maker, redis_client, settings.cache_ttl_seconds)

    loop = asyncio.get_running_loop()
    # The loop keeps only weak references to tasks.
    stopping: set[asyncio.Task[None]] = set()

    def request_stop() -> None:
        task = loop.create_task(connection.disconnect())
        stopping.add(task)
        task.add_done_callback(stopping.discard)

    for sig in STOP_SIGNALS:
        loop.add_signal_handler(sig, request_stop)

    try:
        await engine.consume(settings.payments_queue, projector)
        await connection.connect()
        logger.info("payments_worker_started", queue=settings.payments_queue)
        await connection.wait_closed()
    finally:
        for sig in STOP_SIGNALS:
            loop.remove_signal_handler(sig)
        await engine.stop()
        await connection.disconnect()
        if stopping:
            await asyncio.gather(*stopping)
        await redis_client.aclose()
        await db_engine.dispose()
        logger.info("payments_worker_stopped")


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    bind_context(service=settings.app_name, worker="payments")
    try:
        asyncio.run(run(settings))
    except (BrokerUnavailableError, TopologyConflictError) as exc:
        logger.critical("payments_worker_fatal", error=str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
