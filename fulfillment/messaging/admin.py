"""
Operator tooling for the event backbone queues.

Nothing drains `<queue>.dlq` automatically. Messages only leave it through
`QueueAdmin.replay_dead_letters()` (or `fulfillment-queues replay`), which an
operator runs after fixing the cause of the failures.

Usage:
    fulfillment-queues stats payments.processed.dlq
    fulfillment-queues replay payments.processed --limit 100
    fulfillment-queues purge payments.processed.dlq --yes
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import wraps
from typing import Any

import aio_pika
import click
import structlog
from aio_pika.exceptions import AMQPError

from fulfillment.core.config import get_settings
from fulfillment.core.logging import configure_logging
from fulfillment.messaging.connection import ConnectionManager
from fulfillment.messaging.envelope import EnvelopeHeaders
from fulfillment.messaging.errors import MessagingError
from fulfillment.messaging.publisher import Publisher
from fulfillment.messaging.topology import dead_letter_queue_name

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class QueueStats:
    name: str
    messages: int
    consumers: int


class QueueAdmin:
    """Inspect, purge and replay queues declared in the topology."""

    def __init__(self, connection: ConnectionManager, publisher: Publisher) -> None:
        self._connection = connection
        self._publisher = publisher

    async def stats(self, queue: str) -> QueueStats:
        """
        Return the current depth and consumer count of a queue.

        Raises:
            TopologyError: If the queue is not part of the topology.
            NotConnectedError: If the manager is not connected.
        """
        self._connection.topology.get_queue(queue)
        declared = await self._connection.channel.declare_queue(queue, passive=True)
        result = declared.declaration_result
        return QueueStats(name=queue, messages=result.message_count, consumers=result.consumer_count)

    async def purge(self, queue: str) -> int:
        """
        Drop every ready message in a queue.

        Returns:
            Number of purged messages.
        """
        self._connection.topology.get_queue(queue)
        result = await self._connection.queue(queue).purge()
        purged = result.message_count or 0
        logger.warning("queue_purged", queue=queue, count=purged)
        return purged

    async def replay_dead_letters(self, queue: str, limit: int | None = None) -> int:
        """
        Move messages from `<queue>.dlq` back onto `<queue>`.

        `x-death-reason` / `x-death-time` are removed; `x-retry-count` is kept,
        so a replayed message that fails again goes straight back to the
        dead-letter queue. Replay stops at the first publish that is not
        accepted; that message is returned to the dead-letter queue.

        Args:
            queue: Business queue name (not the `.dlq` name).
            limit: Maximum number of messages to move. None means all.

        Returns:
            Number of messages moved.
        """
        if limit is not None and limit < 1:
            raise ValueError("limit must be >= 1")
        self._connection.topology.get_queue(queue)
        source = dead_letter_queue_name(queue)
        dlq = self._connection.queue(source)

        moved = 0
        while limit is None or moved < limit:
            message = await dlq.get(no_ack=False, fail=False)
            if message is None:
                break
            headers = EnvelopeHeaders.from_amqp(message.headers).without_death()
            copy = aio_pika.Message(
                body=message.body,
                headers=headers.to_amqp(),
                content_type=message.content_type,
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                message_id=message.message_id,
                timestamp=message.timestamp,
                priority=message.priority,
                correlation_id=message.correlation_id,
            )
            result = await self._publisher.send("", queue, copy)
            if not result.accepted:
                await message.nack(requeue=True)
                logger.error(
                    "dead_letter_replay_interrupted",
                    queue=queue,
                    message_id=message.message_id,
                    status=result.status.value,
                    moved=moved,
                )
                break
            await message.ack()
            moved += 1

        logger.info("dead_letters_replayed", queue=queue, source=source, count=moved)
        return moved


def coro(f: Callable[..., Awaitable[Any]]) -> Callable[..., Any]:
    """Run an async click command with asyncio.run."""

    @wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(f(*args, **kwargs))

    return wrapper


@asynccontextmanager
async def open_admin() -> AsyncIterator[QueueAdmin]:
    settings = get_settings()
    manager = ConnectionManager.from_settings(settings)
    await manager.connect()
    try:
        yield QueueAdmin(manager, Publisher(manager, timeout=settings.rabbitmq_publish_timeout))
    finally:
        await manager.disconnect()


def _fail(message: str) -> None:
    click.secho(message, fg="red", err=True)
    sys.exit(1)


@click.group()
def cli() -> None:
    """Inspect and operate the event backbone queues."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)


@cli.command()
@click.argument("queue")
@coro
async def stats(queue: str) -> None:
    """Show message and consumer counts for QUEUE."""
    try:
        async with open_admin() as admin:
            result = await admin.stats(queue)
    except (MessagingError, AMQPError) as exc:
        _fail(f"stats failed: {exc}")
        return
    click.echo(f"{result.name}: {result.messages} messages, {result.consumers} consumers")


@cli.command()
@click.argument("queue")
@click.option("--yes", is_flag=True, help="Confirm dropping every ready message.")
@coro
async def purge(queue: str, yes: bool) -> None:
    """Drop every ready message in QUEUE."""
    if not yes:
        _fail("refusing to purge without --yes")
        return
    try:
        async with open_admin() as admin:
            count = await admin.purge(queue)
    except (MessagingError, AMQPError) as exc:
        _fail(f"purge failed: {exc}")
        return
    click.echo(f"purged {count} messages from {queue}")


@cli.command()
@click.argument("queue")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum number of messages to move.")
@coro
async def replay(queue: str, limit: int | None) -> None:
    """Move dead-lettered messages of QUEUE back onto QUEUE."""
    try:
        async with open_admin() as admin:
            count = await admin.replay_dead_letters(queue, limit=limit)
    except (MessagingError, AMQPError) as exc:
        _fail(f"replay failed: {exc}")
        return
    click.echo(f"replayed {count} messages from {dead_letter_queue_name(queue)} to {queue}")


if __name__ == "__main__":
    cli()
