"""
RabbitMQ connection manager.

Owns the broker connection and the single operating channel shared by the
publisher and the retry engine. It is the only component that opens or closes
them. Other components borrow handles through `channel`, `exchange()` and
`queue()` and never close them.

Lifecycle:
- `connect()` opens a connection (bounded timeout), opens a channel with
  publisher confirms, sets the channel-wide prefetch, declares the topology
  (exchanges, then queues, then bindings) and runs the ready callbacks.
- A failed attempt is retried after `min(base * 2^attempt, cap)`; once
  `max_reconnect_attempts` consecutive attempts fail, `BrokerUnavailableError`
  is raised and the manager stops retrying.
- A broker-initiated connection/channel close re-enters the same loop from a
  background task. `wait_closed()` surfaces a fatal outcome to the process.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlsplit

import aio_pika
import structlog
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelPreconditionFailed

from fulfillment.core.config import Settings
from fulfillment.messaging.errors import (
    BrokerUnavailableError,
    MessagingError,
    NotConnectedError,
    TopologyConflictError,
    TopologyError,
)
from fulfillment.messaging.state import (
    ConnectionEvent,
    ConnectionState,
    ConnectionStatus,
    reconnect_delay,
    transition,
)
from fulfillment.messaging.topology import DEFAULT_TOPOLOGY, Topology

logger = structlog.get_logger(__name__)

ConnectFactory = Callable[..., Awaitable[AbstractConnection]]
ReadyCallback = Callable[[], Awaitable[None]]

# Errors that make a connect attempt fail and count against the reconnect budget.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    AMQPError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


class ConnectionManager:
    """
    Single connection + channel to RabbitMQ with bounded reconnect.

    Args:
        url: AMQP URL.
        topology: Exchanges, queues and bindings declared on every (re)connect.
        timeout: Connect timeout in seconds.
        prefetch: Channel-wide limit of unacknowledged deliveries.
        max_reconnect_attempts: Consecutive failed attempts before giving up.
        base_delay: Backoff base in seconds.
        max_delay: Backoff cap in seconds.
        connect: Factory returning an aio-pika connection (replaceable in tests).
        sleep: Coroutine used to wait between attempts (replaceable in tests).
    """

    def __init__(
        self,
        url: str,
        topology: Topology = DEFAULT_TOPOLOGY,
        *,
        timeout: float = 30.0,
        prefetch: int = 10,
        max_reconnect_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        connect: ConnectFactory = aio_pika.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be >= 1")
        self._url = url
        self._topology = topology
        self._timeout = timeout
        self._prefetch = prefetch
        self._max_reconnect_attempts = max_reconnect_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._connect = connect
        self._sleep = sleep

        self._state = ConnectionState()
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._ready_callbacks: list[ReadyCallback] = []

        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = False
        self._closed = asyncio.Event()
        self._fatal: MessagingError | None = None

    @classmethod
    def from_settings(cls, settings: Settings, topology: Topology = DEFAULT_TOPOLOGY) -> ConnectionManager:
        return cls(
            settings.rabbitmq_url,
            topology,
            timeout=settings.rabbitmq_connection_timeout,
            prefetch=settings.rabbitmq_prefetch,
            max_reconnect_attempts=settings.rabbitmq_max_reconnect_attempts,
            base_delay=settings.rabbitmq_reconnect_base_delay_ms / 1000,
            max_delay=settings.rabbitmq_reconnect_max_delay_ms / 1000,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def topology(self) -> Topology:
        return self._topology

    @property
    def fatal_error(self) -> MessagingError | None:
        return self._fatal

    @property
    def channel(self) -> AbstractChannel:
        """Return the operating channel.

        Raises:
            NotConnectedError: If no open channel exists.
        """
        if self._channel is None or self._channel.is_closed:
            raise NotConnectedError("RabbitMQ channel is not open")
        return self._channel

    def exchange(self, name: str) -> AbstractExchange:
        """Return a declared exchange; `""` is the default exchange.

        Raises:
            NotConnectedError: If no open channel exists.
            TopologyError: If the exchange is not part of the topology.
        """
        channel = self.channel
        if name == "":
            return channel.default_exchange
        try:
            return self._exchanges[name]
        except KeyError:
            raise TopologyError(f"exchange {name!r} is not declared in the topology") from None

    def queue(self, name: str) -> AbstractQueue:
        """Return a declared queue.

        Raises:
            NotConnectedError: If no open channel exists.
            TopologyError: If the queue is not part of the topology.
        """
        self.channel
        try:
            return self._queues[name]
        except KeyError:
            raise TopologyError(f"queue {name!r} is not declared in the topology") from None

    def add_ready_callback(self, callback: ReadyCallback) -> None:
        """Register a coroutine run after every successful topology declaration."""
        self._ready_callbacks.append(callback)

    def is_healthy(self) -> bool:
        return (
            self._state.status is ConnectionStatus.CONNECTED
            and self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
        )

    def has_channel(self) -> bool:
        """True once the topology is declared on an open channel, ready callbacks included."""
        return self._channel is not None and not self._channel.is_closed

    async def connect(self) -> None:
        """Connect, declare the topology and run ready callbacks.

        Returns once connected. No-op if already healthy.

        Raises:
            BrokerUnavailableError: The reconnect budget was exhausted.
            TopologyConflictError: The broker refused a declaration.
        """
        async with self._lock:
            if self.is_healthy():
                return
            if self._fatal is not None:
                raise self._fatal
            self._closing = False
            self._closed.clear()
            await self._connect_with_retry()

    async def disconnect(self) -> None:
        """Close channel and connection. Never triggers a reconnect."""
        self._closing = True
        task = self._reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reconnect_task = None
        await self._discard()
        if self._state.status is not ConnectionStatus.DISCONNECTED:
            self._apply(ConnectionEvent.CLOSE)
        self._closed.set()
        logger.info("rabbitmq_disconnected")

    async def wait_closed(self) -> None:
        """Wait until `disconnect()` is called or the broker is lost for good.

        Raises:
            BrokerUnavailableError: Reconnect budget exhausted after a fault.
            TopologyConflictError: Re-declaration was refused after a reconnect.
        """
        await self._closed.wait()
        if self._fatal is not None:
            raise self._fatal

    def _apply(self, event: ConnectionEvent) -> None:
        self._state = transition(self._state, event)

    @property
    def _host(self) -> str | None:
        return urlsplit(self._url).hostname

    async def _connect_with_retry(self) -> None:
        while True:
            if self._closing:
                raise NotConnectedError("connection manager was closed while connecting")
            self._apply(ConnectionEvent.CONNECT)
            error = await self._attempt()
            if error is None:
                self._apply(ConnectionEvent.OPENED)
                logger.info("rabbitmq_connected", host=self._host, prefetch=self._prefetch)
                return

            self._apply(ConnectionEvent.FAILED)
            attempts = self._state.reconnect_attempts
            if attempts >= self._max_reconnect_attempts:
                self._fatal = BrokerUnavailableError(
                    f"RabbitMQ unavailable after {attempts} attempts: {error!r}"
                )
                self._closed.set()
                logger.error("rabbitmq_unavailable", host=self._host, attempts=attempts, error=repr(error))
                raise self._fatal from error

            delay = reconnect_delay(attempts - 1, self._base_delay, self._max_delay)
            logger.warning(
                "rabbitmq_connect_failed",
                host=self._host,
                attempt=attempts,
                max_attempts=self._max_reconnect_attempts,
                retry_in=delay,
                error=repr(error),
            )
            await self._sleep(delay)

    async def _attempt(self) -> BaseException | None:
        """Run one connect attempt. Transient errors are returned, anything else is raised."""
        try:
            await self._open()
        except ChannelPreconditionFailed as exc:
            await self._discard()
            self._apply(ConnectionEvent.FAILED)
            logger.error("rabbitmq_topology_conflict", error=str(exc))
            raise TopologyConflictError(f"broker refused topology declaration: {exc}") from exc
        except TRANSIENT_ERRORS as exc:
            await self._discard()
            return exc
        except BaseException:
            await self._discard()
            self._apply(ConnectionEvent.FAILED)
            raise
        return None

    async def _open(self) -> None:
        connection = await self._connect(self._url, timeout=self._timeout)
        self._connection = connection
        channel = await connection.channel(publisher_confirms=True, on_return_raises=True)
        await channel.set_qos(prefetch_count=self._prefetch, global_=True)
        await self._declare_topology(channel)
        # Handles are published only once every entity exists.
        self._channel = channel

        connection.close_callbacks.add(self._on_connection_closed)
        channel.close_callbacks.add(self._on_channel_closed)

        for callback in list(self._ready_callbacks):
            await callback()

    async def _declare_topology(self, channel: AbstractChannel) -> None:
        exchanges: dict[str, AbstractExchange] = {}
        queues: dict[str, AbstractQueue] = {}

        for exchange in self._topology.exchanges:
            exchanges[exchange.name] = await channel.declare_exchange(
                exchange.name,
                aio_pika.ExchangeType(exchange.kind.value),
                durable=exchange.durable,
                auto_delete=exchange.auto_delete,
            )
            logger.debug("exchange_declared", exchange=exchange.name, kind=exchange.kind.value)

        for queue in self._topology.declared_queues():
            queues[queue.name] = await channel.declare_queue(
                queue.name,
                durable=queue.durable,
                arguments=queue.arguments or None,
            )
            logger.debug("queue_declared", queue=queue.name, durable=queue.durable)

        for binding in self._topology.bindings:
            await queues[binding.queue].bind(exchanges[binding.exchange], routing_key=binding.routing_key)
            logger.debug(
                "binding_declared",
                exchange=binding.exchange,
                queue=binding.queue,
                routing_key=binding.routing_key,
            )

        self._exchanges = exchanges
        self._queues = queues
        logger.info(
            "rabbitmq_topology_declared",
            exchanges=len(exchanges),
            queues=len(queues),
            bindings=len(self._topology.bindings),
        )

    async def _discard(self) -> None:
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        self._exchanges = {}
        self._queues = {}
        for handle in (channel, connection):
            if handle is None or handle.is_closed:
                continue
            try:
                await handle.close()
            except TRANSIENT_ERRORS as exc:
                logger.debug("rabbitmq_close_failed", error=repr(exc))

    def _on_connection_closed(self, sender: Any, *args: Any) -> None:
        self._handle_fault("connection", args[0] if args else None)

    def _on_channel_closed(self, sender: Any, *args: Any) -> None:
        self._handle_fault("channel", args[0] if args else None)

    def _handle_fault(self, source: str, exc: BaseException | None) -> None:
        if self._closing or self._state.status is not ConnectionStatus.CONNECTED:
            return
        self._apply(ConnectionEvent.LOST)
        logger.warning("rabbitmq_connection_lost", source=source, error=repr(exc) if exc else None)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        async with self._lock:
            await self._discard()
            await self._sleep(reconnect_delay(0, self._base_delay, self._max_delay))
            try:
                await self._connect_with_retry()
            except BrokerUnavailableError:
                # Already recorded in self._fatal; wait_closed() re-raises it.
                return
            except TopologyConflictError as exc:
                self._fatal = exc
                self._closed.set()
            except NotConnectedError:
                logger.info("rabbitmq_reconnect_abandoned")
