"""
Declarative broker topology: exchanges, queues and bindings.

The descriptor is immutable configuration. It is validated when it is built,
before any network call, and re-declared verbatim by the connection manager on
every (re)connect. Re-declaring identical definitions is a no-op on the broker;
conflicting ones are a configuration error.

Every business queue that uses the retry engine gets two derived queues:

- `<queue>.retry`: delay hop. Messages carry a per-message expiration and are
  dead-lettered back to `<queue>` through the default exchange when it expires.
- `<queue>.dlq`: terminal sink. Nothing drains it automatically.
"""

from __future__ import annotations

import enum
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from fulfillment.messaging.errors import TopologyError

RETRY_SUFFIX = ".retry"
DLQ_SUFFIX = ".dlq"


def retry_queue_name(queue: str) -> str:
    return f"{queue}{RETRY_SUFFIX}"


def dead_letter_queue_name(queue: str) -> str:
    return f"{queue}{DLQ_SUFFIX}"


class ExchangeKind(str, enum.Enum):
    """AMQP exchange types."""

    DIRECT = "direct"
    TOPIC = "topic"
    FANOUT = "fanout"
    HEADERS = "headers"


@dataclass(frozen=True)
class Exchange:
    name: str
    kind: ExchangeKind = ExchangeKind.TOPIC
    durable: bool = True
    auto_delete: bool = False


@dataclass(frozen=True)
class Queue:
    """
    Queue definition.

    Attributes:
        name: Queue name.
        durable: Survive broker restarts.
        max_priority: Enables priority queueing when set (x-max-priority).
        message_ttl: Queue-wide message TTL in milliseconds (x-message-ttl).
        dead_letter_exchange: x-dead-letter-exchange argument.
        dead_letter_routing_key: x-dead-letter-routing-key argument.
        with_retry: Generate the `.retry` / `.dlq` companions for this queue.
    """

    name: str
    durable: bool = True
    max_priority: int | None = None
    message_ttl: int | None = None
    dead_letter_exchange: str | None = None
    dead_letter_routing_key: str | None = None
    with_retry: bool = True

    @property
    def arguments(self) -> dict[str, Any]:
        """Broker arguments for queue declaration."""
        args: dict[str, Any] = {}
        if self.max_priority is not None:
            args["x-max-priority"] = self.max_priority
        if self.message_ttl is not None:
            args["x-message-ttl"] = self.message_ttl
        if self.dead_letter_exchange is not None:
            args["x-dead-letter-exchange"] = self.dead_letter_exchange
        if self.dead_letter_routing_key is not None:
            args["x-dead-letter-routing-key"] = self.dead_letter_routing_key
        return args


@dataclass(frozen=True)
class Binding:
    exchange: str
    queue: str
    routing_key: str


@dataclass(frozen=True)
class Topology:
    """Immutable set of exchanges, queues and bindings a service depends on.

    Raises:
        TopologyError: If names are empty or duplicated, or a binding
            references an exchange or queue that is not part of the descriptor.
    """

    exchanges: tuple[Exchange, ...] = ()
    queues: tuple[Queue, ...] = ()
    bindings: tuple[Binding, ...] = ()
    _queue_index: dict[str, Queue] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "exchanges", tuple(self.exchanges))
        object.__setattr__(self, "queues", tuple(self.queues))
        object.__setattr__(self, "bindings", tuple(self.bindings))
        self._validate()
        object.__setattr__(self, "_queue_index", {q.name: q for q in self.declared_queues()})

    def _validate(self) -> None:
        exchange_names: set[str] = set()
        for exchange in self.exchanges:
            if not exchange.name:
                raise TopologyError("exchange name must not be empty (the default exchange is implicit)")
            if exchange.name in exchange_names:
                raise TopologyError(f"duplicate exchange name: {exchange.name!r}")
            if not isinstance(exchange.kind, ExchangeKind):
                raise TopologyError(f"exchange {exchange.name!r} has unknown kind {exchange.kind!r}")
            exchange_names.add(exchange.name)

        for queue in self.queues:
            if not queue.name:
                raise TopologyError("queue name must not be empty")
            if queue.with_retry and (
                queue.dead_letter_exchange is not None or queue.dead_letter_routing_key is not None
            ):
                raise TopologyError(
                    f"queue {queue.name!r} uses the retry engine and must not set its own "
                    "dead-letter arguments"
                )

        queue_names: set[str] = set()
        for queue in self.declared_queues():
            if queue.name in queue_names:
                raise TopologyError(f"duplicate queue name: {queue.name!r}")
            queue_names.add(queue.name)

        for binding in self.bindings:
            if binding.exchange not in exchange_names:
                raise TopologyError(
                    f"binding {binding.routing_key!r} references unknown exchange {binding.exchange!r}"
                )
            if binding.queue not in queue_names:
                raise TopologyError(
                    f"binding {binding.routing_key!r} references unknown queue {binding.queue!r}"
                )

    def declared_queues(self) -> Iterator[Queue]:
        """Yield every queue to declare: business queues, then their retry/dlq companions."""
        yield from self.queues
        for queue in self.queues:
            if not queue.with_retry:
                continue
            yield Queue(
                name=retry_queue_name(queue.name),
                durable=queue.durable,
                dead_letter_exchange="",
                dead_letter_routing_key=queue.name,
                with_retry=False,
            )
            yield Queue(name=dead_letter_queue_name(queue.name), durable=queue.durable, with_retry=False)

    def get_queue(self, name: str) -> Queue:
        """Return the declared queue called `name`.

        Raises:
            TopologyError: If the queue is not part of this descriptor.
        """
        try:
            return self._queue_index[name]
        except KeyError:
            raise TopologyError(f"queue {name!r} is not declared in the topology") from None

    def has_exchange(self, name: str) -> bool:
        return any(exchange.name == name for exchange in self.exchanges)


ORDERS_EXCHANGE = "orders.exchange"
PAYMENTS_EXCHANGE = "payments.exchange"
ORDER_CREATED_KEY = "order.created"


def payment_routing_key(status: str) -> str:
    return f"payment.{status}"


DEFAULT_TOPOLOGY = Topology(
    exchanges=(
        Exchange(ORDERS_EXCHANGE, ExchangeKind.TOPIC),
        Exchange(PAYMENTS_EXCHANGE, ExchangeKind.TOPIC),
        Exchange("notifications.exchange", ExchangeKind.TOPIC),
        Exchange("inventory.exchange", ExchangeKind.TOPIC),
    ),
    queues=(
        Queue("orders.created"),
        Queue("orders.updated"),
        Queue("payments.processed"),
        Queue("notifications.email", max_priority=10),
        Queue("notifications.sms", max_priority=10),
        Queue("inventory.reserved"),
    ),
    bindings=(
        Binding(ORDERS_EXCHANGE, "orders.created", ORDER_CREATED_KEY),
        Binding(ORDERS_EXCHANGE, "orders.updated", "order.updated"),
        Binding(PAYMENTS_EXCHANGE, "payments.processed", "payment.*"),
        Binding("notifications.exchange", "notifications.email", "notification.email"),
        Binding("notifications.exchange", "notifications.sms", "notification.sms"),
        Binding("inventory.exchange", "inventory.reserved", "inventory.reserved"),
    ),
)
