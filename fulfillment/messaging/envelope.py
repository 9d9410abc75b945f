"""
Wire format of events on the backbone.

Body (JSON):      {"event": str, "payload": object, "at": epoch-millis}
Headers:          x-retry-count, x-original-queue, x-error (retry/dlq),
                  x-death-reason, x-death-time (dlq only), plus any caller headers.
Properties:       persistent delivery, message_id, timestamp.

`x-retry-count` is owned by the retry engine. Producers cannot set it, and it
only ever grows for a given logical message.
"""

from __future__ import annotations

import json
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from fulfillment.messaging.errors import MalformedMessageError

RETRY_COUNT_HEADER = "x-retry-count"
ORIGINAL_QUEUE_HEADER = "x-original-queue"
ERROR_HEADER = "x-error"
DEATH_REASON_HEADER = "x-death-reason"
DEATH_TIME_HEADER = "x-death-time"

RESERVED_HEADERS = frozenset(
    {
        RETRY_COUNT_HEADER,
        ORIGINAL_QUEUE_HEADER,
        ERROR_HEADER,
        DEATH_REASON_HEADER,
        DEATH_TIME_HEADER,
    }
)

MAX_RETRIES_EXCEEDED = "max-retries-exceeded"


def now_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class EventMessage:
    """
    Decoded message body.

    Attributes:
        event: Event name, e.g. "order_created" or "payment_approved".
        payload: Event data.
        at: Creation time in epoch milliseconds.
    """

    event: str
    payload: dict[str, Any]
    at: int = field(default_factory=now_millis)

    def to_bytes(self) -> bytes:
        """Serialize to UTF-8 JSON. Non-JSON values (UUIDs, datetimes) are stringified."""
        body = {"event": self.event, "payload": self.payload, "at": self.at}
        return json.dumps(body, default=str).encode("utf-8")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> EventMessage:
        """Build an event from `{"event": ..., "payload": ...}`.

        Raises:
            MalformedMessageError: If `event` is not a non-empty string or
                `payload` is not an object.
        """
        event = data.get("event")
        payload = data.get("payload", {})
        if not isinstance(event, str) or not event:
            raise MalformedMessageError("event name must be a non-empty string")
        if not isinstance(payload, Mapping):
            raise MalformedMessageError("payload must be an object")
        at = data.get("at")
        if at is None:
            return cls(event=event, payload=dict(payload))
        if isinstance(at, bool) or not isinstance(at, int):
            raise MalformedMessageError("at must be epoch milliseconds")
        return cls(event=event, payload=dict(payload), at=at)

    @classmethod
    def from_bytes(cls, body: bytes) -> EventMessage:
        """Decode a message body.

        Raises:
            MalformedMessageError: On invalid UTF-8, invalid JSON, or a body
                that does not match the envelope shape.
        """
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedMessageError(f"undecodable body: {exc}") from exc
        if not isinstance(data, dict):
            raise MalformedMessageError("body must be a JSON object")
        return cls.from_mapping(data)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _count(value: Any) -> int:
    if value is None:
        return 0
    try:
        count = int(_text(value) if isinstance(value, bytes) else value)
    except (TypeError, ValueError):
        return 0
    return max(count, 0)


@dataclass(frozen=True)
class EnvelopeHeaders:
    """Typed view of the broker headers carried by a message.

    `extra` holds every non-reserved header (caller headers, broker-added
    `x-death`...). It is passed through untouched on retry and dead-letter.
    """

    retry_count: int = 0
    original_queue: str | None = None
    error: str | None = None
    death_reason: str | None = None
    death_time: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_amqp(cls, headers: Mapping[str, Any] | None) -> EnvelopeHeaders:
        headers = headers or {}
        return cls(
            retry_count=_count(headers.get(RETRY_COUNT_HEADER)),
            original_queue=_text(headers.get(ORIGINAL_QUEUE_HEADER)),
            error=_text(headers.get(ERROR_HEADER)),
            death_reason=_text(headers.get(DEATH_REASON_HEADER)),
            death_time=_text(headers.get(DEATH_TIME_HEADER)),
            extra={k: v for k, v in headers.items() if k not in RESERVED_HEADERS},
        )

    def to_amqp(self) -> dict[str, Any]:
        headers: dict[str, Any] = dict(self.extra)
        headers[RETRY_COUNT_HEADER] = self.retry_count
        if self.original_queue is not None:
            headers[ORIGINAL_QUEUE_HEADER] = self.original_queue
        if self.error is not None:
            headers[ERROR_HEADER] = self.error
        if self.death_reason is not None:
            headers[DEATH_REASON_HEADER] = self.death_reason
        if self.death_time is not None:
            headers[DEATH_TIME_HEADER] = self.death_time
        return headers

    def merge(self, headers: Mapping[str, Any]) -> EnvelopeHeaders:
        """Add headers that are not present yet. Reserved and existing keys are never overwritten."""
        extra = dict(self.extra)
        for key, value in headers.items():
            if key in RESERVED_HEADERS or key in extra:
                continue
            extra[key] = value
        return replace(self, extra=extra)

    def for_retry(self, queue: str, error: str) -> EnvelopeHeaders:
        """Headers of the copy sent to `<queue>.retry`."""
        return replace(
            self,
            retry_count=self.retry_count + 1,
            original_queue=queue,
            error=error,
        )

    def for_dead_letter(self, queue: str, error: str, now: datetime) -> EnvelopeHeaders:
        """Headers of the copy sent to `<queue>.dlq`."""
        return replace(
            self,
            retry_count=self.retry_count + 1,
            original_queue=queue,
            error=error,
            death_reason=MAX_RETRIES_EXCEEDED,
            death_time=now.isoformat(),
        )

    def without_death(self) -> EnvelopeHeaders:
        """Headers for a message replayed out of a dead-letter queue."""
        return replace(self, death_reason=None, death_time=None)


def split_reserved(headers: Mapping[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Separate caller headers from reserved ones.

    Returns:
        (allowed headers, names of the dropped reserved headers)
    """
    allowed = {k: v for k, v in headers.items() if k not in RESERVED_HEADERS}
    dropped = sorted(k for k in headers if k in RESERVED_HEADERS)
    return allowed, dropped


@dataclass(frozen=True)
class PublishOptions:
    """Caller-supplied broker options merged into an outgoing message.

    Required properties (delivery mode, message id, timestamp) are always set
    by the publisher and cannot be overridden here.
    """

    headers: Mapping[str, Any] = field(default_factory=dict)
    priority: int | None = None
    correlation_id: str | None = None
    expiration_ms: int | None = None
