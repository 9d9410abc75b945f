"""
Connection lifecycle as an explicit state machine.

    disconnected --CONNECT--> connecting --OPENED--> connected
    connecting   --FAILED---> disconnected   (reconnect_attempts + 1)
    connected    --LOST-----> disconnected   (broker close, heartbeat loss)
    connecting/connected --CLOSE--> disconnected   (explicit disconnect)

No other transitions are legal. Whether a failed attempt is fatal is decided
by the caller from `reconnect_attempts`, not by the reducer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace

from fulfillment.messaging.errors import IllegalTransitionError


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionEvent(str, enum.Enum):
    CONNECT = "connect"
    OPENED = "opened"
    FAILED = "failed"
    LOST = "lost"
    CLOSE = "close"


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reconnect_attempts: int = 0


def transition(state: ConnectionState, event: ConnectionEvent) -> ConnectionState:
    """Return the state that follows `state` on `event`.

    Raises:
        IllegalTransitionError: If `event` is not accepted in `state.status`.
    """
    status = state.status
    if status is ConnectionStatus.DISCONNECTED and event is ConnectionEvent.CONNECT:
        return replace(state, status=ConnectionStatus.CONNECTING)
    if status is ConnectionStatus.CONNECTING:
        if event is ConnectionEvent.OPENED:
            return ConnectionState(status=ConnectionStatus.CONNECTED, reconnect_attempts=0)
        if event is ConnectionEvent.FAILED:
            return ConnectionState(
                status=ConnectionStatus.DISCONNECTED,
                reconnect_attempts=state.reconnect_attempts + 1,
            )
        if event is ConnectionEvent.CLOSE:
            return replace(state, status=ConnectionStatus.DISCONNECTED)
    if status is ConnectionStatus.CONNECTED:
        if event is ConnectionEvent.LOST:
            return replace(state, status=ConnectionStatus.DISCONNECTED)
        if event is ConnectionEvent.CLOSE:
            return ConnectionState()
    raise IllegalTransitionError(f"{event.value!r} is not allowed while {status.value}")


def reconnect_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Backoff before reconnect attempt number `attempt` (0-based): min(base * 2^attempt, cap)."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(base * (2 ** min(attempt, 32)), cap)
