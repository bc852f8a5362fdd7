from __future__ import annotations
from enum import Enum
from typing import FrozenSet, Mapping


class ConnectionState(str, Enum):
    """Lifecycle state of one event-stream connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRYING = "retrying"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


# source -> destinations the manager may move to
TRANSITIONS: Mapping[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {
            ConnectionState.CONNECTED,
            ConnectionState.RETRYING,
            ConnectionState.FAILED,
            ConnectionState.DISCONNECTED,
        }
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTED, ConnectionState.RETRYING}),
    ConnectionState.RETRYING: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.FAILED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.FAILED: frozenset({ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}),
}


def is_valid_transition(source: ConnectionState, target: ConnectionState) -> bool:
    return target in TRANSITIONS[source]
