"""Exceptions raised by the connection manager.

Per-attempt failures (:class:`TimeoutFailure`, :class:`TransportFailure`) are
handled inside the manager and only feed the retry decision. Callers of
``connect()`` / ``manual_retry()`` see :class:`RetryBudgetExhausted` once the
streak gives up, or :class:`ConnectionAborted` when ``disconnect()`` cut it
short.
"""
from __future__ import annotations

from typing import Optional

from gamelink.models import ConnectionState


TIMEOUT_MESSAGE = "Connection timeout"


class ConnectionManagerError(Exception):
    """Base class for every error raised by :mod:`gamelink`."""


class AttemptFailure(ConnectionManagerError):
    """A single connection attempt did not open."""


class TimeoutFailure(AttemptFailure):
    def __init__(self, message: str = TIMEOUT_MESSAGE) -> None:
        super().__init__(message)


class TransportFailure(AttemptFailure):
    """The underlying stream reported an error."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail or "Connection error")
        self.detail = detail


class RetryBudgetExhausted(ConnectionManagerError):
    """Every automatic retry of a streak failed.

    ``str(exc)`` is the message of the last attempt failure so callers can
    show e.g. ``"Connection timeout"`` directly.
    """

    def __init__(self, last_error: AttemptFailure, attempts: int) -> None:
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts


class ConnectionAborted(ConnectionManagerError):
    """``disconnect()`` was called before a pending connect settled."""

    def __init__(self, message: str = "Disconnected before the stream opened") -> None:
        super().__init__(message)


class InvalidOperation(ConnectionManagerError):
    def __init__(self, operation: str, state: ConnectionState) -> None:
        super().__init__(f"{operation}() is not valid while {state.value}")
        self.operation = operation
        self.state = state


class IllegalTransition(RuntimeError):
    """Raised by the state guard; reaching it means the manager has a bug."""

    def __init__(self, source: ConnectionState, target: ConnectionState, reason: Optional[str] = None) -> None:
        detail = f"illegal connection state transition {source.value} -> {target.value}"
        if reason:
            detail = f"{detail} ({reason})"
        super().__init__(detail)
        self.source = source
        self.target = target


__all__ = [
    "TIMEOUT_MESSAGE",
    "ConnectionManagerError",
    "AttemptFailure",
    "TimeoutFailure",
    "TransportFailure",
    "RetryBudgetExhausted",
    "ConnectionAborted",
    "InvalidOperation",
    "IllegalTransition",
]
