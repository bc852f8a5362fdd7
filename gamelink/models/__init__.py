"""Value types shared by the connection manager and its collaborators.

Everything here is a plain enum or frozen dataclass: the manager and the
metrics recorder create instances, callers only ever read them.
"""
from .connection_state import ConnectionState, TRANSITIONS, is_valid_transition
from .connection_attempt import ConnectionAttempt
from .connection_metrics import ConnectionMetrics
from .log_record import LifecycleEvent, LogRecord

__all__ = [
    "ConnectionState",
    "TRANSITIONS",
    "is_valid_transition",
    "ConnectionAttempt",
    "ConnectionMetrics",
    "LifecycleEvent",
    "LogRecord",
]
