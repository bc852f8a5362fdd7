from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class LifecycleEvent(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    TIMEOUT = "timeout"
    CLOSED = "closed"
    RETRY = "retry"

    def __str__(self) -> str:
        return self.value


COMPLETION_EVENTS = frozenset({LifecycleEvent.CONNECTED, LifecycleEvent.ERROR, LifecycleEvent.TIMEOUT})


@dataclass(frozen=True, slots=True)
class LogRecord:
    """Structured lifecycle log entry."""

    timestamp: str
    event: LifecycleEvent
    game_id: str
    player_id: str
    duration: Optional[float] = None
    message: Optional[str] = None
    retry_count: int = 0

    @property
    def is_completion(self) -> bool:
        return self.event in COMPLETION_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "event": self.event.value,
            "gameId": self.game_id,
            "playerId": self.player_id,
        }
        if self.duration is not None:
            payload["duration"] = self.duration
        if self.message is not None:
            payload["message"] = self.message
        payload["retryCount"] = self.retry_count
        return payload
