from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from .connection_attempt import ConnectionAttempt


@dataclass(frozen=True, slots=True)
class ConnectionMetrics:
    """Aggregate view over every concluded attempt of one manager."""

    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    average_connection_time: float = 0.0
    attempts: Tuple[ConnectionAttempt, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalAttempts": self.total_attempts,
            "successfulAttempts": self.successful_attempts,
            "failedAttempts": self.failed_attempts,
            "averageConnectionTime": self.average_connection_time,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }
