from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional


@dataclass(frozen=True, slots=True)
class ConnectionAttempt:
    """One try at opening the event stream.

    Times are wall-clock milliseconds. A pending attempt has no ``end_time``;
    :meth:`concluded` returns the finished copy, the pending one is never
    mutated.
    """

    attempt_number: int
    start_time: float
    end_time: Optional[float] = None
    duration: Optional[float] = None
    success: bool = False
    error: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.end_time is None

    def concluded(
        self,
        *,
        success: bool,
        end_time: float,
        error: Optional[str] = None,
        duration: Optional[float] = None,
    ) -> "ConnectionAttempt":
        """Finished copy; ``duration`` defaults to ``end_time - start_time``."""
        if not self.pending:
            raise ValueError(f"attempt {self.attempt_number} already concluded")
        # clock skew must not produce a negative duration
        end_time = max(end_time, self.start_time)
        if duration is None:
            duration = end_time - self.start_time
        return replace(
            self,
            end_time=end_time,
            duration=max(0.0, duration),
            success=success,
            error=None if success else error,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "attemptNumber": self.attempt_number,
            "startTime": self.start_time,
            "success": self.success,
        }
        if self.end_time is not None:
            payload["endTime"] = self.end_time
        if self.duration is not None:
            payload["duration"] = self.duration
        if self.error is not None:
            payload["error"] = self.error
        return payload
