"""Append-only ledger of connection attempts."""
from __future__ import annotations

import logging
from time import monotonic, time
from typing import Callable, List, Optional

from gamelink.models import ConnectionAttempt, ConnectionMetrics

logger = logging.getLogger(__name__)


def wall_clock_ms() -> float:
    return time() * 1000.0


def monotonic_ms() -> float:
    return monotonic() * 1000.0


class MetricsRecorder:
    """Cumulative attempt history for one manager.

    Only concluded attempts are counted; the attempt in flight is held apart
    until :meth:`conclude` so a snapshot taken mid-attempt always satisfies
    ``successful + failed == total == len(attempts)``.

    ``start_time``/``end_time`` are wall-clock timestamps; ``duration`` is
    measured on the monotonic clock so a wall-clock step cannot distort it.
    """

    def __init__(
        self,
        clock: Callable[[], float] = wall_clock_ms,
        monotonic_clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self._clock = clock
        self._monotonic = monotonic_clock
        self._pending_mark: Optional[float] = None
        self._attempts: List[ConnectionAttempt] = []
        self._pending: Optional[ConnectionAttempt] = None
        self._next_number = 1
        self._successful = 0
        self._failed = 0
        self._success_time = 0.0

    @property
    def pending(self) -> Optional[ConnectionAttempt]:
        return self._pending

    def now(self) -> float:
        try:
            return float(self._clock())
        except Exception:  # pragma: no cover - guard against faulty clock
            return wall_clock_ms()

    def begin(self, start_time: Optional[float] = None) -> ConnectionAttempt:
        if self._pending is not None:
            logger.debug("attempt %d abandoned by a new attempt", self._pending.attempt_number)
            self.conclude(False, error="Superseded")
        attempt = ConnectionAttempt(
            attempt_number=self._next_number,
            start_time=start_time if start_time is not None else self.now(),
        )
        self._next_number += 1
        self._pending = attempt
        self._pending_mark = self._monotonic()
        return attempt

    def conclude(
        self,
        success: bool,
        *,
        error: Optional[str] = None,
        end_time: Optional[float] = None,
    ) -> Optional[ConnectionAttempt]:
        pending, self._pending = self._pending, None
        mark, self._pending_mark = self._pending_mark, None
        if pending is None:
            logger.debug("conclude(success=%s) with no attempt in flight", success)
            return None
        duration = None
        if end_time is None:
            end_time = self.now()
            if mark is not None:
                duration = self._monotonic() - mark
        attempt = pending.concluded(success=success, end_time=end_time, error=error, duration=duration)
        self._attempts.append(attempt)
        if attempt.success:
            self._successful += 1
            self._success_time += attempt.duration or 0.0
        else:
            self._failed += 1
        return attempt

    def snapshot(self) -> ConnectionMetrics:
        average = self._success_time / self._successful if self._successful else 0.0
        return ConnectionMetrics(
            total_attempts=len(self._attempts),
            successful_attempts=self._successful,
            failed_attempts=self._failed,
            average_connection_time=average,
            attempts=tuple(self._attempts),
        )


__all__ = ["MetricsRecorder", "monotonic_ms", "wall_clock_ms"]
