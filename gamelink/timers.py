"""Cancellable timers used by the connection manager.

Both timers sit on ``loop.call_later`` so a cancelled timer can never fire and
an armed one fires close to its deadline regardless of what else the loop is
awaiting.
"""
from __future__ import annotations

import asyncio
from time import monotonic
from typing import Callable, List, Optional


def backoff_delay(retry_count: int, initial_delay: float, max_delay: float) -> float:
    """Delay in ms before automatic retry number ``retry_count`` (1-based).

    Formula: ``min(initial * 2^(retry_count-1), max)``.
    """
    if retry_count < 1:
        raise ValueError("retry_count starts at 1")
    exponent = retry_count - 1
    # past ~64 doublings every realistic cap has been hit
    if exponent > 64:
        return float(max_delay)
    return float(min(initial_delay * (2 ** exponent), max_delay))


def backoff_delays(initial_delay: float, max_delay: float, count: int) -> List[float]:
    return [backoff_delay(n, initial_delay, max_delay) for n in range(1, count + 1)]


class AttemptTimer:
    """Fires a callback if an attempt is still unresolved after a timeout."""

    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._handle: Optional[asyncio.TimerHandle] = None
        self._started: Optional[float] = None
        self.fired = False

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def elapsed(self) -> float:
        """Milliseconds since the timer was last armed."""
        if self._started is None:
            return 0.0
        return (self._clock() - self._started) * 1000.0

    def arm(self, timeout: float, on_timeout: Callable[[], None]) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self.fired = False
        self._started = self._clock()
        self._handle = loop.call_later(timeout / 1000.0, self._fire, on_timeout)

    def cancel(self) -> bool:
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    def _fire(self, on_timeout: Callable[[], None]) -> None:
        self._handle = None
        self.fired = True
        on_timeout()


class RetryScheduler:
    """Computes back-off delays and arms the deferred "retry now" signal."""

    def __init__(self, initial_delay: float, max_delay: float) -> None:
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._handle: Optional[asyncio.TimerHandle] = None
        self._signal: Optional[asyncio.Future[None]] = None

    @property
    def armed(self) -> bool:
        return self._signal is not None and not self._signal.done()

    def delay_for(self, retry_count: int) -> float:
        return backoff_delay(retry_count, self.initial_delay, self.max_delay)

    def arm(self, delay: float) -> "asyncio.Future[None]":
        """Return a future that resolves after ``delay`` ms unless cancelled."""
        self.cancel()
        loop = asyncio.get_running_loop()
        signal: asyncio.Future[None] = loop.create_future()
        self._signal = signal
        self._handle = loop.call_later(max(0.0, delay) / 1000.0, self._release, signal)
        return signal

    def fire_now(self) -> bool:
        """Release a pending wait immediately (manual retry during back-off)."""
        signal = self._signal
        if signal is None or signal.done():
            return False
        self._clear_handle()
        signal.set_result(None)
        return True

    def cancel(self) -> bool:
        self._clear_handle()
        signal, self._signal = self._signal, None
        if signal is None or signal.done():
            return False
        signal.cancel()
        return True

    def _clear_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _release(self, signal: "asyncio.Future[None]") -> None:
        self._handle = None
        if not signal.done():
            signal.set_result(None)


__all__ = ["AttemptTimer", "RetryScheduler", "backoff_delay", "backoff_delays"]
