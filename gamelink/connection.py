"""Resilient connection manager for a game's server-sent event stream."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Iterable, Optional

from gamelink.config import ConfigLike, ConnectionManagerConfig, resolve_config
from gamelink.errors import (
    AttemptFailure,
    ConnectionAborted,
    IllegalTransition,
    InvalidOperation,
    RetryBudgetExhausted,
    TimeoutFailure,
    TransportFailure,
)
from gamelink.lifecycle import LifecycleLogger, LogSink, RemoteLogSink
from gamelink.metrics import MetricsRecorder, wall_clock_ms
from gamelink.models import ConnectionMetrics, ConnectionState, LifecycleEvent, is_valid_transition
from gamelink.timers import AttemptTimer, RetryScheduler
from gamelink.transport import StreamHandle, StreamTransport

logger = logging.getLogger(__name__)

StateChangeHook = Callable[[ConnectionState], None]
MessageHook = Callable[[str], None]
ErrorHook = Callable[[AttemptFailure], None]


class ConnectionManager:
    """Keep one player's event stream open, retrying with exponential backoff.

    ``connect()`` starts a *streak*: attempts are made one at a time until the
    stream opens or ``max_retries`` automatic retries have failed, at which
    point the state is ``failed`` and the awaiting caller gets
    :class:`RetryBudgetExhausted`. Calling ``connect()`` while a streak is in
    flight joins it; calling it while connected returns immediately.
    ``disconnect()`` may be called at any time and cancels whatever is armed.
    """

    def __init__(
        self,
        transport: StreamTransport,
        game_id: str,
        player_id: str,
        config: ConfigLike = None,
        *,
        lifecycle: Optional[LifecycleLogger] = None,
        log_sinks: Optional[Iterable[LogSink]] = None,
        remote_log_url: Optional[str] = None,
        clock: Callable[[], float] = wall_clock_ms,
        **overrides: Any,
    ) -> None:
        self.transport = transport
        self.game_id = game_id
        self.player_id = player_id
        self.config: ConnectionManagerConfig = resolve_config(config, **overrides)

        if lifecycle is None:
            lifecycle = LifecycleLogger(game_id, player_id, sinks=log_sinks)
        if remote_log_url and self.config.log_to_server:
            lifecycle.add_sink(RemoteLogSink(remote_log_url))
        self.lifecycle = lifecycle
        self.metrics = MetricsRecorder(clock=clock)

        self.on_state_change: Optional[StateChangeHook] = None
        self.on_message: Optional[MessageHook] = None
        self.on_error: Optional[ErrorHook] = None

        self._state = ConnectionState.DISCONNECTED
        self._retry_count = 0
        self._timer = AttemptTimer()
        self._scheduler = RetryScheduler(self.config.initial_retry_delay, self.config.max_retry_delay)
        self._handle: Optional[StreamHandle] = None
        self._race: Optional[asyncio.Future[Optional[AttemptFailure]]] = None
        self._outcome: Optional[asyncio.Future[None]] = None
        self._streak: Optional[asyncio.Task[None]] = None
        # bumped by every new streak and by disconnect(); stale tasks compare against it
        self._epoch = 0

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def get_state(self) -> ConnectionState:
        return self._state

    def get_metrics(self) -> ConnectionMetrics:
        return self.metrics.snapshot()

    async def connect(self) -> None:
        """Open the stream, retrying as configured.

        Raises :class:`RetryBudgetExhausted` when the streak ends in ``failed``
        and :class:`ConnectionAborted` when ``disconnect()`` interrupts it.
        """
        if self._state is ConnectionState.CONNECTED:
            logger.debug("connect() ignored for %s/%s: already connected", self.game_id, self.player_id)
            return
        outcome = self._outcome
        if self._state in (ConnectionState.CONNECTING, ConnectionState.RETRYING) and outcome is not None:
            await asyncio.shield(outcome)
            return
        await asyncio.shield(self._start_streak())

    async def manual_retry(self) -> None:
        """User-initiated retry with a fresh ``max_retries`` budget."""
        state = self._state
        if state is ConnectionState.CONNECTED:
            raise InvalidOperation("manual_retry", state)

        self._retry_count = 0
        self._log(LifecycleEvent.RETRY, message="Manual retry triggered")

        outcome = self._outcome
        if state is ConnectionState.RETRYING and outcome is not None:
            self._scheduler.fire_now()
        elif state is ConnectionState.CONNECTING and outcome is not None:
            pass
        else:
            outcome = self._start_streak()
        await asyncio.shield(outcome)

    def disconnect(self) -> None:
        """Tear everything down and move to ``disconnected``. Safe to call anytime."""
        self._epoch += 1

        race, self._race = self._race, None
        if race is not None and not race.done():
            race.cancel()
        self._timer.cancel()
        self._scheduler.cancel()

        streak, self._streak = self._streak, None
        if streak is not None and not streak.done():
            streak.cancel()

        if self._handle is not None:
            self._release_handle(self._handle)

        if self.metrics.pending is not None:
            attempt = self.metrics.conclude(False, error="Disconnected")
            self._log(LifecycleEvent.ERROR, duration=attempt.duration if attempt else None, message="Disconnected")

        if self._state is not ConnectionState.DISCONNECTED:
            self._log(LifecycleEvent.CLOSED, message="Manual disconnect")
            self._set_state(ConnectionState.DISCONNECTED)

        outcome, self._outcome = self._outcome, None
        if outcome is not None and not outcome.done():
            outcome.set_exception(ConnectionAborted())

    def close(self) -> None:
        """Disconnect and release the lifecycle sinks (pending CSV rows, HTTP session)."""
        self.disconnect()
        self.lifecycle.close()

    async def __aenter__(self) -> "ConnectionManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    # ------------------------------------------------------------------
    # Streak orchestration
    # ------------------------------------------------------------------
    def _start_streak(
        self,
        *,
        backoff: Optional[asyncio.Future[None]] = None,
    ) -> asyncio.Future[None]:
        loop = asyncio.get_running_loop()
        self._epoch += 1
        epoch = self._epoch

        outcome: asyncio.Future[None] = loop.create_future()
        outcome.add_done_callback(_consume_outcome)
        self._outcome = outcome

        # the first attempt starts synchronously so the state is already
        # ``connecting`` when connect() yields to the loop
        race = self._begin_attempt() if backoff is None else None
        if epoch != self._epoch:
            # a state hook called disconnect() before the attempt started
            return outcome
        self._streak = loop.create_task(self._run_streak(epoch, outcome, race=race, backoff=backoff))
        return outcome

    async def _run_streak(
        self,
        epoch: int,
        outcome: asyncio.Future[None],
        *,
        race: Optional[asyncio.Future[Optional[AttemptFailure]]],
        backoff: Optional[asyncio.Future[None]],
    ) -> None:
        attempts = 0
        try:
            while True:
                if race is None:
                    if backoff is None:
                        raise RuntimeError("connection streak has neither an attempt nor a back-off to wait for")
                    await backoff
                    if epoch != self._epoch:
                        return
                    race = self._begin_attempt()
                    if race is None:
                        return

                attempts += 1
                failure = await race
                race = None
                if epoch != self._epoch:
                    return

                if failure is None:
                    if not outcome.done():
                        outcome.set_result(None)
                    return

                if self._retry_count >= self.config.max_retries:
                    self._give_up(failure, outcome, attempts)
                    return
                backoff = self._schedule_retry()
                if backoff is None:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Connection streak for %s/%s crashed", self.game_id, self.player_id)
            if not outcome.done():
                outcome.set_exception(exc)

    def _schedule_retry(self) -> Optional[asyncio.Future[None]]:
        """Enter ``retrying`` and arm the back-off; ``None`` if a hook disconnected."""
        epoch = self._epoch
        self._retry_count += 1
        self._set_state(ConnectionState.RETRYING)
        if epoch != self._epoch:
            return None
        delay = self._scheduler.delay_for(self._retry_count)
        self._log(
            LifecycleEvent.RETRY,
            message=f"Scheduling retry {self._retry_count}/{self.config.max_retries} in {delay:g}ms",
        )
        return self._scheduler.arm(delay)

    def _give_up(self, failure: AttemptFailure, outcome: asyncio.Future[None], attempts: int) -> None:
        epoch = self._epoch
        self._set_state(ConnectionState.FAILED)
        if epoch != self._epoch:
            return
        self._log(LifecycleEvent.CLOSED, message=f"Retry budget exhausted: {failure}")
        if not outcome.done():
            outcome.set_exception(RetryBudgetExhausted(failure, attempts))

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------
    def _begin_attempt(self) -> Optional[asyncio.Future[Optional[AttemptFailure]]]:
        epoch = self._epoch
        self._set_state(ConnectionState.CONNECTING)
        if epoch != self._epoch:
            return None
        attempt = self.metrics.begin()
        self._log(LifecycleEvent.CONNECTING, message=f"Attempt {attempt.attempt_number}")

        race: asyncio.Future[Optional[AttemptFailure]] = asyncio.get_running_loop().create_future()
        self._race = race

        try:
            handle = self.transport.open(self.game_id, self.player_id)
        except Exception as exc:
            logger.debug("Transport refused to open %s/%s", self.game_id, self.player_id, exc_info=True)
            self._resolve_attempt(race, None, TransportFailure(str(exc) or type(exc).__name__))
            return race

        self._handle = handle
        handle.on_open = lambda: self._resolve_attempt(race, handle, None)
        handle.on_error = lambda detail: self._on_stream_error(race, handle, detail)
        handle.on_message = lambda data: self._on_stream_message(handle, data)
        self._timer.arm(self.config.connection_timeout, lambda: self._resolve_attempt(race, handle, TimeoutFailure()))
        return race

    def _resolve_attempt(
        self,
        race: asyncio.Future[Optional[AttemptFailure]],
        handle: Optional[StreamHandle],
        failure: Optional[AttemptFailure],
    ) -> None:
        # first signal wins; anything arriving afterwards is ignored
        if race.done() or self._race is not race:
            return
        self._race = None
        self._timer.cancel()

        if failure is None:
            attempt = self.metrics.conclude(True)
            self._retry_count = 0
            self._log(LifecycleEvent.CONNECTED, duration=attempt.duration if attempt else None)
            self._set_state(ConnectionState.CONNECTED)
        else:
            attempt = self.metrics.conclude(False, error=str(failure))
            if handle is not None:
                self._release_handle(handle)
            if isinstance(failure, TimeoutFailure):
                self._log(LifecycleEvent.TIMEOUT, duration=attempt.duration if attempt else None, message=str(failure))
            else:
                self._log(LifecycleEvent.ERROR, message=str(failure))
            self._notify_error(failure)

        if not race.done():
            race.set_result(failure)

    def _on_stream_error(
        self,
        race: asyncio.Future[Optional[AttemptFailure]],
        handle: StreamHandle,
        detail: str,
    ) -> None:
        if handle is not self._handle:
            return
        if not race.done():
            self._resolve_attempt(race, handle, TransportFailure(detail))
        elif self._state is ConnectionState.CONNECTED:
            self._on_stream_lost(handle, detail)

    def _on_stream_lost(self, handle: StreamHandle, detail: str) -> None:
        self._release_handle(handle)
        self._log(LifecycleEvent.CLOSED, message=f"Stream lost: {detail}")
        self._notify_error(TransportFailure(detail))
        if self._state is not ConnectionState.CONNECTED:
            # a hook reacted to the error by disconnecting
            return

        if self.config.enable_auto_reconnect and self._retry_count < self.config.max_retries:
            backoff = self._schedule_retry()
            if backoff is not None:
                self._start_streak(backoff=backoff)
        else:
            self._set_state(ConnectionState.DISCONNECTED)

    def _on_stream_message(self, handle: StreamHandle, data: str) -> None:
        if handle is not self._handle or self.on_message is None:
            return
        try:
            self.on_message(data)
        except Exception:
            logger.exception("on_message hook raised for %s/%s", self.game_id, self.player_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _set_state(self, target: ConnectionState) -> None:
        source = self._state
        if target is source:
            return
        if not is_valid_transition(source, target):
            raise IllegalTransition(source, target)
        self._state = target
        logger.info("[ConnectionManager] State transition: %s -> %s", source.value, target.value)
        hook = self.on_state_change
        if hook is None:
            return
        try:
            hook(target)
        except Exception:
            logger.exception("on_state_change hook raised on %s", target.value)

    def _release_handle(self, handle: StreamHandle) -> None:
        if handle is self._handle:
            self._handle = None
        handle.on_open = None
        handle.on_message = None
        handle.on_error = None
        with contextlib.suppress(Exception):
            handle.close()

    def _notify_error(self, failure: AttemptFailure) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(failure)
        except Exception:
            logger.exception("on_error hook raised for %s/%s", self.game_id, self.player_id)

    def _log(
        self,
        event: LifecycleEvent,
        *,
        duration: Optional[float] = None,
        message: Optional[str] = None,
    ) -> None:
        try:
            self.lifecycle.emit(event, duration=duration, message=message, retry_count=self._retry_count)
        except Exception:  # pragma: no cover - custom lifecycle loggers must not break the manager
            logger.debug("Lifecycle logging failed for %s", event.value, exc_info=True)


def _consume_outcome(future: asyncio.Future[None]) -> None:
    # streaks started by a dropped stream may have no awaiting caller
    if not future.cancelled():
        future.exception()


__all__ = ["ConnectionManager", "StateChangeHook", "MessageHook", "ErrorHook"]
