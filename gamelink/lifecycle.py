"""Structured lifecycle logging for event-stream connections.

A :class:`LifecycleLogger` turns connection events into :class:`LogRecord`
instances and fans them out to one or more sinks. It is a passive side
channel: a sink that raises is logged at debug level and skipped, so nothing
here can change what the connection manager decides.
"""
from __future__ import annotations

import asyncio
import csv
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence

import requests

from gamelink.models import LifecycleEvent, LogRecord

logger = logging.getLogger(__name__)


DEFAULT_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "gameId",
    "playerId",
    "duration",
    "message",
    "retryCount",
)


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class LogSink(Protocol):
    def write(self, record: LogRecord) -> None:
        ...


class _OffLoopWriter:
    """Runs a sink's blocking I/O on one worker thread while an event loop is running.

    A single worker keeps records in emission order. Without a running loop
    (plain scripts, synchronous tests) the work happens inline.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._executor: Optional[ThreadPoolExecutor] = None
        self._closed = False

    def _submit(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._guarded(fn, *args)
            return
        if self._closed:
            self._guarded(fn, *args)
            return
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=self._name)
        self._executor.submit(self._guarded, fn, *args)

    def _drain(self) -> None:
        """Wait for queued writes; later writes run inline."""
        self._closed = True
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def _guarded(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.debug("%s write failed", self._name, exc_info=True)


class LoggingSink:
    """Writes records through the standard :mod:`logging` machinery."""

    def __init__(self, target: Optional[logging.Logger] = None, level: int = logging.INFO) -> None:
        self.target = target or logger
        self.level = level

    def write(self, record: LogRecord) -> None:
        payload = record.to_dict()
        self.target.log(
            self.level,
            "[ConnectionManager] %s %s",
            record.event.value,
            json.dumps(payload, separators=(",", ":"), sort_keys=True),
            extra={"lifecycle": payload},
        )


class CsvLogSink(_OffLoopWriter):
    """Append-only CSV file of lifecycle records.

    Each row is flushed so the file can be tailed (the ``/events`` websocket
    in :mod:`gamelink.api` does exactly that). Inside an event loop the
    append happens on a worker thread; :meth:`close` waits for it.
    """

    def __init__(self, path: str | Path, *, fields: Sequence[str] | None = None) -> None:
        super().__init__("gamelink-csv")
        self.path = Path(path)
        self.fields: Sequence[str] = tuple(fields) if fields else DEFAULT_FIELDS
        if not self.fields:
            raise ValueError("fields must contain at least one column")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._ensure_header()

    def _ensure_header(self) -> None:
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        with self._lock:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore")
                writer.writeheader()
                handle.flush()

    def write(self, record: LogRecord) -> None:
        payload = record.to_dict()
        row = {key: payload.get(key, "") for key in self.fields}
        self._submit(self._append, row)

    def close(self) -> None:
        self._drain()

    def _append(self, row: Mapping[str, Any]) -> None:
        with self._lock:
            with self.path.open("a", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore")
                writer.writerow(row)
                handle.flush()


class RemoteLogSink(_OffLoopWriter):
    """Best-effort forwarding of records to an HTTP collector.

    Each record is POSTed as JSON from a worker thread; the caller never waits
    on the network and delivery failures are only logged.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 2.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__("gamelink-remote-log")
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def write(self, record: LogRecord) -> None:
        self._submit(self._post, record.to_dict())

    def close(self) -> None:
        self._drain()
        self._session.close()

    def _post(self, payload: Mapping[str, Any]) -> None:
        try:
            response = self._session.post(self.url, json=dict(payload), timeout=self.timeout)
            response.raise_for_status()
        except Exception:
            logger.debug("Remote lifecycle log delivery failed for %s", payload.get("event"), exc_info=True)


class LifecycleLogger:
    """Emits one structured record per connection lifecycle event."""

    def __init__(
        self,
        game_id: str,
        player_id: str,
        *,
        sinks: Optional[Iterable[LogSink]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.game_id = game_id
        self.player_id = player_id
        self.sinks: List[LogSink] = list(sinks) if sinks is not None else [LoggingSink()]
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def add_sink(self, sink: LogSink) -> None:
        self.sinks.append(sink)

    def close(self) -> None:
        """Flush and release every sink that holds a resource."""
        for sink in list(self.sinks):
            close = getattr(sink, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception:
                logger.debug("Closing lifecycle sink %r failed", sink, exc_info=True)

    def emit(
        self,
        event: LifecycleEvent | str,
        *,
        duration: Optional[float] = None,
        message: Optional[str] = None,
        retry_count: int = 0,
    ) -> Optional[LogRecord]:
        try:
            record = LogRecord(
                timestamp=self._timestamp(),
                event=LifecycleEvent(event),
                game_id=self.game_id,
                player_id=self.player_id,
                duration=duration,
                message=message,
                retry_count=retry_count,
            )
        except Exception:  # pragma: no cover - logging must not break the manager
            logger.debug("Could not build lifecycle record for %s", event, exc_info=True)
            return None
        for sink in list(self.sinks):
            try:
                sink.write(record)
            except Exception:
                logger.debug("Lifecycle sink %r failed for %s", sink, record.event.value, exc_info=True)
        return record

    def _timestamp(self) -> str:
        try:
            dt = self._clock()
        except Exception:  # pragma: no cover - guard against faulty clock
            dt = datetime.now(timezone.utc)
        if not isinstance(dt, datetime):
            return str(dt)
        return _ensure_utc(dt).isoformat(timespec="milliseconds")


def build_sinks(
    *,
    csv_path: str | Path | None = None,
    remote_url: Optional[str] = None,
    log_to_server: bool = True,
    include_logging: bool = True,
) -> List[LogSink]:
    sinks: List[LogSink] = []
    if include_logging:
        sinks.append(LoggingSink())
    if csv_path:
        sinks.append(CsvLogSink(csv_path))
    if remote_url and log_to_server:
        sinks.append(RemoteLogSink(remote_url))
    return sinks


__all__ = [
    "DEFAULT_FIELDS",
    "LogSink",
    "LoggingSink",
    "CsvLogSink",
    "RemoteLogSink",
    "LifecycleLogger",
    "build_sinks",
]
