"""Event-stream transport built on top of aiohttp.

The connection manager only needs a tiny capability from a transport: open a
stream for a game/player pair, hear back about ``open`` and ``error``, and be
able to close it. :class:`StreamTransport` / :class:`StreamHandle` describe
that capability; :class:`SSETransport` implements it for Server-Sent Events.
Message payloads are handed on as raw strings and never decoded here.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol
from urllib.parse import quote

import aiohttp

logger = logging.getLogger(__name__)

OpenCallback = Callable[[], None]
MessageCallback = Callable[[str], None]
ErrorCallback = Callable[[str], None]

EVENTS_PATH = "/games/{game_id}/events"


class StreamHandle(Protocol):
	"""A single opened (or opening) stream owned by one connection attempt."""

	on_open: Optional[OpenCallback]
	on_message: Optional[MessageCallback]
	on_error: Optional[ErrorCallback]

	def close(self) -> None:
		...


class StreamTransport(Protocol):
	def open(self, game_id: str, player_id: str) -> StreamHandle:
		...


@dataclass(slots=True)
class SSEEvent:
	"""One dispatched event from a ``text/event-stream`` body."""

	data: str
	event: str = "message"
	id: Optional[str] = None
	retry: Optional[int] = None


class SSEParser:
	"""Incremental decoder for ``text/event-stream`` framing.

	Feed it one line at a time (without the terminator); it returns an
	:class:`SSEEvent` whenever a blank line completes an event.
	"""

	def __init__(self) -> None:
		self.last_event_id: Optional[str] = None
		self._data: list[str] = []
		self._event = ""
		self._retry: Optional[int] = None

	def feed_line(self, line: str) -> Optional[SSEEvent]:
		if not line:
			return self._dispatch()
		if line.startswith(":"):
			return None

		field, sep, value = line.partition(":")
		if sep and value.startswith(" "):
			value = value[1:]

		if field == "data":
			self._data.append(value)
		elif field == "event":
			self._event = value
		elif field == "id":
			if "\0" not in value:
				self.last_event_id = value
		elif field == "retry":
			if value.isdigit():
				self._retry = int(value)
		return None

	def _dispatch(self) -> Optional[SSEEvent]:
		if not self._data:
			self._event = ""
			return None
		event = SSEEvent(
			data="\n".join(self._data),
			event=self._event or "message",
			id=self.last_event_id,
			retry=self._retry,
		)
		self._data = []
		self._event = ""
		self._retry = None
		return event


class SSEStreamHandle:
	"""Reader task for one SSE response.

	Callbacks fire on the event loop thread. After :meth:`close` no callback
	fires again, whatever the reader task was in the middle of.
	"""

	def __init__(
		self,
		url: str,
		*,
		params: Optional[Mapping[str, str]] = None,
		headers: Optional[Mapping[str, str]] = None,
		session: Optional[aiohttp.ClientSession] = None,
	) -> None:
		self.url = url
		self.params: Dict[str, str] = dict(params or {})
		self.headers: Dict[str, str] = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
		if headers:
			self.headers.update(headers)
		self.on_open: Optional[OpenCallback] = None
		self.on_message: Optional[MessageCallback] = None
		self.on_error: Optional[ErrorCallback] = None
		self.opened = False
		self.closed = False
		self.last_event_id: Optional[str] = None
		self._shared_session = session
		self._task: Optional[asyncio.Task[None]] = None

	def start(self) -> "SSEStreamHandle":
		if self._task is None and not self.closed:
			self._task = asyncio.get_running_loop().create_task(self._run())
		return self

	def close(self) -> None:
		if self.closed:
			return
		self.closed = True
		self.on_open = None
		self.on_message = None
		self.on_error = None
		if self._task is not None and not self._task.done():
			self._task.cancel()

	async def wait_closed(self) -> None:
		if self._task is None:
			return
		with contextlib.suppress(asyncio.CancelledError):
			await self._task

	# ------------------------------------------------------------------
	# Reader
	# ------------------------------------------------------------------
	async def _run(self) -> None:
		session = self._shared_session
		owns_session = session is None
		if session is None:
			session = aiohttp.ClientSession()
		try:
			await self._consume(session)
		except asyncio.CancelledError:
			raise
		except aiohttp.ClientError as exc:
			self._emit_error(str(exc) or type(exc).__name__)
		except Exception as exc:  # pragma: no cover - unexpected reader failure
			logger.exception("SSE reader for %s failed", self.url)
			self._emit_error(str(exc) or type(exc).__name__)
		finally:
			if owns_session:
				await session.close()

	async def _consume(self, session: aiohttp.ClientSession) -> None:
		timeout = aiohttp.ClientTimeout(total=None)
		async with session.get(self.url, params=self.params, headers=self.headers, timeout=timeout) as response:
			if response.status != 200:
				self._emit_error(f"Unexpected status {response.status} from event stream")
				return
			content_type = response.headers.get("Content-Type", "")
			if "text/event-stream" not in content_type:
				logger.warning("Event stream %s answered with Content-Type %r", self.url, content_type)

			self._emit_open()
			parser = SSEParser()
			async for raw in response.content:
				if self.closed:
					return
				line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
				event = parser.feed_line(line)
				self.last_event_id = parser.last_event_id
				if event is not None:
					self._emit_message(event.data)
			self._emit_error("Stream closed by server")

	# ------------------------------------------------------------------
	# Callback dispatch
	# ------------------------------------------------------------------
	def _emit_open(self) -> None:
		self.opened = True
		self._dispatch(self.on_open)

	def _emit_message(self, data: str) -> None:
		self._dispatch(self.on_message, data)

	def _emit_error(self, detail: str) -> None:
		self._dispatch(self.on_error, detail)

	def _dispatch(self, callback: Optional[Callable[..., None]], *args: Any) -> None:
		if self.closed or callback is None:
			return
		try:
			callback(*args)
		except Exception:  # pragma: no cover - consumer callback failure
			logger.exception("Event stream callback raised for %s", self.url)


class SSETransport:
	"""Opens ``GET {base_url}/games/{game_id}/events?playerId=...`` streams."""

	def __init__(
		self,
		base_url: str,
		*,
		session: Optional[aiohttp.ClientSession] = None,
		headers: Optional[Mapping[str, str]] = None,
		path_template: str = EVENTS_PATH,
	) -> None:
		self.base_url = base_url.rstrip("/")
		self.session = session
		self.headers = dict(headers or {})
		self.path_template = path_template

	def url_for(self, game_id: str) -> str:
		return self.base_url + self.path_template.format(game_id=quote(game_id, safe=""))

	def open(self, game_id: str, player_id: str) -> SSEStreamHandle:
		handle = SSEStreamHandle(
			self.url_for(game_id),
			params={"playerId": player_id},
			headers=self.headers,
			session=self.session,
		)
		logger.debug("Opening event stream %s for player %s", handle.url, player_id)
		return handle.start()


__all__ = [
	"StreamHandle",
	"StreamTransport",
	"SSEEvent",
	"SSEParser",
	"SSEStreamHandle",
	"SSETransport",
	"EVENTS_PATH",
]
