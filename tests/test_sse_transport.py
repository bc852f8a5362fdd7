"""SSE framing and the aiohttp transport against a local test server."""
from __future__ import annotations

import asyncio
import unittest
from typing import List, Optional

from aiohttp import web
from aiohttp.test_utils import TestServer

from gamelink.connection import ConnectionManager
from gamelink.models import ConnectionState
from gamelink.transport import SSEParser, SSEStreamHandle, SSETransport


def _feed(parser: SSEParser, text: str) -> List:
    events = []
    for line in text.split("\n"):
        event = parser.feed_line(line)
        if event is not None:
            events.append(event)
    return events


class SSEParserTest(unittest.TestCase):
    def test_single_data_line(self) -> None:
        events = _feed(SSEParser(), "data: hello\n\n")
        self.assertEqual([e.data for e in events], ["hello"])
        self.assertEqual(events[0].event, "message")

    def test_multiline_data_is_joined(self) -> None:
        events = _feed(SSEParser(), "data: {\ndata:  \"a\": 1\ndata: }\n\n")
        self.assertEqual(events[0].data, '{\n "a": 1\n}')

    def test_event_id_and_retry_fields(self) -> None:
        parser = SSEParser()
        events = _feed(parser, "event: round\nid: 7\nretry: 1500\ndata: go\n\n")

        self.assertEqual(events[0].event, "round")
        self.assertEqual(events[0].id, "7")
        self.assertEqual(events[0].retry, 1500)
        self.assertEqual(parser.last_event_id, "7")

    def test_comments_and_empty_blocks_dispatch_nothing(self) -> None:
        parser = SSEParser()
        self.assertEqual(_feed(parser, ": keep-alive\n\nevent: noop\n\n"), [])
        # the event name of an empty block must not leak into the next event
        self.assertEqual(_feed(parser, "data: x\n\n")[0].event, "message")

    def test_invalid_retry_is_ignored(self) -> None:
        events = _feed(SSEParser(), "retry: soon\ndata: x\n\n")
        self.assertIsNone(events[0].retry)


class _RecordingTransport(SSETransport):
    def __init__(self, base_url: str) -> None:
        super().__init__(base_url)
        self.handles: List[SSEStreamHandle] = []

    def open(self, game_id: str, player_id: str) -> SSEStreamHandle:
        handle = super().open(game_id, player_id)
        self.handles.append(handle)
        return handle


class SSETransportIntegrationTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.requests: List[dict] = []
        self.release = asyncio.Event()
        self.hold_open = False

        async def events(request: web.Request) -> web.StreamResponse:
            self.requests.append(
                {
                    "game": request.match_info["game_id"],
                    "player": request.query.get("playerId"),
                    "accept": request.headers.get("Accept"),
                }
            )
            if request.match_info["game_id"] == "missing":
                return web.Response(status=404, text="no such game")
            response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await response.prepare(request)
            await response.write(b": hello\n\n")
            await response.write(b"data: one\n\n")
            await response.write(b"event: round\ndata: two\n\n")
            if self.hold_open:
                try:
                    await asyncio.wait_for(self.release.wait(), timeout=2.0)
                except asyncio.TimeoutError:
                    pass
            return response

        app = web.Application()
        app.router.add_get("/api/games/{game_id}/events", events)
        self.server = TestServer(app)
        await self.server.start_server()
        self.base_url = str(self.server.make_url("/api"))

    async def asyncTearDown(self) -> None:
        self.release.set()
        await self.server.close()

    async def _collect(self, handle: SSEStreamHandle) -> tuple[List[str], Optional[str]]:
        log: List[str] = []
        done = asyncio.Event()
        error: List[str] = []

        def _on_error(detail: str) -> None:
            error.append(detail)
            done.set()

        handle.on_open = lambda: log.append("open")
        handle.on_message = log.append
        handle.on_error = _on_error
        await asyncio.wait_for(done.wait(), timeout=2.0)
        await handle.wait_closed()
        return log, error[0] if error else None

    async def test_stream_delivers_messages_then_reports_eof(self) -> None:
        transport = SSETransport(self.base_url)
        handle = transport.open("AB 12", "player-1")

        log, error = await self._collect(handle)

        self.assertEqual(log, ["open", "one", "two"])
        self.assertEqual(error, "Stream closed by server")
        self.assertEqual(
            self.requests,
            [{"game": "AB 12", "player": "player-1", "accept": "text/event-stream"}],
        )

    async def test_non_200_status_is_an_error_without_open(self) -> None:
        handle = SSETransport(self.base_url).open("missing", "player-1")

        log, error = await self._collect(handle)

        self.assertEqual(log, [])
        self.assertEqual(error, "Unexpected status 404 from event stream")
        self.assertFalse(handle.opened)

    async def test_unreachable_server_reports_error(self) -> None:
        await self.server.close()
        handle = SSETransport(self.base_url).open("ABCD", "player-1")

        log, error = await self._collect(handle)

        self.assertEqual(log, [])
        self.assertTrue(error)

    async def test_close_silences_callbacks(self) -> None:
        self.hold_open = True
        handle = SSETransport(self.base_url).open("ABCD", "player-1")
        calls: List[str] = []
        handle.on_open = lambda: calls.append("open")
        handle.on_error = calls.append

        handle.close()
        handle.close()
        await handle.wait_closed()

        self.assertTrue(handle.closed)
        self.assertEqual(calls, [])

    async def test_manager_connects_over_sse(self) -> None:
        self.hold_open = True
        transport = _RecordingTransport(self.base_url)
        manager = ConnectionManager(transport, "ABCD", "player-1", connection_timeout=2000, log_sinks=[])
        received: List[str] = []
        manager.on_message = received.append

        await manager.connect()
        for _ in range(100):
            if len(received) == 2:
                break
            await asyncio.sleep(0.01)
        manager.disconnect()
        await transport.handles[0].wait_closed()

        self.assertEqual(received, ["one", "two"])
        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        metrics = manager.get_metrics()
        self.assertEqual((metrics.total_attempts, metrics.successful_attempts), (1, 1))


if __name__ == "__main__":
    unittest.main()
