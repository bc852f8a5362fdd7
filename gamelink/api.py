from __future__ import annotations
import asyncio, json, logging, os, time
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Query, HTTPException

from gamelink.connection import ConnectionManager
from gamelink.errors import ConnectionManagerError, InvalidOperation
from gamelink.lifecycle import build_sinks
from gamelink.models import ConnectionState
from gamelink.transport import SSETransport

logger = logging.getLogger("gamelink.api")

app = FastAPI(title="gamelink API", version="0.1.0")

_manager: Optional[ConnectionManager] = None
_task: Optional[asyncio.Task] = None
_log_path: Optional[str] = None


def _track(coro) -> asyncio.Task:
    """Run a connect/retry coroutine in the background and log its outcome."""
    task = asyncio.create_task(coro)

    def _done(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if isinstance(exc, ConnectionManagerError):
            logger.info("watch ended: %s", exc)
        elif exc is not None:
            logger.error("watch task failed", exc_info=exc)

    task.add_done_callback(_done)
    return task


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.post("/watch/start")
async def start(
    base_url: str = Query(..., description="API base URL, e.g. http://localhost:3000/api"),
    game_id: str = Query(..., description="Game code to follow"),
    player_id: str = Query(..., description="Player identifier sent as playerId"),
    log: str = Query("connection-log.csv"),
    connection_timeout: Optional[float] = Query(None, gt=0, description="Connection timeout ms"),
    max_retries: Optional[int] = Query(None, ge=0, description="Automatic retries per streak"),
    initial_retry_delay: Optional[float] = Query(None, gt=0, description="First back-off delay ms"),
    max_retry_delay: Optional[float] = Query(None, gt=0, description="Back-off cap ms"),
    auto_reconnect: Optional[bool] = Query(None, description="Reconnect after the stream drops"),
):
    global _manager, _task, _log_path
    if _manager is not None and _manager.state not in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
        return {"status": "already-running", "gameId": _manager.game_id, "playerId": _manager.player_id}

    try:
        manager = ConnectionManager(
            SSETransport(base_url),
            game_id,
            player_id,
            {
                "connection_timeout": connection_timeout,
                "max_retries": max_retries,
                "initial_retry_delay": initial_retry_delay,
                "max_retry_delay": max_retry_delay,
                "enable_auto_reconnect": auto_reconnect,
            },
            log_sinks=build_sinks(csv_path=log),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid configuration: {exc}")

    if _manager is not None:
        _manager.close()
    _manager = manager
    _log_path = log
    _task = _track(manager.connect())
    return {
        "status": "started",
        "gameId": game_id,
        "playerId": player_id,
        "log": log,
    }


@app.post("/watch/stop")
async def stop():
    global _task
    if _manager is None:
        return {"status": "idle"}
    _manager.disconnect()
    if _task is not None:
        try:
            await _task
        except (asyncio.CancelledError, ConnectionManagerError):
            pass
        except Exception:
            logger.exception("watch stop encountered error")
        _task = None
    return {"status": "stopped"}


@app.post("/watch/retry")
async def retry():
    global _task
    if _manager is None:
        return {"status": "idle"}
    if _manager.is_connected:
        raise HTTPException(status_code=409, detail=str(InvalidOperation("manual_retry", _manager.state)))
    _task = _track(_manager.manual_retry())
    await asyncio.sleep(0)
    return {"status": "retrying", "state": _manager.state.value}


@app.get("/watch/status")
async def status():
    if _manager is None:
        return {"status": "idle"}
    return {
        "status": _manager.state.value,
        "gameId": _manager.game_id,
        "playerId": _manager.player_id,
        "retryCount": _manager.retry_count,
        "maxRetries": _manager.config.max_retries,
        "metrics": _manager.get_metrics().to_dict(),
    }


@app.websocket("/events")
async def events(ws: WebSocket):
    await ws.accept()
    pos = 0
    try:
        while True:
            await asyncio.sleep(0.5)
            if not _log_path or not os.path.exists(_log_path):
                continue
            with open(_log_path, "r", encoding="utf-8") as f:
                f.seek(pos)
                chunk = f.read()
                pos = f.tell()
            for line in chunk.splitlines():
                await ws.send_text(json.dumps({"csv": line.strip()}))
    except WebSocketDisconnect:
        return
