"""
Connection API: start/stop monitoring a broadcaster, polling reads, live SSE.

- POST /connections/{username}/start   — open (or reuse) the upstream session
- POST /connections/{username}/stop    — tear the session down
- GET  /connections/{username}/comments|gifts|stats — polling catch-up
- GET  /connections/{username}/events  — SSE stream of normalized events
- GET  /connections/status, POST /connections/stop-all
"""
import asyncio
import logging
from typing import AsyncGenerator, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse

from relay.core.config import settings
from relay.db.schemas import ConnectionSignal, ErrorSignal, EventType, StreamEvent
from relay.services.relay_state import get_broadcaster, get_registry, get_worker
from upstream.normalize import normalize_username

router = APIRouter(prefix="/connections", tags=["connections"])
logger = logging.getLogger("relay.api")

NO_SESSION = "No active connection"


def _username_required() -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Username required", "username": ""},
    )


def _frame(payload: str) -> str:
    return f"data: {payload}\n\n"


async def event_stream(username: str, heartbeat_sec: Optional[float] = None) -> AsyncGenerator[str, None]:
    """
    Subscribe to one broadcaster's session and yield SSE frames.
    A live session replays a `connected` frame first; no session yields one
    `error` frame and ends. Heartbeat comment while idle.
    """
    heartbeat = heartbeat_sec if heartbeat_sec is not None else settings.SSE_HEARTBEAT_SEC
    session = get_registry().find(username)
    if session is None:
        yield _frame(StreamEvent.of(EventType.ERROR, ErrorSignal(message=NO_SESSION)).to_json())
        return

    broadcaster = get_broadcaster()
    channel = broadcaster.subscribe(session)
    try:
        if session.is_connected:
            channel.send(StreamEvent.of(EventType.CONNECTED, ConnectionSignal(username=username)).to_json())
        while True:
            try:
                msg = await asyncio.wait_for(channel.receive(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"
                continue
            if msg is None:
                break
            yield _frame(msg)
    finally:
        broadcaster.unsubscribe(session, channel)


@router.get("/status")
async def status():
    """Every monitored broadcaster with its state, stats and buffer sizes."""
    users = [snapshot.wire() for snapshot in get_registry().list_all()]
    return {"success": True, "users": users, "count": len(users)}


@router.post("/stop-all")
async def stop_all():
    stopped = await get_worker().stop_all()
    return {"success": True, "message": "All connections closed", "stopped": stopped}


@router.post("/{username}/start")
async def start_connection(username: str):
    name = normalize_username(username)
    if not name:
        return _username_required()
    result = await get_worker().start(name)
    if not result.success:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": result.message, "username": name},
        )
    return {
        "success": True,
        "message": result.message,
        "username": name,
        "stats": result.stats.wire() if result.stats else None,
    }


@router.post("/{username}/stop")
async def stop_connection(username: str):
    name = normalize_username(username)
    if not name:
        return _username_required()
    if await get_worker().stop(name):
        return {"success": True, "message": f"Disconnected from @{name}", "username": name}
    return {"success": False, "message": NO_SESSION, "username": name}


@router.get("/{username}/comments")
async def recent_comments(username: str):
    name = normalize_username(username)
    if not name:
        return _username_required()
    session = get_registry().find(name)
    if session is None:
        return JSONResponse(status_code=404, content={"success": False, "comments": [], "username": name})
    return {"success": True, "comments": [c.wire() for c in session.recent_comments], "username": name}


@router.get("/{username}/gifts")
async def recent_gifts(username: str):
    name = normalize_username(username)
    if not name:
        return _username_required()
    session = get_registry().find(name)
    if session is None:
        return JSONResponse(status_code=404, content={"success": False, "gifts": [], "username": name})
    return {"success": True, "gifts": [g.wire() for g in session.recent_gifts], "username": name}


@router.get("/{username}/stats")
async def room_stats(username: str):
    name = normalize_username(username)
    if not name:
        return _username_required()
    session = get_registry().find(name)
    if session is None:
        return JSONResponse(status_code=404, content={"success": False, "stats": None, "username": name})
    return {
        "success": True,
        "stats": session.room_stats.wire(),
        "isConnected": session.is_connected,
        "username": name,
    }


@router.get("/{username}/events", summary="Live event stream via Server-Sent Events")
async def live_events(username: str):
    """
    Comments, gifts, likes, follows, shares, room stats and connection signals
    for one broadcaster. Connect with EventSource or:
    curl -N http://localhost:8000/api/connections/<username>/events
    """
    name = normalize_username(username)
    if not name:
        return _username_required()
    return StreamingResponse(
        event_stream(name),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
            "Access-Control-Allow-Origin": "*",
        },
    )
