"""
Upstream connection adapter.

Wraps one TikTokLive client per broadcaster and re-emits its events under a
small fixed set of kinds. The adapter owns no shared state; its owner
registers callbacks with ``on`` and decides what the events mean.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional, Protocol

from TikTokLive import TikTokLiveClient
from TikTokLive.events import (
    CommentEvent,
    ConnectEvent,
    DisconnectEvent,
    FollowEvent,
    GiftEvent,
    LikeEvent,
    LiveEndEvent,
    RoomUserSeqEvent,
    ShareEvent,
)

logger = logging.getLogger("relay.upstream")

CHAT = "chat"
GIFT = "gift"
LIKE = "like"
FOLLOW = "follow"
SHARE = "share"
ROOM_USER = "roomUser"
CONNECTED = "connected"
DISCONNECTED = "disconnected"
STREAM_END = "streamEnd"
ERROR = "error"

EVENT_KINDS = (CHAT, GIFT, LIKE, FOLLOW, SHARE, ROOM_USER, CONNECTED, DISCONNECTED, STREAM_END, ERROR)

Callback = Callable[[Any], None]


class UpstreamAdapter(Protocol):
    def on(self, kind: str, callback: Callback) -> None: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...


AdapterFactory = Callable[[str], UpstreamAdapter]


def coerce_error_message(err: Any) -> str:
    """Text for whatever the upstream raised or emitted: exception, value or nothing."""
    try:
        if err is None:
            return "Unknown error"
        if isinstance(err, BaseException):
            detail = str(err).strip()
            name = type(err).__name__
            return f"{name}: {detail}" if detail else name
        if isinstance(err, (dict, list, tuple)):
            return json.dumps(err, default=str)
        text = str(err).strip()
        return text or "Unknown error"
    except Exception:
        return "Error parsing error"


_TIKTOK_EVENTS = (
    (CommentEvent, CHAT),
    (GiftEvent, GIFT),
    (LikeEvent, LIKE),
    (FollowEvent, FOLLOW),
    (ShareEvent, SHARE),
    (RoomUserSeqEvent, ROOM_USER),
    (ConnectEvent, CONNECTED),
    (DisconnectEvent, DISCONNECTED),
    (LiveEndEvent, STREAM_END),
)


class TikTokLiveAdapter:
    """One TikTokLive client for one broadcaster username."""

    def __init__(self, username: str):
        self.username = username
        self._client = TikTokLiveClient(unique_id=f"@{username}")
        self._callbacks: dict[str, list[Callback]] = {}
        self._task: Optional[asyncio.Task[Any]] = None
        for event_type, kind in _TIKTOK_EVENTS:
            self._client.add_listener(event_type, self._listener(kind))

    def _listener(self, kind: str):
        async def relay(event: Any) -> None:
            self._emit(kind, event)

        return relay

    def on(self, kind: str, callback: Callback) -> None:
        if kind not in EVENT_KINDS:
            raise ValueError(f"unknown upstream event kind: {kind}")
        self._callbacks.setdefault(kind, []).append(callback)

    def _emit(self, kind: str, payload: Any) -> None:
        for callback in list(self._callbacks.get(kind, ())):
            try:
                callback(payload)
            except Exception:
                logger.exception("[%s] %s callback failed", self.username, kind)

    async def connect(self) -> None:
        """Resolves once the websocket is open; the read loop keeps running in a task."""
        self._task = await self._client.start()
        self._task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._emit(ERROR, exc)

    async def disconnect(self) -> None:
        if self._client.connected:
            await self._client.disconnect()
        elif self._task is not None and not self._task.done():
            self._task.cancel()


def tiktok_adapter_factory(username: str) -> UpstreamAdapter:
    return TikTokLiveAdapter(username)
