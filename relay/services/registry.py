"""
Connection registry: username -> BroadcasterSession.

Single source of truth for "is this username being monitored". All mutation
happens on the event loop thread; ``create`` performs its presence check and
insert without suspending, so two concurrent start requests cannot both win.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from relay.core.errors import SessionAlreadyExists, SessionNotFound
from relay.db.schemas import Comment, Gift, RoomStats, UserStatusOut, now_ms

logger = logging.getLogger("relay.registry")


class SessionState(str, Enum):
    CONNECTING = "connecting"
    LIVE = "live"
    DISCONNECTED = "disconnected"


@dataclass(eq=False)
class BroadcasterSession:
    username: str
    adapter: Any
    buffer_size: int = 100
    state: SessionState = SessionState.CONNECTING
    room_stats: RoomStats = field(default_factory=RoomStats)
    channels: set = field(default_factory=set)
    started_at: int = field(default_factory=now_ms)

    # corroboration bookkeeping
    traffic_seen: bool = False
    confirmed: bool = False
    critical_error: Optional[str] = None
    last_error: Optional[str] = None
    upstream_closed: bool = False
    activity: asyncio.Event = field(default_factory=asyncio.Event)

    # per-session actor
    inbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    pump: Optional[asyncio.Task] = None
    connect_task: Optional[asyncio.Task] = None

    def __post_init__(self) -> None:
        self.recent_comments: deque[Comment] = deque(maxlen=self.buffer_size)
        self.recent_gifts: deque[Gift] = deque(maxlen=self.buffer_size)

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.LIVE

    @property
    def corroborated(self) -> bool:
        return self.traffic_seen or self.confirmed

    def record_comment(self, comment: Comment) -> None:
        self.recent_comments.append(comment)

    def record_gift(self, gift: Gift) -> None:
        self.recent_gifts.append(gift)

    def snapshot(self) -> UserStatusOut:
        return UserStatusOut(
            username=self.username,
            is_connected=self.is_connected,
            state=self.state.value,
            stats=self.room_stats.model_copy(),
            comments_count=len(self.recent_comments),
            gifts_count=len(self.recent_gifts),
        )


class ConnectionRegistry:
    def __init__(self, buffer_size: int = 100, disconnect_timeout: float = 5.0):
        self._sessions: dict[str, BroadcasterSession] = {}
        self._buffer_size = buffer_size
        self._disconnect_timeout = disconnect_timeout

    def create(self, username: str, adapter: Any) -> BroadcasterSession:
        if username in self._sessions:
            raise SessionAlreadyExists(username)
        session = BroadcasterSession(username=username, adapter=adapter, buffer_size=self._buffer_size)
        self._sessions[username] = session
        logger.debug("[%s] session created", username)
        return session

    def get(self, username: str) -> BroadcasterSession:
        session = self._sessions.get(username)
        if session is None:
            raise SessionNotFound(username)
        return session

    def find(self, username: str) -> Optional[BroadcasterSession]:
        return self._sessions.get(username)

    async def remove(self, username: str) -> bool:
        """Drop the session and dispose of its adapter. False if there was none."""
        session = self._sessions.pop(username, None)
        if session is None:
            return False
        session.state = SessionState.DISCONNECTED
        await self._dispose(session)
        logger.debug("[%s] session removed", username)
        return True

    async def _dispose(self, session: BroadcasterSession) -> None:
        current = asyncio.current_task()
        for task in (session.connect_task, session.pump):
            if task is not None and task is not current and not task.done():
                task.cancel()
        try:
            await asyncio.wait_for(session.adapter.disconnect(), timeout=self._disconnect_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[%s] adapter disconnect failed: %s", session.username, exc or type(exc).__name__)
        for channel in list(session.channels):
            try:
                channel.close()
            except Exception:
                logger.debug("[%s] channel close failed", session.username)
        session.channels.clear()

    def list_all(self) -> Iterator[UserStatusOut]:
        for session in list(self._sessions.values()):
            yield session.snapshot()

    def usernames(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, username: object) -> bool:
        return username in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
