"""
In-memory per-broadcaster fanout for SSE subscribers.

- Each SSE client owns an OutputChannel (bounded queue of serialized events).
- broadcast() writes one event to every channel of a username's session.
- A channel whose write fails (closed, or full because the client stalled) is
  removed from the session and never retried.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from relay.db.schemas import StreamEvent

if TYPE_CHECKING:
    from relay.services.registry import BroadcasterSession, ConnectionRegistry

logger = logging.getLogger("relay.broadcast")


class ChannelClosed(Exception):
    """Write attempted on a channel whose subscriber has gone away."""


class OutputChannel:
    """One subscriber's stream. ``None`` on the queue marks end of stream."""

    def __init__(self, maxsize: int = 1000):
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def send(self, payload: str) -> None:
        if self._closed:
            raise ChannelClosed()
        self._queue.put_nowait(payload)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Subscriber is far behind; drop its backlog so the end marker fits.
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(None)

    async def receive(self) -> Optional[str]:
        return await self._queue.get()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class EventBroadcaster:
    """Fanout of normalized events to the channels subscribed to a username."""

    def __init__(self, registry: "ConnectionRegistry", queue_maxsize: int = 1000):
        self._registry = registry
        self._queue_maxsize = queue_maxsize
        self._dropped = 0

    def subscribe(self, session: "BroadcasterSession") -> OutputChannel:
        channel = OutputChannel(maxsize=self._queue_maxsize)
        session.channels.add(channel)
        return channel

    def unsubscribe(self, session: "BroadcasterSession", channel: OutputChannel) -> None:
        session.channels.discard(channel)
        channel.close()

    def broadcast(self, username: str, event: StreamEvent) -> int:
        """Deliver to every channel of ``username``; returns how many accepted it."""
        session = self._registry.find(username)
        if session is None:
            return 0
        return self.broadcast_to(session, event)

    def broadcast_to(self, session: "BroadcasterSession", event: StreamEvent) -> int:
        payload = event.to_json()
        delivered = 0
        for channel in list(session.channels):
            try:
                channel.send(payload)
                delivered += 1
            except Exception as exc:
                session.channels.discard(channel)
                self._dropped += 1
                logger.debug(
                    "[%s] dropped channel after failed write (%s)",
                    session.username,
                    type(exc).__name__,
                )
                try:
                    channel.close()
                except Exception:
                    logger.debug("[%s] channel close failed", session.username)
        return delivered

    @property
    def dropped(self) -> int:
        return self._dropped
