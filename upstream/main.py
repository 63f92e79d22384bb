"""
Connection lifecycle worker.

- Opens one upstream connection per broadcaster and supervises it:
  connecting -> live -> disconnected (session removed).
- The upstream client's connect result is not trusted on its own. Observed
  traffic (chat, gifts, likes, a connect confirmation...) decides whether an
  ambiguous attempt counts as live.
- Each session is an actor: adapter callbacks only enqueue, one pump task per
  session normalizes, records, optionally renders TTS and broadcasts, which
  keeps events in upstream order.

Run standalone (no HTTP) to watch one broadcaster:  python -m upstream.main <username>
"""
import argparse
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Optional

from relay.core.config import settings
from relay.core.errors import RenderError
from relay.db.schemas import Comment, ConnectionSignal, EventType, RoomStats, StreamEvent, now_ms
from relay.services.gift_ledger import GiftLedger
from relay.services.live_broadcast import EventBroadcaster
from relay.services.registry import BroadcasterSession, ConnectionRegistry, SessionState
from relay.services.tts import TTSGateway
from upstream import adapter as kinds
from upstream.adapter import AdapterFactory, coerce_error_message, tiktok_adapter_factory
from upstream.normalize import (
    apply_like_total,
    connected_viewer_count,
    is_streak_in_progress,
    normalize_comment,
    normalize_follow,
    normalize_gift,
    normalize_like,
    normalize_room_user,
    normalize_share,
    normalize_username,
)

logger = logging.getLogger("relay.worker")

# Activity that proves the upstream room is really streaming to us.
TRAFFIC_KINDS = frozenset(
    [kinds.CHAT, kinds.GIFT, kinds.LIKE, kinds.FOLLOW, kinds.SHARE, kinds.ROOM_USER]
)


# ─────────────────────────────────────────────────────────────
# Error classification (heuristic: substring match on error text)
# ─────────────────────────────────────────────────────────────
class FailureKind(str, Enum):
    NOT_LIVE = "not_live"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNKNOWN = "unknown"


_CRITICAL_PATTERNS = ("not found", "roomid", "room id", "offline", "no live", "not live")
_TIMEOUT_PATTERNS = ("timeout", "timed out")
_NETWORK_PATTERNS = ("network", "fetch")

FAILURE_MESSAGES: dict[FailureKind, str] = {
    FailureKind.NOT_LIVE: "Broadcaster is not currently live. Make sure they are streaming.",
    FailureKind.TIMEOUT: "Connection timed out. Try again.",
    FailureKind.NETWORK: "Network problem. Check your internet connection.",
    FailureKind.UNKNOWN: "Unknown error: could not connect. Check that the broadcaster is live.",
}
CLOSED_MESSAGE = "Connection was closed before it was established."


def is_critical(error_text: Optional[str]) -> bool:
    text = (error_text or "").lower()
    return any(p in text for p in _CRITICAL_PATTERNS)


def classify_error(error_text: Optional[str]) -> FailureKind:
    text = (error_text or "").lower()
    if is_critical(text):
        return FailureKind.NOT_LIVE
    if any(p in text for p in _TIMEOUT_PATTERNS):
        return FailureKind.TIMEOUT
    if any(p in text for p in _NETWORK_PATTERNS):
        return FailureKind.NETWORK
    return FailureKind.UNKNOWN


@dataclass
class StartResult:
    success: bool
    username: str
    message: str
    stats: Optional[RoomStats] = None
    already_active: bool = False
    failure: Optional[FailureKind] = None


class ConnectionWorker:
    def __init__(
        self,
        registry: ConnectionRegistry,
        broadcaster: EventBroadcaster,
        adapter_factory: AdapterFactory,
        *,
        tts: Optional[TTSGateway] = None,
        ledger: Optional[GiftLedger] = None,
        connect_timeout: float = 30.0,
        grace_period: float = 10.0,
        strict: bool = False,
        render_comments: bool = False,
        comment_template: str = "{user} dice: {text}",
        tts_voice: Optional[str] = None,
        render_timeout: float = 5.0,
        streak_final_only: bool = False,
    ):
        self._registry = registry
        self._broadcaster = broadcaster
        self._adapter_factory = adapter_factory
        self._tts = tts
        self._ledger = ledger
        self._connect_timeout = connect_timeout
        self._grace_period = grace_period
        self._strict = strict
        self._render_comments = render_comments
        self._comment_template = comment_template
        self._tts_voice = tts_voice
        self._render_timeout = render_timeout
        self._streak_final_only = streak_final_only
        self._tasks: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(
        cls,
        registry: ConnectionRegistry,
        broadcaster: EventBroadcaster,
        adapter_factory: AdapterFactory = tiktok_adapter_factory,
        *,
        tts: Optional[TTSGateway] = None,
        ledger: Optional[GiftLedger] = None,
    ) -> "ConnectionWorker":
        return cls(
            registry,
            broadcaster,
            adapter_factory,
            tts=tts,
            ledger=ledger,
            connect_timeout=settings.CONNECT_TIMEOUT_SEC,
            grace_period=settings.CORROBORATION_GRACE_SEC,
            strict=settings.strict_corroboration,
            render_comments=settings.TTS_RENDER_COMMENTS,
            comment_template=settings.TTS_COMMENT_TEMPLATE,
            tts_voice=settings.TTS_DEFAULT_VOICE,
            render_timeout=settings.TTS_RENDER_TIMEOUT_SEC,
            streak_final_only=settings.GIFT_STREAK_FINAL_ONLY,
        )

    def _spawn(self, coro: Any, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("background task %s failed: %s", task.get_name(), task.exception())

    # ── start / stop ─────────────────────────────────────────

    async def start(self, username: str) -> StartResult:
        username = normalize_username(username)
        if not username:
            return StartResult(False, "", "Username required", failure=FailureKind.UNKNOWN)

        existing = self._registry.find(username)
        if existing is not None:
            return StartResult(
                True,
                username,
                "Already connected",
                stats=existing.room_stats.model_copy(),
                already_active=True,
            )

        # No await between the presence check above and create() below.
        try:
            adapter = self._adapter_factory(username)
        except Exception as exc:
            text = coerce_error_message(exc)
            failure = classify_error(text)
            logger.error("[%s] could not create upstream client: %s", username, text)
            return StartResult(False, username, FAILURE_MESSAGES[failure], failure=failure)
        session = self._registry.create(username, adapter)
        for kind in kinds.EVENT_KINDS:
            session.adapter.on(kind, partial(self._enqueue, session, kind))
        session.pump = self._spawn(self._pump(session), f"relay-pump-{username}")
        logger.info("[%s] connecting...", username)

        # Shielded so a dropped HTTP request cannot leave the session half-started.
        establish = self._spawn(self._establish(session), f"relay-establish-{username}")
        return await asyncio.shield(establish)

    async def _establish(self, session: BroadcasterSession) -> StartResult:
        username = session.username
        session.connect_task = self._spawn(session.adapter.connect(), f"relay-connect-{username}")
        error_text, resolved = await self._await_connect(session)
        if self._registry.find(username) is not session:
            return StartResult(False, username, CLOSED_MESSAGE, failure=FailureKind.UNKNOWN)

        failure = await self._decide(session, error_text, resolved)
        if self._registry.find(username) is not session:
            return StartResult(False, username, CLOSED_MESSAGE, failure=FailureKind.UNKNOWN)

        if failure is None and session.upstream_closed:
            logger.warning("[%s] upstream closed before the session went live", username)
            self._signal(username, EventType.DISCONNECTED)
            await self._registry.remove(username)
            return StartResult(False, username, CLOSED_MESSAGE, failure=FailureKind.UNKNOWN)

        if failure is None:
            self._promote(session)
            return StartResult(True, username, f"Connected to @{username}", stats=session.room_stats.model_copy())

        logger.warning(
            "[%s] connection failed (%s): %s",
            username,
            failure.value,
            error_text or session.last_error or "no activity",
        )
        await self._registry.remove(username)
        return StartResult(False, username, FAILURE_MESSAGES[failure], failure=failure)

    async def _await_connect(self, session: BroadcasterSession) -> tuple[Optional[str], bool]:
        """Race connect() against the timeout and first activity.

        Returns (error text or None, whether connect resolved cleanly). The
        connect task is left running on timeout; teardown cancels it.
        """
        connect = session.connect_task
        activity = asyncio.ensure_future(session.activity.wait())
        try:
            await asyncio.wait(
                {connect, activity},
                timeout=self._connect_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            activity.cancel()

        if not connect.done():
            if not session.corroborated:
                logger.warning(
                    "[%s] connect did not resolve within %.0fs", session.username, self._connect_timeout
                )
            return None, False
        return self._connect_outcome(session)

    @staticmethod
    def _connect_outcome(session: BroadcasterSession) -> tuple[Optional[str], bool]:
        """(error text or None, resolved cleanly) for a finished connect task."""
        connect = session.connect_task
        if connect.cancelled():
            return "connect cancelled", False
        exc = connect.exception()
        if exc is not None:
            text = coerce_error_message(exc)
            session.last_error = text
            return text, False
        return None, True

    def _log_connect_error(self, session: BroadcasterSession, error_text: str) -> bool:
        critical = is_critical(error_text)
        if critical and not session.corroborated:
            session.critical_error = error_text
        logger.warning(
            "[%s] connect error (%s): %s",
            session.username,
            "critical" if critical else "non-critical",
            error_text,
        )
        return critical

    async def _decide(
        self, session: BroadcasterSession, error_text: Optional[str], resolved: bool
    ) -> Optional[FailureKind]:
        """None means the session goes live."""
        if error_text is not None:
            critical = self._log_connect_error(session, error_text)
            if not critical and not self._strict:
                return None
            await self._wait_for_activity(session, self._grace_period)
            return None if session.corroborated else classify_error(error_text)

        if session.corroborated or (resolved and not self._strict):
            return None

        # connect timed out: it may still settle inside the grace window
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._grace_period
        while not session.corroborated:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            pending = session.connect_task is not None and not session.connect_task.done()
            await self._wait_for_activity(session, remaining, watch_connect=pending)
            if not pending or not session.connect_task.done():
                continue
            late_error, resolved = self._connect_outcome(session)
            if late_error is None:
                if not self._strict:
                    return None
            elif not self._log_connect_error(session, late_error) and not self._strict:
                return None

        if session.corroborated:
            return None
        if session.critical_error:
            return FailureKind.NOT_LIVE
        if self._strict:
            if session.last_error:
                return classify_error(session.last_error)
            return FailureKind.UNKNOWN if resolved else FailureKind.TIMEOUT
        logger.info("[%s] no activity yet; assuming live", session.username)
        return None

    async def _wait_for_activity(
        self, session: BroadcasterSession, timeout: float, watch_connect: bool = False
    ) -> None:
        """Until activity, the timeout, or (with ``watch_connect``) the connect task settling."""
        if session.corroborated:
            return
        activity = asyncio.ensure_future(session.activity.wait())
        waiters = {activity}
        if watch_connect:
            waiters.add(session.connect_task)
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            activity.cancel()

    def _promote(self, session: BroadcasterSession) -> None:
        session.state = SessionState.LIVE
        logger.info("[%s] live", session.username)
        self._signal(session.username, EventType.CONNECTED)

    def _signal(self, username: str, event_type: EventType) -> None:
        self._broadcaster.broadcast(username, StreamEvent.of(event_type, ConnectionSignal(username=username)))

    async def stop(self, username: str) -> bool:
        username = normalize_username(username)
        if self._registry.find(username) is None:
            return False
        self._signal(username, EventType.DISCONNECTED)
        await self._registry.remove(username)
        logger.info("[%s] stopped", username)
        return True

    async def stop_all(self) -> list[str]:
        stopped = []
        for username in self._registry.usernames():
            if await self.stop(username):
                stopped.append(username)
        return stopped

    async def shutdown(self) -> None:
        await self.stop_all()
        for t in list(self._tasks):
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def drain(self, username: str) -> None:
        """Wait until every event queued so far for ``username`` has been processed."""
        session = self._registry.find(normalize_username(username))
        if session is not None:
            await session.inbox.join()

    # ── per-session actor ────────────────────────────────────

    def _enqueue(self, session: BroadcasterSession, kind: str, payload: Any) -> None:
        if session.state is SessionState.DISCONNECTED:
            return
        if kind in TRAFFIC_KINDS:
            session.traffic_seen = True
            session.activity.set()
        elif kind == kinds.CONNECTED:
            session.confirmed = True
            session.activity.set()
        elif kind == kinds.ERROR:
            text = coerce_error_message(payload)
            session.last_error = text
            if is_critical(text) and not session.corroborated:
                session.critical_error = text
            logger.warning("[%s] upstream error: %s", session.username, text)
            return
        elif kind in (kinds.DISCONNECTED, kinds.STREAM_END):
            session.upstream_closed = True
        session.inbox.put_nowait((kind, payload, now_ms()))

    async def _pump(self, session: BroadcasterSession) -> None:
        while session.state is not SessionState.DISCONNECTED:
            kind, payload, ts = await session.inbox.get()
            try:
                await self._handle(session, kind, payload, ts)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[%s] failed to process %s event", session.username, kind)
            finally:
                session.inbox.task_done()

    async def _handle(self, session: BroadcasterSession, kind: str, payload: Any, ts: int) -> None:
        username = session.username
        if kind == kinds.CHAT:
            comment = normalize_comment(payload, ts)
            if comment is None:
                return
            comment = await self._attach_audio(comment)
            session.record_comment(comment)
            logger.debug("[%s] @%s: %s", username, comment.user, comment.text[:50])
            self._broadcaster.broadcast(username, StreamEvent.of(EventType.COMMENT, comment))

        elif kind == kinds.GIFT:
            if self._streak_final_only and is_streak_in_progress(payload):
                return
            gift = normalize_gift(payload, ts)
            session.record_gift(gift)
            logger.info(
                "[%s] @%s sent %dx %s (%d diamonds)",
                username,
                gift.user,
                gift.repeat_count,
                gift.gift_name,
                gift.diamond_count * gift.repeat_count,
            )
            if self._ledger is not None:
                try:
                    await self._ledger.record(username, gift)
                except Exception as exc:
                    logger.error("[%s] gift ledger write failed: %s", username, exc)
            self._broadcaster.broadcast(username, StreamEvent.of(EventType.GIFT, gift))

        elif kind == kinds.LIKE:
            session.room_stats = apply_like_total(payload, session.room_stats)
            self._broadcaster.broadcast(username, StreamEvent.of(EventType.LIKE, normalize_like(payload, ts)))

        elif kind == kinds.FOLLOW:
            follow = normalize_follow(payload, ts)
            logger.debug("[%s] new follower @%s", username, follow.user)
            self._broadcaster.broadcast(username, StreamEvent.of(EventType.FOLLOW, follow))

        elif kind == kinds.SHARE:
            self._broadcaster.broadcast(username, StreamEvent.of(EventType.SHARE, normalize_share(payload, ts)))

        elif kind == kinds.ROOM_USER:
            session.room_stats = normalize_room_user(payload, session.room_stats)
            self._broadcaster.broadcast(username, StreamEvent.of(EventType.ROOM_STATS, session.room_stats))

        elif kind == kinds.CONNECTED:
            viewers = connected_viewer_count(payload)
            if viewers:
                session.room_stats = session.room_stats.model_copy(update={"viewer_count": viewers})
            # While connecting, promotion sends the signal instead.
            if session.state is SessionState.LIVE:
                self._signal(username, EventType.CONNECTED)

        elif kind in (kinds.DISCONNECTED, kinds.STREAM_END):
            # While connecting, _establish sees upstream_closed and refuses to promote.
            if session.state is not SessionState.LIVE:
                logger.info("[%s] upstream %s while connecting", username, kind)
                return
            logger.info("[%s] upstream %s; closing session", username, kind)
            self._signal(username, EventType.DISCONNECTED)
            if self._registry.find(username) is session:
                await self._registry.remove(username)

    async def _attach_audio(self, comment: Comment) -> Comment:
        """Add an audio URL when the render finishes in time; otherwise the client speaks locally."""
        if self._tts is None or not self._render_comments:
            return comment
        try:
            text = self._comment_template.format(user=comment.user, text=comment.text)
        except (KeyError, IndexError, ValueError) as exc:
            logger.warning("bad TTS_COMMENT_TEMPLATE: %s", exc)
            return comment
        # Not cancelled with the session: a finished render still lands in the cache.
        render = self._spawn(self._tts.render(text, self._tts_voice), "relay-tts-render")
        try:
            ref = await asyncio.wait_for(asyncio.shield(render), timeout=self._render_timeout)
        except asyncio.TimeoutError:
            logger.warning("TTS render exceeded %.1fs; sending comment without audio", self._render_timeout)
            return comment
        except RenderError as exc:
            logger.warning("TTS render failed: %s", exc)
            return comment
        return comment.model_copy(update={"audio_url": ref.url})


async def run_worker(username: str) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    registry = ConnectionRegistry(buffer_size=settings.RECENT_BUFFER_SIZE)
    broadcaster = EventBroadcaster(registry, queue_maxsize=settings.SSE_QUEUE_SIZE)
    worker = ConnectionWorker.from_settings(registry, broadcaster)

    result = await worker.start(username)
    if not result.success:
        logger.error("[%s] %s", result.username, result.message)
        return
    session = registry.get(result.username)
    channel = broadcaster.subscribe(session)
    try:
        while True:
            payload = await channel.receive()
            if payload is None:
                break
            logger.info("%s", payload)
    except asyncio.CancelledError:
        pass
    finally:
        await worker.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="Watch one TikTok LIVE broadcaster and log its events.")
    parser.add_argument("username")
    args = parser.parse_args()
    try:
        asyncio.run(run_worker(args.username))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
