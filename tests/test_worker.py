"""Connection lifecycle: corroboration, idempotent start/stop, ordering, TTS attachment."""
import asyncio
import json

import pytest

from relay.core.errors import RenderError
from relay.services.registry import SessionState
from relay.services.tts import AudioReference
from upstream import main as worker_module
from upstream.main import (
    CLOSED_MESSAGE,
    FAILURE_MESSAGES,
    ConnectionWorker,
    FailureKind,
    classify_error,
    is_critical,
)

from fakes import chat


def make_worker(registry, broadcaster, factory, **overrides) -> ConnectionWorker:
    options = dict(connect_timeout=0.2, grace_period=0.2)
    options.update(overrides)
    return ConnectionWorker(registry, broadcaster, factory, **options)


async def frames(channel, count: int) -> list[dict]:
    out = []
    for _ in range(count):
        raw = await asyncio.wait_for(channel.receive(), timeout=1.0)
        out.append(json.loads(raw) if raw is not None else None)
    return out


class FakeTTS:
    def __init__(self, delay: float = 0.0, error: Exception = None):
        self.delay = delay
        self.error = error
        self.texts = []
        self.finished = 0

    async def render(self, text, voice=None, speed=1.0, volume=1.0):
        self.texts.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.finished += 1
        return AudioReference(key="k1", url="/api/tts/audio/k1")


# ── classification ───────────────────────────────────────────


@pytest.mark.parametrize(
    "text, kind",
    [
        ("Error: roomId not found", FailureKind.NOT_LIVE),
        ("UserOfflineError: user is offline", FailureKind.NOT_LIVE),
        ("No live stream found", FailureKind.NOT_LIVE),
        ("Request timed out", FailureKind.TIMEOUT),
        ("ConnectTimeout: timeout", FailureKind.TIMEOUT),
        ("NetworkError when attempting to fetch resource", FailureKind.NETWORK),
        ("something odd", FailureKind.UNKNOWN),
        (None, FailureKind.UNKNOWN),
    ],
)
def test_classify_error_is_a_substring_heuristic(text, kind):
    assert classify_error(text) is kind


def test_is_critical_is_case_insensitive():
    assert is_critical("ROOM ID missing")
    assert not is_critical("handshake hiccup")


# ── start ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_clean_connect_goes_live(registry, broadcaster, factory):
    worker = make_worker(registry, broadcaster, factory)

    result = await worker.start("@streamer ")

    assert result.success
    assert result.username == "streamer"
    assert result.message == "Connected to @streamer"
    assert registry.get("streamer").state is SessionState.LIVE
    await worker.shutdown()


@pytest.mark.asyncio
async def test_empty_username_is_rejected(registry, broadcaster, factory):
    worker = make_worker(registry, broadcaster, factory)
    result = await worker.start(" @ ")
    assert not result.success
    assert result.message == "Username required"
    assert factory.calls == 0


@pytest.mark.asyncio
async def test_critical_error_without_activity_fails(registry, broadcaster, factory):
    factory.plan("offline", connect_error=RuntimeError("Error: roomId not found"))
    worker = make_worker(registry, broadcaster, factory, grace_period=0.05)

    result = await worker.start("offline")

    assert not result.success
    assert result.failure is FailureKind.NOT_LIVE
    assert result.message == FAILURE_MESSAGES[FailureKind.NOT_LIVE]
    assert "offline" not in registry
    assert factory.adapters["offline"].disconnect_calls == 1


@pytest.mark.asyncio
async def test_critical_error_with_chat_during_grace_goes_live(registry, broadcaster, factory):
    factory.plan("flaky", connect_error=RuntimeError("Error: roomId not found"))
    worker = make_worker(registry, broadcaster, factory, grace_period=1.0)

    pending = asyncio.create_task(worker.start("flaky"))
    await asyncio.sleep(0.05)
    factory.adapters["flaky"].emit("chat", chat("hola"))
    result = await asyncio.wait_for(pending, timeout=1.0)

    assert result.success
    session = registry.get("flaky")
    assert session.state is SessionState.LIVE
    await worker.drain("flaky")
    assert [c.text for c in session.recent_comments] == ["hola"]
    await worker.shutdown()


@pytest.mark.asyncio
async def test_noncritical_error_goes_live_when_permissive(registry, broadcaster, factory):
    factory.plan("streamer", connect_error=RuntimeError("handshake hiccup"))
    worker = make_worker(registry, broadcaster, factory)

    result = await worker.start("streamer")

    assert result.success
    assert registry.get("streamer").is_connected
    await worker.shutdown()


@pytest.mark.asyncio
async def test_noncritical_error_fails_when_strict(registry, broadcaster, factory):
    factory.plan("streamer", connect_error=RuntimeError("network unreachable"))
    worker = make_worker(registry, broadcaster, factory, strict=True, grace_period=0.05)

    result = await worker.start("streamer")

    assert not result.success
    assert result.failure is FailureKind.NETWORK
    assert "streamer" not in registry


@pytest.mark.asyncio
async def test_timeout_without_error_assumes_live(registry, broadcaster, factory):
    factory.plan("quiet", hang=True)
    worker = make_worker(registry, broadcaster, factory, connect_timeout=0.05, grace_period=0.05)

    result = await worker.start("quiet")

    assert result.success
    session = registry.get("quiet")
    assert session.is_connected
    connect_task = session.connect_task
    assert await worker.stop("quiet")
    with pytest.raises(asyncio.CancelledError):
        await connect_task


@pytest.mark.asyncio
async def test_timeout_is_a_failure_when_strict(registry, broadcaster, factory):
    factory.plan("quiet", hang=True)
    worker = make_worker(
        registry, broadcaster, factory, strict=True, connect_timeout=0.05, grace_period=0.05
    )

    result = await worker.start("quiet")

    assert not result.success
    assert result.failure is FailureKind.TIMEOUT
    assert "quiet" not in registry


@pytest.mark.asyncio
async def test_critical_error_event_while_hanging_fails(registry, broadcaster, factory):
    factory.plan("gone", hang=True)
    worker = make_worker(registry, broadcaster, factory, connect_timeout=0.1, grace_period=0.05)

    pending = asyncio.create_task(worker.start("gone"))
    await asyncio.sleep(0.01)
    factory.adapters["gone"].emit("error", RuntimeError("UserOfflineError: user is offline"))
    result = await pending

    assert not result.success
    assert result.failure is FailureKind.NOT_LIVE


@pytest.mark.asyncio
async def test_connected_event_corroborates_before_connect_resolves(registry, broadcaster, factory):
    factory.plan("streamer", hang=True, emit_on_connect=[("connected", {"viewerCount": 12})])
    worker = make_worker(registry, broadcaster, factory, connect_timeout=5.0, grace_period=5.0)

    result = await asyncio.wait_for(worker.start("streamer"), timeout=1.0)

    assert result.success
    await worker.drain("streamer")
    assert registry.get("streamer").room_stats.viewer_count == 12
    await worker.shutdown()


@pytest.mark.asyncio
async def test_factory_failure_is_reported_not_raised(registry, broadcaster):
    def broken_factory(username):
        raise RuntimeError("network down")

    worker = make_worker(registry, broadcaster, broken_factory)
    result = await worker.start("streamer")

    assert not result.success
    assert result.failure is FailureKind.NETWORK
    assert len(registry) == 0


# ── upstream closing or failing while connecting ─────────────


@pytest.mark.asyncio
async def test_stream_end_while_connecting_is_not_promoted(registry, broadcaster, factory):
    factory.plan(
        "streamer",
        hang=True,
        emit_on_connect=[("chat", chat("hola")), ("streamEnd", {"action": 3})],
    )
    worker = make_worker(registry, broadcaster, factory, connect_timeout=0.1, grace_period=0.1)

    result = await worker.start("streamer")

    assert not result.success
    assert result.message == CLOSED_MESSAGE
    assert "streamer" not in registry
    assert factory.adapters["streamer"].disconnect_calls == 1
    await asyncio.sleep(0.2)
    assert "streamer" not in registry
    await worker.shutdown()


@pytest.mark.asyncio
async def test_disconnect_during_quiet_timeout_is_not_promoted(registry, broadcaster, factory):
    factory.plan("streamer", hang=True, emit_on_connect=[("disconnected", None)])
    worker = make_worker(registry, broadcaster, factory, connect_timeout=0.05, grace_period=0.05)

    result = await worker.start("streamer")

    assert not result.success
    assert result.message == CLOSED_MESSAGE
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_noncritical_error_after_stream_end_is_not_promoted(registry, broadcaster, factory):
    factory.plan(
        "streamer",
        connect_error=RuntimeError("handshake hiccup"),
        emit_on_connect=[("streamEnd", None)],
    )
    worker = make_worker(registry, broadcaster, factory)

    result = await worker.start("streamer")

    assert not result.success
    assert result.message == CLOSED_MESSAGE
    assert "streamer" not in registry


@pytest.mark.asyncio
async def test_connect_rejecting_inside_grace_window_fails(registry, broadcaster, factory):
    factory.plan("ghost", connect_delay=0.1, connect_error=RuntimeError("Error: roomId not found"))
    worker = make_worker(registry, broadcaster, factory, connect_timeout=0.05, grace_period=0.3)

    result = await worker.start("ghost")

    assert not result.success
    assert result.failure is FailureKind.NOT_LIVE
    assert "ghost" not in registry


@pytest.mark.asyncio
async def test_late_rejection_then_chat_goes_live(registry, broadcaster, factory):
    factory.plan("flaky", connect_delay=0.1, connect_error=RuntimeError("Error: roomId not found"))
    worker = make_worker(registry, broadcaster, factory, connect_timeout=0.05, grace_period=1.0)

    pending = asyncio.create_task(worker.start("flaky"))
    await asyncio.sleep(0.2)
    factory.adapters["flaky"].emit("chat", chat("hola"))
    result = await asyncio.wait_for(pending, timeout=1.0)

    assert result.success
    assert registry.get("flaky").is_connected
    await worker.shutdown()


@pytest.mark.asyncio
async def test_late_clean_connect_goes_live_without_waiting_out_grace(registry, broadcaster, factory):
    factory.plan("slow", connect_delay=0.1)
    worker = make_worker(registry, broadcaster, factory, connect_timeout=0.05, grace_period=5.0)

    result = await asyncio.wait_for(worker.start("slow"), timeout=1.0)

    assert result.success
    assert registry.get("slow").is_connected
    await worker.shutdown()


@pytest.mark.asyncio
async def test_late_noncritical_rejection_fails_when_strict(registry, broadcaster, factory):
    factory.plan("slow", connect_delay=0.05, connect_error=RuntimeError("network unreachable"))
    worker = make_worker(
        registry, broadcaster, factory, strict=True, connect_timeout=0.02, grace_period=0.1
    )

    result = await worker.start("slow")

    assert not result.success
    assert result.failure is FailureKind.NETWORK


# ── idempotence ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_second_start_reuses_session(registry, broadcaster, factory):
    worker = make_worker(registry, broadcaster, factory)
    first = await worker.start("streamer")
    second = await worker.start("@streamer")

    assert first.success and second.success
    assert second.already_active
    assert second.message == "Already connected"
    assert factory.calls == 1
    assert len(registry) == 1
    await worker.shutdown()


@pytest.mark.asyncio
async def test_concurrent_starts_create_one_session(registry, broadcaster, factory):
    worker = make_worker(registry, broadcaster, factory)

    results = await asyncio.gather(worker.start("streamer"), worker.start("streamer"))

    assert all(r.success for r in results)
    assert sorted(r.already_active for r in results) == [False, True]
    assert factory.calls == 1
    await worker.shutdown()


@pytest.mark.asyncio
async def test_stop_signals_and_closes_subscribers(registry, broadcaster, factory):
    worker = make_worker(registry, broadcaster, factory)
    await worker.start("streamer")
    channel = broadcaster.subscribe(registry.get("streamer"))

    assert await worker.stop("streamer") is True
    assert await worker.stop("streamer") is False

    disconnected, end = await frames(channel, 2)
    assert disconnected["type"] == "disconnected"
    assert disconnected["data"] == {"username": "streamer"}
    assert end is None
    assert factory.adapters["streamer"].disconnect_calls == 1


@pytest.mark.asyncio
async def test_stop_with_failing_disconnect_still_removes(registry, broadcaster, factory):
    factory.plan("streamer", disconnect_error=RuntimeError("already closed"))
    worker = make_worker(registry, broadcaster, factory)
    await worker.start("streamer")

    assert await worker.stop("streamer") is True
    assert "streamer" not in registry


@pytest.mark.asyncio
async def test_stop_all_returns_stopped_names(registry, broadcaster, factory):
    worker = make_worker(registry, broadcaster, factory)
    await worker.start("a")
    await worker.start("b")

    assert sorted(await worker.stop_all()) == ["a", "b"]
    assert len(registry) == 0


# ── live session events ──────────────────────────────────────


@pytest.mark.asyncio
async def test_events_are_broadcast_in_upstream_order(registry, broadcaster, factory):
    worker = make_worker(registry, broadcaster, factory)
    await worker.start("streamer")
    channel = broadcaster.subscribe(registry.get("streamer"))
    adapter = factory.adapters["streamer"]

    adapter.emit("chat", chat("first"))
    adapter.emit("gift", {"giftId": 1, "uniqueId": "fan", "repeatCount": 3})
    adapter.emit("like", {"uniqueId": "fan", "likeCount": 5, "totalLikeCount": 40})
    adapter.emit("follow", {"uniqueId": "newbie"})
    adapter.emit("share", {"uniqueId": "fan"})
    adapter.emit("roomUser", {"viewerCount": 7})
    adapter.emit("chat", chat("last"))
    await worker.drain("streamer")

    received = await frames(channel, 7)
    assert [f["type"] for f in received] == [
        "comment", "gift", "like", "follow", "share", "roomStats", "comment",
    ]
    assert received[0]["data"]["text"] == "first"
    assert received[1]["data"]["giftName"] == "Rosa"
    assert received[1]["data"]["repeatCount"] == 3
    assert received[5]["data"] == {"viewerCount": 7, "likeCount": 40, "totalViewerCount": 0}
    assert received[6]["data"]["text"] == "last"
    await worker.shutdown()


@pytest.mark.asyncio
async def test_room_stats_are_overwritten(registry, broadcaster, factory):
    worker = make_worker(registry, broadcaster, factory)
    await worker.start("streamer")
    adapter = factory.adapters["streamer"]

    adapter.emit("roomUser", {"viewerCount": 10})
    adapter.emit("roomUser", {"viewerCount": 5})
    await worker.drain("streamer")

    assert registry.get("streamer").room_stats.viewer_count == 5
    await worker.shutdown()


@pytest.mark.asyncio
async def test_stream_end_closes_session(registry, broadcaster, factory):
    worker = make_worker(registry, broadcaster, factory)
    await worker.start("streamer")
    channel = broadcaster.subscribe(registry.get("streamer"))

    factory.adapters["streamer"].emit("streamEnd", {"action": 3})

    disconnected, end = await frames(channel, 2)
    assert disconnected["type"] == "disconnected"
    assert end is None
    assert "streamer" not in registry


@pytest.mark.asyncio
async def test_bad_event_does_not_stop_the_pump(registry, broadcaster, factory, monkeypatch):
    def explode(payload, ts=None):
        raise ValueError("unreadable like")

    monkeypatch.setattr(worker_module, "normalize_like", explode)
    worker = make_worker(registry, broadcaster, factory)
    await worker.start("streamer")
    adapter = factory.adapters["streamer"]

    adapter.emit("like", {"likeCount": 1})
    adapter.emit("chat", chat("still here"))
    await worker.drain("streamer")

    assert [c.text for c in registry.get("streamer").recent_comments] == ["still here"]
    await worker.shutdown()


@pytest.mark.asyncio
async def test_streak_in_progress_is_skipped_when_configured(registry, broadcaster, factory):
    worker = make_worker(registry, broadcaster, factory, streak_final_only=True)
    await worker.start("streamer")
    adapter = factory.adapters["streamer"]

    adapter.emit("gift", {"giftId": 1, "giftType": 1, "repeatEnd": False, "repeatCount": 2})
    adapter.emit("gift", {"giftId": 1, "giftType": 1, "repeatEnd": True, "repeatCount": 4})
    await worker.drain("streamer")

    gifts = list(registry.get("streamer").recent_gifts)
    assert [g.repeat_count for g in gifts] == [4]
    await worker.shutdown()


@pytest.mark.asyncio
async def test_gifts_are_written_to_the_ledger(registry, broadcaster, factory):
    class RecordingLedger:
        def __init__(self):
            self.rows = []

        async def record(self, username, gift):
            self.rows.append((username, gift.gift_name))

    ledger = RecordingLedger()
    worker = make_worker(registry, broadcaster, factory, ledger=ledger)
    await worker.start("streamer")

    factory.adapters["streamer"].emit("gift", {"giftId": 13, "uniqueId": "whale"})
    await worker.drain("streamer")

    assert ledger.rows == [("streamer", "León")]
    await worker.shutdown()


# ── TTS attachment ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_comment_carries_audio_url_when_render_succeeds(registry, broadcaster, factory):
    tts = FakeTTS()
    worker = make_worker(registry, broadcaster, factory, tts=tts, render_comments=True)
    await worker.start("streamer")
    channel = broadcaster.subscribe(registry.get("streamer"))

    factory.adapters["streamer"].emit("chat", chat("hola", user="ana"))
    await worker.drain("streamer")

    (frame,) = await frames(channel, 1)
    assert frame["data"]["audioUrl"] == "/api/tts/audio/k1"
    assert tts.texts == ["ana dice: hola"]
    await worker.shutdown()


@pytest.mark.asyncio
async def test_comment_is_still_delivered_when_render_fails(registry, broadcaster, factory, caplog):
    tts = FakeTTS(error=RenderError("provider down"))
    worker = make_worker(registry, broadcaster, factory, tts=tts, render_comments=True)
    await worker.start("streamer")
    channel = broadcaster.subscribe(registry.get("streamer"))

    factory.adapters["streamer"].emit("chat", chat("hola"))
    await worker.drain("streamer")

    (frame,) = await frames(channel, 1)
    assert frame["type"] == "comment"
    assert "audioUrl" not in frame["data"]
    assert "background task relay-tts-render failed" in caplog.text
    await worker.shutdown()


@pytest.mark.asyncio
async def test_slow_render_does_not_hold_back_the_comment(registry, broadcaster, factory):
    tts = FakeTTS(delay=0.2)
    worker = make_worker(
        registry, broadcaster, factory, tts=tts, render_comments=True, render_timeout=0.02
    )
    await worker.start("streamer")
    channel = broadcaster.subscribe(registry.get("streamer"))

    factory.adapters["streamer"].emit("chat", chat("hola"))
    await worker.drain("streamer")

    (frame,) = await frames(channel, 1)
    assert "audioUrl" not in frame["data"]
    # the render keeps going in the background and still completes
    await asyncio.sleep(0.3)
    assert tts.finished == 1
    await worker.shutdown()
