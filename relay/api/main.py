"""
FastAPI application for the live event relay.

- Health: /health/live, /health/ready
- API: /api/connections/..., /api/tts/..., /api/gifts/...
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relay.api.gifts import router as gifts_router
from relay.api.health import router as health_router
from relay.api.router import router as connections_router
from relay.api.tts import router as tts_router
from relay.core.config import settings
from relay.db import database
from relay.services.gift_ledger import GiftLedger
from relay.services.live_broadcast import EventBroadcaster
from relay.services.redis_client import RedisAudioCache, close_redis
from relay.services.registry import ConnectionRegistry
from relay.services.relay_state import (
    set_broadcaster,
    set_ledger,
    set_registry,
    set_tts,
    set_worker,
)
from relay.services.tts import MemoryAudioCache, TTSGateway
from upstream.adapter import tiktok_adapter_factory
from upstream.main import ConnectionWorker

logger = logging.getLogger("relay.app")


def _setup_logging() -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _audio_cache():
    if settings.TTS_CACHE_REDIS_URL:
        return RedisAudioCache(ttl_sec=settings.TTS_CACHE_TTL_SEC)
    return MemoryAudioCache(max_entries=settings.TTS_CACHE_MAX_ENTRIES)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _setup_logging()

    ledger = GiftLedger()
    if settings.GIFT_LEDGER_URL:
        ledger = GiftLedger(database.init_engine(settings.GIFT_LEDGER_URL))
        await database.create_tables()

    registry = ConnectionRegistry(buffer_size=settings.RECENT_BUFFER_SIZE)
    broadcaster = EventBroadcaster(registry, queue_maxsize=settings.SSE_QUEUE_SIZE)
    tts = TTSGateway(
        _audio_cache(),
        remote_url=settings.TTS_REMOTE_URL,
        audio_url_prefix=f"{settings.API_PREFIX}/tts/audio",
        timeout=settings.TTS_HTTP_TIMEOUT_SEC,
        default_voice=settings.TTS_DEFAULT_VOICE,
    )
    worker = ConnectionWorker.from_settings(
        registry,
        broadcaster,
        app.state.adapter_factory,
        tts=tts,
        ledger=ledger,
    )

    set_registry(registry)
    set_broadcaster(broadcaster)
    set_tts(tts)
    set_ledger(ledger)
    set_worker(worker)
    logger.info("Relay ready (ledger %s)", "on" if ledger.enabled else "off")

    yield

    await worker.shutdown()
    await tts.aclose()
    await close_redis()
    await database.dispose_engine()
    logger.info("Relay stopped")


def create_app(adapter_factory=tiktok_adapter_factory) -> FastAPI:
    app = FastAPI(
        title="Live Event Relay",
        description="TikTok LIVE chat, gifts and likes relayed to overlays over SSE, with TTS",
        lifespan=lifespan,
    )
    app.state.adapter_factory = adapter_factory
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.include_router(health_router)
    app.include_router(connections_router, prefix=settings.API_PREFIX)
    app.include_router(tts_router, prefix=settings.API_PREFIX)
    app.include_router(gifts_router, prefix=settings.API_PREFIX)
    return app


app = create_app()
