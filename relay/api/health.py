"""Health endpoints: liveness and readiness."""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from relay.core.config import settings
from relay.db import database
from relay.services.redis_client import get_redis
from relay.services.relay_state import get_registry

router = APIRouter(tags=["health"])
logger = logging.getLogger("relay.health")

DISABLED = "disabled"


async def _check_ledger() -> str:
    if database.AsyncSessionLocal is None:
        return DISABLED
    try:
        async with database.AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Gift ledger readiness check failed: %s", e)
        return "error"
    return "ok"


async def _check_audio_cache() -> str:
    if not settings.TTS_CACHE_REDIS_URL:
        return "memory"
    try:
        r = await get_redis()
        await r.ping()
    except Exception as e:
        logger.warning("Redis audio cache readiness check failed: %s", e)
        return "error"
    return "ok"


@router.get("/health/live")
async def liveness():
    """Liveness: process is running. No dependencies checked."""
    return {"status": "ok"}


@router.get("/health/ready")
async def readiness():
    """
    Readiness: optional backends (gift ledger DB, redis audio cache) reachable,
    plus how many broadcasters are monitored and how many of them are live.
    """
    checks = {"ledger": await _check_ledger(), "audioCache": await _check_audio_cache()}
    registry = get_registry()
    sessions = list(registry.list_all())
    body = {
        "status": "ok",
        "checks": checks,
        "sessions": len(sessions),
        "live": sum(1 for s in sessions if s.is_connected),
    }
    if "error" in checks.values():
        body["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=body)
    return body
