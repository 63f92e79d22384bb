"""
Redis client for the shared TTS audio cache.

- Rendered MP3 bytes are stored under tts:audio:<key> with a TTL, so several
  relay processes behind one load balancer share renders.
- Only used when TTS_CACHE_REDIS_URL is set; otherwise audio is cached in-process.
"""
import logging
from typing import Optional

import redis.asyncio as redis

from relay.core.config import settings

logger = logging.getLogger("relay.redis")

AUDIO_KEY_PREFIX = "tts:audio:"

_redis: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.TTS_CACHE_REDIS_URL, decode_responses=False)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


class RedisAudioCache:
    """AudioCache backed by redis string keys with expiry."""

    def __init__(self, client: Optional[redis.Redis] = None, ttl_sec: int = 24 * 3600):
        self._client = client
        self._ttl_sec = ttl_sec

    async def _conn(self) -> redis.Redis:
        if self._client is None:
            self._client = await get_redis()
        return self._client

    async def get(self, key: str) -> Optional[bytes]:
        r = await self._conn()
        return await r.get(AUDIO_KEY_PREFIX + key)

    async def set(self, key: str, audio: bytes) -> None:
        r = await self._conn()
        await r.set(AUDIO_KEY_PREFIX + key, audio, ex=self._ttl_sec)
        logger.debug("cached %d bytes of audio under %s", len(audio), key[:12])
