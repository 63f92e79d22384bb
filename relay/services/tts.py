"""
Text-to-speech rendering gateway.

render() turns text into a playable audio reference. Audio is fetched from the
Google Translate TTS endpoint and stored in a content-addressed cache keyed by
(text, voice, speed, volume), so identical requests never hit the network twice.
"""
from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Optional, Protocol

import httpx

from relay.core.errors import RenderError

logger = logging.getLogger("relay.tts")

MAX_CHUNK_CHARS = 200
DEFAULT_LANGUAGE = "es"
_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class Voice:
    id: str
    name: str
    language: str
    gender: str = "female"
    provider: str = "google"

    def as_dict(self) -> dict:
        return asdict(self)


VOICES: tuple[Voice, ...] = (
    Voice("es", "Español", "es"),
    Voice("es-MX", "Español México", "es-MX"),
    Voice("en", "English", "en"),
    Voice("pt", "Português", "pt"),
    Voice("fr", "Français", "fr"),
    Voice("de", "Deutsch", "de"),
    Voice("it", "Italiano", "it"),
    Voice("ja", "日本語", "ja"),
    Voice("ko", "한국어", "ko"),
    Voice("zh-CN", "中文", "zh-CN"),
    Voice("ru", "Русский", "ru"),
)

# Polly-style voice names some clients still send.
_NAMED_VOICES: dict[str, str] = {
    "Brian": "en", "Amy": "en", "Emma": "en", "Joanna": "en", "Joey": "en", "Matthew": "en",
    "Conchita": "es", "Enrique": "es", "Lucia": "es", "Mia": "es", "Miguel": "es",
    "Penelope": "es", "Lupe": "es",
    "Camila": "pt", "Vitoria": "pt", "Ricardo": "pt",
    "Celine": "fr", "Mathieu": "fr",
    "Hans": "de", "Marlene": "de", "Vicki": "de",
    "Giorgio": "it", "Carla": "it", "Bianca": "it",
    "Takumi": "ja", "Mizuki": "ja",
    "Seoyeon": "ko", "Zhiyu": "zh-CN",
}
_LANGUAGES = frozenset(
    ["es", "es-MX", "en", "pt", "fr", "de", "it", "ja", "ko", "zh-CN", "ru", "ar", "hi", "tr", "pl", "nl"]
)


def language_for(voice_id: Optional[str]) -> str:
    voice_id = (voice_id or "").strip()
    if voice_id in _NAMED_VOICES:
        return _NAMED_VOICES[voice_id]
    if voice_id in _LANGUAGES:
        return voice_id
    return DEFAULT_LANGUAGE


def split_text(text: str, max_length: int = MAX_CHUNK_CHARS) -> list[str]:
    """Split on spaces into chunks of at most ``max_length`` chars (single long words stay whole)."""
    if len(text) <= max_length:
        return [text]
    chunks: list[str] = []
    current = ""
    for word in text.split(" "):
        candidate = f"{current} {word}".strip()
        if len(candidate) <= max_length:
            current = candidate
        else:
            if current:
                chunks.append(current)
            current = word
    if current:
        chunks.append(current)
    return chunks


def cache_key(text: str, voice: str, speed: float, volume: float) -> str:
    raw = json.dumps([text, voice, round(float(speed), 3), round(float(volume), 3)], ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AudioReference:
    key: str
    url: str


class AudioCache(Protocol):
    async def get(self, key: str) -> Optional[bytes]: ...

    async def set(self, key: str, audio: bytes) -> None: ...


class MemoryAudioCache:
    """Process-local LRU."""

    def __init__(self, max_entries: int = 500):
        self._entries: OrderedDict[str, bytes] = OrderedDict()
        self._max_entries = max(1, max_entries)

    async def get(self, key: str) -> Optional[bytes]:
        audio = self._entries.get(key)
        if audio is not None:
            self._entries.move_to_end(key)
        return audio

    async def set(self, key: str, audio: bytes) -> None:
        self._entries[key] = audio
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)


class TTSGateway:
    def __init__(
        self,
        cache: AudioCache,
        *,
        remote_url: str,
        audio_url_prefix: str = "/api/tts/audio",
        timeout: float = 10.0,
        default_voice: str = DEFAULT_LANGUAGE,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._cache = cache
        self._remote_url = remote_url
        self._audio_url_prefix = audio_url_prefix.rstrip("/")
        self._default_voice = default_voice
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": _USER_AGENT, "Referer": "https://translate.google.com/"},
        )
        self.remote_calls = 0

    async def voices(self) -> list[Voice]:
        return list(VOICES)

    async def render(
        self,
        text: str,
        voice: Optional[str] = None,
        speed: float = 1.0,
        volume: float = 1.0,
    ) -> AudioReference:
        text = (text or "").strip()
        if not text:
            raise RenderError("nothing to render")
        voice = voice or self._default_voice
        key = cache_key(text, voice, speed, volume)
        if await self._cached(key) is None:
            audio = await self.synthesize(text, voice, speed)
            try:
                await self._cache.set(key, audio)
            except Exception as exc:
                logger.warning("audio cache write failed: %s", exc)
        return AudioReference(key=key, url=f"{self._audio_url_prefix}/{key}")

    async def _cached(self, key: str) -> Optional[bytes]:
        try:
            return await self._cache.get(key)
        except Exception as exc:
            logger.warning("audio cache read failed: %s", exc)
            return None

    async def audio(self, key: str) -> Optional[bytes]:
        return await self._cached(key)

    async def synthesize(self, text: str, voice: Optional[str] = None, speed: float = 1.0) -> bytes:
        """Fetch MP3 for ``text`` from the remote service, one request per chunk."""
        lang = language_for(voice or self._default_voice)
        parts: list[bytes] = []
        for chunk in split_text(text):
            params = {"ie": "UTF-8", "q": chunk, "tl": lang, "client": "tw-ob", "ttsspeed": speed}
            self.remote_calls += 1
            try:
                resp = await self._http.get(self._remote_url, params=params)
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                logger.error("remote TTS failed (%s): %s", lang, exc)
                raise RenderError(f"remote TTS failed: {exc}") from exc
            parts.append(resp.content)
        return b"".join(parts)

    async def aclose(self) -> None:
        await self._http.aclose()
