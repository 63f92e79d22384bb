"""TTS endpoints: voice list, render-to-URL, cached audio, direct stream."""
import logging

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse, Response

from relay.core.errors import RenderError
from relay.db.schemas import SpeakIn
from relay.services.relay_state import get_tts

router = APIRouter(prefix="/tts", tags=["tts"])
logger = logging.getLogger("relay.api.tts")

_AUDIO_HEADERS = {"Cache-Control": "public, max-age=86400"}


@router.get("/voices")
async def voices():
    try:
        available = await get_tts().voices()
    except Exception as e:
        logger.error("Could not list voices: %s", e)
        return JSONResponse(status_code=500, content={"success": False, "error": "Could not list voices", "voices": []})
    return {"success": True, "voices": [v.as_dict() for v in available]}


@router.post("/speak")
async def speak(body: SpeakIn):
    """Render text (cached) and return a URL the player can fetch."""
    if not body.text.strip() or not body.voice_id.strip():
        return JSONResponse(status_code=400, content={"success": False, "error": "text and voiceId are required"})
    try:
        ref = await get_tts().render(body.text, body.voice_id, speed=body.speed, volume=body.volume)
    except RenderError as e:
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, "audioUrl": ref.url, "format": "mp3"}


@router.get("/audio/{key}")
async def cached_audio(key: str):
    audio = await get_tts().audio(key)
    if audio is None:
        return JSONResponse(status_code=404, content={"success": False, "error": "Audio not found"})
    return Response(content=audio, media_type="audio/mpeg", headers=_AUDIO_HEADERS)


@router.get("/stream")
async def stream(text: str = Query(""), lang: str = Query("es")):
    """Render and return MP3 directly (goes through the same cache as /speak)."""
    if not text.strip():
        return JSONResponse(status_code=400, content={"success": False, "error": "text is required"})
    tts = get_tts()
    try:
        ref = await tts.render(text, lang)
    except RenderError as e:
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    audio = await tts.audio(ref.key)
    if audio is None:
        # Cache backend refused the write; render without it.
        try:
            audio = await tts.synthesize(text.strip(), lang)
        except RenderError as e:
            return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return Response(content=audio, media_type="audio/mpeg", headers=_AUDIO_HEADERS)
