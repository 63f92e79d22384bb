from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Upstream (TikTok LIVE) ────────────────────────────────
    CONNECT_TIMEOUT_SEC: float = 30.0
    CORROBORATION_GRACE_SEC: float = 10.0
    # "permissive": non-critical connect errors still count as live.
    # "strict": live only after a corroborating event or confirmation.
    CORROBORATION_POLICY: str = "permissive"
    GIFT_STREAK_FINAL_ONLY: bool = False

    # ── Session buffers / fanout ──────────────────────────────
    RECENT_BUFFER_SIZE: int = 100
    SSE_QUEUE_SIZE: int = 1000
    SSE_HEARTBEAT_SEC: float = 15.0

    # ── Text-to-speech ────────────────────────────────────────
    TTS_RENDER_COMMENTS: bool = False
    TTS_DEFAULT_VOICE: str = "es"
    TTS_COMMENT_TEMPLATE: str = "{user} dice: {text}"
    TTS_RENDER_TIMEOUT_SEC: float = 5.0
    TTS_HTTP_TIMEOUT_SEC: float = 10.0
    TTS_REMOTE_URL: str = "https://translate.google.com/translate_tts"
    TTS_CACHE_MAX_ENTRIES: int = 500
    TTS_CACHE_REDIS_URL: str = ""
    TTS_CACHE_TTL_SEC: int = 24 * 3600

    # ── Gift ledger (disabled when empty) ─────────────────────
    GIFT_LEDGER_URL: str = ""

    # ── API ───────────────────────────────────────────────────
    API_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    @property
    def strict_corroboration(self) -> bool:
        return self.CORROBORATION_POLICY.strip().lower() == "strict"


settings = Settings()
