from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Last.fm
    LFM_API_KEY: str = ""
    LFM_SHARED_SECRET: Optional[str] = None
    LFM_USER: str = ""
    LFM_SESSION_KEY: Optional[str] = None
    LFM_API_URL: str = "https://ws.audioscrobbler.com/2.0/"

    # Mediated mode (caching intermediary)
    PROXY_BASE_URL: str = "http://127.0.0.1:8080"
    START_IN_MEDIATED_MODE: bool = False

    # Scheduler
    POLL_FAST_MS: int = 3000
    POLL_NORMAL_MS: int = 6000
    POLL_SLOW_MS: int = 12000
    POLL_IDLE_MS: int = 24000
    MIN_REQUEST_SPACING_MS: int = 800
    ACTIVITY_RECENT_MS: int = 30000
    ACTIVITY_WARM_MS: int = 120000
    TRACK_CHANGE_RECENT_MS: int = 10000
    BACKOFF_BASE_MS: int = 2000
    BACKOFF_GROWTH: float = 2.0
    BACKOFF_CAP_MS: int = 60000

    # Pause detection
    PAUSE_STALE_DELTA_MS: int = 2000
    PAUSE_STALE_POLLS: int = 3
    PAUSE_MAX_PERCENT: float = 0.95
    OVERRUN_GRACE_MS: int = 20000

    # Position estimation
    HISTORY_LIMIT: int = 10
    HISTORY_MATCH_SCAN: int = 7
    RESUME_NEAR_END_S: int = 30
    RESUME_MID_S: int = 120
    RESUME_STALE_S: int = 300
    RESUME_MIN_DURATION_MS: int = 60000
    RESUME_NEAR_END_FRACTION: float = 0.7
    RESUME_NEAR_END_TAIL_MS: int = 30000
    RESUME_MID_FRACTION: float = 0.3
    RESUME_MID_CAP_MS: int = 60000
    SWITCHING_SCAN: int = 6
    SWITCHING_WINDOW_S: int = 1800

    # Progress
    FRAME_INTERVAL_MS: int = 16
    FALLBACK_DURATION_MS: int = 180000  # 3 min window when duration is unknown

    # Proxy caches
    RECENT_CACHE_TTL_S: int = 3
    RECENT_CACHE_MAX: int = 100
    TRACK_INFO_CACHE_TTL_S: int = 3600  # 1h, track metadata rarely changes
    TRACK_INFO_CACHE_MAX: int = 500

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = True
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
