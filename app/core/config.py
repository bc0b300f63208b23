from pydantic_settings import BaseSettings
from typing import Optional, List
from functools import lru_cache


class Settings(BaseSettings):
    """
    Application configuration settings.
    All settings can be overridden via environment variables.
    """

    # AviationStack API Configuration (primary provider)
    # Required: the service refuses to start without credentials
    AVIATIONSTACK_ACCESS_KEY: str
    AVIATIONSTACK_API_BASE_URL: str = "https://api.aviationstack.com/v1"
    AVIATIONSTACK_TIMEOUT_SECONDS: float = 30.0

    # Fallback web sources, queried in this order
    FLIGHTSTATS_BASE_URL: str = "https://www.flightstats.com/v2/flight-tracker"
    FLIGHTAWARE_BASE_URL: str = "https://www.flightaware.com/live/flight"
    FALLBACK_TIMEOUT_SECONDS: float = 15.0
    FALLBACK_MAX_RETRIES: int = 1
    FALLBACK_USER_AGENT: str = "Mozilla/5.0"

    # FlightAware activity-log disambiguation tunables
    ACTIVITY_MATCH_WINDOW_HOURS: float = 18.0
    FALLBACK_SCORE_DELAY: int = 3
    FALLBACK_SCORE_STATUS: int = 2
    FALLBACK_SCORE_GATE: int = 1
    FALLBACK_SCORE_TERMINAL: int = 1

    # Monthly API budget
    MONTHLY_REQUEST_LIMIT: int = 100
    REQUEST_RESERVE: int = 5
    POLLING_BUDGET_THRESHOLD: float = 0.3

    # Response cache in front of AviationStack
    ENABLE_RESPONSE_CACHE: bool = True
    RESPONSE_CACHE_MAX_ENTRIES: int = 256
    RESPONSE_CACHE_TTL_SECONDS: int = 300

    # Polling Settings
    POLL_WORKER_INTERVAL_SECONDS: int = 60
    POLL_LOOKAHEAD_HOURS: float = 6.0
    POLL_INTERVAL_FAR_MINUTES: int = 15
    POLL_INTERVAL_NEAR_MINUTES: int = 5
    POLL_INTERVAL_IMMINENT_MINUTES: int = 1
    POLL_BATCH_SIZE: int = 10
    RECONCILE_TIMEOUT_SECONDS: float = 60.0

    # Reconciliation Settings
    STALE_THRESHOLD_MINUTES: int = 15
    ON_DEMAND_STALE_MINUTES: int = 5
    STAND_INFO_WINDOW_HOURS: float = 6.0
    ESTIMATE_PLAUSIBILITY_HOURS: float = 18.0
    PERSIST_FALLBACK_SNAPSHOTS: bool = False

    # Cleanup Settings
    CLEANUP_INTERVAL_MINUTES: int = 60
    DEACTIVATE_AFTER_HOURS: int = 24
    RETENTION_DAYS: int = 7

    # Database Configuration (embedded SQLite by default)
    DATABASE_URL: str = "sqlite+aiosqlite:///./skyalert.db"
    DATABASE_ECHO: bool = False

    # Redis Configuration (pending multi-candidate selections)
    REDIS_URL: str = "redis://localhost:6379/0"
    ENABLE_PENDING_SELECTIONS: bool = True
    PENDING_SELECTION_TTL_SECONDS: int = 600
    MAX_SELECTION_CANDIDATES: int = 5

    # Notifications
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_API_BASE_URL: str = "https://api.telegram.org"

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    # Monitoring Configuration
    ENABLE_METRICS: bool = True

    # Debug
    DEBUG: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.
    This function is cached to avoid reading .env file multiple times.
    """
    return Settings()
