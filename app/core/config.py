from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "postgresql://postgres:postgres@db:5432/revenue"

    # Public base URL of this service, used to fire /jobs/process in the background
    APP_URL: str = "http://localhost:8000"

    # Shared secret for cron/trigger endpoints. Unset = endpoints are open (local dev).
    CRON_SECRET: Optional[str] = None

    # Encryption (Fernet key for provider API keys at rest)
    ENCRYPTION_KEY: Optional[str] = None

    # Stripe
    STRIPE_API_VERSION: Optional[str] = None  # unset = the SDK's pinned version
    STRIPE_REQUIRE_RESTRICTED_KEY: bool = True  # only accept rk_ keys on connect
    STRIPE_PAGE_DELAY_SECONDS: float = 0.1  # pause between list pages
    STRIPE_MAX_RATE_LIMIT_WAITS: int = 5

    # Job queue / processor
    JOB_BATCH_SIZE: int = 10
    JOB_MAX_CONCURRENCY: int = 3
    JOB_MAX_RETRIES: int = 3
    JOB_CLAIM_TIMEOUT_MINUTES: int = 15  # processing longer than this = abandoned
    JOB_RETENTION_DAYS: int = 30
    SYNC_AUTH_ERRORS_TERMINAL: bool = False  # fail credential errors without retrying
    JOB_TRIGGER_TIMEOUT_SECONDS: float = 3.0  # fire-and-forget; the pass keeps running server-side

    # Sync windows
    REALTIME_WINDOW_MINUTES: int = 15
    HISTORICAL_SYNC_DAYS: int = 730
    MANUAL_SYNC_DEFAULT_DAYS: int = 730

    # Attribution
    ATTRIBUTION_LOOKBACK_DAYS: int = 30

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        # Environment variables win over the .env file


settings = Settings()
