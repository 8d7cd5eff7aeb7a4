from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    NIGHTLIFE_VERSION: str = "0.1.0"

    # "off" | "allowlist"
    CORS_MODE: str = "off"
    CORS_ALLOW_ORIGINS: List[str] = []

    # --- Storage ---
    # supabase | memory
    STORAGE_BACKEND: str = "supabase"
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    # Fernet key for POS credentials at rest; required with the supabase backend.
    POS_ENCRYPTION_KEY: Optional[str] = None

    # --- Sync cycles ---
    SYNC_SCHEDULER_ENABLED: bool = True
    DEFAULT_SYNC_INTERVAL_MS: int = 300_000
    SYNC_BACKOFF_CEILING_MS: int = 3_600_000
    MAX_CONSECUTIVE_FAILURES: int = 5
    CONNECTOR_TIMEOUT_SECONDS: float = 20.0
    # Re-poll a little before last_sync_at; the ledger dedups the overlap.
    SYNC_OVERLAP_SECONDS: int = 300
    INITIAL_SYNC_LOOKBACK_DAYS: int = 7

    # --- Engine ---
    LEDGER_PAGE_SIZE: int = 500
    SPEND_WINDOW_DAYS: Optional[int] = None
    DEFAULT_VENUE_TIMEZONE: str = "UTC"
    LIVE_REEVALUATION_INTERVAL_SECONDS: int = 300

    # --- Webhooks / notifications ---
    PUBLIC_BASE_URL: str = ""
    NOTIFY_WEBHOOK_URL: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
