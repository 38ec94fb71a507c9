from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RETENTION_DAYS = 120


class Settings(BaseSettings):
    # Frozen: built once at startup and handed to every component explicitly.
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", frozen=True
    )

    DATABASE_URL: str = "sqlite:///./secure_entry.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    # Create tables and add optional columns on startup
    AUTO_MIGRATE: bool = True
    LOG_LEVEL: str = "INFO"

    # Retention / purge
    RETENTION_DAYS: int = DEFAULT_RETENTION_DAYS
    PURGE_BATCH: int = 200
    # Entries deferred this many times are reported for an operator
    PURGE_STUCK_AFTER: int = 5

    # Sync retry sweep
    SYNC_BATCH: int = 20
    SYNC_MAX_ATTEMPTS: int = 5
    # PENDING rows younger than this still belong to their request-triggered attempt.
    # Raised to the worst-case attempt duration when that is longer.
    SYNC_SWEEP_MIN_AGE_SECONDS: int = 60
    SYNC_WORKERS: int = 4

    # External archive
    ARCHIVE_SYNC_URL: str | None = None
    ARCHIVE_DELETE_URL: str | None = None
    ARCHIVE_SEARCH_URL: str | None = None
    ARCHIVE_TIMEOUT: float = 30.0
    ARCHIVE_RETRY_DELAYS: list[float] = [1.0, 3.0]
    ARCHIVE_DELETE_CHUNK: int = 50
    SYNC_TOKEN: str | None = None

    # Photo-fetch URL handed to the archive (both required)
    PUBLIC_BASE_URL: str | None = None
    IMAGE_VIEW_TOKEN: str | None = None

    # Object archive
    OBJECT_STORE_DIR: str = "data/objects"
    OBJECT_KEY_PREFIX: str = "entries"
    MAX_IMAGE_MB: float = 8.0

    # HTTP edge behaviour
    SEARCH_CACHE_SECONDS: int = 15
    PHOTO_CACHE_SECONDS: int = 60
    CORS_ORIGINS: str = "*"
    # Kiosk API key (if unset, all requests pass)
    SECURE_ENTRY_API_KEY: str | None = None
    RATE_LIMIT: str = "120/minute"

    # Timer-driven sweep
    SCHEDULER_ENABLED: bool = False
    SWEEP_INTERVAL_MINUTES: int = 5

    @field_validator("RETENTION_DAYS")
    @classmethod
    def retention_must_be_positive(cls, v: int) -> int:
        return v if v > 0 else DEFAULT_RETENTION_DAYS

    @property
    def archive_delete_url(self) -> str | None:
        return self.ARCHIVE_DELETE_URL or self.ARCHIVE_SYNC_URL

    @property
    def sync_attempt_budget_seconds(self) -> float:
        """Longest one sync attempt can run: every try times out, plus the waits between tries."""
        delays = self.ARCHIVE_RETRY_DELAYS
        return self.ARCHIVE_TIMEOUT * (1 + len(delays)) + sum(delays)

    @property
    def pending_grace_seconds(self) -> float:
        """Age before the sweep may pick up a PENDING row."""
        return max(float(self.SYNC_SWEEP_MIN_AGE_SECONDS), self.sync_attempt_budget_seconds)

    @property
    def sync_configured(self) -> bool:
        return bool(self.ARCHIVE_SYNC_URL and self.SYNC_TOKEN)

    @property
    def photo_links_configured(self) -> bool:
        return bool(self.PUBLIC_BASE_URL and self.IMAGE_VIEW_TOKEN)


settings = Settings()
