# backend/wxconsensus/config.py
from functools import lru_cache
import uuid

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # environment: "dev" for running the service locally, "test" for pytest
    ENV: str = "dev"

    DATABASE_URL: str | None = None
    TEST_DATABASE_URL: str | None = None
    # "sql" persists through SQLAlchemy; "memory" keeps everything in-process
    STORAGE_BACKEND: str = "sql"

    LOG_LEVEL: str = "INFO"

    # --- Upstream (Open-Meteo) ---
    OPEN_METEO_BASE_URL: str = "https://api.open-meteo.com/v1"
    OPEN_METEO_ARCHIVE_URL: str = "https://archive-api.open-meteo.com/v1/archive"
    # Minimum spacing between two outbound dispatches of the fetch queue.
    FETCH_MIN_INTERVAL_MS: int = 100
    HTTP_TIMEOUT_S: float = 30.0

    # --- Leader election ---
    INSTANCE_ID: str = Field(default_factory=lambda: uuid.uuid4().hex)
    LEASE_ID: str = "accuracy-runner-lease"
    LEASE_DURATION_S: int = 90
    LEASE_RENEWAL_S: int = 60

    # --- Accuracy tracking ---
    ACCURACY_WARMUP_HOURS: int = 1
    ACCURACY_MIN_LEAD_HOURS: int = 1
    ACCURACY_MAX_FORECAST_HOURS: int = 120
    ACCURACY_RETENTION_HOURS: int = 336
    ACTUALS_BASELINE_DAYS: int = 14
    # Hourly checks skip the cycle when the previous one finished less than this long ago.
    CYCLE_MIN_SPACING_MIN: int = 60

    # --- Scheduler ---
    SCHEDULER_ENABLED: bool = True
    # IANA timezone name used by APScheduler (e.g., "UTC", "America/Edmonton").
    SCHEDULER_TZ: str = "UTC"
    # Optional persistent job store URL; the in-memory job store is used when unset.
    SCHEDULER_DB_URL: str | None = None
    SCHEDULER_INTERVAL_MIN: int = 60

    @model_validator(mode="after")
    def _check_windows(self):
        if self.LEASE_RENEWAL_S >= self.LEASE_DURATION_S:
            raise ValueError("LEASE_RENEWAL_S must be shorter than LEASE_DURATION_S.")
        if self.STORAGE_BACKEND not in ("sql", "memory"):
            raise ValueError("STORAGE_BACKEND must be 'sql' or 'memory'.")
        if self.ACCURACY_MIN_LEAD_HOURS < 0 or self.ACCURACY_WARMUP_HOURS < 0:
            raise ValueError("Warm-up windows must be non-negative.")
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
