from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from datetime import date
from typing import List


RANKING_KEYS = ("segments", "price", "priority", "handoff")


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./bond_ledger.db",
        alias="DATABASE_URL"
    )

    # CORS - Frontend URLs from environment (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000",
        alias="ALLOWED_ORIGINS"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # ==============================================
    # Availability Ledger
    # ==============================================
    # Latest end date accepted for a range write (days from today)
    ledger_max_future_days: int = Field(default=1095, alias="LEDGER_MAX_FUTURE_DAYS")

    # Longest single range write
    ledger_max_range_days: int = Field(default=730, alias="LEDGER_MAX_RANGE_DAYS")

    # Earliest date the ledger accepts
    ledger_min_date: date = Field(default=date(2000, 1, 1), alias="LEDGER_MIN_DATE")

    # "Available from" badge scan horizon, scanned one calendar month at a time
    next_available_horizon_months: int = Field(default=18, alias="NEXT_AVAILABLE_HORIZON_MONTHS")

    # ==============================================
    # Split stays
    # ==============================================
    split_stays_enabled: bool = Field(default=True, alias="SPLIT_STAYS_ENABLED")
    max_split_segments: int = Field(default=3, alias="MAX_SPLIT_SEGMENTS")
    split_stay_max_options: int = Field(default=10, alias="SPLIT_STAY_MAX_OPTIONS")
    split_stay_enumeration_limit: int = Field(default=500, alias="SPLIT_STAY_ENUMERATION_LIMIT")

    # Comma-separated comparator keys, applied in order
    split_stay_ranking: str = Field(default="segments,price,priority", alias="SPLIT_STAY_RANKING")

    # Monthly rate -> nightly rate divisor
    days_per_month_rate: int = Field(default=30, alias="DAYS_PER_MONTH_RATE")

    # ==============================================
    # Bookings
    # ==============================================
    minimum_stay_nights: int = Field(default=1, alias="MINIMUM_STAY_NIGHTS")
    confirm_retry_attempts: int = Field(default=1, alias="CONFIRM_RETRY_ATTEMPTS")

    # ==============================================
    # iCal feeds
    # ==============================================
    ical_sync_enabled: bool = Field(default=True, alias="ICAL_SYNC_ENABLED")
    ical_fetch_timeout_seconds: float = Field(default=10.0, alias="ICAL_FETCH_TIMEOUT_SECONDS")
    ical_sync_horizon_months: int = Field(default=24, alias="ICAL_SYNC_HORIZON_MONTHS")
    ical_sync_interval_seconds: int = Field(default=3600, alias="ICAL_SYNC_INTERVAL_SECONDS")
    ical_sync_stale_after_seconds: int = Field(default=900, alias="ICAL_SYNC_STALE_AFTER_SECONDS")
    ical_prodid: str = Field(default="-//Bond Coliving//Calendar Export//EN", alias="ICAL_PRODID")
    ical_uid_domain: str = Field(default="stayatbond.com", alias="ICAL_UID_DOMAIN")
    ical_calendar_suffix: str = Field(default="Bond Coliving", alias="ICAL_CALENDAR_SUFFIX")
    ical_timezone: str = Field(default="Atlantic/Madeira", alias="ICAL_TIMEZONE")
    ical_export_rate_limit: str = Field(default="60/minute", alias="ICAL_EXPORT_RATE_LIMIT")

    # Public origin used to build export links handed to channel managers
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")

    # Worker settings (runs inside FastAPI process)
    worker_poll_interval: int = Field(default=60, alias="WORKER_POLL_INTERVAL")  # seconds
    worker_batch_size: int = Field(default=20, alias="WORKER_BATCH_SIZE")

    @field_validator('max_split_segments')
    @classmethod
    def validate_max_split_segments(cls, v: int) -> int:
        """A split stay needs at least two segments"""
        if v < 2:
            raise ValueError("MAX_SPLIT_SEGMENTS must be at least 2")
        return v

    @field_validator('split_stay_ranking')
    @classmethod
    def validate_split_stay_ranking(cls, v: str) -> str:
        keys = [k.strip() for k in v.split(",") if k.strip()]
        unknown = [k for k in keys if k not in RANKING_KEYS]
        if unknown:
            raise ValueError(f"Unknown split stay ranking keys: {', '.join(unknown)}")
        if not keys:
            raise ValueError("SPLIT_STAY_RANKING cannot be empty")
        return ",".join(keys)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def ranking_keys(self) -> List[str]:
        return self.split_stay_ranking.split(",")

    @property
    def cors_origins(self) -> List[str]:
        """
        Parse allowed origins from comma-separated string.
        Returns a list suitable for CORSMiddleware.
        """
        if not self.allowed_origins:
            return ["http://localhost:5173"]

        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")  # Remove trailing slashes
            if origin and origin not in origins:
                origins.append(origin)

        return origins or ["http://localhost:5173"]

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
