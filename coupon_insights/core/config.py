from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Application configuration loaded from environment or .env."""

    app_name: str = Field(default="Coupon Insights Analytics")
    app_env: str = Field(default="dev", alias="APP_ENV")
    debug: bool = Field(default=False, alias="APP_DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["*"], alias="CORS_ALLOW_ORIGINS"
    )

    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    collector_batch_size: int = Field(default=100, ge=1, alias="COLLECTOR_BATCH_SIZE")
    collector_flush_interval_seconds: float = Field(
        default=5.0, gt=0, alias="COLLECTOR_FLUSH_INTERVAL_SECONDS"
    )
    collector_max_flush_retries: int = Field(
        default=3, ge=0, alias="COLLECTOR_MAX_FLUSH_RETRIES"
    )
    event_properties_max_bytes: int = Field(
        default=10_000, ge=1, alias="EVENT_PROPERTIES_MAX_BYTES"
    )
    session_timeout_minutes: float = Field(
        default=30.0, gt=0, alias="SESSION_TIMEOUT_MINUTES"
    )
    user_properties_cache_seconds: float = Field(
        default=300.0, ge=0, alias="USER_PROPERTIES_CACHE_SECONDS"
    )
    event_rules_path: Optional[str] = Field(default=None, alias="EVENT_RULES_PATH")

    event_store_timeout_seconds: float = Field(
        default=10.0, gt=0, alias="EVENT_STORE_TIMEOUT_SECONDS"
    )

    forecast_anomaly_threshold: float = Field(
        default=0.2, gt=0, alias="FORECAST_ANOMALY_THRESHOLD"
    )
    forecast_series_granularity: Literal["day", "week", "month"] = Field(
        default="month", alias="FORECAST_SERIES_GRANULARITY"
    )
    cohort_trend_window: int = Field(default=3, ge=1, alias="COHORT_TREND_WINDOW")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )


@lru_cache
def get_settings() -> AppSettings:
    """Return cached application settings."""
    return AppSettings()  # type: ignore[call-arg]
