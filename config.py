import logging
import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DB_FILE = os.path.join(os.path.dirname(__file__), "commutepool.db")


class Settings(BaseSettings):
    """Application settings loaded from COMMUTE_* environment variables."""

    # ==========================================================================
    # Storage / service access
    # ==========================================================================
    database_url: str = f"sqlite:///{DB_FILE}"
    service_api_key: str = "change-me"

    # ==========================================================================
    # Matching policy
    # ==========================================================================
    confidence_threshold: float = 70.0
    min_overlap_minutes: int = 15
    time_grace_minutes: int = 15  # added to both ends of every window
    max_pickup_separation_km: float = 5.0  # soft preference, not a cutoff
    match_budget_seconds: Optional[float] = None

    # ==========================================================================
    # Route and cost model (the only fare constants in the codebase)
    # ==========================================================================
    base_fare: float = 50.0
    per_km_rate: float = 10.0
    average_speed_kmh: float = 25.0
    destination_lat: float = 23.8103
    destination_lng: float = 90.4125
    confirmation_deadline_hours: int = 24

    # ==========================================================================
    # Retry / maintenance
    # ==========================================================================
    max_retries: int = 3
    retry_cooldown_minutes: int = 60
    cleanup_days_to_keep: int = 30

    # ==========================================================================
    # Collaborators
    # ==========================================================================
    scorer_backend: str = "rules"  # rules | remote
    scorer_url: Optional[str] = None
    scorer_timeout_seconds: float = 10.0
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="COMMUTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance; call ``get_settings.cache_clear()`` to reload."""
    return Settings()


def configure_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
