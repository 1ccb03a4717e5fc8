from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Main configuration for CostLens.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "CostLens"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    TESTING: bool = False

    # Database
    DATABASE_URL: str  # Required in prod
    DB_SSL_MODE: str = "require"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None  # Path to CA cert for verify-ca/verify-full modes
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Ingestion
    INGESTION_CHUNK_SIZE: int = 1000
    INGESTION_MAX_STORED_ERRORS: int = 100

    # Anomaly Detection
    ANOMALY_LOOKBACK_DAYS: int = 30
    ANOMALY_Z_SCORE_THRESHOLD: float = 2.5
    ANOMALY_MIN_DATA_POINTS: int = 7
    ANOMALY_MAX_FLAGGED_LINE_ITEMS: int = 100

    # Recommendations
    RECOMMENDATION_LOOKBACK_DAYS: int = 30

    # Scheduler (nightly pipeline, UTC)
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_HOUR: int = 2
    SCHEDULER_MINUTE: int = 0
    SCHEDULER_MAX_CONCURRENT_USERS: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True
    )

    @property
    def is_production(self) -> bool:
        return not self.DEBUG and not self.TESTING

    @model_validator(mode='after')
    def validate_database_settings(self) -> 'Settings':
        """Fail-closed: reject unknown SSL modes before an engine is built."""
        ssl_mode = self.DB_SSL_MODE.lower()
        if ssl_mode not in ("disable", "require", "verify-ca", "verify-full"):
            raise ValueError(
                f"Invalid DB_SSL_MODE: {self.DB_SSL_MODE}. Use: disable, require, verify-ca, verify-full"
            )
        if ssl_mode in ("verify-ca", "verify-full") and not self.DB_SSL_CA_CERT_PATH:
            raise ValueError(f"DB_SSL_CA_CERT_PATH required for ssl_mode={ssl_mode}")
        return self

    @model_validator(mode='after')
    def validate_pipeline_settings(self) -> 'Settings':
        """Ensure batch sizes, windows and thresholds are usable."""
        positive = {
            "INGESTION_CHUNK_SIZE": self.INGESTION_CHUNK_SIZE,
            "INGESTION_MAX_STORED_ERRORS": self.INGESTION_MAX_STORED_ERRORS,
            "ANOMALY_LOOKBACK_DAYS": self.ANOMALY_LOOKBACK_DAYS,
            "ANOMALY_MIN_DATA_POINTS": self.ANOMALY_MIN_DATA_POINTS,
            "ANOMALY_MAX_FLAGGED_LINE_ITEMS": self.ANOMALY_MAX_FLAGGED_LINE_ITEMS,
            "RECOMMENDATION_LOOKBACK_DAYS": self.RECOMMENDATION_LOOKBACK_DAYS,
            "SCHEDULER_MAX_CONCURRENT_USERS": self.SCHEDULER_MAX_CONCURRENT_USERS,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value}")

        if self.ANOMALY_Z_SCORE_THRESHOLD <= 0:
            raise ValueError("ANOMALY_Z_SCORE_THRESHOLD must be greater than zero.")

        if not 0 <= self.SCHEDULER_HOUR <= 23:
            raise ValueError(f"SCHEDULER_HOUR must be within 0-23, got {self.SCHEDULER_HOUR}")
        if not 0 <= self.SCHEDULER_MINUTE <= 59:
            raise ValueError(f"SCHEDULER_MINUTE must be within 0-59, got {self.SCHEDULER_MINUTE}")
        return self


@lru_cache
def get_settings():
    """Returns a singleton instance of the application settings."""
    return Settings()
