"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the Celery worker
and the power-curve engine.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (e.g. "sqlite://" for local runs and tests).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="power_curve")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # --- Power profile backfill tuning ---
    # Activities fetched per page while scanning a rolling window.
    POWER_PROFILE_FETCH_PAGE_SIZE: int = Field(default=50, ge=1)
    # Smaller pages for the 365-day and all-time windows (stream payloads are large).
    POWER_PROFILE_FETCH_PAGE_SIZE_LARGE: int = Field(default=20, ge=1)
    # Profile rows written per upsert statement.
    POWER_PROFILE_UPSERT_BATCH_SIZE: int = Field(default=100, ge=1)
    POWER_PROFILE_UPSERT_BATCH_SIZE_LARGE: int = Field(default=50, ge=1)
    # Activities computed concurrently per batch, and the pool size doing it.
    POWER_PROFILE_WORKER_BATCH_SIZE: int = Field(default=10, ge=1)
    POWER_PROFILE_WORKER_CONCURRENCY: int = Field(default=4, ge=1)
    # Pause between batches so the storage backend is not saturated.
    POWER_PROFILE_BATCH_DELAY_S: float = Field(default=0.05, ge=0.0)

    # --- Critical power test processing ---
    CP_TEST_LOOKBACK_DAYS: int = Field(default=30, ge=1)

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )


# Global settings instance
settings = Settings()
