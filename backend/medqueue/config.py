"""
Application configuration using Pydantic Settings.
Loads from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "MedQueue Scheduling Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # MongoDB
    MONGODB_URL: str = "mongodb://localhost:27017"
    MASTER_DATABASE_NAME: str = "medqueue_master"
    TENANT_DATABASE_PREFIX: str = "medqueue_"

    # JWT (tokens are issued by the platform auth service)
    SECRET_KEY: str = "medqueue-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 24 hours

    # Token System
    DEFAULT_TOKEN_FORMAT: str = "{PREFIX}-{NUMBER}"
    TOKEN_SEQUENCE_PADDING: int = 3
    DEFAULT_INVOICE_PREFIX: str = "INV"
    INVOICE_SEQUENCE_PADDING: int = 4
    SEQUENCE_UPSERT_RETRIES: int = 2
    TRANSITION_MAX_RETRIES: int = 3
    ETA_DISPLAY_FORMAT: str = "%I:%M %p"  # 09:15 AM

    # Disruption cascade defaults (institutions may override)
    DEFAULT_FULL_DAY_POLICY: str = "AUTO_NEXT_AVAILABLE"
    DEFAULT_SHIFT_POLICY: str = "AUTO_NEXT_AVAILABLE"

    # Notifications
    NOTIFICATION_QUEUE_SIZE: int = 100

    # Status board
    DELAYED_AFTER_MINUTES: int = 15

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
