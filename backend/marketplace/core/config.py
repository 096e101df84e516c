"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "Student Marketplace Transactions"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./data/marketplace.db"
    DB_BUSY_TIMEOUT_SECONDS: float = 5.0  # fail fast instead of blocking on a locked store

    # Offer lifecycle
    OFFER_DEFAULT_TTL_HOURS: int = 168  # 7 days
    OFFER_MAX_TTL_HOURS: int = 2160  # 90 days
    DEFAULT_CURRENCY: str = "GBP"
    LISTINGS_FILE: str = ""  # JSON catalogue for the in-process listings

    # Transaction lifecycle
    AUTO_COMPLETE_AFTER_HOURS: int = 72  # delivered -> completed if nobody reports a problem

    # Background sweeps
    ENABLE_BACKGROUND_SWEEPS: bool = True
    SWEEP_INTERVAL_SECONDS: int = 300

    # Notifications (0 workers = dispatch inline)
    NOTIFICATION_WORKERS: int = 2

    # CORS - accepts comma-separated string or list
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from comma-separated string or list."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    @field_validator("DEFAULT_CURRENCY")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currency codes are stored upper-case (ISO 4217)."""
        return v.strip().upper()

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"
    AUDIT_LOG_FILE: str = "./data/logs/audit.log"
    LOG_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 5

    class Config:
        # Look for .env in project root first, then backend/.env
        env_file = [
            str(Path(__file__).parent.parent.parent.parent / ".env"),
            str(Path(__file__).parent.parent.parent / ".env"),
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True


# Singleton instance
settings = Settings()
