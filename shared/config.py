"""
Shared configuration module for the Amrut realtime relay.
All components read their defaults from this module.
"""
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Amrut Realtime"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Backend REST API (jewelry ordering backend)
    BACKEND_API_URL: str = "http://localhost:5000/api"
    API_TIMEOUT_SECONDS: float = 15.0

    # Notification polling
    # "user" mirrors the mobile app, "admin" mirrors the dashboard
    NOTIFICATION_PROFILE: str = "user"
    POLL_INTERVAL_SECONDS: float = Field(30.0, gt=0)
    DASHBOARD_POLL_INTERVAL_SECONDS: float = Field(5.0, gt=0)
    DATA_POLL_INTERVAL_SECONDS: float = Field(10.0, gt=0)
    PROCESSED_ID_LIMIT: int = Field(100, ge=1)

    # Presentation
    TOAST_DURATION_SECONDS: float = 8.0
    SOUND_ENABLED: bool = True
    SOUND_VOLUME: float = Field(0.5, ge=0.0, le=1.0)
    SOUND_ASSET_DIR: str = "sounds"

    @field_validator('NOTIFICATION_PROFILE')
    @classmethod
    def validate_profile(cls, v: str) -> str:
        """Only the two known notification profiles are accepted."""
        normalized = v.lower().strip()
        if normalized not in ("user", "admin"):
            raise ValueError("NOTIFICATION_PROFILE must be 'user' or 'admin'")
        return normalized

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    # Realtime relay
    REALTIME_HOST: str = "0.0.0.0"
    REALTIME_PORT: int = 8009
    MAX_WS_CONNECTIONS: int = 100

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

    def poll_interval_for(self, profile: str) -> float:
        """Poll period for a notification profile (the dashboard uses the fast path)."""
        if profile == "admin":
            return self.DASHBOARD_POLL_INTERVAL_SECONDS
        return self.POLL_INTERVAL_SECONDS

    def validate_production_settings(self) -> None:
        """Validate settings for production environment."""
        if self.ENVIRONMENT == "production":
            if self.DEBUG:
                raise ValueError("DEBUG must be False in production")
            if not self.BACKEND_API_URL or "localhost" in self.BACKEND_API_URL:
                raise ValueError("BACKEND_API_URL must not point to localhost in production")
            if not self.BACKEND_API_URL.startswith("https://"):
                raise ValueError("BACKEND_API_URL must use https in production")


# Global settings instance
settings = Settings()

# Validate settings on import (only in production)
if settings.ENVIRONMENT == "production":
    try:
        settings.validate_production_settings()
    except ValueError as e:
        import sys
        import logging
        logger = logging.getLogger(__name__)
        logger.critical(f"Production configuration error: {e}", exc_info=True)
        print(f"CRITICAL: Production configuration error: {e}", file=sys.stderr)
        sys.exit(1)
