"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development; transports run
in simulation mode unless NOTIFY_TRANSPORT_MODE=live.

Usage:
    from backend.app.core.config import settings
    print(settings.NOTIFY_TRANSPORT_MODE)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Notification Dispatch Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8000",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Dispatch engine ──
    NOTIFY_TRANSPORT_MODE: str = "simulation"  # simulation | live
    NOTIFY_STRICT_TEMPLATES: bool = False  # fail sends with unrendered variables
    NOTIFY_BULK_CONCURRENCY: int = 10  # 0 = unbounded
    NOTIFY_LOAD_BUILTIN_TEMPLATES: bool = True
    NOTIFY_CHANNELS: List[Dict[str, Any]] = []  # JSON list of channel dicts

    # ── Transports ──
    SMTP_TIMEOUT_SECONDS: float = 20.0
    SMS_TIMEOUT_SECONDS: float = 15.0
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    PUSH_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_USER_AGENT: str = "NotificationDispatch-Webhook/1.0"
    EMAIL_FROM_NAME: str = "Notifications"
    IN_APP_INBOX_LIMIT: int = 50

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_simulation(self) -> bool:
        return self.NOTIFY_TRANSPORT_MODE.lower() == "simulation"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
