"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from notifier.app.core.config import settings
    print(settings.SCHEDULER_TICK_SECONDS)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

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
    APP_NAME: str = "Alert Notification Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL
    SITE_URL: str = "http://localhost:3000"  # base for links in notifications

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8000",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Scheduler ──
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TICK_SECONDS: int = 60
    SCHEDULER_ANCHOR_MINUTE: int = 0  # minute of the hour a slot opens
    SCHEDULER_TIMEZONE: str = "UTC"  # zone schedule_hour/day are read in
    FIRING_WORKERS: int = 4  # concurrent alert evaluations

    # ── Dispatch ──
    DISPATCH_MAX_WORKERS: int = 8  # concurrent channel sends
    CHANNEL_SEND_TIMEOUT_SECONDS: float = 30.0
    NOTIFICATION_CHANNEL_TYPE: str = "email"  # used for (un)subscribe notices

    # ── Firing ledger ──
    FIRING_LEDGER_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    LEDGER_KEY_PREFIX: str = "notifier:ledger"
    LEDGER_CLAIM_TTL_SECONDS: int = 3600  # in-flight claim expiry

    # ── Email ──
    EMAIL_PROVIDER: str = "simulation"  # simulation | smtp
    EMAIL_FROM: str = "alerts@notifier.local"
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True

    # ── Webhooks ──
    CHAT_WEBHOOK_URL: Optional[str] = None
    CHAT_CHANNELS: List[str] = []  # known chat channel names
    HTTP_WEBHOOK_TIMEOUT: float = 10.0

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
