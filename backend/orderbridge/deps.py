"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from orderbridge.services.alert_service import AlertService
from orderbridge.services.marketin_client import MarketinClient, MarketinConfig


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"

    # Market!N conversion API
    MARKETIN_API_URL: str = "https://api.marketin.io/v1"
    MARKETIN_API_KEY: Optional[str] = None
    MARKETIN_BRAND_ID: Optional[str] = None
    MARKETIN_TIMEOUT_SECONDS: float = 15.0

    # Conversion queue / worker
    QUEUE_POLL_INTERVAL: int = 30  # seconds
    QUEUE_BATCH_SIZE: int = 10
    INLINE_BATCH_SIZE: int = 5  # batch processed right after a webhook enqueue
    DAILY_SUMMARY_HOUR: int = 9  # UTC

    # Visitor sessions
    SESSION_TTL_DAYS: int = 30

    # Admin API (X-Admin-Key header)
    ADMIN_API_KEY: Optional[str] = None

    # Webhook verification: RSA public key first, HMAC secret as fallback
    WIX_PUBLIC_KEY: Optional[str] = None
    WIX_WEBHOOK_SECRET: Optional[str] = None
    WIX_CLIENT_SECRET: Optional[str] = None

    # Alerting
    SLACK_ALERT_WEBHOOK_URL: Optional[str] = None
    RESEND_API_KEY: Optional[str] = None
    ALERT_EMAIL: Optional[str] = None
    ALERT_FROM_EMAIL: str = "orderbridge alerts <alerts@marketin.io>"

    # Background worker
    REDIS_URL: str = "redis://localhost:6379"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("QUEUE_POLL_INTERVAL")
    @classmethod
    def _check_poll_interval(cls, v):
        """Cron ticks stay evenly spaced only when the interval divides the minute or the hour."""
        if 0 < v < 60 and 60 % v == 0:
            return v
        if v >= 60 and v % 60 == 0 and 60 % (v // 60) == 0:
            return v
        raise ValueError("QUEUE_POLL_INTERVAL must divide 60 seconds or be a whole number of minutes dividing 60")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def webhook_hmac_secret(self) -> Optional[str]:
        return self.WIX_WEBHOOK_SECRET or self.WIX_CLIENT_SECRET


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def verify_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> bool:
    """Verify the X-Admin-Key header for admin/monitoring endpoints."""
    expected = get_settings().ADMIN_API_KEY
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints not configured",
        )
    if x_admin_key != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    return True


def get_marketin_client() -> MarketinClient:
    """Market!N client configured from settings."""
    return MarketinClient(MarketinConfig.from_settings(get_settings()))


def get_alert_service() -> AlertService:
    """Operator alerting configured from settings."""
    return AlertService.from_settings()
