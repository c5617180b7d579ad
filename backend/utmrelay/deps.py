"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .security import admin_key_matches


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: str = "sqlite:///./utmrelay.db"
    # Schema setup is not migrated; tables are created on startup when enabled
    AUTO_CREATE_TABLES: bool = True
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Admin API (X-Admin-Key header); admin routes answer 503 when unset
    ADMIN_API_KEY: Optional[str] = None
    # Optional HMAC secret for the gateway webhook (X-Webhook-Signature header)
    WEBHOOK_SECRET: Optional[str] = None
    # Optional Telegram webhook secret (X-Telegram-Bot-Api-Secret-Token header)
    TELEGRAM_SECRET_TOKEN: Optional[str] = None
    # Fernet key for pixel access tokens
    TOKEN_ENCRYPTION_KEY: Optional[str] = None

    # Destinations
    UTMIFY_API_KEY: Optional[str] = None
    TELEGRAM_BOT_URL: Optional[str] = None
    META_GRAPH_API_VERSION: str = "v19.0"

    # Dispatch
    DISPATCH_TIMEOUT_SECONDS: float = 15.0
    # A pending claim older than this is considered abandoned and may be retaken
    DISPATCH_CLAIM_STALE_SECONDS: int = 300

    # Attribution
    ATTRIBUTION_IP_WINDOW_MINUTES: int = 60
    ATTRIBUTION_MIN_SUBSTRING_LENGTH: int = 6
    # Reject status regressions (e.g. approved -> pending) on upsert
    ENFORCE_STATUS_ORDER: bool = True
    DEFAULT_CURRENCY: str = "BRL"
    DEFAULT_PLAN_NAME: str = "Acesso VIP"

    # Click retention (None keeps clicks forever)
    CLICK_RETENTION_HOURS: Optional[int] = None
    CLICK_CLEANUP_INTERVAL_SECONDS: int = 3600

    # Background queue
    USE_ARQ_QUEUE: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_relay_context(request: Request):
    """Return the RelayContext built at startup."""
    return request.app.state.relay


def get_app_settings(context=Depends(get_relay_context)) -> Settings:
    """Settings of the running app (may differ from env in tests)."""
    return context.settings


def get_pipeline(context=Depends(get_relay_context)):
    """Sale pipeline bound to the application's relay context."""
    from .services.sale_pipeline import SalePipeline

    return SalePipeline(context)


def require_admin_key(
    settings: Settings = Depends(get_app_settings),
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
) -> None:
    """Guard admin routes with the shared ADMIN_API_KEY."""
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin API disabled")
    if not admin_key_matches(settings.ADMIN_API_KEY, x_admin_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
