"""Application configuration settings."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()

# Environments where the service key may fall back to a built-in dev value
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "test"}


class Settings(BaseSettings):
    """Environment configuration for the fundledger backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///fundledger.db"
    API_KEY: str | None = Field(
        default="dev-service-key",
        validation_alias=AliasChoices("API_KEY", "SERVICE_API_KEY"),
    )
    ALLOW_DB_CREATE_ALL: bool = False

    # --- Payment gateway -------------------------------------------------
    GATEWAY_BASE_URL: str = "https://sandbox.monnify.com"
    GATEWAY_API_KEY: str | None = None
    GATEWAY_SECRET_KEY: str | None = None
    GATEWAY_CONTRACT_CODE: str | None = None
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    GATEWAY_MAX_RETRIES: int = 3
    GATEWAY_BACKOFF_BASE_SECONDS: float = 1.0
    GATEWAY_BACKOFF_MAX_SECONDS: float = 8.0
    GATEWAY_TOKEN_REFRESH_MARGIN_SECONDS: int = 60
    GATEWAY_PAGE_SIZE: int = 100
    gateway_webhook_secret: str | None = None
    gateway_webhook_secret_next: str | None = None
    WEBHOOK_STRICT_SIGNATURE: bool | None = None
    WEBHOOK_SIGNATURE_HEADERS: list[str] = [
        "monnify-signature",
        "x-monnify-signature",
        "x-gateway-signature",
    ]

    # --- Payments & ledger -----------------------------------------------
    DEFAULT_CURRENCY: str = "NGN"
    PAYMENT_EXPIRY_MINUTES: int = 60
    MIN_DEPOSIT_AMOUNT: Decimal = Decimal("100")
    MAX_DEPOSIT_AMOUNT: Decimal = Decimal("1000000")
    DEDUP_CACHE_SIZE: int = 1000
    SETTLEMENT_FALLBACK_LOOKBACK_DAYS: int = 2
    SETTLEMENT_FALLBACK_LIMIT: int = 100

    # --- Scheduled jobs --------------------------------------------------
    SCHEDULER_ENABLED: bool = False
    RECONCILIATION_INTERVAL_HOURS: int = 6
    RECONCILIATION_LOOKBACK_HOURS: int = 24
    ORPHAN_SWEEP_INTERVAL_MINUTES: int = 30
    WEBHOOK_RETENTION_DAYS: int = 30
    WEBHOOK_REPLAY_GRACE_SECONDS: int = 300

    CORS_ALLOW_ORIGINS: list[str] = ["http://localhost:3000"]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("gateway_webhook_secret", "gateway_webhook_secret_next")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty webhook secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @property
    def strict_signature(self) -> bool:
        """Reject unsigned webhooks outright (always on in production)."""

        if self.WEBHOOK_STRICT_SIGNATURE is not None:
            return self.WEBHOOK_STRICT_SIGNATURE
        return self.app_env.lower() in {"prod", "production"}


class AppInfo(BaseModel):
    name: str = "fundledger-backend"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY_ALLOWED",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
