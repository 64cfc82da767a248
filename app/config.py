"""Application configuration settings."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Environnement d'exécution: "dev" | "staging" | "prod"
ENV = os.getenv("RICITI_ENV", "dev").lower()

MPESA_SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
MPESA_PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

# Adresses sources des callbacks Safaricom (production uniquement)
SAFARICOM_CALLBACK_IPS = frozenset(
    {
        "196.201.214.200",
        "196.201.214.206",
        "196.201.213.114",
        "196.201.214.207",
        "196.201.214.208",
    }
)


class Settings(BaseSettings):
    """Environment configuration for the Riciti backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///riciti.db"
    APP_URL: str = "http://localhost:3000"
    CORS_ALLOW_ORIGINS: list[str] = [
        "https://riciti.co.ke",
        "http://localhost:3000",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False

    # --- M-Pesa Daraja ---------------------------------------------------
    MPESA_ENVIRONMENT: str = "sandbox"
    MPESA_CONSUMER_KEY: str | None = None
    MPESA_CONSUMER_SECRET: str | None = None
    MPESA_PASSKEY: str | None = None
    MPESA_SHORTCODE: str | None = None
    MPESA_CALLBACK_URL: str | None = None
    MPESA_CALLBACK_SECRET: str | None = None
    MPESA_TIMEOUT_SECONDS: float = 15.0

    # --- Pricing -----------------------------------------------------------
    SERVICE_FEE_AMOUNT: Decimal = Decimal("10")
    SERVICE_FEE_CURRENCY: str = "KES"
    PAYMENT_STALE_AFTER_SECONDS: int = 180

    # --- Rate limiting (requests per minute per client IP) ----------------
    RATE_LIMIT_PAYMENT_PER_MINUTE: int = 5
    RATE_LIMIT_PUBLIC_READ_PER_MINUTE: int = 60
    RATE_LIMIT_INVOICE_CREATE_PER_MINUTE: int = 30
    RATE_LIMIT_PRIVATE_CRUD_PER_MINUTE: int = 120

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8"
    )

    @field_validator("MPESA_CALLBACK_SECRET")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty callback secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("MPESA_ENVIRONMENT")
    @classmethod
    def _normalise_environment(cls, value: str) -> str:
        cleaned = (value or "sandbox").strip().lower()
        if cleaned not in {"sandbox", "production"}:
            raise ValueError("MPESA_ENVIRONMENT must be 'sandbox' or 'production'")
        return cleaned

    @field_validator("SERVICE_FEE_AMOUNT")
    @classmethod
    def _whole_fee(cls, value: Decimal) -> Decimal:
        """M-Pesa only charges whole shillings; the recorded fee must match what is charged."""

        if value <= 0 or value != value.to_integral_value():
            raise ValueError("SERVICE_FEE_AMOUNT must be a positive whole amount")
        return value

    @property
    def mpesa_is_production(self) -> bool:
        return self.MPESA_ENVIRONMENT == "production"

    @property
    def mpesa_base_url(self) -> str:
        if self.mpesa_is_production:
            return MPESA_PRODUCTION_BASE_URL
        return MPESA_SANDBOX_BASE_URL

    @property
    def mpesa_callback_url(self) -> str:
        """Callback URL sent with each STK push, carrying the shared secret token."""

        base = self.MPESA_CALLBACK_URL or f"{self.APP_URL.rstrip('/')}/payments/callback"
        if self.MPESA_CALLBACK_SECRET and "token=" not in base:
            separator = "&" if "?" in base else "?"
            base = f"{base}{separator}token={self.MPESA_CALLBACK_SECRET}"
        return base

    def missing_mpesa_credentials(self) -> list[str]:
        required = {
            "MPESA_CONSUMER_KEY": self.MPESA_CONSUMER_KEY,
            "MPESA_CONSUMER_SECRET": self.MPESA_CONSUMER_SECRET,
            "MPESA_PASSKEY": self.MPESA_PASSKEY,
            "MPESA_SHORTCODE": self.MPESA_SHORTCODE,
        }
        return [name for name, value in required.items() if not value]


class AppInfo(BaseModel):
    name: str = "riciti-backend"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "MPESA_PRODUCTION_BASE_URL",
    "MPESA_SANDBOX_BASE_URL",
    "SAFARICOM_CALLBACK_IPS",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
