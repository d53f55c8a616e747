"""Configuration management.

``Settings`` reads every value from the environment through
``pydantic-settings``. Before it is instantiated, ``.env`` files are
loaded with python-dotenv: the one at the repository root first, then
whichever one ``find_dotenv`` locates from the working directory.
Variables that are already set are never overridden.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _discover_env_files() -> List[str]:
    found: List[str] = []
    root_env = Path(__file__).resolve().parents[3] / ".env"
    if root_env.exists():
        found.append(str(root_env))
    cwd_env = find_dotenv(usecwd=True)
    if cwd_env and cwd_env not in found:
        found.append(cwd_env)
    return found


ENV_FILES = _discover_env_files()
for _path in ENV_FILES:
    load_dotenv(dotenv_path=_path, override=False)


class Settings(BaseSettings):
    """Billing service settings; each attribute maps to an env var of the same name."""

    model_config = SettingsConfigDict(
        env_file=tuple(ENV_FILES) or (".env",),
        case_sensitive=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "LMS Billing"
    ENVIRONMENT: str = Field(default="development")

    # Storage
    DATABASE_URL: Optional[str] = Field(default=None)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Background jobs (Dramatiq on Redis, APScheduler cron in the worker)
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)
    BILLING_CRON_ENABLED: bool = Field(default=False)
    EXPIRY_SWEEP_CRON: str = Field(default="0 0 * * *")
    PROVIDER_SYNC_CRON: str = Field(default="0 1 * * *")

    # Panel session tokens
    SECRET_KEY: str = Field(default="changeme")
    JWT_ALGORITHM: str = Field(default="HS256")
    # Local development only: every request acts as a placeholder admin.
    DEV_AUTH_BYPASS: bool = Field(default=False)

    # HTTP surface
    BACKEND_CORS_ORIGINS: List[str] = Field(default=["http://localhost:5173", "http://127.0.0.1:5173"])
    PANEL_URL: str = Field(default="http://localhost:5173")

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    # Stripe
    STRIPE_API_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    # Comma separated; lets old and new secrets overlap during rotation.
    STRIPE_WEBHOOK_SECRETS: Optional[str] = Field(default=None)
    STRIPE_PRICE_ID: Optional[str] = Field(default=None)
    # Price of one billing cycle in minor units; used for the admin "total paid" figure
    STRIPE_PRICE_AMOUNT: Optional[int] = Field(default=None, ge=0)
    STRIPE_PRICE_CURRENCY: str = Field(default="usd")
    STRIPE_PRICE_INTERVAL: Optional[str] = Field(default=None)
    STRIPE_PORTAL_CONFIGURATION_ID: Optional[str] = Field(default=None)
    STRIPE_TIMEOUT_SECONDS: float = Field(default=15.0, gt=0)
    STRIPE_MAX_NETWORK_RETRIES: int = Field(default=2, ge=0)
    STRIPE_WEBHOOK_DEDUP_TTL: int = Field(default=7 * 24 * 3600, description="seconds an event id stays claimed")

    # Comped subscriptions
    ADMIN_GRANT_DEFAULT_DAYS: int = Field(default=365, ge=1)

    @field_validator("PANEL_URL")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


settings = Settings()


def get_webhook_secret_list() -> List[str]:
    """Secrets to try, in order, when verifying a webhook signature.

    ``STRIPE_WEBHOOK_SECRETS`` wins when set; otherwise the single
    ``STRIPE_WEBHOOK_SECRET`` is used. Read at call time so tests and
    rotations can patch ``settings``.
    """
    if settings.STRIPE_WEBHOOK_SECRETS:
        return [part.strip() for part in settings.STRIPE_WEBHOOK_SECRETS.split(",") if part.strip()]
    if settings.STRIPE_WEBHOOK_SECRET and settings.STRIPE_WEBHOOK_SECRET.strip():
        return [settings.STRIPE_WEBHOOK_SECRET.strip()]
    return []


def is_test_environment() -> bool:
    return (settings.ENVIRONMENT or os.getenv("ENVIRONMENT", "")).lower() == "test"
