"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from typing import Self
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_HOST=0.0.0.0``) or through a ``.env`` file in the
    working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # PostgreSQL (asyncpg) or SQLite (aiosqlite) connection string.
    database_url: str = "sqlite+aiosqlite:///.luisterslim/ledger.db"

    # Create missing tables on startup (SQLite local mode).
    create_tables: bool = True

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]

    # Whether CORS responses include credentials (cookies, auth headers).
    cors_allow_credentials: bool = True

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled.

        Browsers silently reject ``Access-Control-Allow-Origin: *`` when
        ``Access-Control-Allow-Credentials: true`` is present.  Fail fast at
        startup instead.
        """
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    # Structured JSON logging.
    structured_logging: bool = False

    # HMAC secret for bearer tokens.
    auth_secret: SecretStr = SecretStr("luisterslim-dev-secret-change-in-production")

    # Stripe billing integration.
    billing_enabled: bool = False
    stripe_secret_key: SecretStr = SecretStr("")
    stripe_webhook_secret: SecretStr = SecretStr("")
    # API version pinned when minting ephemeral keys for the mobile SDK.
    stripe_api_version: str = "2024-06-20"

    # Top-up credits count towards the quota for this many days.
    top_up_window_days: int = 365

    # Billing periods of accounts provisioned on first contact run in this zone.
    default_timezone: str = "UTC"

    # Confirm client-reported subscriptions and top-ups with Stripe.
    verify_client_claims: bool = True

    @field_validator("top_up_window_days")
    @classmethod
    def _validate_window(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"top_up_window_days must be >= 1, got {v}")
        return v

    @field_validator("default_timezone")
    @classmethod
    def _validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v!r}") from exc
        return v


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
