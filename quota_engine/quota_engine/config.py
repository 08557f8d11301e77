"""Quota engine configuration loaded from environment variables."""

from __future__ import annotations

import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with LUISTERSLIM_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="LUISTERSLIM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///.luisterslim/ledger.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Top-up credits count towards the effective quota for this many days.
    top_up_window_days: int = 365

    @field_validator("top_up_window_days")
    @classmethod
    def _validate_window(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"top_up_window_days must be >= 1, got {v}")
        return v


class CatalogSettings(BaseSettings):
    """Stripe price identifiers used when building the plan catalog.

    No prefix: the variable names are the ones already configured in the
    deployment (``STRIPE_PRICE_PLAN_BASIC_ID`` and friends).  Empty values
    leave the entry listed but not purchasable.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    stripe_price_plan_basic_id: str = ""
    stripe_price_plan_starter: str = ""
    stripe_price_plan_team: str = ""
    stripe_price_topup_60: str = ""
    stripe_price_topup_180: str = ""


def load_settings() -> Settings:
    """Construct engine settings from the environment / ``.env`` file."""
    return Settings()


def load_catalog_settings() -> CatalogSettings:
    """Construct catalog price settings from the environment / ``.env`` file."""
    return CatalogSettings()
