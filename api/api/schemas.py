"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint payloads are validated and documented
in the OpenAPI specification.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator
from quota_engine.quota import UsageSnapshot

# ---------------------------------------------------------------------------
# Usage schemas
# ---------------------------------------------------------------------------


class DebitRequest(BaseModel):
    """Request body for ``POST /usage/debits``.

    Exactly one of ``delta_ms`` or ``audio_length`` must be supplied.
    """

    transcript_id: str = Field(..., min_length=1, max_length=128)
    delta_ms: int | None = Field(default=None, gt=0)
    audio_length: str | None = Field(
        default=None,
        description="Audio duration as hh:mm:ss, mm:ss or seconds.",
    )
    event_id: str | None = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def _one_duration(self) -> DebitRequest:
        if (self.delta_ms is None) == (self.audio_length is None):
            raise ValueError("Provide exactly one of delta_ms or audio_length")
        return self


class UsageDetail(BaseModel):
    """One positive debit in the current period."""

    event_id: str
    transcript_id: str | None = None
    delta_ms: int
    minutes: int
    created_at: str


class UsagePlanInfo(BaseModel):
    code: str
    name: str
    quota_minutes: int
    description: str = ""


class UsageResponse(BaseModel):
    """Response for ``GET /usage``."""

    usage: UsageSnapshot
    plan: UsagePlanInfo
    used_percentage: float
    details: list[UsageDetail] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Billing schemas
# ---------------------------------------------------------------------------


class CatalogPlanResponse(BaseModel):
    code: str
    name: str
    description: str
    quota_minutes: int
    amount_cents: int | None = None
    currency: str
    retention_option_id: str
    purchasable: bool
    is_default: bool


class CatalogTopUpResponse(BaseModel):
    top_up_id: str
    label: str
    description: str
    minutes_granted: int
    amount_cents: int | None = None
    currency: str
    purchasable: bool


class CatalogResponse(BaseModel):
    plans: list[CatalogPlanResponse]
    top_ups: list[CatalogTopUpResponse]


class SubscriptionStateResponse(BaseModel):
    external_subscription_id: str
    plan_code: str
    status: str
    current_period_end: str | None = None


class BillingStateResponse(BaseModel):
    """Response for ``GET /billing/state``."""

    plan_code: str
    renew_day: int
    timezone: str
    subscription: SubscriptionStateResponse | None = None
    usage: UsageSnapshot


class SyncSubscriptionRequest(BaseModel):
    """Request body for ``POST /billing/sync-subscription``."""

    plan_code: str = Field(..., min_length=1)
    external_subscription_id: str = Field(..., min_length=1)
    current_period_end: Any = None
    status: str = "active"


class SyncTopUpRequest(BaseModel):
    """Request body for ``POST /billing/sync-topup``.

    The minute count always comes from the catalog for client claims.
    ``external_payment_id`` is required while ``verify_client_claims`` is on.
    """

    top_up_id: str = Field(..., min_length=1)
    external_invoice_id: str = Field(..., min_length=1)
    external_payment_id: str | None = None


class SyncTopUpResponse(BaseModel):
    created: bool
    minutes_granted: int
    credited_period_id: str
    usage: UsageSnapshot


class CreateTopUpRequest(BaseModel):
    """Request body for ``POST /billing/topups``."""

    top_up_id: str = Field(..., min_length=1)


class CreateTopUpResponse(BaseModel):
    client_secret: str
    customer: str
    ephemeral_key: str
    top_up_id: str
    invoice_id: str
    payment_intent_id: str
    minutes_granted: int


# ---------------------------------------------------------------------------
# Retention schemas
# ---------------------------------------------------------------------------


class RetentionOptionResponse(BaseModel):
    id: str
    label: str
    days: int
    description: str
    locked: bool
    default_for_plan: bool


class RetentionResponse(BaseModel):
    plan: str
    plan_name: str
    selected_option_id: str
    retention_days: int
    options: list[RetentionOptionResponse]
    next_deletion_at: str | None = None
    last_deletion_at: str | None = None


class RetentionUpdateRequest(BaseModel):
    option_id: str = Field(..., min_length=1)
