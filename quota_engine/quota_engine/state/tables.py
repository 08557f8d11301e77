"""SQLAlchemy 2.0 ORM table definitions for the usage and billing ledger.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all`` in local mode and
for the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ledger tables."""


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanAssignmentTable(Base):
    """The plan an account is on, with its quota denormalized at sync time."""

    __tablename__ = "plan_assignments"

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    plan_code: Mapped[str] = mapped_column(String(64), nullable=False)
    base_quota_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    renew_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("renew_day BETWEEN 1 AND 28", name="ck_plan_assignments_renew_day"),
        CheckConstraint("base_quota_ms >= 0", name="ck_plan_assignments_quota"),
    )


class PlanQuotaOverrideTable(Base):
    """Operator-configured monthly quota per plan, taking precedence over the catalog."""

    __tablename__ = "plan_quota_overrides"

    plan_code: Mapped[str] = mapped_column(String(64), primary_key=True)
    monthly_quota_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class UsagePeriodTable(Base):
    """Consumed milliseconds per account and billing period."""

    __tablename__ = "usage_periods"

    account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    period_id: Mapped[str] = mapped_column(String(16), nullable=False)
    used_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (
        PrimaryKeyConstraint("account_id", "period_id"),
        CheckConstraint("used_ms >= 0", name="ck_usage_periods_used_ms"),
    )


class UsageEventTable(Base):
    """Append-only record of every successful debit."""

    __tablename__ = "usage_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    period_id: Mapped[str] = mapped_column(String(16), nullable=False)
    delta_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transcript_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_usage_events_account_period", "account_id", "period_id"),
        Index("ix_usage_events_transcript", "transcript_id"),
    )


class ArtifactReceiptTable(Base):
    """Artifacts submitted for debit, written whether or not the debit succeeds."""

    __tablename__ = "artifact_receipts"

    artifact_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_artifact_receipts_account_created", "account_id", "created_at"),)


# ---------------------------------------------------------------------------
# Top-ups
# ---------------------------------------------------------------------------


class TopUpCreditTable(Base):
    """Externally verified purchases of bonus minutes, one row per invoice."""

    __tablename__ = "topup_credits"

    external_invoice_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    top_up_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ms_granted: Mapped[int] = mapped_column(BigInteger, nullable=False)
    minutes_granted: Mapped[int] = mapped_column(Integer, nullable=False)
    external_payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    credited_period_id: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_topup_credits_account_period", "account_id", "credited_period_id"),
        Index("ix_topup_credits_account_created", "account_id", "created_at"),
        CheckConstraint("ms_granted > 0", name="ck_topup_credits_ms_granted"),
    )


# ---------------------------------------------------------------------------
# Billing system mirror
# ---------------------------------------------------------------------------


class BillingCustomerTable(Base):
    """Mapping between accounts and Stripe customers."""

    __tablename__ = "billing_customers"

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    stripe_customer_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ExternalSubscriptionTable(Base):
    """Last known Stripe subscription state per account, kept for support and debugging."""

    __tablename__ = "external_subscriptions"

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    external_subscription_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    plan_code: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


class RetentionSettingTable(Base):
    """Retention choice per account, read by the deletion sweep."""

    __tablename__ = "retention_settings"

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    plan_code: Mapped[str] = mapped_column(String(64), nullable=False)
    option_id: Mapped[str] = mapped_column(String(16), nullable=False)
    retention_days: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
    last_deletion_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_deletion_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_deletion_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deletion_window_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    audit_report_url: Mapped[str | None] = mapped_column(Text, nullable=True)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class BillingAuditLogTable(Base):
    """Best-effort trail of ledger mutations."""

    __tablename__ = "billing_audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_billing_audit_account_created", "account_id", "created_at"),)
