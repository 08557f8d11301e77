"""Data access for the usage and billing ledger.

Repositories are bound to a caller-owned ``AsyncSession`` (and, for the
per-account ledgers, an account id).  They flush after writing and never
commit; the request or ``get_session`` block decides when work lands.

Writes that can race are single statements.  First-writer-wins inserts
go through :func:`_dialect_upsert_nothing` and the quota debit is one
conditional ``UPDATE``, so no value is read and written back.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quota_engine.catalog import minutes_to_ms
from quota_engine.state.tables import (
    ArtifactReceiptTable,
    BillingAuditLogTable,
    BillingCustomerTable,
    ExternalSubscriptionTable,
    PlanAssignmentTable,
    PlanQuotaOverrideTable,
    RetentionSettingTable,
    TopUpCreditTable,
    UsageEventTable,
    UsagePeriodTable,
)

logger = logging.getLogger(__name__)


def _dialect_insert(session: AsyncSession, table: Any, values: dict[str, Any]) -> Any:
    """Return an ``INSERT`` that supports ``ON CONFLICT`` for the session's dialect."""
    dialect_name = getattr(getattr(session.get_bind(), "dialect", None), "name", "")
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(table).values(**values)

    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

    return _sqlite_insert(table).values(**values)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Insert *values*, or overwrite *update_columns* of the conflicting row.

    Columns not named in *update_columns* keep their stored value, which is
    how a plan change leaves ``renew_day`` and ``timezone`` alone.
    """
    stmt = _dialect_insert(session, table, values)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: stmt.excluded[col] for col in update_columns},
    )
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Insert *values* unless a row with the same key exists.

    ``rowcount`` on the result is 1 for a new row and 0 for a conflict.
    """
    stmt = _dialect_insert(session, table, values)
    return await session.execute(stmt.on_conflict_do_nothing(index_elements=index_elements))


def _rows_affected(result: Any) -> bool:
    return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# PlanAssignmentRepository
# ---------------------------------------------------------------------------


class PlanAssignmentRepository:
    """The single plan assignment row of an account."""

    def __init__(self, session: AsyncSession, account_id: str) -> None:
        self._session = session
        self._account_id = account_id

    async def get(self) -> PlanAssignmentTable | None:
        result = await self._session.execute(
            select(PlanAssignmentTable)
            .where(PlanAssignmentTable.account_id == self._account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def ensure_default(
        self,
        plan_code: str,
        base_quota_ms: int,
        renew_day: int = 1,
        timezone: str = "UTC",
    ) -> bool:
        """Provision a plan assignment unless one exists.

        Returns ``True`` when a new row was created.
        """
        now = datetime.now(UTC)
        result = await _dialect_upsert_nothing(
            self._session,
            PlanAssignmentTable,
            values={
                "account_id": self._account_id,
                "plan_code": plan_code,
                "base_quota_ms": base_quota_ms,
                "renew_day": renew_day,
                "timezone": timezone,
                "started_at": now,
                "updated_at": now,
            },
            index_elements=["account_id"],
        )
        await self._session.flush()
        created = _rows_affected(result)
        if created:
            logger.info("Provisioned default plan %s for account %s", plan_code, self._account_id)
        return created

    async def upsert_plan(self, plan_code: str, base_quota_ms: int) -> None:
        """Insert or overwrite the plan code and base quota.

        An existing row keeps its ``renew_day``, ``timezone`` and
        ``started_at``: changing plans never moves the billing anchor.
        """
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            PlanAssignmentTable,
            values={
                "account_id": self._account_id,
                "plan_code": plan_code,
                "base_quota_ms": base_quota_ms,
                "renew_day": 1,
                "timezone": "UTC",
                "started_at": now,
                "updated_at": now,
            },
            index_elements=["account_id"],
            update_columns=["plan_code", "base_quota_ms", "updated_at"],
        )
        await self._session.flush()


class PlanQuotaOverrideRepository:
    """Operator-managed per-plan quota values."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_quota_ms(self, plan_code: str) -> int | None:
        result = await self._session.execute(
            select(PlanQuotaOverrideTable.monthly_quota_ms).where(PlanQuotaOverrideTable.plan_code == plan_code)
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def set_quota_ms(self, plan_code: str, monthly_quota_ms: int) -> None:
        await _dialect_upsert(
            self._session,
            PlanQuotaOverrideTable,
            values={
                "plan_code": plan_code,
                "monthly_quota_ms": monthly_quota_ms,
                "updated_at": datetime.now(UTC),
            },
            index_elements=["plan_code"],
            update_columns=["monthly_quota_ms", "updated_at"],
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# UsageLedgerRepository
# ---------------------------------------------------------------------------


class UsageLedgerRepository:
    """Per-period usage counter and the append-only debit log of one account."""

    def __init__(self, session: AsyncSession, account_id: str) -> None:
        self._session = session
        self._account_id = account_id

    async def ensure_period_row(self, period_id: str) -> None:
        """Create a zero-usage row for *period_id* if none exists.

        Concurrent callers racing on the same period both succeed; the
        loser's insert is a no-op conflict.
        """
        await _dialect_upsert_nothing(
            self._session,
            UsagePeriodTable,
            values={"account_id": self._account_id, "period_id": period_id, "used_ms": 0},
            index_elements=["account_id", "period_id"],
        )
        await self._session.flush()

    async def get_used_ms(self, period_id: str) -> int:
        result = await self._session.execute(
            select(UsagePeriodTable.used_ms).where(
                UsagePeriodTable.account_id == self._account_id,
                UsagePeriodTable.period_id == period_id,
            )
        )
        return int(result.scalar_one_or_none() or 0)

    async def try_debit(self, period_id: str, delta_ms: int, quota_ms: int) -> bool:
        """Atomically add *delta_ms* to the period if it stays within *quota_ms*.

        Issued as one conditional ``UPDATE``; the store evaluates the quota
        predicate and the increment together, so concurrent debits can never
        jointly exceed the cap.

        Returns
        -------
        bool
            ``True`` if the counter was incremented, ``False`` if the debit
            would exceed the quota (or the period row is missing).
        """
        stmt = (
            update(UsagePeriodTable)
            .where(
                UsagePeriodTable.account_id == self._account_id,
                UsagePeriodTable.period_id == period_id,
                UsagePeriodTable.used_ms + delta_ms <= quota_ms,
            )
            .values(used_ms=UsagePeriodTable.used_ms + delta_ms)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return _rows_affected(result)

    async def record_event(
        self,
        event_id: str,
        period_id: str,
        delta_ms: int,
        transcript_id: str | None,
    ) -> UsageEventTable:
        """Append a usage event.  *event_id* must be globally unique."""
        row = UsageEventTable(
            event_id=event_id,
            account_id=self._account_id,
            period_id=period_id,
            delta_ms=delta_ms,
            transcript_id=transcript_id,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_events(self, period_id: str, positive_only: bool = True) -> list[UsageEventTable]:
        stmt = select(UsageEventTable).where(
            UsageEventTable.account_id == self._account_id,
            UsageEventTable.period_id == period_id,
        )
        if positive_only:
            stmt = stmt.where(UsageEventTable.delta_ms > 0)
        stmt = stmt.order_by(UsageEventTable.created_at.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def sum_event_delta_ms(self, period_id: str) -> int:
        result = await self._session.execute(
            select(func.coalesce(func.sum(UsageEventTable.delta_ms), 0)).where(
                UsageEventTable.account_id == self._account_id,
                UsageEventTable.period_id == period_id,
            )
        )
        return int(result.scalar_one() or 0)

    async def record_artifact(self, artifact_id: str, duration_ms: int) -> bool:
        """Register an artifact submitted for debit.

        Written before the debit is attempted and kept regardless of its
        outcome.  Returns ``False`` when the artifact was already known.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            ArtifactReceiptTable,
            values={
                "artifact_id": artifact_id,
                "account_id": self._account_id,
                "duration_ms": duration_ms,
                "created_at": datetime.now(UTC),
            },
            index_elements=["artifact_id"],
        )
        await self._session.flush()
        return _rows_affected(result)


# ---------------------------------------------------------------------------
# TopUpLedgerRepository
# ---------------------------------------------------------------------------


class TopUpLedgerRepository:
    """Append-only top-up credits of one account, keyed by external invoice id."""

    def __init__(self, session: AsyncSession, account_id: str) -> None:
        self._session = session
        self._account_id = account_id

    async def credit(
        self,
        external_invoice_id: str,
        top_up_id: str,
        minutes_granted: int,
        external_payment_id: str | None,
        credited_period_id: str,
        created_at: datetime | None = None,
    ) -> bool:
        """Insert a credit unless the invoice was already credited.

        Returns
        -------
        bool
            ``True`` if a row was written, ``False`` on replay.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            TopUpCreditTable,
            values={
                "external_invoice_id": external_invoice_id,
                "account_id": self._account_id,
                "top_up_id": top_up_id,
                "ms_granted": minutes_to_ms(minutes_granted),
                "minutes_granted": minutes_granted,
                "external_payment_id": external_payment_id,
                "credited_period_id": credited_period_id,
                "created_at": created_at or datetime.now(UTC),
            },
            index_elements=["external_invoice_id"],
        )
        await self._session.flush()
        return _rows_affected(result)

    async def sum_bonus_ms(self, since: datetime) -> int:
        """Sum ``ms_granted`` over credits created at or after *since*."""
        result = await self._session.execute(
            select(func.coalesce(func.sum(TopUpCreditTable.ms_granted), 0)).where(
                TopUpCreditTable.account_id == self._account_id,
                TopUpCreditTable.created_at >= since,
            )
        )
        return int(result.scalar_one() or 0)

    async def get(self, external_invoice_id: str) -> TopUpCreditTable | None:
        result = await self._session.execute(
            select(TopUpCreditTable).where(TopUpCreditTable.external_invoice_id == external_invoice_id)
        )
        return result.scalar_one_or_none()

    async def list_credits(self, limit: int = 50) -> list[TopUpCreditTable]:
        result = await self._session.execute(
            select(TopUpCreditTable)
            .where(TopUpCreditTable.account_id == self._account_id)
            .order_by(TopUpCreditTable.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Billing-system mirror
# ---------------------------------------------------------------------------


class BillingCustomerRepository:
    """Account to Stripe customer mapping (both directions)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_customer_id(self, account_id: str) -> str | None:
        result = await self._session.execute(
            select(BillingCustomerTable.stripe_customer_id).where(BillingCustomerTable.account_id == account_id)
        )
        return result.scalar_one_or_none()

    async def find_account_id(self, stripe_customer_id: str) -> str | None:
        result = await self._session.execute(
            select(BillingCustomerTable.account_id).where(
                BillingCustomerTable.stripe_customer_id == stripe_customer_id
            )
        )
        return result.scalar_one_or_none()

    async def link(self, account_id: str, stripe_customer_id: str) -> bool:
        """Record the mapping; returns ``False`` if the account already had one."""
        result = await _dialect_upsert_nothing(
            self._session,
            BillingCustomerTable,
            values={
                "account_id": account_id,
                "stripe_customer_id": stripe_customer_id,
                "created_at": datetime.now(UTC),
            },
            index_elements=["account_id"],
        )
        await self._session.flush()
        return _rows_affected(result)


class ExternalSubscriptionRepository:
    """Last known external subscription of one account."""

    def __init__(self, session: AsyncSession, account_id: str) -> None:
        self._session = session
        self._account_id = account_id

    async def get(self) -> ExternalSubscriptionTable | None:
        result = await self._session.execute(
            select(ExternalSubscriptionTable)
            .where(ExternalSubscriptionTable.account_id == self._account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        external_subscription_id: str,
        plan_code: str,
        status: str,
        current_period_end: datetime | None,
    ) -> None:
        await _dialect_upsert(
            self._session,
            ExternalSubscriptionTable,
            values={
                "account_id": self._account_id,
                "external_subscription_id": external_subscription_id,
                "plan_code": plan_code,
                "status": status,
                "current_period_end": current_period_end,
                "updated_at": datetime.now(UTC),
            },
            index_elements=["account_id"],
            update_columns=[
                "external_subscription_id",
                "plan_code",
                "status",
                "current_period_end",
                "updated_at",
            ],
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# RetentionSettingRepository
# ---------------------------------------------------------------------------


class RetentionSettingRepository:
    """Retention choice of one account."""

    def __init__(self, session: AsyncSession, account_id: str) -> None:
        self._session = session
        self._account_id = account_id

    async def get(self) -> RetentionSettingTable | None:
        result = await self._session.execute(
            select(RetentionSettingTable)
            .where(RetentionSettingTable.account_id == self._account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_selection(self, plan_code: str, option_id: str, retention_days: int) -> None:
        """Store the selected option; scheduler metadata other than the window is kept."""
        await _dialect_upsert(
            self._session,
            RetentionSettingTable,
            values={
                "account_id": self._account_id,
                "plan_code": plan_code,
                "option_id": option_id,
                "retention_days": retention_days,
                "deletion_window_days": retention_days,
                "updated_at": datetime.now(UTC),
            },
            index_elements=["account_id"],
            update_columns=["plan_code", "option_id", "retention_days", "deletion_window_days", "updated_at"],
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only billing audit trail."""

    def __init__(self, session: AsyncSession, account_id: str) -> None:
        self._session = session
        self._account_id = account_id

    async def log(
        self,
        action: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        entry_id = uuid.uuid4().hex
        self._session.add(
            BillingAuditLogTable(
                id=entry_id,
                account_id=self._account_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata_json=metadata,
                created_at=datetime.now(UTC),
            )
        )
        await self._session.flush()
        return entry_id

    async def list_entries(self, limit: int = 50) -> list[BillingAuditLogTable]:
        result = await self._session.execute(
            select(BillingAuditLogTable)
            .where(BillingAuditLogTable.account_id == self._account_id)
            .order_by(BillingAuditLogTable.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# ReconciliationRepository
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PeriodDrift:
    """A usage period whose counter disagrees with the sum of its events."""

    account_id: str
    period_id: str
    used_ms: int
    event_ms: int


class ReconciliationRepository:
    """Cross-checks between artifacts, usage events and period counters.

    Scoped to one account when ``account_id`` is given, otherwise global.
    """

    def __init__(self, session: AsyncSession, account_id: str | None = None) -> None:
        self._session = session
        self._account_id = account_id

    async def count_artifacts(self, since: datetime | None = None) -> int:
        stmt = select(func.count()).select_from(ArtifactReceiptTable)
        if self._account_id is not None:
            stmt = stmt.where(ArtifactReceiptTable.account_id == self._account_id)
        if since is not None:
            stmt = stmt.where(ArtifactReceiptTable.created_at >= since)
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def find_unmatched_artifacts(
        self,
        since: datetime | None = None,
        limit: int = 500,
    ) -> list[ArtifactReceiptTable]:
        """Artifacts that have no usage event referencing them."""
        stmt = (
            select(ArtifactReceiptTable)
            .outerjoin(
                UsageEventTable,
                and_(
                    UsageEventTable.transcript_id == ArtifactReceiptTable.artifact_id,
                    UsageEventTable.account_id == ArtifactReceiptTable.account_id,
                ),
            )
            .where(UsageEventTable.event_id.is_(None))
        )
        if self._account_id is not None:
            stmt = stmt.where(ArtifactReceiptTable.account_id == self._account_id)
        if since is not None:
            stmt = stmt.where(ArtifactReceiptTable.created_at >= since)
        stmt = stmt.order_by(ArtifactReceiptTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_period_drift(self) -> list[PeriodDrift]:
        """Periods where ``used_ms`` differs from the sum of their event deltas."""
        event_totals = (
            select(
                UsageEventTable.account_id.label("account_id"),
                UsageEventTable.period_id.label("period_id"),
                func.sum(UsageEventTable.delta_ms).label("event_ms"),
            )
            .group_by(UsageEventTable.account_id, UsageEventTable.period_id)
            .subquery()
        )
        event_ms = func.coalesce(event_totals.c.event_ms, 0)
        stmt = (
            select(
                UsagePeriodTable.account_id,
                UsagePeriodTable.period_id,
                UsagePeriodTable.used_ms,
                event_ms.label("event_ms"),
            )
            .outerjoin(
                event_totals,
                and_(
                    event_totals.c.account_id == UsagePeriodTable.account_id,
                    event_totals.c.period_id == UsagePeriodTable.period_id,
                ),
            )
            .where(UsagePeriodTable.used_ms != event_ms)
            .order_by(UsagePeriodTable.account_id, UsagePeriodTable.period_id)
        )
        if self._account_id is not None:
            stmt = stmt.where(UsagePeriodTable.account_id == self._account_id)
        result = await self._session.execute(stmt)
        return [
            PeriodDrift(
                account_id=row.account_id,
                period_id=row.period_id,
                used_ms=int(row.used_ms),
                event_ms=int(row.event_ms),
            )
            for row in result.all()
        ]
