"""Quota enforcement: effective quota, debits and usage snapshots.

The effective quota of an account for its current billing period is::

    base_quota_ms (plan assignment) + sum(top-up ms credited in the last N days)

A debit is a single conditional ``UPDATE`` on the period counter.  The
store evaluates ``used_ms + delta_ms <= quota_ms`` and the increment in one
statement, so concurrent debits against the same account can never jointly
push usage over the quota.  A rejected debit writes nothing; an accepted
debit is followed by an append to the usage event log in the same
transaction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from quota_engine.catalog import PlanCatalog, ms_to_minutes
from quota_engine.errors import UnprovisionedAccountError
from quota_engine.period import BillingPeriod, current_period
from quota_engine.state.repository import (
    PlanAssignmentRepository,
    TopUpLedgerRepository,
    UsageLedgerRepository,
)
from quota_engine.state.tables import PlanAssignmentTable

logger = logging.getLogger(__name__)

DEFAULT_TOP_UP_WINDOW_DAYS = 365


@dataclass(frozen=True)
class EffectiveQuota:
    """The quota that applies to one account for one period."""

    plan_code: str
    base_quota_ms: int
    bonus_ms: int
    period: BillingPeriod

    @property
    def quota_ms(self) -> int:
        return self.base_quota_ms + self.bonus_ms


class DebitResult(BaseModel):
    """Outcome of a debit attempt.

    ``accepted`` is ``False`` when the debit would have exceeded the quota;
    the figures then describe the unchanged state of the period.
    """

    accepted: bool
    period_id: str
    delta_ms: int
    used_ms: int
    remaining_ms: int
    quota_ms: int
    event_id: str | None = None


class UsageSnapshot(BaseModel):
    """Read model of an account's usage in its current period."""

    account_id: str
    plan_code: str
    plan_name: str
    period_id: str
    period_starts_at: str
    period_ends_at: str
    base_quota_ms: int
    bonus_ms: int
    quota_ms: int
    used_ms: int
    remaining_ms: int
    base_quota_minutes: int
    bonus_minutes: int
    quota_minutes: int
    used_minutes: int
    remaining_minutes: int


class QuotaReconciler:
    """Computes and enforces the effective quota of a single account.

    Parameters
    ----------
    session:
        Session whose transaction the debit joins.  The caller commits.
    catalog:
        The process-wide plan catalog.
    account_id:
        Account whose quota is evaluated.
    top_up_window_days:
        Trailing window, in days, over which top-up credits count.
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog,
        *,
        account_id: str,
        top_up_window_days: int = DEFAULT_TOP_UP_WINDOW_DAYS,
    ) -> None:
        self._session = session
        self._catalog = catalog
        self._account_id = account_id
        self._window = timedelta(days=top_up_window_days)
        self._plans = PlanAssignmentRepository(session, account_id)
        self._usage = UsageLedgerRepository(session, account_id)
        self._top_ups = TopUpLedgerRepository(session, account_id)

    @property
    def account_id(self) -> str:
        return self._account_id

    async def _require_assignment(self) -> PlanAssignmentTable:
        assignment = await self._plans.get()
        if assignment is None:
            raise UnprovisionedAccountError(self._account_id)
        return assignment

    async def effective_quota(self, now: datetime | None = None) -> EffectiveQuota:
        """Resolve the plan, the current period and the bonus credit window.

        Raises
        ------
        UnprovisionedAccountError
            If the account has no plan assignment.
        """
        now = _utc(now)
        assignment = await self._require_assignment()
        period = current_period(assignment.timezone, assignment.renew_day, now)
        bonus_ms = await self._top_ups.sum_bonus_ms(since=now - self._window)
        return EffectiveQuota(
            plan_code=assignment.plan_code,
            base_quota_ms=int(assignment.base_quota_ms),
            bonus_ms=bonus_ms,
            period=period,
        )

    async def debit_usage(
        self,
        delta_ms: int,
        transcript_id: str | None,
        event_id: str | None = None,
        now: datetime | None = None,
    ) -> DebitResult:
        """Debit *delta_ms* from the current period if the quota allows it.

        Parameters
        ----------
        delta_ms:
            Positive number of milliseconds to consume.
        transcript_id:
            Artifact the usage is attributed to.
        event_id:
            Unique id for the usage event; a UUID is generated when omitted.
        now:
            Evaluation instant, defaults to the current time.

        Returns
        -------
        DebitResult
            ``accepted=False`` when the debit was refused for lack of quota.

        Raises
        ------
        ValueError
            If *delta_ms* is not a positive integer.
        UnprovisionedAccountError
            If the account has no plan assignment.
        """
        if isinstance(delta_ms, bool) or not isinstance(delta_ms, int) or delta_ms <= 0:
            raise ValueError(f"delta_ms must be a positive integer, got {delta_ms!r}")

        quota = await self.effective_quota(now)
        period_id = quota.period.period_id

        await self._usage.ensure_period_row(period_id)
        accepted = await self._usage.try_debit(period_id, delta_ms, quota.quota_ms)

        if not accepted:
            used_ms = await self._usage.get_used_ms(period_id)
            logger.warning(
                "Quota exceeded: account=%s period=%s requested=%d used=%d quota=%d",
                self._account_id,
                period_id,
                delta_ms,
                used_ms,
                quota.quota_ms,
            )
            return DebitResult(
                accepted=False,
                period_id=period_id,
                delta_ms=delta_ms,
                used_ms=used_ms,
                remaining_ms=max(quota.quota_ms - used_ms, 0),
                quota_ms=quota.quota_ms,
            )

        event_id = event_id or str(uuid.uuid4())
        await self._usage.record_event(event_id, period_id, delta_ms, transcript_id)
        used_ms = await self._usage.get_used_ms(period_id)

        logger.info(
            "Debited %d ms: account=%s period=%s used=%d quota=%d",
            delta_ms,
            self._account_id,
            period_id,
            used_ms,
            quota.quota_ms,
        )
        return DebitResult(
            accepted=True,
            period_id=period_id,
            delta_ms=delta_ms,
            used_ms=used_ms,
            remaining_ms=max(quota.quota_ms - used_ms, 0),
            quota_ms=quota.quota_ms,
            event_id=event_id,
        )

    async def get_usage_snapshot(self, now: datetime | None = None) -> UsageSnapshot:
        """Return quota, usage and remaining figures for the current period."""
        quota = await self.effective_quota(now)
        used_ms = await self._usage.get_used_ms(quota.period.period_id)
        remaining_ms = max(quota.quota_ms - used_ms, 0)
        plan = self._catalog.find_plan(quota.plan_code)
        return UsageSnapshot(
            account_id=self._account_id,
            plan_code=quota.plan_code,
            plan_name=plan.name if plan is not None else quota.plan_code,
            period_id=quota.period.period_id,
            period_starts_at=quota.period.start_iso,
            period_ends_at=quota.period.end_iso,
            base_quota_ms=quota.base_quota_ms,
            bonus_ms=quota.bonus_ms,
            quota_ms=quota.quota_ms,
            used_ms=used_ms,
            remaining_ms=remaining_ms,
            base_quota_minutes=ms_to_minutes(quota.base_quota_ms),
            bonus_minutes=ms_to_minutes(quota.bonus_ms),
            quota_minutes=ms_to_minutes(quota.quota_ms),
            used_minutes=ms_to_minutes(used_ms),
            remaining_minutes=ms_to_minutes(remaining_ms),
        )


def _utc(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(UTC)
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now.astimezone(UTC)
